import csv
import re
from io import StringIO
from typing import Any, Optional

from money import format_cents

EXPORT_HEADER = [
    "dataType",
    "id",
    "name",
    "type",
    "amount",
    "accountId",
    "category",
    "description",
    "date",
    "status",
    "creditLimit",
    "savingsRate",
    "month",
    "year",
    "term",
    "monthsPaid",
    "targetAmount",
    "currentAmount",
    "deadline",
    "initialAmount",
    "currentValue",
]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def _amount(cents: Optional[int]) -> str:
    return "" if cents is None else format_cents(cents)


def _text(value: Optional[str]) -> str:
    return sanitize_csv_value(value or "")


def _row(data_type: str, obj: Any, **columns: Any) -> list[str]:
    values = {"dataType": data_type, "id": obj.id}
    values.update(columns)
    return ["" if values.get(col) is None else str(values[col]) for col in EXPORT_HEADER]


def export_bundle(snapshot: dict[str, list[Any]]) -> str:
    """Flatten every entity into one CSV using a shared header."""
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)

    for account in snapshot.get("accounts", []):
        writer.writerow(
            _row(
                "account",
                account,
                name=_text(account.name),
                type=account.type.value,
                amount=_amount(account.balance_cents),
                creditLimit=_amount(account.credit_limit_cents),
            )
        )
    for category in snapshot.get("budget_categories", []):
        writer.writerow(
            _row(
                "budgetCategory",
                category,
                name=_text(category.name),
                amount=_amount(category.budgeted_cents),
            )
        )
    for txn in snapshot.get("transactions", []):
        writer.writerow(
            _row(
                "transaction",
                txn,
                type=txn.type.value,
                amount=_amount(txn.amount_cents),
                accountId=txn.account_id,
                category=_text(txn.category),
                description=_text(txn.description),
                date=txn.date.isoformat(),
            )
        )
    for budget in snapshot.get("budgets", []):
        writer.writerow(
            _row(
                "budget",
                budget,
                amount=_amount(budget.monthly_salary_cents),
                accountId=budget.account_id,
                status=budget.status.value,
                # Basis points render as a two-decimal percent.
                savingsRate=format_cents(budget.savings_rate_bps),
                month=budget.month,
                year=budget.year,
            )
        )
    for installment in snapshot.get("installments", []):
        writer.writerow(
            _row(
                "installment",
                installment,
                name=_text(installment.name),
                amount=_amount(installment.monthly_amount_cents),
                accountId=installment.account_id,
                date=installment.start_date.isoformat(),
                status=installment.status.value,
                term=installment.term,
                monthsPaid=installment.months_paid,
            )
        )
    for goal in snapshot.get("goals", []):
        writer.writerow(
            _row(
                "goal",
                goal,
                name=_text(goal.name),
                accountId=goal.account_id,
                targetAmount=_amount(goal.target_cents),
                currentAmount=_amount(goal.current_cents),
                deadline=goal.deadline.isoformat(),
            )
        )
    for investment in snapshot.get("investments", []):
        writer.writerow(
            _row(
                "investment",
                investment,
                name=_text(investment.name),
                type=_text(investment.type),
                accountId=investment.account_id,
                date=investment.start_date.isoformat(),
                initialAmount=_amount(investment.initial_cents),
                currentValue=_amount(investment.current_value_cents),
            )
        )
    return output.getvalue()
