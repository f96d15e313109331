from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from database import atomic
from models import (
    Account,
    AllocationAction,
    Budget,
    BudgetCategory,
    BudgetStatus,
    Goal,
    Installment,
    InstallmentStatus,
    Investment,
    LiquidationAction,
    LiquidationDestination,
    MonthlyReport,
    Transaction,
    TransactionType,
)
from money import apply_bps, format_cents, percent_of, ratio_bps
from periods import Period, add_months, local_today, month_period, shift_month
from schemas import (
    AccountIn,
    AccountUpdate,
    AllocationIn,
    BudgetCategoryIn,
    BudgetCategoryUpdate,
    BudgetIn,
    BudgetUpdate,
    GoalIn,
    GoalUpdate,
    InstallmentIn,
    InstallmentUpdate,
    InvestmentIn,
    InvestmentUpdate,
    TransactionIn,
    TransactionImport,
    TransactionPatch,
)

logger = logging.getLogger(__name__)


class FinanceError(ValueError):
    pass


class ValidationError(FinanceError):
    pass


class NotFoundError(FinanceError):
    pass


class DomainError(FinanceError):
    pass


class InsufficientFundsError(DomainError):
    pass


TRANSFER_CATEGORY = "Transfer"
SAVINGS_CATEGORY = "Savings"
GOAL_DEPOSIT_CATEGORY = "Goal Savings"
GOAL_ALLOCATION_CATEGORY = "Goal"
INSTALLMENT_CATEGORY = "Installment"
INVESTMENT_CATEGORY = "Investment"
INVESTMENT_LOSS_CATEGORY = "Investment Loss"

MONTH_ABBR = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)


def ledger_delta(txn_type: TransactionType, amount_cents: int) -> int:
    """Signed balance change a transaction applies to its account.

    Income always credits. Every other type debits its amount, so a negative
    amount on a non-income row credits the account.
    """
    if txn_type == TransactionType.income:
        return abs(amount_cents)
    return -amount_cents


def usage_color(percent_used: int) -> str:
    if percent_used >= 100:
        return "red"
    if percent_used >= 80:
        return "yellow"
    return "green"


def _normalize_name(name: str) -> str:
    return name.strip().lower()


def _get_or_404(session: Session, model, entity_id: int, label: str):
    obj = session.get(model, entity_id)
    if obj is None:
        raise NotFoundError(f"{label} not found: {entity_id}")
    return obj


class LedgerService:
    """Balance mutations on accounts.

    Nothing here commits: mutations are flushed into the caller's unit of
    work. No overdraft check exists for any account type.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def account(self, account_id: int) -> Account:
        return _get_or_404(self.session, Account, account_id, "Account")

    def get_balance(self, account_id: int) -> int:
        return self.account(account_id).balance_cents

    def adjust_balance(self, account_id: int, delta_cents: int) -> Account:
        account = self.account(account_id)
        account.balance_cents = account.balance_cents + delta_cents
        self.session.flush()
        return account

    def credit(self, account_id: int, amount_cents: int) -> Account:
        return self.adjust_balance(account_id, amount_cents)

    def debit(self, account_id: int, amount_cents: int) -> Account:
        return self.adjust_balance(account_id, -amount_cents)

    def apply_effect(self, txn: Transaction, *, reverse: bool = False) -> None:
        if txn.account_id is None:
            return
        delta = ledger_delta(txn.type, txn.amount_cents)
        if reverse:
            delta = -delta
        self.adjust_balance(txn.account_id, delta)


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self) -> list[Account]:
        stmt = select(Account).order_by(Account.created_at.desc(), Account.id.desc())
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        return _get_or_404(self.session, Account, account_id, "Account")

    def create(self, data: AccountIn) -> Account:
        account = Account(
            name=data.name,
            type=data.type,
            balance_cents=data.balance_cents,
            credit_limit_cents=data.credit_limit_cents,
        )
        with atomic(self.session):
            self.session.add(account)
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        # Administrative correction: balance edits here bypass the ledger.
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            account = self.get(account_id)
            for field in ("name", "type", "balance_cents"):
                if field in changes and changes[field] is None:
                    raise ValidationError(f"{field} cannot be null")
            for field, value in changes.items():
                setattr(account, field, value)
            if "balance_cents" in changes:
                logger.info(
                    f"account_balance_override: account_id={account_id} "
                    f"balance={format_cents(account.balance_cents)}"
                )
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        with atomic(self.session):
            account = self.get(account_id)
            self.session.execute(
                delete(Transaction).where(
                    or_(
                        Transaction.account_id == account_id,
                        Transaction.source_account_id == account_id,
                        Transaction.destination_account_id == account_id,
                    )
                )
            )
            self.session.execute(
                delete(Installment).where(Installment.account_id == account_id)
            )
            for model in (Goal, Investment, Budget):
                self.session.execute(
                    update(model)
                    .where(model.account_id == account_id)
                    .values(account_id=None)
                )
            self.session.delete(account)


@dataclass
class TransactionFilters:
    start: Optional[date] = None
    end: Optional[date] = None
    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    category: Optional[str] = None


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.ledger = LedgerService(session)

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = select(Transaction).order_by(
            Transaction.date.desc(), Transaction.id.desc()
        )
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        return self.session.scalars(stmt).all()

    def get(self, transaction_id: int) -> Transaction:
        return _get_or_404(self.session, Transaction, transaction_id, "Transaction")

    def resolve_category_id(self, name: str) -> Optional[int]:
        return self.session.scalar(
            select(BudgetCategory.id).where(
                func.lower(BudgetCategory.name) == _normalize_name(name)
            )
        )

    def _check_links(
        self,
        *,
        account_id: Optional[int] = None,
        category_id: Optional[int] = None,
        goal_id: Optional[int] = None,
        installment_id: Optional[int] = None,
        investment_id: Optional[int] = None,
    ) -> None:
        if account_id is not None:
            self.ledger.account(account_id)
        if category_id is not None:
            _get_or_404(self.session, BudgetCategory, category_id, "Budget category")
        if goal_id is not None:
            _get_or_404(self.session, Goal, goal_id, "Goal")
        if installment_id is not None:
            _get_or_404(self.session, Installment, installment_id, "Installment")
        if investment_id is not None:
            _get_or_404(self.session, Investment, investment_id, "Investment")

    def post(
        self,
        *,
        date: date,
        description: str,
        amount_cents: int,
        category: str,
        type: TransactionType,
        account_id: Optional[int] = None,
        category_id: Optional[int] = None,
        goal_id: Optional[int] = None,
        installment_id: Optional[int] = None,
        investment_id: Optional[int] = None,
        source_account_id: Optional[int] = None,
        destination_account_id: Optional[int] = None,
        transfer_group_id: Optional[str] = None,
        apply_ledger: bool = True,
    ) -> Transaction:
        """Insert a transaction and apply its ledger effect; the caller commits."""
        self._check_links(
            account_id=account_id,
            category_id=category_id,
            goal_id=goal_id,
            installment_id=installment_id,
            investment_id=investment_id,
        )
        if category_id is None:
            category_id = self.resolve_category_id(category)
        txn = Transaction(
            date=date,
            description=description,
            amount_cents=amount_cents,
            category=category,
            category_id=category_id,
            type=type,
            account_id=account_id,
            goal_id=goal_id,
            installment_id=installment_id,
            investment_id=investment_id,
            source_account_id=source_account_id,
            destination_account_id=destination_account_id,
            transfer_group_id=transfer_group_id,
        )
        self.session.add(txn)
        self.session.flush()
        if apply_ledger:
            self.ledger.apply_effect(txn)
        return txn

    def record(self, data: TransactionIn) -> Transaction:
        with atomic(self.session):
            txn = self.post(**data.model_dump())
        self.session.refresh(txn)
        return txn

    def _transfer_legs(self, transfer_group_id: str) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.transfer_group_id == transfer_group_id)
            .order_by(Transaction.id.asc())
        )
        return self.session.scalars(stmt).all()

    def amend(self, transaction_id: int, patch: TransactionPatch) -> Transaction:
        changes = patch.model_dump(exclude_unset=True)
        for field in ("date", "description", "amount_cents", "category", "type"):
            if field in changes and changes[field] is None:
                raise ValidationError(f"{field} cannot be null")

        with atomic(self.session):
            txn = self.get(transaction_id)
            if txn.transfer_group_id:
                self._amend_transfer(txn, changes)
            else:
                self.ledger.apply_effect(txn, reverse=True)
                for field, value in changes.items():
                    setattr(txn, field, value)
                if "category" in changes and "category_id" not in changes:
                    txn.category_id = self.resolve_category_id(txn.category)
                self._check_links(
                    account_id=txn.account_id,
                    category_id=txn.category_id,
                    goal_id=txn.goal_id,
                    installment_id=txn.installment_id,
                    investment_id=txn.investment_id,
                )
                self.session.flush()
                self.ledger.apply_effect(txn)
        self.session.refresh(txn)
        return txn

    def _amend_transfer(self, txn: Transaction, changes: dict[str, Any]) -> None:
        blocked = sorted(set(changes) - {"amount_cents", "date", "description"})
        if blocked:
            raise ValidationError(
                "Transfer legs only accept amount, date or description changes; "
                f"got {', '.join(blocked)}"
            )
        if "amount_cents" in changes and changes["amount_cents"] <= 0:
            raise ValidationError("Transfer amount must be positive")

        legs = self._transfer_legs(txn.transfer_group_id)
        for leg in legs:
            self.ledger.apply_effect(leg, reverse=True)
        for leg in legs:
            if "amount_cents" in changes:
                leg.amount_cents = changes["amount_cents"]
            if "date" in changes:
                leg.date = changes["date"]
        if "description" in changes:
            txn.description = changes["description"]
        self.session.flush()
        for leg in legs:
            self.ledger.apply_effect(leg)

    def retract(self, transaction_id: int) -> None:
        with atomic(self.session):
            txn = self.get(transaction_id)
            legs = (
                self._transfer_legs(txn.transfer_group_id)
                if txn.transfer_group_id
                else [txn]
            )
            for leg in legs:
                self.ledger.apply_effect(leg, reverse=True)
                self.session.delete(leg)

    def post_transfer(
        self,
        source_account_id: int,
        destination_account_id: int,
        amount_cents: int,
        description: str,
        on_date: date,
    ) -> tuple[Transaction, Transaction]:
        if source_account_id == destination_account_id:
            raise ValidationError("Source and destination accounts must be different")
        if amount_cents <= 0:
            raise ValidationError("Transfer amount must be positive")
        source = self.ledger.account(source_account_id)
        destination = self.ledger.account(destination_account_id)

        transfer_group_id = str(uuid.uuid4())
        withdrawal = self.post(
            date=on_date,
            description=f"{description} (Transfer to {destination.name})",
            amount_cents=amount_cents,
            category=TRANSFER_CATEGORY,
            type=TransactionType.expense,
            account_id=source.id,
            source_account_id=source.id,
            destination_account_id=destination.id,
            transfer_group_id=transfer_group_id,
        )
        deposit = self.post(
            date=on_date,
            description=f"{description} (Transfer from {source.name})",
            amount_cents=amount_cents,
            category=TRANSFER_CATEGORY,
            type=TransactionType.income,
            account_id=destination.id,
            source_account_id=source.id,
            destination_account_id=destination.id,
            transfer_group_id=transfer_group_id,
        )
        return withdrawal, deposit

    def transfer(
        self,
        source_account_id: int,
        destination_account_id: int,
        amount_cents: int,
        description: str,
        on_date: date,
    ) -> tuple[Transaction, Transaction]:
        with atomic(self.session):
            withdrawal, deposit = self.post_transfer(
                source_account_id,
                destination_account_id,
                amount_cents,
                description,
                on_date,
            )
        logger.info(
            f"transfer: group={withdrawal.transfer_group_id} "
            f"source={source_account_id} destination={destination_account_id} "
            f"amount={format_cents(amount_cents)}"
        )
        return withdrawal, deposit

    def budget_transfer(
        self,
        source_account_id: int,
        destination_account_id: int,
        amount_cents: int,
        description: str,
    ) -> tuple[Transaction, Transaction]:
        if source_account_id == destination_account_id:
            raise ValidationError("Source and destination accounts must be different")
        if amount_cents <= 0:
            raise ValidationError("Transfer amount must be positive")
        if BudgetService(self.session).current() is None:
            raise DomainError("No active budget found. Please create a budget first.")
        source = self.ledger.account(source_account_id)
        if source.balance_cents < amount_cents:
            raise InsufficientFundsError(
                f"Insufficient balance. Available: {format_cents(source.balance_cents)}"
            )
        return self.transfer(
            source_account_id,
            destination_account_id,
            amount_cents,
            description,
            local_today(),
        )


class BudgetCategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self) -> list[BudgetCategory]:
        stmt = select(BudgetCategory).order_by(BudgetCategory.name.asc())
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> BudgetCategory:
        return _get_or_404(self.session, BudgetCategory, category_id, "Budget category")

    def _ensure_unique_name(self, name: str, *, exclude_id: Optional[int] = None) -> None:
        stmt = select(BudgetCategory.id).where(
            func.lower(BudgetCategory.name) == _normalize_name(name)
        )
        if exclude_id is not None:
            stmt = stmt.where(BudgetCategory.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ValidationError(f"Budget category already exists: {name}")

    def create(self, data: BudgetCategoryIn) -> BudgetCategory:
        name = data.name.strip()
        with atomic(self.session):
            self._ensure_unique_name(name)
            category = BudgetCategory(
                name=name,
                budgeted_cents=data.budgeted_cents,
                is_predefined=data.is_predefined,
            )
            self.session.add(category)
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: BudgetCategoryUpdate) -> BudgetCategory:
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            category = self.get(category_id)
            if changes.get("name") is not None:
                name = changes["name"].strip()
                self._ensure_unique_name(name, exclude_id=category_id)
                category.name = name
            if changes.get("budgeted_cents") is not None:
                category.budgeted_cents = changes["budgeted_cents"]
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        with atomic(self.session):
            category = self.get(category_id)
            if category.is_predefined:
                raise DomainError(
                    f"Predefined budget category cannot be deleted: {category.name}"
                )
            self.session.execute(
                update(Transaction)
                .where(Transaction.category_id == category_id)
                .values(category_id=None)
            )
            self.session.delete(category)

    def spent_by_category(
        self, period: Period, categories: Optional[list[BudgetCategory]] = None
    ) -> dict[int, int]:
        """Spending per budget category id for the period.

        Rows linked through category_id count for that category; unlinked rows
        fall back to a case-insensitive match on the free-text category.
        Income and transfer legs never count.
        """
        categories = categories if categories is not None else self.list()
        spending = (
            Transaction.date.between(period.start, period.end),
            Transaction.type != TransactionType.income,
            Transaction.transfer_group_id.is_(None),
        )
        spent_amount = func.coalesce(func.sum(func.abs(Transaction.amount_cents)), 0)

        spent: dict[int, int] = {}
        linked = self.session.execute(
            select(Transaction.category_id, spent_amount.label("spent"))
            .where(*spending, Transaction.category_id.isnot(None))
            .group_by(Transaction.category_id)
        )
        for row in linked:
            spent[row.category_id] = int(row.spent or 0)

        ids_by_name = {_normalize_name(c.name): c.id for c in categories}
        unlinked = self.session.execute(
            select(Transaction.category, spent_amount.label("spent"))
            .where(*spending, Transaction.category_id.is_(None))
            .group_by(Transaction.category)
        )
        for row in unlinked:
            category_id = ids_by_name.get(_normalize_name(row.category))
            if category_id is None:
                continue
            spent[category_id] = spent.get(category_id, 0) + int(row.spent or 0)
        return spent

    def usage(
        self, year: Optional[int] = None, month: Optional[int] = None
    ) -> list[dict[str, Any]]:
        period = month_period(year, month)
        categories = self.list()
        spent = self.spent_by_category(period, categories)
        rows: list[dict[str, Any]] = []
        for category in categories:
            spent_cents = spent.get(category.id, 0)
            percent_used = percent_of(spent_cents, category.budgeted_cents)
            rows.append(
                {
                    "id": category.id,
                    "name": category.name,
                    "budgeted_cents": category.budgeted_cents,
                    "spent_cents": spent_cents,
                    "percent_used": percent_used,
                    "color": usage_color(percent_used),
                    "is_predefined": category.is_predefined,
                }
            )
        return rows


@dataclass
class MonthTotals:
    income_cents: int = 0
    expenses_cents: int = 0
    installments_cents: int = 0
    goals_cents: int = 0
    investments_cents: int = 0


def month_totals(session: Session, period: Period) -> MonthTotals:
    txns = session.scalars(
        select(Transaction).where(Transaction.date.between(period.start, period.end))
    ).all()
    totals = MonthTotals()
    for txn in txns:
        if txn.transfer_group_id is not None:
            continue
        amount = abs(txn.amount_cents)
        if txn.type == TransactionType.income:
            totals.income_cents += amount
        elif txn.type == TransactionType.installment:
            totals.installments_cents += amount
            totals.expenses_cents += amount
        elif txn.type == TransactionType.goal:
            totals.goals_cents += amount
            totals.expenses_cents += amount
        elif txn.type == TransactionType.investment:
            # Negative investment rows are liquidation inflows, not spending.
            if txn.amount_cents > 0:
                totals.investments_cents += txn.amount_cents
                totals.expenses_cents += txn.amount_cents
        else:
            totals.expenses_cents += amount
    return totals


@dataclass
class CloseMonthResult:
    closed_budget: Budget
    new_budget: Budget
    monthly_report: MonthlyReport


class BudgetService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self) -> list[Budget]:
        stmt = select(Budget).order_by(
            Budget.year.desc(), Budget.month.desc(), Budget.id.desc()
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        return _get_or_404(self.session, Budget, budget_id, "Budget")

    def current(self) -> Optional[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.status == BudgetStatus.active)
            .order_by(Budget.id.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def create(self, data: BudgetIn) -> Budget:
        with atomic(self.session):
            if data.account_id is not None:
                LedgerService(self.session).account(data.account_id)
            if data.status == BudgetStatus.active and self.current() is not None:
                raise DomainError("An active budget already exists; close it first")
            budget = Budget(
                monthly_salary_cents=data.monthly_salary_cents,
                savings_rate_bps=data.savings_rate_bps,
                account_id=data.account_id,
                status=data.status,
                month=data.month,
                year=data.year,
            )
            self.session.add(budget)
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            budget = self.get(budget_id)
            for field in ("monthly_salary_cents", "savings_rate_bps", "month", "year"):
                if field in changes and changes[field] is None:
                    raise ValidationError(f"{field} cannot be null")
            if changes.get("account_id") is not None:
                LedgerService(self.session).account(changes["account_id"])
            for field, value in changes.items():
                setattr(budget, field, value)
        self.session.refresh(budget)
        return budget

    def _lock_active_budget(self) -> Budget:
        budgets = self.session.scalars(
            select(Budget)
            .where(Budget.status == BudgetStatus.active)
            .with_for_update()
        ).all()
        if not budgets:
            raise DomainError("No active budget found")
        if len(budgets) > 1:
            raise DomainError(
                f"Expected exactly one active budget, found {len(budgets)}"
            )
        return budgets[0]

    def close_month(self, allocations: list[AllocationIn]) -> CloseMonthResult:
        """Close the active budget period and open the next one.

        Computes the month's report from the budget's own month, disburses each
        category's unused funds per its allocation (carryover when none was
        given), closes the budget and creates next month's active budget. The
        whole operation is one unit of work: any failure leaves nothing behind.
        """
        with atomic(self.session):
            budget = self._lock_active_budget()
            period = month_period(budget.year, budget.month)
            totals = month_totals(self.session, period)

            category_service = BudgetCategoryService(self.session)
            categories = category_service.list()
            spent = category_service.spent_by_category(period, categories)
            categories_by_id = {c.id: c for c in categories}

            requested: dict[int, AllocationIn] = {}
            for allocation in allocations:
                if allocation.category_id not in categories_by_id:
                    raise NotFoundError(
                        f"Budget category not found: {allocation.category_id}"
                    )
                requested[allocation.category_id] = allocation

            breakdown: dict[str, dict[str, int]] = {}
            total_budgeted = 0
            pending: list[tuple[BudgetCategory, int, AllocationIn]] = []
            for category in categories:
                spent_cents = spent.get(category.id, 0)
                unused = category.budgeted_cents - spent_cents
                breakdown[category.name] = {
                    "budgeted_cents": category.budgeted_cents,
                    "spent_cents": spent_cents,
                    "unused_cents": max(0, unused),
                }
                total_budgeted += category.budgeted_cents
                if unused <= 0:
                    continue
                allocation = requested.get(category.id)
                if allocation is None:
                    allocation = AllocationIn(
                        category_id=category.id,
                        unused_cents=unused,
                        action=AllocationAction.carryover,
                    )
                elif (
                    allocation.unused_cents is not None
                    and allocation.unused_cents != unused
                ):
                    logger.warning(
                        f"close_month: category={category.name} "
                        f"client_unused={format_cents(allocation.unused_cents)} "
                        f"computed_unused={format_cents(unused)}; using computed"
                    )
                pending.append((category, unused, allocation))

            today = local_today()
            for category, unused, allocation in pending:
                self._allocate(category, unused, allocation, today)

            report = MonthlyReport(
                budget_id=budget.id,
                month=budget.month,
                year=budget.year,
                total_income_cents=totals.income_cents,
                total_expenses_cents=totals.expenses_cents,
                budgeted_cents=total_budgeted,
                unused_budget_cents=max(0, total_budgeted - totals.expenses_cents),
                savings_amount_cents=apply_bps(
                    budget.monthly_salary_cents, budget.savings_rate_bps
                ),
                budget_utilization_bps=ratio_bps(totals.expenses_cents, total_budgeted),
                category_breakdown=json.dumps(breakdown, sort_keys=True),
                goals_contributed_cents=totals.goals_cents,
                investments_added_cents=totals.investments_cents,
                installments_paid_cents=totals.installments_cents,
            )
            self.session.add(report)

            budget.status = BudgetStatus.closed
            next_year, next_month = shift_month(budget.year, budget.month, 1)
            new_budget = Budget(
                monthly_salary_cents=budget.monthly_salary_cents,
                savings_rate_bps=budget.savings_rate_bps,
                account_id=budget.account_id,
                status=BudgetStatus.active,
                month=next_month,
                year=next_year,
            )
            self.session.add(new_budget)
            self.session.flush()

        logger.info(
            f"close_month: closed_budget={budget.id} period={period.slug} "
            f"new_budget={new_budget.id} report={report.id} "
            f"allocations={len(pending)}"
        )
        return CloseMonthResult(
            closed_budget=budget, new_budget=new_budget, monthly_report=report
        )

    def _allocate(
        self,
        category: BudgetCategory,
        unused: int,
        allocation: AllocationIn,
        today: date,
    ) -> None:
        if allocation.action == AllocationAction.carryover:
            category.budgeted_cents = category.budgeted_cents + unused
            self.session.flush()
            return

        if allocation.destination_id is None:
            raise ValidationError(
                f"Destination {allocation.action.value} required for "
                f"{category.name} allocation"
            )
        txns = TransactionService(self.session)

        if allocation.action == AllocationAction.account:
            account = txns.ledger.account(allocation.destination_id)
            # Negative income amount marks money flowing into the account.
            txns.post(
                date=today,
                description=f"Unused {category.name} budget carried to savings",
                amount_cents=-unused,
                category=SAVINGS_CATEGORY,
                type=TransactionType.income,
                account_id=account.id,
            )
        elif allocation.action == AllocationAction.goal:
            goal = _get_or_404(self.session, Goal, allocation.destination_id, "Goal")
            if goal.account_id is None:
                raise DomainError(f"Goal has no linked account: {goal.name}")
            # Unspent budget is still in the account; only the goal balance moves.
            txns.post(
                date=today,
                description=(
                    f"Deposit from unused {category.name} budget to {goal.name}"
                ),
                amount_cents=unused,
                category=GOAL_ALLOCATION_CATEGORY,
                type=TransactionType.goal,
                account_id=goal.account_id,
                goal_id=goal.id,
                apply_ledger=False,
            )
            goal.current_cents = goal.current_cents + unused
        elif allocation.action == AllocationAction.investment:
            investment = _get_or_404(
                self.session, Investment, allocation.destination_id, "Investment"
            )
            if investment.account_id is None:
                raise DomainError(
                    f"Investment has no linked account: {investment.name}"
                )
            txns.post(
                date=today,
                description=(
                    f"Deposit from unused {category.name} budget to {investment.name}"
                ),
                amount_cents=unused,
                category=INVESTMENT_CATEGORY,
                type=TransactionType.investment,
                account_id=investment.account_id,
                investment_id=investment.id,
                apply_ledger=False,
            )
            investment.current_value_cents = investment.current_value_cents + unused
        self.session.flush()


class MonthlyReportService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self) -> list[MonthlyReport]:
        stmt = select(MonthlyReport).order_by(
            MonthlyReport.year.desc(), MonthlyReport.month.desc(), MonthlyReport.id.desc()
        )
        return self.session.scalars(stmt).all()

    def get(self, report_id: int) -> MonthlyReport:
        return _get_or_404(self.session, MonthlyReport, report_id, "Monthly report")


class GoalService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self) -> list[Goal]:
        stmt = select(Goal).order_by(Goal.created_at.desc(), Goal.id.desc())
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> Goal:
        return _get_or_404(self.session, Goal, goal_id, "Goal")

    def create(self, data: GoalIn) -> Goal:
        with atomic(self.session):
            if data.account_id is not None:
                LedgerService(self.session).account(data.account_id)
            goal = Goal(
                name=data.name,
                target_cents=data.target_cents,
                current_cents=data.current_cents,
                deadline=data.deadline,
                account_id=data.account_id,
            )
            self.session.add(goal)
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: GoalUpdate) -> Goal:
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            goal = self.get(goal_id)
            for field in ("name", "target_cents", "deadline"):
                if field in changes and changes[field] is None:
                    raise ValidationError(f"{field} cannot be null")
            if changes.get("account_id") is not None:
                LedgerService(self.session).account(changes["account_id"])
            for field, value in changes.items():
                setattr(goal, field, value)
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> None:
        with atomic(self.session):
            goal = self.get(goal_id)
            self.session.execute(
                update(Transaction)
                .where(Transaction.goal_id == goal_id)
                .values(goal_id=None)
            )
            self.session.delete(goal)

    def deposit(
        self, goal_id: int, amount_cents: int, account_id: int
    ) -> tuple[Goal, Transaction]:
        if amount_cents <= 0:
            raise ValidationError("Invalid deposit amount")
        with atomic(self.session):
            goal = self.get(goal_id)
            txn = TransactionService(self.session).post(
                date=local_today(),
                description=f"Deposit to {goal.name}",
                amount_cents=amount_cents,
                category=GOAL_DEPOSIT_CATEGORY,
                type=TransactionType.goal,
                account_id=account_id,
                goal_id=goal.id,
            )
            goal.current_cents = goal.current_cents + amount_cents
        self.session.refresh(goal)
        self.session.refresh(txn)
        return goal, txn


class InstallmentService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self) -> list[Installment]:
        stmt = select(Installment).order_by(
            Installment.created_at.desc(), Installment.id.desc()
        )
        return self.session.scalars(stmt).all()

    def get(self, installment_id: int) -> Installment:
        return _get_or_404(self.session, Installment, installment_id, "Installment")

    @staticmethod
    def _status_for(months_paid: int, term: int) -> InstallmentStatus:
        if months_paid >= term:
            return InstallmentStatus.completed
        return InstallmentStatus.active

    def create(self, data: InstallmentIn) -> Installment:
        if data.months_paid > data.term:
            raise ValidationError("Months paid cannot exceed the term")
        with atomic(self.session):
            LedgerService(self.session).account(data.account_id)
            installment = Installment(
                name=data.name,
                monthly_amount_cents=data.monthly_amount_cents,
                term=data.term,
                months_paid=data.months_paid,
                start_date=data.start_date,
                next_payment_date=data.next_payment_date
                or add_months(data.start_date, 1),
                account_id=data.account_id,
                status=self._status_for(data.months_paid, data.term),
            )
            self.session.add(installment)
        self.session.refresh(installment)
        return installment

    def update(self, installment_id: int, data: InstallmentUpdate) -> Installment:
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            installment = self.get(installment_id)
            for field in (
                "name",
                "monthly_amount_cents",
                "term",
                "start_date",
                "next_payment_date",
                "account_id",
            ):
                if field in changes and changes[field] is None:
                    raise ValidationError(f"{field} cannot be null")
            if "account_id" in changes:
                LedgerService(self.session).account(changes["account_id"])
            if "term" in changes and changes["term"] < installment.months_paid:
                raise ValidationError("Term cannot be shorter than months already paid")
            for field, value in changes.items():
                setattr(installment, field, value)
            if "start_date" in changes and "next_payment_date" not in changes:
                installment.next_payment_date = add_months(installment.start_date, 1)
            installment.status = self._status_for(
                installment.months_paid, installment.term
            )
        self.session.refresh(installment)
        return installment

    def delete(self, installment_id: int) -> None:
        with atomic(self.session):
            installment = self.get(installment_id)
            self.session.execute(
                update(Transaction)
                .where(Transaction.installment_id == installment_id)
                .values(installment_id=None)
            )
            self.session.delete(installment)

    def pay(self, installment_id: int) -> tuple[Installment, Transaction]:
        with atomic(self.session):
            installment = self.get(installment_id)
            if installment.months_paid >= installment.term:
                raise DomainError("Installment already fully paid")
            payment_number = installment.months_paid + 1
            txn = TransactionService(self.session).post(
                date=local_today(),
                description=(
                    f"Payment for {installment.name} "
                    f"({payment_number}/{installment.term})"
                ),
                amount_cents=installment.monthly_amount_cents,
                category=INSTALLMENT_CATEGORY,
                type=TransactionType.installment,
                account_id=installment.account_id,
                installment_id=installment.id,
            )
            installment.months_paid = payment_number
            installment.next_payment_date = add_months(
                installment.next_payment_date, 1
            )
            installment.status = self._status_for(
                installment.months_paid, installment.term
            )
        self.session.refresh(installment)
        self.session.refresh(txn)
        return installment, txn


class InvestmentService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self) -> list[Investment]:
        stmt = select(Investment).order_by(
            Investment.created_at.desc(), Investment.id.desc()
        )
        return self.session.scalars(stmt).all()

    def get(self, investment_id: int) -> Investment:
        return _get_or_404(self.session, Investment, investment_id, "Investment")

    def create(self, data: InvestmentIn) -> Investment:
        with atomic(self.session):
            if data.account_id is not None:
                LedgerService(self.session).account(data.account_id)
            investment = Investment(
                name=data.name,
                type=data.type,
                initial_cents=data.initial_cents,
                current_value_cents=(
                    data.current_value_cents
                    if data.current_value_cents is not None
                    else data.initial_cents
                ),
                account_id=data.account_id,
                start_date=data.start_date,
            )
            self.session.add(investment)
        self.session.refresh(investment)
        return investment

    def update(self, investment_id: int, data: InvestmentUpdate) -> Investment:
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            investment = self.get(investment_id)
            for field in ("name", "type", "current_value_cents"):
                if field in changes and changes[field] is None:
                    raise ValidationError(f"{field} cannot be null")
            if changes.get("account_id") is not None:
                LedgerService(self.session).account(changes["account_id"])
            for field, value in changes.items():
                setattr(investment, field, value)
        self.session.refresh(investment)
        return investment

    def _detach_transactions(self, investment_id: int) -> None:
        self.session.execute(
            update(Transaction)
            .where(Transaction.investment_id == investment_id)
            .values(investment_id=None)
        )

    def delete(self, investment_id: int) -> None:
        with atomic(self.session):
            investment = self.get(investment_id)
            self._detach_transactions(investment_id)
            self.session.delete(investment)

    def deposit(
        self, investment_id: int, amount_cents: int, account_id: int
    ) -> tuple[Investment, Transaction]:
        if amount_cents <= 0:
            raise ValidationError("Invalid deposit amount")
        with atomic(self.session):
            investment = self.get(investment_id)
            txns = TransactionService(self.session)
            account = txns.ledger.account(account_id)
            if account.balance_cents < amount_cents:
                raise InsufficientFundsError("Insufficient account balance")
            txn = txns.post(
                date=local_today(),
                description=f"Deposit to {investment.name}",
                amount_cents=amount_cents,
                category=INVESTMENT_CATEGORY,
                type=TransactionType.investment,
                account_id=account.id,
                investment_id=investment.id,
            )
            investment.current_value_cents = (
                investment.current_value_cents + amount_cents
            )
        self.session.refresh(investment)
        self.session.refresh(txn)
        return investment, txn

    def liquidate(
        self,
        investment_id: int,
        action: LiquidationAction,
        destination_type: Optional[LiquidationDestination] = None,
        destination_id: Optional[int] = None,
    ) -> Transaction:
        """Close out an investment, record its history row and delete it."""
        if action == LiquidationAction.transfer and (
            destination_type is None or destination_id is None
        ):
            raise ValidationError("Destination type and ID required for transfer")

        with atomic(self.session):
            investment = self.get(investment_id)
            value = investment.current_value_cents
            txns = TransactionService(self.session)
            today = local_today()

            if action == LiquidationAction.loss:
                txn = txns.post(
                    date=today,
                    description=f"Loss from {investment.name}",
                    amount_cents=value,
                    category=INVESTMENT_LOSS_CATEGORY,
                    type=TransactionType.expense,
                    investment_id=investment.id,
                )
            elif destination_type == LiquidationDestination.account:
                account = txns.ledger.account(destination_id)
                # Negative amount on an investment row credits the account.
                txn = txns.post(
                    date=today,
                    description=f"Liquidation of {investment.name}",
                    amount_cents=-value,
                    category=INVESTMENT_CATEGORY,
                    type=TransactionType.investment,
                    account_id=account.id,
                    investment_id=investment.id,
                )
            else:
                if destination_id == investment.id:
                    raise ValidationError("Cannot transfer an investment into itself")
                target = _get_or_404(
                    self.session, Investment, destination_id, "Target investment"
                )
                target.current_value_cents = target.current_value_cents + value
                txn = txns.post(
                    date=today,
                    description=f"Transfer from {investment.name} to {target.name}",
                    amount_cents=0,
                    category=INVESTMENT_CATEGORY,
                    type=TransactionType.investment,
                    investment_id=target.id,
                )

            self._detach_transactions(investment.id)
            self.session.delete(investment)

        logger.info(
            f"liquidate: investment_id={investment_id} action={action.value} "
            f"destination_type={destination_type.value if destination_type else None} "
            f"destination_id={destination_id} value={format_cents(value)}"
        )
        self.session.refresh(txn)
        return txn


class DashboardService:
    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _trend(current: int, previous: int) -> int:
        if previous > 0:
            return percent_of(current - previous, previous)
        return 100 if current > 0 else 0

    def stats(self, today: Optional[date] = None) -> dict[str, Any]:
        today = today or local_today()
        this_month = month_period(today.year, today.month)
        prev_year, prev_month = shift_month(today.year, today.month, -1)
        current = month_totals(self.session, this_month)
        previous = month_totals(self.session, month_period(prev_year, prev_month))

        total_balance = int(
            self.session.execute(
                select(func.coalesce(func.sum(Account.balance_cents), 0))
            ).scalar_one()
            or 0
        )

        budget = BudgetService(self.session).current()
        budget_amount = budget.monthly_salary_cents if budget else 0

        category_rows = self.session.execute(
            select(
                Transaction.category,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("spent"),
            )
            .where(
                Transaction.date.between(this_month.start, this_month.end),
                Transaction.type != TransactionType.income,
                Transaction.transfer_group_id.is_(None),
                Transaction.amount_cents > 0,
            )
            .group_by(Transaction.category)
            .order_by(Transaction.category.asc())
        ).all()

        monthly: list[dict[str, Any]] = []
        for offset in range(5, -1, -1):
            year, month = shift_month(today.year, today.month, -offset)
            totals = month_totals(self.session, month_period(year, month))
            monthly.append(
                {
                    "month": MONTH_ABBR[month - 1],
                    "year": year,
                    "income_cents": totals.income_cents,
                    "expenses_cents": totals.expenses_cents,
                }
            )

        return {
            "total_balance_cents": total_balance,
            "total_income_cents": current.income_cents,
            "total_expenses_cents": current.expenses_cents,
            "remaining_budget_cents": budget_amount - current.expenses_cents,
            "income_trend_pct": self._trend(current.income_cents, previous.income_cents),
            "expenses_trend_pct": self._trend(
                current.expenses_cents, previous.expenses_cents
            ),
            "category_data": [
                {"name": row.category or "Others", "spent_cents": int(row.spent or 0)}
                for row in category_rows
            ],
            "monthly_data": monthly,
        }


class ExportService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def snapshot(self) -> dict[str, list[Any]]:
        return {
            "accounts": AccountService(self.session).list(),
            "budget_categories": BudgetCategoryService(self.session).list(),
            "budgets": BudgetService(self.session).list(),
            "goals": GoalService(self.session).list(),
            "installments": InstallmentService(self.session).list(),
            "investments": InvestmentService(self.session).list(),
            "transactions": TransactionService(self.session).list(),
            "monthly_reports": MonthlyReportService(self.session).list(),
        }


class ImportService:
    """Additive, best-effort import of an exported bundle.

    Each record is its own unit of work: a failing record is reported and
    skipped without affecting the others. Source ids are dropped and foreign
    keys remapped to the ids generated here.
    """

    ORDER = (
        ("accounts", "Account"),
        ("budget_categories", "Budget category"),
        ("budgets", "Budget"),
        ("goals", "Goal"),
        ("installments", "Installment"),
        ("investments", "Investment"),
        ("transactions", "Transaction"),
    )
    MAX_REPORTED_ERRORS = 10

    def __init__(self, session: Session) -> None:
        self.session = session
        self.id_maps: dict[str, dict[int, int]] = {key: {} for key, _ in self.ORDER}
        self.transfer_groups: dict[str, str] = {}

    @staticmethod
    def _strip(raw: dict[str, Any]) -> dict[str, Any]:
        return {
            k: v for k, v in raw.items() if k not in {"id", "created_at", "updated_at"}
        }

    def _remap(self, kind: str, value: Optional[int]) -> Optional[int]:
        if value is None:
            return None
        return self.id_maps[kind].get(value, value)

    def _import_accounts(self, raw: dict[str, Any]) -> int:
        return AccountService(self.session).create(AccountIn.model_validate(raw)).id

    def _import_budget_categories(self, raw: dict[str, Any]) -> int:
        data = BudgetCategoryIn.model_validate(raw)
        return BudgetCategoryService(self.session).create(data).id

    def _import_budgets(self, raw: dict[str, Any]) -> int:
        raw["account_id"] = self._remap("accounts", raw.get("account_id"))
        return BudgetService(self.session).create(BudgetIn.model_validate(raw)).id

    def _import_goals(self, raw: dict[str, Any]) -> int:
        raw["account_id"] = self._remap("accounts", raw.get("account_id"))
        return GoalService(self.session).create(GoalIn.model_validate(raw)).id

    def _import_installments(self, raw: dict[str, Any]) -> int:
        raw["account_id"] = self._remap("accounts", raw.get("account_id"))
        data = InstallmentIn.model_validate(raw)
        return InstallmentService(self.session).create(data).id

    def _import_investments(self, raw: dict[str, Any]) -> int:
        raw["account_id"] = self._remap("accounts", raw.get("account_id"))
        data = InvestmentIn.model_validate(raw)
        return InvestmentService(self.session).create(data).id

    def _import_transactions(self, raw: dict[str, Any]) -> int:
        for field in ("account_id", "source_account_id", "destination_account_id"):
            raw[field] = self._remap("accounts", raw.get(field))
        raw["goal_id"] = self._remap("goals", raw.get("goal_id"))
        raw["installment_id"] = self._remap("installments", raw.get("installment_id"))
        raw["investment_id"] = self._remap("investments", raw.get("investment_id"))
        raw["category_id"] = self._remap("budget_categories", raw.get("category_id"))
        data = TransactionImport.model_validate(raw)
        values = data.model_dump()
        if data.transfer_group_id:
            values["transfer_group_id"] = self.transfer_groups.setdefault(
                data.transfer_group_id, str(uuid.uuid4())
            )
        # Imported balances already include these rows.
        with atomic(self.session):
            txn = TransactionService(self.session).post(**values, apply_ledger=False)
        return txn.id

    def run(self, bundle: dict[str, Any]) -> dict[str, Any]:
        imported = {key: 0 for key, _ in self.ORDER}
        errors: list[str] = []
        for key, label in self.ORDER:
            rows = bundle.get(key)
            if rows is None:
                continue
            if not isinstance(rows, list):
                errors.append(f"{label}: expected a list")
                continue
            importer = getattr(self, f"_import_{key}")
            for raw in rows:
                if not isinstance(raw, dict):
                    errors.append(f"{label}: expected an object")
                    continue
                old_id = raw.get("id")
                try:
                    new_id = importer(self._strip(raw))
                except Exception as exc:
                    errors.append(f"{label}: {exc}")
                    continue
                if isinstance(old_id, int):
                    self.id_maps[key][old_id] = new_id
                imported[key] += 1

        total = sum(imported.values())
        logger.info(f"import: imported={total} errors={len(errors)}")
        if total == 0 and errors:
            return {
                "success": False,
                "message": "Import failed - no records were imported",
                "imported": imported,
                "errors": errors[: self.MAX_REPORTED_ERRORS],
            }
        return {
            "success": True,
            "message": "Import completed",
            "imported": imported,
            "errors": errors[: self.MAX_REPORTED_ERRORS] or None,
        }
