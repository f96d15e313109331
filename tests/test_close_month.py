import json
from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import (
    AccountType,
    AllocationAction,
    Budget,
    BudgetCategory,
    BudgetStatus,
    Goal,
    MonthlyReport,
    Transaction,
    TransactionType,
)
from schemas import (
    AccountIn,
    AllocationIn,
    BudgetCategoryIn,
    BudgetIn,
    GoalIn,
    InvestmentIn,
    TransactionIn,
)
from services import (
    AccountService,
    BudgetCategoryService,
    BudgetService,
    DomainError,
    GoalService,
    InvestmentService,
    NotFoundError,
    TransactionService,
    ValidationError,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed_groceries_month(session):
    """March 2025 budget with Groceries 500.00 budgeted and 450.00 spent."""
    bank = AccountService(session).create(
        AccountIn(name="Bank", type=AccountType.bank, balance_cents=1_000_000)
    )
    budget = BudgetService(session).create(
        BudgetIn(
            monthly_salary_cents=3_000_000,
            savings_rate_bps=2_000,
            account_id=bank.id,
            month=3,
            year=2025,
        )
    )
    groceries = BudgetCategoryService(session).create(
        BudgetCategoryIn(name="Groceries", budgeted_cents=50_000)
    )
    TransactionService(session).record(
        TransactionIn(
            date=date(2025, 3, 12),
            description="Weekly shop",
            amount_cents=45_000,
            category="Groceries",
            type=TransactionType.variable,
            account_id=bank.id,
        )
    )
    return bank, budget, groceries


def test_default_allocation_carries_unused_budget_over() -> None:
    session = make_session()
    bank, budget, groceries = seed_groceries_month(session)

    result = BudgetService(session).close_month([])

    session.refresh(groceries)
    assert groceries.budgeted_cents == 55_000
    assert result.closed_budget.id == budget.id
    assert result.closed_budget.status == BudgetStatus.closed
    assert result.new_budget.status == BudgetStatus.active
    assert (result.new_budget.year, result.new_budget.month) == (2025, 4)
    assert result.new_budget.monthly_salary_cents == 3_000_000
    assert result.new_budget.account_id == bank.id

    report = result.monthly_report
    assert (report.year, report.month) == (2025, 3)
    assert report.budgeted_cents == 50_000
    assert report.total_expenses_cents == 45_000
    assert report.unused_budget_cents == 5_000
    assert report.budget_utilization_bps == 9_000
    assert report.savings_amount_cents == 600_000
    breakdown = json.loads(report.category_breakdown)
    assert breakdown["Groceries"] == {
        "budgeted_cents": 50_000,
        "spent_cents": 45_000,
        "unused_cents": 5_000,
    }


def test_december_rolls_into_january() -> None:
    session = make_session()
    BudgetService(session).create(
        BudgetIn(monthly_salary_cents=100_000, month=12, year=2024)
    )

    result = BudgetService(session).close_month([])

    assert (result.new_budget.year, result.new_budget.month) == (2025, 1)


def test_account_allocation_credits_destination() -> None:
    session = make_session()
    _, _, groceries = seed_groceries_month(session)
    savings = AccountService(session).create(
        AccountIn(name="Savings", type=AccountType.bank)
    )

    BudgetService(session).close_month(
        [
            AllocationIn(
                category_id=groceries.id,
                unused_cents=5_000,
                action=AllocationAction.account,
                destination_id=savings.id,
            )
        ]
    )

    session.refresh(savings)
    session.refresh(groceries)
    assert savings.balance_cents == 5_000
    assert groceries.budgeted_cents == 50_000
    marker = session.scalar(
        select(Transaction).where(Transaction.account_id == savings.id)
    )
    assert marker.type == TransactionType.income
    assert marker.amount_cents == -5_000
    assert marker.description == "Unused Groceries budget carried to savings"


def test_client_supplied_unused_amount_is_ignored() -> None:
    session = make_session()
    _, _, groceries = seed_groceries_month(session)
    savings = AccountService(session).create(
        AccountIn(name="Savings", type=AccountType.bank)
    )

    BudgetService(session).close_month(
        [
            AllocationIn(
                category_id=groceries.id,
                unused_cents=99_999,
                action=AllocationAction.account,
                destination_id=savings.id,
            )
        ]
    )

    session.refresh(savings)
    assert savings.balance_cents == 5_000


def test_goal_allocation_grows_goal_without_touching_account() -> None:
    session = make_session()
    bank, _, groceries = seed_groceries_month(session)
    goal = GoalService(session).create(
        GoalIn(
            name="Emergency Fund",
            target_cents=500_000,
            deadline=date(2025, 12, 31),
            account_id=bank.id,
        )
    )

    result = BudgetService(session).close_month(
        [
            AllocationIn(
                category_id=groceries.id,
                action=AllocationAction.goal,
                destination_id=goal.id,
            )
        ]
    )

    session.refresh(goal)
    session.refresh(bank)
    assert goal.current_cents == 5_000
    assert bank.balance_cents == 1_000_000 - 45_000
    # Allocations happen after the month's figures are taken.
    assert result.monthly_report.goals_contributed_cents == 0


def test_investment_allocation_grows_value() -> None:
    session = make_session()
    bank, _, groceries = seed_groceries_month(session)
    fund = InvestmentService(session).create(
        InvestmentIn(
            name="Index Fund",
            type="fund",
            initial_cents=100_000,
            account_id=bank.id,
            start_date=date(2025, 1, 1),
        )
    )

    BudgetService(session).close_month(
        [
            AllocationIn(
                category_id=groceries.id,
                action=AllocationAction.investment,
                destination_id=fund.id,
            )
        ]
    )

    session.refresh(fund)
    session.refresh(bank)
    assert fund.current_value_cents == 105_000
    assert bank.balance_cents == 1_000_000 - 45_000
    row = session.scalar(
        select(Transaction).where(Transaction.investment_id == fund.id)
    )
    assert row.description == "Deposit from unused Groceries budget to Index Fund"
    assert row.category == "Investment"
    assert row.account_id == bank.id


def test_failed_allocation_rolls_back_everything() -> None:
    session = make_session()
    _, budget, groceries = seed_groceries_month(session)
    dining = BudgetCategoryService(session).create(
        BudgetCategoryIn(name="Dining", budgeted_cents=20_000)
    )
    unlinked_goal = GoalService(session).create(
        GoalIn(name="Trip", target_cents=100_000, deadline=date(2025, 12, 1))
    )

    with pytest.raises(DomainError):
        BudgetService(session).close_month(
            [
                AllocationIn(
                    category_id=groceries.id,
                    action=AllocationAction.goal,
                    destination_id=unlinked_goal.id,
                )
            ]
        )

    assert session.get(Budget, budget.id).status == BudgetStatus.active
    assert session.get(BudgetCategory, dining.id).budgeted_cents == 20_000
    assert session.get(Goal, unlinked_goal.id).current_cents == 0
    assert session.scalar(select(func.count(MonthlyReport.id))) == 0
    assert session.scalar(select(func.count(Budget.id))) == 1


def test_missing_destination_is_rejected() -> None:
    session = make_session()
    _, budget, groceries = seed_groceries_month(session)
    close = BudgetService(session).close_month

    with pytest.raises(NotFoundError):
        close(
            [
                AllocationIn(
                    category_id=groceries.id,
                    action=AllocationAction.goal,
                    destination_id=404,
                )
            ]
        )
    with pytest.raises(ValidationError):
        close([AllocationIn(category_id=groceries.id, action=AllocationAction.account)])
    with pytest.raises(NotFoundError):
        close([AllocationIn(category_id=404, action=AllocationAction.carryover)])

    assert session.get(Budget, budget.id).status == BudgetStatus.active


def test_close_requires_exactly_one_active_budget() -> None:
    session = make_session()
    budgets = BudgetService(session)

    with pytest.raises(DomainError):
        budgets.close_month([])

    budgets.create(BudgetIn(monthly_salary_cents=100_000, month=3, year=2025))
    with pytest.raises(DomainError):
        budgets.create(BudgetIn(monthly_salary_cents=100_000, month=4, year=2025))

    session.add(
        Budget(
            monthly_salary_cents=100_000,
            savings_rate_bps=2_000,
            status=BudgetStatus.active,
            month=5,
            year=2025,
        )
    )
    session.commit()
    with pytest.raises(DomainError):
        budgets.close_month([])


def test_report_totals_exclude_transfers_and_split_by_type() -> None:
    session = make_session()
    bank, _, _ = seed_groceries_month(session)
    wallet = AccountService(session).create(
        AccountIn(name="Wallet", type=AccountType.ewallet)
    )
    txns = TransactionService(session)
    txns.record(
        TransactionIn(
            date=date(2025, 3, 1),
            description="Salary",
            amount_cents=3_000_000,
            category="Salary",
            type=TransactionType.income,
            account_id=bank.id,
        )
    )
    txns.record(
        TransactionIn(
            date=date(2025, 3, 20),
            description="Phone plan",
            amount_cents=5_000,
            category="Installment",
            type=TransactionType.installment,
            account_id=bank.id,
        )
    )
    txns.transfer(bank.id, wallet.id, 10_000, "Pocket money", date(2025, 3, 21))

    report = BudgetService(session).close_month([]).monthly_report

    assert report.total_income_cents == 3_000_000
    assert report.total_expenses_cents == 50_000
    assert report.installments_paid_cents == 5_000
    breakdown = json.loads(report.category_breakdown)
    assert sum(row["spent_cents"] for row in breakdown.values()) == 45_000
