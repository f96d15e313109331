from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import (
    AccountType,
    InstallmentStatus,
    Investment,
    LiquidationAction,
    LiquidationDestination,
    Transaction,
    TransactionType,
)
from schemas import (
    AccountIn,
    GoalIn,
    InstallmentIn,
    InstallmentUpdate,
    InvestmentIn,
)
from services import (
    AccountService,
    DomainError,
    GoalService,
    InstallmentService,
    InsufficientFundsError,
    InvestmentService,
    NotFoundError,
    ValidationError,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_bank(session, balance_cents=100_000):
    return AccountService(session).create(
        AccountIn(name="Bank", type=AccountType.bank, balance_cents=balance_cents)
    )


def make_investment(session, name, value_cents, account_id=None):
    return InvestmentService(session).create(
        InvestmentIn(
            name=name,
            type="stocks",
            initial_cents=value_cents,
            account_id=account_id,
            start_date=date(2025, 1, 1),
        )
    )


def test_goal_deposit_debits_account_and_grows_goal() -> None:
    session = make_session()
    bank = make_bank(session)
    goals = GoalService(session)
    goal = goals.create(
        GoalIn(name="Emergency Fund", target_cents=500_000, deadline=date(2025, 12, 31))
    )

    goal, txn = goals.deposit(goal.id, 20_000, bank.id)

    session.refresh(bank)
    assert goal.current_cents == 20_000
    assert bank.balance_cents == 80_000
    assert txn.type == TransactionType.goal
    assert txn.description == "Deposit to Emergency Fund"
    assert txn.category == "Goal Savings"
    assert txn.goal_id == goal.id


def test_goal_deposit_validation_is_atomic() -> None:
    session = make_session()
    bank = make_bank(session)
    goals = GoalService(session)
    goal = goals.create(
        GoalIn(name="Car", target_cents=1_000_000, deadline=date(2026, 6, 30))
    )

    with pytest.raises(ValidationError):
        goals.deposit(goal.id, 0, bank.id)
    with pytest.raises(NotFoundError):
        goals.deposit(goal.id, 1_000, 999)
    with pytest.raises(NotFoundError):
        goals.deposit(999, 1_000, bank.id)

    assert goals.get(goal.id).current_cents == 0
    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_installment_defaults_next_payment_to_one_month_after_start() -> None:
    session = make_session()
    bank = make_bank(session)
    installments = InstallmentService(session)

    plan = installments.create(
        InstallmentIn(
            name="Laptop",
            monthly_amount_cents=10_000,
            term=3,
            start_date=date(2025, 1, 31),
            account_id=bank.id,
        )
    )
    assert plan.next_payment_date == date(2025, 2, 28)

    plan = installments.update(
        plan.id, InstallmentUpdate(start_date=date(2025, 3, 15))
    )
    assert plan.next_payment_date == date(2025, 4, 15)

    with pytest.raises(NotFoundError):
        installments.create(
            InstallmentIn(
                name="Phone",
                monthly_amount_cents=5_000,
                term=12,
                start_date=date(2025, 1, 1),
                account_id=999,
            )
        )


def test_installment_completes_after_term_then_rejects_payment() -> None:
    session = make_session()
    bank = make_bank(session)
    installments = InstallmentService(session)
    plan = installments.create(
        InstallmentIn(
            name="Laptop",
            monthly_amount_cents=10_000,
            term=2,
            start_date=date(2025, 1, 15),
            account_id=bank.id,
        )
    )

    plan, first = installments.pay(plan.id)
    assert plan.months_paid == 1
    assert plan.status == InstallmentStatus.active
    assert plan.next_payment_date == date(2025, 3, 15)
    assert first.description == "Payment for Laptop (1/2)"
    assert first.category == "Installment"
    assert first.installment_id == plan.id

    plan, second = installments.pay(plan.id)
    assert plan.months_paid == 2
    assert plan.status == InstallmentStatus.completed
    assert second.description == "Payment for Laptop (2/2)"

    with pytest.raises(DomainError):
        installments.pay(plan.id)

    session.refresh(bank)
    assert bank.balance_cents == 80_000
    assert installments.get(plan.id).months_paid == 2


def test_installment_term_cannot_drop_below_paid_months() -> None:
    session = make_session()
    bank = make_bank(session)
    installments = InstallmentService(session)
    plan = installments.create(
        InstallmentIn(
            name="Sofa",
            monthly_amount_cents=1_000,
            term=4,
            months_paid=3,
            start_date=date(2025, 1, 1),
            account_id=bank.id,
        )
    )

    with pytest.raises(ValidationError):
        installments.update(plan.id, InstallmentUpdate(term=2))

    plan = installments.update(plan.id, InstallmentUpdate(term=3))
    assert plan.status == InstallmentStatus.completed


def test_investment_deposit_requires_funds() -> None:
    session = make_session()
    bank = make_bank(session, balance_cents=10_000)
    investments = InvestmentService(session)
    fund = make_investment(session, "Index Fund", 50_000, account_id=bank.id)

    with pytest.raises(InsufficientFundsError):
        investments.deposit(fund.id, 20_000, bank.id)
    assert investments.get(fund.id).current_value_cents == 50_000

    fund, txn = investments.deposit(fund.id, 10_000, bank.id)
    session.refresh(bank)
    assert fund.current_value_cents == 60_000
    assert bank.balance_cents == 0
    assert txn.type == TransactionType.investment
    assert txn.description == "Deposit to Index Fund"


def test_liquidate_to_account_credits_value_and_removes_investment() -> None:
    session = make_session()
    bank = make_bank(session, balance_cents=0)
    fund = make_investment(session, "Bonds", 50_000)

    txn = InvestmentService(session).liquidate(
        fund.id,
        LiquidationAction.transfer,
        destination_type=LiquidationDestination.account,
        destination_id=bank.id,
    )

    session.refresh(bank)
    assert bank.balance_cents == 50_000
    assert txn.amount_cents == -50_000
    assert txn.type == TransactionType.investment
    assert session.get(Investment, fund.id) is None


def test_liquidate_to_investment_moves_value() -> None:
    session = make_session()
    source = make_investment(session, "Crypto", 30_000)
    target = make_investment(session, "Index Fund", 70_000)

    txn = InvestmentService(session).liquidate(
        source.id,
        LiquidationAction.transfer,
        destination_type=LiquidationDestination.investment,
        destination_id=target.id,
    )

    session.refresh(target)
    assert target.current_value_cents == 100_000
    assert txn.amount_cents == 0
    assert txn.investment_id == target.id
    assert txn.account_id is None
    assert session.get(Investment, source.id) is None


def test_liquidate_as_loss_records_expense_without_account() -> None:
    session = make_session()
    bank = make_bank(session)
    fund = make_investment(session, "Startup", 25_000, account_id=bank.id)

    txn = InvestmentService(session).liquidate(fund.id, LiquidationAction.loss)

    session.refresh(bank)
    assert bank.balance_cents == 100_000
    assert txn.type == TransactionType.expense
    assert txn.description == "Loss from Startup"
    assert txn.category == "Investment Loss"
    assert txn.amount_cents == 25_000
    assert txn.account_id is None
    assert session.get(Investment, fund.id) is None


def test_liquidation_validation() -> None:
    session = make_session()
    fund = make_investment(session, "Gold", 10_000)
    investments = InvestmentService(session)

    with pytest.raises(ValidationError):
        investments.liquidate(fund.id, LiquidationAction.transfer)
    with pytest.raises(ValidationError):
        investments.liquidate(
            fund.id,
            LiquidationAction.transfer,
            destination_type=LiquidationDestination.investment,
            destination_id=fund.id,
        )
    with pytest.raises(NotFoundError):
        investments.liquidate(
            fund.id,
            LiquidationAction.transfer,
            destination_type=LiquidationDestination.account,
            destination_id=999,
        )

    assert investments.get(fund.id).current_value_cents == 10_000
