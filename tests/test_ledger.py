from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Account, AccountType, Transaction, TransactionType
from schemas import (
    AccountIn,
    BudgetCategoryIn,
    BudgetIn,
    TransactionIn,
    TransactionPatch,
)
from services import (
    AccountService,
    BudgetCategoryService,
    BudgetService,
    DomainError,
    InsufficientFundsError,
    LedgerService,
    NotFoundError,
    TransactionFilters,
    TransactionService,
    ValidationError,
    ledger_delta,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_account(session, name: str, balance_cents: int = 0) -> Account:
    return AccountService(session).create(
        AccountIn(name=name, type=AccountType.bank, balance_cents=balance_cents)
    )


def expense(account_id: int, amount_cents: int, category: str = "Food") -> TransactionIn:
    return TransactionIn(
        date=date(2025, 3, 10),
        description="Lunch",
        amount_cents=amount_cents,
        category=category,
        type=TransactionType.expense,
        account_id=account_id,
    )


def test_ledger_delta_signs() -> None:
    assert ledger_delta(TransactionType.income, 500) == 500
    assert ledger_delta(TransactionType.income, -500) == 500
    assert ledger_delta(TransactionType.expense, 500) == -500
    assert ledger_delta(TransactionType.investment, -500) == 500
    assert ledger_delta(TransactionType.goal, 0) == 0


def test_credit_and_debit_adjust_balance() -> None:
    session = make_session()
    bank = make_account(session, "Bank", 10_000)
    ledger = LedgerService(session)

    ledger.credit(bank.id, 2_500)
    ledger.debit(bank.id, 20_000)
    session.commit()

    assert ledger.get_balance(bank.id) == -7_500
    with pytest.raises(NotFoundError):
        ledger.get_balance(999)


def test_record_applies_effect_and_retract_restores_balance() -> None:
    session = make_session()
    bank = make_account(session, "Bank", 100_000)
    txns = TransactionService(session)

    txn = txns.record(expense(bank.id, 12_345))
    session.refresh(bank)
    assert bank.balance_cents == 87_655

    txns.retract(txn.id)
    session.refresh(bank)
    assert bank.balance_cents == 100_000
    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_record_with_unknown_account_leaves_nothing_behind() -> None:
    session = make_session()
    txns = TransactionService(session)

    with pytest.raises(NotFoundError):
        txns.record(expense(404, 1_000))

    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_record_resolves_category_id_case_insensitively() -> None:
    session = make_session()
    bank = make_account(session, "Bank", 10_000)
    food = BudgetCategoryService(session).create(
        BudgetCategoryIn(name="Food", budgeted_cents=5_000)
    )

    txn = TransactionService(session).record(expense(bank.id, 1_000, category="food"))

    assert txn.category_id == food.id
    assert txn.category == "food"


def test_amend_reverses_then_reapplies() -> None:
    session = make_session()
    bank = make_account(session, "Bank", 100_000)
    wallet = make_account(session, "Wallet", 0)
    txns = TransactionService(session)
    txn = txns.record(expense(bank.id, 10_000))

    txns.amend(txn.id, TransactionPatch(amount_cents=25_000))
    session.refresh(bank)
    assert bank.balance_cents == 75_000

    txns.amend(txn.id, TransactionPatch(amount_cents=10_000))
    session.refresh(bank)
    assert bank.balance_cents == 90_000

    txns.amend(txn.id, TransactionPatch(account_id=wallet.id))
    session.refresh(bank)
    session.refresh(wallet)
    assert bank.balance_cents == 100_000
    assert wallet.balance_cents == -10_000

    txns.amend(txn.id, TransactionPatch(type=TransactionType.income))
    session.refresh(wallet)
    assert wallet.balance_cents == 10_000


def test_amend_rejects_null_required_field() -> None:
    session = make_session()
    bank = make_account(session, "Bank", 1_000)
    txns = TransactionService(session)
    txn = txns.record(expense(bank.id, 100))

    with pytest.raises(ValidationError):
        txns.amend(txn.id, TransactionPatch(amount_cents=None))

    session.refresh(bank)
    assert bank.balance_cents == 900


def test_transfer_scenario_conserves_total() -> None:
    session = make_session()
    bank = make_account(session, "Bank", 100_000)
    wallet = make_account(session, "Wallet", 0)
    txns = TransactionService(session)

    withdrawal, deposit = txns.transfer(
        bank.id, wallet.id, 50_000, "Allowance", date(2025, 3, 5)
    )
    session.refresh(bank)
    session.refresh(wallet)

    assert bank.balance_cents == 50_000
    assert wallet.balance_cents == 50_000
    assert withdrawal.transfer_group_id is not None
    assert withdrawal.transfer_group_id == deposit.transfer_group_id
    assert withdrawal.type == TransactionType.expense
    assert deposit.type == TransactionType.income
    assert withdrawal.description == "Allowance (Transfer to Wallet)"
    assert deposit.description == "Allowance (Transfer from Bank)"
    assert withdrawal.category == deposit.category == "Transfer"


def test_transfer_validation() -> None:
    session = make_session()
    bank = make_account(session, "Bank", 100_000)
    wallet = make_account(session, "Wallet", 0)
    txns = TransactionService(session)

    with pytest.raises(ValidationError):
        txns.transfer(bank.id, bank.id, 1_000, "Loop", date(2025, 3, 5))
    with pytest.raises(ValidationError):
        txns.transfer(bank.id, wallet.id, 0, "Nothing", date(2025, 3, 5))
    with pytest.raises(NotFoundError):
        txns.transfer(bank.id, 999, 1_000, "Nowhere", date(2025, 3, 5))

    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_amending_a_transfer_leg_updates_both_legs() -> None:
    session = make_session()
    bank = make_account(session, "Bank", 100_000)
    wallet = make_account(session, "Wallet", 0)
    txns = TransactionService(session)
    withdrawal, deposit = txns.transfer(
        bank.id, wallet.id, 50_000, "Allowance", date(2025, 3, 5)
    )

    txns.amend(deposit.id, TransactionPatch(amount_cents=30_000))
    session.refresh(bank)
    session.refresh(wallet)
    session.refresh(withdrawal)

    assert withdrawal.amount_cents == 30_000
    assert bank.balance_cents == 70_000
    assert wallet.balance_cents == 30_000

    with pytest.raises(ValidationError):
        txns.amend(deposit.id, TransactionPatch(type=TransactionType.expense))


def test_retracting_one_transfer_leg_removes_both() -> None:
    session = make_session()
    bank = make_account(session, "Bank", 100_000)
    wallet = make_account(session, "Wallet", 0)
    txns = TransactionService(session)
    withdrawal, _ = txns.transfer(
        bank.id, wallet.id, 50_000, "Allowance", date(2025, 3, 5)
    )

    txns.retract(withdrawal.id)
    session.refresh(bank)
    session.refresh(wallet)

    assert bank.balance_cents == 100_000
    assert wallet.balance_cents == 0
    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_budget_transfer_requires_budget_and_funds() -> None:
    session = make_session()
    bank = make_account(session, "Bank", 10_000)
    wallet = make_account(session, "Wallet", 0)
    txns = TransactionService(session)

    with pytest.raises(DomainError):
        txns.budget_transfer(bank.id, wallet.id, 5_000, "Groceries money")

    BudgetService(session).create(
        BudgetIn(monthly_salary_cents=3_000_000, month=3, year=2025)
    )
    with pytest.raises(InsufficientFundsError) as excinfo:
        txns.budget_transfer(bank.id, wallet.id, 50_000, "Groceries money")
    assert "Available: 100.00" in str(excinfo.value)

    withdrawal, deposit = txns.budget_transfer(bank.id, wallet.id, 5_000, "Groceries money")
    session.refresh(bank)
    session.refresh(wallet)
    assert bank.balance_cents == 5_000
    assert wallet.balance_cents == 5_000
    assert withdrawal.transfer_group_id == deposit.transfer_group_id


def test_list_filters() -> None:
    session = make_session()
    bank = make_account(session, "Bank", 100_000)
    wallet = make_account(session, "Wallet", 0)
    txns = TransactionService(session)
    txns.record(expense(bank.id, 1_000, category="Food"))
    txns.record(expense(wallet.id, 2_000, category="Fun"))
    txns.record(
        TransactionIn(
            date=date(2025, 4, 1),
            description="Salary",
            amount_cents=50_000,
            category="Salary",
            type=TransactionType.income,
            account_id=bank.id,
        )
    )

    assert len(txns.list()) == 3
    assert len(txns.list(TransactionFilters(account_id=bank.id))) == 2
    assert len(txns.list(TransactionFilters(type=TransactionType.income))) == 1
    assert len(txns.list(TransactionFilters(category="Fun"))) == 1
    march = txns.list(
        TransactionFilters(start=date(2025, 3, 1), end=date(2025, 3, 31))
    )
    assert {t.category for t in march} == {"Food", "Fun"}
