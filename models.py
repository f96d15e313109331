from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class AccountType(str, Enum):
    cash = "cash"
    bank = "bank"
    credit_card = "credit_card"
    ewallet = "ewallet"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    fixed = "fixed"
    variable = "variable"
    installment = "installment"
    goal = "goal"
    investment = "investment"


class BudgetStatus(str, Enum):
    active = "active"
    closed = "closed"


class InstallmentStatus(str, Enum):
    active = "active"
    completed = "completed"


class AllocationAction(str, Enum):
    carryover = "carryover"
    account = "account"
    goal = "goal"
    investment = "investment"


class LiquidationAction(str, Enum):
    transfer = "transfer"
    loss = "loss"


class LiquidationDestination(str, Enum):
    account = "account"
    investment = "investment"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    # Signed: credit cards and overdrawn accounts go negative.
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_limit_cents: Mapped[Optional[int]] = mapped_column(Integer)


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    budgeted_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_predefined: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deadline: Mapped[date] = mapped_column(Date, nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL")
    )

    __table_args__ = (
        CheckConstraint("target_cents >= 0", name="ck_goal_target_positive"),
    )


class Installment(Base, TimestampMixin):
    __tablename__ = "installments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    monthly_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    term: Mapped[int] = mapped_column(Integer, nullable=False)
    months_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    next_payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[InstallmentStatus] = mapped_column(
        SAEnum(InstallmentStatus), nullable=False, default=InstallmentStatus.active
    )

    __table_args__ = (
        CheckConstraint("term > 0", name="ck_installment_term_positive"),
        CheckConstraint(
            "months_paid >= 0 AND months_paid <= term",
            name="ck_installment_months_paid_within_term",
        ),
        CheckConstraint(
            "monthly_amount_cents >= 0", name="ck_installment_amount_positive"
        ),
    )


class Investment(Base, TimestampMixin):
    __tablename__ = "investments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[str] = mapped_column(String(60), nullable=False)
    initial_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_value_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL")
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    # Negative only on inflow markers written by the engine itself.
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="SET NULL")
    )
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE")
    )
    goal_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("goals.id", ondelete="SET NULL")
    )
    installment_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("installments.id", ondelete="SET NULL")
    )
    investment_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("investments.id", ondelete="SET NULL")
    )
    source_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE")
    )
    destination_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE")
    )
    transfer_group_id: Mapped[Optional[str]] = mapped_column(String(36))

    __table_args__ = (
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_transfer_group", "transfer_group_id"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    monthly_salary_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    savings_rate_bps: Mapped[int] = mapped_column(
        Integer, nullable=False, default=2000
    )
    account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL")
    )
    status: Mapped[BudgetStatus] = mapped_column(
        SAEnum(BudgetStatus), nullable=False, default=BudgetStatus.active
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("month >= 1 AND month <= 12", name="ck_budget_month_range"),
        CheckConstraint(
            "savings_rate_bps >= 0 AND savings_rate_bps <= 10000",
            name="ck_budget_savings_rate_range",
        ),
        Index("ix_budgets_status", "status"),
    )


class MonthlyReport(Base):
    __tablename__ = "monthly_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budgets.id", ondelete="SET NULL")
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    total_income_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_expenses_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    budgeted_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unused_budget_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    savings_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    budget_utilization_bps: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    category_breakdown: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    goals_contributed_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    investments_added_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    installments_paid_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (Index("ix_monthly_reports_year_month", "year", "month"),)
