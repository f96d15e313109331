import datetime as dt
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from models import (
    AccountType,
    AllocationAction,
    BudgetStatus,
    InstallmentStatus,
    LiquidationAction,
    LiquidationDestination,
    TransactionType,
)
from money import parse_amount


class AmountInput(BaseModel):
    """Base for request bodies carrying money.

    Integers are taken as cents. Strings are decimal amounts ("250.00",
    "₱1,234.50") and are converted to cents before the field constraints run.
    """

    @field_validator("*", mode="before")
    @classmethod
    def _parse_amount_text(cls, value, info: ValidationInfo):
        if info.field_name and info.field_name.endswith("_cents") and isinstance(value, str):
            return parse_amount(value, allow_negative=True)
        return value


class AccountIn(AmountInput):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    balance_cents: int = 0
    credit_limit_cents: Optional[int] = Field(default=None, ge=0)


class AccountUpdate(AmountInput):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    balance_cents: Optional[int] = None
    credit_limit_cents: Optional[int] = Field(default=None, ge=0)


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance_cents: int
    credit_limit_cents: Optional[int]
    created_at: datetime


class TransactionIn(AmountInput):
    date: dt.date
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., ge=0)
    category: str = Field(..., min_length=1, max_length=100)
    category_id: Optional[int] = None
    type: TransactionType
    account_id: Optional[int] = None
    goal_id: Optional[int] = None
    installment_id: Optional[int] = None
    investment_id: Optional[int] = None


class TransactionPatch(AmountInput):
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount_cents: Optional[int] = Field(default=None, ge=0)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    category_id: Optional[int] = None
    type: Optional[TransactionType] = None
    account_id: Optional[int] = None
    goal_id: Optional[int] = None
    installment_id: Optional[int] = None
    investment_id: Optional[int] = None


class TransactionImport(TransactionIn):
    model_config = ConfigDict(extra="ignore")

    amount_cents: int
    source_account_id: Optional[int] = None
    destination_account_id: Optional[int] = None
    transfer_group_id: Optional[str] = Field(default=None, max_length=36)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: dt.date
    description: str
    amount_cents: int
    category: str
    category_id: Optional[int]
    type: TransactionType
    account_id: Optional[int]
    goal_id: Optional[int]
    installment_id: Optional[int]
    investment_id: Optional[int]
    source_account_id: Optional[int]
    destination_account_id: Optional[int]
    transfer_group_id: Optional[str]


class TransferIn(AmountInput):
    source_account_id: int
    destination_account_id: int
    amount_cents: int
    description: str = Field(..., min_length=1, max_length=150)
    date: dt.date


class BudgetTransferIn(AmountInput):
    source_account_id: int = Field(..., gt=0)
    destination_account_id: int = Field(..., gt=0)
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=150)


class TransferOut(BaseModel):
    withdrawal: TransactionOut
    deposit: TransactionOut


class BudgetIn(AmountInput):
    model_config = ConfigDict(extra="ignore")

    monthly_salary_cents: int = Field(..., ge=0)
    savings_rate_bps: int = Field(default=2000, ge=0, le=10_000)
    account_id: Optional[int] = None
    status: BudgetStatus = BudgetStatus.active
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=3000)


class BudgetUpdate(AmountInput):
    monthly_salary_cents: Optional[int] = Field(default=None, ge=0)
    savings_rate_bps: Optional[int] = Field(default=None, ge=0, le=10_000)
    account_id: Optional[int] = None
    month: Optional[int] = Field(default=None, ge=1, le=12)
    year: Optional[int] = Field(default=None, ge=2000, le=3000)


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    monthly_salary_cents: int
    savings_rate_bps: int
    account_id: Optional[int]
    status: BudgetStatus
    month: int
    year: int


class BudgetCategoryIn(AmountInput):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1, max_length=100)
    budgeted_cents: int = Field(default=0, ge=0)
    is_predefined: bool = False


class BudgetCategoryUpdate(AmountInput):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    budgeted_cents: Optional[int] = Field(default=None, ge=0)


class BudgetCategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    budgeted_cents: int
    is_predefined: bool


class CategoryUsageOut(BaseModel):
    id: int
    name: str
    budgeted_cents: int
    spent_cents: int
    percent_used: int
    color: str
    is_predefined: bool


class AllocationIn(AmountInput):
    category_id: int
    unused_cents: Optional[int] = None
    action: AllocationAction
    destination_id: Optional[int] = None


class CloseMonthIn(BaseModel):
    allocations: list[AllocationIn] = Field(default_factory=list)


class MonthlyReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: Optional[int]
    month: int
    year: int
    total_income_cents: int
    total_expenses_cents: int
    budgeted_cents: int
    unused_budget_cents: int
    savings_amount_cents: int
    budget_utilization_bps: int
    category_breakdown: str
    goals_contributed_cents: int
    investments_added_cents: int
    installments_paid_cents: int
    created_at: datetime


class CloseMonthOut(BaseModel):
    closed_budget: BudgetOut
    new_budget: BudgetOut
    monthly_report: MonthlyReportOut


class GoalIn(AmountInput):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1, max_length=120)
    target_cents: int = Field(..., ge=0)
    current_cents: int = Field(default=0, ge=0)
    deadline: date
    account_id: Optional[int] = None


class GoalUpdate(AmountInput):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    target_cents: Optional[int] = Field(default=None, ge=0)
    deadline: Optional[date] = None
    account_id: Optional[int] = None


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    target_cents: int
    current_cents: int
    deadline: date
    account_id: Optional[int]


class DepositIn(AmountInput):
    amount_cents: int
    account_id: int


class GoalDepositOut(BaseModel):
    goal: GoalOut
    transaction: TransactionOut


class InstallmentIn(AmountInput):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1, max_length=120)
    monthly_amount_cents: int = Field(..., ge=0)
    term: int = Field(..., gt=0)
    months_paid: int = Field(default=0, ge=0)
    start_date: date
    next_payment_date: Optional[date] = None
    account_id: int
    status: InstallmentStatus = InstallmentStatus.active


class InstallmentUpdate(AmountInput):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    monthly_amount_cents: Optional[int] = Field(default=None, ge=0)
    term: Optional[int] = Field(default=None, gt=0)
    start_date: Optional[date] = None
    next_payment_date: Optional[date] = None
    account_id: Optional[int] = None


class InstallmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    monthly_amount_cents: int
    term: int
    months_paid: int
    start_date: date
    next_payment_date: date
    account_id: int
    status: InstallmentStatus


class InstallmentPaymentOut(BaseModel):
    installment: InstallmentOut
    transaction: TransactionOut


class InvestmentIn(AmountInput):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1, max_length=120)
    type: str = Field(..., min_length=1, max_length=60)
    initial_cents: int = Field(..., ge=0)
    current_value_cents: Optional[int] = Field(default=None, ge=0)
    account_id: Optional[int] = None
    start_date: date


class InvestmentUpdate(AmountInput):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    type: Optional[str] = Field(default=None, min_length=1, max_length=60)
    current_value_cents: Optional[int] = Field(default=None, ge=0)
    account_id: Optional[int] = None


class InvestmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: str
    initial_cents: int
    current_value_cents: int
    account_id: Optional[int]
    start_date: date


class InvestmentDepositOut(BaseModel):
    investment: InvestmentOut
    transaction: TransactionOut


class LiquidationIn(BaseModel):
    action: LiquidationAction
    destination_type: Optional[LiquidationDestination] = None
    destination_id: Optional[int] = None


class ImportResult(BaseModel):
    success: bool
    message: str
    imported: dict[str, int]
    errors: Optional[list[str]] = None
