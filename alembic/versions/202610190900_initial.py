"""initial ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


ACCOUNT_TYPE = sa.Enum("cash", "bank", "credit_card", "ewallet", name="accounttype")
TRANSACTION_TYPE = sa.Enum(
    "income",
    "expense",
    "fixed",
    "variable",
    "installment",
    "goal",
    "investment",
    name="transactiontype",
)
BUDGET_STATUS = sa.Enum("active", "closed", name="budgetstatus")
INSTALLMENT_STATUS = sa.Enum("active", "completed", name="installmentstatus")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", ACCOUNT_TYPE, nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credit_limit_cents", sa.Integer()),
        *_timestamps(),
    )

    op.create_table(
        "budget_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("budgeted_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_predefined", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_cents", sa.Integer(), nullable=False),
        sa.Column("current_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deadline", sa.Date(), nullable=False),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
        sa.CheckConstraint("target_cents >= 0", name="ck_goal_target_positive"),
    )

    op.create_table(
        "installments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("monthly_amount_cents", sa.Integer(), nullable=False),
        sa.Column("term", sa.Integer(), nullable=False),
        sa.Column("months_paid", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("next_payment_date", sa.Date(), nullable=False),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", INSTALLMENT_STATUS, nullable=False),
        *_timestamps(),
        sa.CheckConstraint("term > 0", name="ck_installment_term_positive"),
        sa.CheckConstraint(
            "months_paid >= 0 AND months_paid <= term",
            name="ck_installment_months_paid_within_term",
        ),
        sa.CheckConstraint(
            "monthly_amount_cents >= 0", name="ck_installment_amount_positive"
        ),
    )

    op.create_table(
        "investments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("type", sa.String(length=60), nullable=False),
        sa.Column("initial_cents", sa.Integer(), nullable=False),
        sa.Column("current_value_cents", sa.Integer(), nullable=False),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"),
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="SET NULL"),
        ),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
        ),
        sa.Column(
            "goal_id", sa.Integer(), sa.ForeignKey("goals.id", ondelete="SET NULL")
        ),
        sa.Column(
            "installment_id",
            sa.Integer(),
            sa.ForeignKey("installments.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "investment_id",
            sa.Integer(),
            sa.ForeignKey("investments.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "source_account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
        ),
        sa.Column(
            "destination_account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
        ),
        sa.Column("transfer_group_id", sa.String(length=36)),
        *_timestamps(),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index(
        "ix_transactions_transfer_group", "transactions", ["transfer_group_id"]
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("monthly_salary_cents", sa.Integer(), nullable=False),
        sa.Column(
            "savings_rate_bps", sa.Integer(), nullable=False, server_default="2000"
        ),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"),
        ),
        sa.Column("status", BUDGET_STATUS, nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("month >= 1 AND month <= 12", name="ck_budget_month_range"),
        sa.CheckConstraint(
            "savings_rate_bps >= 0 AND savings_rate_bps <= 10000",
            name="ck_budget_savings_rate_range",
        ),
    )
    op.create_index("ix_budgets_status", "budgets", ["status"])

    op.create_table(
        "monthly_reports",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="SET NULL"),
        ),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column(
            "total_income_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "total_expenses_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("budgeted_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "unused_budget_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "savings_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "budget_utilization_bps", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("category_breakdown", sa.Text(), nullable=False),
        sa.Column(
            "goals_contributed_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "investments_added_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "installments_paid_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_monthly_reports_year_month", "monthly_reports", ["year", "month"]
    )


def downgrade():
    op.drop_index("ix_monthly_reports_year_month", table_name="monthly_reports")
    op.drop_table("monthly_reports")
    op.drop_index("ix_budgets_status", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_transfer_group", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("investments")
    op.drop_table("installments")
    op.drop_table("goals")
    op.drop_table("budget_categories")
    op.drop_table("accounts")
    for enum in (INSTALLMENT_STATUS, BUDGET_STATUS, TRANSACTION_TYPE, ACCOUNT_TYPE):
        enum.drop(op.get_bind(), checkfirst=True)
