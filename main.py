import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import export_bundle
from database import SessionLocal
from models import TransactionType
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdate,
    BudgetCategoryIn,
    BudgetCategoryOut,
    BudgetCategoryUpdate,
    BudgetIn,
    BudgetOut,
    BudgetTransferIn,
    BudgetUpdate,
    CategoryUsageOut,
    CloseMonthIn,
    CloseMonthOut,
    DepositIn,
    GoalDepositOut,
    GoalIn,
    GoalOut,
    GoalUpdate,
    ImportResult,
    InstallmentIn,
    InstallmentOut,
    InstallmentPaymentOut,
    InstallmentUpdate,
    InvestmentDepositOut,
    InvestmentIn,
    InvestmentOut,
    InvestmentUpdate,
    LiquidationIn,
    MonthlyReportOut,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
    TransferIn,
    TransferOut,
)
from services import (
    AccountService,
    BudgetCategoryService,
    BudgetService,
    DashboardService,
    DomainError,
    ExportService,
    GoalService,
    ImportService,
    InstallmentService,
    InvestmentService,
    MonthlyReportService,
    NotFoundError,
    TransactionFilters,
    TransactionService,
    ValidationError,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Personal Finance Ledger")

EXPORT_MODELS = {
    "accounts": AccountOut,
    "budget_categories": BudgetCategoryOut,
    "budgets": BudgetOut,
    "goals": GoalOut,
    "installments": InstallmentOut,
    "investments": InvestmentOut,
    "transactions": TransactionOut,
    "monthly_reports": MonthlyReportOut,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.exception_handler(NotFoundError)
def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
@app.exception_handler(DomainError)
def bad_request_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    return JSONResponse(status_code=400, content={"detail": "; ".join(messages)})


@app.exception_handler(Exception)
def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Accounts


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(db: Session = Depends(get_db)):
    return AccountService(db).list()


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(payload: AccountIn, db: Session = Depends(get_db)):
    return AccountService(db).create(payload)


@app.get("/api/accounts/{account_id}", response_model=AccountOut)
def get_account(account_id: int, db: Session = Depends(get_db)):
    return AccountService(db).get(account_id)


@app.patch("/api/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int, payload: AccountUpdate, db: Session = Depends(get_db)
):
    return AccountService(db).update(account_id, payload)


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(account_id: int, db: Session = Depends(get_db)):
    AccountService(db).delete(account_id)
    return Response(status_code=204)


# Transactions


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    start: Optional[date] = None,
    end: Optional[date] = None,
    account_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    category: Optional[str] = None,
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        start=start, end=end, account_id=account_id, type=type, category=category
    )
    return TransactionService(db).list(filters)


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return TransactionService(db).get(transaction_id)


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    return TransactionService(db).record(payload)


@app.patch("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int, payload: TransactionPatch, db: Session = Depends(get_db)
):
    return TransactionService(db).amend(transaction_id, payload)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    TransactionService(db).retract(transaction_id)
    return Response(status_code=204)


@app.post("/api/transfers", response_model=TransferOut, status_code=201)
def create_transfer(payload: TransferIn, db: Session = Depends(get_db)):
    withdrawal, deposit = TransactionService(db).transfer(
        payload.source_account_id,
        payload.destination_account_id,
        payload.amount_cents,
        payload.description,
        payload.date,
    )
    return TransferOut(
        withdrawal=TransactionOut.model_validate(withdrawal),
        deposit=TransactionOut.model_validate(deposit),
    )


@app.post("/api/budget-transfers", response_model=TransferOut, status_code=201)
def create_budget_transfer(payload: BudgetTransferIn, db: Session = Depends(get_db)):
    withdrawal, deposit = TransactionService(db).budget_transfer(
        payload.source_account_id,
        payload.destination_account_id,
        payload.amount_cents,
        payload.description,
    )
    return TransferOut(
        withdrawal=TransactionOut.model_validate(withdrawal),
        deposit=TransactionOut.model_validate(deposit),
    )


# Budgets


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(db: Session = Depends(get_db)):
    return BudgetService(db).list()


@app.get("/api/budgets/current", response_model=Optional[BudgetOut])
def current_budget(db: Session = Depends(get_db)):
    return BudgetService(db).current()


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    return BudgetService(db).create(payload)


@app.patch("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(budget_id: int, payload: BudgetUpdate, db: Session = Depends(get_db)):
    return BudgetService(db).update(budget_id, payload)


@app.post("/api/budgets/close-month", response_model=CloseMonthOut)
def close_month(payload: CloseMonthIn, db: Session = Depends(get_db)):
    result = BudgetService(db).close_month(payload.allocations)
    return CloseMonthOut(
        closed_budget=BudgetOut.model_validate(result.closed_budget),
        new_budget=BudgetOut.model_validate(result.new_budget),
        monthly_report=MonthlyReportOut.model_validate(result.monthly_report),
    )


# Budget categories


@app.get("/api/budget-categories", response_model=list[BudgetCategoryOut])
def list_budget_categories(db: Session = Depends(get_db)):
    return BudgetCategoryService(db).list()


@app.get("/api/budget-categories/usage", response_model=list[CategoryUsageOut])
def budget_category_usage(
    month: Optional[int] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_db),
):
    try:
        return BudgetCategoryService(db).usage(year=year, month=month)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


@app.post("/api/budget-categories", response_model=BudgetCategoryOut, status_code=201)
def create_budget_category(payload: BudgetCategoryIn, db: Session = Depends(get_db)):
    return BudgetCategoryService(db).create(payload)


@app.patch("/api/budget-categories/{category_id}", response_model=BudgetCategoryOut)
def update_budget_category(
    category_id: int, payload: BudgetCategoryUpdate, db: Session = Depends(get_db)
):
    return BudgetCategoryService(db).update(category_id, payload)


@app.delete("/api/budget-categories/{category_id}", status_code=204)
def delete_budget_category(category_id: int, db: Session = Depends(get_db)):
    BudgetCategoryService(db).delete(category_id)
    return Response(status_code=204)


# Monthly reports


@app.get("/api/monthly-reports", response_model=list[MonthlyReportOut])
def list_monthly_reports(db: Session = Depends(get_db)):
    return MonthlyReportService(db).list()


@app.get("/api/monthly-reports/{report_id}", response_model=MonthlyReportOut)
def get_monthly_report(report_id: int, db: Session = Depends(get_db)):
    return MonthlyReportService(db).get(report_id)


# Goals


@app.get("/api/goals", response_model=list[GoalOut])
def list_goals(db: Session = Depends(get_db)):
    return GoalService(db).list()


@app.post("/api/goals", response_model=GoalOut, status_code=201)
def create_goal(payload: GoalIn, db: Session = Depends(get_db)):
    return GoalService(db).create(payload)


@app.get("/api/goals/{goal_id}", response_model=GoalOut)
def get_goal(goal_id: int, db: Session = Depends(get_db)):
    return GoalService(db).get(goal_id)


@app.patch("/api/goals/{goal_id}", response_model=GoalOut)
def update_goal(goal_id: int, payload: GoalUpdate, db: Session = Depends(get_db)):
    return GoalService(db).update(goal_id, payload)


@app.delete("/api/goals/{goal_id}", status_code=204)
def delete_goal(goal_id: int, db: Session = Depends(get_db)):
    GoalService(db).delete(goal_id)
    return Response(status_code=204)


@app.post("/api/goals/{goal_id}/deposit", response_model=GoalDepositOut)
def deposit_to_goal(goal_id: int, payload: DepositIn, db: Session = Depends(get_db)):
    goal, txn = GoalService(db).deposit(goal_id, payload.amount_cents, payload.account_id)
    return GoalDepositOut(
        goal=GoalOut.model_validate(goal),
        transaction=TransactionOut.model_validate(txn),
    )


# Installments


@app.get("/api/installments", response_model=list[InstallmentOut])
def list_installments(db: Session = Depends(get_db)):
    return InstallmentService(db).list()


@app.post("/api/installments", response_model=InstallmentOut, status_code=201)
def create_installment(payload: InstallmentIn, db: Session = Depends(get_db)):
    return InstallmentService(db).create(payload)


@app.get("/api/installments/{installment_id}", response_model=InstallmentOut)
def get_installment(installment_id: int, db: Session = Depends(get_db)):
    return InstallmentService(db).get(installment_id)


@app.patch("/api/installments/{installment_id}", response_model=InstallmentOut)
def update_installment(
    installment_id: int, payload: InstallmentUpdate, db: Session = Depends(get_db)
):
    return InstallmentService(db).update(installment_id, payload)


@app.delete("/api/installments/{installment_id}", status_code=204)
def delete_installment(installment_id: int, db: Session = Depends(get_db)):
    InstallmentService(db).delete(installment_id)
    return Response(status_code=204)


@app.post("/api/installments/{installment_id}/payment", response_model=InstallmentPaymentOut)
@app.post("/api/installments/{installment_id}/pay", response_model=InstallmentPaymentOut)
def pay_installment(installment_id: int, db: Session = Depends(get_db)):
    installment, txn = InstallmentService(db).pay(installment_id)
    return InstallmentPaymentOut(
        installment=InstallmentOut.model_validate(installment),
        transaction=TransactionOut.model_validate(txn),
    )


# Investments


@app.get("/api/investments", response_model=list[InvestmentOut])
def list_investments(db: Session = Depends(get_db)):
    return InvestmentService(db).list()


@app.post("/api/investments", response_model=InvestmentOut, status_code=201)
def create_investment(payload: InvestmentIn, db: Session = Depends(get_db)):
    return InvestmentService(db).create(payload)


@app.get("/api/investments/{investment_id}", response_model=InvestmentOut)
def get_investment(investment_id: int, db: Session = Depends(get_db)):
    return InvestmentService(db).get(investment_id)


@app.patch("/api/investments/{investment_id}", response_model=InvestmentOut)
def update_investment(
    investment_id: int, payload: InvestmentUpdate, db: Session = Depends(get_db)
):
    return InvestmentService(db).update(investment_id, payload)


@app.delete("/api/investments/{investment_id}", status_code=204)
def delete_investment(investment_id: int, db: Session = Depends(get_db)):
    InvestmentService(db).delete(investment_id)
    return Response(status_code=204)


@app.post("/api/investments/{investment_id}/deposit", response_model=InvestmentDepositOut)
def deposit_to_investment(
    investment_id: int, payload: DepositIn, db: Session = Depends(get_db)
):
    investment, txn = InvestmentService(db).deposit(
        investment_id, payload.amount_cents, payload.account_id
    )
    return InvestmentDepositOut(
        investment=InvestmentOut.model_validate(investment),
        transaction=TransactionOut.model_validate(txn),
    )


@app.post("/api/investments/{investment_id}/liquidate", response_model=TransactionOut)
def liquidate_investment(
    investment_id: int, payload: LiquidationIn, db: Session = Depends(get_db)
):
    return InvestmentService(db).liquidate(
        investment_id,
        payload.action,
        destination_type=payload.destination_type,
        destination_id=payload.destination_id,
    )


# Dashboard, import and export


@app.get("/api/dashboard/stats")
def dashboard_stats(db: Session = Depends(get_db)):
    return DashboardService(db).stats()


@app.post("/api/import", response_model=ImportResult)
def import_data(bundle: dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    result = ImportService(db).run(bundle)
    if not result["success"]:
        return JSONResponse(status_code=400, content=result)
    return result


@app.get("/api/export")
def export_data(db: Session = Depends(get_db)):
    snapshot = ExportService(db).snapshot()
    payload: dict[str, Any] = {
        key: [
            EXPORT_MODELS[key].model_validate(obj).model_dump(mode="json")
            for obj in rows
        ]
        for key, rows in snapshot.items()
    }
    payload["exported_at"] = datetime.now(timezone.utc).isoformat()
    return payload


@app.get("/api/export.csv")
def export_data_csv(db: Session = Depends(get_db)):
    csv_text = export_bundle(ExportService(db).snapshot())
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"finance_export_{timestamp}.csv"
    logger.info(f"export_csv: filename={filename}")
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
