import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlalchemy.orm import Session

from auth import current_user_id, issue_access_token
from config import get_settings
from database import get_db
from errors import CLIENT_MESSAGES, ErrorKind, LedgerError, ValidationFailed
from schemas import (
    AuditEntryOut,
    BudgetIn,
    BudgetOut,
    BudgetUpdate,
    CategoryIn,
    CategoryOut,
    ErrorOut,
    ExpenseIn,
    ExpenseListParams,
    ExpenseOut,
    ExpenseUpdate,
    PageOut,
    TokenOut,
    UserIn,
    UserOut,
)
from services import (
    BudgetService,
    CategoryService,
    ExpenseService,
    UserService,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Spendwise Ledger")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

STATUS_BY_KIND = {
    ErrorKind.resource_not_found: 404,
    ErrorKind.access_denied: 403,
    ErrorKind.validation_error: 400,
    ErrorKind.budget_exceeded: 422,
    ErrorKind.duplicate_budget: 409,
    ErrorKind.unauthorized: 401,
    ErrorKind.internal_error: 500,
}


def error_response(
    kind: ErrorKind, errors: Optional[dict[str, str]] = None
) -> JSONResponse:
    body = ErrorOut(
        error_code=kind.value,
        message=CLIENT_MESSAGES[kind],
        timestamp=datetime.now(timezone.utc),
        errors=errors,
    )
    return JSONResponse(
        status_code=STATUS_BY_KIND[kind],
        content=body.model_dump(mode="json", exclude_none=True),
    )


def _field_errors(raw_errors) -> dict[str, str]:
    errors: dict[str, str] = {}
    for err in raw_errors:
        loc = [
            str(part)
            for part in err.get("loc", ())
            if part not in ("body", "query", "path")
        ]
        field = ".".join(loc) or "request"
        errors.setdefault(field, err.get("msg", "Invalid value"))
    return errors


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    logger.info(
        f"request_rejected: path={request.url.path} kind={exc.kind.value} detail={exc}"
    )
    errors = exc.errors if isinstance(exc, ValidationFailed) else None
    return error_response(exc.kind, errors)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return error_response(ErrorKind.validation_error, _field_errors(exc.errors()))


@app.exception_handler(ValidationError)
async def model_validation_handler(
    request: Request, exc: ValidationError
) -> JSONResponse:
    return error_response(ErrorKind.validation_error, _field_errors(exc.errors()))


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"request_failed: path={request.url.path}")
    return error_response(ErrorKind.internal_error)


def _budget_out(service: BudgetService, budget) -> BudgetOut:
    metrics = service.metrics(budget)
    return BudgetOut(
        id=budget.id,
        amount=budget.amount,
        year=budget.year,
        month=budget.month,
        category_ids=sorted(budget.category_ids),
        total_spent=metrics.total_spent,
        remaining=metrics.remaining,
    )


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/users", status_code=201, response_model=TokenOut)
def register_user(data: UserIn, db: Session = Depends(get_db)):
    user = UserService(db).register(data)
    return TokenOut(
        user=UserOut.model_validate(user), access_token=issue_access_token(user.id)
    )


@app.get("/users/me", response_model=UserOut)
def current_user(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return UserOut.model_validate(UserService(db).get(user_id))


@app.get("/categories", response_model=list[CategoryOut])
def list_categories(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    categories = CategoryService(db, user_id).list_all()
    return [CategoryOut.model_validate(c) for c in categories]


@app.post("/categories", status_code=201, response_model=CategoryOut)
def create_category(
    data: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return CategoryOut.model_validate(CategoryService(db, user_id).create(data))


@app.get("/categories/{category_id}", response_model=CategoryOut)
def get_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return CategoryOut.model_validate(CategoryService(db, user_id).get(category_id))


@app.put("/categories/{category_id}", response_model=CategoryOut)
def rename_category(
    category_id: int,
    data: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    category = CategoryService(db, user_id).rename(category_id, data)
    return CategoryOut.model_validate(category)


@app.delete("/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    CategoryService(db, user_id).delete(category_id)
    return Response(status_code=204)


@app.get("/expenses", response_model=PageOut[ExpenseOut])
def list_expenses(
    category_id: Optional[int] = Query(None, alias="categoryId"),
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    min_amount: Optional[Decimal] = Query(None, alias="minAmount", ge=0),
    max_amount: Optional[Decimal] = Query(None, alias="maxAmount", ge=0),
    page: int = 0,
    size: int = 10,
    sort: Optional[list[str]] = Query(None),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    params = ExpenseListParams(
        category_id=category_id,
        from_date=from_date,
        to_date=to_date,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    result = ExpenseService(db, user_id).list_page(params, page, size, sort or [])
    return PageOut[ExpenseOut](
        content=[ExpenseOut.model_validate(e) for e in result.content],
        page_number=result.page_number,
        page_size=result.page_size,
        total_elements=result.total_elements,
        total_pages=result.total_pages,
        is_first=result.is_first,
        is_last=result.is_last,
        count_on_page=result.count_on_page,
    )


@app.post("/expenses", status_code=201, response_model=ExpenseOut)
def create_expense(
    data: ExpenseIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ExpenseOut.model_validate(ExpenseService(db, user_id).create(data))


@app.get("/expenses/{expense_id}", response_model=ExpenseOut)
def get_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ExpenseOut.model_validate(ExpenseService(db, user_id).get(expense_id))


@app.put("/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense(
    expense_id: int,
    data: ExpenseUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    expense = ExpenseService(db, user_id).update(expense_id, data)
    return ExpenseOut.model_validate(expense)


@app.delete("/expenses/{expense_id}", status_code=204)
def delete_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    ExpenseService(db, user_id).delete(expense_id)
    return Response(status_code=204)


@app.get("/expenses/{expense_id}/history", response_model=list[AuditEntryOut])
def expense_history(
    expense_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    entries = ExpenseService(db, user_id).history(expense_id)
    return [AuditEntryOut.model_validate(e) for e in entries]


@app.get("/budgets", response_model=list[BudgetOut])
def list_budgets(
    year: int,
    month: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = BudgetService(db, user_id)
    return [_budget_out(service, b) for b in service.list_for_period(year, month)]


@app.post("/budgets", status_code=201, response_model=BudgetOut)
def create_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = BudgetService(db, user_id)
    return _budget_out(service, service.create(data))


@app.get("/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = BudgetService(db, user_id)
    return _budget_out(service, service.get(budget_id))


@app.put("/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    data: BudgetUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = BudgetService(db, user_id)
    return _budget_out(service, service.update(budget_id, data))


@app.delete("/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    BudgetService(db, user_id).delete(budget_id)
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
