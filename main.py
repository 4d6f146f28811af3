import logging
from dataclasses import asdict

from fastapi import Depends, FastAPI, HTTPException, Response
from sqlalchemy.orm import Session

from balances import ConsistencyError
from database import SessionLocal
from models import Category, Expense, Fund
from scheduler import SchedulerManager
from schemas import (
    CategoryFundsIn,
    CategoryIn,
    CategoryRenameIn,
    ExpenseIn,
    ExpenseUpdateIn,
    FundIn,
    FundUpdateIn,
    SourceFundCheckIn,
)
from services import (
    CategoryService,
    DuplicateName,
    ExpenseConflict,
    ExpenseResult,
    ExpenseService,
    ExpenseValidationError,
    FundInUse,
    FundService,
    NotFoundError,
)
from validation import ValidationResult


logger = logging.getLogger(__name__)

app = FastAPI(title="Fund Balances")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def fund_payload(fund: Fund) -> dict[str, object]:
    return {
        "id": fund.id,
        "name": fund.name,
        "description": fund.description,
        "initial_balance_cents": fund.initial_balance_cents,
        "current_balance_cents": fund.current_balance_cents,
        "start_date": fund.start_date.isoformat(),
    }


def category_payload(category: Category, service: CategoryService) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "fund_id": category.fund_id,
        "fund_ids": sorted(service.funds_for(category.id)),
    }


def expense_payload(expense: Expense) -> dict[str, object]:
    return {
        "id": expense.id,
        "category_id": expense.category_id,
        "date": expense.date.isoformat(),
        "amount_cents": expense.amount_cents,
        "description": expense.description,
        "payment_method": expense.payment_method.value,
        "source_fund_id": expense.source_fund_id,
        "destination_fund_id": expense.destination_fund_id,
        "event": expense.event,
    }


def mutation_payload(outcome: ExpenseResult) -> dict[str, object]:
    payload = expense_payload(outcome.expense)
    payload["warnings"] = outcome.warnings
    return payload


def validation_detail(result: ValidationResult) -> dict[str, object]:
    return {
        "error": "Invalid expense",
        "details": result.errors,
        "warnings": result.warnings,
    }


def expense_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ExpenseValidationError):
        return HTTPException(status_code=400, detail=validation_detail(exc.result))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ExpenseConflict):
        return HTTPException(status_code=409, detail=str(exc))
    logger.error(f"expense_consistency_error: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


@app.get("/funds")
def list_funds(db: Session = Depends(get_db)):
    return [fund_payload(f) for f in FundService(db).list_all()]


@app.post("/funds", status_code=201)
def create_fund(data: FundIn, db: Session = Depends(get_db)):
    try:
        fund = FundService(db).create(data)
    except DuplicateName as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return fund_payload(fund)


@app.get("/funds/{fund_id}")
def get_fund(fund_id: int, db: Session = Depends(get_db)):
    try:
        fund = FundService(db).get(fund_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return fund_payload(fund)


@app.patch("/funds/{fund_id}")
def update_fund(fund_id: int, data: FundUpdateIn, db: Session = Depends(get_db)):
    try:
        fund = FundService(db).update(fund_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except DuplicateName as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return fund_payload(fund)


@app.delete("/funds/{fund_id}", status_code=204)
def delete_fund(fund_id: int, db: Session = Depends(get_db)):
    try:
        FundService(db).delete(fund_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except FundInUse as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/funds/{fund_id}/recalculate")
def recalculate_fund(fund_id: int, db: Session = Depends(get_db)):
    try:
        outcome = FundService(db).recalculate(fund_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(outcome)


@app.get("/funds/{fund_id}/expenses")
def fund_expenses(fund_id: int, limit: int = 200, db: Session = Depends(get_db)):
    try:
        items = ExpenseService(db).list_for_fund(fund_id, limit=min(max(limit, 1), 500))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [expense_payload(e) for e in items]


@app.get("/categories")
def list_categories(db: Session = Depends(get_db)):
    service = CategoryService(db)
    return [category_payload(c, service) for c in service.list_all()]


@app.post("/categories", status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    service = CategoryService(db)
    try:
        category = service.create(data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except DuplicateName as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return category_payload(category, service)


@app.patch("/categories/{category_id}")
def rename_category(
    category_id: int, data: CategoryRenameIn, db: Session = Depends(get_db)
):
    service = CategoryService(db)
    try:
        category = service.rename(category_id, data.name)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except DuplicateName as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return category_payload(category, service)


@app.get("/categories/{category_id}/funds")
def category_funds(category_id: int, db: Session = Depends(get_db)):
    service = CategoryService(db)
    try:
        service.get(category_id)
        funds = service.associated_funds(category_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [fund_payload(f) for f in funds]


@app.put("/categories/{category_id}/funds")
def set_category_funds(
    category_id: int, data: CategoryFundsIn, db: Session = Depends(get_db)
):
    try:
        funds = CategoryService(db).set_funds(category_id, data.fund_ids)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [fund_payload(f) for f in funds]


@app.post("/categories/{category_id}/funds/{fund_id}")
def add_category_fund(category_id: int, fund_id: int, db: Session = Depends(get_db)):
    try:
        funds = CategoryService(db).add_fund(category_id, fund_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [fund_payload(f) for f in funds]


@app.delete("/categories/{category_id}/funds/{fund_id}")
def remove_category_fund(
    category_id: int, fund_id: int, db: Session = Depends(get_db)
):
    try:
        funds = CategoryService(db).remove_fund(category_id, fund_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [fund_payload(f) for f in funds]


@app.get("/categories/{category_id}/source-funds")
def category_source_funds(category_id: int, db: Session = Depends(get_db)):
    try:
        options = CategoryService(db).available_source_funds(category_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {
        "category_id": options.category.id,
        "category_name": options.category.name,
        "has_restrictions": options.has_restrictions,
        "funds": [fund_payload(f) for f in options.funds],
    }


@app.post("/expenses", status_code=201)
def create_expense(data: ExpenseIn, db: Session = Depends(get_db)):
    try:
        outcome = ExpenseService(db).create(data)
    except (ExpenseValidationError, NotFoundError, ConsistencyError) as exc:
        raise expense_http_error(exc) from exc
    return mutation_payload(outcome)


@app.post("/expenses/validate-source-fund")
def validate_source_fund(data: SourceFundCheckIn, db: Session = Depends(get_db)):
    service = ExpenseService(db)
    try:
        if data.expense_id is not None:
            fields = data.model_dump(exclude_unset=True, exclude={"expense_id"})
            result = service.check_update(data.expense_id, ExpenseUpdateIn(**fields))
        else:
            result = service.check(
                data.category_id,
                data.source_fund_id,
                data.destination_fund_id,
                data.amount_cents,
            )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return result.as_dict()


@app.get("/expenses/{expense_id}")
def get_expense(expense_id: int, db: Session = Depends(get_db)):
    try:
        expense = ExpenseService(db).get(expense_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return expense_payload(expense)


@app.patch("/expenses/{expense_id}")
def update_expense(
    expense_id: int, data: ExpenseUpdateIn, db: Session = Depends(get_db)
):
    try:
        outcome = ExpenseService(db).update(expense_id, data)
    except (
        ExpenseValidationError, NotFoundError, ExpenseConflict, ConsistencyError
    ) as exc:
        raise expense_http_error(exc) from exc
    return mutation_payload(outcome)


@app.delete("/expenses/{expense_id}")
def delete_expense(expense_id: int, db: Session = Depends(get_db)):
    try:
        expense = ExpenseService(db).delete(expense_id)
    except (NotFoundError, ConsistencyError) as exc:
        raise expense_http_error(exc) from exc
    return expense_payload(expense)


@app.get("/audit")
def audit_balances(db: Session = Depends(get_db)):
    drifts = FundService(db).audit()
    return [dict(asdict(d), drift_cents=d.drift_cents) for d in drifts]


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
