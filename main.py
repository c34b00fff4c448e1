import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from sqlalchemy.orm import Session

from database import SessionLocal
from models import ExpenseInstance, RecurringTemplate
from scheduler import SchedulerManager
from schemas import (
    CarryForwardIn,
    ExpenseIn,
    MaterializationOut,
    PaymentIn,
    RecurringTemplateIn,
)
from services import (
    ExpenseService,
    RecurringTemplateService,
    get_current_user_id,
    materialize_for_user,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    # Authentication lives in front of this service; it forwards the user.
    return x_user_id or get_current_user_id()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def template_to_dict(template: RecurringTemplate) -> dict[str, object]:
    return {
        "id": template.id,
        "name": template.name,
        "amount_cents": template.amount_cents,
        "category": template.category.value,
        "due_day": template.due_day,
        "start_date": template.start_date.isoformat(),
        "end_date": template.end_date.isoformat() if template.end_date else None,
        "notes": template.notes,
        "status": template.status.value,
    }


def expense_to_dict(instance: ExpenseInstance) -> dict[str, object]:
    return {
        "id": instance.id,
        "name": instance.name,
        "amount_cents": instance.amount_cents,
        "category": instance.category.value,
        "due_date": instance.due_date.isoformat(),
        "status": instance.status.value,
        "paid_cents": instance.paid_cents,
        "remaining_cents": instance.amount_cents - instance.paid_cents,
        "notes": instance.notes,
        "template_id": instance.template_id,
        "materialization_key": instance.materialization_key,
        "carried_forward_from_id": instance.carried_forward_from_id,
    }


@app.post("/api/session/start", status_code=202)
def session_start(user_id: str = Depends(get_user_id)):
    scheduler_manager.trigger(user_id, source="session_start")
    return {"scheduled": True}


@app.post("/api/materialize", response_model=MaterializationOut)
def materialize(
    db: Session = Depends(get_db), user_id: str = Depends(get_user_id)
):
    result = materialize_for_user(db, user_id)
    return MaterializationOut(
        created=result.created,
        skipped=result.skipped,
        errors=result.errors,
        coalesced=result.coalesced,
    )


@app.get("/api/templates")
def list_templates(db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    templates = RecurringTemplateService(db, user_id).list()
    return {"items": [template_to_dict(t) for t in templates]}


@app.post("/api/templates", status_code=201)
def create_template(
    data: RecurringTemplateIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    try:
        template = RecurringTemplateService(db, user_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return template_to_dict(template)


@app.put("/api/templates/{template_id}")
def update_template(
    template_id: int,
    data: RecurringTemplateIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    try:
        template = RecurringTemplateService(db, user_id).update(template_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return template_to_dict(template)


@app.delete("/api/templates/{template_id}")
def delete_template(
    template_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    try:
        result = RecurringTemplateService(db, user_id).delete(template_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"deleted_instances": result.deleted_instances}


@app.get("/api/templates/{template_id}/duplicates")
def template_duplicates(
    template_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    try:
        months = RecurringTemplateService(db, user_id).duplicates(template_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"months": months}


@app.post("/api/templates/{template_id}/repair")
def repair_template(
    template_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    try:
        result = RecurringTemplateService(db, user_id).repair_duplicates(template_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if result.deleted_count:
        logger.info(
            f"repair_requested: user_id={user_id} template_id={template_id} "
            f"deleted={result.deleted_count}"
        )
    return {"deleted_count": result.deleted_count}


@app.post("/api/expenses", status_code=201)
def create_expense(
    data: ExpenseIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    instance = ExpenseService(db, user_id).create(data)
    return expense_to_dict(instance)


@app.post("/api/expenses/{instance_id}/paid")
def mark_expense_paid(
    instance_id: int,
    data: Optional[PaymentIn] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    service = ExpenseService(db, user_id)
    try:
        service.get(instance_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        instance = service.mark_paid(instance_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return expense_to_dict(instance)


@app.post("/api/expenses/{instance_id}/carry-forward", status_code=201)
def carry_forward_expense(
    instance_id: int,
    data: Optional[CarryForwardIn] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    service = ExpenseService(db, user_id)
    try:
        service.get(instance_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        instance = service.carry_forward(instance_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return expense_to_dict(instance)


@app.delete("/api/expenses/{instance_id}")
def delete_expense(
    instance_id: int,
    cascade_forward: bool = False,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    try:
        deleted = ExpenseService(db, user_id).delete(
            instance_id, cascade_forward=cascade_forward
        )
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"deleted": deleted}
