from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from models import ExpenseInstance, ExpenseStatus, RecurringTemplate
from recurrence import (
    MaterializationResult,
    RecurringEngine,
    RepairResult,
    add_months,
    local_today,
)
from schemas import CarryForwardIn, ExpenseIn, PaymentIn, RecurringTemplateIn
from single_flight import materialization_guard
from stores import InstanceStore, TemplateStore


logger = logging.getLogger(__name__)


def get_current_user_id() -> str:
    return get_settings().default_user_id


def materialize_for_user(
    session: Session, user_id: str, today: Optional[date] = None
) -> MaterializationResult:
    """Run the engine for one user unless a run for that user is in flight.

    Also retires templates whose end date has passed and flags past-due
    pending instances as overdue.
    """
    with materialization_guard.hold(user_id) as acquired:
        if not acquired:
            logger.info(f"materialize_coalesced: user_id={user_id}")
            return MaterializationResult(coalesced=True)
        today = today or local_today()
        engine = RecurringEngine(session)
        result = engine.materialize(user_id, today)
        finished = engine.finish_expired_templates(
            user_id, today, exclude=result.errors
        )
        overdue = engine.mark_overdue(user_id, today)
        if finished or overdue:
            logger.info(
                f"materialize_bookkeeping: user_id={user_id} "
                f"templates_finished={finished} instances_overdue={overdue}"
            )
        return result


@dataclass(frozen=True)
class CascadeResult:
    deleted_instances: int


class RecurringTemplateService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.templates = TemplateStore(session)
        self.instances = InstanceStore(session)

    def get(self, template_id: int) -> RecurringTemplate:
        template = self.templates.get(self.user_id, template_id)
        if template is None:
            raise ValueError("Template not found")
        return template

    def list(self) -> list[RecurringTemplate]:
        stmt = (
            select(RecurringTemplate)
            .where(RecurringTemplate.user_id == self.user_id)
            .order_by(RecurringTemplate.start_date, RecurringTemplate.id)
        )
        return self.session.scalars(stmt).all()

    def create(
        self, data: RecurringTemplateIn, today: Optional[date] = None
    ) -> RecurringTemplate:
        template = RecurringTemplate(user_id=self.user_id, **data.model_dump())
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)
        result = RecurringEngine(self.session).materialize_template(template, today)
        logger.info(
            f"template_created: user_id={self.user_id} template_id={template.id} "
            f"created={result.created} skipped={result.skipped}"
        )
        return template

    def update(self, template_id: int, data: RecurringTemplateIn) -> RecurringTemplate:
        # Instances already materialized keep their snapshot.
        template = self.get(template_id)
        for field, value in data.model_dump().items():
            setattr(template, field, value)
        self.session.commit()
        self.session.refresh(template)
        return template

    def delete(self, template_id: int) -> CascadeResult:
        self.get(template_id)
        instance_ids = [
            instance.id
            for instance in self.instances.list_by_template(self.user_id, template_id)
        ]
        deleted = 0
        for instance_id in instance_ids:
            if self.instances.delete_by_id(self.user_id, instance_id):
                deleted += 1
        self.templates.delete(self.user_id, template_id)
        logger.info(
            f"template_deleted: user_id={self.user_id} template_id={template_id} "
            f"instances_deleted={deleted}"
        )
        return CascadeResult(deleted_instances=deleted)

    def duplicates(self, template_id: int) -> dict[str, list[int]]:
        self.get(template_id)
        groups = RecurringEngine(self.session).find_duplicates(
            self.user_id, template_id
        )
        return {
            f"{year}-{month:02d}": [instance.id for instance in members]
            for (year, month), members in sorted(groups.items())
        }

    def repair_duplicates(self, template_id: int) -> RepairResult:
        self.get(template_id)
        return RecurringEngine(self.session).repair_duplicates(
            self.user_id, template_id
        )

    def materialize_all(self, today: Optional[date] = None) -> MaterializationResult:
        return materialize_for_user(self.session, self.user_id, today)


class ExpenseService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.instances = InstanceStore(session)

    def get(self, instance_id: int) -> ExpenseInstance:
        instance = self.instances.get(self.user_id, instance_id)
        if instance is None:
            raise ValueError("Expense not found")
        return instance

    def create(self, data: ExpenseIn) -> ExpenseInstance:
        instance = ExpenseInstance(user_id=self.user_id, **data.model_dump())
        if instance.status == ExpenseStatus.paid:
            instance.paid_cents = instance.amount_cents
        self.session.add(instance)
        self.session.commit()
        self.session.refresh(instance)
        return instance

    def mark_paid(
        self, instance_id: int, data: Optional[PaymentIn] = None
    ) -> ExpenseInstance:
        """Record a payment. Without an amount the expense is settled in full.

        A partial payment leaves the status alone until the paid total
        reaches the expense amount.
        """
        instance = self.get(instance_id)
        if data is None or data.amount_cents is None:
            instance.paid_cents = instance.amount_cents
        else:
            remaining = instance.amount_cents - instance.paid_cents
            if data.amount_cents > remaining:
                raise ValueError("Payment exceeds the remaining amount")
            instance.paid_cents += data.amount_cents
        if instance.paid_cents >= instance.amount_cents:
            instance.status = ExpenseStatus.paid
        self.session.commit()
        self.session.refresh(instance)
        return instance

    def carry_forward(
        self, instance_id: int, data: Optional[CarryForwardIn] = None
    ) -> ExpenseInstance:
        source = self.get(instance_id)
        data = data or CarryForwardIn()
        due_date = data.due_date or add_months(source.due_date, 1)
        if due_date <= source.due_date:
            raise ValueError("Carried-forward expense must be due after the source")
        amount_cents = (
            data.amount_cents if data.amount_cents is not None else source.amount_cents
        )
        instance = ExpenseInstance(
            user_id=self.user_id,
            name=source.name,
            amount_cents=amount_cents,
            category=source.category,
            due_date=due_date,
            status=ExpenseStatus.pending,
            notes=source.notes,
            carried_forward_from_id=source.id,
        )
        self.session.add(instance)
        self.session.commit()
        self.session.refresh(instance)
        return instance

    def _chain_after(self, instance: ExpenseInstance) -> list[ExpenseInstance]:
        found: list[ExpenseInstance] = []
        seen = {instance.id}
        frontier = [instance.id]
        while frontier:
            stmt = select(ExpenseInstance).where(
                ExpenseInstance.user_id == self.user_id,
                ExpenseInstance.carried_forward_from_id.in_(frontier),
            )
            children = [c for c in self.session.scalars(stmt).all() if c.id not in seen]
            seen.update(c.id for c in children)
            found.extend(children)
            frontier = [c.id for c in children]
        return found

    def _same_name_after(self, instance: ExpenseInstance) -> list[ExpenseInstance]:
        # Rows written before carried_forward_from_id existed.
        stmt = select(ExpenseInstance).where(
            ExpenseInstance.user_id == self.user_id,
            ExpenseInstance.id != instance.id,
            ExpenseInstance.template_id.is_(None),
            func.lower(func.trim(ExpenseInstance.name))
            == instance.name.strip().lower(),
            ExpenseInstance.due_date > instance.due_date,
        )
        return self.session.scalars(stmt).all()

    def delete(self, instance_id: int, cascade_forward: bool = False) -> int:
        instance = self.get(instance_id)
        doomed: list[ExpenseInstance] = []
        if cascade_forward:
            doomed = self._chain_after(instance)
            # The name match only stands in for rows outside any explicit chain.
            if not doomed and instance.carried_forward_from_id is None:
                doomed = self._same_name_after(instance)
        for later in doomed:
            self.session.delete(later)
        self.session.delete(instance)
        self.session.commit()
        logger.info(
            f"expense_deleted: user_id={self.user_id} instance_id={instance_id} "
            f"cascaded={len(doomed)}"
        )
        return len(doomed) + 1
