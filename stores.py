from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import ExpenseInstance, RecurringTemplate, TemplateStatus


logger = logging.getLogger(__name__)


class TemplateStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_active_templates(self, user_id: str) -> list[RecurringTemplate]:
        stmt = (
            select(RecurringTemplate)
            .where(
                RecurringTemplate.user_id == user_id,
                RecurringTemplate.status == TemplateStatus.active,
            )
            .order_by(RecurringTemplate.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, user_id: str, template_id: int) -> Optional[RecurringTemplate]:
        template = self.session.get(RecurringTemplate, template_id)
        if not template or template.user_id != user_id:
            return None
        return template

    def delete(self, user_id: str, template_id: int) -> bool:
        template = self.get(user_id, template_id)
        if template is None:
            return False
        self.session.delete(template)
        self.session.commit()
        return True


class InstanceStore:
    """Expense instances, one committed write per call.

    ``insert`` is the conditional write: the (user, materialization key)
    unique constraint rejects a second row for the same occurrence, and the
    rejection is reported as ``None`` rather than raised.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_key(
        self, user_id: str, materialization_key: str
    ) -> Optional[ExpenseInstance]:
        stmt = (
            select(ExpenseInstance)
            .where(
                ExpenseInstance.user_id == user_id,
                ExpenseInstance.materialization_key == materialization_key,
            )
            .limit(1)
        )
        return self.session.scalar(stmt)

    def find_by_template_and_date(
        self, user_id: str, template_id: int, due_date: date
    ) -> Optional[ExpenseInstance]:
        stmt = (
            select(ExpenseInstance)
            .where(
                ExpenseInstance.user_id == user_id,
                ExpenseInstance.template_id == template_id,
                ExpenseInstance.due_date == due_date,
            )
            .order_by(ExpenseInstance.id)
            .limit(1)
        )
        return self.session.scalar(stmt)

    def get(self, user_id: str, instance_id: int) -> Optional[ExpenseInstance]:
        instance = self.session.get(ExpenseInstance, instance_id)
        if not instance or instance.user_id != user_id:
            return None
        return instance

    def _key_taken(self, user_id: str, materialization_key: str) -> bool:
        stmt = select(ExpenseInstance.id).where(
            ExpenseInstance.user_id == user_id,
            ExpenseInstance.materialization_key == materialization_key,
        )
        return self.session.execute(stmt).first() is not None

    def insert(self, user_id: str, instance: ExpenseInstance) -> Optional[int]:
        instance.user_id = user_id
        self.session.add(instance)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            key = instance.materialization_key
            if key is None or not self._key_taken(user_id, key):
                raise
            logger.info(
                f"instance_insert_rejected: user_id={user_id} "
                f"key={instance.materialization_key}"
            )
            return None
        return instance.id

    def list_by_template(
        self, user_id: str, template_id: int
    ) -> list[ExpenseInstance]:
        stmt = (
            select(ExpenseInstance)
            .where(
                ExpenseInstance.user_id == user_id,
                ExpenseInstance.template_id == template_id,
            )
            .order_by(ExpenseInstance.due_date, ExpenseInstance.id)
        )
        return self.session.scalars(stmt).all()

    def delete_by_id(self, user_id: str, instance_id: int) -> bool:
        instance = self.get(user_id, instance_id)
        if instance is None:
            return False
        self.session.delete(instance)
        self.session.commit()
        return True
