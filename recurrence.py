from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    ExpenseInstance,
    ExpenseStatus,
    RecurringTemplate,
    TemplateStatus,
)
from stores import InstanceStore, TemplateStore


logger = logging.getLogger(__name__)


class TemplateValidationError(ValueError):
    pass


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def resolve_due_date(due_day: int, year: int, month: int) -> date:
    """Concrete date for a nominal day of month, clamped to the month's end."""
    if not 1 <= due_day <= 31:
        raise TemplateValidationError(f"Invalid due day: {due_day}")
    return date(year, month, min(due_day, days_in_month(year, month)))


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return resolve_due_date(desired_day or base.day, year, month)


def _month_index(year: int, month: int) -> int:
    return year * 12 + (month - 1)


def compute_horizon(
    start_date: date,
    end_date: Optional[date],
    today: date,
    months_ahead: int = 12,
) -> list[tuple[int, int]]:
    """(year, month) pairs from the start month up to the end month or
    ``months_ahead`` months past today, whichever comes first.

    Open-ended templates get a rolling window: nothing is persisted, each call
    recomputes the bound from ``today``.
    """
    lower = _month_index(start_date.year, start_date.month)
    upper = _month_index(today.year, today.month) + months_ahead
    if end_date is not None:
        upper = min(upper, _month_index(end_date.year, end_date.month))
    return [(index // 12, index % 12 + 1) for index in range(lower, upper + 1)]


def materialization_key(template_id: int, year: int, month: int) -> str:
    return f"{template_id}-{year}-{month}"


def validate_template(template: RecurringTemplate) -> None:
    if template.due_day is None or not 1 <= template.due_day <= 31:
        raise TemplateValidationError(f"Invalid due day: {template.due_day}")
    if template.start_date is None:
        raise TemplateValidationError("Template has no start date")
    if template.end_date is not None and template.start_date > template.end_date:
        raise TemplateValidationError(
            f"Start date {template.start_date} is after end date {template.end_date}"
        )
    if template.amount_cents is None or template.amount_cents < 0:
        raise TemplateValidationError(f"Invalid amount: {template.amount_cents}")


@dataclass
class MaterializationResult:
    created: int = 0
    skipped: int = 0
    errors: list[int] = field(default_factory=list)
    # True when another run for the same context was already in flight.
    coalesced: bool = False


@dataclass(frozen=True)
class RepairResult:
    deleted_count: int


def _survivor_rank(instance: ExpenseInstance, canonical_key: str) -> tuple:
    return (
        instance.status != ExpenseStatus.paid,
        not instance.paid_cents,
        instance.materialization_key != canonical_key,
        instance.created_at or datetime.max,
        instance.id,
    )


class RecurringEngine:
    def __init__(self, session: Session, months_ahead: Optional[int] = None) -> None:
        self.session = session
        self.templates = TemplateStore(session)
        self.instances = InstanceStore(session)
        if months_ahead is None:
            months_ahead = get_settings().horizon_months
        self.months_ahead = months_ahead

    def materialize(
        self, user_id: str, today: Optional[date] = None
    ) -> MaterializationResult:
        today = today or local_today()
        result = MaterializationResult()
        templates = self.templates.list_active_templates(user_id)
        template_ids = [template.id for template in templates]
        for template_id, template in zip(template_ids, templates):
            self._run_template(user_id, template_id, template, today, result)
        logger.info(
            f"materialize: user_id={user_id} templates={len(template_ids)} "
            f"created={result.created} skipped={result.skipped} "
            f"errors={len(result.errors)}"
        )
        return result

    def materialize_template(
        self, template: RecurringTemplate, today: Optional[date] = None
    ) -> MaterializationResult:
        today = today or local_today()
        result = MaterializationResult()
        self._run_template(template.user_id, template.id, template, today, result)
        return result

    def _run_template(
        self,
        user_id: str,
        template_id: int,
        template: RecurringTemplate,
        today: date,
        result: MaterializationResult,
    ) -> None:
        try:
            self._materialize_months(user_id, template, today, result)
        except TemplateValidationError as exc:
            self.session.rollback()
            logger.warning(
                f"materialize_invalid_template: user_id={user_id} "
                f"template_id={template_id} reason={exc}"
            )
            result.errors.append(template_id)
        except Exception:
            self.session.rollback()
            logger.exception(
                f"materialize_failed: user_id={user_id} template_id={template_id}"
            )
            result.errors.append(template_id)

    def _materialize_months(
        self,
        user_id: str,
        template: RecurringTemplate,
        today: date,
        result: MaterializationResult,
    ) -> None:
        validate_template(template)
        # Snapshot before the first commit expires the template's attributes.
        template_id = template.id
        name = template.name
        amount_cents = template.amount_cents
        category = template.category
        due_day = template.due_day
        notes = template.notes
        months = compute_horizon(
            template.start_date, template.end_date, today, self.months_ahead
        )

        for year, month in months:
            key = materialization_key(template_id, year, month)
            due_date = resolve_due_date(due_day, year, month)

            if self.instances.find_by_key(user_id, key) is not None:
                result.skipped += 1
                continue
            legacy = self.instances.find_by_template_and_date(
                user_id, template_id, due_date
            )
            if legacy is not None:
                self._assign_key(legacy, key)
                result.skipped += 1
                continue

            instance = ExpenseInstance(
                name=name,
                amount_cents=amount_cents,
                category=category,
                due_date=due_date,
                status=ExpenseStatus.pending,
                notes=notes,
                template_id=template_id,
                materialization_key=key,
            )
            new_id = self.instances.insert(user_id, instance)
            if new_id is None:
                result.skipped += 1
                continue
            result.created += 1
            logger.debug(
                f"materialize_created: user_id={user_id} template_id={template_id} "
                f"key={key} instance_id={new_id} due_date={due_date.isoformat()}"
            )

    def _assign_key(self, instance: ExpenseInstance, key: str) -> None:
        if instance.materialization_key is not None:
            return
        instance.materialization_key = key
        try:
            self.session.commit()
        except IntegrityError:
            # Another row took the key in the meantime; repair_duplicates
            # collapses the pair.
            self.session.rollback()
            logger.warning(
                f"materialize_key_backfill_conflict: instance_id={instance.id} "
                f"key={key}"
            )

    def find_duplicates(
        self, user_id: str, template_id: int
    ) -> dict[tuple[int, int], list[ExpenseInstance]]:
        groups: dict[tuple[int, int], list[ExpenseInstance]] = defaultdict(list)
        for instance in self.instances.list_by_template(user_id, template_id):
            groups[(instance.due_date.year, instance.due_date.month)].append(instance)
        return {month: members for month, members in groups.items() if len(members) > 1}

    def repair_duplicates(self, user_id: str, template_id: int) -> RepairResult:
        """Collapse every month holding several instances of the template to one.

        The survivor is the paid instance if there is one, then one with a
        partial payment, then the one carrying the month's materialization key,
        then the earliest created, then the lowest id.
        """
        deleted = 0
        duplicates = self.find_duplicates(user_id, template_id)
        for (year, month), members in sorted(duplicates.items()):
            key = materialization_key(template_id, year, month)
            survivor = min(members, key=lambda inst: _survivor_rank(inst, key))
            survivor_id = survivor.id
            doomed = [inst.id for inst in members if inst.id != survivor_id]
            logger.warning(
                f"repair_duplicates: user_id={user_id} template_id={template_id} "
                f"month={year}-{month:02d} keep={survivor_id} delete={doomed}"
            )
            for instance_id in doomed:
                if self.instances.delete_by_id(user_id, instance_id):
                    deleted += 1
            survivor = self.instances.get(user_id, survivor_id)
            if (
                survivor is not None
                and survivor.materialization_key != key
                and self.instances.find_by_key(user_id, key) is None
            ):
                survivor.materialization_key = key
                self.session.commit()
        return RepairResult(deleted_count=deleted)

    def mark_overdue(self, user_id: str, today: Optional[date] = None) -> int:
        today = today or local_today()
        stmt = (
            update(ExpenseInstance)
            .where(
                ExpenseInstance.user_id == user_id,
                ExpenseInstance.status == ExpenseStatus.pending,
                ExpenseInstance.due_date < today,
            )
            .values(status=ExpenseStatus.overdue, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        count = self.session.execute(stmt).rowcount or 0
        self.session.commit()
        return count

    def finish_expired_templates(
        self,
        user_id: str,
        today: Optional[date] = None,
        *,
        exclude: Iterable[int] = (),
    ) -> int:
        today = today or local_today()
        skip = set(exclude)
        count = 0
        for template in self.templates.list_active_templates(user_id):
            if template.id in skip or template.end_date is None:
                continue
            if template.end_date < today:
                template.status = TemplateStatus.finished
                count += 1
        if count:
            self.session.commit()
        return count
