from collections import Counter
from datetime import date

from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base
from models import (
    ExpenseCategory,
    ExpenseInstance,
    ExpenseStatus,
    RecurringTemplate,
    TemplateStatus,
)
from recurrence import RecurringEngine
from schemas import RecurringTemplateIn
from services import RecurringTemplateService, materialize_for_user
from stores import InstanceStore, TemplateStore


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _template(session: Session, **overrides) -> RecurringTemplate:
    fields = dict(
        user_id="u1",
        name="Rent",
        amount_cents=120000,
        category=ExpenseCategory.housing,
        due_day=1,
        start_date=date(2024, 1, 1),
        end_date=None,
        status=TemplateStatus.active,
    )
    fields.update(overrides)
    template = RecurringTemplate(**fields)
    session.add(template)
    session.commit()
    return template


def _instances(session: Session, user_id: str = "u1") -> list[ExpenseInstance]:
    return session.scalars(
        select(ExpenseInstance)
        .where(ExpenseInstance.user_id == user_id)
        .order_by(ExpenseInstance.due_date)
    ).all()


def test_end_to_end_rent_up_to_current_month():
    engine = _engine()
    with Session(engine) as session:
        _template(session)

        recurring = RecurringEngine(session, months_ahead=0)
        first = recurring.materialize("u1", today=date(2024, 3, 10))
        assert (first.created, first.skipped, first.errors) == (3, 0, [])

        rows = _instances(session)
        assert [r.due_date for r in rows] == [
            date(2024, 1, 1),
            date(2024, 2, 1),
            date(2024, 3, 1),
        ]
        assert all(r.amount_cents == 120000 for r in rows)
        assert all(r.status == ExpenseStatus.pending for r in rows)

        second = recurring.materialize("u1", today=date(2024, 3, 10))
        assert (second.created, second.skipped) == (0, 3)
        assert len(_instances(session)) == 3


def test_default_window_materializes_twelve_months_ahead():
    engine = _engine()
    with Session(engine) as session:
        template = _template(session)
        result = RecurringEngine(session, months_ahead=12).materialize(
            "u1", today=date(2024, 3, 10)
        )
        assert result.created == 15
        rows = _instances(session)
        assert rows[-1].due_date == date(2025, 3, 1)
        assert rows[-1].materialization_key == f"{template.id}-2025-3"


def test_materialize_twice_is_idempotent_and_one_per_month():
    engine = _engine()
    with Session(engine) as session:
        _template(session, due_day=31)
        _template(session, name="Gym", amount_cents=3500, due_day=15)
        recurring = RecurringEngine(session, months_ahead=12)

        first = recurring.materialize("u1", today=date(2024, 6, 15))
        second = recurring.materialize("u1", today=date(2024, 6, 15))

        assert second.created == 0
        assert second.skipped == first.created
        keys = Counter(r.materialization_key for r in _instances(session))
        assert keys and max(keys.values()) == 1
        assert len(keys) == first.created


def test_later_run_extends_the_rolling_window():
    engine = _engine()
    with Session(engine) as session:
        _template(session)
        recurring = RecurringEngine(session, months_ahead=12)
        recurring.materialize("u1", today=date(2024, 1, 5))
        later = recurring.materialize("u1", today=date(2024, 3, 5))
        assert later.created == 2
        assert _instances(session)[-1].due_date == date(2025, 3, 1)


def test_due_day_clamped_per_month():
    engine = _engine()
    with Session(engine) as session:
        _template(
            session,
            due_day=31,
            start_date=date(2023, 1, 1),
            end_date=date(2024, 4, 30),
        )
        RecurringEngine(session).materialize("u1", today=date(2024, 6, 1))
        by_month = {
            (r.due_date.year, r.due_date.month): r.due_date
            for r in _instances(session)
        }
        assert by_month[(2023, 2)] == date(2023, 2, 28)
        assert by_month[(2024, 2)] == date(2024, 2, 29)
        assert by_month[(2024, 4)] == date(2024, 4, 30)
        assert (2024, 5) not in by_month


def test_template_edits_do_not_touch_existing_instances():
    engine = _engine()
    with Session(engine) as session:
        template = RecurringTemplateService(session, "u1").create(
            RecurringTemplateIn(
                name="Rent",
                amount_cents=120000,
                due_day=1,
                start_date=date(2024, 1, 1),
            ),
            today=date(2024, 2, 10),
        )
        before = {r.id: (r.amount_cents, r.due_date) for r in _instances(session)}
        assert len(before) == 14

        RecurringTemplateService(session, "u1").update(
            template.id,
            RecurringTemplateIn(
                name="Rent",
                amount_cents=130000,
                due_day=5,
                start_date=date(2024, 1, 1),
            ),
        )
        result = RecurringEngine(session).materialize("u1", today=date(2024, 4, 10))
        assert result.created == 2

        rows = _instances(session)
        for row in rows:
            if row.id in before:
                assert (row.amount_cents, row.due_date) == before[row.id]
        newest = rows[-1]
        assert newest.amount_cents == 130000
        assert newest.due_date == date(2025, 4, 5)


def test_stale_reads_are_caught_by_the_unique_key(monkeypatch):
    engine = _engine()
    with Session(engine) as session:
        _template(session)
        recurring = RecurringEngine(session, months_ahead=0)
        assert recurring.materialize("u1", today=date(2024, 3, 10)).created == 3

        # Simulate a concurrent run whose existence checks saw nothing.
        monkeypatch.setattr(InstanceStore, "find_by_key", lambda self, u, k: None)
        monkeypatch.setattr(
            InstanceStore, "find_by_template_and_date", lambda self, u, t, d: None
        )
        racing = recurring.materialize("u1", today=date(2024, 3, 10))

        assert racing.created == 0
        assert racing.skipped == 3
        assert racing.errors == []
        assert len(_instances(session)) == 3


def test_legacy_instance_without_key_is_skipped_and_backfilled():
    engine = _engine()
    with Session(engine) as session:
        template = _template(session)
        session.add(
            ExpenseInstance(
                user_id="u1",
                name="Rent",
                amount_cents=110000,
                due_date=date(2024, 2, 1),
                template_id=template.id,
            )
        )
        session.commit()

        result = RecurringEngine(session, months_ahead=0).materialize(
            "u1", today=date(2024, 3, 10)
        )
        assert (result.created, result.skipped) == (2, 1)

        rows = _instances(session)
        assert len(rows) == 3
        legacy = rows[1]
        assert legacy.amount_cents == 110000
        assert legacy.materialization_key == f"{template.id}-2024-2"


def test_invalid_template_is_reported_and_others_continue(monkeypatch):
    engine = _engine()
    with Session(engine) as session:
        _template(session)
        original = TemplateStore.list_active_templates

        def with_broken(self, user_id):
            broken = [
                RecurringTemplate(
                    id=998,
                    user_id=user_id,
                    name="Bad day",
                    amount_cents=100,
                    due_day=42,
                    start_date=date(2024, 1, 1),
                ),
                RecurringTemplate(
                    id=999,
                    user_id=user_id,
                    name="Backwards",
                    amount_cents=100,
                    due_day=3,
                    start_date=date(2024, 5, 1),
                    end_date=date(2024, 1, 1),
                ),
            ]
            return broken + original(self, user_id)

        monkeypatch.setattr(TemplateStore, "list_active_templates", with_broken)
        result = RecurringEngine(session, months_ahead=0).materialize(
            "u1", today=date(2024, 3, 10)
        )
        assert result.errors == [998, 999]
        assert result.created == 3


def test_store_failure_is_isolated_to_its_template(monkeypatch):
    engine = _engine()
    with Session(engine) as session:
        flaky = _template(session, name="Flaky")
        steady = _template(session, name="Steady")
        flaky_id = flaky.id
        original = InstanceStore.insert

        def insert(self, user_id, instance):
            if instance.template_id == flaky_id:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return original(self, user_id, instance)

        monkeypatch.setattr(InstanceStore, "insert", insert)
        result = RecurringEngine(session, months_ahead=0).materialize(
            "u1", today=date(2024, 3, 10)
        )
        assert result.errors == [flaky_id]
        assert result.created == 3
        assert {r.template_id for r in _instances(session)} == {steady.id}


def test_finished_and_foreign_templates_are_ignored():
    engine = _engine()
    with Session(engine) as session:
        _template(session, status=TemplateStatus.finished)
        _template(session, user_id="someone-else")
        result = RecurringEngine(session).materialize("u1", today=date(2024, 3, 10))
        assert (result.created, result.skipped, result.errors) == (0, 0, [])
        assert _instances(session) == []


def test_materialize_for_user_retires_templates_and_flags_overdue():
    engine = _engine()
    with Session(engine) as session:
        ended = _template(
            session,
            name="Loan",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 2, 15),
        )
        _template(session, name="Rent", start_date=date(2024, 3, 1))

        result = materialize_for_user(session, "u1", today=date(2024, 3, 10))
        assert result.errors == []

        session.refresh(ended)
        assert ended.status == TemplateStatus.finished
        statuses = {(r.name, r.due_date): r.status for r in _instances(session)}
        assert statuses[("Loan", date(2024, 1, 1))] == ExpenseStatus.overdue
        assert statuses[("Loan", date(2024, 2, 1))] == ExpenseStatus.overdue
        assert statuses[("Rent", date(2024, 3, 1))] == ExpenseStatus.overdue
        assert statuses[("Rent", date(2024, 4, 1))] == ExpenseStatus.pending

        again = materialize_for_user(session, "u1", today=date(2024, 3, 10))
        assert again.created == 0


def test_paid_instances_are_not_flagged_overdue():
    engine = _engine()
    with Session(engine) as session:
        _template(session)
        recurring = RecurringEngine(session, months_ahead=0)
        recurring.materialize("u1", today=date(2024, 3, 10))
        first = _instances(session)[0]
        first.status = ExpenseStatus.paid
        session.commit()

        assert recurring.mark_overdue("u1", today=date(2024, 3, 10)) == 2
        session.expire_all()
        assert _instances(session)[0].status == ExpenseStatus.paid
