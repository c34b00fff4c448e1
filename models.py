from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class ExpenseCategory(str, Enum):
    food = "Food"
    transportation = "Transportation"
    housing = "Housing"
    utilities = "Utilities"
    insurance = "Insurance"
    healthcare = "Healthcare"
    entertainment = "Entertainment"
    shopping = "Shopping"
    education = "Education"
    savings = "Savings"
    bills = "Bills"
    travel = "Travel"
    other = "Other"


EXPENSE_CATEGORY_ENUM = SAEnum(
    ExpenseCategory,
    name="expensecategory",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TemplateStatus(str, Enum):
    active = "active"
    finished = "finished"


class ExpenseStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    overdue = "overdue"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class RecurringTemplate(Base, TimestampMixin):
    __tablename__ = "recurring_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[ExpenseCategory] = mapped_column(
        EXPENSE_CATEGORY_ENUM, nullable=False, default=ExpenseCategory.other
    )
    due_day: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[TemplateStatus] = mapped_column(
        SAEnum(TemplateStatus), nullable=False, default=TemplateStatus.active
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_template_amount_positive"),
        CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_template_due_day"),
        CheckConstraint(
            "end_date IS NULL OR start_date <= end_date",
            name="ck_template_date_range",
        ),
        Index("ix_templates_user_status", "user_id", "status"),
    )


class ExpenseInstance(Base, TimestampMixin):
    __tablename__ = "expense_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[ExpenseCategory] = mapped_column(
        EXPENSE_CATEGORY_ENUM, nullable=False, default=ExpenseCategory.other
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[ExpenseStatus] = mapped_column(
        SAEnum(ExpenseStatus), nullable=False, default=ExpenseStatus.pending
    )
    paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    # Weak back-reference: no FK, so deleting a template never cascades here.
    template_id: Mapped[Optional[int]] = mapped_column(Integer)
    materialization_key: Mapped[Optional[str]] = mapped_column(String(80))
    carried_forward_from_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("expense_instances.id", ondelete="SET NULL")
    )

    carried_forward_from: Mapped[Optional["ExpenseInstance"]] = relationship(
        "ExpenseInstance", remote_side="ExpenseInstance.id"
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "materialization_key",
            name="uq_instance_user_materialization_key",
        ),
        Index("ix_instances_user_template", "user_id", "template_id"),
        Index("ix_instances_user_due_date", "user_id", "due_date"),
        CheckConstraint("amount_cents >= 0", name="ck_instance_amount_positive"),
        CheckConstraint("paid_cents >= 0", name="ck_instance_paid_positive"),
    )
