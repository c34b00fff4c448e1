"""recurring templates and expense instances

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


CATEGORY_VALUES = (
    "Food",
    "Transportation",
    "Housing",
    "Utilities",
    "Insurance",
    "Healthcare",
    "Entertainment",
    "Shopping",
    "Education",
    "Savings",
    "Bills",
    "Travel",
    "Other",
)


def upgrade():
    op.create_table(
        "recurring_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category",
            sa.Enum(*CATEGORY_VALUES, name="expensecategory"),
            nullable=False,
        ),
        sa.Column("due_day", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("notes", sa.Text()),
        sa.Column(
            "status",
            sa.Enum("active", "finished", name="templatestatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_template_amount_positive"),
        sa.CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_template_due_day"),
        sa.CheckConstraint(
            "end_date IS NULL OR start_date <= end_date",
            name="ck_template_date_range",
        ),
    )
    op.create_index(
        "ix_templates_user_status", "recurring_templates", ["user_id", "status"]
    )

    op.create_table(
        "expense_instances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category",
            sa.Enum(*CATEGORY_VALUES, name="expensecategory"),
            nullable=False,
        ),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "paid", "overdue", name="expensestatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("notes", sa.Text()),
        sa.Column("paid_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("template_id", sa.Integer()),
        sa.Column("materialization_key", sa.String(length=80)),
        sa.Column(
            "carried_forward_from_id",
            sa.Integer(),
            sa.ForeignKey("expense_instances.id", ondelete="SET NULL"),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id",
            "materialization_key",
            name="uq_instance_user_materialization_key",
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_instance_amount_positive"),
        sa.CheckConstraint("paid_cents >= 0", name="ck_instance_paid_positive"),
    )
    op.create_index(
        "ix_instances_user_template", "expense_instances", ["user_id", "template_id"]
    )
    op.create_index(
        "ix_instances_user_due_date", "expense_instances", ["user_id", "due_date"]
    )


def downgrade():
    op.drop_index("ix_instances_user_due_date", table_name="expense_instances")
    op.drop_index("ix_instances_user_template", table_name="expense_instances")
    op.drop_table("expense_instances")
    op.drop_index("ix_templates_user_status", table_name="recurring_templates")
    op.drop_table("recurring_templates")
