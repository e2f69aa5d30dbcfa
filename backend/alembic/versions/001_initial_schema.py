"""Initial LessonLoop schema

Revision ID: 001
Revises: None
Create Date: 2025-01-15 00:00:00.000000+00:00

What:  Creates the tenant, roster, billing and LoopAssist tables.
How:   Mirrors lessonloop/models; see the model modules for column docs.

Tables are created parents first (organisations → rate_cards → students →
lessons → billing_runs → invoices) so every foreign key target exists.

Rollback: downgrade() drops every table (destructive).
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column("id", sa.Uuid(), primary_key=True, nullable=False)


def _org_id() -> sa.Column:
    return sa.Column(
        "org_id",
        sa.Uuid(),
        sa.ForeignKey("organisations.id", ondelete="CASCADE"),
        nullable=False,
    )


def _timestamp(name: str = "created_at", nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        nullable=nullable,
        server_default=None if nullable else sa.text("CURRENT_TIMESTAMP"),
    )


def _fk(name: str, target: str, nullable: bool = True, ondelete: str = "SET NULL") -> sa.Column:
    return sa.Column(name, sa.Uuid(), sa.ForeignKey(target, ondelete=ondelete), nullable=nullable)


def upgrade() -> None:
    # ── Tenancy ───────────────────────────────────────────────────────────
    op.create_table(
        "organisations",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("currency_code", sa.String(3), nullable=False, server_default="GBP"),
        sa.Column("vat_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("vat_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("invoice_prefix", sa.String(16), nullable=False, server_default="INV"),
        sa.Column("next_invoice_seq", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("cancellation_notice_hours", sa.Integer(), nullable=False, server_default="24"),
        _timestamp(),
    )

    op.create_table(
        "org_memberships",
        _id(),
        _org_id(),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        _timestamp(),
        sa.UniqueConstraint("org_id", "user_id", name="uq_org_memberships_org_user"),
    )
    op.create_index("ix_org_memberships_org_id", "org_memberships", ["org_id"])
    op.create_index("ix_org_memberships_user_id", "org_memberships", ["user_id"])

    op.create_table(
        "rate_cards",
        _id(),
        _org_id(),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("duration_mins", sa.Integer(), nullable=False),
        sa.Column("rate_amount", sa.Integer(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp(),
    )
    op.create_index("ix_rate_cards_org_id", "rate_cards", ["org_id"])

    # ── Roster ────────────────────────────────────────────────────────────
    op.create_table(
        "guardians",
        _id(),
        _org_id(),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        _timestamp(),
    )
    op.create_index("ix_guardians_org_id", "guardians", ["org_id"])

    op.create_table(
        "students",
        _id(),
        _org_id(),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        _fk("default_rate_card_id", "rate_cards.id"),
        _timestamp(),
    )
    op.create_index("ix_students_org_id", "students", ["org_id"])

    op.create_table(
        "student_guardians",
        _id(),
        _fk("student_id", "students.id", nullable=False, ondelete="CASCADE"),
        _fk("guardian_id", "guardians.id", nullable=False, ondelete="CASCADE"),
        sa.Column("is_primary_payer", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("student_id", "guardian_id", name="uq_student_guardians_pair"),
    )
    op.create_index("ix_student_guardians_student_id", "student_guardians", ["student_id"])
    op.create_index("ix_student_guardians_guardian_id", "student_guardians", ["guardian_id"])

    op.create_table(
        "lessons",
        _id(),
        _org_id(),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("start_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("end_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="scheduled"),
        sa.Column("teacher_id", sa.Uuid(), nullable=True),
        _timestamp(),
    )
    op.create_index("idx_lessons_org_start", "lessons", ["org_id", "start_at"])

    op.create_table(
        "lesson_participants",
        _id(),
        _fk("lesson_id", "lessons.id", nullable=False, ondelete="CASCADE"),
        _fk("student_id", "students.id", nullable=False, ondelete="CASCADE"),
        sa.UniqueConstraint("lesson_id", "student_id", name="uq_lesson_participants_pair"),
    )
    op.create_index("ix_lesson_participants_lesson_id", "lesson_participants", ["lesson_id"])
    op.create_index("ix_lesson_participants_student_id", "lesson_participants", ["student_id"])

    op.create_table(
        "attendance_records",
        _id(),
        _org_id(),
        _fk("lesson_id", "lessons.id", nullable=False, ondelete="CASCADE"),
        _fk("student_id", "students.id", nullable=False, ondelete="CASCADE"),
        sa.Column("attendance_status", sa.String(30), nullable=False),
        _timestamp("recorded_at"),
        sa.UniqueConstraint("lesson_id", "student_id", name="uq_attendance_lesson_student"),
    )
    op.create_index("ix_attendance_records_lesson_id", "attendance_records", ["lesson_id"])

    # ── Billing ───────────────────────────────────────────────────────────
    op.create_table(
        "billing_runs",
        _id(),
        _org_id(),
        sa.Column("run_type", sa.String(20), nullable=False, server_default="manual"),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("billing_mode", sa.String(20), nullable=False, server_default="delivered"),
        sa.Column("status", sa.String(20), nullable=False, server_default="processing"),
        sa.Column("term_id", sa.Uuid(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=False),
        sa.Column("summary", sa.JSON(), nullable=False),
        _timestamp(),
    )
    # A failed run must not block a re-run of the same period
    op.create_index(
        "uq_billing_runs_period",
        "billing_runs",
        ["org_id", "start_date", "end_date"],
        unique=True,
        postgresql_where=sa.text("status <> 'failed'"),
        sqlite_where=sa.text("status <> 'failed'"),
    )

    op.create_table(
        "invoices",
        _id(),
        _org_id(),
        sa.Column("invoice_number", sa.String(32), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("due_date", sa.Date(), nullable=False),
        _fk("payer_guardian_id", "guardians.id"),
        _fk("payer_student_id", "students.id"),
        sa.Column("subtotal_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tax_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credit_applied_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("vat_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("currency_code", sa.String(3), nullable=False, server_default="GBP"),
        sa.Column("term_id", sa.Uuid(), nullable=True),
        _fk("billing_run_id", "billing_runs.id"),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp(),
        sa.UniqueConstraint("org_id", "invoice_number", name="uq_invoices_org_number"),
    )
    op.create_index("ix_invoices_payer_guardian_id", "invoices", ["payer_guardian_id"])
    op.create_index("ix_invoices_payer_student_id", "invoices", ["payer_student_id"])
    op.create_index("idx_invoices_org_created", "invoices", ["org_id", "created_at"])

    op.create_table(
        "invoice_items",
        _id(),
        _fk("invoice_id", "invoices.id", nullable=False, ondelete="CASCADE"),
        _org_id(),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price_minor", sa.Integer(), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        _fk("linked_lesson_id", "lessons.id"),
        _fk("student_id", "students.id"),
    )
    op.create_index("ix_invoice_items_invoice_id", "invoice_items", ["invoice_id"])
    # Billing-run dedupe lookup
    op.create_index(
        "idx_invoice_items_org_lesson", "invoice_items", ["org_id", "linked_lesson_id"]
    )

    op.create_table(
        "payments",
        _id(),
        _org_id(),
        _fk("invoice_id", "invoices.id", nullable=False, ondelete="CASCADE"),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency_code", sa.String(3), nullable=False),
        sa.Column("method", sa.String(20), nullable=False),
        sa.Column("provider_reference", sa.String(255), nullable=True),
        _timestamp("paid_at"),
    )
    op.create_index("ix_payments_invoice_id", "payments", ["invoice_id"])

    op.create_table(
        "make_up_credits",
        _id(),
        _org_id(),
        _fk("student_id", "students.id", nullable=False, ondelete="CASCADE"),
        _fk("issued_for_lesson_id", "lessons.id"),
        sa.Column("credit_value_minor", sa.Integer(), nullable=False),
        _timestamp("issued_at"),
        _timestamp("expires_at", nullable=True),
        _timestamp("redeemed_at", nullable=True),
        _fk("redeemed_lesson_id", "lessons.id"),
        _fk("applied_to_invoice_id", "invoices.id"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        _timestamp(),
    )
    op.create_index("ix_make_up_credits_org_id", "make_up_credits", ["org_id"])
    op.create_index("ix_make_up_credits_student_id", "make_up_credits", ["student_id"])

    # ── LoopAssist ────────────────────────────────────────────────────────
    op.create_table(
        "ai_action_proposals",
        _id(),
        _org_id(),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("params", sa.JSON(), nullable=False),
        sa.Column("entities", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="proposed"),
        sa.Column("result", sa.JSON(), nullable=True),
        _timestamp(),
        _timestamp("executed_at", nullable=True),
    )
    op.create_index("ix_ai_action_proposals_org_id", "ai_action_proposals", ["org_id"])
    op.create_index("ix_ai_action_proposals_user_id", "ai_action_proposals", ["user_id"])

    op.create_table(
        "queued_messages",
        _id(),
        _org_id(),
        sa.Column("recipient_email", sa.String(320), nullable=False),
        sa.Column("subject", sa.String(255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        _fk("related_invoice_id", "invoices.id"),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        _timestamp(),
    )
    op.create_index("ix_queued_messages_org_id", "queued_messages", ["org_id"])


def downgrade() -> None:
    # Children before parents
    for table in (
        "queued_messages",
        "ai_action_proposals",
        "make_up_credits",
        "payments",
        "invoice_items",
        "invoices",
        "billing_runs",
        "attendance_records",
        "lesson_participants",
        "lessons",
        "student_guardians",
        "students",
        "guardians",
        "rate_cards",
        "org_memberships",
        "organisations",
    ):
        op.drop_table(table)
