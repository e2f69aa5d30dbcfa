"""
LessonLoop Backend — Billing Models
====================================

What:  Rate cards, billing runs, invoices, invoice items, payments and
       make-up credits.
How:   Money columns are integers in minor units (pence/cents). Totals are
       computed in Python by `lessonloop.services.pricing` and stored, never
       derived by the database.

Key constraints:
    - uq_billing_runs_period: at most one non-failed billing run per
      (org_id, start_date, end_date). A failed run leaves the period open.
    - invoice_items.linked_lesson_id: the dedupe key for billing runs; a
      lesson that appears here is never billed again.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lessonloop.database import Base
from lessonloop.models.organisation import utcnow

# Billing run statuses
RUN_PROCESSING = "processing"
RUN_COMPLETED = "completed"
RUN_PARTIAL = "partial"
RUN_FAILED = "failed"

RUN_TYPES = ("manual", "monthly", "termly")
BILLING_MODES = ("delivered", "upfront")

# Invoice statuses
INVOICE_DRAFT = "draft"
INVOICE_SENT = "sent"
INVOICE_PAID = "paid"
INVOICE_OVERDUE = "overdue"
INVOICE_VOID = "void"
INVOICE_STATUSES = (INVOICE_DRAFT, INVOICE_SENT, INVOICE_PAID, INVOICE_OVERDUE, INVOICE_VOID)

PAYMENT_METHODS = ("card", "bank_transfer", "cash", "cheque", "other")


class RateCard(Base):
    """Org-configured price for a lesson duration. At most one default per org."""

    __tablename__ = "rate_cards"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    duration_mins: Mapped[int] = mapped_column(Integer, nullable=False)
    rate_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<RateCard(id={self.id}, duration_mins={self.duration_mins}, "
            f"rate_amount={self.rate_amount}, is_default={self.is_default})>"
        )


class BillingRun(Base):
    """
    One execution of the billing job over a date range.

    Lifecycle:
        processing → completed | partial | failed
        partial → completed | partial   (via retry of failed payers)

    `summary` is a JSON document:
        invoice_count, total_amount, invoice_ids, skipped_lessons,
        skipped_for_cancellation, payer_count, failed_payers (only when non-empty)
    """

    __tablename__ = "billing_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False
    )
    run_type: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    billing_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="delivered")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=RUN_PROCESSING)
    term_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    summary: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index(
            "uq_billing_runs_period",
            "org_id",
            "start_date",
            "end_date",
            unique=True,
            postgresql_where=text("status <> 'failed'"),
            sqlite_where=text("status <> 'failed'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<BillingRun(id={self.id}, period={self.start_date}..{self.end_date}, "
            f"status='{self.status}')>"
        )


class Invoice(Base):
    """
    An invoice addressed to exactly one payer (guardian or student).

    Totals: total_minor = max(0, subtotal_minor + tax_minor - credit_applied_minor).
    paid_minor accumulates recorded payments.
    """

    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False
    )
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=INVOICE_DRAFT)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    payer_guardian_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("guardians.id", ondelete="SET NULL"), nullable=True, index=True
    )
    payer_student_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("students.id", ondelete="SET NULL"), nullable=True, index=True
    )

    subtotal_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_applied_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")

    term_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    billing_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("billing_runs.id", ondelete="SET NULL"), nullable=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    items: Mapped[List["InvoiceItem"]] = relationship(
        back_populates="invoice",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.position",
    )
    payments: Mapped[List["Payment"]] = relationship(
        back_populates="invoice",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="Payment.paid_at.desc()",
    )

    __table_args__ = (
        UniqueConstraint("org_id", "invoice_number", name="uq_invoices_org_number"),
        Index("idx_invoices_org_created", "org_id", "created_at"),
    )

    @property
    def outstanding_minor(self) -> int:
        return max(0, self.total_minor - self.paid_minor)

    def __repr__(self) -> str:
        return (
            f"<Invoice(id={self.id}, number='{self.invoice_number}', "
            f"status='{self.status}', total_minor={self.total_minor})>"
        )


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    linked_lesson_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("lessons.id", ondelete="SET NULL"), nullable=True
    )
    student_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("students.id", ondelete="SET NULL"), nullable=True
    )

    invoice: Mapped[Invoice] = relationship(back_populates="items")

    __table_args__ = (
        Index("idx_invoice_items_org_lesson", "org_id", "linked_lesson_id"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    invoice: Mapped[Invoice] = relationship(back_populates="payments")


class MakeUpCredit(Base):
    """
    Value owed to a student for a missed lesson.

    Available while redeemed_at IS NULL and (expires_at IS NULL or in the
    future). Redemption either applies the value to an invoice
    (applied_to_invoice_id) or books a make-up lesson (redeemed_lesson_id).
    Voiding the invoice releases the credit again.
    """

    __tablename__ = "make_up_credits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    issued_for_lesson_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("lessons.id", ondelete="SET NULL"), nullable=True
    )
    credit_value_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    redeemed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    redeemed_lesson_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("lessons.id", ondelete="SET NULL"), nullable=True
    )
    applied_to_invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
