"""
LessonLoop Backend — Invoice Service
=====================================

What:  Invoice numbering, manual invoices, status changes, payments,
       overdue marking and the finance dashboard figures.
Who:   Invoice routes, the billing run (numbering) and LoopAssist
       (`send_invoice_reminders`).

Status machine:
    draft   → sent | void
    sent    → paid | overdue | void
    overdue → paid | sent | void
    paid, void: terminal

Credits applied to a manual invoice are redeemed with a conditional UPDATE
(`... WHERE redeemed_at IS NULL`); if fewer rows change than were requested,
another request got there first and the whole call fails. Voiding the invoice
releases them again.
"""

import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lessonloop.config import settings
from lessonloop.exceptions import (
    ConflictError,
    DatabaseError,
    LessonLoopError,
    NotFoundError,
    ValidationError,
)
from lessonloop.models.billing import (
    INVOICE_DRAFT,
    INVOICE_OVERDUE,
    INVOICE_PAID,
    INVOICE_SENT,
    INVOICE_STATUSES,
    INVOICE_VOID,
    Invoice,
    InvoiceItem,
    MakeUpCredit,
    Payment,
)
from lessonloop.models.organisation import Organisation, utcnow
from lessonloop.models.roster import Guardian, Student
from lessonloop.schemas.invoice import InvoiceCreate
from lessonloop.services.credit_service import available_credits
from lessonloop.services.pricing import calculate_tax, calculate_total, line_amount

logger = logging.getLogger(__name__)

PAGE_SIZE = 25

_TRANSITIONS = {
    INVOICE_DRAFT: {INVOICE_SENT, INVOICE_VOID},
    INVOICE_SENT: {INVOICE_PAID, INVOICE_OVERDUE, INVOICE_VOID},
    INVOICE_OVERDUE: {INVOICE_PAID, INVOICE_SENT, INVOICE_VOID},
    INVOICE_PAID: set(),
    INVOICE_VOID: set(),
}

CREDITS_ALREADY_REDEEMED = "One or more credits have already been redeemed"


def is_valid_status_transition(current: str, new: str) -> bool:
    """True when an invoice may move from `current` to `new`. Same → same is a no-op."""
    if current == new:
        return True
    return new in _TRANSITIONS.get(current, set())


async def allocate_invoice_number(db: AsyncSession, org_id: uuid.UUID) -> Tuple[str, Organisation]:
    """
    Takes the next number from the organisation's counter.

    The org row is locked (SELECT ... FOR UPDATE on PostgreSQL) and re-read,
    so concurrent runs never hand out the same number. Numbers already used
    by an existing invoice (imports, a counter reset by hand) are skipped, so
    one stale number cannot fail every payer after it. Returns the number and
    the freshly loaded organisation.
    """
    result = await db.execute(
        select(Organisation)
        .where(Organisation.id == org_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    org = result.scalar_one_or_none()
    if org is None:
        raise NotFoundError(resource="organisation", resource_id=str(org_id))

    year = utcnow().year
    while True:
        seq = org.next_invoice_seq
        org.next_invoice_seq = seq + 1
        number = f"{org.invoice_prefix}-{year}-{seq:05d}"
        taken = await db.execute(
            select(Invoice.id).where(Invoice.org_id == org_id, Invoice.invoice_number == number)
        )
        if taken.first() is None:
            return number, org
        logger.warning("Invoice number %s already in use in org %s, skipping", number, org_id)


class InvoiceService:
    """Invoice reads and writes. Every query is scoped by org_id."""

    async def get_invoice(
        self, db: AsyncSession, org_id: uuid.UUID, invoice_id: uuid.UUID, lock: bool = False
    ) -> Invoice:
        query = select(Invoice).where(Invoice.id == invoice_id, Invoice.org_id == org_id)
        if lock:
            query = query.with_for_update()
        try:
            result = await db.execute(query.execution_options(populate_existing=True))
            invoice = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error fetching invoice %s: %s", invoice_id, str(e))
            raise DatabaseError(
                message="Could not retrieve the invoice. Please try again.",
                context={"invoice_id": str(invoice_id)},
            )

        if invoice is None:
            raise NotFoundError(resource="invoice", resource_id=str(invoice_id))
        return invoice

    async def list_invoices(
        self,
        db: AsyncSession,
        org_id: uuid.UUID,
        status: Optional[str] = None,
        payer_type: Optional[str] = None,
        payer_id: Optional[uuid.UUID] = None,
        due_date_from: Optional[date] = None,
        due_date_to: Optional[date] = None,
        term_id: Optional[uuid.UUID] = None,
        page: int = 1,
    ) -> Tuple[List[Invoice], int]:
        """
        Newest first, PAGE_SIZE per page. Returns (invoices, total_count).
        """
        if status is not None and status not in INVOICE_STATUSES:
            raise ValidationError(f"Unknown invoice status '{status}'", field="status")
        if payer_type is not None and payer_type not in ("guardian", "student"):
            raise ValidationError("payer_type must be 'guardian' or 'student'", field="payer_type")

        conditions: List[Any] = [Invoice.org_id == org_id]
        if status:
            conditions.append(Invoice.status == status)
        if payer_type == "guardian":
            conditions.append(
                Invoice.payer_guardian_id == payer_id if payer_id else Invoice.payer_guardian_id.is_not(None)
            )
        elif payer_type == "student":
            conditions.append(
                Invoice.payer_student_id == payer_id if payer_id else Invoice.payer_student_id.is_not(None)
            )
        elif payer_id:
            conditions.append(
                or_(Invoice.payer_guardian_id == payer_id, Invoice.payer_student_id == payer_id)
            )
        if due_date_from:
            conditions.append(Invoice.due_date >= due_date_from)
        if due_date_to:
            conditions.append(Invoice.due_date <= due_date_to)
        if term_id:
            conditions.append(Invoice.term_id == term_id)

        page = max(page, 1)
        try:
            total_count = (
                await db.execute(select(func.count(Invoice.id)).where(*conditions))
            ).scalar() or 0
            result = await db.execute(
                select(Invoice)
                .where(*conditions)
                .order_by(Invoice.created_at.desc(), Invoice.invoice_number.desc())
                .offset((page - 1) * PAGE_SIZE)
                .limit(PAGE_SIZE)
            )
            return list(result.scalars().all()), total_count
        except SQLAlchemyError as e:
            logger.error("Database error listing invoices: %s", str(e), exc_info=True)
            raise DatabaseError(
                message="Could not retrieve invoices. Please try again.",
                context={"error_type": type(e).__name__},
            )

    async def create_invoice(
        self, db: AsyncSession, org_id: uuid.UUID, data: InvoiceCreate
    ) -> Invoice:
        """
        Manual invoice with optional make-up credits applied.

        Raises:
            ValidationError: no payer / two payers, no items, expired credit
            NotFoundError:   payer or credit outside the organisation
            ConflictError:   a credit was already redeemed
        """
        if bool(data.payer_guardian_id) == bool(data.payer_student_id):
            raise ValidationError(
                "Exactly one of payer_guardian_id or payer_student_id is required",
                field="payer_guardian_id",
            )
        if not data.items:
            raise ValidationError("An invoice needs at least one item", field="items")

        try:
            if data.payer_guardian_id:
                await self._require_in_org(db, Guardian, org_id, data.payer_guardian_id, "guardian")
            else:
                await self._require_in_org(db, Student, org_id, data.payer_student_id, "student")

            credit_ids = list(dict.fromkeys(data.credit_ids))
            credits = await self._load_applicable_credits(db, org_id, credit_ids)

            number, org = await allocate_invoice_number(db, org_id)
            items = [
                InvoiceItem(
                    org_id=org_id,
                    position=idx,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price_minor=item.unit_price_minor,
                    amount_minor=line_amount(item.quantity, item.unit_price_minor),
                    linked_lesson_id=item.linked_lesson_id,
                    student_id=item.student_id,
                )
                for idx, item in enumerate(data.items)
            ]
            subtotal = sum(i.amount_minor for i in items)
            vat_rate = org.vat_rate if org.vat_enabled else 0
            tax = calculate_tax(subtotal, vat_rate)
            credit_applied = sum(c.credit_value_minor for c in credits)

            invoice = Invoice(
                org_id=org_id,
                invoice_number=number,
                status=INVOICE_DRAFT,
                due_date=data.due_date,
                payer_guardian_id=data.payer_guardian_id,
                payer_student_id=data.payer_student_id,
                subtotal_minor=subtotal,
                tax_minor=tax,
                credit_applied_minor=credit_applied,
                total_minor=calculate_total(subtotal, tax, credit_applied),
                vat_rate=vat_rate,
                currency_code=org.currency_code,
                notes=data.notes,
                items=items,
                payments=[],
            )
            db.add(invoice)
            await db.flush()

            if credit_ids:
                await self._redeem_credits(db, org_id, credit_ids, invoice.id)

            logger.info(
                "Invoice %s created for org %s: total=%d credits=%d",
                invoice.invoice_number, org_id, invoice.total_minor, len(credit_ids),
            )
            return invoice

        except LessonLoopError:
            raise
        except SQLAlchemyError as e:
            logger.error("Database error creating invoice: %s", str(e), exc_info=True)
            raise DatabaseError(
                message="Could not create the invoice. Please try again.",
                context={"error_type": type(e).__name__},
            )

    async def update_invoice_status(
        self, db: AsyncSession, org_id: uuid.UUID, invoice_id: uuid.UUID, new_status: str
    ) -> Invoice:
        invoice = await self.get_invoice(db, org_id, invoice_id, lock=True)
        if not is_valid_status_transition(invoice.status, new_status):
            raise ValidationError(
                f"Cannot change invoice status from '{invoice.status}' to '{new_status}'",
                field="status",
                context={"current_status": invoice.status},
            )
        if invoice.status == new_status:
            return invoice

        previous = invoice.status
        invoice.status = new_status
        if new_status == INVOICE_VOID:
            released = await self._release_credits(db, org_id, invoice.id)
            if released:
                logger.info("Void of %s released %d credit(s)", invoice.invoice_number, released)

        await db.flush()
        logger.info("Invoice %s: %s → %s", invoice.invoice_number, previous, new_status)
        return invoice

    async def record_payment(
        self,
        db: AsyncSession,
        org_id: uuid.UUID,
        invoice_id: uuid.UUID,
        amount_minor: int,
        method: str,
        provider_reference: Optional[str] = None,
    ) -> Tuple[Payment, Invoice]:
        """
        Records a payment and marks the invoice paid once fully settled.

        Only sent and overdue invoices accept payments, and never more than
        the outstanding balance.
        """
        if amount_minor <= 0:
            raise ValidationError("Payment amount must be positive", field="amount_minor")
        if amount_minor > settings.max_payment_minor:
            raise ValidationError(
                f"Payment amount cannot exceed {settings.max_payment_minor}",
                field="amount_minor",
            )

        invoice = await self.get_invoice(db, org_id, invoice_id, lock=True)
        if invoice.status in (INVOICE_DRAFT, INVOICE_VOID, INVOICE_PAID):
            raise ValidationError(
                f"Cannot record a payment against a {invoice.status} invoice",
                field="status",
            )
        if amount_minor > invoice.outstanding_minor:
            raise ValidationError(
                "Payment exceeds the outstanding balance",
                field="amount_minor",
                context={"outstanding_minor": invoice.outstanding_minor},
            )

        payment = Payment(
            org_id=org_id,
            amount_minor=amount_minor,
            currency_code=invoice.currency_code,
            method=method,
            provider_reference=provider_reference,
        )
        invoice.payments.append(payment)
        invoice.paid_minor += amount_minor
        if invoice.paid_minor >= invoice.total_minor:
            invoice.status = INVOICE_PAID

        await db.flush()
        logger.info(
            "Payment of %d recorded on %s (status=%s)",
            amount_minor, invoice.invoice_number, invoice.status,
        )
        return payment, invoice

    async def mark_overdue_invoices(
        self, db: AsyncSession, org_id: uuid.UUID, today: Optional[date] = None
    ) -> List[Invoice]:
        today = today or utcnow().date()
        result = await db.execute(
            select(Invoice).where(
                Invoice.org_id == org_id,
                Invoice.status == INVOICE_SENT,
                Invoice.due_date < today,
            )
        )
        invoices = list(result.scalars().all())
        for invoice in invoices:
            invoice.status = INVOICE_OVERDUE
        if invoices:
            await db.flush()
            logger.info("Marked %d invoice(s) overdue for org %s", len(invoices), org_id)
        return invoices

    async def invoice_stats(self, db: AsyncSession, org_id: uuid.UUID) -> Dict[str, int]:
        result = await db.execute(
            select(
                Invoice.status,
                func.count(Invoice.id),
                func.coalesce(func.sum(Invoice.total_minor - Invoice.paid_minor), 0),
                func.coalesce(func.sum(Invoice.paid_minor), 0),
            )
            .where(Invoice.org_id == org_id)
            .group_by(Invoice.status)
        )
        counts: Dict[str, int] = {s: 0 for s in INVOICE_STATUSES}
        balances: Dict[str, int] = {s: 0 for s in INVOICE_STATUSES}
        paid_total = 0
        for status, count, balance, paid in result.all():
            counts[status] = int(count)
            balances[status] = int(balance)
            if status != INVOICE_VOID:
                paid_total += int(paid)

        return {
            "total_outstanding": balances[INVOICE_SENT] + balances[INVOICE_OVERDUE],
            "overdue": balances[INVOICE_OVERDUE],
            "overdue_count": counts[INVOICE_OVERDUE],
            "draft_count": counts[INVOICE_DRAFT],
            "sent_count": counts[INVOICE_SENT],
            "paid_count": counts[INVOICE_PAID],
            "void_count": counts[INVOICE_VOID],
            "paid_total": paid_total,
            "total_count": sum(counts.values()),
        }

    # ── Helpers ───────────────────────────────────────────────────────────

    async def _require_in_org(
        self, db: AsyncSession, model: Any, org_id: uuid.UUID, row_id: uuid.UUID, resource: str
    ) -> None:
        found = await db.execute(select(model.id).where(model.id == row_id, model.org_id == org_id))
        if found.scalar_one_or_none() is None:
            raise NotFoundError(resource=resource, resource_id=str(row_id))

    async def _load_applicable_credits(
        self, db: AsyncSession, org_id: uuid.UUID, credit_ids: List[uuid.UUID]
    ) -> List[MakeUpCredit]:
        if not credit_ids:
            return []
        result = await db.execute(
            select(MakeUpCredit).where(
                MakeUpCredit.id.in_(credit_ids), MakeUpCredit.org_id == org_id
            )
        )
        credits = list(result.scalars().all())
        if len(credits) != len(credit_ids):
            raise NotFoundError(resource="credit")

        if any(c.redeemed_at is not None for c in credits):
            raise ConflictError(CREDITS_ALREADY_REDEEMED)
        if len(available_credits(credits, utcnow())) != len(credits):
            raise ValidationError("One or more credits have expired", field="credit_ids")
        return credits

    async def _redeem_credits(
        self,
        db: AsyncSession,
        org_id: uuid.UUID,
        credit_ids: List[uuid.UUID],
        invoice_id: uuid.UUID,
    ) -> None:
        now = utcnow()
        result = await db.execute(
            update(MakeUpCredit)
            .where(
                MakeUpCredit.id.in_(credit_ids),
                MakeUpCredit.org_id == org_id,
                MakeUpCredit.redeemed_at.is_(None),
                or_(MakeUpCredit.expires_at.is_(None), MakeUpCredit.expires_at > now),
            )
            .values(redeemed_at=now, applied_to_invoice_id=invoice_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(credit_ids):
            raise ConflictError(
                CREDITS_ALREADY_REDEEMED,
                context={"requested": len(credit_ids), "redeemed": result.rowcount},
            )

    async def _release_credits(
        self, db: AsyncSession, org_id: uuid.UUID, invoice_id: uuid.UUID
    ) -> int:
        result = await db.execute(
            update(MakeUpCredit)
            .where(
                MakeUpCredit.org_id == org_id,
                MakeUpCredit.applied_to_invoice_id == invoice_id,
            )
            .values(redeemed_at=None, applied_to_invoice_id=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


# ── Singleton Instance ────────────────────────────────────────────────────
invoice_service = InvoiceService()
