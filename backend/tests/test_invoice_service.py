"""
LessonLoop Backend — Invoice Service Tests
===========================================

What we test:
    ✅ Numbering from the organisation counter
    ✅ Manual invoices: payer rules, totals, credits applied and redeemed once
    ✅ Status machine, including credit release on void
    ✅ Payments: partial, settling, and the rejected cases
    ✅ Overdue marking and dashboard stats
"""

import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import add_guardian, add_student
from lessonloop.exceptions import ConflictError, NotFoundError, ValidationError
from lessonloop.models.billing import MakeUpCredit
from lessonloop.models.organisation import utcnow
from lessonloop.schemas.invoice import InvoiceCreate, InvoiceItemCreate
from lessonloop.services.invoice_service import (
    CREDITS_ALREADY_REDEEMED,
    allocate_invoice_number,
    invoice_service,
    is_valid_status_transition,
)

DUE = date(2025, 2, 1)


def piano_items(quantity=2, unit_price=2500):
    return [InvoiceItemCreate(description="Piano lessons", quantity=quantity, unit_price_minor=unit_price)]


async def add_credit(db, org, student, value=1500, expires_at=None):
    credit = MakeUpCredit(
        org_id=org.id, student_id=student.id, credit_value_minor=value, expires_at=expires_at
    )
    db.add(credit)
    await db.flush()
    return credit


async def reload_credit(db, credit_id):
    result = await db.execute(
        select(MakeUpCredit)
        .where(MakeUpCredit.id == credit_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


@pytest.fixture
def guardian_invoice(db_session, org):
    """Factory for a 5000 draft invoice billed to a fresh guardian."""
    async def _make(**overrides):
        guardian = await add_guardian(db_session, org)
        data = InvoiceCreate(
            due_date=overrides.pop("due_date", DUE),
            payer_guardian_id=guardian.id,
            items=overrides.pop("items", piano_items()),
            **overrides,
        )
        return await invoice_service.create_invoice(db_session, org.id, data)
    return _make


async def send(db, org, invoice):
    return await invoice_service.update_invoice_status(db, org.id, invoice.id, "sent")


class TestNumbering:

    @pytest.mark.asyncio
    async def test_numbers_follow_the_org_counter(self, db_session, org):
        first, _ = await allocate_invoice_number(db_session, org.id)
        second, loaded = await allocate_invoice_number(db_session, org.id)

        year = utcnow().year
        assert first == f"RMS-{year}-00001"
        assert second == f"RMS-{year}-00002"
        assert loaded.next_invoice_seq == 3

    @pytest.mark.asyncio
    async def test_unknown_org(self, db_session):
        with pytest.raises(NotFoundError):
            await allocate_invoice_number(db_session, uuid.uuid4())


class TestCreateInvoice:

    @pytest.mark.asyncio
    async def test_totals(self, guardian_invoice):
        invoice = await guardian_invoice()

        assert invoice.status == "draft"
        assert invoice.subtotal_minor == 5000
        assert invoice.tax_minor == 0
        assert invoice.total_minor == 5000
        assert invoice.items[0].amount_minor == 5000

    @pytest.mark.asyncio
    async def test_vat(self, db_session, org, guardian_invoice):
        org.vat_enabled = True
        org.vat_rate = Decimal("20")
        await db_session.flush()

        invoice = await guardian_invoice()

        assert invoice.tax_minor == 1000
        assert invoice.total_minor == 6000

    @pytest.mark.asyncio
    async def test_needs_exactly_one_payer(self, db_session, org):
        guardian = await add_guardian(db_session, org)
        student = await add_student(db_session, org, email="s@example.com")

        for payers in ({}, {"payer_guardian_id": guardian.id, "payer_student_id": student.id}):
            data = InvoiceCreate(due_date=DUE, items=piano_items(), **payers)
            with pytest.raises(ValidationError):
                await invoice_service.create_invoice(db_session, org.id, data)

    @pytest.mark.asyncio
    async def test_needs_items(self, guardian_invoice):
        with pytest.raises(ValidationError):
            await guardian_invoice(items=[])

    @pytest.mark.asyncio
    async def test_payer_from_another_org(self, db_session, org):
        data = InvoiceCreate(due_date=DUE, payer_student_id=uuid.uuid4(), items=piano_items())
        with pytest.raises(NotFoundError):
            await invoice_service.create_invoice(db_session, org.id, data)


class TestInvoiceCredits:

    @pytest.mark.asyncio
    async def test_credit_reduces_total_and_is_redeemed(self, db_session, org, guardian_invoice):
        student = await add_student(db_session, org)
        credit = await add_credit(db_session, org, student, value=1500)

        invoice = await guardian_invoice(credit_ids=[credit.id])

        assert invoice.credit_applied_minor == 1500
        assert invoice.total_minor == 3500
        credit = await reload_credit(db_session, credit.id)
        assert credit.redeemed_at is not None
        assert credit.applied_to_invoice_id == invoice.id

    @pytest.mark.asyncio
    async def test_credit_cannot_be_used_twice(self, db_session, org, guardian_invoice):
        student = await add_student(db_session, org)
        credit = await add_credit(db_session, org, student)
        await guardian_invoice(credit_ids=[credit.id])

        with pytest.raises(ConflictError) as exc_info:
            await guardian_invoice(credit_ids=[credit.id])

        assert exc_info.value.message == CREDITS_ALREADY_REDEEMED

    @pytest.mark.asyncio
    async def test_expired_credit_is_rejected(self, db_session, org, guardian_invoice):
        student = await add_student(db_session, org)
        credit = await add_credit(
            db_session, org, student, expires_at=utcnow() - timedelta(days=1)
        )

        with pytest.raises(ValidationError):
            await guardian_invoice(credit_ids=[credit.id])

    @pytest.mark.asyncio
    async def test_credit_total_never_goes_negative(self, db_session, org, guardian_invoice):
        student = await add_student(db_session, org)
        credit = await add_credit(db_session, org, student, value=9000)

        invoice = await guardian_invoice(credit_ids=[credit.id])

        assert invoice.total_minor == 0

    @pytest.mark.asyncio
    async def test_void_releases_credits(self, db_session, org, guardian_invoice):
        student = await add_student(db_session, org)
        credit = await add_credit(db_session, org, student)
        invoice = await guardian_invoice(credit_ids=[credit.id])

        await invoice_service.update_invoice_status(db_session, org.id, invoice.id, "void")

        credit = await reload_credit(db_session, credit.id)
        assert credit.redeemed_at is None
        assert credit.applied_to_invoice_id is None


class TestStatusTransitions:

    @pytest.mark.parametrize(
        "current,new,allowed",
        [
            ("draft", "sent", True),
            ("draft", "void", True),
            ("draft", "paid", False),
            ("draft", "overdue", False),
            ("sent", "overdue", True),
            ("overdue", "sent", True),
            ("overdue", "paid", True),
            ("paid", "void", False),
            ("void", "draft", False),
            ("paid", "paid", True),
        ],
    )
    def test_transition_table(self, current, new, allowed):
        assert is_valid_status_transition(current, new) is allowed

    @pytest.mark.asyncio
    async def test_draft_cannot_be_marked_paid(self, db_session, org, guardian_invoice):
        invoice = await guardian_invoice()
        with pytest.raises(ValidationError) as exc_info:
            await invoice_service.update_invoice_status(db_session, org.id, invoice.id, "paid")
        assert exc_info.value.context["current_status"] == "draft"

    @pytest.mark.asyncio
    async def test_send(self, db_session, org, guardian_invoice):
        invoice = await guardian_invoice()
        updated = await send(db_session, org, invoice)
        assert updated.status == "sent"


class TestPayments:

    @pytest.mark.asyncio
    async def test_partial_then_full_payment(self, db_session, org, guardian_invoice):
        invoice = await send(db_session, org, await guardian_invoice())

        _, invoice = await invoice_service.record_payment(
            db_session, org.id, invoice.id, 2000, "card"
        )
        assert invoice.status == "sent"
        assert invoice.outstanding_minor == 3000

        payment, invoice = await invoice_service.record_payment(
            db_session, org.id, invoice.id, 3000, "bank_transfer", provider_reference="BACS-42"
        )
        assert invoice.status == "paid"
        assert invoice.outstanding_minor == 0
        assert payment.provider_reference == "BACS-42"
        assert len(invoice.payments) == 2

    @pytest.mark.asyncio
    async def test_overpayment_is_rejected(self, db_session, org, guardian_invoice):
        invoice = await send(db_session, org, await guardian_invoice())
        with pytest.raises(ValidationError) as exc_info:
            await invoice_service.record_payment(db_session, org.id, invoice.id, 5001, "card")
        assert exc_info.value.context["outstanding_minor"] == 5000

    @pytest.mark.asyncio
    async def test_draft_invoice_cannot_be_paid(self, db_session, org, guardian_invoice):
        invoice = await guardian_invoice()
        with pytest.raises(ValidationError):
            await invoice_service.record_payment(db_session, org.id, invoice.id, 100, "card")

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, db_session, org, guardian_invoice):
        invoice = await send(db_session, org, await guardian_invoice())
        with pytest.raises(ValidationError):
            await invoice_service.record_payment(db_session, org.id, invoice.id, 0, "card")

    @pytest.mark.asyncio
    async def test_overdue_invoice_accepts_payment(self, db_session, org, guardian_invoice):
        invoice = await send(db_session, org, await guardian_invoice())
        await invoice_service.update_invoice_status(db_session, org.id, invoice.id, "overdue")

        _, invoice = await invoice_service.record_payment(db_session, org.id, invoice.id, 5000, "cash")

        assert invoice.status == "paid"


class TestOverdueAndStats:

    @pytest.mark.asyncio
    async def test_mark_overdue_only_touches_past_due_sent(self, db_session, org, guardian_invoice):
        past_due = await send(db_session, org, await guardian_invoice(due_date=date(2025, 1, 1)))
        not_due = await send(db_session, org, await guardian_invoice(due_date=date(2025, 3, 1)))
        draft = await guardian_invoice(due_date=date(2025, 1, 1))

        updated = await invoice_service.mark_overdue_invoices(
            db_session, org.id, today=date(2025, 2, 1)
        )

        assert [inv.id for inv in updated] == [past_due.id]
        assert past_due.status == "overdue"
        assert not_due.status == "sent"
        assert draft.status == "draft"

    @pytest.mark.asyncio
    async def test_stats(self, db_session, org, guardian_invoice):
        await guardian_invoice()
        sent = await send(db_session, org, await guardian_invoice())
        overdue = await send(db_session, org, await guardian_invoice())
        await invoice_service.update_invoice_status(db_session, org.id, overdue.id, "overdue")
        await invoice_service.record_payment(db_session, org.id, sent.id, 1000, "card")

        stats = await invoice_service.invoice_stats(db_session, org.id)

        assert stats["draft_count"] == 1
        assert stats["sent_count"] == 1
        assert stats["overdue_count"] == 1
        assert stats["overdue"] == 5000
        assert stats["total_outstanding"] == 4000 + 5000
        assert stats["paid_total"] == 1000
        assert stats["total_count"] == 3

    @pytest.mark.asyncio
    async def test_list_filters_and_counts(self, db_session, org, guardian_invoice):
        await guardian_invoice()
        await send(db_session, org, await guardian_invoice())

        drafts, total = await invoice_service.list_invoices(db_session, org.id, status="draft")
        assert total == 1
        assert drafts[0].status == "draft"

        _, total = await invoice_service.list_invoices(db_session, org.id, payer_type="guardian")
        assert total == 2

        _, total = await invoice_service.list_invoices(db_session, org.id, payer_type="student")
        assert total == 0

    @pytest.mark.asyncio
    async def test_list_rejects_unknown_status(self, db_session, org):
        with pytest.raises(ValidationError):
            await invoice_service.list_invoices(db_session, org.id, status="lost")
