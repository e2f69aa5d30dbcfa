"""
LessonLoop Backend — Billing Run Service
=========================================

What:  Turns a date range of lessons into draft invoices, one per payer.
Who:   POST /api/orgs/{org_id}/billing-runs, its retry endpoint, and the
       LoopAssist `generate_billing_run` action.

Flow (create):
    ┌────────────┐   ┌──────────────┐   ┌─────────────┐   ┌──────────────────┐
    │ Conflict   │──▶│ Insert run   │──▶│ Billing     │──▶│ Final status +   │
    │ check      │   │ (processing) │   │ logic       │   │ summary          │
    └────────────┘   └──────────────┘   └─────────────┘   └──────────────────┘

Billing logic:
    1. Load rate cards and billable lessons in [start 00:00, end 23:59:59.999999] UTC
    2. Drop lessons already linked to an invoice item (never bill twice)
    3. Load attendance for the rest, in batches
    4. Group (lesson, student) lines by payer   ← group_lessons_by_payer, pure
    5. One draft invoice per payer, each inside its own SAVEPOINT

A failure while invoicing one payer rolls back only that payer's savepoint
and is recorded in `summary.failed_payers`; the other payers still get
their invoices. Failed payers can be retried later by ID.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lessonloop.config import settings
from lessonloop.exceptions import (
    BillingRunFailedError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from lessonloop.models.billing import (
    INVOICE_DRAFT,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_PARTIAL,
    RUN_PROCESSING,
    BillingRun,
    Invoice,
    InvoiceItem,
    RateCard,
)
from lessonloop.models.organisation import Organisation, utcnow
from lessonloop.models.roster import (
    CANCELLED_BY_TEACHER,
    STUDENT_ACTIVE,
    AttendanceRecord,
    Lesson,
)
from lessonloop.schemas.billing import BillingRunCreate
from lessonloop.services.invoice_service import allocate_invoice_number
from lessonloop.services.pricing import billable_statuses, calculate_tax, resolve_lesson_rate

logger = logging.getLogger(__name__)

RUN_CONFLICT_MESSAGE = "A billing run for this period already exists"


# ══════════════════════════════════════════════════════════════════════════
# Grouping (pure)
# ══════════════════════════════════════════════════════════════════════════


@dataclass
class PayerGroup:
    """Everything one invoice will contain."""

    payer_type: str  # "guardian" | "student"
    payer_id: str
    payer_name: str
    payer_email: Optional[str]
    lessons: List[Tuple[Any, Any]] = field(default_factory=list)  # (lesson, student)

    @property
    def key(self) -> str:
        return f"{self.payer_type}-{self.payer_id}"

    def failure(self, error: str) -> Dict[str, Any]:
        return {
            "payer_name": self.payer_name,
            "payer_email": self.payer_email,
            "payer_type": self.payer_type,
            "payer_id": self.payer_id,
            "error": error,
        }


@dataclass
class GroupingResult:
    groups: List[PayerGroup]
    skipped_lessons: int
    skipped_for_cancellation: int


@dataclass
class BillingResult:
    invoice_ids: List[str] = field(default_factory=list)
    total_amount: int = 0
    total_payers: int = 0
    skipped_lessons: int = 0
    skipped_for_cancellation: int = 0
    failed_payers: List[Dict[str, Any]] = field(default_factory=list)


def resolve_payer(student: Any) -> Optional[Tuple[str, str, str, Optional[str]]]:
    """
    (payer_type, payer_id, payer_name, payer_email) for a student's lessons.

    The primary-payer guardian pays when there is one; otherwise the student
    pays, but only if we can reach them by email.
    """
    guardian = student.primary_payer
    if guardian is not None:
        return "guardian", str(guardian.id), guardian.full_name, guardian.email
    if student.email:
        return "student", str(student.id), student.full_name, student.email
    return None


def group_lessons_by_payer(
    lessons: Iterable[Any],
    attendance: Dict[Tuple[Any, Any], str],
    payer_filter: Optional[Set[str]] = None,
) -> GroupingResult:
    """
    Groups the (lesson, student) lines of `lessons` by payer.

    Skipped lines:
        - inactive students
        - participants whose attendance is cancelled_by_teacher
          (counted in skipped_for_cancellation)
        - students with no payer
        - payers outside `payer_filter`, when one is given

    A lesson that ends up in no group counts towards skipped_lessons.
    Groups keep first-seen order.
    """
    lessons = list(lessons)
    groups: Dict[str, PayerGroup] = {}
    seen: Set[Tuple[str, Any, Any]] = set()
    grouped_lessons: Set[Any] = set()
    skipped_for_cancellation = 0

    for lesson in lessons:
        for participant in lesson.participants:
            student = participant.student
            if student is None or student.status != STUDENT_ACTIVE:
                continue
            if attendance.get((lesson.id, student.id)) == CANCELLED_BY_TEACHER:
                skipped_for_cancellation += 1
                continue

            payer = resolve_payer(student)
            if payer is None:
                continue
            payer_type, payer_id, payer_name, payer_email = payer
            if payer_filter is not None and payer_id not in payer_filter:
                continue

            key = f"{payer_type}-{payer_id}"
            if (key, lesson.id, student.id) in seen:
                continue
            seen.add((key, lesson.id, student.id))

            group = groups.get(key)
            if group is None:
                group = groups[key] = PayerGroup(payer_type, payer_id, payer_name, payer_email)
            group.lessons.append((lesson, student))
            grouped_lessons.add(lesson.id)

    skipped_lessons = sum(1 for lesson in lessons if lesson.id not in grouped_lessons)
    return GroupingResult(
        groups=list(groups.values()),
        skipped_lessons=skipped_lessons,
        skipped_for_cancellation=skipped_for_cancellation,
    )


def final_status(failed_count: int, total_payers: int) -> str:
    if failed_count == 0:
        return RUN_COMPLETED
    if failed_count < total_payers:
        return RUN_PARTIAL
    return RUN_FAILED


def period_bounds(start_date: date, end_date: date) -> Tuple[datetime, datetime]:
    """Inclusive UTC bounds covering every instant of both end days."""
    return (
        datetime.combine(start_date, time.min, tzinfo=timezone.utc),
        datetime.combine(end_date, time.max, tzinfo=timezone.utc),
    )


def _batched(items: List[Any], size: int) -> Iterable[List[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# ══════════════════════════════════════════════════════════════════════════
# Service
# ══════════════════════════════════════════════════════════════════════════


class BillingRunService:
    """
    Creates, retries and reads billing runs.

    The service never commits: the request's session commits once the whole
    run has succeeded (see get_db_session). Per-payer isolation comes from
    `db.begin_nested()` savepoints.
    """

    async def create_billing_run(
        self,
        db: AsyncSession,
        org_id: uuid.UUID,
        user_id: uuid.UUID,
        data: BillingRunCreate,
    ) -> BillingRun:
        """
        Runs billing for a period and returns the stored run.

        Raises:
            ValidationError: start_date after end_date
            NotFoundError:   unknown organisation
            ConflictError:   a non-failed run already covers this exact period
            BillingRunFailedError: the billing logic itself broke. Its writes
                             are rolled back and the run is flushed as
                             failed; the caller must commit before the
                             error leaves the request.
        """
        if data.start_date > data.end_date:
            raise ValidationError("start_date must be on or before end_date", field="end_date")

        org = await db.get(Organisation, org_id)
        if org is None:
            raise NotFoundError(resource="organisation", resource_id=str(org_id))

        existing_id = await self._find_open_run(db, org_id, data.start_date, data.end_date)
        if existing_id is not None:
            raise ConflictError(RUN_CONFLICT_MESSAGE, context={"billing_run_id": str(existing_id)})

        run = BillingRun(
            org_id=org_id,
            run_type=data.run_type,
            start_date=data.start_date,
            end_date=data.end_date,
            billing_mode=data.billing_mode,
            status=RUN_PROCESSING,
            term_id=data.term_id,
            created_by=user_id,
            summary={"invoice_count": 0, "total_amount": 0, "invoice_ids": []},
        )
        try:
            async with db.begin_nested():
                db.add(run)
                await db.flush()
        except IntegrityError:
            # A concurrent request inserted the same period first
            existing_id = await self._find_open_run(db, org_id, data.start_date, data.end_date)
            context = {"billing_run_id": str(existing_id)} if existing_id else None
            raise ConflictError(RUN_CONFLICT_MESSAGE, context=context)

        logger.info(
            "Billing run %s started: org=%s period=%s..%s mode=%s generate=%s",
            run.id, org_id, data.start_date, data.end_date, data.billing_mode,
            data.generate_invoices,
        )

        fallback = (
            data.fallback_rate_minor
            if data.fallback_rate_minor is not None
            else settings.fallback_rate_minor
        )
        run_id = run.id
        try:
            async with db.begin_nested():
                result = await self.execute_billing_logic(
                    db,
                    org_id=org_id,
                    run=run,
                    generate_invoices=data.generate_invoices,
                    fallback_rate_minor=fallback,
                )
        except Exception as e:
            logger.error("Billing run %s failed: %s", run_id, str(e), exc_info=True)
            # The savepoint is gone; only the run row itself survives
            await db.refresh(run)
            run.status = RUN_FAILED
            run.summary = {
                "invoice_count": 0,
                "total_amount": 0,
                "invoice_ids": [],
                "error": type(e).__name__,
            }
            await db.flush()
            raise BillingRunFailedError(billing_run_id=str(run_id), error_type=type(e).__name__)

        run.status = final_status(len(result.failed_payers), result.total_payers)
        run.summary = self._build_summary(result)
        await db.flush()

        logger.info(
            "Billing run %s finished: status=%s invoices=%d total=%d failed_payers=%d",
            run.id, run.status, len(result.invoice_ids), result.total_amount,
            len(result.failed_payers),
        )
        return run

    async def retry_billing_run(
        self,
        db: AsyncSession,
        org_id: uuid.UUID,
        billing_run_id: uuid.UUID,
        failed_payer_ids: List[Any],
    ) -> Dict[str, Any]:
        """
        Re-invoices only the given payers of an existing run.

        Returns {"new_invoice_count", "still_failed", "final_status"}.
        """
        if not failed_payer_ids:
            raise ValidationError("failed_payer_ids must not be empty", field="failed_payer_ids")

        run = await self.get_billing_run(db, org_id, billing_run_id)
        payer_filter = {str(payer_id) for payer_id in failed_payer_ids}

        logger.info("Retrying billing run %s for %d payer(s)", run.id, len(payer_filter))
        result = await self.execute_billing_logic(
            db,
            org_id=org_id,
            run=run,
            generate_invoices=True,
            fallback_rate_minor=settings.fallback_rate_minor,
            payer_filter=payer_filter,
        )

        summary = dict(run.summary or {})
        summary["invoice_count"] = summary.get("invoice_count", 0) + len(result.invoice_ids)
        summary["total_amount"] = summary.get("total_amount", 0) + result.total_amount
        summary["invoice_ids"] = list(summary.get("invoice_ids", [])) + result.invoice_ids
        if result.failed_payers:
            summary["failed_payers"] = result.failed_payers
        else:
            summary.pop("failed_payers", None)

        status = RUN_COMPLETED if not result.failed_payers else RUN_PARTIAL
        run.summary = summary
        run.status = status
        await db.flush()

        logger.info(
            "Billing run %s retry finished: new_invoices=%d still_failed=%d status=%s",
            run.id, len(result.invoice_ids), len(result.failed_payers), status,
        )
        return {
            "new_invoice_count": len(result.invoice_ids),
            "still_failed": result.failed_payers,
            "final_status": status,
        }

    async def list_billing_runs(self, db: AsyncSession, org_id: uuid.UUID) -> List[BillingRun]:
        result = await db.execute(
            select(BillingRun)
            .where(BillingRun.org_id == org_id)
            .order_by(BillingRun.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_billing_run(
        self, db: AsyncSession, org_id: uuid.UUID, billing_run_id: uuid.UUID
    ) -> BillingRun:
        result = await db.execute(
            select(BillingRun).where(
                BillingRun.id == billing_run_id, BillingRun.org_id == org_id
            )
        )
        run = result.scalar_one_or_none()
        if run is None:
            raise NotFoundError(resource="billing run", resource_id=str(billing_run_id))
        return run

    async def _find_open_run(
        self, db: AsyncSession, org_id: uuid.UUID, start_date: date, end_date: date
    ) -> Optional[uuid.UUID]:
        """ID of the non-failed run covering exactly this period, if any."""
        result = await db.execute(
            select(BillingRun.id).where(
                BillingRun.org_id == org_id,
                BillingRun.start_date == start_date,
                BillingRun.end_date == end_date,
                BillingRun.status != RUN_FAILED,
            )
        )
        return result.scalars().first()

    # ── Billing logic ─────────────────────────────────────────────────────

    async def execute_billing_logic(
        self,
        db: AsyncSession,
        org_id: uuid.UUID,
        run: BillingRun,
        generate_invoices: bool,
        fallback_rate_minor: int,
        payer_filter: Optional[Set[str]] = None,
    ) -> BillingResult:
        rate_cards = list(
            (
                await db.execute(
                    select(RateCard)
                    .where(RateCard.org_id == org_id)
                    .order_by(RateCard.duration_mins.asc(), RateCard.created_at.asc())
                )
            ).scalars().all()
        )

        start_at, end_at = period_bounds(run.start_date, run.end_date)
        lessons = list(
            (
                await db.execute(
                    select(Lesson)
                    .where(
                        Lesson.org_id == org_id,
                        Lesson.status.in_(sorted(billable_statuses(run.billing_mode))),
                        Lesson.start_at >= start_at,
                        Lesson.start_at <= end_at,
                    )
                    .order_by(Lesson.start_at.asc())
                )
            ).scalars().all()
        )

        billed = await self._billed_lesson_ids(db, org_id, [lesson.id for lesson in lessons])
        unbilled = [lesson for lesson in lessons if lesson.id not in billed]
        attendance = await self._attendance_map(db, [lesson.id for lesson in unbilled])

        grouping = group_lessons_by_payer(unbilled, attendance, payer_filter)
        result = BillingResult(
            total_payers=len(grouping.groups),
            skipped_lessons=grouping.skipped_lessons,
            skipped_for_cancellation=grouping.skipped_for_cancellation,
        )
        logger.debug(
            "Billing run %s: %d lesson(s), %d already billed, %d payer group(s)",
            run.id, len(lessons), len(billed), len(grouping.groups),
        )

        if not generate_invoices:
            return result

        due_date = utcnow().date() + timedelta(days=settings.invoice_due_days)
        for group in grouping.groups:
            try:
                async with db.begin_nested():
                    invoice = await self._invoice_payer(
                        db, org_id, run, group, rate_cards, fallback_rate_minor, due_date
                    )
            except Exception as e:
                logger.warning(
                    "Billing run %s: payer %s (%s) failed: %s",
                    run.id, group.key, group.payer_name, str(e),
                )
                result.failed_payers.append(group.failure(str(e) or type(e).__name__))
                continue

            result.invoice_ids.append(str(invoice.id))
            result.total_amount += invoice.total_minor

        return result

    async def _invoice_payer(
        self,
        db: AsyncSession,
        org_id: uuid.UUID,
        run: BillingRun,
        group: PayerGroup,
        rate_cards: List[RateCard],
        fallback_rate_minor: int,
        due_date: date,
    ) -> Invoice:
        number, org = await allocate_invoice_number(db, org_id)

        items = []
        for position, (lesson, student) in enumerate(group.lessons):
            rate = resolve_lesson_rate(lesson, student, rate_cards, fallback_rate_minor)
            items.append(
                InvoiceItem(
                    org_id=org_id,
                    position=position,
                    description=lesson.title,
                    quantity=1,
                    unit_price_minor=rate,
                    amount_minor=rate,
                    linked_lesson_id=lesson.id,
                    student_id=student.id,
                )
            )

        subtotal = sum(item.amount_minor for item in items)
        vat_rate = org.vat_rate if org.vat_enabled else 0
        tax = calculate_tax(subtotal, vat_rate)
        payer_uuid = uuid.UUID(group.payer_id)

        invoice = Invoice(
            org_id=org_id,
            invoice_number=number,
            status=INVOICE_DRAFT,
            due_date=due_date,
            payer_guardian_id=payer_uuid if group.payer_type == "guardian" else None,
            payer_student_id=payer_uuid if group.payer_type == "student" else None,
            subtotal_minor=subtotal,
            tax_minor=tax,
            total_minor=subtotal + tax,
            vat_rate=vat_rate,
            currency_code=org.currency_code,
            term_id=run.term_id,
            billing_run_id=run.id,
            items=items,
            payments=[],
        )
        db.add(invoice)
        await db.flush()
        return invoice

    async def _billed_lesson_ids(
        self, db: AsyncSession, org_id: uuid.UUID, lesson_ids: List[uuid.UUID]
    ) -> Set[uuid.UUID]:
        billed: Set[uuid.UUID] = set()
        for batch in _batched(lesson_ids, settings.attendance_batch_size):
            result = await db.execute(
                select(InvoiceItem.linked_lesson_id)
                .where(InvoiceItem.org_id == org_id, InvoiceItem.linked_lesson_id.in_(batch))
                .distinct()
            )
            billed.update(result.scalars().all())
        return billed

    async def _attendance_map(
        self, db: AsyncSession, lesson_ids: List[uuid.UUID]
    ) -> Dict[Tuple[uuid.UUID, uuid.UUID], str]:
        attendance: Dict[Tuple[uuid.UUID, uuid.UUID], str] = {}
        for batch in _batched(lesson_ids, settings.attendance_batch_size):
            result = await db.execute(
                select(
                    AttendanceRecord.lesson_id,
                    AttendanceRecord.student_id,
                    AttendanceRecord.attendance_status,
                ).where(AttendanceRecord.lesson_id.in_(batch))
            )
            for lesson_id, student_id, status in result.all():
                attendance[(lesson_id, student_id)] = status
        return attendance

    @staticmethod
    def _build_summary(result: BillingResult) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "invoice_count": len(result.invoice_ids),
            "total_amount": result.total_amount,
            "invoice_ids": result.invoice_ids,
            "skipped_lessons": result.skipped_lessons,
            "skipped_for_cancellation": result.skipped_for_cancellation,
            "payer_count": result.total_payers,
        }
        if result.failed_payers:
            summary["failed_payers"] = result.failed_payers
        return summary


# ── Singleton Instance ────────────────────────────────────────────────────
billing_run_service = BillingRunService()
