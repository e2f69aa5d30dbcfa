"""
LessonLoop Backend — Make-Up Credit Service
============================================

What:  Issue, list and redeem make-up credits, plus the pure availability
       and eligibility rules.

Rules:
    available   = not redeemed AND (no expiry OR expires_at > now)
    eligible    = whole hours between cancellation and lesson start
                  (truncated toward zero) >= required notice hours
"""

import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lessonloop.exceptions import ConflictError, DatabaseError, NotFoundError
from lessonloop.models.billing import MakeUpCredit
from lessonloop.models.organisation import Organisation, utcnow
from lessonloop.models.roster import Lesson, Student
from lessonloop.schemas.invoice import CreditCreate

logger = logging.getLogger(__name__)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treats naive datetimes as UTC. SQLite hands timestamps back without tzinfo."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_credit_available(credit: MakeUpCredit, now: datetime) -> bool:
    if credit.redeemed_at is not None:
        return False
    expires_at = ensure_utc(credit.expires_at)
    return expires_at is None or expires_at > ensure_utc(now)


def available_credits(credits: Iterable[MakeUpCredit], now: datetime) -> List[MakeUpCredit]:
    return [c for c in credits if is_credit_available(c, now)]


def total_available_value(credits: Iterable[MakeUpCredit], now: datetime) -> int:
    return sum(c.credit_value_minor for c in available_credits(credits, now))


def check_credit_eligibility(
    lesson_start: datetime, cancelled_at: datetime, required_notice_hours: int = 24
) -> dict:
    """
    Whether a cancellation gave enough notice to earn a make-up credit.

    Returns {"eligible", "hours_notice", "required_notice_hours"}. A
    cancellation after the lesson started gives negative notice.
    """
    seconds = (ensure_utc(lesson_start) - ensure_utc(cancelled_at)).total_seconds()
    hours_notice = math.trunc(seconds / 3600)
    return {
        "eligible": hours_notice >= required_notice_hours,
        "hours_notice": hours_notice,
        "required_notice_hours": required_notice_hours,
    }


class CreditService:

    async def issue_credit(
        self, db: AsyncSession, org_id: uuid.UUID, user_id: uuid.UUID, data: CreditCreate
    ) -> MakeUpCredit:
        student = await db.execute(
            select(Student.id).where(Student.id == data.student_id, Student.org_id == org_id)
        )
        if student.scalar_one_or_none() is None:
            raise NotFoundError(resource="student", resource_id=str(data.student_id))

        credit = MakeUpCredit(
            org_id=org_id,
            student_id=data.student_id,
            issued_for_lesson_id=data.issued_for_lesson_id,
            credit_value_minor=data.credit_value_minor,
            expires_at=data.expires_at,
            notes=data.notes,
            created_by=user_id,
        )
        db.add(credit)
        try:
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error issuing credit: %s", str(e), exc_info=True)
            raise DatabaseError(
                message="Could not issue the credit. Please try again.",
                context={"student_id": str(data.student_id)},
            )
        logger.info(
            "Issued make-up credit %s (%d) to student %s",
            credit.id, credit.credit_value_minor, data.student_id,
        )
        return credit

    async def list_credits(
        self, db: AsyncSession, org_id: uuid.UUID, student_id: Optional[uuid.UUID] = None
    ) -> List[MakeUpCredit]:
        query = select(MakeUpCredit).where(MakeUpCredit.org_id == org_id)
        if student_id:
            query = query.where(MakeUpCredit.student_id == student_id)
        # populate_existing: redemption and release use bulk UPDATEs
        result = await db.execute(
            query.order_by(MakeUpCredit.issued_at.desc()).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def notice_hours_for_org(self, db: AsyncSession, org_id: uuid.UUID) -> int:
        org = await db.get(Organisation, org_id)
        if org is None:
            raise NotFoundError(resource="organisation", resource_id=str(org_id))
        return org.cancellation_notice_hours

    async def redeem_credit(
        self, db: AsyncSession, org_id: uuid.UUID, credit_id: uuid.UUID, lesson_id: uuid.UUID
    ) -> MakeUpCredit:
        """Books a make-up lesson against an available credit."""
        lesson = await db.execute(
            select(Lesson.id).where(Lesson.id == lesson_id, Lesson.org_id == org_id)
        )
        if lesson.scalar_one_or_none() is None:
            raise NotFoundError(resource="lesson", resource_id=str(lesson_id))

        exists = await db.execute(
            select(MakeUpCredit.id).where(
                MakeUpCredit.id == credit_id, MakeUpCredit.org_id == org_id
            )
        )
        if exists.scalar_one_or_none() is None:
            raise NotFoundError(resource="credit", resource_id=str(credit_id))

        now = utcnow()
        result = await db.execute(
            update(MakeUpCredit)
            .where(
                MakeUpCredit.id == credit_id,
                MakeUpCredit.org_id == org_id,
                MakeUpCredit.redeemed_at.is_(None),
                or_(MakeUpCredit.expires_at.is_(None), MakeUpCredit.expires_at > now),
            )
            .values(redeemed_at=now, redeemed_lesson_id=lesson_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                "Credit is not available (already redeemed or expired)",
                context={"credit_id": str(credit_id)},
            )

        refreshed = await db.execute(
            select(MakeUpCredit)
            .where(MakeUpCredit.id == credit_id)
            .execution_options(populate_existing=True)
        )
        credit = refreshed.scalar_one()
        logger.info("Credit %s redeemed against lesson %s", credit_id, lesson_id)
        return credit


# ── Singleton Instance ────────────────────────────────────────────────────
credit_service = CreditService()
