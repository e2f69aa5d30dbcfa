"""
LessonLoop Backend — Roster Service
====================================

What:  The minimal CRM and scheduling data billing needs: guardians,
       students (with payer links), lessons (with participants) and
       attendance.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lessonloop.exceptions import NotFoundError, ValidationError
from lessonloop.models.billing import RateCard
from lessonloop.models.roster import (
    LESSON_COMPLETED,
    LESSON_SCHEDULED,
    AttendanceRecord,
    Guardian,
    Lesson,
    LessonParticipant,
    Student,
    StudentGuardian,
)
from lessonloop.models.organisation import utcnow
from lessonloop.schemas.roster import GuardianCreate, LessonCreate, StudentCreate

logger = logging.getLogger(__name__)


class RosterService:

    # ── Guardians ─────────────────────────────────────────────────────────

    async def create_guardian(
        self, db: AsyncSession, org_id: uuid.UUID, data: GuardianCreate
    ) -> Guardian:
        guardian = Guardian(org_id=org_id, **data.model_dump())
        db.add(guardian)
        await db.flush()
        return guardian

    async def list_guardians(self, db: AsyncSession, org_id: uuid.UUID) -> List[Guardian]:
        result = await db.execute(
            select(Guardian).where(Guardian.org_id == org_id).order_by(Guardian.full_name)
        )
        return list(result.scalars().all())

    # ── Students ──────────────────────────────────────────────────────────

    async def create_student(
        self, db: AsyncSession, org_id: uuid.UUID, data: StudentCreate
    ) -> Student:
        guardian_ids = [link.guardian_id for link in data.guardians]
        if len(set(guardian_ids)) != len(guardian_ids):
            raise ValidationError("Each guardian can be linked only once", field="guardians")

        guardians = await self._load_all_in_org(
            db, Guardian, org_id, guardian_ids, "guardian"
        )
        if data.default_rate_card_id:
            await self._load_all_in_org(
                db, RateCard, org_id, [data.default_rate_card_id], "rate card"
            )

        student = Student(
            org_id=org_id,
            first_name=data.first_name,
            last_name=data.last_name,
            email=data.email,
            status=data.status,
            default_rate_card_id=data.default_rate_card_id,
            guardian_links=[
                StudentGuardian(
                    guardian=guardians[link.guardian_id], is_primary_payer=link.is_primary_payer
                )
                for link in data.guardians
            ],
        )
        db.add(student)
        await db.flush()
        logger.info("Student %s created for org %s", student.id, org_id)
        return student

    async def list_students(
        self, db: AsyncSession, org_id: uuid.UUID, status: Optional[str] = None
    ) -> List[Student]:
        query = select(Student).where(Student.org_id == org_id)
        if status:
            query = query.where(Student.status == status)
        result = await db.execute(query.order_by(Student.last_name, Student.first_name))
        return list(result.scalars().all())

    # ── Lessons ───────────────────────────────────────────────────────────

    async def create_lesson(
        self, db: AsyncSession, org_id: uuid.UUID, data: LessonCreate
    ) -> Lesson:
        if data.end_at <= data.start_at:
            raise ValidationError("end_at must be after start_at", field="end_at")
        student_ids = list(dict.fromkeys(data.student_ids))
        students = await self._load_all_in_org(db, Student, org_id, student_ids, "student")

        lesson = Lesson(
            org_id=org_id,
            title=data.title,
            start_at=data.start_at,
            end_at=data.end_at,
            status=data.status,
            teacher_id=data.teacher_id,
            participants=[LessonParticipant(student=students[sid]) for sid in student_ids],
        )
        db.add(lesson)
        await db.flush()
        return lesson

    async def list_lessons(
        self,
        db: AsyncSession,
        org_id: uuid.UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Lesson]:
        query = select(Lesson).where(Lesson.org_id == org_id)
        if start:
            query = query.where(Lesson.start_at >= start)
        if end:
            query = query.where(Lesson.start_at <= end)
        result = await db.execute(query.order_by(Lesson.start_at.asc()))
        return list(result.scalars().all())

    async def get_lesson(
        self, db: AsyncSession, org_id: uuid.UUID, lesson_id: uuid.UUID
    ) -> Lesson:
        result = await db.execute(
            select(Lesson).where(Lesson.id == lesson_id, Lesson.org_id == org_id)
        )
        lesson = result.scalar_one_or_none()
        if lesson is None:
            raise NotFoundError(resource="lesson", resource_id=str(lesson_id))
        return lesson

    async def update_lesson_status(
        self, db: AsyncSession, org_id: uuid.UUID, lesson_id: uuid.UUID, status: str
    ) -> Lesson:
        lesson = await self.get_lesson(db, org_id, lesson_id)
        lesson.status = status
        await db.flush()
        return lesson

    async def complete_past_lessons(
        self,
        db: AsyncSession,
        org_id: uuid.UUID,
        lesson_ids: Optional[Sequence[uuid.UUID]] = None,
        now: Optional[datetime] = None,
    ) -> List[Lesson]:
        """Scheduled lessons that have already ended become completed."""
        now = now or utcnow()
        query = select(Lesson).where(
            Lesson.org_id == org_id,
            Lesson.status == LESSON_SCHEDULED,
            Lesson.end_at <= now,
        )
        if lesson_ids:
            query = query.where(Lesson.id.in_(list(lesson_ids)))
        lessons = list((await db.execute(query)).scalars().all())
        for lesson in lessons:
            lesson.status = LESSON_COMPLETED
        if lessons:
            await db.flush()
            logger.info("Completed %d past lesson(s) for org %s", len(lessons), org_id)
        return lessons

    # ── Attendance ────────────────────────────────────────────────────────

    async def record_attendance(
        self,
        db: AsyncSession,
        org_id: uuid.UUID,
        lesson_id: uuid.UUID,
        student_id: uuid.UUID,
        attendance_status: str,
    ) -> AttendanceRecord:
        """Creates or replaces the single attendance record for (lesson, student)."""
        lesson = await self.get_lesson(db, org_id, lesson_id)
        if student_id not in {p.student_id for p in lesson.participants}:
            raise ValidationError(
                "Student is not a participant of this lesson", field="student_id"
            )

        result = await db.execute(
            select(AttendanceRecord).where(
                AttendanceRecord.lesson_id == lesson_id,
                AttendanceRecord.student_id == student_id,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = AttendanceRecord(
                org_id=org_id,
                lesson_id=lesson_id,
                student_id=student_id,
                attendance_status=attendance_status,
            )
            db.add(record)
        else:
            record.attendance_status = attendance_status
            record.recorded_at = utcnow()
        await db.flush()
        return record

    # ── Helpers ───────────────────────────────────────────────────────────

    async def _load_all_in_org(
        self, db: AsyncSession, model, org_id: uuid.UUID, ids: List[uuid.UUID], resource: str
    ) -> Dict[uuid.UUID, Any]:
        """Rows of `model` by ID; any ID missing from the org raises NotFoundError."""
        if not ids:
            return {}
        unique_ids = set(ids)
        result = await db.execute(
            select(model).where(model.id.in_(unique_ids), model.org_id == org_id)
        )
        rows = {row.id: row for row in result.scalars().all()}
        missing = unique_ids - set(rows)
        if missing:
            raise NotFoundError(resource=resource, resource_id=str(next(iter(missing))))
        return rows


# ── Singleton Instance ────────────────────────────────────────────────────
roster_service = RosterService()
