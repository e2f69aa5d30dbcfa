"""
LessonLoop Backend — Roster Service Tests
==========================================
"""

import uuid
from datetime import timedelta

import pytest

from conftest import JAN_10, add_guardian, add_lesson, add_student
from lessonloop.exceptions import NotFoundError, ValidationError
from lessonloop.models.roster import LESSON_SCHEDULED
from lessonloop.schemas.roster import GuardianLink, LessonCreate, StudentCreate
from lessonloop.services.roster_service import roster_service


class TestStudents:

    @pytest.mark.asyncio
    async def test_primary_payer_link(self, db_session, org):
        mum = await add_guardian(db_session, org, "Mum", "mum@example.com")
        dad = await add_guardian(db_session, org, "Dad", "dad@example.com")

        student = await roster_service.create_student(
            db_session, org.id,
            StudentCreate(
                first_name="Ava",
                last_name="Jones",
                guardians=[
                    GuardianLink(guardian_id=mum.id),
                    GuardianLink(guardian_id=dad.id, is_primary_payer=True),
                ],
            ),
        )

        assert student.primary_payer is dad
        assert student.full_name == "Ava Jones"

    @pytest.mark.asyncio
    async def test_guardian_from_another_org(self, db_session, org):
        with pytest.raises(NotFoundError):
            await roster_service.create_student(
                db_session, org.id,
                StudentCreate(
                    first_name="Ava", last_name="Jones",
                    guardians=[GuardianLink(guardian_id=uuid.uuid4(), is_primary_payer=True)],
                ),
            )

    @pytest.mark.asyncio
    async def test_same_guardian_twice_is_rejected(self, db_session, org):
        mum = await add_guardian(db_session, org, "Mum", "mum@example.com")

        with pytest.raises(ValidationError) as exc_info:
            await roster_service.create_student(
                db_session, org.id,
                StudentCreate(
                    first_name="Ava", last_name="Jones",
                    guardians=[
                        GuardianLink(guardian_id=mum.id, is_primary_payer=True),
                        GuardianLink(guardian_id=mum.id),
                    ],
                ),
            )

        assert exc_info.value.field == "guardians"

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, db_session, org):
        await add_student(db_session, org, "Ava", "Jones")
        await add_student(db_session, org, "Leo", "Smith", status="inactive")

        active = await roster_service.list_students(db_session, org.id, status="active")

        assert [s.first_name for s in active] == ["Ava"]


class TestLessons:

    @pytest.mark.asyncio
    async def test_create_with_participants(self, db_session, org):
        ava = await add_student(db_session, org, "Ava", "Jones")
        leo = await add_student(db_session, org, "Leo", "Smith")

        lesson = await roster_service.create_lesson(
            db_session, org.id,
            LessonCreate(
                title="Duet",
                start_at=JAN_10,
                end_at=JAN_10 + timedelta(minutes=45),
                student_ids=[ava.id, leo.id, ava.id],
            ),
        )

        assert lesson.status == "scheduled"
        assert [p.student_id for p in lesson.participants] == [ava.id, leo.id]

    @pytest.mark.asyncio
    async def test_complete_past_lessons(self, db_session, org):
        ava = await add_student(db_session, org)
        past = await add_lesson(db_session, org, [ava], JAN_10, status=LESSON_SCHEDULED)
        future = await add_lesson(
            db_session, org, [ava], JAN_10 + timedelta(days=7), status=LESSON_SCHEDULED
        )

        completed = await roster_service.complete_past_lessons(
            db_session, org.id, now=JAN_10 + timedelta(days=1)
        )

        assert [lesson.id for lesson in completed] == [past.id]
        assert past.status == "completed"
        assert future.status == "scheduled"


class TestAttendance:

    @pytest.mark.asyncio
    async def test_record_then_replace(self, db_session, org):
        ava = await add_student(db_session, org)
        lesson = await add_lesson(db_session, org, [ava], JAN_10)

        first = await roster_service.record_attendance(
            db_session, org.id, lesson.id, ava.id, "absent"
        )
        second = await roster_service.record_attendance(
            db_session, org.id, lesson.id, ava.id, "cancelled_by_teacher"
        )

        assert second.id == first.id
        assert second.attendance_status == "cancelled_by_teacher"

    @pytest.mark.asyncio
    async def test_non_participant_is_rejected(self, db_session, org):
        ava = await add_student(db_session, org, "Ava", "Jones")
        leo = await add_student(db_session, org, "Leo", "Smith")
        lesson = await add_lesson(db_session, org, [ava], JAN_10)

        with pytest.raises(ValidationError):
            await roster_service.record_attendance(
                db_session, org.id, lesson.id, leo.id, "present"
            )
