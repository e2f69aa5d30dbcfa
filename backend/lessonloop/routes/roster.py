"""
LessonLoop Backend — Roster Routes
====================================

What:  Guardians, students, lessons and attendance.
Who:   Any member may read; owner, admin and teacher may write.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lessonloop.database import get_db_session
from lessonloop.models.organisation import ALL_ROLES, TEACHING_ROLES, OrgMembership
from lessonloop.routes import AUTH_RESPONSES
from lessonloop.schemas.common import ErrorResponse
from lessonloop.schemas.roster import (
    AttendanceResponse,
    AttendanceUpdate,
    GuardianCreate,
    GuardianResponse,
    LessonCreate,
    LessonResponse,
    LessonStatusUpdate,
    StudentCreate,
    StudentResponse,
)
from lessonloop.security import require_org_role
from lessonloop.services.roster_service import roster_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orgs/{org_id}", tags=["Roster"])


# ── Guardians ─────────────────────────────────────────────────────────────

@router.get("/guardians", response_model=List[GuardianResponse], responses=AUTH_RESPONSES)
async def list_guardians(
    org_id: UUID,
    membership: OrgMembership = Depends(require_org_role(*ALL_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> List[GuardianResponse]:
    guardians = await roster_service.list_guardians(db, org_id)
    return [GuardianResponse.model_validate(g) for g in guardians]


@router.post(
    "/guardians",
    status_code=201,
    response_model=GuardianResponse,
    responses=AUTH_RESPONSES,
)
async def create_guardian(
    org_id: UUID,
    body: GuardianCreate,
    membership: OrgMembership = Depends(require_org_role(*TEACHING_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> GuardianResponse:
    guardian = await roster_service.create_guardian(db, org_id, body)
    return GuardianResponse.model_validate(guardian)


# ── Students ──────────────────────────────────────────────────────────────

@router.get("/students", response_model=List[StudentResponse], responses=AUTH_RESPONSES)
async def list_students(
    org_id: UUID,
    status: Optional[str] = Query(default=None, description="active or inactive"),
    membership: OrgMembership = Depends(require_org_role(*ALL_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> List[StudentResponse]:
    students = await roster_service.list_students(db, org_id, status=status)
    return [StudentResponse.from_student(s) for s in students]


@router.post(
    "/students",
    status_code=201,
    response_model=StudentResponse,
    responses={
        **AUTH_RESPONSES,
        400: {"description": "A guardian is linked twice", "model": ErrorResponse},
        404: {"description": "Guardian or rate card not in this organisation", "model": ErrorResponse},
    },
    summary="Create a student and link guardians",
)
async def create_student(
    org_id: UUID,
    body: StudentCreate,
    membership: OrgMembership = Depends(require_org_role(*TEACHING_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> StudentResponse:
    student = await roster_service.create_student(db, org_id, body)
    return StudentResponse.from_student(student)


# ── Lessons ───────────────────────────────────────────────────────────────

@router.get("/lessons", response_model=List[LessonResponse], responses=AUTH_RESPONSES)
async def list_lessons(
    org_id: UUID,
    start: Optional[datetime] = Query(default=None, description="Lessons starting at or after"),
    end: Optional[datetime] = Query(default=None, description="Lessons starting at or before"),
    membership: OrgMembership = Depends(require_org_role(*ALL_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> List[LessonResponse]:
    lessons = await roster_service.list_lessons(db, org_id, start=start, end=end)
    return [LessonResponse.from_lesson(lesson) for lesson in lessons]


@router.post(
    "/lessons",
    status_code=201,
    response_model=LessonResponse,
    responses={**AUTH_RESPONSES, 404: {"model": ErrorResponse}},
)
async def create_lesson(
    org_id: UUID,
    body: LessonCreate,
    membership: OrgMembership = Depends(require_org_role(*TEACHING_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> LessonResponse:
    lesson = await roster_service.create_lesson(db, org_id, body)
    return LessonResponse.from_lesson(lesson)


@router.patch(
    "/lessons/{lesson_id}/status",
    response_model=LessonResponse,
    responses={**AUTH_RESPONSES, 404: {"model": ErrorResponse}},
)
async def update_lesson_status(
    org_id: UUID,
    lesson_id: UUID,
    body: LessonStatusUpdate,
    membership: OrgMembership = Depends(require_org_role(*TEACHING_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> LessonResponse:
    lesson = await roster_service.update_lesson_status(db, org_id, lesson_id, body.status)
    return LessonResponse.from_lesson(lesson)


@router.put(
    "/lessons/{lesson_id}/attendance",
    response_model=AttendanceResponse,
    responses={
        **AUTH_RESPONSES,
        400: {"description": "Student is not in this lesson", "model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
    summary="Record attendance for one student",
    description="Replaces any earlier record for the same lesson and student.",
)
async def record_attendance(
    org_id: UUID,
    lesson_id: UUID,
    body: AttendanceUpdate,
    membership: OrgMembership = Depends(require_org_role(*TEACHING_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> AttendanceResponse:
    record = await roster_service.record_attendance(
        db, org_id, lesson_id, body.student_id, body.attendance_status
    )
    return AttendanceResponse.model_validate(record)
