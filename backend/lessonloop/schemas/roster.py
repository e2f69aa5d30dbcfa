"""
LessonLoop Backend — Roster Schemas
====================================

What:  Guardians, students, lessons and attendance payloads.
"""

import uuid
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from lessonloop.models.roster import Lesson, Student

AttendanceStatus = Literal[
    "present", "absent", "late", "cancelled_by_teacher", "cancelled_by_student"
]


class GuardianCreate(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=50)


class GuardianResponse(BaseModel):
    id: uuid.UUID
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class GuardianLink(BaseModel):
    guardian_id: uuid.UUID
    is_primary_payer: bool = False


class StudentCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, max_length=320)
    status: Literal["active", "inactive"] = "active"
    default_rate_card_id: Optional[uuid.UUID] = None
    guardians: List[GuardianLink] = Field(default_factory=list)

    @field_validator("guardians")
    @classmethod
    def validate_single_primary_payer(cls, v: List[GuardianLink]) -> List[GuardianLink]:
        """A student has at most one primary payer."""
        if sum(1 for link in v if link.is_primary_payer) > 1:
            raise ValueError("Only one guardian can be the primary payer")
        return v


class StudentResponse(BaseModel):
    id: uuid.UUID
    first_name: str
    last_name: str
    email: Optional[str] = None
    status: str
    default_rate_card_id: Optional[uuid.UUID] = None
    guardians: List[GuardianLink] = Field(default_factory=list)
    created_at: datetime

    @classmethod
    def from_student(cls, student: Student) -> "StudentResponse":
        return cls(
            id=student.id,
            first_name=student.first_name,
            last_name=student.last_name,
            email=student.email,
            status=student.status,
            default_rate_card_id=student.default_rate_card_id,
            guardians=[
                GuardianLink(guardian_id=link.guardian_id, is_primary_payer=link.is_primary_payer)
                for link in student.guardian_links
            ],
            created_at=student.created_at,
        )


class LessonCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    start_at: datetime
    end_at: datetime
    teacher_id: Optional[uuid.UUID] = None
    status: Literal["scheduled", "completed", "cancelled"] = "scheduled"
    student_ids: List[uuid.UUID] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_times(self) -> "LessonCreate":
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self


class LessonResponse(BaseModel):
    id: uuid.UUID
    title: str
    start_at: datetime
    end_at: datetime
    status: str
    teacher_id: Optional[uuid.UUID] = None
    student_ids: List[uuid.UUID] = Field(default_factory=list)

    @classmethod
    def from_lesson(cls, lesson: Lesson) -> "LessonResponse":
        return cls(
            id=lesson.id,
            title=lesson.title,
            start_at=lesson.start_at,
            end_at=lesson.end_at,
            status=lesson.status,
            teacher_id=lesson.teacher_id,
            student_ids=[p.student_id for p in lesson.participants],
        )


class LessonStatusUpdate(BaseModel):
    status: Literal["scheduled", "completed", "cancelled"]


class AttendanceUpdate(BaseModel):
    student_id: uuid.UUID
    attendance_status: AttendanceStatus


class AttendanceResponse(BaseModel):
    id: uuid.UUID
    lesson_id: uuid.UUID
    student_id: uuid.UUID
    attendance_status: str
    recorded_at: datetime

    model_config = {"from_attributes": True}
