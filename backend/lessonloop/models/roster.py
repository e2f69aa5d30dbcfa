"""
LessonLoop Backend — Roster Models
===================================

What:  Guardians, students, lessons, lesson participants and attendance.
Who:   Written by RosterService; read by the billing run, which walks
       lesson → participants → student → primary-payer guardian.

Relationships are declared with lazy="selectin" where the billing run
traverses them, so a single lesson query loads the whole payer graph without
per-row lazy loads (which async sessions do not allow).
"""

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lessonloop.database import Base
from lessonloop.models.organisation import utcnow

# Lesson statuses
LESSON_SCHEDULED = "scheduled"
LESSON_COMPLETED = "completed"
LESSON_CANCELLED = "cancelled"
LESSON_STATUSES = (LESSON_SCHEDULED, LESSON_COMPLETED, LESSON_CANCELLED)

# Attendance statuses
ATTENDANCE_STATUSES = (
    "present",
    "absent",
    "late",
    "cancelled_by_teacher",
    "cancelled_by_student",
)
CANCELLED_BY_TEACHER = "cancelled_by_teacher"

STUDENT_ACTIVE = "active"
STUDENT_STATUSES = (STUDENT_ACTIVE, "inactive")


class Guardian(Base):
    __tablename__ = "guardians"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class Student(Base):
    """
    A student of the school.

    A student pays their own invoices only when no guardian is flagged as
    primary payer and the student has an email address.
    """

    __tablename__ = "students"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STUDENT_ACTIVE)
    # Student-specific price; cleared when the rate card is deleted
    default_rate_card_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("rate_cards.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    guardian_links: Mapped[List["StudentGuardian"]] = relationship(
        back_populates="student", lazy="selectin", cascade="all, delete-orphan"
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def primary_payer(self) -> Optional[Guardian]:
        for link in self.guardian_links:
            if link.is_primary_payer and link.guardian is not None:
                return link.guardian
        return None


class StudentGuardian(Base):
    __tablename__ = "student_guardians"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    guardian_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("guardians.id", ondelete="CASCADE"), nullable=False, index=True
    )
    is_primary_payer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    student: Mapped[Student] = relationship(back_populates="guardian_links")
    guardian: Mapped[Guardian] = relationship(lazy="selectin")

    __table_args__ = (
        UniqueConstraint("student_id", "guardian_id", name="uq_student_guardians_pair"),
    )


class Lesson(Base):
    """
    A scheduled lesson. `start_at`/`end_at` are UTC.

    The billing run prices a lesson from its duration (end − start), so both
    timestamps are required.
    """

    __tablename__ = "lessons"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=LESSON_SCHEDULED)
    teacher_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    participants: Mapped[List["LessonParticipant"]] = relationship(
        back_populates="lesson", lazy="selectin", cascade="all, delete-orphan"
    )

    # Billing-run scan: WHERE org_id = ? AND status IN (...) AND start_at BETWEEN ? AND ?
    __table_args__ = (
        Index("idx_lessons_org_start", "org_id", "start_at"),
    )


class LessonParticipant(Base):
    __tablename__ = "lesson_participants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lesson_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False, index=True
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )

    lesson: Mapped[Lesson] = relationship(back_populates="participants")
    student: Mapped[Student] = relationship(lazy="selectin")

    __table_args__ = (
        UniqueConstraint("lesson_id", "student_id", name="uq_lesson_participants_pair"),
    )


class AttendanceRecord(Base):
    """One attendance outcome per (lesson, student)."""

    __tablename__ = "attendance_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False
    )
    lesson_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False, index=True
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    attendance_status: Mapped[str] = mapped_column(String(30), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("lesson_id", "student_id", name="uq_attendance_lesson_student"),
    )
