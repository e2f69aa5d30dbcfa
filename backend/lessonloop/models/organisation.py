"""
LessonLoop Backend — Organisation & Membership Models
======================================================

What:  The tenant root (`organisations`) and who may act on it (`org_memberships`).
How:   Every other tenant table carries an `org_id` foreign key to
       `organisations.id`; services resolve the caller's membership before
       touching any of them.

Column types are the portable SQLAlchemy ones (Uuid, DateTime(timezone=True))
so the same models run on PostgreSQL and on the SQLite test database.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from lessonloop.database import Base


def utcnow() -> datetime:
    """Timezone-aware UTC now, used as the Python-side default for timestamps."""
    return datetime.now(timezone.utc)


# Membership roles
ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_FINANCE = "finance"
ROLE_TEACHER = "teacher"
ROLE_PARENT = "parent"

FINANCE_ROLES = (ROLE_OWNER, ROLE_ADMIN, ROLE_FINANCE)
TEACHING_ROLES = (ROLE_OWNER, ROLE_ADMIN, ROLE_TEACHER)
ALL_ROLES = (ROLE_OWNER, ROLE_ADMIN, ROLE_FINANCE, ROLE_TEACHER, ROLE_PARENT)


class Organisation(Base):
    """
    A music school or studio: the tenant.

    Billing settings live on the org row:
        vat_enabled / vat_rate   → tax applied to generated invoices
        currency_code            → copied onto every invoice
        invoice_prefix / next_invoice_seq → per-org invoice numbering
        cancellation_notice_hours → make-up credit eligibility threshold
    """

    __tablename__ = "organisations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    vat_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Percentage, e.g. 20.00 for UK standard rate
    vat_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("0")
    )

    invoice_prefix: Mapped[str] = mapped_column(String(16), nullable=False, default="INV")
    next_invoice_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    cancellation_notice_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<Organisation(id={self.id}, name='{self.name}')>"


class OrgMembership(Base):
    """
    Links a user (identified only by the JWT `sub` UUID) to an organisation.

    Only rows with status='active' grant access.
    """

    __tablename__ = "org_memberships"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("org_id", "user_id", name="uq_org_memberships_org_user"),
    )

    def __repr__(self) -> str:
        return f"<OrgMembership(org_id={self.org_id}, user_id={self.user_id}, role='{self.role}')>"
