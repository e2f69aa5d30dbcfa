"""
LessonLoop Backend — Test Configuration (conftest.py)
======================================================

What:  Shared fixtures: an in-memory SQLite database per test, a seeded
       organisation with one member per role, bearer tokens, and an HTTPX
       client wired to the app with the test database.

Fixture Hierarchy (all function-scoped):
    engine ─┬─ db_session ── org ── members
            └─ session_factory ── test_client
    mock_db_session: AsyncMock session for tests that need no database

SQLite specifics:
    - StaticPool keeps the single in-memory database alive across sessions
    - pysqlite's own transaction handling is switched off and BEGIN is
      emitted by SQLAlchemy, otherwise SAVEPOINT (db.begin_nested) does not
      work; the billing run relies on it
"""

import os

# Must be set before anything imports lessonloop.config
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["GEMINI_API_KEY"] = "test-key-not-real"
os.environ["JWT_SECRET"] = "test-secret-with-at-least-thirty-two-bytes!"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["RETRY_MIN_WAIT"] = "0"
os.environ["RETRY_MAX_WAIT"] = "0"
os.environ["RATE_LIMIT_REQUESTS"] = "10000"

import uuid  # noqa: E402
from dataclasses import dataclass  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import AsyncGenerator, Dict, List, Optional  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

import lessonloop.models  # noqa: E402,F401
from lessonloop.database import Base, get_db_session  # noqa: E402
from lessonloop.models.billing import RateCard  # noqa: E402
from lessonloop.models.organisation import (  # noqa: E402
    ROLE_ADMIN,
    ROLE_FINANCE,
    ROLE_OWNER,
    ROLE_PARENT,
    ROLE_TEACHER,
    Organisation,
    OrgMembership,
)
from lessonloop.models.roster import (  # noqa: E402
    LESSON_COMPLETED,
    Guardian,
    Lesson,
    LessonParticipant,
    Student,
    StudentGuardian,
)
from lessonloop.security import create_access_token  # noqa: E402


# ══════════════════════════════════════════════════════════════════════════
# Database
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def engine():
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(test_engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def mock_db_session():
    """
    A mock AsyncSession for tests that only check calls.

    Usage:
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = org
    """
    session = AsyncMock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    return session


# ══════════════════════════════════════════════════════════════════════════
# Seed data
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def org(db_session) -> Organisation:
    organisation = Organisation(
        name="Riverside Music School",
        currency_code="GBP",
        vat_enabled=False,
        invoice_prefix="RMS",
        next_invoice_seq=1,
        cancellation_notice_hours=24,
    )
    db_session.add(organisation)
    await db_session.flush()
    return organisation


@pytest_asyncio.fixture
async def members(db_session, org) -> Dict[str, OrgMembership]:
    """One active membership per role, keyed by role name."""
    result = {}
    for role in (ROLE_OWNER, ROLE_ADMIN, ROLE_FINANCE, ROLE_TEACHER, ROLE_PARENT):
        membership = OrgMembership(org_id=org.id, user_id=uuid.uuid4(), role=role)
        db_session.add(membership)
        result[role] = membership
    await db_session.flush()
    return result


def auth_headers(user_id: uuid.UUID) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


# ── Roster builders ───────────────────────────────────────────────────────
# Relationships are always set explicitly so no lazy load is ever needed.

async def add_guardian(db, org, name="Alice Parent", email="alice@example.com") -> Guardian:
    guardian = Guardian(org_id=org.id, full_name=name, email=email)
    db.add(guardian)
    await db.flush()
    return guardian


async def add_student(
    db,
    org,
    first_name="Ben",
    last_name="Pupil",
    email: Optional[str] = None,
    payer: Optional[Guardian] = None,
    status: str = "active",
    rate_card: Optional[RateCard] = None,
) -> Student:
    student = Student(
        org_id=org.id,
        first_name=first_name,
        last_name=last_name,
        email=email,
        status=status,
        default_rate_card_id=rate_card.id if rate_card else None,
        guardian_links=(
            [StudentGuardian(guardian=payer, is_primary_payer=True)] if payer else []
        ),
    )
    db.add(student)
    await db.flush()
    return student


async def add_lesson(
    db,
    org,
    students: List[Student],
    start_at: datetime,
    minutes: int = 30,
    status: str = LESSON_COMPLETED,
    title: str = "Piano lesson",
) -> Lesson:
    lesson = Lesson(
        org_id=org.id,
        title=title,
        start_at=start_at,
        end_at=start_at + timedelta(minutes=minutes),
        status=status,
        participants=[LessonParticipant(student=s) for s in students],
    )
    db.add(lesson)
    await db.flush()
    return lesson


async def add_rate_card(db, org, name, duration_mins, rate_amount, is_default=False) -> RateCard:
    card = RateCard(
        org_id=org.id,
        name=name,
        duration_mins=duration_mins,
        rate_amount=rate_amount,
        is_default=is_default,
    )
    db.add(card)
    await db.flush()
    return card


@dataclass
class BillingFixture:
    """Two guardians, one self-paying adult, three January lessons."""
    guardian_a: Guardian
    guardian_b: Guardian
    student_a: Student
    student_b: Student
    adult: Student
    lessons: List[Lesson]


JAN_10 = datetime(2025, 1, 10, 16, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def billing_data(db_session, org) -> BillingFixture:
    await add_rate_card(db_session, org, "30 minutes", 30, 2500, is_default=True)
    await add_rate_card(db_session, org, "60 minutes", 60, 4500)

    guardian_a = await add_guardian(db_session, org, "Alice Parent", "alice@example.com")
    guardian_b = await add_guardian(db_session, org, "Bob Parent", "bob@example.com")
    student_a = await add_student(db_session, org, "Ava", "Jones", payer=guardian_a)
    student_b = await add_student(db_session, org, "Leo", "Smith", payer=guardian_b)
    adult = await add_student(db_session, org, "Cara", "Adult", email="cara@example.com")

    lessons = [
        await add_lesson(db_session, org, [student_a], JAN_10, minutes=30),
        await add_lesson(db_session, org, [student_b], JAN_10 + timedelta(days=1), minutes=60),
        await add_lesson(db_session, org, [adult], JAN_10 + timedelta(days=2), minutes=30),
    ]
    return BillingFixture(guardian_a, guardian_b, student_a, student_b, adult, lessons)


# ══════════════════════════════════════════════════════════════════════════
# HTTP client
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def test_client(session_factory):
    """
    HTTPX client against the app, with get_db_session bound to the test DB.

    Each request gets its own session that commits on success, like
    production. Seed data must therefore be committed, not just flushed.
    """
    from lessonloop.main import app

    async def override_get_db_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = override_get_db_session
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
