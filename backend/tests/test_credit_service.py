"""
LessonLoop Backend — Make-Up Credit Tests
==========================================

What we test:
    ✅ Notice hours truncate toward zero
    ✅ Availability: redeemed and expired credits do not count
    ✅ Redemption happens at most once
"""

import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from conftest import JAN_10, add_lesson, add_student
from lessonloop.exceptions import ConflictError, NotFoundError
from lessonloop.schemas.invoice import CreditCreate
from lessonloop.services.credit_service import (
    available_credits,
    check_credit_eligibility,
    credit_service,
    total_available_value,
)

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)


def fake_credit(value=1000, redeemed_at=None, expires_at=None):
    return SimpleNamespace(credit_value_minor=value, redeemed_at=redeemed_at, expires_at=expires_at)


class TestEligibility:

    def test_enough_notice(self):
        result = check_credit_eligibility(JAN_10, JAN_10 - timedelta(hours=30), 24)
        assert result == {"eligible": True, "hours_notice": 30, "required_notice_hours": 24}

    def test_partial_hours_are_truncated(self):
        # 23h59m is 23 whole hours, not enough for 24
        result = check_credit_eligibility(JAN_10, JAN_10 - timedelta(hours=23, minutes=59), 24)
        assert result["hours_notice"] == 23
        assert result["eligible"] is False

    def test_exactly_the_required_notice(self):
        assert check_credit_eligibility(JAN_10, JAN_10 - timedelta(hours=24), 24)["eligible"]

    def test_cancelled_after_start_is_negative(self):
        result = check_credit_eligibility(JAN_10, JAN_10 + timedelta(minutes=90), 0)
        assert result["hours_notice"] == -1
        assert result["eligible"] is False

    def test_naive_timestamps_are_utc(self):
        naive_start = JAN_10.replace(tzinfo=None)
        result = check_credit_eligibility(naive_start, JAN_10 - timedelta(hours=48))
        assert result["hours_notice"] == 48


class TestAvailability:

    def test_available_credits(self):
        fresh = fake_credit(1000)
        future = fake_credit(500, expires_at=NOW + timedelta(days=7))
        expired = fake_credit(700, expires_at=NOW - timedelta(seconds=1))
        used = fake_credit(900, redeemed_at=NOW - timedelta(days=1))

        credits = [fresh, future, expired, used]

        assert available_credits(credits, NOW) == [fresh, future]
        assert total_available_value(credits, NOW) == 1500

    def test_expiry_at_exactly_now_is_expired(self):
        assert available_credits([fake_credit(expires_at=NOW)], NOW) == []


class TestCreditService:

    @pytest.mark.asyncio
    async def test_issue_and_list(self, db_session, org, members):
        student = await add_student(db_session, org)
        credit = await credit_service.issue_credit(
            db_session, org.id, members["finance"].user_id,
            CreditCreate(student_id=student.id, credit_value_minor=2500, notes="Teacher ill"),
        )

        credits = await credit_service.list_credits(db_session, org.id, student_id=student.id)

        assert [c.id for c in credits] == [credit.id]
        assert credits[0].created_by == members["finance"].user_id

    @pytest.mark.asyncio
    async def test_issue_for_unknown_student(self, db_session, org, members):
        with pytest.raises(NotFoundError):
            await credit_service.issue_credit(
                db_session, org.id, members["finance"].user_id,
                CreditCreate(student_id=uuid.uuid4(), credit_value_minor=2500),
            )

    @pytest.mark.asyncio
    async def test_redeem_once(self, db_session, org, members):
        student = await add_student(db_session, org)
        lesson = await add_lesson(db_session, org, [student], JAN_10)
        credit = await credit_service.issue_credit(
            db_session, org.id, members["finance"].user_id,
            CreditCreate(student_id=student.id, credit_value_minor=2500),
        )

        redeemed = await credit_service.redeem_credit(db_session, org.id, credit.id, lesson.id)
        assert redeemed.redeemed_at is not None
        assert redeemed.redeemed_lesson_id == lesson.id

        with pytest.raises(ConflictError):
            await credit_service.redeem_credit(db_session, org.id, credit.id, lesson.id)

    @pytest.mark.asyncio
    async def test_expired_credit_cannot_be_redeemed(self, db_session, org, members):
        student = await add_student(db_session, org)
        lesson = await add_lesson(db_session, org, [student], JAN_10)
        credit = await credit_service.issue_credit(
            db_session, org.id, members["finance"].user_id,
            CreditCreate(
                student_id=student.id,
                credit_value_minor=2500,
                expires_at=datetime.now(timezone.utc) - timedelta(days=1),
            ),
        )

        with pytest.raises(ConflictError):
            await credit_service.redeem_credit(db_session, org.id, credit.id, lesson.id)

    @pytest.mark.asyncio
    async def test_notice_hours_come_from_the_org(self, db_session, org):
        assert await credit_service.notice_hours_for_org(db_session, org.id) == 24
