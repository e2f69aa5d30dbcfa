"""
LessonLoop Backend — Rate Card Service Tests
=============================================
"""

import uuid

import pytest
from sqlalchemy import select

from conftest import add_rate_card, add_student
from lessonloop.exceptions import NotFoundError, ValidationError
from lessonloop.models.roster import Student
from lessonloop.schemas.billing import RateCardCreate, RateCardUpdate
from lessonloop.services.rate_card_service import rate_card_service


class TestRateCardDefaults:

    @pytest.mark.asyncio
    async def test_new_default_replaces_old_one(self, db_session, org):
        old = await add_rate_card(db_session, org, "30 minutes", 30, 2500, is_default=True)

        new = await rate_card_service.create_rate_card(
            db_session, org.id,
            RateCardCreate(name="45 minutes", duration_mins=45, rate_amount=3500, is_default=True),
        )

        assert new.is_default is True
        assert old.is_default is False

    @pytest.mark.asyncio
    async def test_update_to_default_keeps_exactly_one(self, db_session, org):
        first = await add_rate_card(db_session, org, "30 minutes", 30, 2500, is_default=True)
        second = await add_rate_card(db_session, org, "60 minutes", 60, 4500)

        await rate_card_service.update_rate_card(
            db_session, org.id, second.id, RateCardUpdate(is_default=True)
        )

        cards = await rate_card_service.list_rate_cards(db_session, org.id)
        assert [c.id for c in cards if c.is_default] == [second.id]
        assert first.is_default is False

    @pytest.mark.asyncio
    async def test_partial_update_leaves_other_fields(self, db_session, org):
        card = await add_rate_card(db_session, org, "30 minutes", 30, 2500)

        updated = await rate_card_service.update_rate_card(
            db_session, org.id, card.id, RateCardUpdate(rate_amount=2700)
        )

        assert updated.rate_amount == 2700
        assert updated.name == "30 minutes"
        assert updated.duration_mins == 30

    @pytest.mark.asyncio
    async def test_list_is_ordered_by_duration(self, db_session, org):
        await add_rate_card(db_session, org, "60 minutes", 60, 4500)
        await add_rate_card(db_session, org, "30 minutes", 30, 2500)

        cards = await rate_card_service.list_rate_cards(db_session, org.id)

        assert [c.duration_mins for c in cards] == [30, 60]


class TestRateCardDelete:

    @pytest.mark.asyncio
    async def test_only_card_cannot_be_deleted(self, db_session, org):
        card = await add_rate_card(db_session, org, "30 minutes", 30, 2500)
        with pytest.raises(ValidationError):
            await rate_card_service.delete_rate_card(db_session, org.id, card.id)

    @pytest.mark.asyncio
    async def test_default_card_cannot_be_deleted(self, db_session, org):
        default = await add_rate_card(db_session, org, "30 minutes", 30, 2500, is_default=True)
        await add_rate_card(db_session, org, "60 minutes", 60, 4500)
        with pytest.raises(ValidationError) as exc_info:
            await rate_card_service.delete_rate_card(db_session, org.id, default.id)
        assert "default" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_delete_resets_students_on_that_card(self, db_session, org):
        await add_rate_card(db_session, org, "30 minutes", 30, 2500, is_default=True)
        special = await add_rate_card(db_session, org, "Scholarship", 30, 1000)
        await add_student(db_session, org, "Ava", "Jones", rate_card=special)
        await add_student(db_session, org, "Leo", "Smith", rate_card=special)
        await add_student(db_session, org, "Mia", "Brown")

        affected = await rate_card_service.delete_rate_card(db_session, org.id, special.id)

        assert affected == 2
        result = await db_session.execute(
            select(Student.default_rate_card_id).where(Student.org_id == org.id)
        )
        assert set(result.scalars().all()) == {None}

    @pytest.mark.asyncio
    async def test_unknown_card(self, db_session, org):
        with pytest.raises(NotFoundError):
            await rate_card_service.delete_rate_card(db_session, org.id, uuid.uuid4())
