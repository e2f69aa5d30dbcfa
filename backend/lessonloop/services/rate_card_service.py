"""
LessonLoop Backend — Rate Card Service
=======================================

What:  CRUD for an organisation's rate cards.

Invariants:
    - At most one default card per organisation. Setting a new default
      clears the others in the same transaction.
    - The only card and the default card cannot be deleted. Deleting any
      other card clears `students.default_rate_card_id` for students that
      pointed at it; they are then priced by duration again.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lessonloop.exceptions import NotFoundError, ValidationError
from lessonloop.models.billing import RateCard
from lessonloop.models.roster import Student
from lessonloop.schemas.billing import RateCardCreate, RateCardUpdate

logger = logging.getLogger(__name__)


class RateCardService:

    async def list_rate_cards(self, db: AsyncSession, org_id: uuid.UUID) -> List[RateCard]:
        result = await db.execute(
            select(RateCard)
            .where(RateCard.org_id == org_id)
            .order_by(RateCard.duration_mins.asc(), RateCard.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_rate_card(
        self, db: AsyncSession, org_id: uuid.UUID, rate_card_id: uuid.UUID
    ) -> RateCard:
        result = await db.execute(
            select(RateCard).where(RateCard.id == rate_card_id, RateCard.org_id == org_id)
        )
        card = result.scalar_one_or_none()
        if card is None:
            raise NotFoundError(resource="rate card", resource_id=str(rate_card_id))
        return card

    async def create_rate_card(
        self, db: AsyncSession, org_id: uuid.UUID, data: RateCardCreate
    ) -> RateCard:
        if data.is_default:
            await self._clear_defaults(db, org_id)

        card = RateCard(
            org_id=org_id,
            name=data.name,
            duration_mins=data.duration_mins,
            rate_amount=data.rate_amount,
            is_default=data.is_default,
        )
        db.add(card)
        await db.flush()
        logger.info("Rate card %s created for org %s", card.id, org_id)
        return card

    async def update_rate_card(
        self, db: AsyncSession, org_id: uuid.UUID, rate_card_id: uuid.UUID, changes: RateCardUpdate
    ) -> RateCard:
        card = await self.get_rate_card(db, org_id, rate_card_id)
        values = changes.model_dump(exclude_unset=True, exclude_none=True)

        if values.get("is_default"):
            await self._clear_defaults(db, org_id, keep=card.id)

        for field, value in values.items():
            setattr(card, field, value)
        await db.flush()
        return card

    async def delete_rate_card(
        self, db: AsyncSession, org_id: uuid.UUID, rate_card_id: uuid.UUID
    ) -> int:
        """Deletes a card and returns how many students lost their custom rate."""
        card = await self.get_rate_card(db, org_id, rate_card_id)

        count = (
            await db.execute(select(func.count(RateCard.id)).where(RateCard.org_id == org_id))
        ).scalar() or 0
        if count <= 1:
            raise ValidationError(
                "Cannot delete the only rate card. Create another one first.",
                field="rate_card_id",
            )
        if card.is_default:
            raise ValidationError(
                "Cannot delete the default rate card. Set another card as default first.",
                field="rate_card_id",
            )

        result = await db.execute(
            update(Student)
            .where(Student.org_id == org_id, Student.default_rate_card_id == card.id)
            .values(default_rate_card_id=None)
            .execution_options(synchronize_session=False)
        )
        affected = result.rowcount or 0

        await db.delete(card)
        await db.flush()
        logger.info(
            "Rate card %s deleted for org %s; %d student(s) reset to default rate",
            rate_card_id, org_id, affected,
        )
        return affected

    async def _clear_defaults(
        self, db: AsyncSession, org_id: uuid.UUID, keep: Optional[uuid.UUID] = None
    ) -> None:
        result = await db.execute(
            select(RateCard).where(RateCard.org_id == org_id, RateCard.is_default.is_(True))
        )
        for other in result.scalars().all():
            if other.id != keep:
                other.is_default = False
        await db.flush()


# ── Singleton Instance ────────────────────────────────────────────────────
rate_card_service = RateCardService()
