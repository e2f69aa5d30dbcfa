"""
LessonLoop Backend — Rate Card Routes
=======================================

What:  Rate card CRUD under /api/orgs/{org_id}/rate-cards.
Who:   Any member may read (teachers see prices when scheduling); only
       owner, admin and finance may change them.
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from lessonloop.database import get_db_session
from lessonloop.models.organisation import ALL_ROLES, FINANCE_ROLES, OrgMembership
from lessonloop.routes import AUTH_RESPONSES
from lessonloop.schemas.billing import (
    RateCardCreate,
    RateCardDeleteResponse,
    RateCardResponse,
    RateCardUpdate,
)
from lessonloop.schemas.common import ErrorResponse
from lessonloop.security import require_org_role
from lessonloop.services.rate_card_service import rate_card_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orgs/{org_id}/rate-cards", tags=["Rate Cards"])


@router.get(
    "",
    response_model=List[RateCardResponse],
    responses=AUTH_RESPONSES,
    summary="List rate cards, shortest duration first",
)
async def list_rate_cards(
    org_id: UUID,
    membership: OrgMembership = Depends(require_org_role(*ALL_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> List[RateCardResponse]:
    cards = await rate_card_service.list_rate_cards(db, org_id)
    return [RateCardResponse.model_validate(card) for card in cards]


@router.post(
    "",
    status_code=201,
    response_model=RateCardResponse,
    responses=AUTH_RESPONSES,
    summary="Create a rate card",
    description="A card created with is_default=true replaces the current default.",
)
async def create_rate_card(
    org_id: UUID,
    body: RateCardCreate,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> RateCardResponse:
    card = await rate_card_service.create_rate_card(db, org_id, body)
    return RateCardResponse.model_validate(card)


@router.patch(
    "/{rate_card_id}",
    response_model=RateCardResponse,
    responses={**AUTH_RESPONSES, 404: {"model": ErrorResponse}},
    summary="Update a rate card",
)
async def update_rate_card(
    org_id: UUID,
    rate_card_id: UUID,
    body: RateCardUpdate,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> RateCardResponse:
    card = await rate_card_service.update_rate_card(db, org_id, rate_card_id, body)
    return RateCardResponse.model_validate(card)


@router.delete(
    "/{rate_card_id}",
    response_model=RateCardDeleteResponse,
    responses={
        **AUTH_RESPONSES,
        400: {"description": "Only or default card", "model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
    summary="Delete a rate card",
    description=(
        "The only card and the default card cannot be deleted. Students using "
        "the deleted card fall back to the organisation default."
    ),
)
async def delete_rate_card(
    org_id: UUID,
    rate_card_id: UUID,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> RateCardDeleteResponse:
    affected = await rate_card_service.delete_rate_card(db, org_id, rate_card_id)
    return RateCardDeleteResponse(deleted=True, affected_students=affected)
