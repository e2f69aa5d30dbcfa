"""
LessonLoop Backend — LoopAssist Routes
========================================

What:  Confirm-before-execute assistant.
How:   POST /proposals asks the model for ONE action and stores it as
       "proposed". Nothing happens until the same user confirms it; the
       role check for the action runs at confirm time.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from lessonloop.database import get_db_session
from lessonloop.models.organisation import ALL_ROLES, OrgMembership
from lessonloop.routes import AUTH_RESPONSES
from lessonloop.schemas.assistant import ProposalCreate, ProposalResponse
from lessonloop.schemas.common import ErrorResponse
from lessonloop.security import require_org_role
from lessonloop.services.assistant_service import assistant_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orgs/{org_id}/assistant", tags=["LoopAssist"])


@router.post(
    "/proposals",
    status_code=201,
    response_model=ProposalResponse,
    responses={
        **AUTH_RESPONSES,
        400: {"description": "Unsupported action proposed", "model": ErrorResponse},
        503: {"description": "AI service unavailable", "model": ErrorResponse},
    },
    summary="Ask LoopAssist for an action proposal",
)
async def create_proposal(
    org_id: UUID,
    body: ProposalCreate,
    membership: OrgMembership = Depends(require_org_role(*ALL_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> ProposalResponse:
    proposal = await assistant_service.create_proposal(db, org_id, membership, body.message)
    return ProposalResponse.model_validate(proposal)


@router.post(
    "/proposals/{proposal_id}/confirm",
    response_model=ProposalResponse,
    responses={
        **AUTH_RESPONSES,
        404: {"model": ErrorResponse},
        409: {"description": "Proposal already processed", "model": ErrorResponse},
    },
    summary="Confirm and execute a proposal",
    description=(
        "Executes the proposal atomically. A failing action leaves no partial "
        "changes; the proposal is stored as 'failed' with the error."
    ),
)
async def confirm_proposal(
    org_id: UUID,
    proposal_id: UUID,
    membership: OrgMembership = Depends(require_org_role(*ALL_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> ProposalResponse:
    proposal = await assistant_service.confirm_proposal(db, org_id, membership, proposal_id)
    return ProposalResponse.model_validate(proposal)


@router.post(
    "/proposals/{proposal_id}/cancel",
    response_model=ProposalResponse,
    responses={**AUTH_RESPONSES, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Cancel a pending proposal",
)
async def cancel_proposal(
    org_id: UUID,
    proposal_id: UUID,
    membership: OrgMembership = Depends(require_org_role(*ALL_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> ProposalResponse:
    proposal = await assistant_service.cancel_proposal(
        db, org_id, membership.user_id, proposal_id
    )
    return ProposalResponse.model_validate(proposal)
