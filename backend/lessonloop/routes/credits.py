"""
LessonLoop Backend — Make-Up Credit Routes
============================================

What:  Issue, list and redeem make-up credits, and check whether a
       cancellation earns one.
Who:   Owner, admin and finance members.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lessonloop.database import get_db_session
from lessonloop.models.organisation import FINANCE_ROLES, OrgMembership, utcnow
from lessonloop.routes import AUTH_RESPONSES
from lessonloop.schemas.common import ErrorResponse
from lessonloop.schemas.invoice import (
    CreditCreate,
    CreditListResponse,
    CreditRedeem,
    CreditResponse,
    EligibilityRequest,
    EligibilityResponse,
)
from lessonloop.security import require_org_role
from lessonloop.services.credit_service import (
    available_credits,
    check_credit_eligibility,
    credit_service,
    total_available_value,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orgs/{org_id}/credits", tags=["Make-Up Credits"])


@router.get(
    "",
    response_model=CreditListResponse,
    responses=AUTH_RESPONSES,
    summary="List make-up credits, newest first",
)
async def list_credits(
    org_id: UUID,
    student_id: Optional[UUID] = Query(default=None),
    available_only: bool = Query(default=False, description="Hide redeemed and expired credits"),
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> CreditListResponse:
    credits = await credit_service.list_credits(db, org_id, student_id=student_id)
    now = utcnow()
    if available_only:
        credits = available_credits(credits, now)
    return CreditListResponse(
        credits=[CreditResponse.model_validate(c) for c in credits],
        total_available_value=total_available_value(credits, now),
    )


@router.post(
    "",
    status_code=201,
    response_model=CreditResponse,
    responses={**AUTH_RESPONSES, 404: {"description": "Unknown student", "model": ErrorResponse}},
    summary="Issue a make-up credit",
)
async def issue_credit(
    org_id: UUID,
    body: CreditCreate,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> CreditResponse:
    credit = await credit_service.issue_credit(db, org_id, membership.user_id, body)
    return CreditResponse.model_validate(credit)


@router.post(
    "/eligibility",
    response_model=EligibilityResponse,
    responses=AUTH_RESPONSES,
    summary="Does a cancellation earn a make-up credit?",
    description=(
        "Compares the notice given (whole hours, truncated) with the required "
        "notice. Defaults to the organisation's cancellation_notice_hours."
    ),
)
async def credit_eligibility(
    org_id: UUID,
    body: EligibilityRequest,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> EligibilityResponse:
    required = body.required_notice_hours
    if required is None:
        required = await credit_service.notice_hours_for_org(db, org_id)
    outcome = check_credit_eligibility(body.lesson_start_at, body.cancelled_at, required)
    return EligibilityResponse(**outcome)


@router.post(
    "/{credit_id}/redeem",
    response_model=CreditResponse,
    responses={
        **AUTH_RESPONSES,
        404: {"model": ErrorResponse},
        409: {"description": "Already redeemed or expired", "model": ErrorResponse},
    },
    summary="Redeem a credit against a make-up lesson",
)
async def redeem_credit(
    org_id: UUID,
    credit_id: UUID,
    body: CreditRedeem,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> CreditResponse:
    credit = await credit_service.redeem_credit(db, org_id, credit_id, body.lesson_id)
    return CreditResponse.model_validate(credit)
