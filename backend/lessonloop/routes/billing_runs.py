"""
LessonLoop Backend — Billing Run Routes
=========================================

What:  Start, inspect and retry billing runs.
Who:   Owner, admin and finance members.

Request Flow (POST):
    1. require_org_role checks the caller's membership
    2. BillingRunService groups the period's lessons by payer and writes one
       invoice per payer, each inside its own savepoint
    3. 201 with the stored run; summary.failed_payers lists payers to retry
    4. If the billing logic itself breaks, the run is committed as failed
       and the 500 envelope carries its billing_run_id
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from lessonloop.database import get_db_session
from lessonloop.exceptions import BillingRunFailedError
from lessonloop.models.organisation import FINANCE_ROLES, OrgMembership
from lessonloop.routes import AUTH_RESPONSES
from lessonloop.schemas.billing import (
    BillingRunCreate,
    BillingRunListResponse,
    BillingRunResponse,
    BillingRunRetry,
    BillingRunRetryResponse,
)
from lessonloop.schemas.common import ErrorResponse
from lessonloop.security import require_org_role
from lessonloop.services.billing_run_service import billing_run_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orgs/{org_id}/billing-runs", tags=["Billing Runs"])


@router.get(
    "",
    response_model=BillingRunListResponse,
    responses=AUTH_RESPONSES,
    summary="List billing runs, newest first",
)
async def list_billing_runs(
    org_id: UUID,
    response: Response,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> BillingRunListResponse:
    runs = await billing_run_service.list_billing_runs(db, org_id)
    response.headers["X-Total-Count"] = str(len(runs))
    return BillingRunListResponse(
        runs=[BillingRunResponse.model_validate(run) for run in runs],
        total_count=len(runs),
    )


@router.post(
    "",
    status_code=201,
    response_model=BillingRunResponse,
    responses={
        **AUTH_RESPONSES,
        400: {"description": "start_date after end_date", "model": ErrorResponse},
        409: {"description": "A run already covers this period", "model": ErrorResponse},
        500: {"description": "Billing failed; the run is stored as failed", "model": ErrorResponse},
    },
    summary="Run billing for a period",
    description=(
        "Invoices every billable lesson in [start_date, end_date] that has not "
        "been invoiced yet, one invoice per payer. Failures are isolated per "
        "payer: the run finishes as 'partial' and lists them in "
        "summary.failed_payers. generate_invoices=false stores a preview only."
    ),
)
async def create_billing_run(
    org_id: UUID,
    body: BillingRunCreate,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> BillingRunResponse:
    try:
        run = await billing_run_service.create_billing_run(
            db, org_id, membership.user_id, body
        )
    except BillingRunFailedError:
        # Keep the failed run; get_db_session only rolls back what is left
        await db.commit()
        raise
    return BillingRunResponse.model_validate(run)


@router.get(
    "/{billing_run_id}",
    response_model=BillingRunResponse,
    responses={**AUTH_RESPONSES, 404: {"model": ErrorResponse}},
    summary="Get a billing run",
)
async def get_billing_run(
    org_id: UUID,
    billing_run_id: UUID,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> BillingRunResponse:
    run = await billing_run_service.get_billing_run(db, org_id, billing_run_id)
    return BillingRunResponse.model_validate(run)


@router.post(
    "/{billing_run_id}/retry",
    response_model=BillingRunRetryResponse,
    responses={
        **AUTH_RESPONSES,
        400: {"description": "No payer IDs given", "model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
    summary="Retry failed payers of a run",
    description=(
        "Re-invoices only the given payers. Lessons that were invoiced in the "
        "meantime are skipped, so retrying twice never double-bills."
    ),
)
async def retry_billing_run(
    org_id: UUID,
    billing_run_id: UUID,
    body: BillingRunRetry,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> BillingRunRetryResponse:
    outcome = await billing_run_service.retry_billing_run(
        db, org_id, billing_run_id, body.failed_payer_ids
    )
    return BillingRunRetryResponse(**outcome)
