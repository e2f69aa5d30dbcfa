"""
LessonLoop Backend — Invoice Routes
=====================================

What:  Invoice listing, manual invoices, status changes, payments, the
       overdue sweep and dashboard stats.
Who:   Owner, admin and finance members.

The fixed paths (/stats, /mark-overdue) are declared before /{invoice_id}
so they are not captured as IDs.
"""

import logging
from datetime import date
from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from lessonloop.database import get_db_session
from lessonloop.models.organisation import FINANCE_ROLES, OrgMembership
from lessonloop.routes import AUTH_RESPONSES
from lessonloop.schemas.common import ErrorResponse
from lessonloop.schemas.invoice import (
    InvoiceCreate,
    InvoiceDetailResponse,
    InvoiceListResponse,
    InvoiceResponse,
    InvoiceStatsResponse,
    InvoiceStatusUpdate,
    MarkOverdueResponse,
    PaymentCreate,
    PaymentResult,
)
from lessonloop.security import require_org_role
from lessonloop.services.invoice_service import PAGE_SIZE, invoice_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orgs/{org_id}/invoices", tags=["Invoices"])


@router.get(
    "",
    response_model=InvoiceListResponse,
    responses={**AUTH_RESPONSES, 400: {"model": ErrorResponse}},
    summary="List invoices",
    description=f"Newest first, {PAGE_SIZE} per page. X-Total-Count carries the match count.",
)
async def list_invoices(
    org_id: UUID,
    response: Response,
    status: Optional[str] = Query(default=None, description="draft, sent, paid, overdue or void"),
    payer_type: Optional[Literal["guardian", "student"]] = Query(default=None),
    payer_id: Optional[UUID] = Query(default=None),
    due_date_from: Optional[date] = Query(default=None),
    due_date_to: Optional[date] = Query(default=None),
    term_id: Optional[UUID] = Query(default=None),
    page: int = Query(default=1, ge=1),
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> InvoiceListResponse:
    invoices, total_count = await invoice_service.list_invoices(
        db,
        org_id,
        status=status,
        payer_type=payer_type,
        payer_id=payer_id,
        due_date_from=due_date_from,
        due_date_to=due_date_to,
        term_id=term_id,
        page=page,
    )
    response.headers["X-Total-Count"] = str(total_count)
    return InvoiceListResponse(
        invoices=[InvoiceResponse.model_validate(inv) for inv in invoices],
        total_count=total_count,
        page=page,
        page_size=PAGE_SIZE,
    )


@router.post(
    "",
    status_code=201,
    response_model=InvoiceDetailResponse,
    responses={
        **AUTH_RESPONSES,
        400: {"model": ErrorResponse},
        404: {"description": "Payer or credit not in this organisation", "model": ErrorResponse},
        409: {"description": "A credit was already redeemed", "model": ErrorResponse},
    },
    summary="Create a manual invoice",
)
async def create_invoice(
    org_id: UUID,
    body: InvoiceCreate,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> InvoiceDetailResponse:
    invoice = await invoice_service.create_invoice(db, org_id, body)
    return InvoiceDetailResponse.model_validate(invoice)


@router.get(
    "/stats",
    response_model=InvoiceStatsResponse,
    responses=AUTH_RESPONSES,
    summary="Invoice totals for the dashboard",
)
async def invoice_stats(
    org_id: UUID,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> InvoiceStatsResponse:
    stats = await invoice_service.invoice_stats(db, org_id)
    return InvoiceStatsResponse(**stats)


@router.post(
    "/mark-overdue",
    response_model=MarkOverdueResponse,
    responses=AUTH_RESPONSES,
    summary="Mark sent invoices past their due date as overdue",
)
async def mark_overdue(
    org_id: UUID,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> MarkOverdueResponse:
    invoices = await invoice_service.mark_overdue_invoices(db, org_id)
    return MarkOverdueResponse(
        updated_count=len(invoices),
        invoice_ids=[inv.id for inv in invoices],
    )


@router.get(
    "/{invoice_id}",
    response_model=InvoiceDetailResponse,
    responses={**AUTH_RESPONSES, 404: {"model": ErrorResponse}},
    summary="Get an invoice with its items and payments",
)
async def get_invoice(
    org_id: UUID,
    invoice_id: UUID,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> InvoiceDetailResponse:
    invoice = await invoice_service.get_invoice(db, org_id, invoice_id)
    return InvoiceDetailResponse.model_validate(invoice)


@router.post(
    "/{invoice_id}/status",
    response_model=InvoiceResponse,
    responses={
        **AUTH_RESPONSES,
        400: {"description": "Illegal status transition", "model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
    summary="Change an invoice's status",
    description="Voiding an invoice returns any make-up credits applied to it.",
)
async def update_invoice_status(
    org_id: UUID,
    invoice_id: UUID,
    body: InvoiceStatusUpdate,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> InvoiceResponse:
    invoice = await invoice_service.update_invoice_status(db, org_id, invoice_id, body.status)
    return InvoiceResponse.model_validate(invoice)


@router.post(
    "/{invoice_id}/payments",
    status_code=201,
    response_model=PaymentResult,
    responses={
        **AUTH_RESPONSES,
        400: {"description": "Invalid amount or invoice not payable", "model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
    summary="Record a payment",
)
async def record_payment(
    org_id: UUID,
    invoice_id: UUID,
    body: PaymentCreate,
    membership: OrgMembership = Depends(require_org_role(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db_session),
) -> PaymentResult:
    payment, invoice = await invoice_service.record_payment(
        db,
        org_id,
        invoice_id,
        amount_minor=body.amount_minor,
        method=body.method,
        provider_reference=body.provider_reference,
    )
    return PaymentResult(
        payment_id=payment.id,
        invoice_status=invoice.status,
        paid_minor=invoice.paid_minor,
        outstanding_minor=invoice.outstanding_minor,
    )
