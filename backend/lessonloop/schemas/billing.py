"""
LessonLoop Backend — Billing Schemas
=====================================

What:  Request/response models for rate cards and billing runs.

Business rules that need the database (start/end ordering against existing
runs, "cannot delete the default card") are enforced by the services and
reported as 400/409, not as 422 schema failures.
"""

import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


# ══════════════════════════════════════════════════════════════════════════
# Rate Cards
# ══════════════════════════════════════════════════════════════════════════


class RateCardCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    duration_mins: int = Field(gt=0, le=600, description="Lesson length this card prices")
    rate_amount: int = Field(ge=0, description="Price in minor units (pence/cents)")
    is_default: bool = Field(default=False)


class RateCardUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    duration_mins: Optional[int] = Field(default=None, gt=0, le=600)
    rate_amount: Optional[int] = Field(default=None, ge=0)
    is_default: Optional[bool] = None


class RateCardResponse(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    name: str
    duration_mins: int
    rate_amount: int
    is_default: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class RateCardDeleteResponse(BaseModel):
    deleted: bool = True
    affected_students: int = Field(
        description="Students whose custom rate was cleared; they now use the org default"
    )


# ══════════════════════════════════════════════════════════════════════════
# Billing Runs
# ══════════════════════════════════════════════════════════════════════════


class BillingRunCreate(BaseModel):
    """
    Body of POST /api/orgs/{org_id}/billing-runs.

    generate_invoices=false runs the grouping only and stores a preview
    summary (payer and skipped counts) without writing invoices.
    """
    run_type: Literal["manual", "monthly", "termly"] = "manual"
    start_date: date
    end_date: date
    generate_invoices: bool = True
    fallback_rate_minor: Optional[int] = Field(
        default=None, ge=0, description="Price used when the org has no rate cards"
    )
    billing_mode: Literal["delivered", "upfront"] = "delivered"
    term_id: Optional[uuid.UUID] = None


class BillingRunRetry(BaseModel):
    failed_payer_ids: List[uuid.UUID] = Field(
        default_factory=list, description="Payer IDs taken from summary.failed_payers"
    )


class BillingRunResponse(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    run_type: str
    start_date: date
    end_date: date
    billing_mode: str
    status: str = Field(description="processing, completed, partial or failed")
    term_id: Optional[uuid.UUID] = None
    created_by: uuid.UUID
    summary: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = {"from_attributes": True}


class BillingRunListResponse(BaseModel):
    runs: List[BillingRunResponse]
    total_count: int


class BillingRunRetryResponse(BaseModel):
    new_invoice_count: int
    still_failed: List[Dict[str, Any]] = Field(default_factory=list)
    final_status: str
