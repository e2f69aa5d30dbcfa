"""
LessonLoop Backend — Invoice, Payment & Credit Schemas
=======================================================

What:  Request/response models for invoices, payments and make-up credits.
How:   All money fields are integers in minor units. Cross-field rules
       (exactly one payer, payment bounds, credit availability) are checked
       by the services so the same rules hold for non-HTTP callers.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

InvoiceStatus = Literal["draft", "sent", "paid", "overdue", "void"]
PaymentMethod = Literal["card", "bank_transfer", "cash", "cheque", "other"]


# ══════════════════════════════════════════════════════════════════════════
# Invoices
# ══════════════════════════════════════════════════════════════════════════


class InvoiceItemCreate(BaseModel):
    description: str = Field(min_length=1, max_length=255)
    quantity: int = Field(default=1, ge=0)
    unit_price_minor: int = Field(ge=0)
    linked_lesson_id: Optional[uuid.UUID] = None
    student_id: Optional[uuid.UUID] = None


class InvoiceCreate(BaseModel):
    """Manual invoice. Set exactly one of payer_guardian_id / payer_student_id."""
    due_date: date
    payer_guardian_id: Optional[uuid.UUID] = None
    payer_student_id: Optional[uuid.UUID] = None
    notes: Optional[str] = Field(default=None, max_length=2000)
    credit_ids: List[uuid.UUID] = Field(
        default_factory=list, description="Make-up credits to apply against the total"
    )
    items: List[InvoiceItemCreate] = Field(default_factory=list)


class InvoiceItemResponse(BaseModel):
    id: uuid.UUID
    description: str
    quantity: int
    unit_price_minor: int
    amount_minor: int
    linked_lesson_id: Optional[uuid.UUID] = None
    student_id: Optional[uuid.UUID] = None

    model_config = {"from_attributes": True}


class PaymentResponse(BaseModel):
    id: uuid.UUID
    amount_minor: int
    currency_code: str
    method: str
    provider_reference: Optional[str] = None
    paid_at: datetime

    model_config = {"from_attributes": True}


class InvoiceResponse(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    invoice_number: str
    status: str
    due_date: date
    payer_guardian_id: Optional[uuid.UUID] = None
    payer_student_id: Optional[uuid.UUID] = None
    subtotal_minor: int
    tax_minor: int
    credit_applied_minor: int
    total_minor: int
    paid_minor: int
    outstanding_minor: int
    vat_rate: Decimal
    currency_code: str
    term_id: Optional[uuid.UUID] = None
    billing_run_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class InvoiceDetailResponse(InvoiceResponse):
    items: List[InvoiceItemResponse] = Field(default_factory=list)
    payments: List[PaymentResponse] = Field(
        default_factory=list, description="Newest first"
    )


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceResponse]
    total_count: int
    page: int
    page_size: int


class InvoiceStatusUpdate(BaseModel):
    status: InvoiceStatus


class PaymentCreate(BaseModel):
    amount_minor: int = Field(description="Must be positive and no more than the outstanding balance")
    method: PaymentMethod = "bank_transfer"
    provider_reference: Optional[str] = Field(default=None, max_length=255)


class PaymentResult(BaseModel):
    payment_id: uuid.UUID
    invoice_status: str
    paid_minor: int
    outstanding_minor: int


class MarkOverdueResponse(BaseModel):
    updated_count: int
    invoice_ids: List[uuid.UUID]


class InvoiceStatsResponse(BaseModel):
    total_outstanding: int = Field(description="Unpaid balance of sent and overdue invoices")
    overdue: int = Field(description="Unpaid balance of overdue invoices")
    overdue_count: int
    draft_count: int
    sent_count: int
    paid_count: int
    void_count: int
    paid_total: int
    total_count: int


# ══════════════════════════════════════════════════════════════════════════
# Make-Up Credits
# ══════════════════════════════════════════════════════════════════════════


class CreditCreate(BaseModel):
    student_id: uuid.UUID
    credit_value_minor: int = Field(gt=0)
    issued_for_lesson_id: Optional[uuid.UUID] = None
    expires_at: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class CreditResponse(BaseModel):
    id: uuid.UUID
    student_id: uuid.UUID
    issued_for_lesson_id: Optional[uuid.UUID] = None
    credit_value_minor: int
    issued_at: datetime
    expires_at: Optional[datetime] = None
    redeemed_at: Optional[datetime] = None
    redeemed_lesson_id: Optional[uuid.UUID] = None
    applied_to_invoice_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class CreditListResponse(BaseModel):
    credits: List[CreditResponse]
    total_available_value: int = Field(description="Sum of unredeemed, unexpired credits listed")


class EligibilityRequest(BaseModel):
    lesson_start_at: datetime
    cancelled_at: datetime
    required_notice_hours: Optional[int] = Field(
        default=None, ge=0, description="Defaults to the organisation's cancellation notice"
    )


class EligibilityResponse(BaseModel):
    eligible: bool
    hours_notice: int
    required_notice_hours: int


class CreditRedeem(BaseModel):
    lesson_id: uuid.UUID
