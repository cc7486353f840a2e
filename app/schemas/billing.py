from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from app.schemas.usage import CostBreakdown


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class InvoiceMode(str, Enum):
    DRAFT = "draft"
    FINALIZE = "finalize"
    SEND = "send"


class LineItem(BaseModel):
    description: str
    amount_cents: int = Field(..., ge=0)
    currency: str


class ProviderInvoice(BaseModel):
    """Invoice document as returned by the invoicing provider."""

    id: str
    number: Optional[str] = None
    hosted_url: Optional[str] = None
    pdf_url: Optional[str] = None
    due_date: Optional[date] = None
    status: Optional[str] = None


class InvoicePreview(BaseModel):
    customer_id: str
    customer_name: str
    breakdown: CostBreakdown
    has_billing_identity: bool
    include_in_batch: bool = False
    error: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return self.breakdown.total

    @property
    def usage_complete(self) -> bool:
        return self.error is None and self.breakdown.is_complete


class InvoiceOptions(BaseModel):
    mode: InvoiceMode = InvoiceMode.DRAFT
    due_in_days: int = Field(default=30, ge=0, le=365)
    auto_create_billing_customers: bool = True
    allow_incomplete_usage: bool = False


class InvoiceRecord(BaseModel):
    """Persisted invoice summary; cost fields are frozen at creation."""

    id: Optional[str] = None
    customer_id: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    provider_invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    billing_period_start: date
    billing_period_end: date
    total_chats: int = 0
    total_calls: int = 0
    total_ai_sessions: int = 0
    total_sms_segments: int = 0
    total_call_minutes: Decimal = Decimal("0")
    sms_cost: Decimal = Decimal("0")
    voice_cost: Decimal = Decimal("0")
    conversational_ai_cost: Decimal = Decimal("0")
    subtotal: Decimal = Decimal("0")
    markup_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    currency: str = "cad"
    status: InvoiceStatus = InvoiceStatus.DRAFT
    usage_complete: bool = True
    degraded_providers: List[str] = Field(default_factory=list)
    invoice_url: Optional[str] = None
    invoice_pdf_url: Optional[str] = None
    created_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    due_date: Optional[date] = None
    created_by: Optional[str] = None


class InvoiceResult(BaseModel):
    success: bool
    customer_id: str
    customer_name: str
    invoice_id: Optional[str] = None
    invoice_record_id: Optional[str] = None
    amount: Optional[Decimal] = None
    error: Optional[str] = None


class InvoiceListResponse(BaseModel):
    total: int
    items: List[InvoiceRecord]


class InvoicePaymentRequest(BaseModel):
    paid_at: Optional[datetime] = None
    record_at_provider: bool = False


class LedgerSummary(BaseModel):
    counts: Dict[InvoiceStatus, int]
    total_invoiced: Decimal
    total_paid: Decimal
    total_outstanding: Decimal
