from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _clean_identifiers(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return None
    seen: List[str] = []
    for value in values:
        cleaned = value.strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


class Customer(BaseModel):
    """Billing customer with its markup and usage identifiers."""

    id: str
    name: str
    email: str
    markup_percentage: Decimal = Field(default=Decimal("0"))
    retell_agent_ids: List[str] = Field(default_factory=list)
    twilio_phone_numbers: List[str] = Field(default_factory=list)
    stripe_customer_id: Optional[str] = None
    auto_invoice_enabled: bool = False
    billing_contact_name: Optional[str] = None
    billing_address: Optional[str] = None
    phone_number: Optional[str] = None
    tax_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_billing_identity(self) -> bool:
        return bool(self.stripe_customer_id)


class CustomerCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    markup_percentage: Optional[Decimal] = Field(default=None, ge=0, le=10000)
    retell_agent_ids: List[str] = Field(default_factory=list)
    twilio_phone_numbers: List[str] = Field(default_factory=list)
    stripe_customer_id: Optional[str] = None
    auto_invoice_enabled: bool = False
    billing_contact_name: Optional[str] = Field(default=None, max_length=100)
    billing_address: Optional[str] = Field(default=None, max_length=500)
    phone_number: Optional[str] = None
    tax_id: Optional[str] = Field(default=None, max_length=50)
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("name")
    def _strip_name(cls, value: str) -> str:
        return value.strip()

    @field_validator("retell_agent_ids", "twilio_phone_numbers")
    def _dedupe(cls, value: List[str]) -> List[str]:
        return _clean_identifiers(value) or []


class CustomerUpdate(BaseModel):
    """Partial update; only fields explicitly provided are written."""

    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    markup_percentage: Optional[Decimal] = Field(default=None, ge=0, le=10000)
    retell_agent_ids: Optional[List[str]] = None
    twilio_phone_numbers: Optional[List[str]] = None
    stripe_customer_id: Optional[str] = None
    auto_invoice_enabled: Optional[bool] = None
    billing_contact_name: Optional[str] = Field(default=None, max_length=100)
    billing_address: Optional[str] = Field(default=None, max_length=500)
    phone_number: Optional[str] = None
    tax_id: Optional[str] = Field(default=None, max_length=50)
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("retell_agent_ids", "twilio_phone_numbers")
    def _dedupe(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _clean_identifiers(value)


class CustomerListResponse(BaseModel):
    total: int
    items: List[Customer]
