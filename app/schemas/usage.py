from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, model_validator

from app.services.money import ZERO, apply_markup, round_cents, sum_amounts


class UsageProvider(str, Enum):
    SMS = "sms"
    VOICE = "voice"
    CONVERSATIONAL_AI = "conversational_ai"


class ProviderStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    UNCONFIGURED = "unconfigured"


class BillingPeriod(BaseModel):
    """Closed date interval ``[start, end]`` that usage is aggregated over."""

    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "BillingPeriod":
        if self.end < self.start:
            raise ValueError("End date must be on or after start date")
        return self

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.start, time.min, tzinfo=timezone.utc)

    @property
    def ends_at(self) -> datetime:
        """Exclusive upper bound, midnight after the last billed day."""

        return datetime.combine(self.end + timedelta(days=1), time.min, tzinfo=timezone.utc)

    @property
    def label(self) -> str:
        return f"{_format_day(self.start)} - {_format_day(self.end)}"


def _format_day(value: date) -> str:
    return f"{value.strftime('%b')} {value.day}, {value.year}"


class ProviderUsage(BaseModel):
    """Usage reported by one metering provider for one customer and period.

    ``count`` is messages, calls or AI sessions; ``units`` is SMS segments or
    voice minutes and stays zero for conversational AI.
    """

    provider: UsageProvider
    count: int = Field(default=0, ge=0)
    units: Decimal = Field(default=ZERO, ge=0)
    cost: Decimal = Field(default=ZERO, ge=0)


class CostBreakdown(BaseModel):
    chat_count: int = 0
    call_count: int = 0
    ai_session_count: int = 0
    total_segments: int = 0
    total_minutes: Decimal = ZERO
    sms_cost: Decimal = Field(default=ZERO, ge=0)
    voice_cost: Decimal = Field(default=ZERO, ge=0)
    conversational_ai_cost: Decimal = Field(default=ZERO, ge=0)
    subtotal: Decimal = Field(default=ZERO, ge=0)
    markup_percentage: Decimal = ZERO
    markup_amount: Decimal = Field(default=ZERO, ge=0)
    total: Decimal = Field(default=ZERO, ge=0)
    provider_status: Dict[UsageProvider, ProviderStatus] = Field(default_factory=dict)

    @classmethod
    def from_usage(
        cls,
        usages: Iterable[ProviderUsage],
        *,
        markup_percentage: Decimal,
        provider_status: Optional[Dict[UsageProvider, ProviderStatus]] = None,
    ) -> "CostBreakdown":
        by_provider = {usage.provider: usage for usage in usages}
        sms = by_provider.get(UsageProvider.SMS) or ProviderUsage(provider=UsageProvider.SMS)
        voice = by_provider.get(UsageProvider.VOICE) or ProviderUsage(provider=UsageProvider.VOICE)
        ai = by_provider.get(UsageProvider.CONVERSATIONAL_AI) or ProviderUsage(
            provider=UsageProvider.CONVERSATIONAL_AI
        )

        # Components are rounded to the cent first; line items must add up to the total.
        sms_cost, voice_cost, ai_cost = (round_cents(usage.cost) for usage in (sms, voice, ai))
        subtotal = sum_amounts([sms_cost, voice_cost, ai_cost])
        markup_amount, total = apply_markup(subtotal, markup_percentage)
        return cls(
            chat_count=sms.count,
            call_count=voice.count,
            ai_session_count=ai.count,
            total_segments=int(sms.units),
            total_minutes=voice.units,
            sms_cost=sms_cost,
            voice_cost=voice_cost,
            conversational_ai_cost=ai_cost,
            subtotal=subtotal,
            markup_percentage=markup_percentage,
            markup_amount=markup_amount,
            total=total,
            provider_status=dict(provider_status or {}),
        )

    @classmethod
    def empty(
        cls,
        *,
        markup_percentage: Decimal = ZERO,
        status: ProviderStatus = ProviderStatus.FAILED,
    ) -> "CostBreakdown":
        return cls.from_usage(
            [],
            markup_percentage=markup_percentage,
            provider_status={provider: status for provider in UsageProvider},
        )

    @property
    def degraded_providers(self) -> List[UsageProvider]:
        return [
            provider
            for provider, status in self.provider_status.items()
            if status is ProviderStatus.FAILED
        ]

    @property
    def is_complete(self) -> bool:
        return not self.degraded_providers
