from __future__ import annotations

import logging
from typing import Optional, Protocol

from app.clients.retell import RetellUsageClient
from app.clients.twilio import TwilioUsageClient
from app.schemas.customer import Customer
from app.schemas.usage import BillingPeriod, ProviderUsage, UsageProvider

logger = logging.getLogger(__name__)


class UsageMeter(Protocol):
    def is_configured(self, provider: UsageProvider) -> bool:
        ...

    async def query(
        self, provider: UsageProvider, customer: Customer, period: BillingPeriod
    ) -> ProviderUsage:
        ...


class ProviderUsageMeter:
    """Routes each usage category to the provider that meters it."""

    def __init__(
        self,
        *,
        twilio: Optional[TwilioUsageClient] = None,
        retell: Optional[RetellUsageClient] = None,
    ) -> None:
        self._twilio = twilio
        self._retell = retell

    def is_configured(self, provider: UsageProvider) -> bool:
        if provider is UsageProvider.CONVERSATIONAL_AI:
            return self._retell is not None
        return self._twilio is not None

    async def query(
        self, provider: UsageProvider, customer: Customer, period: BillingPeriod
    ) -> ProviderUsage:
        logger.debug("Querying %s usage for customer %s", provider.value, customer.id)
        if provider is UsageProvider.SMS:
            return await self._require_twilio().sms_usage(period, customer.twilio_phone_numbers)
        if provider is UsageProvider.VOICE:
            return await self._require_twilio().voice_usage(period, customer.twilio_phone_numbers)
        if self._retell is None:
            raise RuntimeError("Retell AI usage client not configured")
        return await self._retell.usage(period, customer.retell_agent_ids)

    def _require_twilio(self) -> TwilioUsageClient:
        if self._twilio is None:
            raise RuntimeError("Twilio usage client not configured")
        return self._twilio

    async def close(self) -> None:
        for client in (self._twilio, self._retell):
            if client is not None:
                await client.close()
