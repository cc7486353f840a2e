from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Tuple

from app.schemas.customer import Customer
from app.schemas.usage import (
    BillingPeriod,
    CostBreakdown,
    ProviderStatus,
    ProviderUsage,
    UsageProvider,
)
from app.services.context import BillingContext
from app.services.customers import CustomerService
from app.services.exceptions import (
    DownstreamServiceError,
    UpstreamAuthenticationError,
)
from app.services.metering import UsageMeter

logger = logging.getLogger(__name__)

AUTH_STATUS_CODES = {401, 403}


class CostAggregator:
    """Builds a customer's cost breakdown from per-provider usage.

    Each usage category is queried once. A failing provider contributes
    zero and is reported as ``failed`` in ``provider_status``; rejected
    credentials abort the aggregation instead, since nothing meaningful can
    be computed without them.
    """

    def __init__(self, meter: UsageMeter, customers: CustomerService | None = None) -> None:
        self._meter = meter
        self._customers = customers

    async def aggregate_by_id(
        self, customer_id: str, period: BillingPeriod, context: BillingContext
    ) -> CostBreakdown:
        if self._customers is None:
            raise RuntimeError("Customer directory not configured for cost aggregation")
        customer = await self._customers.get(customer_id)
        return await self.aggregate(customer, period, context)

    async def aggregate(
        self, customer: Customer, period: BillingPeriod, context: BillingContext
    ) -> CostBreakdown:
        outcomes = await asyncio.gather(
            *(self._query(provider, customer, period) for provider in UsageProvider)
        )
        usages: List[ProviderUsage] = []
        statuses: Dict[UsageProvider, ProviderStatus] = {}
        for provider, (status, usage) in zip(UsageProvider, outcomes):
            statuses[provider] = status
            usages.append(usage)

        breakdown = CostBreakdown.from_usage(
            usages,
            markup_percentage=customer.markup_percentage,
            provider_status=statuses,
        )
        if not breakdown.is_complete:
            logger.warning(
                "Usage for %s (%s) is incomplete; degraded providers: %s",
                customer.name,
                period.label,
                ", ".join(provider.value for provider in breakdown.degraded_providers),
            )
        logger.debug(
            "Computed %s %s for %s requested by %s",
            breakdown.total,
            context.currency,
            customer.id,
            context.user_id,
        )
        return breakdown

    async def _query(
        self, provider: UsageProvider, customer: Customer, period: BillingPeriod
    ) -> Tuple[ProviderStatus, ProviderUsage]:
        if not self._meter.is_configured(provider):
            return ProviderStatus.UNCONFIGURED, ProviderUsage(provider=provider)
        try:
            usage = await self._meter.query(provider, customer, period)
        except DownstreamServiceError as exc:
            if exc.status_code in AUTH_STATUS_CODES:
                raise UpstreamAuthenticationError(
                    f"{provider.value} usage provider rejected the credentials", cause=exc
                ) from exc
            logger.warning("%s usage query failed for %s: %s", provider.value, customer.id, exc)
            return ProviderStatus.FAILED, ProviderUsage(provider=provider)
        except Exception:
            logger.exception("%s usage query failed for %s", provider.value, customer.id)
            return ProviderStatus.FAILED, ProviderUsage(provider=provider)
        return ProviderStatus.OK, usage
