from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Iterable, List

from app.schemas.billing import InvoicePreview
from app.schemas.customer import Customer
from app.schemas.usage import BillingPeriod, CostBreakdown
from app.services.context import BillingContext
from app.services.costs import CostAggregator
from app.services.customers import CustomerService
from app.services.exceptions import UpstreamAuthenticationError

logger = logging.getLogger(__name__)


class BatchPreviewBuilder:
    """Fans cost aggregation out over every customer and joins the results."""

    def __init__(self, aggregator: CostAggregator, customers: CustomerService) -> None:
        self._aggregator = aggregator
        self._customers = customers

    async def build_for_directory(
        self, period: BillingPeriod, context: BillingContext
    ) -> List[InvoicePreview]:
        return await self.build(await self._customers.list(), period, context)

    async def build(
        self,
        customers: Iterable[Customer],
        period: BillingPeriod,
        context: BillingContext,
    ) -> List[InvoicePreview]:
        """Return one preview per customer, ordered by name (case-insensitive).

        Customers whose aggregation fails keep a zero, flagged preview. An
        authentication failure aborts the whole build.
        """

        customer_list = list(customers)
        logger.info("Calculating %s invoice previews for %s", len(customer_list), period.label)
        outcomes = await asyncio.gather(
            *(self._aggregator.aggregate(customer, period, context) for customer in customer_list),
            return_exceptions=True,
        )

        previews: List[InvoicePreview] = []
        for customer, outcome in zip(customer_list, outcomes):
            if isinstance(outcome, UpstreamAuthenticationError):
                raise outcome
            if isinstance(outcome, Exception):
                logger.warning("Preview for %s degraded: %s", customer.name, outcome)
                previews.append(
                    InvoicePreview(
                        customer_id=customer.id,
                        customer_name=customer.name,
                        breakdown=CostBreakdown.empty(markup_percentage=customer.markup_percentage),
                        has_billing_identity=customer.has_billing_identity,
                        include_in_batch=False,
                        error=str(outcome) or outcome.__class__.__name__,
                    )
                )
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            previews.append(
                InvoicePreview(
                    customer_id=customer.id,
                    customer_name=customer.name,
                    breakdown=outcome,
                    has_billing_identity=customer.has_billing_identity,
                    include_in_batch=outcome.total > Decimal("0"),
                )
            )

        previews.sort(key=lambda preview: preview.customer_name.lower())
        return previews
