"""Invoice generation for a batch of customers.

Customers are processed strictly one after another: invoicing provider rate
limits apply per account, and operators watch progress advance one customer
at a time. Every customer in the batch yields exactly one ``InvoiceResult``;
no failure for one customer stops the others.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, List, Optional, Sequence

from app.schemas.billing import (
    InvoiceMode,
    InvoiceOptions,
    InvoicePreview,
    InvoiceRecord,
    InvoiceResult,
    InvoiceStatus,
    LineItem,
)
from app.schemas.customer import Customer
from app.schemas.usage import BillingPeriod
from app.services.context import BillingContext
from app.services.customers import CustomerService
from app.services.exceptions import (
    ConflictError,
    IncompleteUsageError,
    MissingBillingIdentityError,
    ValidationFailure,
)
from app.services.invoice import InvoiceLedgerService
from app.services.invoicing import InvoicingProvider
from app.services.money import ZERO, to_minor_units

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled before processing"


class CancellationToken:
    """Checked between customers; in-flight provider calls are not interrupted."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def invoice_idempotency_key(
    customer_id: str, period: BillingPeriod, mode: InvoiceMode, attempt: int = 0
) -> str:
    """Key for one invoice attempt.

    ``attempt`` is the number of cancelled invoices already recorded for the
    customer and period, so regenerating after a cancel gets a fresh invoice
    instead of the voided one.
    """

    raw = f"{customer_id}|{period.start.isoformat()}|{period.end.isoformat()}|{mode.value}|{attempt}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def _percent(value: Decimal) -> str:
    return f"{value.normalize():f}"


def build_line_items(preview: InvoicePreview, period: BillingPeriod, currency: str) -> List[LineItem]:
    """One item per non-zero cost component, plus markup when positive.

    Amounts are converted to minor units here and nowhere else.
    """

    costs = preview.breakdown
    items: List[LineItem] = []
    if costs.sms_cost > ZERO:
        items.append(
            LineItem(
                description=(
                    f"SMS Services - {period.label}\n"
                    f"{costs.total_segments} segments, {costs.chat_count} conversations"
                ),
                amount_cents=to_minor_units(costs.sms_cost),
                currency=currency,
            )
        )
    if costs.voice_cost > ZERO:
        items.append(
            LineItem(
                description=(
                    f"Voice Call Services - {period.label}\n"
                    f"{costs.total_minutes:.1f} minutes, {costs.call_count} calls"
                ),
                amount_cents=to_minor_units(costs.voice_cost),
                currency=currency,
            )
        )
    if costs.conversational_ai_cost > ZERO:
        items.append(
            LineItem(
                description=(
                    f"AI Processing Services - {period.label}\n"
                    f"Conversational AI, {costs.ai_session_count} sessions"
                ),
                amount_cents=to_minor_units(costs.conversational_ai_cost),
                currency=currency,
            )
        )
    if costs.markup_amount > ZERO:
        items.append(
            LineItem(
                description=f"Service Markup ({_percent(costs.markup_percentage)}%)",
                amount_cents=to_minor_units(costs.markup_amount),
                currency=currency,
            )
        )
    return items


class InvoiceGenerationOrchestrator:
    def __init__(
        self,
        customers: CustomerService,
        ledger: InvoiceLedgerService,
        provider: InvoicingProvider,
    ) -> None:
        self._customers = customers
        self._ledger = ledger
        self._provider = provider

    async def run(
        self,
        previews: Sequence[InvoicePreview],
        period: BillingPeriod,
        options: InvoiceOptions,
        context: BillingContext,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> AsyncIterator[InvoiceResult]:
        """Yield one result per preview, in order, one customer at a time."""

        logger.info(
            "Generating %s invoices for %s in %s mode",
            len(previews),
            period.label,
            options.mode.value,
        )
        for preview in previews:
            if cancel is not None and cancel.cancelled:
                yield InvoiceResult(
                    success=False,
                    customer_id=preview.customer_id,
                    customer_name=preview.customer_name,
                    error=CANCELLED_MESSAGE,
                )
                continue
            yield await self.process_customer(preview, period, options, context)

    async def process_customer(
        self,
        preview: InvoicePreview,
        period: BillingPeriod,
        options: InvoiceOptions,
        context: BillingContext,
    ) -> InvoiceResult:
        timeout = context.settings.customer_timeout
        try:
            return await asyncio.wait_for(
                self._generate(preview, period, options, context), timeout=timeout
            )
        except asyncio.TimeoutError:
            message = f"Timed out after {timeout:g}s"
            logger.warning("Invoice for %s failed: %s", preview.customer_name, message)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.exception("Failed to generate invoice for %s", preview.customer_name)
        return InvoiceResult(
            success=False,
            customer_id=preview.customer_id,
            customer_name=preview.customer_name,
            error=message,
        )

    async def _generate(
        self,
        preview: InvoicePreview,
        period: BillingPeriod,
        options: InvoiceOptions,
        context: BillingContext,
    ) -> InvoiceResult:
        if not options.allow_incomplete_usage and not preview.usage_complete:
            degraded = ", ".join(p.value for p in preview.breakdown.degraded_providers)
            raise IncompleteUsageError(
                f"Usage is incomplete ({degraded or preview.error}); invoice not generated"
            )

        line_items = build_line_items(preview, period, context.currency)
        if not line_items:
            raise ValidationFailure("No billable usage for this period")

        records = await self._ledger.records_for_period(preview.customer_id, period)
        for existing in records:
            if existing.status != InvoiceStatus.CANCELLED:
                raise ConflictError(
                    f"Invoice {existing.invoice_number or existing.id} already exists for this period"
                )
        attempt = len(records)

        customer = await self._customers.get(preview.customer_id)
        billing_id = await self._resolve_billing_identity(customer, options)

        invoice = await self._provider.create_invoice(
            customer_id=billing_id,
            line_items=line_items,
            due_in_days=options.due_in_days,
            auto_advance=options.mode is not InvoiceMode.DRAFT,
            metadata={
                "billing_period_start": period.start.isoformat(),
                "billing_period_end": period.end.isoformat(),
                "billing_customer_id": customer.id,
            },
            idempotency_key=invoice_idempotency_key(customer.id, period, options.mode, attempt),
        )

        finalized_at: Optional[datetime] = None
        sent_at: Optional[datetime] = None
        if options.mode in (InvoiceMode.FINALIZE, InvoiceMode.SEND):
            invoice = await self._provider.finalize_invoice(invoice.id)
            finalized_at = datetime.now(timezone.utc)
        if options.mode is InvoiceMode.SEND:
            invoice = await self._provider.send_invoice(invoice.id)
            sent_at = datetime.now(timezone.utc)

        costs = preview.breakdown
        record = await self._ledger.insert(
            InvoiceRecord(
                customer_id=customer.id,
                customer_name=customer.name,
                customer_email=customer.email,
                provider_invoice_id=invoice.id,
                invoice_number=invoice.number,
                billing_period_start=period.start,
                billing_period_end=period.end,
                total_chats=costs.chat_count,
                total_calls=costs.call_count,
                total_ai_sessions=costs.ai_session_count,
                total_sms_segments=costs.total_segments,
                total_call_minutes=costs.total_minutes,
                sms_cost=costs.sms_cost,
                voice_cost=costs.voice_cost,
                conversational_ai_cost=costs.conversational_ai_cost,
                subtotal=costs.subtotal,
                markup_amount=costs.markup_amount,
                total_amount=costs.total,
                currency=context.currency,
                status=InvoiceStatus.SENT if sent_at else InvoiceStatus.DRAFT,
                usage_complete=costs.is_complete,
                degraded_providers=[p.value for p in costs.degraded_providers],
                invoice_url=invoice.hosted_url,
                invoice_pdf_url=invoice.pdf_url,
                finalized_at=finalized_at,
                sent_at=sent_at,
                due_date=invoice.due_date,
                created_by=context.user_id,
            )
        )
        logger.info(
            "Generated invoice %s for %s (%s %s)",
            invoice.id,
            customer.name,
            costs.total,
            context.currency,
        )
        return InvoiceResult(
            success=True,
            customer_id=customer.id,
            customer_name=customer.name,
            invoice_id=invoice.id,
            invoice_record_id=record.id,
            amount=costs.total,
        )

    async def _resolve_billing_identity(self, customer: Customer, options: InvoiceOptions) -> str:
        if customer.stripe_customer_id:
            return customer.stripe_customer_id
        if not options.auto_create_billing_customers:
            raise MissingBillingIdentityError(
                f"No billing provider customer ID for {customer.name} and auto-create is disabled"
            )

        billing_id = await self._provider.create_customer(
            name=customer.name,
            email=customer.email,
            phone=customer.phone_number,
            address=customer.billing_address,
            metadata={"billing_customer_id": customer.id},
            idempotency_key=f"customer-create-{customer.id}",
        )
        # Persist before anything else can fail so a retry reuses this identity.
        await self._customers.set_billing_identity(customer.id, billing_id)
        return billing_id
