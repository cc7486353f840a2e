from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar

import stripe

from app.clients.retry import RetryPolicy, call_with_backoff
from app.schemas.billing import LineItem, ProviderInvoice
from app.services.exceptions import DownstreamServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StripeInvoicingClient:
    """Invoicing provider backed by the official Stripe SDK.

    SDK retries are disabled; failed calls go through the same backoff policy
    as every other provider, keyed on the HTTP status Stripe reported.
    """

    service_name = "Stripe"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.stripe.com",
        timeout: float = 10.0,
        test_mode: bool = True,
        retry_policy: RetryPolicy | None = None,
        client: Optional[stripe.StripeClient] = None,
    ) -> None:
        self._http_client: Optional[stripe.HTTPXClient] = None
        if client is None:
            self._http_client = stripe.HTTPXClient(timeout=timeout)
            client = stripe.StripeClient(
                api_key,
                base_addresses={"api": base_url},
                max_network_retries=0,
                http_client=self._http_client,
            )
        self._stripe = client
        self._retry_policy = retry_policy or RetryPolicy()
        self.test_mode = test_mode
        logger.info("Stripe client configured in %s mode", "test" if test_mode else "live")

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.close_async()
            self._http_client = None

    async def _call(self, label: str, func: Callable[[], Awaitable[T]]) -> T:
        async def _attempt() -> T:
            try:
                return await func()
            except stripe.StripeError as exc:
                logger.exception("Stripe %s failed", label)
                raise DownstreamServiceError(
                    f"Stripe {label} failed: {exc.user_message or exc}",
                    status_code=exc.http_status,
                    cause=exc,
                ) from exc

        return await call_with_backoff(_attempt, self._retry_policy, label=f"Stripe {label}")

    async def create_customer(
        self,
        *,
        name: str,
        email: str,
        phone: str | None = None,
        address: str | None = None,
        metadata: Mapping[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        params: Dict[str, Any] = {"name": name, "email": email, "metadata": dict(metadata or {})}
        if phone:
            params["phone"] = phone
        if address:
            params["address"] = {"line1": address}
        customer = await self._call(
            "create customer",
            lambda: self._stripe.v1.customers.create_async(
                params=params, options=_options(idempotency_key)
            ),
        )
        return str(customer["id"])

    async def create_invoice(
        self,
        *,
        customer_id: str,
        line_items: List[LineItem],
        due_in_days: int,
        auto_advance: bool,
        metadata: Mapping[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> ProviderInvoice:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "collection_method": "send_invoice",
            "days_until_due": due_in_days,
            "auto_advance": auto_advance,
            "metadata": dict(metadata or {}),
        }
        invoice = await self._call(
            "create invoice",
            lambda: self._stripe.v1.invoices.create_async(
                params=params, options=_options(idempotency_key)
            ),
        )
        invoice_id = str(invoice["id"])
        for index, item in enumerate(line_items):
            await self._add_item(
                {
                    "customer": customer_id,
                    "invoice": invoice_id,
                    "description": item.description,
                    "amount": item.amount_cents,
                    "currency": item.currency,
                },
                f"{idempotency_key}-item-{index}" if idempotency_key else None,
            )
        return _to_provider_invoice(invoice)

    async def _add_item(self, params: Dict[str, Any], idempotency_key: str | None) -> None:
        await self._call(
            "create invoice item",
            lambda: self._stripe.v1.invoice_items.create_async(
                params=params, options=_options(idempotency_key)
            ),
        )

    async def finalize_invoice(self, invoice_id: str) -> ProviderInvoice:
        invoice = await self._call(
            "finalize invoice", lambda: self._stripe.v1.invoices.finalize_invoice_async(invoice_id)
        )
        return _to_provider_invoice(invoice)

    async def send_invoice(self, invoice_id: str) -> ProviderInvoice:
        invoice = await self._call(
            "send invoice", lambda: self._stripe.v1.invoices.send_invoice_async(invoice_id)
        )
        return _to_provider_invoice(invoice)

    async def mark_paid(self, invoice_id: str) -> ProviderInvoice:
        invoice = await self._call(
            "mark invoice paid",
            lambda: self._stripe.v1.invoices.pay_async(
                invoice_id, params={"paid_out_of_band": True}
            ),
        )
        return _to_provider_invoice(invoice)

    async def void_invoice(self, invoice_id: str) -> ProviderInvoice:
        invoice = await self._call(
            "void invoice", lambda: self._stripe.v1.invoices.void_invoice_async(invoice_id)
        )
        return _to_provider_invoice(invoice)


def _options(idempotency_key: str | None) -> Dict[str, str]:
    return {"idempotency_key": idempotency_key} if idempotency_key else {}


def _to_provider_invoice(invoice: Mapping[str, Any]) -> ProviderInvoice:
    due = invoice.get("due_date")
    return ProviderInvoice(
        id=str(invoice["id"]),
        number=invoice.get("number"),
        hosted_url=invoice.get("hosted_invoice_url"),
        pdf_url=invoice.get("invoice_pdf"),
        due_date=datetime.fromtimestamp(int(due), tz=timezone.utc).date() if due else None,
        status=invoice.get("status"),
    )
