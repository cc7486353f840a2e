from __future__ import annotations

from typing import List, Mapping, Protocol

from app.schemas.billing import LineItem, ProviderInvoice


class InvoicingProvider(Protocol):
    """Operations the invoice pipeline needs from the payment processor.

    Implemented by ``StripeInvoicingClient`` and, in mock mode, by
    ``MockInvoicingProvider``. Amounts are integer minor units.
    """

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
        ...

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
        ...

    async def finalize_invoice(self, invoice_id: str) -> ProviderInvoice:
        ...

    async def send_invoice(self, invoice_id: str) -> ProviderInvoice:
        ...

    async def mark_paid(self, invoice_id: str) -> ProviderInvoice:
        ...

    async def void_invoice(self, invoice_id: str) -> ProviderInvoice:
        ...
