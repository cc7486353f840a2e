from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException

from app.clients.backend import BackendClient
from app.clients.retell import RetellUsageClient
from app.clients.retry import RetryPolicy
from app.clients.stripe_billing import StripeInvoicingClient
from app.clients.twilio import TwilioUsageClient
from app.config import Settings, get_settings
from app.services import (
    BatchPreviewBuilder,
    CostAggregator,
    CustomerService,
    InvoiceGenerationOrchestrator,
    InvoiceLedgerService,
    UserService,
)
from app.services.context import BillingContext
from app.services.invoicing import InvoicingProvider
from app.services.metering import ProviderUsageMeter, UsageMeter
from app.services.mock_store import get_mock_store
from app.services.wizard import WizardRegistry


def _retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        attempts=settings.retry_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
    )


@lru_cache(maxsize=1)
def get_backend_client_cached() -> BackendClient:
    settings = get_settings()
    return BackendClient(
        str(settings.backend.base_url) if settings.backend.base_url else None,
        api_key=settings.backend.api_key,
        timeout=settings.request_timeout,
        use_mock_data=settings.use_mock_data,
        retry_policy=_retry_policy(settings),
    )


@lru_cache(maxsize=1)
def get_provider_meter_cached() -> ProviderUsageMeter:
    settings = get_settings()
    twilio = None
    if settings.twilio.configured:
        twilio = TwilioUsageClient(
            settings.twilio.account_sid,
            settings.twilio.auth_token,
            base_url=settings.twilio.base_url,
            timeout=settings.request_timeout,
            exchange_rate=settings.usage_exchange_rate,
            retry_policy=_retry_policy(settings),
        )
    retell = None
    if settings.retell.configured:
        retell = RetellUsageClient(
            settings.retell.api_key,
            base_url=settings.retell.base_url,
            timeout=settings.request_timeout,
            exchange_rate=settings.usage_exchange_rate,
            retry_policy=_retry_policy(settings),
        )
    return ProviderUsageMeter(twilio=twilio, retell=retell)


@lru_cache(maxsize=1)
def get_stripe_client_cached() -> Optional[StripeInvoicingClient]:
    settings = get_settings()
    if not settings.stripe.configured:
        return None
    return StripeInvoicingClient(
        settings.stripe.api_key,
        base_url=settings.stripe.base_url,
        timeout=settings.request_timeout,
        test_mode=settings.stripe.test_mode,
        retry_policy=_retry_policy(settings),
    )


@lru_cache(maxsize=1)
def get_wizard_registry() -> WizardRegistry:
    return WizardRegistry(max_wizards=get_settings().max_wizards)


async def close_clients() -> None:
    """Close every outbound client that was opened during the app lifetime."""

    await get_backend_client_cached().close()
    await get_provider_meter_cached().close()
    stripe = get_stripe_client_cached()
    if stripe is not None:
        await stripe.close()


def get_backend_client(settings: Settings = Depends(get_settings)) -> BackendClient:
    return get_backend_client_cached()


def get_usage_meter(settings: Settings = Depends(get_settings)) -> UsageMeter:
    if settings.use_mock_data:
        return get_mock_store().usage
    return get_provider_meter_cached()


def get_invoicing_provider(settings: Settings = Depends(get_settings)) -> InvoicingProvider:
    if settings.use_mock_data:
        return get_mock_store().invoicing
    stripe = get_stripe_client_cached()
    if stripe is None:
        raise HTTPException(status_code=503, detail="Invoicing provider is not configured")
    return stripe


def get_billing_context(
    settings: Settings = Depends(get_settings),
    x_user_id: Optional[str] = Header(default=None),
) -> BillingContext:
    return BillingContext(settings=settings, user_id=x_user_id)


def get_customer_service(
    client: BackendClient = Depends(get_backend_client),
    settings: Settings = Depends(get_settings),
) -> CustomerService:
    return CustomerService(client, default_markup_percentage=settings.default_markup_percentage)


def get_invoice_ledger_service(
    client: BackendClient = Depends(get_backend_client),
    provider: InvoicingProvider = Depends(get_invoicing_provider),
) -> InvoiceLedgerService:
    return InvoiceLedgerService(client, provider=provider)


def get_cost_aggregator(
    meter: UsageMeter = Depends(get_usage_meter),
    customers: CustomerService = Depends(get_customer_service),
) -> CostAggregator:
    return CostAggregator(meter, customers)


def get_preview_builder(
    aggregator: CostAggregator = Depends(get_cost_aggregator),
    customers: CustomerService = Depends(get_customer_service),
) -> BatchPreviewBuilder:
    return BatchPreviewBuilder(aggregator, customers)


def get_generation_orchestrator(
    customers: CustomerService = Depends(get_customer_service),
    ledger: InvoiceLedgerService = Depends(get_invoice_ledger_service),
    provider: InvoicingProvider = Depends(get_invoicing_provider),
) -> InvoiceGenerationOrchestrator:
    return InvoiceGenerationOrchestrator(customers, ledger, provider)


def get_user_service(
    client: BackendClient = Depends(get_backend_client),
    settings: Settings = Depends(get_settings),
) -> UserService:
    return UserService(client, issuer=settings.mfa_issuer)
