import asyncio
import os
import sys
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app.config import get_settings
from app.schemas.usage import (
    BillingPeriod,
    CostBreakdown,
    ProviderStatus,
    ProviderUsage,
    UsageProvider,
)
from app.services.context import BillingContext
from app.services.costs import CostAggregator
from app.services.customers import CustomerService
from app.services.exceptions import (
    DownstreamServiceError,
    ServiceError,
    UpstreamAuthenticationError,
)
from app.services.mock_store import get_mock_store, reset_mock_store
from app.services.previews import BatchPreviewBuilder

PERIOD = BillingPeriod(start=date(2025, 1, 1), end=date(2025, 1, 31))


@pytest.fixture(autouse=True)
def _reset_store() -> None:
    reset_mock_store()
    yield
    reset_mock_store()


class MockLatencyClient:
    """Client stub that records simulate_latency calls."""

    def __init__(self) -> None:
        self.use_mock_data = True
        self.latency_called = False

    async def simulate_latency(self) -> None:
        self.latency_called = True


def _context() -> BillingContext:
    return BillingContext(settings=get_settings(), user_id="admin-1")


def _aggregator() -> CostAggregator:
    store = get_mock_store()
    return CostAggregator(store.usage, CustomerService(MockLatencyClient()))


def test_aggregate_sums_all_providers_with_markup() -> None:
    breakdown = asyncio.run(_aggregator().aggregate_by_id("CUS-00001", PERIOD, _context()))

    assert breakdown.sms_cost == Decimal("5.57")
    assert breakdown.voice_cost == Decimal("13.09")
    assert breakdown.conversational_ai_cost == Decimal("41.86")
    assert breakdown.subtotal == Decimal("60.52")
    assert breakdown.markup_amount == Decimal("12.10")
    assert breakdown.total == Decimal("72.62")
    assert breakdown.chat_count == 412
    assert breakdown.call_count == 96
    assert breakdown.total_segments == 530
    assert breakdown.total_minutes == Decimal("311.5")
    assert breakdown.provider_status == {provider: ProviderStatus.OK for provider in UsageProvider}


def test_each_provider_is_queried_once() -> None:
    asyncio.run(_aggregator().aggregate_by_id("CUS-00001", PERIOD, _context()))

    queried = [provider for _, provider, _ in get_mock_store().usage.queries]
    assert sorted(queried) == sorted(UsageProvider)


def test_failed_provider_contributes_zero_and_is_flagged() -> None:
    get_mock_store().usage.fail(UsageProvider.VOICE, "CUS-00001")

    breakdown = asyncio.run(_aggregator().aggregate_by_id("CUS-00001", PERIOD, _context()))

    assert breakdown.voice_cost == Decimal("0")
    assert breakdown.call_count == 0
    assert breakdown.subtotal == Decimal("47.43")
    assert breakdown.markup_amount == Decimal("9.49")
    assert breakdown.total == Decimal("56.92")
    assert breakdown.provider_status[UsageProvider.VOICE] is ProviderStatus.FAILED
    assert breakdown.provider_status[UsageProvider.SMS] is ProviderStatus.OK
    assert breakdown.degraded_providers == [UsageProvider.VOICE]
    assert not breakdown.is_complete


def test_unconfigured_provider_is_not_a_degradation() -> None:
    get_mock_store().usage.unconfigure(UsageProvider.CONVERSATIONAL_AI)

    breakdown = asyncio.run(_aggregator().aggregate_by_id("CUS-00001", PERIOD, _context()))

    assert breakdown.conversational_ai_cost == Decimal("0")
    assert breakdown.provider_status[UsageProvider.CONVERSATIONAL_AI] is ProviderStatus.UNCONFIGURED
    assert breakdown.subtotal == Decimal("18.66")
    assert breakdown.is_complete


def test_rejected_credentials_abort_aggregation() -> None:
    meter = MagicMock()
    meter.is_configured.return_value = True
    meter.query = AsyncMock(side_effect=DownstreamServiceError("unauthorized", status_code=401))
    aggregator = CostAggregator(meter, CustomerService(MockLatencyClient()))

    with pytest.raises(UpstreamAuthenticationError):
        asyncio.run(aggregator.aggregate_by_id("CUS-00001", PERIOD, _context()))


def test_customer_without_identifiers_has_zero_usage() -> None:
    breakdown = asyncio.run(_aggregator().aggregate_by_id("CUS-00003", PERIOD, _context()))

    assert breakdown.total == Decimal("0")
    assert breakdown.is_complete


def test_previews_are_sorted_and_auto_selected() -> None:
    store = get_mock_store()
    asyncio.run(store.customers.create({"name": "acme corp", "email": "ap@acme.example"}))
    builder = BatchPreviewBuilder(_aggregator(), CustomerService(MockLatencyClient()))

    previews = asyncio.run(builder.build_for_directory(PERIOD, _context()))

    assert [preview.customer_name for preview in previews] == [
        "acme corp",
        "Bayview Clinic",
        "Maple Law Group",
        "Northwind Dental",
    ]
    selected = {preview.customer_name: preview.include_in_batch for preview in previews}
    assert selected == {
        "acme corp": False,
        "Bayview Clinic": True,
        "Maple Law Group": False,
        "Northwind Dental": True,
    }
    bayview = previews[1]
    assert bayview.total == Decimal("21.01")
    assert not bayview.has_billing_identity
    assert previews[3].has_billing_identity


def _sms_only(customer, period, context) -> CostBreakdown:
    if customer.id == "CUS-00002":
        raise ServiceError("usage backend unavailable")
    return CostBreakdown.from_usage(
        [ProviderUsage(provider=UsageProvider.SMS, count=1, units=Decimal("1"), cost=Decimal("2.00"))],
        markup_percentage=customer.markup_percentage,
        provider_status={provider: ProviderStatus.OK for provider in UsageProvider},
    )


def test_preview_failure_degrades_one_customer_only() -> None:
    aggregator = MagicMock()
    aggregator.aggregate = AsyncMock(side_effect=_sms_only)
    builder = BatchPreviewBuilder(aggregator, CustomerService(MockLatencyClient()))

    previews = asyncio.run(builder.build_for_directory(PERIOD, _context()))

    assert len(previews) == 3
    bayview = next(preview for preview in previews if preview.customer_id == "CUS-00002")
    assert bayview.error == "usage backend unavailable"
    assert bayview.total == Decimal("0")
    assert not bayview.include_in_batch
    assert not bayview.usage_complete
    others = [preview for preview in previews if preview.customer_id != "CUS-00002"]
    assert all(preview.include_in_batch for preview in others)


def test_preview_build_aborts_on_authentication_failure() -> None:
    aggregator = MagicMock()
    aggregator.aggregate = AsyncMock(side_effect=UpstreamAuthenticationError("bad credentials"))
    builder = BatchPreviewBuilder(aggregator, CustomerService(MockLatencyClient()))

    with pytest.raises(UpstreamAuthenticationError):
        asyncio.run(builder.build_for_directory(PERIOD, _context()))


def _usage_or_value_error(provider, customer, period) -> ProviderUsage:
    if customer.id == "CUS-00002":
        raise ValueError("malformed usage payload")
    return ProviderUsage(provider=provider, count=1, units=Decimal("1"), cost=Decimal("1.00"))


def test_unexpected_meter_error_marks_provider_failed() -> None:
    meter = MagicMock()
    meter.is_configured.return_value = True
    meter.query = AsyncMock(side_effect=_usage_or_value_error)
    customers = CustomerService(MockLatencyClient())
    builder = BatchPreviewBuilder(CostAggregator(meter, customers), customers)
    batch = [asyncio.run(customers.get(customer_id)) for customer_id in ("CUS-00001", "CUS-00002")]

    previews = asyncio.run(builder.build(batch, PERIOD, _context()))

    assert len(previews) == 2
    bayview = next(preview for preview in previews if preview.customer_id == "CUS-00002")
    assert bayview.total == Decimal("0")
    assert set(bayview.breakdown.degraded_providers) == set(UsageProvider)
    assert not bayview.usage_complete
    northwind = next(preview for preview in previews if preview.customer_id == "CUS-00001")
    assert northwind.breakdown.subtotal == Decimal("3.00")
    assert northwind.usage_complete


def test_unexpected_aggregation_error_degrades_preview() -> None:
    aggregator = MagicMock()
    aggregator.aggregate = AsyncMock(side_effect=KeyError("sms"))
    builder = BatchPreviewBuilder(aggregator, CustomerService(MockLatencyClient()))

    previews = asyncio.run(builder.build_for_directory(PERIOD, _context()))

    assert len(previews) == 3
    assert all(preview.error for preview in previews)
    assert not any(preview.include_in_batch for preview in previews)
