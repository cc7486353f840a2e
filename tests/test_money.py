import os
import sys
from datetime import date
from decimal import Decimal

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app.schemas.billing import InvoicePreview
from app.schemas.usage import BillingPeriod, CostBreakdown, ProviderStatus, ProviderUsage, UsageProvider
from app.services.generation import build_line_items
from app.services.money import apply_markup, round_cents, sum_amounts, to_minor_units


def test_minor_units_round_half_up() -> None:
    assert to_minor_units(19.995) == 2000
    assert to_minor_units(Decimal("0.005")) == 1
    assert to_minor_units(Decimal("0.004")) == 0
    assert to_minor_units("72.62") == 7262


def test_float_inputs_do_not_carry_binary_noise() -> None:
    assert sum_amounts([0.1, 0.2]) == Decimal("0.3")
    assert round_cents(2.675) == Decimal("2.68")


def test_markup_twenty_percent_of_one_hundred() -> None:
    markup, total = apply_markup(Decimal("100"), Decimal("20"))

    assert markup == Decimal("20.00")
    assert total == Decimal("120.00")


def test_markup_rounds_to_the_cent() -> None:
    markup, total = apply_markup(Decimal("60.52"), Decimal("20"))

    assert markup == Decimal("12.10")
    assert total == Decimal("72.62")


def test_zero_markup_keeps_subtotal() -> None:
    markup, total = apply_markup(Decimal("15.56"), 0)

    assert markup == Decimal("0")
    assert total == Decimal("15.56")


def test_markup_is_deterministic() -> None:
    first = apply_markup(Decimal("33.33"), Decimal("12.5"))
    second = apply_markup(Decimal("33.33"), Decimal("12.5"))

    assert first == second
    assert first[1] == Decimal("33.33") + first[0]


def test_breakdown_total_is_subtotal_plus_markup() -> None:
    breakdown = CostBreakdown.from_usage(
        [
            ProviderUsage(provider=UsageProvider.SMS, count=88, units=Decimal("120"), cost=Decimal("1.26")),
            ProviderUsage(provider=UsageProvider.CONVERSATIONAL_AI, count=37, cost=Decimal("14.30")),
        ],
        markup_percentage=Decimal("35"),
        provider_status={provider: ProviderStatus.OK for provider in UsageProvider},
    )

    assert breakdown.subtotal == Decimal("15.56")
    assert breakdown.markup_amount == Decimal("5.45")
    assert breakdown.total == breakdown.subtotal + breakdown.markup_amount
    assert breakdown.voice_cost == Decimal("0")
    assert breakdown.total_segments == 120
    assert breakdown.is_complete


def test_empty_breakdown_is_flagged_failed() -> None:
    breakdown = CostBreakdown.empty(markup_percentage=Decimal("10"))

    assert breakdown.total == Decimal("0")
    assert not breakdown.is_complete
    assert set(breakdown.degraded_providers) == set(UsageProvider)


def test_sub_cent_costs_are_rounded_before_the_subtotal() -> None:
    breakdown = CostBreakdown.from_usage(
        [
            ProviderUsage(provider=UsageProvider.SMS, count=1, units=Decimal("1"), cost=Decimal("0.005")),
            ProviderUsage(provider=UsageProvider.VOICE, count=1, units=Decimal("0.5"), cost=Decimal("0.005")),
        ],
        markup_percentage=Decimal("35"),
        provider_status={provider: ProviderStatus.OK for provider in UsageProvider},
    )
    preview = InvoicePreview(
        customer_id="CUS-00001",
        customer_name="Northwind Dental",
        breakdown=breakdown,
        has_billing_identity=True,
        include_in_batch=True,
    )

    items = build_line_items(
        preview, BillingPeriod(start=date(2025, 1, 1), end=date(2025, 1, 31)), "cad"
    )

    assert breakdown.sms_cost == Decimal("0.01")
    assert breakdown.voice_cost == Decimal("0.01")
    assert breakdown.subtotal == Decimal("0.02")
    assert breakdown.total == Decimal("0.03")
    assert [item.amount_cents for item in items] == [1, 1, 1]
    assert sum(item.amount_cents for item in items) == to_minor_units(breakdown.total)
