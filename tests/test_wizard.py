import asyncio
import os
import sys
from datetime import date
from decimal import Decimal

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app.config import get_settings
from app.schemas.billing import InvoiceMode, InvoiceOptions, InvoiceResult
from app.schemas.wizard import WizardStep
from app.services.context import BillingContext
from app.services.costs import CostAggregator
from app.services.customers import CustomerService
from app.services.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailure,
)
from app.services.generation import CANCELLED_MESSAGE, InvoiceGenerationOrchestrator
from app.services.invoice import InvoiceLedgerService
from app.services.mock_store import get_mock_store, reset_mock_store
from app.services.periods import current_month_range, previous_month_range
from app.services.previews import BatchPreviewBuilder
from app.services.wizard import InvoiceGenerationWizard, WizardRegistry


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


def _wizard(registry: WizardRegistry | None = None, orchestrator=None) -> InvoiceGenerationWizard:
    store = get_mock_store()
    customers = CustomerService(MockLatencyClient())
    ledger = InvoiceLedgerService(MockLatencyClient(), provider=store.invoicing)
    registry = registry or WizardRegistry()
    return registry.create(
        previews=BatchPreviewBuilder(CostAggregator(store.usage, customers), customers),
        orchestrator=orchestrator or InvoiceGenerationOrchestrator(customers, ledger, store.invoicing),
        context=BillingContext(settings=get_settings(), user_id="admin-1"),
    )


def _at_preview() -> InvoiceGenerationWizard:
    wizard = _wizard()
    wizard.set_period(date(2025, 1, 1), date(2025, 1, 31))
    asyncio.run(wizard.calculate_previews())
    return wizard


def test_period_helpers() -> None:
    assert previous_month_range(date(2025, 3, 15)) == (date(2025, 2, 1), date(2025, 2, 28))
    assert previous_month_range(date(2025, 1, 5)) == (date(2024, 12, 1), date(2024, 12, 31))
    assert current_month_range(date(2025, 3, 15)) == (date(2025, 3, 1), date(2025, 3, 15))


def test_wizard_starts_on_previous_month() -> None:
    wizard = _wizard()

    assert wizard.state.step is WizardStep.DATE_RANGE_SELECTION
    start, end = previous_month_range()
    assert (wizard.state.period.start, wizard.state.period.end) == (start, end)
    assert wizard.state.options.due_in_days == get_settings().default_due_in_days


def test_period_end_before_start_is_rejected() -> None:
    wizard = _wizard()

    with pytest.raises(ValidationFailure):
        wizard.set_period(date(2025, 2, 1), date(2025, 1, 1))

    assert wizard.state.step is WizardStep.DATE_RANGE_SELECTION


def test_preview_calculation_auto_selects_billable_customers() -> None:
    wizard = _at_preview()

    assert wizard.state.step is WizardStep.PREVIEW_CALCULATION
    assert [preview.customer_id for preview in wizard.state.previews] == [
        "CUS-00002",
        "CUS-00003",
        "CUS-00001",
    ]
    assert wizard.state.selected_customer_ids == ["CUS-00002", "CUS-00001"]


def test_options_require_previews_first() -> None:
    wizard = _wizard()

    with pytest.raises(InvalidTransitionError):
        wizard.configure(InvoiceOptions())


def test_back_is_only_allowed_before_processing() -> None:
    wizard = _at_preview()
    wizard.configure(InvoiceOptions())

    assert wizard.back().step is WizardStep.PREVIEW_CALCULATION
    assert wizard.back().step is WizardStep.DATE_RANGE_SELECTION
    with pytest.raises(InvalidTransitionError):
        wizard.back()


def test_empty_selection_cannot_advance() -> None:
    wizard = _at_preview()
    wizard.select([])

    with pytest.raises(ValidationFailure):
        wizard.configure(InvoiceOptions())
    assert wizard.state.step is WizardStep.PREVIEW_CALCULATION


def test_select_unknown_customer_is_rejected() -> None:
    wizard = _at_preview()

    with pytest.raises(ValidationFailure):
        wizard.select(["CUS-99999"])


def test_toggle_and_toggle_all() -> None:
    wizard = _at_preview()

    wizard.toggle("CUS-00003")
    assert sorted(wizard.state.selected_customer_ids) == ["CUS-00001", "CUS-00002", "CUS-00003"]
    wizard.toggle("CUS-00002")
    assert wizard.state.selected_customer_ids == ["CUS-00003", "CUS-00001"]

    wizard.toggle_all()
    assert len(wizard.state.selected_customer_ids) == 3
    wizard.toggle_all()
    assert wizard.state.selected_customer_ids == []
    assert not any(preview.include_in_batch for preview in wizard.state.previews)


def test_full_run_reaches_results_with_summary() -> None:
    wizard = _at_preview()
    wizard.configure(InvoiceOptions(mode=InvoiceMode.DRAFT))

    state = asyncio.run(wizard.process())

    assert state.step is WizardStep.RESULTS
    assert state.progress.current == state.progress.total == 2
    assert [result.customer_id for result in state.results] == ["CUS-00002", "CUS-00001"]
    assert state.summary.succeeded == 2
    assert state.summary.failed == 0
    assert state.summary.total_invoiced == Decimal("93.63")

    with pytest.raises(InvalidTransitionError):
        wizard.back()
    with pytest.raises(InvalidTransitionError):
        asyncio.run(wizard.process())


def test_cancel_before_processing_marks_every_customer() -> None:
    wizard = _at_preview()
    wizard.configure(InvoiceOptions())

    async def _start_and_cancel():
        wizard.start_processing()
        assert wizard.state.step is WizardStep.PROCESSING
        wizard.cancel()
        return await wizard.wait()

    state = asyncio.run(_start_and_cancel())

    assert state.step is WizardStep.RESULTS
    assert state.cancel_requested
    assert [result.error for result in state.results] == [CANCELLED_MESSAGE, CANCELLED_MESSAGE]
    assert state.summary.failed == 2
    assert get_mock_store().invoicing.calls == []


def test_processing_cannot_start_twice() -> None:
    wizard = _at_preview()
    wizard.configure(InvoiceOptions())

    async def _start_twice():
        wizard.start_processing()
        with pytest.raises(InvalidTransitionError):
            wizard.start_processing()
        return await wizard.wait()

    state = asyncio.run(_start_twice())

    assert state.summary.succeeded == 2


def test_registry_lookup() -> None:
    registry = WizardRegistry()
    wizard = _wizard(registry)

    assert registry.get(wizard.state.id) is wizard
    registry.discard(wizard.state.id)
    with pytest.raises(NotFoundError):
        registry.get(wizard.state.id)
    with pytest.raises(NotFoundError):
        registry.discard(wizard.state.id)


def test_cancel_is_only_allowed_while_processing() -> None:
    wizard = _wizard()

    with pytest.raises(InvalidTransitionError):
        wizard.cancel()
    assert not wizard.state.cancel_requested

    wizard = _at_preview()
    wizard.configure(InvoiceOptions())
    asyncio.run(wizard.process())

    with pytest.raises(InvalidTransitionError):
        wizard.cancel()


class FailingOrchestrator:
    """Yields one result, then fails the way a lost database connection would."""

    async def run(self, previews, period, options, context, *, cancel=None):
        yield InvoiceResult(
            success=True,
            customer_id=previews[0].customer_id,
            customer_name=previews[0].customer_name,
            amount=Decimal("21.01"),
        )
        raise RuntimeError("ledger connection lost")


def test_background_failure_ends_in_results_with_error() -> None:
    wizard = _wizard(orchestrator=FailingOrchestrator())
    wizard.set_period(date(2025, 1, 1), date(2025, 1, 31))
    asyncio.run(wizard.calculate_previews())
    wizard.configure(InvoiceOptions())

    async def _start_and_wait():
        wizard.start_processing()
        return await wizard.wait()

    state = asyncio.run(_start_and_wait())

    assert state.step is WizardStep.RESULTS
    assert state.error == "ledger connection lost"
    assert state.summary.succeeded == 1
    assert len(state.results) == 1


def test_registry_evicts_finished_wizards_first() -> None:
    registry = WizardRegistry(max_wizards=2)
    finished = _wizard(registry)
    pending = _wizard(registry)
    finished.state.step = WizardStep.RESULTS

    newest = _wizard(registry)

    with pytest.raises(NotFoundError):
        registry.get(finished.state.id)
    assert registry.get(pending.state.id) is pending
    assert registry.get(newest.state.id) is newest


def test_registry_never_evicts_processing_wizards() -> None:
    registry = WizardRegistry(max_wizards=2)
    running = _wizard(registry)
    idle = _wizard(registry)
    running.state.step = WizardStep.PROCESSING

    _wizard(registry)

    assert registry.get(running.state.id) is running
    with pytest.raises(NotFoundError):
        registry.get(idle.state.id)

    for wizard_id in list(registry._wizards):
        registry.get(wizard_id).state.step = WizardStep.PROCESSING
    with pytest.raises(ConflictError):
        _wizard(registry)
    with pytest.raises(InvalidTransitionError):
        registry.discard(running.state.id)
