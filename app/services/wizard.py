from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import date
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from app.schemas.billing import InvoiceOptions, InvoicePreview
from app.schemas.usage import BillingPeriod
from app.schemas.wizard import BatchSummary, Progress, WizardState, WizardStep
from app.services.context import BillingContext
from app.services.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailure,
)
from app.services.generation import CancellationToken, InvoiceGenerationOrchestrator
from app.services.periods import previous_month_range
from app.services.previews import BatchPreviewBuilder

logger = logging.getLogger(__name__)

_BACK_STEPS = {
    WizardStep.PREVIEW_CALCULATION: WizardStep.DATE_RANGE_SELECTION,
    WizardStep.OPTIONS_CONFIGURATION: WizardStep.PREVIEW_CALCULATION,
}


def make_period(start: date, end: date) -> BillingPeriod:
    try:
        return BillingPeriod(start=start, end=end)
    except ValidationError as exc:
        raise ValidationFailure("End date must be on or after start date", cause=exc) from exc


class InvoiceGenerationWizard:
    """Step machine for one generation run.

    DateRangeSelection -> PreviewCalculation -> OptionsConfiguration ->
    Processing -> Results. ``back`` only works from the preview and options
    steps; once processing starts, provider side effects cannot be undone.
    """

    def __init__(
        self,
        wizard_id: str,
        *,
        previews: BatchPreviewBuilder,
        orchestrator: InvoiceGenerationOrchestrator,
        context: BillingContext,
        period: Optional[BillingPeriod] = None,
    ) -> None:
        self._previews = previews
        self._orchestrator = orchestrator
        self._context = context
        self._cancel = CancellationToken()
        self._task: Optional[asyncio.Task] = None
        start, end = previous_month_range()
        self.state = WizardState(
            id=wizard_id,
            step=WizardStep.DATE_RANGE_SELECTION,
            period=period or BillingPeriod(start=start, end=end),
            options=InvoiceOptions(due_in_days=context.settings.default_due_in_days),
        )

    def _require(self, *steps: WizardStep) -> None:
        if self.state.step not in steps:
            raise InvalidTransitionError(
                f"Operation not allowed in step {self.state.step.value}"
            )

    def set_period(self, start: date, end: date) -> WizardState:
        self._require(WizardStep.DATE_RANGE_SELECTION)
        self.state.period = make_period(start, end)
        return self.state

    async def calculate_previews(self) -> WizardState:
        self._require(WizardStep.DATE_RANGE_SELECTION)
        previews = await self._previews.build_for_directory(self.state.period, self._context)
        self.state.previews = previews
        self.state.selected_customer_ids = [p.customer_id for p in previews if p.include_in_batch]
        self.state.step = WizardStep.PREVIEW_CALCULATION
        return self.state

    def select(self, customer_ids: Iterable[str]) -> WizardState:
        self._require(WizardStep.PREVIEW_CALCULATION)
        known = {preview.customer_id for preview in self.state.previews}
        wanted = set(customer_ids)
        unknown = wanted - known
        if unknown:
            raise ValidationFailure(f"Unknown customers: {', '.join(sorted(unknown))}")
        self._apply_selection(wanted)
        return self.state

    def toggle(self, customer_id: str) -> WizardState:
        selected = set(self.state.selected_customer_ids)
        selected ^= {customer_id}
        return self.select(selected)

    def toggle_all(self) -> WizardState:
        self._require(WizardStep.PREVIEW_CALCULATION)
        if len(self.state.selected_customer_ids) == len(self.state.previews):
            self._apply_selection(set())
        else:
            self._apply_selection({preview.customer_id for preview in self.state.previews})
        return self.state

    def _apply_selection(self, selected: set) -> None:
        self.state.previews = [
            preview.model_copy(update={"include_in_batch": preview.customer_id in selected})
            for preview in self.state.previews
        ]
        self.state.selected_customer_ids = [
            preview.customer_id for preview in self.state.previews if preview.include_in_batch
        ]

    def configure(self, options: Optional[InvoiceOptions] = None) -> WizardState:
        self._require(WizardStep.PREVIEW_CALCULATION, WizardStep.OPTIONS_CONFIGURATION)
        if not self.state.selected_customer_ids:
            raise ValidationFailure("Select at least one customer")
        if options is not None:
            self.state.options = options
        self.state.step = WizardStep.OPTIONS_CONFIGURATION
        return self.state

    def back(self) -> WizardState:
        previous = _BACK_STEPS.get(self.state.step)
        if previous is None:
            raise InvalidTransitionError(f"Cannot go back from {self.state.step.value}")
        self.state.step = previous
        return self.state

    def cancel(self) -> WizardState:
        self._require(WizardStep.PROCESSING)
        self._cancel.cancel()
        self.state.cancel_requested = True
        return self.state

    def selected_previews(self) -> List[InvoicePreview]:
        return [preview for preview in self.state.previews if preview.include_in_batch]

    def start_processing(self) -> WizardState:
        """Run the batch in the background so progress can be polled."""

        selected = self._begin_processing()
        self._task = asyncio.create_task(self._run(selected))
        self._task.add_done_callback(self._on_task_done)
        return self.state

    async def wait(self) -> WizardState:
        if self._task is not None:
            await asyncio.wait({self._task})
            self._on_task_done(self._task)
        return self.state

    @property
    def finished(self) -> bool:
        return self.state.step is WizardStep.RESULTS

    def _on_task_done(self, task: asyncio.Task) -> None:
        if self.state.step is not WizardStep.PROCESSING:
            return
        if task.cancelled():
            message = "Processing was interrupted"
            logger.error("Batch %s interrupted", self.state.id)
        else:
            exc = task.exception()
            if exc is None:
                return
            message = str(exc) or exc.__class__.__name__
            logger.error("Batch %s aborted", self.state.id, exc_info=exc)
        self.state.error = message
        self.state.summary = BatchSummary.from_results(self.state.results)
        self.state.step = WizardStep.RESULTS

    def _begin_processing(self) -> List[InvoicePreview]:
        self._require(WizardStep.OPTIONS_CONFIGURATION)
        selected = self.selected_previews()
        if not selected:
            raise ValidationFailure("Select at least one customer")
        self.state.step = WizardStep.PROCESSING
        self.state.results = []
        self.state.progress = Progress(current=0, total=len(selected))
        return selected

    async def process(self) -> WizardState:
        self.start_processing()
        return await self.wait()

    async def _run(self, selected: List[InvoicePreview]) -> WizardState:
        async for result in self._orchestrator.run(
            selected,
            self.state.period,
            self.state.options,
            self._context,
            cancel=self._cancel,
        ):
            self.state.results.append(result)
            self.state.progress = Progress(
                current=len(self.state.results), total=len(selected)
            )

        self.state.summary = BatchSummary.from_results(self.state.results)
        self.state.step = WizardStep.RESULTS
        logger.info(
            "Batch %s finished: %s succeeded, %s failed",
            self.state.id,
            self.state.summary.succeeded,
            self.state.summary.failed,
        )
        return self.state


class WizardRegistry:
    """In-process registry of generation runs, addressed by id.

    Holds at most ``max_wizards`` runs. When full, the oldest finished runs
    are dropped first, then the oldest ones that never started processing.
    Runs that are still processing are never evicted.
    """

    def __init__(self, max_wizards: int = 100) -> None:
        self._counter = itertools.count(1)
        self._wizards: Dict[str, InvoiceGenerationWizard] = {}
        self.max_wizards = max_wizards

    def _evict(self) -> None:
        for keep_unstarted in (True, False):
            for wizard_id, wizard in list(self._wizards.items()):
                if len(self._wizards) < self.max_wizards:
                    return
                step = wizard.state.step
                if step is WizardStep.PROCESSING or (keep_unstarted and not wizard.finished):
                    continue
                logger.info("Evicting wizard %s (%s)", wizard_id, step.value)
                del self._wizards[wizard_id]
        if len(self._wizards) >= self.max_wizards:
            raise ConflictError(
                f"{len(self._wizards)} invoice runs are still processing; try again later"
            )

    def create(
        self,
        *,
        previews: BatchPreviewBuilder,
        orchestrator: InvoiceGenerationOrchestrator,
        context: BillingContext,
        period: Optional[BillingPeriod] = None,
    ) -> InvoiceGenerationWizard:
        self._evict()
        wizard_id = f"WIZ-{next(self._counter):05d}"
        wizard = InvoiceGenerationWizard(
            wizard_id,
            previews=previews,
            orchestrator=orchestrator,
            context=context,
            period=period,
        )
        self._wizards[wizard_id] = wizard
        return wizard

    def get(self, wizard_id: str) -> InvoiceGenerationWizard:
        wizard = self._wizards.get(wizard_id)
        if wizard is None:
            raise NotFoundError(f"Wizard {wizard_id} not found")
        return wizard

    def discard(self, wizard_id: str) -> None:
        if self.get(wizard_id).state.step is WizardStep.PROCESSING:
            raise InvalidTransitionError(f"Wizard {wizard_id} is still processing")
        del self._wizards[wizard_id]
