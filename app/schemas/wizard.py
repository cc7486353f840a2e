from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from app.schemas.billing import InvoiceOptions, InvoicePreview, InvoiceResult
from app.schemas.usage import BillingPeriod


class WizardStep(str, Enum):
    DATE_RANGE_SELECTION = "date_range_selection"
    PREVIEW_CALCULATION = "preview_calculation"
    OPTIONS_CONFIGURATION = "options_configuration"
    PROCESSING = "processing"
    RESULTS = "results"


class Progress(BaseModel):
    current: int = 0
    total: int = 0


class BatchSummary(BaseModel):
    succeeded: int = 0
    failed: int = 0
    total_invoiced: Decimal = Decimal("0")

    @classmethod
    def from_results(cls, results: List[InvoiceResult]) -> "BatchSummary":
        succeeded = [result for result in results if result.success]
        return cls(
            succeeded=len(succeeded),
            failed=len(results) - len(succeeded),
            total_invoiced=sum(
                (result.amount or Decimal("0") for result in succeeded), Decimal("0")
            ),
        )


class WizardState(BaseModel):
    """Snapshot of a generation run as shown to the admin UI."""

    id: str
    step: WizardStep
    period: BillingPeriod
    previews: List[InvoicePreview] = Field(default_factory=list)
    selected_customer_ids: List[str] = Field(default_factory=list)
    options: InvoiceOptions
    progress: Progress = Field(default_factory=Progress)
    results: List[InvoiceResult] = Field(default_factory=list)
    summary: Optional[BatchSummary] = None
    cancel_requested: bool = False
    error: Optional[str] = None


class PeriodRequest(BaseModel):
    start: date
    end: date


class WizardStartRequest(BaseModel):
    period: Optional[PeriodRequest] = None


class SelectionRequest(BaseModel):
    customer_ids: Optional[List[str]] = None
    select_all: Optional[bool] = None
