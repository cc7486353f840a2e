from typing import Optional

from fastapi import APIRouter, Depends

from app.dependencies.services import (
    get_billing_context,
    get_generation_orchestrator,
    get_preview_builder,
    get_wizard_registry,
)
from app.schemas.billing import InvoiceOptions
from app.schemas.wizard import PeriodRequest, SelectionRequest, WizardStartRequest, WizardState
from app.services import BatchPreviewBuilder, InvoiceGenerationOrchestrator
from app.services.context import BillingContext
from app.services.exceptions import ServiceError, ValidationFailure
from app.services.wizard import WizardRegistry, make_period
from app.tools.errors import http_error

router = APIRouter()


@router.post("", response_model=WizardState, status_code=201)
async def start_wizard(
    req: Optional[WizardStartRequest] = None,
    registry: WizardRegistry = Depends(get_wizard_registry),
    previews: BatchPreviewBuilder = Depends(get_preview_builder),
    orchestrator: InvoiceGenerationOrchestrator = Depends(get_generation_orchestrator),
    context: BillingContext = Depends(get_billing_context),
):
    try:
        period = None
        if req is not None and req.period is not None:
            period = make_period(req.period.start, req.period.end)
        wizard = registry.create(
            previews=previews,
            orchestrator=orchestrator,
            context=context,
            period=period,
        )
    except ServiceError as exc:
        raise http_error(exc) from exc
    return wizard.state


@router.get("/{wizard_id}", response_model=WizardState)
async def get_wizard(
    wizard_id: str,
    registry: WizardRegistry = Depends(get_wizard_registry),
):
    try:
        return registry.get(wizard_id).state
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{wizard_id}/period", response_model=WizardState)
async def set_period(
    wizard_id: str,
    req: PeriodRequest,
    registry: WizardRegistry = Depends(get_wizard_registry),
):
    try:
        return registry.get(wizard_id).set_period(req.start, req.end)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{wizard_id}/preview", response_model=WizardState)
async def calculate_previews(
    wizard_id: str,
    registry: WizardRegistry = Depends(get_wizard_registry),
):
    try:
        return await registry.get(wizard_id).calculate_previews()
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{wizard_id}/selection", response_model=WizardState)
async def update_selection(
    wizard_id: str,
    req: SelectionRequest,
    registry: WizardRegistry = Depends(get_wizard_registry),
):
    try:
        wizard = registry.get(wizard_id)
        if req.select_all is not None:
            everyone = [preview.customer_id for preview in wizard.state.previews]
            return wizard.select(everyone if req.select_all else [])
        if req.customer_ids is not None:
            return wizard.select(req.customer_ids)
        raise ValidationFailure("Provide customer_ids or select_all")
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{wizard_id}/selection/{customer_id}/toggle", response_model=WizardState)
async def toggle_customer(
    wizard_id: str,
    customer_id: str,
    registry: WizardRegistry = Depends(get_wizard_registry),
):
    try:
        return registry.get(wizard_id).toggle(customer_id)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{wizard_id}/options", response_model=WizardState)
async def configure_options(
    wizard_id: str,
    req: Optional[InvoiceOptions] = None,
    registry: WizardRegistry = Depends(get_wizard_registry),
):
    try:
        return registry.get(wizard_id).configure(req)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{wizard_id}/back", response_model=WizardState)
async def go_back(
    wizard_id: str,
    registry: WizardRegistry = Depends(get_wizard_registry),
):
    try:
        return registry.get(wizard_id).back()
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{wizard_id}/process", response_model=WizardState)
async def process_batch(
    wizard_id: str,
    wait: bool = False,
    registry: WizardRegistry = Depends(get_wizard_registry),
):
    """Start generation; poll ``GET /{wizard_id}`` for progress unless ``wait`` is set."""

    try:
        wizard = registry.get(wizard_id)
        wizard.start_processing()
        if wait:
            await wizard.wait()
        return wizard.state
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{wizard_id}/cancel", response_model=WizardState)
async def cancel_batch(
    wizard_id: str,
    registry: WizardRegistry = Depends(get_wizard_registry),
):
    try:
        return registry.get(wizard_id).cancel()
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.delete("/{wizard_id}", status_code=204)
async def discard_wizard(
    wizard_id: str,
    registry: WizardRegistry = Depends(get_wizard_registry),
):
    try:
        registry.discard(wizard_id)
    except ServiceError as exc:
        raise http_error(exc) from exc
