from typing import Optional

from fastapi import APIRouter, Depends, Response

from app.dependencies.services import get_invoice_ledger_service
from app.schemas.billing import (
    InvoiceListResponse,
    InvoicePaymentRequest,
    InvoiceRecord,
    InvoiceStatus,
    LedgerSummary,
)
from app.services import InvoiceLedgerService
from app.services.exceptions import ServiceError
from app.services.invoice import export_csv
from app.tools.errors import http_error

router = APIRouter()


@router.get("", response_model=InvoiceListResponse)
async def list_invoices(
    status: Optional[InvoiceStatus] = None,
    search: Optional[str] = None,
    customer_id: Optional[str] = None,
    service: InvoiceLedgerService = Depends(get_invoice_ledger_service),
):
    try:
        records = await service.list(status=status, search=search, customer_id=customer_id)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return InvoiceListResponse(total=len(records), items=records)


@router.get("/summary", response_model=LedgerSummary)
async def invoice_summary(
    service: InvoiceLedgerService = Depends(get_invoice_ledger_service),
):
    try:
        return await service.summary()
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.get("/export")
async def export_invoices(
    status: Optional[InvoiceStatus] = None,
    search: Optional[str] = None,
    service: InvoiceLedgerService = Depends(get_invoice_ledger_service),
):
    try:
        records = await service.list(status=status, search=search)
    except ServiceError as exc:
        raise http_error(exc) from exc
    return Response(
        content=export_csv(records),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="invoices.csv"'},
    )


@router.get("/{record_id}", response_model=InvoiceRecord)
async def get_invoice(
    record_id: str,
    service: InvoiceLedgerService = Depends(get_invoice_ledger_service),
):
    try:
        return await service.get(record_id)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{record_id}/mark-sent", response_model=InvoiceRecord)
async def mark_invoice_sent(
    record_id: str,
    service: InvoiceLedgerService = Depends(get_invoice_ledger_service),
):
    try:
        return await service.mark_sent(record_id)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{record_id}/mark-paid", response_model=InvoiceRecord)
async def mark_invoice_paid(
    record_id: str,
    req: Optional[InvoicePaymentRequest] = None,
    service: InvoiceLedgerService = Depends(get_invoice_ledger_service),
):
    req = req or InvoicePaymentRequest()
    try:
        return await service.mark_paid(
            record_id, paid_at=req.paid_at, record_at_provider=req.record_at_provider
        )
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{record_id}/mark-overdue", response_model=InvoiceRecord)
async def mark_invoice_overdue(
    record_id: str,
    service: InvoiceLedgerService = Depends(get_invoice_ledger_service),
):
    try:
        return await service.mark_overdue(record_id)
    except ServiceError as exc:
        raise http_error(exc) from exc


@router.post("/{record_id}/cancel", response_model=InvoiceRecord)
async def cancel_invoice(
    record_id: str,
    service: InvoiceLedgerService = Depends(get_invoice_ledger_service),
):
    try:
        return await service.cancel(record_id)
    except ServiceError as exc:
        raise http_error(exc) from exc
