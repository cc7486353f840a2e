from __future__ import annotations

import csv
import io
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from app.clients.backend import BackendClient
from app.schemas.billing import InvoiceRecord, InvoiceStatus, LedgerSummary
from app.schemas.usage import BillingPeriod
from app.services.exceptions import InvalidTransitionError, NotFoundError, ServiceError
from app.services.invoicing import InvoicingProvider
from app.services.mock_store import InvoiceRecordRepository, get_mock_store

logger = logging.getLogger(__name__)

TABLE = "invoice_records"

ALLOWED_TRANSITIONS: Dict[InvoiceStatus, frozenset] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SENT, InvoiceStatus.CANCELLED}),
    InvoiceStatus.SENT: frozenset(
        {InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED}
    ),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
}

CSV_COLUMNS = [
    "Invoice Number",
    "Created Date",
    "Billing Period Start",
    "Billing Period End",
    "Customer Name",
    "Customer Email",
    "Total Chats",
    "Total Calls",
    "SMS Segments",
    "Call Minutes",
    "SMS Cost",
    "Voice Cost",
    "Conversational AI Cost",
    "Subtotal",
    "Markup",
    "Total",
    "Status",
    "Sent Date",
    "Paid Date",
]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def record_to_row(record: InvoiceRecord | Mapping[str, Any]) -> Dict[str, Any]:
    if isinstance(record, InvoiceRecord):
        return record.model_dump(mode="json", exclude_none=True)
    return {key: _jsonable(value) for key, value in record.items()}


class InvoiceLedgerService:
    """Persisted invoice records and their forward-only status lifecycle."""

    def __init__(
        self,
        client: BackendClient,
        *,
        repository: InvoiceRecordRepository | None = None,
        provider: InvoicingProvider | None = None,
    ) -> None:
        self._client = client
        self._repository = repository
        self._provider = provider
        if self._client.use_mock_data:
            self._repository = repository or get_mock_store().invoices

    def _mock(self) -> InvoiceRecordRepository:
        if not self._repository:
            raise RuntimeError("Mock invoice repository not configured")
        return self._repository

    async def insert(self, record: InvoiceRecord) -> InvoiceRecord:
        logger.debug("Recording invoice %s for customer %s", record.provider_invoice_id, record.customer_id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock().insert(record)

        try:
            row = await self._client.insert(TABLE, record_to_row(record))
            return InvoiceRecord.model_validate(row)
        except ServiceError:
            raise
        except Exception as exc:  # pragma: no cover
            logger.exception("Unexpected error while recording invoice")
            raise ServiceError("Failed to record invoice", cause=exc)

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> InvoiceRecord:
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock().update(record_id, fields)

        row = await self._client.update(TABLE, record_id, record_to_row(fields))
        if row is None:
            raise NotFoundError(f"Invoice record {record_id} not found")
        return InvoiceRecord.model_validate(row)

    async def get(self, record_id: str) -> InvoiceRecord:
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            record = await self._mock().get(record_id)
        else:
            rows = await self._client.select(TABLE, filters={"id": f"eq.{record_id}"})
            record = InvoiceRecord.model_validate(rows[0]) if rows else None
        if record is None:
            raise NotFoundError(f"Invoice record {record_id} not found")
        return record

    async def list(
        self,
        *,
        status: Optional[InvoiceStatus] = None,
        search: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> List[InvoiceRecord]:
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            records = await self._mock().list(customer_id)
        else:
            filters = {"customer_id": f"eq.{customer_id}"} if customer_id else None
            rows = await self._client.select(TABLE, filters=filters, order="created_at.desc")
            records = [InvoiceRecord.model_validate(row) for row in rows]

        if status is not None:
            records = [record for record in records if record.status == status]
        if search:
            needle = search.strip().lower()
            records = [
                record
                for record in records
                if needle in (record.customer_name or "").lower()
                or needle in (record.invoice_number or "").lower()
            ]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(records, key=lambda record: record.created_at or epoch, reverse=True)

    async def records_for_period(self, customer_id: str, period: BillingPeriod) -> List[InvoiceRecord]:
        return [
            record
            for record in await self.list(customer_id=customer_id)
            if record.billing_period_start == period.start and record.billing_period_end == period.end
        ]

    async def _transition(
        self, record: InvoiceRecord, target: InvoiceStatus, fields: Dict[str, Any]
    ) -> InvoiceRecord:
        if target not in ALLOWED_TRANSITIONS[record.status]:
            raise InvalidTransitionError(
                f"Invoice {record.id} cannot move from {record.status.value} to {target.value}"
            )
        logger.info("Invoice %s: %s -> %s", record.id, record.status.value, target.value)
        return await self.update(str(record.id), {"status": target, **fields})

    async def mark_sent(self, record_id: str) -> InvoiceRecord:
        record = await self.get(record_id)
        if record.status != InvoiceStatus.DRAFT:
            raise InvalidTransitionError(f"Invoice {record_id} is not a draft")
        now = _utc_now()
        fields: Dict[str, Any] = {"sent_at": now}
        if record.provider_invoice_id and self._provider is not None:
            if record.finalized_at is None:
                await self._provider.finalize_invoice(record.provider_invoice_id)
                fields["finalized_at"] = now
            await self._provider.send_invoice(record.provider_invoice_id)
        return await self._transition(record, InvoiceStatus.SENT, fields)

    async def mark_paid(
        self,
        record_id: str,
        *,
        paid_at: Optional[datetime] = None,
        record_at_provider: bool = False,
    ) -> InvoiceRecord:
        record = await self.get(record_id)
        if InvoiceStatus.PAID not in ALLOWED_TRANSITIONS[record.status]:
            raise InvalidTransitionError(
                f"Invoice {record_id} cannot be marked paid from {record.status.value}"
            )
        if record_at_provider and record.provider_invoice_id and self._provider is not None:
            await self._provider.mark_paid(record.provider_invoice_id)
        return await self._transition(record, InvoiceStatus.PAID, {"paid_at": paid_at or _utc_now()})

    async def mark_overdue(self, record_id: str) -> InvoiceRecord:
        record = await self.get(record_id)
        return await self._transition(record, InvoiceStatus.OVERDUE, {})

    async def cancel(self, record_id: str) -> InvoiceRecord:
        record = await self.get(record_id)
        if InvoiceStatus.CANCELLED not in ALLOWED_TRANSITIONS[record.status]:
            raise InvalidTransitionError(
                f"Invoice {record_id} cannot be cancelled from {record.status.value}"
            )
        if record.provider_invoice_id and record.finalized_at and self._provider is not None:
            await self._provider.void_invoice(record.provider_invoice_id)
        return await self._transition(record, InvoiceStatus.CANCELLED, {})

    async def summary(self) -> LedgerSummary:
        records = await self.list()
        counts = {status: 0 for status in InvoiceStatus}
        invoiced = paid = outstanding = Decimal("0")
        for record in records:
            counts[record.status] += 1
            if record.status == InvoiceStatus.CANCELLED:
                continue
            invoiced += record.total_amount
            if record.status == InvoiceStatus.PAID:
                paid += record.total_amount
            elif record.status in (InvoiceStatus.SENT, InvoiceStatus.OVERDUE):
                outstanding += record.total_amount
        return LedgerSummary(
            counts=counts,
            total_invoiced=invoiced,
            total_paid=paid,
            total_outstanding=outstanding,
        )


def _date(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    return value.isoformat()


def export_csv(records: Iterable[InvoiceRecord]) -> str:
    """Render ledger records with the fixed export column set."""

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for record in records:
        writer.writerow(
            [
                record.invoice_number or "",
                _date(record.created_at),
                _date(record.billing_period_start),
                _date(record.billing_period_end),
                record.customer_name or "",
                record.customer_email or "",
                record.total_chats,
                record.total_calls,
                record.total_sms_segments,
                record.total_call_minutes,
                record.sms_cost,
                record.voice_cost,
                record.conversational_ai_cost,
                record.subtotal,
                record.markup_amount,
                record.total_amount,
                record.status.value,
                _date(record.sent_at),
                _date(record.paid_at),
            ]
        )
    return buffer.getvalue()
