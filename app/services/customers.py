from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from app.clients.backend import BackendClient
from app.schemas.customer import Customer, CustomerCreate, CustomerUpdate
from app.services.exceptions import (
    ConflictError,
    DownstreamServiceError,
    NotFoundError,
    ServiceError,
)
from app.services.mock_store import CustomerRepository, get_mock_store

logger = logging.getLogger(__name__)

TABLE = "billing_customers"

# Backend column name -> model field name, where they differ.
_COLUMN_ALIASES = {"customer_name": "name", "customer_email": "email"}
_FIELD_COLUMNS = {field: column for column, field in _COLUMN_ALIASES.items()}


def customer_from_row(row: Mapping[str, Any]) -> Customer:
    data = {_COLUMN_ALIASES.get(key, key): value for key, value in row.items()}
    data["retell_agent_ids"] = data.get("retell_agent_ids") or []
    data["twilio_phone_numbers"] = data.get("twilio_phone_numbers") or []
    return Customer.model_validate(data)


def customer_to_row(fields: Mapping[str, Any]) -> Dict[str, Any]:
    row: Dict[str, Any] = {}
    for key, value in fields.items():
        row[_FIELD_COLUMNS.get(key, key)] = str(value) if isinstance(value, Decimal) else value
    return row


class CustomerService:
    """Customer directory: admin CRUD plus lookups used by invoicing."""

    def __init__(
        self,
        client: BackendClient,
        *,
        repository: CustomerRepository | None = None,
        default_markup_percentage: Decimal = Decimal("0"),
    ) -> None:
        self._client = client
        self._repository = repository
        self._default_markup = default_markup_percentage
        if self._client.use_mock_data:
            self._repository = repository or get_mock_store().customers

    def _mock(self) -> CustomerRepository:
        if not self._repository:
            raise RuntimeError("Mock customer repository not configured")
        return self._repository

    async def list(self, search: Optional[str] = None) -> List[Customer]:
        logger.debug("Listing customers (search=%r)", search)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            customers = await self._mock().list()
        else:
            rows = await self._client.select(TABLE, order="customer_name.asc")
            customers = [customer_from_row(row) for row in rows]

        if search:
            needle = search.strip().lower()
            customers = [
                customer
                for customer in customers
                if needle in customer.name.lower() or needle in customer.email.lower()
            ]
        return sorted(customers, key=lambda customer: customer.name.lower())

    async def get(self, customer_id: str) -> Customer:
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            customer = await self._mock().get(customer_id)
        else:
            rows = await self._client.select(TABLE, filters={"id": f"eq.{customer_id}"})
            customer = customer_from_row(rows[0]) if rows else None
        if customer is None:
            raise NotFoundError(f"Customer {customer_id} not found")
        return customer

    async def create(self, request: CustomerCreate) -> Customer:
        fields = request.model_dump()
        if fields["markup_percentage"] is None:
            fields["markup_percentage"] = self._default_markup
        logger.info("Creating customer %s", request.name)

        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock().create(fields)

        try:
            row = await self._client.insert(TABLE, customer_to_row(fields))
            return customer_from_row(row)
        except ServiceError:
            raise
        except Exception as exc:  # pragma: no cover
            logger.exception("Unexpected error while creating customer")
            raise ServiceError("Failed to create customer", cause=exc)

    async def update(self, customer_id: str, request: CustomerUpdate) -> Customer:
        return await self._write(customer_id, request.model_dump(exclude_unset=True))

    async def set_billing_identity(self, customer_id: str, stripe_customer_id: str) -> Customer:
        logger.info("Recording invoicing customer %s for %s", stripe_customer_id, customer_id)
        return await self._write(customer_id, {"stripe_customer_id": stripe_customer_id})

    async def _write(self, customer_id: str, fields: Dict[str, Any]) -> Customer:
        if not fields:
            return await self.get(customer_id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            return await self._mock().update(customer_id, fields)

        row = await self._client.update(TABLE, customer_id, customer_to_row(fields))
        if row is None:
            raise NotFoundError(f"Customer {customer_id} not found")
        return customer_from_row(row)

    async def delete(self, customer_id: str) -> None:
        """Delete a customer; refused while any invoice record references it."""

        logger.info("Deleting customer %s", customer_id)
        if self._client.use_mock_data:
            await self._client.simulate_latency()
            if not await self._mock().delete(customer_id):
                raise NotFoundError(f"Customer {customer_id} not found")
            return

        try:
            await self._client.remove(TABLE, customer_id)
        except DownstreamServiceError as exc:
            if exc.status_code == 409:
                raise ConflictError(
                    f"Customer {customer_id} has invoices and cannot be deleted", cause=exc
                ) from exc
            raise
