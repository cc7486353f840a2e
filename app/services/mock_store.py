from __future__ import annotations

import itertools
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Set, Tuple

from app.schemas.billing import InvoiceRecord, LineItem, ProviderInvoice
from app.schemas.customer import Customer
from app.schemas.usage import BillingPeriod, ProviderUsage, UsageProvider
from app.schemas.user import BillingUser, LoginAttempt, UserRole
from app.services.exceptions import ConflictError, DownstreamServiceError, NotFoundError


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _BaseRepository:
    def __init__(self, prefix: str) -> None:
        self._prefix = prefix
        self._counter = itertools.count(1)

    def _next_id(self) -> str:
        return f"{self._prefix}-{next(self._counter):05d}"


class InvoiceRecordRepository(_BaseRepository):
    """Append-mostly invoice ledger."""

    def __init__(self) -> None:
        super().__init__("INVREC")
        self._records: Dict[str, InvoiceRecord] = {}

    async def insert(self, record: InvoiceRecord) -> InvoiceRecord:
        stored = record.model_copy(
            update={"id": self._next_id(), "created_at": record.created_at or _utc_now()}
        )
        self._records[stored.id] = stored
        return stored.model_copy()

    async def update(self, record_id: str, fields: Mapping[str, object]) -> InvoiceRecord:
        record = self._records.get(record_id)
        if record is None:
            raise NotFoundError(f"Invoice record {record_id} not found")
        updated = record.model_copy(update=dict(fields))
        self._records[record_id] = updated
        return updated.model_copy()

    async def get(self, record_id: str) -> Optional[InvoiceRecord]:
        record = self._records.get(record_id)
        return record.model_copy() if record is not None else None

    async def list(self, customer_id: Optional[str] = None) -> List[InvoiceRecord]:
        return [
            record.model_copy()
            for record in self._records.values()
            if customer_id is None or record.customer_id == customer_id
        ]

    async def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    def references(self, customer_id: str) -> bool:
        return any(record.customer_id == customer_id for record in self._records.values())


class CustomerRepository(_BaseRepository):
    def __init__(self, invoices: InvoiceRecordRepository, *, seed: bool = True) -> None:
        super().__init__("CUS")
        self._customers: Dict[str, Customer] = {}
        self._invoices = invoices
        if seed:
            self._seed_customers()

    def _seed_customers(self) -> None:
        for name, email, markup, agents, numbers, stripe_id in (
            ("Northwind Dental", "billing@northwind.example", Decimal("20"), ["agent_nw_1"], ["+15875550101"], "cus_seed_northwind"),
            ("Bayview Clinic", "accounts@bayview.example", Decimal("35"), ["agent_bv_1", "agent_bv_2"], ["+14035550177"], None),
            ("Maple Law Group", "finance@maplelaw.example", Decimal("0"), [], [], None),
        ):
            customer_id = self._next_id()
            now = _utc_now()
            self._customers[customer_id] = Customer(
                id=customer_id,
                name=name,
                email=email,
                markup_percentage=markup,
                retell_agent_ids=agents,
                twilio_phone_numbers=numbers,
                stripe_customer_id=stripe_id,
                created_at=now,
                updated_at=now,
            )

    async def list(self) -> List[Customer]:
        return [customer.model_copy() for customer in self._customers.values()]

    async def get(self, customer_id: str) -> Optional[Customer]:
        customer = self._customers.get(customer_id)
        return customer.model_copy() if customer is not None else None

    async def create(self, fields: Mapping[str, object]) -> Customer:
        now = _utc_now()
        customer = Customer(id=self._next_id(), created_at=now, updated_at=now, **fields)
        self._customers[customer.id] = customer
        return customer.model_copy()

    async def update(self, customer_id: str, fields: Mapping[str, object]) -> Customer:
        customer = self._customers.get(customer_id)
        if customer is None:
            raise NotFoundError(f"Customer {customer_id} not found")
        updated = customer.model_copy(update={**fields, "updated_at": _utc_now()})
        self._customers[customer_id] = updated
        return updated.model_copy()

    async def delete(self, customer_id: str) -> bool:
        if self._invoices.references(customer_id):
            raise ConflictError(
                f"Customer {customer_id} has invoices and cannot be deleted"
            )
        return self._customers.pop(customer_id, None) is not None


class UserRepository(_BaseRepository):
    """Billing admin users, unique by email."""

    def __init__(self, *, seed: bool = True) -> None:
        super().__init__("USR")
        self._users: Dict[str, BillingUser] = {}
        if seed:
            now = _utc_now()
            user_id = self._next_id()
            self._users[user_id] = BillingUser(
                id=user_id,
                email="admin@nexasync.example",
                full_name="Billing Administrator",
                role=UserRole.SUPER_ADMIN,
                created_at=now,
                updated_at=now,
            )

    async def list(self) -> List[BillingUser]:
        return [user.model_copy() for user in self._users.values()]

    async def get(self, user_id: str) -> Optional[BillingUser]:
        user = self._users.get(user_id)
        return user.model_copy() if user is not None else None

    async def find_by_email(self, email: str) -> Optional[BillingUser]:
        needle = email.strip().lower()
        for user in self._users.values():
            if user.email == needle:
                return user.model_copy()
        return None

    async def create(self, fields: Mapping[str, object]) -> BillingUser:
        if await self.find_by_email(str(fields["email"])) is not None:
            raise ConflictError(f"A user with email {fields['email']} already exists")
        now = _utc_now()
        user = BillingUser(id=self._next_id(), created_at=now, updated_at=now, **fields)
        self._users[user.id] = user
        return user.model_copy()

    async def update(self, user_id: str, fields: Mapping[str, object]) -> BillingUser:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        updated = user.model_copy(update={**fields, "updated_at": _utc_now()})
        self._users[user_id] = updated
        return updated.model_copy()

    async def delete(self, user_id: str) -> bool:
        return self._users.pop(user_id, None) is not None


class LoginHistoryRepository(_BaseRepository):
    def __init__(self) -> None:
        super().__init__("LOGIN")
        self._attempts: List[LoginAttempt] = []

    async def insert(self, fields: Mapping[str, object]) -> LoginAttempt:
        attempt = LoginAttempt(id=self._next_id(), created_at=_utc_now(), **fields)
        self._attempts.append(attempt)
        return attempt.model_copy()

    async def list(self, billing_user_id: Optional[str] = None) -> List[LoginAttempt]:
        return [
            attempt.model_copy()
            for attempt in self._attempts
            if billing_user_id is None or attempt.billing_user_id == billing_user_id
        ]


class MockUsageMeter:
    """Usage metering double keyed by customer and provider.

    Unknown customers report zero usage. Providers registered through
    ``fail`` raise a downstream error, and ``unconfigure`` simulates a
    provider without credentials.
    """

    def __init__(self) -> None:
        self._usage: Dict[str, Dict[UsageProvider, ProviderUsage]] = {}
        self._failures: Set[Tuple[Optional[str], UsageProvider]] = set()
        self._unconfigured: Set[UsageProvider] = set()
        self.queries: List[Tuple[str, UsageProvider, BillingPeriod]] = []

    def set_usage(self, customer_id: str, *usages: ProviderUsage) -> None:
        bucket = self._usage.setdefault(customer_id, {})
        for usage in usages:
            bucket[usage.provider] = usage

    def fail(self, provider: UsageProvider, customer_id: Optional[str] = None) -> None:
        self._failures.add((customer_id, provider))

    def unconfigure(self, provider: UsageProvider) -> None:
        self._unconfigured.add(provider)

    def is_configured(self, provider: UsageProvider) -> bool:
        return provider not in self._unconfigured

    async def query(
        self, provider: UsageProvider, customer: Customer, period: BillingPeriod
    ) -> ProviderUsage:
        self.queries.append((customer.id, provider, period))
        if (customer.id, provider) in self._failures or (None, provider) in self._failures:
            raise DownstreamServiceError(f"{provider.value} usage unavailable", status_code=503)
        usage = self._usage.get(customer.id, {}).get(provider)
        return usage.model_copy() if usage is not None else ProviderUsage(provider=provider)


class MockInvoicingProvider(_BaseRepository):
    """Records every call so ordering and counts can be inspected."""

    def __init__(self) -> None:
        super().__init__("in_mock")
        self._customer_counter = itertools.count(1)
        self.customers: Dict[str, Dict[str, object]] = {}
        self.invoices: Dict[str, Dict[str, object]] = {}
        self.calls: List[Tuple[str, str]] = []
        self._failures: Dict[str, Set[str]] = {}
        self._idempotency: Dict[str, str] = {}

    def fail(self, operation: str, customer_id: str) -> None:
        """Make ``operation`` fail.

        ``create_customer`` is keyed by customer name, every other operation by
        the provider-side customer id.
        """

        self._failures.setdefault(operation, set()).add(customer_id)

    def _check(self, operation: str, customer_id: str) -> None:
        if customer_id in self._failures.get(operation, set()):
            raise DownstreamServiceError(f"{operation} rejected by provider", status_code=402)

    def _invoice(self, invoice_id: str) -> Dict[str, object]:
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            raise DownstreamServiceError(f"No such invoice: {invoice_id}", status_code=404)
        return invoice

    async def create_customer(
        self,
        *,
        name: str,
        email: str,
        phone: str | None = None,
        address: str | None = None,
        metadata: Mapping[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        self.calls.append(("create_customer", name))
        self._check("create_customer", name)
        if idempotency_key and idempotency_key in self._idempotency:
            return self._idempotency[idempotency_key]
        customer_id = f"cus_mock_{next(self._customer_counter):04d}"
        self.customers[customer_id] = {"name": name, "email": email, "metadata": dict(metadata or {})}
        if idempotency_key:
            self._idempotency[idempotency_key] = customer_id
        return customer_id

    async def create_invoice(
        self,
        *,
        customer_id: str,
        line_items: List[LineItem],
        due_in_days: int,
        auto_advance: bool,
        metadata: Mapping[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> ProviderInvoice:
        self.calls.append(("create_invoice", customer_id))
        self._check("create_invoice", customer_id)
        if idempotency_key and idempotency_key in self._idempotency:
            return self._to_provider_invoice(self._idempotency[idempotency_key])
        invoice_id = self._next_id()
        self.invoices[invoice_id] = {
            "customer": customer_id,
            "number": f"MOCK-{len(self.invoices) + 1:04d}",
            "line_items": [item.model_copy() for item in line_items],
            "due_date": date.today() + timedelta(days=due_in_days),
            "auto_advance": auto_advance,
            "metadata": dict(metadata or {}),
            "status": "draft",
        }
        if idempotency_key:
            self._idempotency[idempotency_key] = invoice_id
        return self._to_provider_invoice(invoice_id)

    async def finalize_invoice(self, invoice_id: str) -> ProviderInvoice:
        invoice = self._invoice(invoice_id)
        self.calls.append(("finalize_invoice", invoice_id))
        self._check("finalize_invoice", str(invoice["customer"]))
        if invoice["status"] == "void":
            raise DownstreamServiceError(f"Invoice {invoice_id} is void", status_code=400)
        invoice["status"] = "open"
        return self._to_provider_invoice(invoice_id)

    async def send_invoice(self, invoice_id: str) -> ProviderInvoice:
        invoice = self._invoice(invoice_id)
        self.calls.append(("send_invoice", invoice_id))
        self._check("send_invoice", str(invoice["customer"]))
        if invoice["status"] != "open":
            raise DownstreamServiceError("Invoice must be finalized before sending", status_code=400)
        return self._to_provider_invoice(invoice_id)

    async def mark_paid(self, invoice_id: str) -> ProviderInvoice:
        invoice = self._invoice(invoice_id)
        self.calls.append(("mark_paid", invoice_id))
        invoice["status"] = "paid"
        return self._to_provider_invoice(invoice_id)

    async def void_invoice(self, invoice_id: str) -> ProviderInvoice:
        invoice = self._invoice(invoice_id)
        self.calls.append(("void_invoice", invoice_id))
        invoice["status"] = "void"
        return self._to_provider_invoice(invoice_id)

    def _to_provider_invoice(self, invoice_id: str) -> ProviderInvoice:
        invoice = self.invoices[invoice_id]
        return ProviderInvoice(
            id=invoice_id,
            number=str(invoice["number"]),
            hosted_url=f"https://invoice.mock/{invoice_id}",
            pdf_url=f"https://invoice.mock/{invoice_id}.pdf",
            due_date=invoice["due_date"],
            status=str(invoice["status"]),
        )


@dataclass
class MockDataStore:
    customers: CustomerRepository
    invoices: InvoiceRecordRepository
    usage: MockUsageMeter
    invoicing: MockInvoicingProvider
    users: UserRepository
    logins: LoginHistoryRepository


_mock_store: Optional[MockDataStore] = None


def get_mock_store() -> MockDataStore:
    global _mock_store
    if _mock_store is None:
        invoices = InvoiceRecordRepository()
        customers = CustomerRepository(invoices)
        _mock_store = MockDataStore(
            customers=customers,
            invoices=invoices,
            usage=_seed_usage(MockUsageMeter()),
            invoicing=MockInvoicingProvider(),
            users=UserRepository(),
            logins=LoginHistoryRepository(),
        )
    return _mock_store


def reset_mock_store() -> None:
    global _mock_store
    _mock_store = None


def _seed_usage(meter: MockUsageMeter) -> MockUsageMeter:
    meter.set_usage(
        "CUS-00001",
        ProviderUsage(provider=UsageProvider.SMS, count=412, units=Decimal("530"), cost=Decimal("5.57")),
        ProviderUsage(provider=UsageProvider.VOICE, count=96, units=Decimal("311.5"), cost=Decimal("13.09")),
        ProviderUsage(provider=UsageProvider.CONVERSATIONAL_AI, count=108, cost=Decimal("41.86")),
    )
    meter.set_usage(
        "CUS-00002",
        ProviderUsage(provider=UsageProvider.SMS, count=88, units=Decimal("120"), cost=Decimal("1.26")),
        ProviderUsage(provider=UsageProvider.CONVERSATIONAL_AI, count=37, cost=Decimal("14.30")),
    )
    return meter
