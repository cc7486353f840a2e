from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from app.clients.http import ServiceClient
from app.clients.retry import RetryPolicy
from app.schemas.usage import BillingPeriod, ProviderUsage, UsageProvider
from app.services.money import to_decimal

logger = logging.getLogger(__name__)

API_VERSION = "2010-04-01"
PAGE_SIZE = 1000
SECONDS_PER_MINUTE = Decimal("60")
MINUTE_PRECISION = Decimal("0.01")


class TwilioUsageClient(ServiceClient):
    """Reads SMS and voice usage with actual prices from the Twilio REST API.

    Usage is attributed to a customer through its tracked phone numbers; each
    number is queried as both sender and recipient and records are
    de-duplicated by ``sid``.
    """

    service_name = "Twilio"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        *,
        base_url: str = "https://api.twilio.com",
        timeout: float = 10.0,
        exchange_rate: Decimal = Decimal("1"),
        retry_policy: RetryPolicy | None = None,
        transport=None,
    ) -> None:
        super().__init__(
            base_url,
            timeout=timeout,
            auth=(account_sid, auth_token),
            retry_policy=retry_policy,
            transport=transport,
        )
        self._account_sid = account_sid
        self._exchange_rate = exchange_rate

    def _resource(self, name: str) -> str:
        return f"/{API_VERSION}/Accounts/{self._account_sid}/{name}.json"

    async def sms_usage(self, period: BillingPeriod, phone_numbers: Iterable[str]) -> ProviderUsage:
        messages = await self._collect(
            "Messages",
            "messages",
            {"DateSent>": period.start.isoformat(), "DateSent<": period.end.isoformat()},
            phone_numbers,
        )
        segments = sum(int(message.get("num_segments") or 1) for message in messages)
        cost = sum((_price(message) for message in messages), Decimal("0"))
        return ProviderUsage(
            provider=UsageProvider.SMS,
            count=len(messages),
            units=Decimal(segments),
            cost=cost * self._exchange_rate,
        )

    async def voice_usage(self, period: BillingPeriod, phone_numbers: Iterable[str]) -> ProviderUsage:
        calls = await self._collect(
            "Calls",
            "calls",
            {"StartTime>": period.start.isoformat(), "StartTime<": period.end.isoformat()},
            phone_numbers,
        )
        seconds = sum(int(call.get("duration") or 0) for call in calls)
        cost = sum((_price(call) for call in calls), Decimal("0"))
        minutes = (Decimal(seconds) / SECONDS_PER_MINUTE).quantize(MINUTE_PRECISION)
        return ProviderUsage(
            provider=UsageProvider.VOICE,
            count=len(calls),
            units=minutes,
            cost=cost * self._exchange_rate,
        )

    async def _collect(
        self,
        resource: str,
        key: str,
        date_filters: Dict[str, str],
        phone_numbers: Iterable[str],
    ) -> List[Dict[str, Any]]:
        numbers = list(phone_numbers)
        if not numbers:
            return []
        queries = [
            {**date_filters, direction: number}
            for number in numbers
            for direction in ("From", "To")
        ]
        pages = await asyncio.gather(
            *(self._list_all(self._resource(resource), key, query) for query in queries)
        )
        unique: Dict[str, Dict[str, Any]] = {}
        for records in pages:
            for record in records:
                unique.setdefault(str(record.get("sid")), record)
        return list(unique.values())

    async def _list_all(self, path: str, key: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        next_path: Optional[str] = path
        query: Optional[Dict[str, Any]] = {**params, "PageSize": PAGE_SIZE}
        while next_path:
            data = await self.get(next_path, params=query) or {}
            records.extend(data.get(key) or [])
            # next_page_uri already carries the query string.
            next_path = data.get("next_page_uri")
            query = None
        return records


def _price(record: Dict[str, Any]) -> Decimal:
    # Twilio reports charges as negative amounts; unpriced records are null.
    return abs(to_decimal(record.get("price")))
