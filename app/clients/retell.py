from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from app.clients.http import ServiceClient
from app.clients.retry import RetryPolicy
from app.schemas.usage import BillingPeriod, ProviderUsage, UsageProvider
from app.services.money import HUNDRED, to_decimal

logger = logging.getLogger(__name__)

PAGE_LIMIT = 1000


class RetellUsageClient(ServiceClient):
    """Conversational AI usage (voice agents and chat agents) from Retell AI.

    Retell reports ``combined_cost`` in cents.
    """

    service_name = "Retell AI"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.retellai.com",
        timeout: float = 10.0,
        exchange_rate: Decimal = Decimal("1"),
        retry_policy: RetryPolicy | None = None,
        transport=None,
    ) -> None:
        super().__init__(
            base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key.strip()}",
                "Content-Type": "application/json",
            },
            retry_policy=retry_policy,
            transport=transport,
        )
        self._exchange_rate = exchange_rate

    async def usage(self, period: BillingPeriod, agent_ids: Iterable[str]) -> ProviderUsage:
        agents = list(agent_ids)
        if not agents:
            return ProviderUsage(provider=UsageProvider.CONVERSATIONAL_AI)

        calls, chats = await asyncio.gather(
            self.list_calls(period, agents),
            self.list_chats(period, agents),
        )
        cents = sum(
            (_combined_cost(call, "call_cost") for call in calls), Decimal("0")
        ) + sum((_combined_cost(chat, "chat_cost") for chat in chats), Decimal("0"))
        return ProviderUsage(
            provider=UsageProvider.CONVERSATIONAL_AI,
            count=len(calls) + len(chats),
            cost=cents / HUNDRED * self._exchange_rate,
        )

    async def list_calls(self, period: BillingPeriod, agent_ids: List[str]) -> List[Dict[str, Any]]:
        lower, upper = _window_ms(period)
        calls: List[Dict[str, Any]] = []
        pagination_key: Optional[str] = None
        while True:
            body: Dict[str, Any] = {
                "sort_order": "descending",
                "limit": PAGE_LIMIT,
                "filter_criteria": {
                    "agent_id": agent_ids,
                    "start_timestamp": {"lower_threshold": lower, "upper_threshold": upper},
                },
            }
            if pagination_key:
                body["pagination_key"] = pagination_key
            page = await self.post("/v2/list-calls", body) or []
            calls.extend(page)
            if len(page) < PAGE_LIMIT:
                return calls
            pagination_key = page[-1].get("call_id")
            if not pagination_key:
                return calls

    async def list_chats(self, period: BillingPeriod, agent_ids: List[str]) -> List[Dict[str, Any]]:
        lower, upper = _window_ms(period)
        pages = await asyncio.gather(
            *(
                self.get("/list-chat", params={"agent_id": agent_id, "limit": PAGE_LIMIT})
                for agent_id in agent_ids
            )
        )
        chats: List[Dict[str, Any]] = []
        for page in pages:
            for chat in page or []:
                started = chat.get("start_timestamp")
                # The chat listing has no server-side time filter.
                if started is not None and lower <= int(started) < upper:
                    chats.append(chat)
        return chats


def _window_ms(period: BillingPeriod) -> tuple[int, int]:
    return int(period.starts_at.timestamp() * 1000), int(period.ends_at.timestamp() * 1000)


def _combined_cost(record: Dict[str, Any], key: str) -> Decimal:
    cost = record.get(key) or {}
    return abs(to_decimal(cost.get("combined_cost")))
