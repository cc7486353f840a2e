from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from app.clients.http import ServiceClient
from app.clients.retry import RetryPolicy

logger = logging.getLogger(__name__)


class BackendClient(ServiceClient):
    """Client for the managed database REST API (PostgREST dialect).

    When no endpoint is configured, or mock mode is requested, services fall
    back to the in-process mock store and this client never opens a
    connection.
    """

    service_name = "Billing backend"

    def __init__(
        self,
        base_url: str | None,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
        use_mock_data: bool = True,
        retry_policy: RetryPolicy | None = None,
        transport=None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        super().__init__(
            base_url,
            timeout=timeout,
            headers=headers,
            retry_policy=retry_policy,
            transport=transport,
        )
        self.use_mock_data = use_mock_data or not self._base_url

    async def select(
        self,
        table: str,
        *,
        filters: Optional[Dict[str, str]] = None,
        order: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, str] = {"select": "*"}
        if filters:
            params.update(filters)
        if order:
            params["order"] = order
        rows = await self.get(f"/rest/v1/{table}", params=params)
        return list(rows or [])

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self.post(
            f"/rest/v1/{table}",
            row,
            headers={"Prefer": "return=representation"},
        )
        return rows[0] if isinstance(rows, list) else rows

    async def update(self, table: str, row_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = await self.patch(
            f"/rest/v1/{table}",
            fields,
            params={"id": f"eq.{row_id}"},
            headers={"Prefer": "return=representation"},
        )
        if isinstance(rows, list):
            return rows[0] if rows else None
        return rows

    async def remove(self, table: str, row_id: str) -> None:
        await self.delete(f"/rest/v1/{table}", params={"id": f"eq.{row_id}"})

    async def simulate_latency(self) -> None:
        """Allow services to await for latency even when mocking responses."""

        await asyncio.sleep(0)
