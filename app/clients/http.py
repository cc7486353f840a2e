from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from app.clients.retry import RetryPolicy, call_with_backoff
from app.services.exceptions import DownstreamServiceError

logger = logging.getLogger(__name__)


class ServiceClient:
    """Async HTTP client shared by every external collaborator.

    Subclasses set ``service_name`` and default headers; this class owns the
    connection, timeouts, error translation and retries.
    """

    service_name = "service"

    def __init__(
        self,
        base_url: str | None,
        *,
        timeout: float = 10.0,
        headers: Optional[Mapping[str, str]] = None,
        auth: Optional[httpx.Auth | tuple[str, str]] = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = str(base_url).rstrip("/") if base_url else None
        self._timeout = timeout
        self._headers: Dict[str, str] = {"Accept": "application/json"}
        if headers:
            self._headers.update(headers)
        self._auth = auth
        self._retry_policy = retry_policy or RetryPolicy()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers=self._headers,
            auth=self._auth,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self._base_url:
            raise RuntimeError(f"{self.service_name} base URL is not configured")
        if self._client is None:
            self._client = self._build_client()
        return self._client

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        json: Any = None,
        data: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        client = await self._ensure_client()

        async def _send() -> Any:
            try:
                response = await client.request(
                    method, path, params=params, json=json, data=data, headers=headers
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                logger.exception(
                    "%s returned error %s for %s %s",
                    self.service_name,
                    exc.response.status_code,
                    method,
                    path,
                )
                raise DownstreamServiceError(
                    f"{self.service_name} returned an error response: {_error_detail(exc.response)}",
                    status_code=exc.response.status_code,
                    cause=exc,
                ) from exc
            except httpx.RequestError as exc:
                logger.exception("Unable to reach %s: %s", self.service_name, exc)
                raise DownstreamServiceError(
                    f"Unable to reach {self.service_name}", status_code=None, cause=exc
                ) from exc
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

        return await call_with_backoff(
            _send, self._retry_policy, label=f"{self.service_name} {method} {path}"
        )

    async def get(self, path: str, params: Any = None, **kwargs: Any) -> Any:
        return await self.request("GET", path, params=params, **kwargs)

    async def post(self, path: str, payload: Any = None, **kwargs: Any) -> Any:
        return await self.request("POST", path, json=payload, **kwargs)

    async def patch(self, path: str, payload: Any = None, **kwargs: Any) -> Any:
        return await self.request("PATCH", path, json=payload, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", path, **kwargs)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or str(response.status_code)
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        for key in ("message", "detail", "error"):
            if body.get(key):
                return str(body[key])
    return str(body)
