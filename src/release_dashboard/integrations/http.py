"""Shared httpx plumbing for the REST integrations."""

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class IntegrationError(Exception):
    """Raised when an upstream API call fails."""

    service = "API"

    def __init__(self, status_code: int, detail: str, retry_after: float | None = None):
        self.status_code = status_code
        self.detail = detail
        self.retry_after = retry_after
        super().__init__(f"{self.service} error {status_code}: {detail}")


class ApiClient:
    """Lazily-created ``httpx.AsyncClient`` with error translation.

    Subclasses set ``error_class`` and may override ``_headers`` to add
    per-request auth.
    """

    error_class: type[IntegrationError] = IntegrationError

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._auth = auth
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
                auth=self._auth,
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request and raise ``error_class`` on transport or HTTP errors."""
        headers = {**await self._headers(), **kwargs.pop("headers", {})}
        logger.debug("%s %s", method, path[:80])
        try:
            response = await self._get_client().request(method, path, headers=headers, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            retry_after = e.response.headers.get("retry-after")
            raise self.error_class(
                e.response.status_code,
                e.response.text[:500],
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            ) from e
        except httpx.RequestError as e:
            raise self.error_class(0, f"Request failed: {e}") from e

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """Send a request and return the parsed JSON body."""
        response = await self._send(method, path, **kwargs)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise self.error_class(response.status_code, f"Invalid JSON: {e}") from e
