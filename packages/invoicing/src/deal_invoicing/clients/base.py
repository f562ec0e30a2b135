"""Shared HTTP plumbing for the collaborator clients."""

import asyncio
from typing import Any

import httpx
import structlog

from deal_invoicing.errors import (
    CollaboratorError,
    NotFoundError,
    RateLimitError,
    TransientError,
)

logger = structlog.get_logger(__name__)


class BaseAPIClient:
    """Async JSON client with error mapping and transport retries.

    Subclasses set :attr:`source` and override :meth:`_get_headers` and
    :meth:`_get_params` for their authentication scheme.
    """

    source = "api"

    def __init__(self, base_url: str, timeout: float = 30.0, max_retries: int = 3):
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BaseAPIClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _get_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _get_params(self) -> dict[str, Any]:
        return {}

    def _on_response(self, response: httpx.Response) -> None:
        """Hook for subclasses that inspect every response."""

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        retry_count: int = 0,
    ) -> Any:
        """Make an API request, retrying transport failures.

        Raises:
            RateLimitError: on HTTP 429.
            TransientError: on 5xx, or when transport retries run out.
            NotFoundError: on HTTP 404.
            CollaboratorError: on any other 4xx.
        """
        client = await self._get_client()
        merged_params = {**self._get_params(), **(params or {})}
        merged_headers = {**self._get_headers(), **(headers or {})}

        try:
            response = await client.request(
                method=method,
                url=path,
                params=merged_params or None,
                json=json,
                headers=merged_headers,
            )
        except httpx.RequestError as e:
            if retry_count < self._max_retries:
                logger.debug(
                    "request_retry",
                    source=self.source,
                    path=path,
                    attempt=retry_count + 1,
                    error=str(e),
                )
                await asyncio.sleep(2**retry_count)  # Exponential backoff
                return await self._request(method, path, params, json, headers, retry_count + 1)
            raise TransientError(f"Request failed: {e}", source=self.source) from e

        self._on_response(response)

        if response.status_code == 429:
            retry_after = int(response.headers.get("Retry-After", "60"))
            raise RateLimitError(
                f"Rate limited, retry after {retry_after}s",
                status_code=429,
                details={"retry_after": retry_after},
                source=self.source,
            )

        if response.status_code >= 400:
            try:
                error_detail = response.json() if response.content else {}
            except ValueError:
                error_detail = {"raw": response.text[:500] if response.text else "empty response"}
            message = f"{self.source} API error: {response.status_code}"
            if response.status_code == 404:
                raise NotFoundError(message, 404, error_detail, self.source)
            if response.status_code >= 500:
                raise TransientError(message, response.status_code, error_detail, self.source)
            raise CollaboratorError(message, response.status_code, error_detail, self.source)

        return response.json() if response.content else {}
