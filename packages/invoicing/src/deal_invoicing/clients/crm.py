"""CRM client for a Pipedrive-style v1 REST API."""

from datetime import date
from typing import Any

import httpx
import structlog

from deal_invoicing.cache import RateLimitStats
from deal_invoicing.clients.base import BaseAPIClient
from deal_invoicing.config import get_settings
from deal_invoicing.errors import CollaboratorError, NotFoundError

logger = structlog.get_logger(__name__)

PAGE_SIZE = 500


class CRMClient(BaseAPIClient):
    """Deals, contacts, products and activities of the CRM.

    Responses come wrapped in ``{"success": ..., "data": ...}`` envelopes;
    the methods below return the unwrapped ``data``.
    """

    source = "crm"

    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        rate_limits: RateLimitStats | None = None,
    ):
        settings = get_settings()
        super().__init__(
            base_url or settings.crm_api_url,
            timeout=settings.http_timeout,
            max_retries=settings.http_max_retries,
        )
        self._api_token = api_token or settings.crm_api_token.get_secret_value()
        self.rate_limits = rate_limits or RateLimitStats()

    def _get_params(self) -> dict[str, Any]:
        return {"api_token": self._api_token}

    def _on_response(self, response: httpx.Response) -> None:
        self.rate_limits.record(response.headers, response.status_code)
        if self.rate_limits.near_limit:
            logger.warning(
                "crm_rate_limit_low",
                remaining=self.rate_limits.remaining,
                limit=self.rate_limits.limit,
            )

    async def _data(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        body = await self._request(method, path, params=params, json=json)
        if isinstance(body, dict) and body.get("success") is False:
            raise CollaboratorError(
                f"crm request failed: {body.get('error') or 'unknown error'}",
                details=body,
                source=self.source,
            )
        return body.get("data") if isinstance(body, dict) else body

    async def _get_or_none(self, path: str) -> dict[str, Any] | None:
        try:
            return await self._data("GET", path)
        except NotFoundError:
            return None

    # === Deals ===

    async def list_open_deals(self) -> list[dict[str, Any]]:
        """All open deals, following pagination."""
        deals: list[dict[str, Any]] = []
        start = 0
        while True:
            body = await self._request(
                "GET", "/deals", params={"status": "open", "start": start, "limit": PAGE_SIZE}
            )
            deals.extend(body.get("data") or [])
            pagination = (body.get("additional_data") or {}).get("pagination") or {}
            if not pagination.get("more_items_in_collection"):
                break
            start = pagination.get("next_start", start + PAGE_SIZE)
        logger.debug("open_deals_listed", count=len(deals))
        return deals

    async def get_deal(self, deal_id: int) -> dict[str, Any] | None:
        return await self._get_or_none(f"/deals/{deal_id}")

    async def update_deal(self, deal_id: int, fields: dict[str, Any]) -> dict[str, Any]:
        return await self._data("PUT", f"/deals/{deal_id}", json=fields) or {}

    async def get_deal_products(self, deal_id: int) -> list[dict[str, Any]]:
        return await self._data("GET", f"/deals/{deal_id}/products") or []

    # === Contacts ===

    async def get_person(self, person_id: int) -> dict[str, Any] | None:
        return await self._get_or_none(f"/persons/{person_id}")

    async def get_organization(self, org_id: int) -> dict[str, Any] | None:
        return await self._get_or_none(f"/organizations/{org_id}")

    # === Activities ===

    async def list_deal_tasks(self, deal_id: int) -> list[dict[str, Any]]:
        return await self._data("GET", f"/deals/{deal_id}/activities", params={"done": 0}) or []

    async def complete_task(self, task_id: int) -> dict[str, Any]:
        return await self._data("PUT", f"/activities/{task_id}", json={"done": 1}) or {}

    async def create_task(
        self, deal_id: int, subject: str, due_date: date | None, note: str
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "subject": subject,
            "deal_id": deal_id,
            "type": "task",
            "note": note,
        }
        if due_date:
            payload["due_date"] = due_date.isoformat()
        return await self._data("POST", "/activities", json=payload) or {}
