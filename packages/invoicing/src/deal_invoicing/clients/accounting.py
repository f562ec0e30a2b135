"""Accounting backend client."""

from typing import Any

import structlog

from deal_invoicing.clients.base import BaseAPIClient
from deal_invoicing.config import get_settings
from deal_invoicing.errors import CollaboratorError, NotFoundError

logger = structlog.get_logger(__name__)


class AccountingClient(BaseAPIClient):
    """Proformas and their contractors in the accounting backend."""

    source = "accounting"

    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        company_id: str | None = None,
    ):
        settings = get_settings()
        super().__init__(
            base_url or settings.accounting_api_url,
            timeout=settings.http_timeout,
            max_retries=settings.http_max_retries,
        )
        self._api_token = api_token or settings.accounting_api_token.get_secret_value()
        self._company_id = company_id or settings.accounting_company_id

    def _get_headers(self) -> dict[str, str]:
        headers = super()._get_headers()
        headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    def _get_params(self) -> dict[str, Any]:
        return {"company_id": self._company_id} if self._company_id else {}

    async def create_document(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Create a proforma; the response carries at least its ``id``."""
        data = await self._request("POST", "/proformas", json=payload)
        if not isinstance(data, dict) or not data.get("id"):
            raise CollaboratorError(
                "Invalid create-proforma response", details=data, source=self.source
            )
        logger.info("proforma_created", document_id=data["id"], number=data.get("number"))
        return data

    async def get_document(self, document_id: str) -> dict[str, Any] | None:
        """The proforma, or ``None`` when the backend does not know it."""
        try:
            data = await self._request("GET", f"/proformas/{document_id}")
        except NotFoundError:
            return None
        return data if isinstance(data, dict) and data else None

    async def delete_document(self, document_id: str) -> None:
        """Delete a proforma; raises :class:`NotFoundError` if it is already gone."""
        await self._request("DELETE", f"/proformas/{document_id}")
        logger.info("proforma_deleted", document_id=document_id)

    async def list_bank_accounts(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/bank-accounts")
        if isinstance(data, dict):
            data = data.get("data") or data.get("bank_accounts") or []
        return list(data)

    async def find_contractor_by_email(self, email: str) -> dict[str, Any] | None:
        """The contractor registered under ``email``, compared case-insensitively."""
        data = await self._request("GET", "/contractors", params={"email": email})
        if isinstance(data, dict):
            data = data.get("data") or data.get("contractors") or []
        wanted = email.strip().lower()
        for contractor in data or []:
            if str(contractor.get("email") or "").strip().lower() == wanted:
                return contractor
        return None

    async def create_contractor(self, buyer: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", "/contractors", json=buyer)
        if not isinstance(data, dict) or not data.get("id"):
            raise CollaboratorError(
                "Invalid create-contractor response", details=data, source=self.source
            )
        logger.info("contractor_created", contractor_id=data["id"])
        return data
