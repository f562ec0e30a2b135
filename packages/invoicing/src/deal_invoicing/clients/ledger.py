"""Ledger client for a PostgREST (Supabase) database."""

from datetime import UTC, datetime
from typing import Any

import structlog

from deal_invoicing.clients.base import BaseAPIClient
from deal_invoicing.config import get_settings
from deal_invoicing.models import DeletionLogEntry, Document

logger = structlog.get_logger(__name__)

DOCUMENTS_TABLE = "proformas"
DELETION_LOG_TABLE = "proforma_deletion_logs"


def _in_filter(values: list[str]) -> str:
    quoted = ",".join('"{}"'.format(value.replace('"', '\\"')) for value in values)
    return f"in.({quoted})"


class LedgerClient(BaseAPIClient):
    """Document mirror and deletion log stored in PostgREST tables."""

    source = "ledger"

    def __init__(self, base_url: str | None = None, api_key: str | None = None):
        settings = get_settings()
        super().__init__(
            base_url or settings.ledger_url,
            timeout=settings.http_timeout,
            max_retries=settings.http_max_retries,
        )
        self._api_key = api_key or settings.ledger_api_key.get_secret_value()

    def _get_headers(self) -> dict[str, str]:
        headers = super()._get_headers()
        headers["apikey"] = self._api_key
        headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _select(self, params: dict[str, Any]) -> list[Document]:
        rows = await self._request(
            "GET", f"/{DOCUMENTS_TABLE}", params={"select": "*", "order": "issued_at.asc", **params}
        )
        return [Document.from_record(row) for row in rows or []]

    async def find_by_deal_id(self, deal_id: int) -> list[Document]:
        return await self._select({"pipedrive_deal_id": f"eq.{deal_id}"})

    async def find_by_ids(self, ids: list[str]) -> list[Document]:
        if not ids:
            return []
        return await self._select({"id": _in_filter(ids)})

    async def find_by_numbers(self, numbers: list[str]) -> list[Document]:
        """Rows whose stored number equals one of ``numbers``."""
        if not numbers:
            return []
        return await self._select({"fullnumber": _in_filter(numbers)})

    async def upsert(self, document: Document) -> None:
        await self._request(
            "POST",
            f"/{DOCUMENTS_TABLE}",
            params={"on_conflict": "id"},
            json=[document.to_record()],
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )
        logger.debug("ledger_document_upserted", document_id=document.id)

    async def mark_deleted(self, document_id: str, deleted_at: datetime | None = None) -> None:
        stamp = deleted_at or datetime.now(UTC)
        await self._request(
            "PATCH",
            f"/{DOCUMENTS_TABLE}",
            params={"id": f"eq.{document_id}"},
            json={"status": "deleted", "deleted_at": stamp.isoformat()},
            headers={"Prefer": "return=minimal"},
        )
        logger.debug("ledger_document_marked_deleted", document_id=document_id)

    async def append_deletion_log(self, entry: DeletionLogEntry) -> None:
        await self._request(
            "POST",
            f"/{DELETION_LOG_TABLE}",
            json=entry.to_record(),
            headers={"Prefer": "return=minimal"},
        )
