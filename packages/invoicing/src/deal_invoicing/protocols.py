"""Interfaces of the three external collaborators."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Protocol

from deal_invoicing.models import DeletionLogEntry, Document


class TriggerSource(Protocol):
    """CRM holding the deals and their billing flags."""

    async def list_open_deals(self) -> list[dict[str, Any]]:
        ...

    async def get_deal(self, deal_id: int) -> dict[str, Any] | None:
        ...

    async def update_deal(self, deal_id: int, fields: dict[str, Any]) -> dict[str, Any]:
        ...

    async def get_person(self, person_id: int) -> dict[str, Any] | None:
        ...

    async def get_organization(self, org_id: int) -> dict[str, Any] | None:
        ...

    async def get_deal_products(self, deal_id: int) -> list[dict[str, Any]]:
        ...

    async def list_deal_tasks(self, deal_id: int) -> list[dict[str, Any]]:
        ...

    async def complete_task(self, task_id: int) -> dict[str, Any]:
        ...

    async def create_task(
        self, deal_id: int, subject: str, due_date: date | None, note: str
    ) -> dict[str, Any]:
        ...


class AccountingBackend(Protocol):
    """System of record for issued documents."""

    async def create_document(self, payload: dict[str, Any]) -> dict[str, Any]:
        ...

    async def get_document(self, document_id: str) -> dict[str, Any] | None:
        ...

    async def delete_document(self, document_id: str) -> None:
        ...

    async def list_bank_accounts(self) -> list[dict[str, Any]]:
        ...

    async def find_contractor_by_email(self, email: str) -> dict[str, Any] | None:
        ...

    async def create_contractor(self, buyer: dict[str, Any]) -> dict[str, Any]:
        ...


class Ledger(Protocol):
    """Local mirror of issued documents plus the deletion audit log."""

    async def find_by_deal_id(self, deal_id: int) -> list[Document]:
        ...

    async def find_by_ids(self, ids: list[str]) -> list[Document]:
        ...

    async def find_by_numbers(self, numbers: list[str]) -> list[Document]:
        ...

    async def upsert(self, document: Document) -> None:
        ...

    async def mark_deleted(self, document_id: str, deleted_at: datetime | None = None) -> None:
        ...

    async def append_deletion_log(self, entry: DeletionLogEntry) -> None:
        ...
