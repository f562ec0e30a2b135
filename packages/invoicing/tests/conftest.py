"""Pytest configuration and fixtures."""

import asyncio
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("CRM_API_TOKEN", "crm-test-token")
os.environ.setdefault("ACCOUNTING_API_TOKEN", "accounting-test-token")
os.environ.setdefault("LEDGER_API_KEY", "ledger-test-key")

from deal_invoicing.config.bank_accounts import BankAccountConfig  # noqa: E402
from deal_invoicing.crm_fields import DealAdapter, DealFieldMap, TriggerCodec  # noqa: E402
from deal_invoicing.errors import NotFoundError, TransientError  # noqa: E402
from deal_invoicing.models import (  # noqa: E402
    DeletionLogEntry,
    Document,
    DocumentStatus,
)

TRIGGER = "trigger"
DOC_ID = "doc_id"
DOC_NUMBERS = "doc_numbers"
DELETE_IDS = "delete_ids"


def _fail(fail_on: set[str], name: str) -> None:
    if name in fail_on:
        raise TransientError(f"{name} unavailable", status_code=503)


@dataclass
class FakeLedger:
    """In-memory ledger with per-method failure injection."""

    rows: dict[str, Document] = field(default_factory=dict)
    logs: list[DeletionLogEntry] = field(default_factory=list)
    fail_on: set[str] = field(default_factory=set)
    upserts: list[Document] = field(default_factory=list)

    def add(self, document: Document) -> Document:
        self.rows[document.id] = document
        return document

    async def find_by_deal_id(self, deal_id: int) -> list[Document]:
        _fail(self.fail_on, "find_by_deal_id")
        return [row for row in self.rows.values() if row.deal_id == deal_id]

    async def find_by_ids(self, ids: list[str]) -> list[Document]:
        _fail(self.fail_on, "find_by_ids")
        return [self.rows[doc_id] for doc_id in ids if doc_id in self.rows]

    async def find_by_numbers(self, numbers: list[str]) -> list[Document]:
        _fail(self.fail_on, "find_by_numbers")
        return [row for row in self.rows.values() if row.number in numbers]

    async def upsert(self, document: Document) -> None:
        _fail(self.fail_on, "upsert")
        self.upserts.append(document)
        self.rows[document.id] = document

    async def mark_deleted(self, document_id: str, deleted_at: datetime | None = None) -> None:
        _fail(self.fail_on, "mark_deleted")
        row = self.rows.get(document_id)
        if row is not None:
            row.status = DocumentStatus.DELETED
            row.deleted_at = deleted_at

    async def append_deletion_log(self, entry: DeletionLogEntry) -> None:
        _fail(self.fail_on, "append_deletion_log")
        self.logs.append(entry)


@dataclass
class FakeBackend:
    """In-memory accounting backend."""

    documents: dict[str, dict[str, Any]] = field(default_factory=dict)
    bank_accounts: list[dict[str, Any]] = field(default_factory=list)
    fail_on: set[str] = field(default_factory=set)
    created: list[dict[str, Any]] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    get_calls: list[str] = field(default_factory=list)
    contractors: dict[str, dict[str, Any]] = field(default_factory=dict)
    number_on_create: bool = True
    next_id: int = 1000

    async def create_document(self, payload: dict[str, Any]) -> dict[str, Any]:
        _fail(self.fail_on, "create_document")
        # Yield like a real network call so overlapping callers interleave
        await asyncio.sleep(0)
        self.next_id += 1
        doc_id = str(self.next_id)
        number = f"PRO {self.next_id}/2026"
        self.created.append(payload)
        self.documents[doc_id] = {
            "id": doc_id,
            "fullnumber": number,
            "currency": payload["currency"],
            "total": payload["total"],
            "date": payload["date"],
        }
        response: dict[str, Any] = {"id": doc_id}
        if self.number_on_create:
            response["number"] = number
        return response

    async def get_document(self, document_id: str) -> dict[str, Any] | None:
        self.get_calls.append(document_id)
        _fail(self.fail_on, "get_document")
        return self.documents.get(document_id)

    async def delete_document(self, document_id: str) -> None:
        _fail(self.fail_on, "delete_document")
        if document_id not in self.documents:
            raise NotFoundError("not found", status_code=404)
        del self.documents[document_id]
        self.deleted.append(document_id)

    async def list_bank_accounts(self) -> list[dict[str, Any]]:
        _fail(self.fail_on, "list_bank_accounts")
        return list(self.bank_accounts)

    async def find_contractor_by_email(self, email: str) -> dict[str, Any] | None:
        _fail(self.fail_on, "find_contractor_by_email")
        for contractor in self.contractors.values():
            if (contractor.get("email") or "").lower() == email.lower():
                return contractor
        return None

    async def create_contractor(self, buyer: dict[str, Any]) -> dict[str, Any]:
        _fail(self.fail_on, "create_contractor")
        contractor_id = f"C{len(self.contractors) + 1}"
        self.contractors[contractor_id] = {**buyer, "id": contractor_id}
        return self.contractors[contractor_id]


@dataclass
class FakeTriggerSource:
    """In-memory CRM."""

    deals: dict[int, dict[str, Any]] = field(default_factory=dict)
    persons: dict[int, dict[str, Any]] = field(default_factory=dict)
    organizations: dict[int, dict[str, Any]] = field(default_factory=dict)
    products: dict[int, list[dict[str, Any]]] = field(default_factory=dict)
    tasks: dict[int, list[dict[str, Any]]] = field(default_factory=dict)
    fail_on: set[str] = field(default_factory=set)
    update_failures: int = 0
    updates: list[tuple[int, dict[str, Any]]] = field(default_factory=list)
    completed_tasks: list[int] = field(default_factory=list)
    created_tasks: list[dict[str, Any]] = field(default_factory=list)

    async def list_open_deals(self) -> list[dict[str, Any]]:
        _fail(self.fail_on, "list_open_deals")
        return [dict(deal) for deal in self.deals.values()]

    async def get_deal(self, deal_id: int) -> dict[str, Any] | None:
        _fail(self.fail_on, "get_deal")
        deal = self.deals.get(deal_id)
        return dict(deal) if deal else None

    async def update_deal(self, deal_id: int, fields: dict[str, Any]) -> dict[str, Any]:
        _fail(self.fail_on, "update_deal")
        if self.update_failures > 0:
            self.update_failures -= 1
            raise TransientError("crm timeout")
        self.updates.append((deal_id, dict(fields)))
        self.deals.setdefault(deal_id, {"id": deal_id}).update(fields)
        return self.deals[deal_id]

    async def get_person(self, person_id: int) -> dict[str, Any] | None:
        _fail(self.fail_on, "get_person")
        return self.persons.get(person_id)

    async def get_organization(self, org_id: int) -> dict[str, Any] | None:
        _fail(self.fail_on, "get_organization")
        return self.organizations.get(org_id)

    async def get_deal_products(self, deal_id: int) -> list[dict[str, Any]]:
        _fail(self.fail_on, "get_deal_products")
        return self.products.get(deal_id, [])

    async def list_deal_tasks(self, deal_id: int) -> list[dict[str, Any]]:
        _fail(self.fail_on, "list_deal_tasks")
        return self.tasks.get(deal_id, [])

    async def complete_task(self, task_id: int) -> dict[str, Any]:
        _fail(self.fail_on, "complete_task")
        self.completed_tasks.append(task_id)
        return {"id": task_id, "done": True}

    async def create_task(
        self, deal_id: int, subject: str, due_date: date | None, note: str
    ) -> dict[str, Any]:
        _fail(self.fail_on, "create_task")
        task = {"deal_id": deal_id, "subject": subject, "due_date": due_date, "note": note}
        self.created_tasks.append(task)
        return task


def make_raw_deal(
    deal_id: int = 42,
    value: Any = 1000,
    currency: str = "EUR",
    close_date: str | None = "2026-07-11",
    trigger: Any = 70,
    document_id: str | None = None,
    numbers: str | None = None,
    delete_ids: str | None = None,
    person_id: int | None = 7,
    org_id: int | None = None,
) -> dict[str, Any]:
    """A CRM deal record using the test field keys."""
    return {
        "id": deal_id,
        "title": f"Summer camp #{deal_id}",
        "value": value,
        "currency": currency,
        "expected_close_date": close_date,
        "person_id": person_id,
        "org_id": org_id,
        TRIGGER: trigger,
        DOC_ID: document_id,
        DOC_NUMBERS: numbers,
        DELETE_IDS: delete_ids,
    }


def make_document(
    doc_id: str = "D1",
    number: str | None = "PRO 1/2026",
    deal_id: int | None = 42,
    status: DocumentStatus = DocumentStatus.ACTIVE,
    issue_date: date = date(2026, 6, 1),
) -> Document:
    return Document(
        id=doc_id,
        number=number,
        currency="EUR",
        total=Decimal("1000.00"),
        issue_date=issue_date,
        deal_id=deal_id,
        status=status,
    )


@pytest.fixture
def adapter():
    """Deal adapter with short, readable field keys."""
    return DealAdapter(DealFieldMap(TRIGGER, DOC_ID, DOC_NUMBERS, DELETE_IDS), TriggerCodec())


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def backend():
    return FakeBackend(
        bank_accounts=[
            {"id": 1, "name": "Rachunek EUR", "currency": "EUR", "status": "accepted"},
            {"id": 2, "name": "Rachunek PLN", "currency": "PLN", "status": "accepted"},
        ]
    )


@pytest.fixture
def crm():
    return FakeTriggerSource(
        persons={
            7: {
                "id": 7,
                "name": "Anna Kowalska",
                "email": [{"value": "anna@example.com", "primary": True}],
                "phone": [{"value": "+48 600 100 200"}],
                "postal_address_country": "Poland",
                "postal_address_postal_code": "80125",
                "postal_address_locality": "Gdańsk",
            }
        }
    )


@pytest.fixture
def bank_configs():
    return {
        "EUR": BankAccountConfig(currency="EUR", name="Rachunek EUR", fallback="Konto EUR"),
        "PLN": BankAccountConfig(currency="PLN", name="Rachunek PLN", fallback="Konto PLN"),
    }


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    return AsyncMock()
