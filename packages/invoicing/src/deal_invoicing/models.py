"""Domain records shared across the reconciliation engine.

Documents and deletion log entries know how to convert themselves to and
from the flat row format stored in the ledger; deals are built from CRM
records by :mod:`deal_invoicing.crm_fields`.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


class BillingTrigger(str, Enum):
    """State of the billing trigger field on a deal."""

    UNSET = "unset"
    PROFORMA = "proforma"
    DONE = "done"
    DELETE = "delete"


class DocumentStatus(str, Enum):
    """Lifecycle status of a document in the ledger."""

    ACTIVE = "active"
    DELETED = "deleted"


class DeletionOutcome(str, Enum):
    """Terminal state of one deletion attempt."""

    DELETED = "deleted"
    BACKEND_ERROR = "backend-error"
    LEDGER_ERROR = "ledger-error"
    NOT_FOUND = "not-found"
    NUMBER_MISMATCH = "number-mismatch"
    UNEXPECTED_ERROR = "unexpected-error"


def to_decimal(value: Any, default: Decimal | None = None) -> Decimal | None:
    """Parse amounts coming from JSON payloads (numbers or "1 000,50" strings)."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int | float):
        return Decimal(str(value))
    text = str(value).strip().replace(" ", "").replace(",", ".")
    if not text:
        return default
    try:
        return Decimal(text)
    except InvalidOperation:
        return default


def to_date(value: Any) -> date | None:
    """Parse an ISO date or datetime string."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


@dataclass
class BuyerSnapshot:
    """Buyer details copied onto the document at issue time."""

    name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    zip: str | None = None
    city: str | None = None
    country: str | None = None
    tax_id: str | None = None

    @property
    def is_company(self) -> bool:
        return bool(self.tax_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "BuyerSnapshot | None":
        if not data or not data.get("name"):
            return None
        return cls(
            name=str(data["name"]),
            email=data.get("email"),
            phone=data.get("phone"),
            address=data.get("address"),
            zip=data.get("zip"),
            city=data.get("city"),
            country=data.get("country"),
            tax_id=data.get("tax_id"),
        )


@dataclass
class LineItem:
    """One product line on a document."""

    name: str
    quantity: Decimal
    unit_price: Decimal
    unit: str = "szt."

    @property
    def total(self) -> Decimal:
        return self.quantity * self.unit_price

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "unit": self.unit,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineItem":
        return cls(
            name=str(data.get("name") or ""),
            quantity=to_decimal(data.get("quantity") or data.get("count"), Decimal("1"))
            or Decimal("1"),
            unit_price=to_decimal(data.get("unit_price") or data.get("price"), Decimal("0"))
            or Decimal("0"),
            unit=str(data.get("unit") or "szt."),
        )


@dataclass
class Deal:
    """A CRM deal as seen by the engine."""

    id: int
    title: str
    amount: Decimal
    currency: str
    close_date: date | None = None
    trigger: BillingTrigger = BillingTrigger.UNSET
    document_id: str | None = None
    document_numbers: list[str] = field(default_factory=list)
    delete_document_ids: list[str] = field(default_factory=list)
    person_id: int | None = None
    organization_id: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def document_number(self) -> str | None:
        """Most recently recorded document number."""
        return self.document_numbers[-1] if self.document_numbers else None


@dataclass
class Document:
    """A proforma issued by the accounting backend and mirrored in the ledger."""

    id: str
    number: str | None
    currency: str
    total: Decimal
    issue_date: date
    deal_id: int | None = None
    buyer: BuyerSnapshot | None = None
    items: list[LineItem] = field(default_factory=list)
    status: DocumentStatus = DocumentStatus.ACTIVE
    deleted_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == DocumentStatus.ACTIVE

    def to_record(self) -> dict[str, Any]:
        """Flatten into a ledger row."""
        return {
            "id": self.id,
            "fullnumber": self.number,
            "currency": self.currency,
            "total": str(self.total),
            "issued_at": self.issue_date.isoformat(),
            "pipedrive_deal_id": self.deal_id,
            "buyer": self.buyer.to_dict() if self.buyer else None,
            "items": [item.to_dict() for item in self.items],
            "status": self.status.value,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }

    @classmethod
    def from_record(cls, row: dict[str, Any]) -> "Document":
        """Build a document from a ledger row."""
        deleted_at = row.get("deleted_at")
        deal_id = row.get("pipedrive_deal_id")
        return cls(
            id=str(row["id"]),
            number=row.get("fullnumber") or None,
            currency=str(row.get("currency") or ""),
            total=to_decimal(row.get("total"), Decimal("0")) or Decimal("0"),
            issue_date=to_date(row.get("issued_at")) or date.today(),
            deal_id=int(deal_id) if deal_id not in (None, "") else None,
            buyer=BuyerSnapshot.from_dict(row.get("buyer")),
            items=[LineItem.from_dict(item) for item in row.get("items") or []],
            status=DocumentStatus(row.get("status") or DocumentStatus.ACTIVE.value),
            deleted_at=datetime.fromisoformat(deleted_at) if deleted_at else None,
        )

    @classmethod
    def from_backend(cls, data: dict[str, Any], deal_id: int | None = None) -> "Document":
        """Build a document from an accounting backend payload."""
        number = data.get("fullnumber") or data.get("number")
        buyer = data.get("buyer") or data.get("contractor")
        return cls(
            id=str(data["id"]),
            number=str(number) if number else None,
            currency=str(data.get("currency") or ""),
            total=to_decimal(data.get("total"), Decimal("0")) or Decimal("0"),
            issue_date=to_date(data.get("date") or data.get("issue_date")) or date.today(),
            deal_id=deal_id,
            buyer=BuyerSnapshot.from_dict(buyer) if isinstance(buyer, dict) else None,
            items=[LineItem.from_dict(item) for item in data.get("items") or []],
            status=DocumentStatus.DELETED if data.get("deleted") else DocumentStatus.ACTIVE,
        )

    def snapshot(self) -> dict[str, Any]:
        """Copy stored in the deletion log."""
        return self.to_record()


@dataclass
class DeletionLogEntry:
    """Audit record of one deletion attempt."""

    deal_id: int
    status: DeletionOutcome
    document_id: str | None = None
    snapshot: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    logged_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_record(self) -> dict[str, Any]:
        return {
            "proforma_id": self.document_id,
            "deal_id": self.deal_id,
            "status": self.status.value,
            "payload": self.snapshot,
            "metadata": self.metadata,
            "logged_at": self.logged_at.isoformat(),
        }


@dataclass
class FollowUpTask:
    """A CRM activity tied to a deal, e.g. a payment reminder."""

    subject: str
    due_date: date | None = None
    note: str = ""
    deal_id: int | None = None
    id: int | None = None
    done: bool = False

    @classmethod
    def from_crm(cls, data: dict[str, Any]) -> "FollowUpTask":
        deal_id = data.get("deal_id")
        return cls(
            id=data.get("id"),
            subject=str(data.get("subject") or ""),
            note=str(data.get("note") or data.get("public_description") or ""),
            due_date=to_date(data.get("due_date")),
            deal_id=int(deal_id) if deal_id not in (None, "") else None,
            done=bool(data.get("done")),
        )
