"""Translation between raw CRM deal records and :class:`Deal`.

The CRM stores the billing trigger as an option id of a custom enum field
and the document numbers as free text. This module is the only place that
knows those encodings.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import structlog

from deal_invoicing.config.settings import Settings
from deal_invoicing.models import BillingTrigger, Deal, to_date, to_decimal

logger = structlog.get_logger(__name__)

_LIST_SEPARATORS = re.compile(r"[,;\n\r]+")
_NUMBER_NOISE = re.compile(r"[^0-9A-Za-z]+")


def split_multi_value(raw: Any) -> list[str]:
    """Split a comma/newline separated field, dropping blanks and duplicates."""
    if raw is None:
        return []
    if isinstance(raw, list | tuple):
        parts = [str(item) for item in raw if item is not None]
    else:
        parts = _LIST_SEPARATORS.split(str(raw))

    values: list[str] = []
    for part in parts:
        value = part.strip()
        if value and value not in values:
            values.append(value)
    return values


def normalize_document_number(number: str | None) -> str:
    """Reduce a document number to its alphanumeric core.

    ``"CO-PROF 12/2025"``, ``"co-prof-12-2025"`` and ``"COPROF122025"`` all
    normalize to the same key.
    """
    if not number:
        return ""
    return _NUMBER_NOISE.sub("", number).upper()


def merge_document_numbers(existing: list[str], new: str | None) -> list[str]:
    """Append a number to the history unless an equivalent one is recorded."""
    if not new:
        return list(existing)
    key = normalize_document_number(new)
    if any(normalize_document_number(item) == key for item in existing):
        return list(existing)
    return [*existing, new]


def remove_document_numbers(existing: list[str], removed: list[str]) -> list[str]:
    """Drop numbers (compared separator-insensitively) from the history."""
    keys = {normalize_document_number(number) for number in removed}
    return [item for item in existing if normalize_document_number(item) not in keys]


def join_multi_value(values: list[str]) -> str | None:
    """Encode a list back into the CRM field; empty lists clear the field."""
    return "\n".join(values) if values else None


class TriggerCodec:
    """Maps CRM option ids of the invoice type field to :class:`BillingTrigger`."""

    DELETE_LABELS = frozenset({"delete"})

    def __init__(self, proforma_value: int = 70, done_value: int = 73, delete_value: int = 74):
        self._by_value = {
            proforma_value: BillingTrigger.PROFORMA,
            done_value: BillingTrigger.DONE,
            delete_value: BillingTrigger.DELETE,
        }
        self._by_trigger = {trigger: value for value, trigger in self._by_value.items()}

    @classmethod
    def from_settings(cls, settings: Settings) -> "TriggerCodec":
        return cls(
            proforma_value=settings.trigger_proforma_value,
            done_value=settings.trigger_done_value,
            delete_value=settings.trigger_delete_value,
        )

    def decode(self, raw: Any) -> BillingTrigger:
        if raw is None or raw == "":
            return BillingTrigger.UNSET
        text = str(raw).strip().lower()
        if text in self.DELETE_LABELS:
            return BillingTrigger.DELETE
        if text == BillingTrigger.PROFORMA.value:
            return BillingTrigger.PROFORMA
        try:
            value = int(text)
        except ValueError:
            logger.warning("unknown_trigger_value", raw=raw)
            return BillingTrigger.UNSET
        trigger = self._by_value.get(value)
        if trigger is None:
            logger.warning("unknown_trigger_value", raw=raw)
            return BillingTrigger.UNSET
        return trigger

    def encode(self, trigger: BillingTrigger) -> int | None:
        if trigger == BillingTrigger.UNSET:
            return None
        return self._by_trigger[trigger]


@dataclass(frozen=True)
class DealFieldMap:
    """CRM custom field keys the engine reads and writes."""

    trigger: str
    document_id: str
    document_numbers: str
    delete_ids: str

    @classmethod
    def from_settings(cls, settings: Settings) -> "DealFieldMap":
        return cls(
            trigger=settings.invoice_type_field_key,
            document_id=settings.invoice_id_field_key,
            document_numbers=settings.invoice_number_field_key,
            delete_ids=settings.delete_ids_field_key,
        )


@dataclass
class DealStateUpdate:
    """Engine-level fields to write back; ``None`` means "leave as is".

    To clear a text field pass an empty string or list.
    """

    trigger: BillingTrigger | None = None
    document_id: str | None = None
    document_numbers: list[str] | None = None
    delete_document_ids: list[str] | None = None


def _related_id(value: Any) -> int | None:
    # CRM returns related records either as a bare id or as {"value": id, ...}
    if isinstance(value, dict):
        value = value.get("value") or value.get("id")
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class DealAdapter:
    """Converts CRM deal payloads to :class:`Deal` and updates back to payloads."""

    def __init__(self, fields: DealFieldMap, codec: TriggerCodec):
        self.fields = fields
        self.codec = codec

    @classmethod
    def from_settings(cls, settings: Settings) -> "DealAdapter":
        return cls(DealFieldMap.from_settings(settings), TriggerCodec.from_settings(settings))

    def parse(self, raw: dict[str, Any]) -> Deal:
        document_id = str(raw.get(self.fields.document_id) or "").strip()
        return Deal(
            id=int(raw["id"]),
            title=str(raw.get("title") or ""),
            amount=to_decimal(raw.get("value"), Decimal("0")) or Decimal("0"),
            currency=str(raw.get("currency") or "").upper(),
            close_date=to_date(raw.get("expected_close_date") or raw.get("close_date")),
            trigger=self.codec.decode(raw.get(self.fields.trigger)),
            document_id=document_id or None,
            document_numbers=split_multi_value(raw.get(self.fields.document_numbers)),
            delete_document_ids=split_multi_value(raw.get(self.fields.delete_ids)),
            person_id=_related_id(raw.get("person_id")),
            organization_id=_related_id(raw.get("org_id")),
            raw=raw,
        )

    def encode(self, update: DealStateUpdate) -> dict[str, Any]:
        """CRM field map for the non-``None`` members of ``update``."""
        payload: dict[str, Any] = {}
        if update.trigger is not None:
            payload[self.fields.trigger] = self.codec.encode(update.trigger)
        if update.document_id is not None:
            payload[self.fields.document_id] = update.document_id or None
        if update.document_numbers is not None:
            payload[self.fields.document_numbers] = join_multi_value(update.document_numbers)
        if update.delete_document_ids is not None:
            payload[self.fields.delete_ids] = join_multi_value(update.delete_document_ids)
        return payload

    def current_values(self, deal: Deal) -> dict[str, Any]:
        """Field values of ``deal`` in the same encoding as :meth:`encode`."""
        return self.encode(
            DealStateUpdate(
                trigger=deal.trigger,
                document_id=deal.document_id or "",
                document_numbers=deal.document_numbers,
                delete_document_ids=deal.delete_document_ids,
            )
        )
