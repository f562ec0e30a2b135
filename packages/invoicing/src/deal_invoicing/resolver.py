"""Existing-document resolution.

Before a proforma is created for a deal, three sources are consulted in
order of trust: the document id recorded on the deal (re-validated against
the ledger and the accounting backend), the ledger's active documents for
the deal, and the ledger searched by the document numbers recorded on the
deal. The first strategy that finds an active document wins.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

import structlog

from deal_invoicing.crm_fields import normalize_document_number
from deal_invoicing.errors import CollaboratorError
from deal_invoicing.models import Deal, Document
from deal_invoicing.protocols import AccountingBackend, Ledger

logger = structlog.get_logger(__name__)

# Returned by _backend_get when the backend could not be asked at all.
_UNAVAILABLE: Any = object()


class ResolutionSource(str, Enum):
    """Where an existing document was found."""

    DEAL_FIELD = "deal-field"
    LEDGER = "ledger"
    LEDGER_NUMBER = "ledger-number"


@dataclass
class Resolution:
    """Result of :meth:`ExistingDocumentResolver.resolve`."""

    found: bool
    document_id: str | None = None
    document_number: str | None = None
    source: ResolutionSource | None = None
    document: Document | None = None
    stale_document_id: str | None = None
    degraded_sources: list[str] = field(default_factory=list)
    blocked: bool = False
    number_fetched: bool = False
    # Confirmed by the backend, and the ledger answered without a row for it
    ledger_missing: bool = False


@dataclass
class _LookupState:
    """Scratch state shared by the strategies of one resolve() call."""

    degraded: list[str] = field(default_factory=list)
    stale_id: str | None = None
    deal_id_unverified: bool = False
    backend_fetched: set[str] = field(default_factory=set)


Strategy = Callable[[Deal, _LookupState], Awaitable[Resolution | None]]


class ExistingDocumentResolver:
    """Finds the active document already issued for a deal, if any."""

    def __init__(self, ledger: Ledger, backend: AccountingBackend):
        self.ledger = ledger
        self.backend = backend
        self._strategies: list[Strategy] = [
            self._from_deal_field,
            self._from_ledger_by_deal,
            self._from_ledger_by_number,
        ]
        self._logger = logger.bind(component="existing_document_resolver")

    async def resolve(self, deal: Deal) -> Resolution:
        """Return the existing document for ``deal`` or ``found=False``.

        Lookup failures are logged and listed in ``degraded_sources``. If the
        deal names a document id that could not be checked and nothing else
        turned up, the result is ``blocked`` so the caller does not issue a
        second document blindly.
        """
        state = _LookupState()

        for strategy in self._strategies:
            result = await strategy(deal, state)
            if result is None:
                continue
            result = await self._backfill_number(result, state)
            result.degraded_sources = list(state.degraded)
            result.stale_document_id = state.stale_id
            self._logger.info(
                "existing_document_found",
                deal_id=deal.id,
                document_id=result.document_id,
                document_number=result.document_number,
                source=result.source.value if result.source else None,
            )
            return result

        if state.deal_id_unverified:
            self._logger.warning(
                "existing_document_unverifiable",
                deal_id=deal.id,
                document_id=deal.document_id,
                degraded=state.degraded,
            )
        return Resolution(
            found=False,
            stale_document_id=state.stale_id,
            degraded_sources=list(state.degraded),
            blocked=state.deal_id_unverified,
        )

    # === Strategies ===

    async def _from_deal_field(self, deal: Deal, state: _LookupState) -> Resolution | None:
        document_id = deal.document_id
        if not document_id:
            return None

        rows = await self._ledger_call(state, self.ledger.find_by_ids([document_id]))
        for row in rows or []:
            if row.id != document_id:
                continue
            if row.is_active:
                return self._hit(row, ResolutionSource.DEAL_FIELD)
            self._logger.info(
                "deal_document_deleted_in_ledger", deal_id=deal.id, document_id=document_id
            )
            state.stale_id = document_id
            return None

        payload = await self._backend_get(state, document_id)
        if payload is _UNAVAILABLE:
            state.deal_id_unverified = True
            return None
        if payload is None:
            self._logger.info(
                "deal_document_missing_in_backend", deal_id=deal.id, document_id=document_id
            )
            state.stale_id = document_id
            return None

        document = Document.from_backend(payload, deal_id=deal.id)
        if not document.is_active:
            state.stale_id = document_id
            return None
        result = self._hit(document, ResolutionSource.DEAL_FIELD)
        # An unreachable ledger may still hold the full row
        result.ledger_missing = rows is not None
        return result

    async def _from_ledger_by_deal(self, deal: Deal, state: _LookupState) -> Resolution | None:
        rows = await self._ledger_call(state, self.ledger.find_by_deal_id(deal.id))
        active = [row for row in rows or [] if row.is_active and row.id != state.stale_id]
        if not active:
            return None
        if len(active) > 1:
            self._logger.warning(
                "multiple_active_documents",
                deal_id=deal.id,
                document_ids=[row.id for row in active],
            )
        latest = max(active, key=lambda row: row.issue_date)
        return self._hit(latest, ResolutionSource.LEDGER)

    async def _from_ledger_by_number(self, deal: Deal, state: _LookupState) -> Resolution | None:
        if not deal.document_numbers:
            return None
        rows = await self._ledger_call(state, self.ledger.find_by_numbers(deal.document_numbers))
        wanted = {normalize_document_number(number) for number in deal.document_numbers}
        for row in reversed(rows or []):
            if not row.is_active or row.id == state.stale_id:
                continue
            # A number typed on this deal may belong to another deal's document
            if row.deal_id is not None and row.deal_id != deal.id:
                continue
            if normalize_document_number(row.number) in wanted:
                return self._hit(row, ResolutionSource.LEDGER_NUMBER)
        return None

    # === Helpers ===

    @staticmethod
    def _hit(document: Document, source: ResolutionSource) -> Resolution:
        return Resolution(
            found=True,
            document_id=document.id,
            document_number=document.number,
            source=source,
            document=document,
        )

    async def _backfill_number(self, result: Resolution, state: _LookupState) -> Resolution:
        """Learn a missing document number from the backend, at most once."""
        if result.document_number or not result.document_id:
            return result
        if result.document_id in state.backend_fetched:
            return result

        payload = await self._backend_get(state, result.document_id)
        if payload is _UNAVAILABLE or payload is None:
            return result
        number = Document.from_backend(payload).number
        if not number:
            return result

        document = replace(result.document, number=number) if result.document else None
        return replace(result, document_number=number, document=document, number_fetched=True)

    async def _ledger_call(
        self, state: _LookupState, call: Awaitable[list[Document]]
    ) -> list[Document] | None:
        try:
            return await call
        except CollaboratorError as e:
            self._logger.warning("ledger_lookup_failed", error=str(e), status=e.status_code)
            if "ledger" not in state.degraded:
                state.degraded.append("ledger")
            return None

    async def _backend_get(self, state: _LookupState, document_id: str) -> Any:
        state.backend_fetched.add(document_id)
        try:
            return await self.backend.get_document(document_id)
        except CollaboratorError as e:
            self._logger.warning(
                "backend_lookup_failed",
                document_id=document_id,
                error=str(e),
                status=e.status_code,
            )
            if "backend" not in state.degraded:
                state.degraded.append("backend")
            return _UNAVAILABLE
