"""Idempotent write-back of engine state to CRM deals.

The deal fields written here are what the existing-document resolver reads
on the next poll, so a failed write is always reported to the caller.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

from deal_invoicing.crm_fields import DealAdapter, DealStateUpdate
from deal_invoicing.errors import CollaboratorError, WriteBackError
from deal_invoicing.models import Deal
from deal_invoicing.protocols import TriggerSource
from deal_invoicing.retry import RetryExhaustedError, RetryPolicy

logger = structlog.get_logger(__name__)


@dataclass
class WriteBackResult:
    """Outcome of a successful write-back."""

    deal_id: int
    written: dict[str, Any] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def noop(self) -> bool:
        return not self.written


class DealStateWriter:
    """Writes deal fields, skipping values the CRM already holds."""

    def __init__(
        self,
        trigger_source: TriggerSource,
        adapter: DealAdapter,
        policy: RetryPolicy | None = None,
    ):
        self.trigger_source = trigger_source
        self.adapter = adapter
        self.policy = policy or RetryPolicy()
        self._known: dict[int, dict[str, Any]] = {}
        self._logger = logger.bind(component="deal_state_writer")

    def remember(self, deal: Deal) -> None:
        """Record the field values of ``deal`` as last seen in the CRM."""
        self._known[deal.id] = self.adapter.current_values(deal)

    def forget(self, deal_id: int) -> None:
        self._known.pop(deal_id, None)

    def known_values(self, deal_id: int) -> dict[str, Any]:
        return dict(self._known.get(deal_id, {}))

    async def write_back(self, deal_id: int, update: DealStateUpdate) -> WriteBackResult:
        """Write the changed members of ``update`` to the deal.

        Raises:
            WriteBackError: when the CRM rejects the update or retries run out.
        """
        requested = self.adapter.encode(update)
        known = self._known.get(deal_id, {})

        changes: dict[str, Any] = {}
        skipped: list[str] = []
        for key, value in requested.items():
            if key in known and known[key] == value:
                skipped.append(key)
            else:
                changes[key] = value

        if not changes:
            self._logger.debug("write_back_skipped", deal_id=deal_id, fields=skipped)
            return WriteBackResult(deal_id=deal_id, skipped=skipped)

        async def _update() -> dict[str, Any]:
            return await self.trigger_source.update_deal(deal_id, changes)

        try:
            await self.policy.run(_update, label=f"update_deal:{deal_id}")
        except RetryExhaustedError as e:
            self._logger.error(
                "write_back_failed",
                deal_id=deal_id,
                fields=list(changes),
                attempts=e.attempts,
                error=str(e.last_error),
            )
            raise WriteBackError(deal_id, changes, e.attempts, e.last_error) from e
        except CollaboratorError as e:
            self._logger.error(
                "write_back_rejected",
                deal_id=deal_id,
                fields=list(changes),
                status=e.status_code,
                error=str(e),
            )
            raise WriteBackError(deal_id, changes, 1, e) from e

        self._known.setdefault(deal_id, {}).update(changes)
        self._logger.info("write_back_completed", deal_id=deal_id, fields=list(changes))
        return WriteBackResult(deal_id=deal_id, written=changes, skipped=skipped)
