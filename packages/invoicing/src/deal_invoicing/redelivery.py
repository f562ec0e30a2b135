"""Suppression of webhook redeliveries.

The CRM retries webhooks and often fires several for one user action, so
the same signal can arrive many times within a few seconds. Processing is
idempotent anyway; this guard only keeps the noise down.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from deal_invoicing.config.settings import Settings

_DEAL_ID_KEYS = ("Deal ID", "Deal_id", "dealId", "deal_id")


@dataclass(frozen=True)
class WebhookSignal:
    """The parts of a webhook delivery that identify it."""

    deal_id: int | None
    event: str
    stage_id: Any = None
    status: Any = None
    trigger: Any = None

    @property
    def signature(self) -> str:
        return "|".join(
            [
                str(self.deal_id) if self.deal_id is not None else "no-deal",
                self.event,
                "" if self.stage_id is None else str(self.stage_id),
                "" if self.status is None else str(self.status),
                "" if self.trigger is None else str(self.trigger),
            ]
        )

    @property
    def is_deal_deletion(self) -> bool:
        return self.event == "deleted.deal"


def _to_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_webhook(payload: dict[str, Any], trigger_field: str) -> WebhookSignal:
    """Extract the deal id and key fields from a CRM webhook payload.

    Supports the standard ``{event, current, previous}`` envelope, the
    ``{event, data}`` variant, and flat workflow-automation bodies that carry
    only a deal id.
    """
    current = payload.get("current") or payload.get("data") or {}
    previous = payload.get("previous") or {}

    deal_id = _to_int(current.get("id")) or _to_int(previous.get("id"))
    if deal_id is None:
        for key in _DEAL_ID_KEYS:
            deal_id = _to_int(payload.get(key))
            if deal_id is not None:
                break

    meta = payload.get("meta") or {}
    event = payload.get("event") or ""
    if not event and meta.get("action") and meta.get("entity"):
        event = f"{meta['action']}.{meta['entity']}"
        if event == "delete.deal":
            event = "deleted.deal"

    return WebhookSignal(
        deal_id=deal_id,
        event=event or "workflow",
        stage_id=payload.get("Deal_stage_id") or current.get("stage_id") or previous.get("stage_id"),
        status=payload.get("Deal_status") or current.get("status") or previous.get("status"),
        trigger=payload.get("Invoice") or current.get(trigger_field) or previous.get(trigger_field),
    )


class RecentSignalGuard:
    """Remembers webhook signatures for ``ttl`` seconds.

    When more than ``max_size`` signatures are held, the oldest ones are
    dropped until half remain.
    """

    def __init__(
        self,
        ttl: float = 60.0,
        max_size: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_size = max_size
        self.clock = clock
        self._seen: dict[str, float] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "RecentSignalGuard":
        return cls(ttl=settings.webhook_dedup_ttl_seconds, max_size=settings.webhook_dedup_max_size)

    def __len__(self) -> int:
        return len(self._seen)

    def check_and_remember(self, signature: str) -> bool:
        """Return ``True`` if ``signature`` was seen within the TTL, else record it."""
        now = self.clock()
        self._expire(now)
        if signature in self._seen:
            return True
        self._seen[signature] = now
        if len(self._seen) > self.max_size:
            keep = self.max_size // 2
            oldest_first = sorted(self._seen.items(), key=lambda item: item[1])
            self._seen = dict(oldest_first[len(oldest_first) - keep :])
        return False

    def forget(self, signature: str) -> None:
        self._seen.pop(signature, None)

    def _expire(self, now: float) -> None:
        expired = [sig for sig, seen_at in self._seen.items() if now - seen_at > self.ttl]
        for sig in expired:
            del self._seen[sig]
