"""Per-run caches passed explicitly to the components that need them."""

from dataclasses import dataclass, field
from typing import Any

import structlog

from deal_invoicing.config.bank_accounts import BankAccountConfig
from deal_invoicing.protocols import AccountingBackend

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BankAccount:
    """Bank account to print on a document."""

    name: str
    currency: str
    id: str | None = None
    number: str | None = None
    fallback: bool = False


class BankAccountCache:
    """Backend bank accounts, fetched once per run.

    Call :meth:`invalidate` to force a refetch, e.g. after an account was
    added in the backend while the process is running.
    """

    def __init__(self, backend: AccountingBackend, config: dict[str, BankAccountConfig]):
        self.backend = backend
        self.config = config
        self._accounts: list[dict[str, Any]] | None = None

    def invalidate(self) -> None:
        self._accounts = None

    async def accounts(self) -> list[dict[str, Any]]:
        if self._accounts is None:
            self._accounts = await self.backend.list_bank_accounts()
            logger.info("bank_accounts_cached", count=len(self._accounts))
        return self._accounts

    async def for_currency(self, currency: str) -> BankAccount | None:
        """Pick the account for ``currency``.

        Preference: exact configured name, then the first word of that name,
        then an accepted account in the currency, then any account in the
        currency, and finally the configured fallback label. Returns ``None``
        only when the currency has no configuration at all.
        """
        config = self.config.get(currency)
        if config is None:
            return None

        accounts = await self.accounts()
        first_word = config.name.split(" ")[0]
        matchers = (
            lambda acc: acc.get("name") == config.name,
            lambda acc: first_word in str(acc.get("name") or ""),
            lambda acc: acc.get("currency") == currency and acc.get("status") == "accepted",
            lambda acc: acc.get("currency") == currency,
        )
        for matches in matchers:
            for account in accounts:
                if matches(account):
                    return BankAccount(
                        name=str(account.get("name") or config.name),
                        currency=str(account.get("currency") or currency),
                        id=str(account["id"]) if account.get("id") is not None else None,
                        number=account.get("number"),
                    )

        logger.warning("bank_account_fallback", currency=currency, fallback=config.fallback)
        return BankAccount(name=config.fallback, currency=currency, fallback=True)


@dataclass
class RateLimitStats:
    """Rate limit headers observed on CRM responses during one run."""

    requests: int = 0
    throttled: int = 0
    remaining: int | None = None
    limit: int | None = None
    history: list[int] = field(default_factory=list)

    def record(self, headers: Any, status_code: int) -> None:
        self.requests += 1
        if status_code == 429:
            self.throttled += 1
        remaining = _header_int(headers, "x-ratelimit-remaining")
        if remaining is not None:
            self.remaining = remaining
            self.history.append(remaining)
            del self.history[:-50]
        limit = _header_int(headers, "x-ratelimit-limit")
        if limit is not None:
            self.limit = limit

    @property
    def near_limit(self) -> bool:
        if self.remaining is None or not self.limit:
            return False
        return self.remaining <= max(1, self.limit // 10)

    def reset(self) -> None:
        self.requests = 0
        self.throttled = 0
        self.remaining = None
        self.limit = None
        self.history.clear()


def _header_int(headers: Any, name: str) -> int | None:
    try:
        value = headers.get(name)
    except AttributeError:
        return None
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
