"""Retry policy with linear backoff and an injectable sleep."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import structlog

from deal_invoicing.config.settings import Settings
from deal_invoicing.errors import TransientError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class RetryExhaustedError(Exception):
    """All attempts failed with a retryable error."""

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryPolicy:
    """How often and how patiently to retry a transient failure.

    The delay before attempt ``n + 1`` is ``base_delay * n`` seconds.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    retry_on: tuple[type[Exception], ...] = (TransientError,)
    sleep: SleepFn = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings, sleep: SleepFn | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=settings.writeback_max_attempts,
            base_delay=settings.writeback_backoff_seconds,
            sleep=sleep or asyncio.sleep,
        )

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * attempt

    async def run(self, operation: Callable[[], Awaitable[T]], *, label: str = "operation") -> T:
        """Call ``operation`` until it succeeds or attempts run out.

        Non-retryable exceptions propagate immediately. When every attempt
        fails with a retryable error, :class:`RetryExhaustedError` is raised.
        """
        attempts = max(1, self.max_attempts)
        attempt = 1
        while True:
            try:
                return await operation()
            except self.retry_on as e:
                if attempt >= attempts:
                    raise RetryExhaustedError(attempts, e) from e
                delay = self.delay_for(attempt)
                logger.warning(
                    "retrying_after_transient_error",
                    operation=label,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                await self.sleep(delay)
                attempt += 1
