"""Exception hierarchy shared by the collaborator adapters and the engine."""

from typing import Any


class CollaboratorError(Exception):
    """Base exception for failures reported by an external collaborator."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: Any = None,
        source: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.details = details
        self.source = source


class TransientError(CollaboratorError):
    """Network failure, timeout or server-side error; safe to retry."""

    pass


class RateLimitError(TransientError):
    """Rate limit exceeded."""

    @property
    def retry_after(self) -> int | None:
        if isinstance(self.details, dict):
            value = self.details.get("retry_after")
            return int(value) if value is not None else None
        return None


class NotFoundError(CollaboratorError):
    """The requested record does not exist."""

    pass


class DealValidationError(Exception):
    """A deal cannot be billed until someone fixes its data."""

    def __init__(self, deal_id: int, reason: str):
        super().__init__(f"Deal {deal_id}: {reason}")
        self.deal_id = deal_id
        self.reason = reason


class WriteBackError(Exception):
    """Deal fields could not be written back to the CRM."""

    def __init__(
        self,
        deal_id: int,
        fields: dict[str, Any],
        attempts: int,
        cause: Exception | None = None,
    ):
        super().__init__(
            f"Write-back for deal {deal_id} failed after {attempts} attempt(s): {cause}"
        )
        self.deal_id = deal_id
        self.fields = fields
        self.attempts = attempts
        self.cause = cause
