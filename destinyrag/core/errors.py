from __future__ import annotations


class DestinyError(Exception):
    """Base error for destinyrag."""


class ProviderConfigError(DestinyError):
    """Missing or invalid provider configuration."""


class LLMError(DestinyError):
    """Language model call failure."""


class LLMUpstreamError(LLMError):
    """Upstream call failed after classification and retries."""

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        attempts: int,
        status: int | str | None = None,
        code: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.attempts = attempts
        self.status = status
        self.code = code
        self.retryable = retryable


class LLMTimeoutError(LLMError):
    """Local deadline elapsed before the upstream call returned."""


class LLMCancelledError(LLMError):
    """Caller cancelled the in-flight call."""


class LLMResponseError(LLMError):
    """Upstream returned a blank or malformed payload."""


class NotFoundError(DestinyError):
    """Requested record does not exist."""


class ReportNotFoundError(NotFoundError):
    """Report lookup failed."""


class ChartNotFoundError(NotFoundError):
    """Chart lookup failed; jobs referencing it cannot succeed on retry."""


class InvalidRequestError(DestinyError):
    """Caller supplied an invalid or oversized field."""


class QuotaExceededError(DestinyError):
    """Question quota for the current period is exhausted."""

    def __init__(
        self,
        message: str,
        *,
        used: int,
        limit: int | None,
        upgrade_hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.used = used
        self.limit = limit
        self.remaining = 0
        self.upgrade_hint = upgrade_hint


class UnknownJobTypeError(DestinyError):
    """Job row carries a job_type with no registered pipeline."""


class DatabaseError(DestinyError):
    """Database layer failure."""
