"""Error hierarchy shared by the store, providers, and execution engine."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class PhasecraftError(Exception):
    """Base error with a stable machine-readable code."""

    message: str
    code: str = "phasecraft_error"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class NotFoundError(PhasecraftError):
    """A task, phase, project, or context row is missing."""

    code: str = "not_found"


@dataclass(slots=True)
class InvalidStateError(PhasecraftError):
    """Operation is not allowed from the current engine or task state."""

    code: str = "invalid_state"


@dataclass(slots=True)
class FilesystemError(PhasecraftError):
    """Generated file could not be materialized."""

    code: str = "filesystem_error"
    path: str | None = None


@dataclass(slots=True)
class MalformedResponseError(PhasecraftError):
    """Model output does not match the code-generation manifest schema."""

    code: str = "malformed_response"


@dataclass(slots=True)
class ProviderError(PhasecraftError):
    """Backend call failed; `retryable` drives the backoff wrapper."""

    code: str = "provider_error"
    provider: str | None = None
    status_code: int | None = None
    retryable: bool = False


@dataclass(slots=True)
class UnauthenticatedError(ProviderError):
    """Provider has no credentials or failed to authenticate."""

    code: str = "unauthenticated"


@dataclass(slots=True)
class RateLimitExceededError(ProviderError):
    """Pre-flight admission refused the call."""

    code: str = "rate_limit_exceeded"
    retry_after_seconds: float | None = None


@dataclass(slots=True)
class RetryExhaustedError(ProviderError):
    """Every attempt of a retried call failed."""

    code: str = "retry_exhausted"
    attempts: int = 0
    last_error: BaseException | None = None
