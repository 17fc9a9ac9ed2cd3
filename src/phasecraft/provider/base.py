"""Provider contract and the shared resilience core used by every adapter."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, TypeVar

from phasecraft.errors import ProviderError, RetryExhaustedError, UnauthenticatedError
from phasecraft.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0

T = TypeVar("T")


@dataclass(slots=True)
class Response:
    """Completed model call."""

    content: str
    tokens_input: int
    tokens_output: int
    model: str
    provider: str
    timestamp: datetime = field(default_factory=utc_now)
    rate_limit_remaining: int | None = None
    quota_remaining: int | None = None


@dataclass(slots=True)
class RateLimitInfo:
    """Request-rate snapshot; `None` fields are unknown."""

    requests_remaining: int | None = None
    requests_limit: int | None = None
    reset_at: datetime | None = None
    retry_after_seconds: float | None = None


@dataclass(slots=True)
class QuotaInfo:
    """Token/cost budget snapshot; `None` fields are unknown."""

    tokens_remaining: int | None = None
    tokens_limit: int | None = None
    cost_remaining: float | None = None
    cost_limit: float | None = None
    reset_at: datetime | None = None


@dataclass(slots=True)
class Model:
    provider: str
    name: str
    display_name: str = ""
    capabilities: tuple[str, ...] = ()
    price_input: float = 0.0  # per 1K tokens
    price_output: float = 0.0  # per 1K tokens


class Provider(Protocol):
    """Protocol implemented by backend adapters."""

    @property
    def name(self) -> str: ...

    def authenticate(self, api_key: str) -> None: ...

    def is_authenticated(self) -> bool: ...

    def list_models(self) -> list[Model]: ...

    def discover_models(self) -> list[Model]: ...

    def call(self, model: str, prompt: str) -> Response: ...

    def stream(self, model: str, prompt: str) -> Iterator[str]: ...

    def get_rate_limit_info(self) -> RateLimitInfo | None: ...

    def get_quota_info(self) -> QuotaInfo | None: ...

    def supports_coding_plan(self) -> bool: ...


class BaseProvider:
    """Authentication state, capability defaults, and retry-with-backoff."""

    def __init__(
        self,
        name: str,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._name = name
        self._api_key = ""
        self._authenticated = False
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self._sleep = sleep

    @property
    def name(self) -> str:
        return self._name

    @property
    def api_key(self) -> str:
        return self._api_key

    def authenticate(self, api_key: str) -> None:
        if not api_key:
            raise UnauthenticatedError("API key cannot be empty", provider=self._name)
        self._api_key = api_key
        self._authenticated = True

    def is_authenticated(self) -> bool:
        return self._authenticated

    def discover_models(self) -> list[Model]:
        raise ProviderError(
            f"provider {self._name} does not support dynamic model discovery",
            code="unsupported",
            provider=self._name,
        )

    def get_rate_limit_info(self) -> RateLimitInfo | None:
        return None

    def get_quota_info(self) -> QuotaInfo | None:
        return None

    def supports_coding_plan(self) -> bool:
        return False

    def require_authenticated(self) -> None:
        if not self._authenticated:
            raise UnauthenticatedError(
                f"provider {self._name} is not authenticated",
                provider=self._name,
            )

    def retry_with_backoff(self, fn: Callable[[], T]) -> T:
        """Run `fn`, retrying retryable provider failures with exponential backoff.

        Attempt `n` (zero-based) is followed by a `base_delay * 2**n` pause. Failures
        the adapter marked non-retryable propagate immediately. After
        `max_retries + 1` failed attempts a `RetryExhaustedError` naming the attempt
        count and the last cause is raised.
        """

        attempts = self.max_retries + 1
        last_error: ProviderError | None = None
        for attempt in range(attempts):
            try:
                return fn()
            except ProviderError as error:
                if not error.retryable:
                    raise
                last_error = error
            if attempt == attempts - 1:
                break
            delay = self.base_delay_seconds * (2**attempt)
            logger.debug(
                "Retrying provider call (provider=%s attempt=%d delay=%.2fs error=%s).",
                self._name,
                attempt + 1,
                delay,
                last_error,
            )
            self._sleep(delay)

        raise RetryExhaustedError(
            f"failed after {attempts} attempts: {last_error}",
            provider=self._name,
            status_code=last_error.status_code if last_error is not None else None,
            attempts=attempts,
            last_error=last_error,
        ) from last_error
