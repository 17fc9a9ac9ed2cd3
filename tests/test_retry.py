from __future__ import annotations

import allure
import pytest

from phasecraft.errors import ProviderError, RetryExhaustedError, UnauthenticatedError
from phasecraft.provider.base import BaseProvider

pytestmark = [
    allure.epic("Provider Resilience"),
    allure.feature("Retry With Backoff"),
]


def _provider(max_retries: int = 3) -> tuple[BaseProvider, list[float]]:
    delays: list[float] = []
    provider = BaseProvider(
        "flaky",
        max_retries=max_retries,
        base_delay_seconds=1.0,
        sleep=delays.append,
    )
    return provider, delays


def _flaky(failures: int, *, retryable: bool = True):
    calls = {"count": 0}

    def fn() -> str:
        calls["count"] += 1
        if calls["count"] <= failures:
            raise ProviderError("HTTP 503", provider="flaky", retryable=retryable)
        return "ok"

    return fn, calls


def test_retry_succeeds_after_transient_failures() -> None:
    provider, delays = _provider()
    fn, calls = _flaky(2)

    assert provider.retry_with_backoff(fn) == "ok"
    assert calls["count"] == 3
    assert delays == [1.0, 2.0]


def test_retry_exhaustion_names_attempt_count_and_last_cause() -> None:
    provider, delays = _provider(max_retries=3)
    fn, calls = _flaky(100)

    with pytest.raises(RetryExhaustedError) as excinfo:
        provider.retry_with_backoff(fn)

    assert calls["count"] == 4
    assert delays == [1.0, 2.0, 4.0]
    assert str(excinfo.value) == "failed after 4 attempts: HTTP 503"
    assert excinfo.value.attempts == 4
    assert isinstance(excinfo.value.last_error, ProviderError)


def test_non_retryable_failure_propagates_immediately() -> None:
    provider, delays = _provider()
    fn, calls = _flaky(100, retryable=False)

    with pytest.raises(ProviderError, match="HTTP 503") as excinfo:
        provider.retry_with_backoff(fn)

    assert not isinstance(excinfo.value, RetryExhaustedError)
    assert calls["count"] == 1
    assert delays == []


def test_zero_retries_makes_a_single_attempt() -> None:
    provider, delays = _provider(max_retries=0)
    fn, calls = _flaky(100)

    with pytest.raises(RetryExhaustedError, match="failed after 1 attempts"):
        provider.retry_with_backoff(fn)

    assert calls["count"] == 1
    assert delays == []


def test_authenticate_rejects_empty_key() -> None:
    provider, _ = _provider()

    with pytest.raises(UnauthenticatedError):
        provider.authenticate("")
    assert not provider.is_authenticated()

    provider.authenticate("secret")
    assert provider.is_authenticated()
    assert provider.api_key == "secret"


def test_base_provider_defaults() -> None:
    provider, _ = _provider()

    assert provider.get_rate_limit_info() is None
    assert provider.get_quota_info() is None
    assert provider.supports_coding_plan() is False
    with pytest.raises(ProviderError) as excinfo:
        provider.discover_models()
    assert excinfo.value.code == "unsupported"
