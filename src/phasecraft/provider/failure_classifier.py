"""Deterministic classification of failed provider exchanges for retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import httpx

from phasecraft.errors import ProviderError, UnauthenticatedError

FAILURE_CLASSIFIER_VERSION = 1


class FailureClass(str, Enum):
    BACKEND_TRANSIENT = "backend_transient"
    RATE_LIMITED = "rate_limited"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"


RETRYABLE_FAILURE_CLASSES = frozenset({FailureClass.BACKEND_TRANSIENT, FailureClass.RATE_LIMITED})

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "invalid_api_key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "model_not_found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "overloaded",
    "temporarily unavailable",
    "try again later",
    "please retry",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_FAILURE_CLASSES


def classify_http_failure(*, provider: str, status_code: int, body: str) -> FailureClassification:
    """Classify a non-2xx response by status code first, then body patterns."""

    haystack = body.lower()

    if status_code in {401, 403}:
        return _classified(provider, FailureClass.ACCESS_OR_AUTH, f"http_{status_code}", None)

    if status_code == 429:
        pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
        if pattern is not None:
            return _classified(provider, FailureClass.BILLING_OR_QUOTA, "http_429_quota", pattern)
        return _classified(provider, FailureClass.RATE_LIMITED, "http_429", None)

    if status_code >= 500:
        return _classified(provider, FailureClass.BACKEND_TRANSIENT, "http_5xx", None)

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return _classified(provider, FailureClass.BILLING_OR_QUOTA, "billing_or_quota", pattern)

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return _classified(provider, FailureClass.ACCESS_OR_AUTH, "access_or_auth", pattern)

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return _classified(
            provider,
            FailureClass.MODEL_NOT_AVAILABLE,
            "model_not_available",
            pattern,
        )

    if status_code in {408, 409}:
        return _classified(provider, FailureClass.BACKEND_TRANSIENT, f"http_{status_code}", None)

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return _classified(provider, FailureClass.BACKEND_TRANSIENT, "generic_transient", pattern)

    return _classified(
        provider,
        FailureClass.BACKEND_NON_RETRYABLE,
        "fallback_non_retryable",
        None,
    )


def classify_transport_failure(
    *,
    provider: str,
    error: httpx.TransportError,
) -> FailureClassification:
    """Timeouts and connection-level failures are always transient."""

    rule = "timeout" if isinstance(error, httpx.TimeoutException) else "transport_error"
    return _classified(provider, FailureClass.BACKEND_TRANSIENT, rule, None)


def provider_error_for_response(*, provider: str, response: httpx.Response) -> ProviderError:
    """Build the `ProviderError` an adapter raises for a failed HTTP response."""

    body = _safe_body(response)
    classification = classify_http_failure(
        provider=provider,
        status_code=response.status_code,
        body=body,
    )
    message = f"{provider} returned HTTP {response.status_code}: {_truncate(body)}"
    if classification.failure_class is FailureClass.ACCESS_OR_AUTH:
        return UnauthenticatedError(
            message,
            provider=provider,
            status_code=response.status_code,
        )
    return ProviderError(
        message,
        code=classification.reason_code,
        provider=provider,
        status_code=response.status_code,
        retryable=classification.retryable,
    )


def provider_error_for_transport(*, provider: str, error: httpx.TransportError) -> ProviderError:
    classification = classify_transport_failure(provider=provider, error=error)
    return ProviderError(
        f"{provider} request failed: {error}",
        code=classification.reason_code,
        provider=provider,
        retryable=classification.retryable,
    )


def _classified(
    provider: str,
    failure_class: FailureClass,
    rule: str,
    pattern: str | None,
) -> FailureClassification:
    return FailureClassification(
        failure_class=failure_class,
        reason_code=f"{provider}_{failure_class.value}",
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _safe_body(response: httpx.Response) -> str:
    try:
        return response.text
    except httpx.ResponseNotRead:
        return response.read().decode("utf-8", errors="replace")


def _truncate(text: str, limit: int = 300) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
