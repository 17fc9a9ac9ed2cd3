"""httpx-based adapter base: JSON calls, line streaming, and limit snapshots."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from typing import Any

import httpx

from phasecraft.errors import MalformedResponseError
from phasecraft.provider.base import (
    DEFAULT_BASE_DELAY_SECONDS,
    DEFAULT_MAX_RETRIES,
    BaseProvider,
    QuotaInfo,
    RateLimitInfo,
)
from phasecraft.provider.failure_classifier import (
    provider_error_for_response,
    provider_error_for_transport,
)
from phasecraft.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_USER_AGENT = "phasecraft/0.1 (+https://pypi.org/project/phasecraft/)"


class HttpProvider(BaseProvider):
    """Provider adapter over a shared `httpx.Client`.

    Subclasses supply auth headers and wire payloads; this base turns failed
    exchanges into classified `ProviderError`s and keeps the rate-limit/quota
    snapshot from the headers of the latest response.
    """

    def __init__(
        self,
        name: str,
        *,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(
            name,
            max_retries=max_retries,
            base_delay_seconds=base_delay_seconds,
            sleep=sleep,
        )
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"User-Agent": DEFAULT_USER_AGENT},
            transport=transport,
        )
        self._limits_lock = threading.Lock()
        self._rate_limit: RateLimitInfo | None = None
        self._rate_limit_captured_at: datetime | None = None
        self._quota: QuotaInfo | None = None

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpProvider:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def get_rate_limit_info(self) -> RateLimitInfo | None:
        """Latest header snapshot, or `None` once its reset or retry-after has passed."""

        with self._limits_lock:
            info = self._rate_limit
            if info is None:
                return None
            now = utc_now()
            expired = info.reset_at is not None and now >= info.reset_at
            if (
                not expired
                and info.retry_after_seconds
                and self._rate_limit_captured_at is not None
            ):
                retry_at = self._rate_limit_captured_at + timedelta(
                    seconds=info.retry_after_seconds,
                )
                expired = now >= retry_at
            if expired:
                self._rate_limit = None
                return None
            return info

    def get_quota_info(self) -> QuotaInfo | None:
        with self._limits_lock:
            info = self._quota
            if info is not None and info.reset_at is not None and utc_now() >= info.reset_at:
                self._quota = None
                return None
            return info

    def auth_headers(self) -> dict[str, str]:
        """Headers that authenticate a request; bearer token by default."""

        return {"Authorization": f"Bearer {self.api_key}"}

    def parse_rate_limit(self, headers: httpx.Headers) -> RateLimitInfo | None:
        return None

    def parse_quota(self, headers: httpx.Headers) -> QuotaInfo | None:
        return None

    def post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST once; raises classified `ProviderError` on failure."""

        response = self._send("POST", path, json=payload)
        return _decode_json(self.name, response)

    def get_json(self, path: str) -> dict[str, Any]:
        response = self._send("GET", path)
        return _decode_json(self.name, response)

    def open_line_stream(self, path: str, payload: dict[str, Any]) -> Iterator[str]:
        """Open a streaming POST and return an iterator over its non-empty lines.

        The status check happens here, before the first line is consumed.
        """

        request = self._client.build_request(
            "POST",
            path,
            json=payload,
            headers=self.auth_headers(),
        )
        try:
            response = self._client.send(request, stream=True)
        except httpx.TransportError as error:
            raise provider_error_for_transport(provider=self.name, error=error) from error
        if not response.is_success:
            try:
                response.read()
                raise provider_error_for_response(provider=self.name, response=response)
            finally:
                response.close()
        self._capture_limits(response.headers)
        return _iter_lines(response)

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, path, headers=self.auth_headers(), **kwargs)
        except httpx.TransportError as error:
            logger.warning("Transport error calling %s %s: %s", self.name, path, error)
            raise provider_error_for_transport(provider=self.name, error=error) from error
        self._capture_limits(response.headers)
        if not response.is_success:
            raise provider_error_for_response(provider=self.name, response=response)
        return response

    def _capture_limits(self, headers: httpx.Headers) -> None:
        rate_limit = self.parse_rate_limit(headers)
        quota = self.parse_quota(headers)
        with self._limits_lock:
            if rate_limit is not None:
                self._rate_limit = rate_limit
                self._rate_limit_captured_at = utc_now()
            if quota is not None:
                self._quota = quota


def header_int(headers: httpx.Headers, name: str) -> int | None:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(float(raw.strip()))
    except ValueError:
        return None


def header_float(headers: httpx.Headers, name: str) -> float | None:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return float(raw.strip())
    except ValueError:
        return None


def header_reset_at(headers: httpx.Headers, name: str) -> datetime | None:
    """Parse a reset header given as RFC 3339, epoch seconds, or seconds-from-now."""

    raw = headers.get(name)
    if raw is None:
        return None
    value = raw.strip()
    try:
        number = float(value.rstrip("s"))
    except ValueError:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    # Values this large are epoch timestamps, smaller ones are relative.
    if number > 1_000_000_000:
        return datetime.fromtimestamp(number, tz=utc_now().tzinfo)
    return utc_now() + timedelta(seconds=number)


def _decode_json(provider: str, response: httpx.Response) -> dict[str, Any]:
    try:
        parsed = response.json()
    except json.JSONDecodeError as error:
        raise MalformedResponseError(f"{provider} returned a non-JSON body") from error
    if not isinstance(parsed, dict):
        raise MalformedResponseError(f"{provider} returned a non-object JSON body")
    return parsed


def _iter_lines(response: httpx.Response) -> Iterator[str]:
    try:
        for line in response.iter_lines():
            if line.strip():
                yield line
    finally:
        response.close()
