"""Named dispatch over provider adapters with rate-limit-aware admission."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Generic, TypeVar

from phasecraft.errors import (
    NotFoundError,
    PhasecraftError,
    RateLimitExceededError,
    UnauthenticatedError,
)
from phasecraft.provider.base import Model, Provider, QuotaInfo, RateLimitInfo, Response
from phasecraft.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300.0
DEFAULT_WARNING_RATIO = 0.10

InfoT = TypeVar("InfoT", RateLimitInfo, QuotaInfo)


@dataclass(slots=True)
class _CacheEntry(Generic[InfoT]):
    info: InfoT
    fetched_at: datetime
    observed_at: datetime


class ProviderBridge:
    """Single call surface over N named providers.

    The first registered provider becomes the default. Rate-limit and quota
    snapshots are cached per provider for `cache_ttl_seconds` (and never past
    the snapshot's own reset time). One plain lock guards both caches, so
    cache reads are serialized as well.

    An exhausted snapshot refuses calls only until its reset time, its
    retry-after hint, or one cache TTL has passed since it was first seen.
    After that one call is let through so the adapter can report fresh limits.
    """

    def __init__(
        self,
        *,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        warning_ratio: float = DEFAULT_WARNING_RATIO,
        refresh_after_call: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._providers: dict[str, Provider] = {}
        self._default_provider: str | None = None
        self._cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self._warning_ratio = warning_ratio
        self._refresh_after_call = refresh_after_call
        self._clock = clock
        self._cache_lock = threading.Lock()
        self._rate_limit_cache: dict[str, _CacheEntry[RateLimitInfo]] = {}
        self._quota_cache: dict[str, _CacheEntry[QuotaInfo]] = {}

    # Registry

    def register_provider(self, provider: Provider | None) -> None:
        if provider is None:
            raise ValueError("provider cannot be None")
        name = provider.name
        if not name:
            raise ValueError("provider name cannot be empty")
        self._providers[name] = provider
        if self._default_provider is None:
            self._default_provider = name
        logger.debug("Registered provider %s (default=%s).", name, self._default_provider)

    @property
    def default_provider(self) -> str | None:
        return self._default_provider

    def set_default_provider(self, name: str) -> None:
        if name not in self._providers:
            raise NotFoundError(f"provider '{name}' not registered")
        self._default_provider = name

    def get_provider(self, name: str | None = None) -> Provider:
        resolved = name or self._default_provider
        if resolved is None:
            raise NotFoundError("no provider registered")
        provider = self._providers.get(resolved)
        if provider is None:
            raise NotFoundError(f"provider '{resolved}' not registered")
        return provider

    def list_providers(self) -> list[str]:
        return sorted(self._providers)

    def supports_coding_plan(self, name: str | None = None) -> bool:
        return self.get_provider(name).supports_coding_plan()

    # Models

    def list_models(self) -> list[Model]:
        """Models of every authenticated provider; per-provider failures are skipped."""

        models: list[Model] = []
        for name in self.list_providers():
            provider = self._providers[name]
            if not provider.is_authenticated():
                continue
            try:
                models.extend(provider.list_models())
            except PhasecraftError as error:
                logger.warning("Skipping models of provider %s: %s", name, error)
        return models

    def list_models_by_provider(self, name: str | None = None) -> list[Model]:
        return self._authenticated_provider(name).list_models()

    def validate_model(self, name: str | None, model: str) -> None:
        provider = self._authenticated_provider(name)
        if any(item.name == model for item in provider.list_models()):
            return
        raise NotFoundError(f"model '{model}' not found in provider '{provider.name}'")

    # Calls

    def call(self, name: str | None, model: str, prompt: str) -> Response:
        provider = self._authenticated_provider(name)
        self._check_rate_limit(provider)
        response = provider.call(model, prompt)
        if self._refresh_after_call:
            self._update_cache_after_call(provider)
        return response

    def stream(self, name: str | None, model: str, prompt: str) -> Iterator[str]:
        provider = self._authenticated_provider(name)
        self._check_rate_limit(provider)
        chunks = provider.stream(model, prompt)
        if self._refresh_after_call:
            threading.Thread(
                target=self._update_cache_after_call,
                args=(provider,),
                name=f"phasecraft-limits-{provider.name}",
                daemon=True,
            ).start()
        return chunks

    # Rate-limit and quota telemetry

    def get_rate_limit_info(self, name: str | None = None) -> RateLimitInfo | None:
        provider = self._authenticated_provider(name)
        with self._cache_lock:
            entry = self._rate_limit_cache.get(provider.name)
        if entry is not None and self._is_fresh(entry.fetched_at, entry.info.reset_at):
            logger.debug("Rate-limit cache hit for %s.", provider.name)
            return entry.info
        info = provider.get_rate_limit_info()
        if info is not None:
            self._store_rate_limit(provider.name, info)
        return info

    def get_quota_info(self, name: str | None = None) -> QuotaInfo | None:
        provider = self._authenticated_provider(name)
        with self._cache_lock:
            entry = self._quota_cache.get(provider.name)
        if entry is not None and self._is_fresh(entry.fetched_at, entry.info.reset_at):
            logger.debug("Quota cache hit for %s.", provider.name)
            return entry.info
        info = provider.get_quota_info()
        if info is not None:
            self._store_quota(provider.name, info)
        return info

    def refresh_rate_limits(self) -> None:
        """Best-effort refresh for every authenticated provider."""

        for name, provider in sorted(self._providers.items()):
            if not provider.is_authenticated():
                continue
            try:
                info = provider.get_rate_limit_info()
            except PhasecraftError as error:
                logger.debug("Rate-limit refresh failed for %s: %s", name, error)
                continue
            if info is not None:
                self._store_rate_limit(name, info)

    def refresh_quotas(self) -> None:
        """Best-effort refresh for every authenticated provider."""

        for name, provider in sorted(self._providers.items()):
            if not provider.is_authenticated():
                continue
            try:
                info = provider.get_quota_info()
            except PhasecraftError as error:
                logger.debug("Quota refresh failed for %s: %s", name, error)
                continue
            if info is not None:
                self._store_quota(name, info)

    def get_all_rate_limits(self) -> dict[str, RateLimitInfo]:
        result: dict[str, RateLimitInfo] = {}
        for name in self.list_providers():
            try:
                info = self.get_rate_limit_info(name)
            except PhasecraftError:
                continue
            if info is not None:
                result[name] = info
        return result

    def get_all_quotas(self) -> dict[str, QuotaInfo]:
        result: dict[str, QuotaInfo] = {}
        for name in self.list_providers():
            try:
                info = self.get_quota_info(name)
            except PhasecraftError:
                continue
            if info is not None:
                result[name] = info
        return result

    def _authenticated_provider(self, name: str | None) -> Provider:
        provider = self.get_provider(name)
        if not provider.is_authenticated():
            raise UnauthenticatedError(
                f"provider '{provider.name}' not authenticated",
                provider=provider.name,
            )
        return provider

    def _check_rate_limit(self, provider: Provider) -> None:
        try:
            info = self.get_rate_limit_info(provider.name)
        except PhasecraftError as error:
            logger.debug(
                "Rate-limit lookup failed for %s, admitting call: %s",
                provider.name,
                error,
            )
            return
        if info is None or info.requests_remaining is None:
            return

        if info.requests_remaining <= 0:
            if self._refusal_window_passed(provider.name, info):
                logger.info(
                    "Rate-limit window of provider %s has passed; admitting call.",
                    provider.name,
                )
                return
            message = f"rate limit exceeded for provider '{provider.name}'"
            if info.retry_after_seconds:
                message += f", retry after {info.retry_after_seconds:g}s"
            raise RateLimitExceededError(
                message,
                provider=provider.name,
                retry_after_seconds=info.retry_after_seconds,
            )

        threshold = (info.requests_limit or 0) * self._warning_ratio
        if info.requests_remaining < threshold:
            logger.warning(
                "Approaching rate limit for provider %s (%d of %d requests remaining).",
                provider.name,
                info.requests_remaining,
                info.requests_limit,
            )

    def _update_cache_after_call(self, provider: Provider) -> None:
        try:
            rate_limit = provider.get_rate_limit_info()
            quota = provider.get_quota_info()
        except PhasecraftError as error:
            logger.debug("Post-call limit refresh failed for %s: %s", provider.name, error)
            return
        if rate_limit is not None:
            self._store_rate_limit(provider.name, rate_limit)
        if quota is not None:
            self._store_quota(provider.name, quota)

    def _store_rate_limit(self, name: str, info: RateLimitInfo) -> None:
        with self._cache_lock:
            self._rate_limit_cache[name] = self._entry(self._rate_limit_cache.get(name), info)

    def _store_quota(self, name: str, info: QuotaInfo) -> None:
        with self._cache_lock:
            self._quota_cache[name] = self._entry(self._quota_cache.get(name), info)

    def _entry(self, previous: _CacheEntry[InfoT] | None, info: InfoT) -> _CacheEntry[InfoT]:
        now = self._clock()
        # Adapters hand back the same object until a new response arrives.
        observed_at = now
        if previous is not None and previous.info is info:
            observed_at = previous.observed_at
        return _CacheEntry(info=info, fetched_at=now, observed_at=observed_at)

    def _refusal_window_passed(self, name: str, info: RateLimitInfo) -> bool:
        now = self._clock()
        if info.reset_at is not None:
            return now >= info.reset_at
        with self._cache_lock:
            entry = self._rate_limit_cache.get(name)
        if entry is None:
            return False
        if info.retry_after_seconds:
            return now >= entry.observed_at + timedelta(seconds=info.retry_after_seconds)
        return now >= entry.observed_at + self._cache_ttl

    def _is_fresh(self, fetched_at: datetime, reset_at: datetime | None) -> bool:
        now = self._clock()
        if now - fetched_at >= self._cache_ttl:
            return False
        return reset_at is None or now < reset_at
