"""OpenAI chat-completions adapter and the OpenAI-compatible backends built on it."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any

import httpx

from phasecraft.errors import MalformedResponseError
from phasecraft.provider.base import Model, QuotaInfo, RateLimitInfo, Response
from phasecraft.provider.http import (
    HttpProvider,
    header_float,
    header_int,
    header_reset_at,
)

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
REQUESTY_BASE_URL = "https://router.requesty.ai/v1"
ZAI_BASE_URL = "https://api.z.ai/api/paas/v4"
KIMI_BASE_URL = "https://api.moonshot.cn/v1"

_OPENAI_PRICES: tuple[tuple[str, float, float], ...] = (
    ("gpt-4o-mini", 0.00015, 0.0006),
    ("gpt-4o", 0.0025, 0.01),
    ("gpt-4", 0.03, 0.06),
    ("gpt-3.5", 0.0015, 0.002),
)


class OpenAICompatibleProvider(HttpProvider):
    """Chat-completions wire format shared by several vendors."""

    static_models: tuple[Model, ...] = ()

    def list_models(self) -> list[Model]:
        self.require_authenticated()
        if self.static_models:
            return list(self.static_models)
        return self.discover_models()

    def discover_models(self) -> list[Model]:
        self.require_authenticated()
        body = self.retry_with_backoff(lambda: self.get_json("/models"))
        entries = body.get("data")
        if not isinstance(entries, list):
            raise MalformedResponseError(f"{self.name} /models response has no data list")
        return [
            self.model_for_id(str(entry["id"]))
            for entry in entries
            if isinstance(entry, dict) and entry.get("id")
        ]

    def model_for_id(self, model_id: str) -> Model:
        return Model(
            provider=self.name,
            name=model_id,
            display_name=model_id,
            capabilities=("text", "streaming"),
        )

    def call(self, model: str, prompt: str) -> Response:
        self.require_authenticated()
        payload = self.request_payload(model, prompt, stream=False)
        body = self.retry_with_backoff(lambda: self.post_json("/chat/completions", payload))

        choices = body.get("choices")
        if not isinstance(choices, list) or not choices:
            raise MalformedResponseError(f"{self.name} response has no choices")
        message = choices[0].get("message") or {}
        usage = body.get("usage") or {}
        rate_limit = self.get_rate_limit_info()
        quota = self.get_quota_info()
        return Response(
            content=str(message.get("content") or ""),
            tokens_input=int(usage.get("prompt_tokens", 0)),
            tokens_output=int(usage.get("completion_tokens", 0)),
            model=str(body.get("model") or model),
            provider=self.name,
            rate_limit_remaining=rate_limit.requests_remaining if rate_limit else None,
            quota_remaining=quota.tokens_remaining if quota else None,
        )

    def stream(self, model: str, prompt: str) -> Iterator[str]:
        self.require_authenticated()
        payload = self.request_payload(model, prompt, stream=True)
        lines = self.retry_with_backoff(
            lambda: self.open_line_stream("/chat/completions", payload),
        )
        return _content_deltas(self.name, lines)

    def request_payload(self, model: str, prompt: str, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
        }
        if stream:
            payload["stream"] = True
        return payload


class OpenAIProvider(OpenAICompatibleProvider):
    def __init__(self, *, base_url: str = OPENAI_BASE_URL, **kwargs: Any) -> None:
        super().__init__("openai", base_url=base_url, **kwargs)

    def model_for_id(self, model_id: str) -> Model:
        price_input, price_output = 0.0, 0.0
        for prefix, model_input, model_output in _OPENAI_PRICES:
            if model_id.startswith(prefix):
                price_input, price_output = model_input, model_output
                break
        return Model(
            provider=self.name,
            name=model_id,
            display_name=model_id,
            capabilities=("text", "code", "streaming"),
            price_input=price_input,
            price_output=price_output,
        )

    def parse_rate_limit(self, headers: httpx.Headers) -> RateLimitInfo | None:
        return _split_rate_limit(headers)

    def parse_quota(self, headers: httpx.Headers) -> QuotaInfo | None:
        return _split_quota(headers)


class RequestyProvider(OpenAICompatibleProvider):
    """Requesty router; model ids are `<vendor>/<model>`."""

    def __init__(self, *, base_url: str = REQUESTY_BASE_URL, **kwargs: Any) -> None:
        super().__init__("requesty", base_url=base_url, **kwargs)

    def parse_rate_limit(self, headers: httpx.Headers) -> RateLimitInfo | None:
        remaining = header_int(headers, "x-ratelimit-remaining")
        if remaining is None:
            return None
        return RateLimitInfo(
            requests_remaining=remaining,
            requests_limit=header_int(headers, "x-ratelimit-limit"),
            reset_at=header_reset_at(headers, "x-ratelimit-reset"),
            retry_after_seconds=header_float(headers, "retry-after"),
        )

    def parse_quota(self, headers: httpx.Headers) -> QuotaInfo | None:
        remaining = header_int(headers, "x-quota-remaining")
        if remaining is None:
            return None
        return QuotaInfo(tokens_remaining=remaining)


class ZaiProvider(OpenAICompatibleProvider):
    """Z.ai GLM models; supports coding plans."""

    static_models = (
        Model("zai", "glm-4.7", "GLM-4.7", ("text", "code", "coding_plan"), 0.0005, 0.0015),
        Model("zai", "glm-4.6", "GLM-4.6", ("text", "code", "coding_plan"), 0.0006, 0.0022),
        Model("zai", "glm-4.6v", "GLM-4.6V (Multimodal)", ("text", "vision"), 0.0008, 0.0028),
    )

    def __init__(self, *, base_url: str = ZAI_BASE_URL, **kwargs: Any) -> None:
        super().__init__("zai", base_url=base_url, **kwargs)

    def supports_coding_plan(self) -> bool:
        return True

    def parse_rate_limit(self, headers: httpx.Headers) -> RateLimitInfo | None:
        remaining = header_int(headers, "x-ratelimit-remaining")
        limit = header_int(headers, "x-ratelimit-limit")
        if remaining is None and limit is None:
            return None
        return RateLimitInfo(
            requests_remaining=remaining,
            requests_limit=limit,
            reset_at=header_reset_at(headers, "x-ratelimit-reset"),
            retry_after_seconds=header_float(headers, "retry-after"),
        )

    def parse_quota(self, headers: httpx.Headers) -> QuotaInfo | None:
        remaining = header_int(headers, "x-quota-tokens-remaining")
        limit = header_int(headers, "x-quota-tokens-limit")
        if remaining is None and limit is None:
            return None
        return QuotaInfo(tokens_remaining=remaining, tokens_limit=limit)


class KimiProvider(OpenAICompatibleProvider):
    """Moonshot Kimi models; supports coding plans."""

    static_models = (
        Model("kimi", "moonshot-v1-8k", "Moonshot v1 8K", ("text", "coding_plan"), 0.012, 0.012),
        Model("kimi", "moonshot-v1-32k", "Moonshot v1 32K", ("text", "coding_plan"), 0.024, 0.024),
        Model(
            "kimi",
            "moonshot-v1-128k",
            "Moonshot v1 128K",
            ("text", "coding_plan"),
            0.060,
            0.060,
        ),
    )

    def __init__(self, *, base_url: str = KIMI_BASE_URL, **kwargs: Any) -> None:
        super().__init__("kimi", base_url=base_url, **kwargs)

    def supports_coding_plan(self) -> bool:
        return True

    def parse_rate_limit(self, headers: httpx.Headers) -> RateLimitInfo | None:
        return _split_rate_limit(headers)

    def parse_quota(self, headers: httpx.Headers) -> QuotaInfo | None:
        return _split_quota(headers)


def _split_rate_limit(headers: httpx.Headers) -> RateLimitInfo | None:
    remaining = header_int(headers, "x-ratelimit-remaining-requests")
    limit = header_int(headers, "x-ratelimit-limit-requests")
    if remaining is None and limit is None:
        return None
    return RateLimitInfo(
        requests_remaining=remaining,
        requests_limit=limit,
        reset_at=header_reset_at(headers, "x-ratelimit-reset-requests"),
        retry_after_seconds=header_float(headers, "retry-after"),
    )


def _split_quota(headers: httpx.Headers) -> QuotaInfo | None:
    remaining = header_int(headers, "x-ratelimit-remaining-tokens")
    limit = header_int(headers, "x-ratelimit-limit-tokens")
    if remaining is None and limit is None:
        return None
    return QuotaInfo(
        tokens_remaining=remaining,
        tokens_limit=limit,
        reset_at=header_reset_at(headers, "x-ratelimit-reset-tokens"),
    )


def _content_deltas(provider: str, lines: Iterator[str]) -> Iterator[str]:
    for line in lines:
        if not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if data == "[DONE]":
            return
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable %s stream line: %r", provider, data[:120])
            continue
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                yield str(delta["content"])
