"""Anthropic messages API adapter."""

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

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 8192

_MODELS: tuple[tuple[str, str, float, float], ...] = (
    ("claude-sonnet-4-5", "Claude Sonnet 4.5", 0.003, 0.015),
    ("claude-opus-4-1", "Claude Opus 4.1", 0.015, 0.075),
    ("claude-haiku-4-5", "Claude Haiku 4.5", 0.001, 0.005),
    ("claude-3-5-haiku-latest", "Claude 3.5 Haiku", 0.0008, 0.004),
)


class AnthropicProvider(HttpProvider):
    def __init__(self, *, base_url: str = ANTHROPIC_BASE_URL, **kwargs: Any) -> None:
        super().__init__("anthropic", base_url=base_url, **kwargs)

    def auth_headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION}

    def list_models(self) -> list[Model]:
        self.require_authenticated()
        return [
            Model(
                provider=self.name,
                name=name,
                display_name=display_name,
                capabilities=("text", "code", "streaming"),
                price_input=price_input,
                price_output=price_output,
            )
            for name, display_name, price_input, price_output in _MODELS
        ]

    def call(self, model: str, prompt: str) -> Response:
        self.require_authenticated()
        payload = _request_payload(model, prompt, stream=False)
        body = self.retry_with_backoff(lambda: self.post_json("/messages", payload))

        blocks = body.get("content")
        if not isinstance(blocks, list):
            raise MalformedResponseError("anthropic response has no content blocks")
        content = "".join(
            str(block.get("text", ""))
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )
        usage = body.get("usage") or {}
        rate_limit = self.get_rate_limit_info()
        return Response(
            content=content,
            tokens_input=int(usage.get("input_tokens", 0)),
            tokens_output=int(usage.get("output_tokens", 0)),
            model=str(body.get("model") or model),
            provider=self.name,
            rate_limit_remaining=rate_limit.requests_remaining if rate_limit else None,
        )

    def stream(self, model: str, prompt: str) -> Iterator[str]:
        self.require_authenticated()
        payload = _request_payload(model, prompt, stream=True)
        lines = self.retry_with_backoff(lambda: self.open_line_stream("/messages", payload))
        return _text_deltas(lines)

    def parse_rate_limit(self, headers: httpx.Headers) -> RateLimitInfo | None:
        remaining = header_int(headers, "anthropic-ratelimit-requests-remaining")
        limit = header_int(headers, "anthropic-ratelimit-requests-limit")
        if remaining is None and limit is None:
            return None
        return RateLimitInfo(
            requests_remaining=remaining,
            requests_limit=limit,
            reset_at=header_reset_at(headers, "anthropic-ratelimit-requests-reset"),
            retry_after_seconds=header_float(headers, "retry-after"),
        )

    def parse_quota(self, headers: httpx.Headers) -> QuotaInfo | None:
        remaining = header_int(headers, "anthropic-ratelimit-tokens-remaining")
        limit = header_int(headers, "anthropic-ratelimit-tokens-limit")
        if remaining is None and limit is None:
            return None
        return QuotaInfo(
            tokens_remaining=remaining,
            tokens_limit=limit,
            reset_at=header_reset_at(headers, "anthropic-ratelimit-tokens-reset"),
        )


def _request_payload(model: str, prompt: str, *, stream: bool) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "max_tokens": DEFAULT_MAX_TOKENS,
        "messages": [{"role": "user", "content": prompt}],
    }
    if stream:
        payload["stream"] = True
    return payload


def _text_deltas(lines: Iterator[str]) -> Iterator[str]:
    for line in lines:
        if not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if data == "[DONE]":
            return
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable anthropic stream line: %r", data[:120])
            continue
        if event.get("type") == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                yield str(delta["text"])
        elif event.get("type") == "message_stop":
            return
