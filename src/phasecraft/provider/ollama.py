"""Local Ollama adapter: no API key, NDJSON streaming."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any

from phasecraft.errors import MalformedResponseError, ProviderError, UnauthenticatedError
from phasecraft.provider.base import Model, Response
from phasecraft.provider.http import HttpProvider

logger = logging.getLogger(__name__)

OLLAMA_BASE_URL = "http://localhost:11434"


class OllamaProvider(HttpProvider):
    """Talks to a local Ollama server; authentication is a reachability check."""

    def __init__(self, *, base_url: str = OLLAMA_BASE_URL, **kwargs: Any) -> None:
        super().__init__("ollama", base_url=base_url, **kwargs)

    def auth_headers(self) -> dict[str, str]:
        return {}

    def authenticate(self, api_key: str = "") -> None:
        """Mark authenticated once the server answers `/api/tags`; the key is ignored."""

        try:
            self.get_json("/api/tags")
        except ProviderError as error:
            raise UnauthenticatedError(
                f"failed to connect to Ollama at {self.base_url}: {error}",
                provider=self.name,
                status_code=error.status_code,
            ) from error
        self._authenticated = True

    def list_models(self) -> list[Model]:
        return self.discover_models()

    def discover_models(self) -> list[Model]:
        self.require_authenticated()
        body = self.retry_with_backoff(lambda: self.get_json("/api/tags"))
        entries = body.get("models")
        if not isinstance(entries, list):
            raise MalformedResponseError("ollama /api/tags response has no models list")
        return [
            Model(
                provider=self.name,
                name=str(entry["name"]),
                display_name=str(entry["name"]),
                capabilities=("text", "streaming"),
            )
            for entry in entries
            if isinstance(entry, dict) and entry.get("name")
        ]

    def call(self, model: str, prompt: str) -> Response:
        self.require_authenticated()
        payload = _chat_payload(model, prompt, stream=False)
        body = self.retry_with_backoff(lambda: self.post_json("/api/chat", payload))
        message = body.get("message") or {}
        content = str(message.get("content") or body.get("response") or "")
        return Response(
            content=content,
            tokens_input=int(body.get("prompt_eval_count", 0)),
            tokens_output=int(body.get("eval_count", 0)),
            model=str(body.get("model") or model),
            provider=self.name,
        )

    def stream(self, model: str, prompt: str) -> Iterator[str]:
        self.require_authenticated()
        payload = _chat_payload(model, prompt, stream=True)
        lines = self.retry_with_backoff(lambda: self.open_line_stream("/api/chat", payload))
        return _ndjson_chunks(lines)


def _chat_payload(model: str, prompt: str, *, stream: bool) -> dict[str, Any]:
    return {
        "model": model,
        "messages": [{"role": "user", "content": prompt}],
        "stream": stream,
    }


def _ndjson_chunks(lines: Iterator[str]) -> Iterator[str]:
    for line in lines:
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable ollama stream line: %r", line[:120])
            continue
        message = chunk.get("message") or {}
        if message.get("content"):
            yield str(message["content"])
        if chunk.get("done"):
            return
