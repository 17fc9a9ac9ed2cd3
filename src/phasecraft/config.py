"""Runtime configuration for providers, bridge, and execution engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

PROVIDER_NAMES: tuple[str, ...] = ("anthropic", "kimi", "ollama", "openai", "requesty", "zai")

# Conventional vendor variables used when no PHASECRAFT_<NAME>_API_KEY is set.
VENDOR_API_KEY_ENV: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "kimi": "MOONSHOT_API_KEY",
    "openai": "OPENAI_API_KEY",
    "requesty": "REQUESTY_API_KEY",
    "zai": "ZAI_API_KEY",
}


@dataclass(slots=True)
class ProviderSettings:
    """Backend selection and credentials."""

    default_provider: str = "anthropic"
    default_model: str = ""
    request_timeout_seconds: float = 120.0
    api_keys: dict[str, str] = field(default_factory=dict)
    base_urls: dict[str, str] = field(default_factory=dict)
    ollama_base_url: str = "http://localhost:11434"


@dataclass(slots=True)
class RetrySettings:
    """Backoff policy shared by every adapter."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0


@dataclass(slots=True)
class BridgeSettings:
    """Rate-limit admission and telemetry cache."""

    cache_ttl_seconds: float = 300.0
    warning_ratio: float = 0.10
    refresh_after_call: bool = True


@dataclass(slots=True)
class ExecutionSettings:
    """Engine output and update-stream settings."""

    output_root: Path = field(default_factory=Path.cwd)
    update_buffer_size: int = 100
    publish_timeout_seconds: float = 1.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".phasecraft/state.db")
    verbose_logging: bool = False
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    bridge: BridgeSettings = field(default_factory=BridgeSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PHASECRAFT_DB_PATH", ".phasecraft/state.db")),
            verbose_logging=_env_bool("PHASECRAFT_VERBOSE_LOGGING", default=False),
            providers=ProviderSettings(
                default_provider=os.getenv("PHASECRAFT_DEFAULT_PROVIDER", "anthropic").strip(),
                default_model=os.getenv("PHASECRAFT_DEFAULT_MODEL", "").strip(),
                request_timeout_seconds=float(
                    os.getenv("PHASECRAFT_REQUEST_TIMEOUT_SECONDS", "120"),
                ),
                api_keys=_collect_api_keys(),
                base_urls=_collect_base_urls(),
                ollama_base_url=os.getenv(
                    "PHASECRAFT_OLLAMA_BASE_URL",
                    os.getenv("OLLAMA_HOST", "http://localhost:11434"),
                ),
            ),
            retry=RetrySettings(
                max_retries=int(os.getenv("PHASECRAFT_MAX_RETRIES", "3")),
                base_delay_seconds=float(os.getenv("PHASECRAFT_RETRY_BASE_DELAY_SECONDS", "1.0")),
            ),
            bridge=BridgeSettings(
                cache_ttl_seconds=float(os.getenv("PHASECRAFT_CACHE_TTL_SECONDS", "300")),
                warning_ratio=float(os.getenv("PHASECRAFT_RATE_LIMIT_WARNING_RATIO", "0.10")),
                refresh_after_call=_env_bool("PHASECRAFT_REFRESH_AFTER_CALL", default=True),
            ),
            execution=ExecutionSettings(
                output_root=Path(os.getenv("PHASECRAFT_OUTPUT_ROOT", "") or Path.cwd()),
                update_buffer_size=int(os.getenv("PHASECRAFT_UPDATE_BUFFER_SIZE", "100")),
                publish_timeout_seconds=float(
                    os.getenv("PHASECRAFT_PUBLISH_TIMEOUT_SECONDS", "1.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error when a value is out of range."""

        if self.providers.default_provider not in PROVIDER_NAMES:
            raise ValueError(
                "PHASECRAFT_DEFAULT_PROVIDER must be one of "
                f"{', '.join(PROVIDER_NAMES)}, got {self.providers.default_provider!r}.",
            )
        if self.providers.request_timeout_seconds <= 0:
            raise ValueError("PHASECRAFT_REQUEST_TIMEOUT_SECONDS must be > 0.")
        _validate_base_url("PHASECRAFT_OLLAMA_BASE_URL", self.providers.ollama_base_url)
        for name, url in self.providers.base_urls.items():
            _validate_base_url(f"PHASECRAFT_{name.upper()}_BASE_URL", url)
        if self.retry.max_retries < 0:
            raise ValueError("PHASECRAFT_MAX_RETRIES must be >= 0.")
        if self.retry.base_delay_seconds < 0:
            raise ValueError("PHASECRAFT_RETRY_BASE_DELAY_SECONDS must be >= 0.")
        if self.bridge.cache_ttl_seconds <= 0:
            raise ValueError("PHASECRAFT_CACHE_TTL_SECONDS must be > 0.")
        if not 0 <= self.bridge.warning_ratio < 1:
            raise ValueError("PHASECRAFT_RATE_LIMIT_WARNING_RATIO must be in [0, 1).")
        if self.execution.update_buffer_size <= 0:
            raise ValueError("PHASECRAFT_UPDATE_BUFFER_SIZE must be a positive integer.")
        if self.execution.publish_timeout_seconds <= 0:
            raise ValueError("PHASECRAFT_PUBLISH_TIMEOUT_SECONDS must be > 0.")


def _collect_api_keys() -> dict[str, str]:
    keys: dict[str, str] = {}
    for name in PROVIDER_NAMES:
        value = os.getenv(f"PHASECRAFT_{name.upper()}_API_KEY", "").strip()
        if not value and name in VENDOR_API_KEY_ENV:
            value = os.getenv(VENDOR_API_KEY_ENV[name], "").strip()
        if value:
            keys[name] = value
    return keys


def _collect_base_urls() -> dict[str, str]:
    urls: dict[str, str] = {}
    for name in PROVIDER_NAMES:
        if name == "ollama":
            continue
        value = os.getenv(f"PHASECRAFT_{name.upper()}_BASE_URL", "").strip()
        if value:
            urls[name] = value.rstrip("/")
    return urls


def _validate_base_url(variable: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {variable}: {value!r}. "
            "Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
