from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from phasecraft.config import PROVIDER_NAMES, Settings
from phasecraft.provider.registry import default_provider_registry

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]

_ENV_PREFIXES = ("PHASECRAFT_",)
_VENDOR_VARS = (
    "ANTHROPIC_API_KEY",
    "MOONSHOT_API_KEY",
    "OPENAI_API_KEY",
    "REQUESTY_API_KEY",
    "ZAI_API_KEY",
    "OLLAMA_HOST",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith(_ENV_PREFIXES) or name in _VENDOR_VARS:
            monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".phasecraft/state.db")
    assert settings.providers.default_provider == "anthropic"
    assert settings.providers.api_keys == {}
    assert settings.providers.ollama_base_url == "http://localhost:11434"
    assert settings.retry.max_retries == 3
    assert settings.retry.base_delay_seconds == 1.0
    assert settings.bridge.cache_ttl_seconds == 300.0
    assert settings.bridge.warning_ratio == 0.10
    assert settings.execution.update_buffer_size == 100
    assert settings.execution.output_root == Path.cwd()
    settings.validate()


def test_explicit_db_path_wins(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PHASECRAFT_DB_PATH", "/from/env.db")

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"
    assert Settings.from_env().db_path == Path("/from/env.db")


def test_api_keys_prefer_phasecraft_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "vendor-key")
    monkeypatch.setenv("PHASECRAFT_ANTHROPIC_API_KEY", "own-key")
    monkeypatch.setenv("MOONSHOT_API_KEY", "kimi-key")
    monkeypatch.setenv("PHASECRAFT_ZAI_BASE_URL", "https://zai.example/v4/")

    settings = Settings.from_env()

    assert settings.providers.api_keys == {"anthropic": "own-key", "kimi": "kimi-key"}
    assert settings.providers.base_urls == {"zai": "https://zai.example/v4"}


def test_numeric_and_bool_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PHASECRAFT_MAX_RETRIES", "5")
    monkeypatch.setenv("PHASECRAFT_RETRY_BASE_DELAY_SECONDS", "0.5")
    monkeypatch.setenv("PHASECRAFT_REFRESH_AFTER_CALL", "off")
    monkeypatch.setenv("PHASECRAFT_UPDATE_BUFFER_SIZE", "8")
    monkeypatch.setenv("OLLAMA_HOST", "http://gpu-box:11434")

    settings = Settings.from_env()

    assert settings.retry.max_retries == 5
    assert settings.retry.base_delay_seconds == 0.5
    assert settings.bridge.refresh_after_call is False
    assert settings.execution.update_buffer_size == 8
    assert settings.providers.ollama_base_url == "http://gpu-box:11434"


def test_invalid_bool_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PHASECRAFT_VERBOSE_LOGGING", "maybe")

    with pytest.raises(ValueError, match="PHASECRAFT_VERBOSE_LOGGING"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("PHASECRAFT_DEFAULT_PROVIDER", "gemini", "PHASECRAFT_DEFAULT_PROVIDER"),
        ("PHASECRAFT_MAX_RETRIES", "-1", "PHASECRAFT_MAX_RETRIES"),
        ("PHASECRAFT_CACHE_TTL_SECONDS", "0", "PHASECRAFT_CACHE_TTL_SECONDS"),
        ("PHASECRAFT_RATE_LIMIT_WARNING_RATIO", "1.5", "PHASECRAFT_RATE_LIMIT_WARNING_RATIO"),
        ("PHASECRAFT_UPDATE_BUFFER_SIZE", "0", "PHASECRAFT_UPDATE_BUFFER_SIZE"),
        ("PHASECRAFT_OLLAMA_BASE_URL", "localhost:11434", "PHASECRAFT_OLLAMA_BASE_URL"),
        ("PHASECRAFT_OPENAI_BASE_URL", "ftp://proxy", "PHASECRAFT_OPENAI_BASE_URL"),
    ],
)
def test_validate_names_the_offending_variable(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate()


def test_provider_names_match_registry() -> None:
    assert list(PROVIDER_NAMES) == default_provider_registry().names()
