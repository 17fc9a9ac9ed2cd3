"""Code-generation manifest parsing with a plain-text fallback."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field

from phasecraft.errors import MalformedResponseError

logger = logging.getLogger(__name__)

FALLBACK_FILE_PATH = "output.md"

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)


@dataclass(slots=True)
class GeneratedFile:
    path: str
    content: str
    language: str | None = None


@dataclass(slots=True)
class ShellCommand:
    command: str
    directory: str | None = None


@dataclass(slots=True)
class ManifestTest:
    name: str
    command: str


@dataclass(slots=True)
class CodeManifest:
    """Structured answer the model is asked to return for a task."""

    explanation: str = ""
    files: list[GeneratedFile] = field(default_factory=list)
    commands: list[ShellCommand] = field(default_factory=list)
    tests: list[ManifestTest] = field(default_factory=list)
    fallback: bool = False


def parse_manifest(text: str) -> CodeManifest:
    """Parse model output into a manifest; raises `MalformedResponseError`."""

    payload = _parse_json_payload(text.strip())
    if payload is None:
        raise MalformedResponseError("response is not a JSON object")

    raw_files = payload.get("files")
    if not isinstance(raw_files, list):
        raise MalformedResponseError("manifest field 'files' must be a list")

    files: list[GeneratedFile] = []
    for index, item in enumerate(raw_files):
        if not isinstance(item, dict):
            raise MalformedResponseError(f"manifest file #{index} is not an object")
        path = item.get("path")
        content = item.get("content")
        if not isinstance(path, str) or not path.strip():
            raise MalformedResponseError(f"manifest file #{index} has no path")
        if not isinstance(content, str):
            raise MalformedResponseError(f"manifest file {path!r} has no string content")
        language = item.get("language")
        files.append(
            GeneratedFile(
                path=path.strip(),
                content=content,
                language=language if isinstance(language, str) and language else None,
            ),
        )

    explanation = payload.get("explanation")
    return CodeManifest(
        explanation=explanation if isinstance(explanation, str) else "",
        files=files,
        commands=_parse_commands(payload.get("commands")),
        tests=_parse_tests(payload.get("tests")),
    )


def parse_manifest_or_fallback(text: str) -> CodeManifest:
    """Parse the manifest, degrading to a single `output.md` holding the raw text."""

    try:
        return parse_manifest(text)
    except MalformedResponseError as error:
        logger.warning("Falling back to %s: %s", FALLBACK_FILE_PATH, error)
        return CodeManifest(
            explanation=text,
            files=[GeneratedFile(path=FALLBACK_FILE_PATH, content=text, language="markdown")],
            fallback=True,
        )


def _parse_commands(raw: object) -> list[ShellCommand]:
    if not isinstance(raw, list):
        return []
    commands: list[ShellCommand] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        command = item.get("command")
        if not isinstance(command, str) or not command.strip():
            continue
        directory = item.get("directory")
        commands.append(
            ShellCommand(
                command=command.strip(),
                directory=directory if isinstance(directory, str) and directory else None,
            ),
        )
    return commands


def _parse_tests(raw: object) -> list[ManifestTest]:
    if not isinstance(raw, list):
        return []
    tests: list[ManifestTest] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        command = item.get("command")
        if isinstance(name, str) and isinstance(command, str) and command.strip():
            tests.append(ManifestTest(name=name, command=command.strip()))
    return tests


def _parse_json_payload(text: str) -> dict[str, object] | None:
    direct = _try_load_dict(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(text[start : end + 1])


def _try_load_dict(raw: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
