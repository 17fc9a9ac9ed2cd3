"""Use-case services: wiring settings into the bridge and engine, plan import."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

import httpx

from phasecraft.config import Settings
from phasecraft.errors import InvalidStateError, UnauthenticatedError
from phasecraft.execution.codegen import CodeGenerationAdapter
from phasecraft.execution.engine import ExecutionEngine
from phasecraft.provider.bridge import ProviderBridge
from phasecraft.provider.registry import ProviderRegistry, default_provider_registry
from phasecraft.state.models import (
    Architecture,
    InterviewData,
    Phase,
    PhaseStatus,
    Project,
    Stage,
    Task,
)
from phasecraft.state.repository import StateRepository
from phasecraft.storage.common import utc_now

logger = logging.getLogger(__name__)


def build_bridge(
    settings: Settings,
    *,
    registry: ProviderRegistry | None = None,
    transport: httpx.BaseTransport | None = None,
) -> ProviderBridge:
    """Create every registered adapter and authenticate those with credentials.

    Adapters without a key stay registered but unauthenticated, so calls to
    them fail with `UnauthenticatedError`. The local Ollama server is probed
    only when it is the default provider.
    """

    registry = registry or default_provider_registry()
    bridge = ProviderBridge(
        cache_ttl_seconds=settings.bridge.cache_ttl_seconds,
        warning_ratio=settings.bridge.warning_ratio,
        refresh_after_call=settings.bridge.refresh_after_call,
    )
    for name in registry.names():
        options: dict[str, Any] = {
            "timeout_seconds": settings.providers.request_timeout_seconds,
            "max_retries": settings.retry.max_retries,
            "base_delay_seconds": settings.retry.base_delay_seconds,
            "transport": transport,
        }
        if name == "ollama":
            options["base_url"] = settings.providers.ollama_base_url
        elif name in settings.providers.base_urls:
            options["base_url"] = settings.providers.base_urls[name]
        provider = registry.create(name, **options)

        if name == "ollama":
            if settings.providers.default_provider == "ollama":
                try:
                    provider.authenticate("")
                except UnauthenticatedError as error:
                    logger.warning("Ollama is not reachable: %s", error)
        else:
            api_key = settings.providers.api_keys.get(name, "")
            if api_key:
                provider.authenticate(api_key)
        bridge.register_provider(provider)

    if settings.providers.default_provider in bridge.list_providers():
        bridge.set_default_provider(settings.providers.default_provider)
    logger.debug(
        "Provider bridge ready (default=%s, authenticated=%s).",
        bridge.default_provider,
        [name for name in bridge.list_providers() if bridge.get_provider(name).is_authenticated()],
    )
    return bridge


def build_engine(
    settings: Settings,
    store: StateRepository,
    bridge: ProviderBridge,
    *,
    provider_name: str | None = None,
    model: str | None = None,
) -> ExecutionEngine:
    codegen = CodeGenerationAdapter(
        bridge,
        output_root=settings.execution.output_root,
        provider_name=provider_name,
        model=model if model is not None else settings.providers.default_model,
    )
    return ExecutionEngine(
        store,
        codegen,
        buffer_size=settings.execution.update_buffer_size,
        publish_timeout_seconds=settings.execution.publish_timeout_seconds,
    )


@dataclass(slots=True)
class PlanImportSummary:
    project: Project
    phases: int
    tasks: int


class PlanImportService:
    """Stores a plan document: project, interview, architecture, phases, tasks.

    Expected shape::

        {
          "project": {"id": "...", "name": "..."},
          "interview": {"problem_statement": "...", ...},
          "architecture": "markdown text",
          "phases": [
            {"number": 1, "title": "...", "objective": "...",
             "success_criteria": [...], "dependencies": [],
             "estimated_tokens": 0, "estimated_cost": 0.0,
             "tasks": [{"description": "...", "acceptance_criteria": [...],
                        "implementation_notes": "..."}]}
          ]
        }

    Missing ids are generated. Phase numbers must be unique.
    """

    def __init__(self, *, repository: StateRepository) -> None:
        self.repository = repository

    def import_plan(self, document: Mapping[str, Any]) -> PlanImportSummary:
        raw_project = _mapping(document.get("project"), "project")
        name = _text(raw_project.get("name"), "project.name")
        project = Project(
            project_id=str(raw_project.get("id") or uuid4()),
            name=name,
            created_at=utc_now(),
            current_stage=Stage.DEVELOP,
        )

        raw_phases = document.get("phases")
        if not isinstance(raw_phases, list) or not raw_phases:
            raise ValueError("plan field 'phases' must be a non-empty list")
        phases: list[tuple[Phase, list[Task]]] = []
        seen_numbers: set[int] = set()
        for index, item in enumerate(raw_phases, start=1):
            phase, tasks = _parse_phase(project.project_id, item, default_number=index)
            if phase.number in seen_numbers:
                raise ValueError(f"duplicate phase number: {phase.number}")
            seen_numbers.add(phase.number)
            phases.append((phase, tasks))
        for phase, _ in phases:
            missing = sorted(phase.dependencies - seen_numbers)
            if missing:
                raise ValueError(f"phase {phase.number} depends on unknown phases {missing}")

        interview = _mapping(document.get("interview") or {}, "interview")
        architecture = document.get("architecture") or ""
        if not isinstance(architecture, str):
            raise ValueError("plan field 'architecture' must be a string")

        self.repository.save_project(project)
        self.repository.save_interview_data(
            InterviewData(
                project_id=project.project_id,
                project_name=str(interview.get("project_name") or name),
                problem_statement=str(interview.get("problem_statement") or ""),
                payload=dict(interview),
            ),
        )
        self.repository.save_architecture(
            Architecture(project_id=project.project_id, content=architecture),
        )
        task_count = 0
        for phase, tasks in phases:
            self.repository.save_phase(phase)
            for task in tasks:
                self.repository.save_task(task)
            task_count += len(tasks)

        logger.info(
            "Imported plan for project %s (%d phase(s), %d task(s)).",
            project.project_id,
            len(phases),
            task_count,
        )
        return PlanImportSummary(project=project, phases=len(phases), tasks=task_count)


class DevelopmentService:
    """Runs unfinished phases of a project through the engine in number order."""

    def __init__(self, *, repository: StateRepository, engine: ExecutionEngine) -> None:
        self.repository = repository
        self.engine = engine

    def pending_phases(self, project_id: str) -> list[Phase]:
        self.repository.get_project(project_id)
        return [
            phase
            for phase in self.repository.list_phases(project_id)
            if phase.status is not PhaseStatus.COMPLETED
        ]

    def run_project(self, project_id: str) -> list[str]:
        """Execute phases until done; the first failing phase stops the run."""

        completed: list[str] = []
        for phase in self.pending_phases(project_id):
            self.engine.execute_phase(phase.phase_id)
            completed.append(phase.phase_id)
        return completed

    def run_phase(self, phase_id: str) -> None:
        phase = self.repository.get_phase(phase_id)
        if phase.status is PhaseStatus.BLOCKED:
            raise InvalidStateError(f"phase {phase_id} is blocked; resolve its blockers first")
        self.engine.execute_phase(phase_id)


def _parse_phase(
    project_id: str,
    raw: object,
    *,
    default_number: int,
) -> tuple[Phase, list[Task]]:
    item = _mapping(raw, "phase")
    number = int(item.get("number", default_number))
    phase_id = str(item.get("id") or uuid4())
    raw_tasks = item.get("tasks") or []
    if not isinstance(raw_tasks, list):
        raise ValueError(f"phase {number} field 'tasks' must be a list")

    tasks: list[Task] = []
    for sequence, raw_task in enumerate(raw_tasks, start=1):
        task_item = _mapping(raw_task, f"phase {number} task")
        tasks.append(
            Task(
                task_id=str(task_item.get("id") or uuid4()),
                phase_id=phase_id,
                sequence=sequence,
                description=_text(task_item.get("description"), f"phase {number} task"),
                acceptance_criteria=_strings(task_item.get("acceptance_criteria")),
                implementation_notes=str(task_item.get("implementation_notes") or ""),
            ),
        )

    phase = Phase(
        phase_id=phase_id,
        project_id=project_id,
        number=number,
        title=_text(item.get("title"), f"phase {number} title"),
        objective=str(item.get("objective") or ""),
        success_criteria=_strings(item.get("success_criteria")),
        dependencies={int(value) for value in item.get("dependencies") or []},
        estimated_tokens=int(item.get("estimated_tokens") or 0),
        estimated_cost=float(item.get("estimated_cost") or 0.0),
    )
    return phase, tasks


def _mapping(value: object, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"plan field '{field_name}' must be an object")
    return value


def _text(value: object, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"plan field '{field_name}' must be a non-empty string")
    return value.strip()


def _strings(value: object) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError("criteria must be a list of strings")
    return [str(item) for item in value]
