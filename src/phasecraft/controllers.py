"""Controllers for phasecraft CLI commands."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from phasecraft.config import Settings
from phasecraft.execution.updates import TaskUpdate
from phasecraft.provider.bridge import ProviderBridge
from phasecraft.provider.http import HttpProvider
from phasecraft.services import (
    DevelopmentService,
    PlanImportService,
    build_bridge,
    build_engine,
)
from phasecraft.state.repository import StateRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PlanLoadCommand:
    """CLI input for plan import."""

    db_path: Path | None
    plan_path: Path


@dataclass(slots=True)
class DevelopCommand:
    """CLI input for running phases."""

    db_path: Path | None
    project_id: str | None
    phase_id: str | None
    provider: str | None = None
    model: str | None = None
    output_root: Path | None = None


@dataclass(slots=True)
class TaskControlCommand:
    """CLI input for operator task controls."""

    db_path: Path | None
    task_id: str
    text: str = ""


@dataclass(slots=True)
class ProjectCommand:
    """CLI input for project-scoped read commands."""

    db_path: Path | None
    project_id: str | None


@dataclass(slots=True)
class ProvidersCommand:
    db_path: Path | None = None


class PhasecraftCliController:
    """Coordinates plan import, development runs, and operator controls."""

    def load_plan(self, command: PlanLoadCommand) -> list[str]:
        settings = _settings(command.db_path)
        try:
            document = json.loads(command.plan_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as error:
            raise ValueError(
                f"Plan file is not valid JSON: {command.plan_path}: {error}",
            ) from error
        if not isinstance(document, dict):
            raise ValueError(f"Plan file must contain a JSON object: {command.plan_path}")

        with _repository(settings) as repository:
            summary = PlanImportService(repository=repository).import_plan(document)
        return [
            "Plan loaded: "
            f"project_id={summary.project.project_id} name={summary.project.name} "
            f"phases={summary.phases} tasks={summary.tasks}",
        ]

    def develop(
        self,
        command: DevelopCommand,
        *,
        emit: Callable[[str], None],
    ) -> list[str]:
        """Run phases in a worker thread while `emit` prints each update."""

        settings = _settings(command.db_path)
        if command.output_root is not None:
            settings.execution.output_root = command.output_root
        with _repository(settings) as repository, _bridge(settings) as bridge:
            engine = build_engine(
                settings,
                repository,
                bridge,
                provider_name=command.provider,
                model=command.model,
            )
            service = DevelopmentService(repository=repository, engine=engine)
            if command.phase_id is None:
                project_id = _resolve_project_id(repository, command.project_id)
            else:
                project_id = repository.get_phase(command.phase_id).project_id

            failures: list[Exception] = []
            completed: list[str] = []

            def run() -> None:
                try:
                    if command.phase_id is not None:
                        service.run_phase(command.phase_id)
                        completed.append(command.phase_id)
                    else:
                        completed.extend(service.run_project(project_id))
                except Exception as error:  # re-raised on the caller thread
                    failures.append(error)
                finally:
                    engine.close()

            worker = threading.Thread(target=run, name="phasecraft-develop", daemon=True)
            worker.start()
            for update in engine.stream_output():
                emit(render_update(update))
            worker.join()
            if failures:
                raise failures[0]
            progress = repository.calculate_progress(project_id)

        return [
            f"Development finished: project_id={project_id} phases_run={len(completed)}",
            f"Progress: {progress.completion_percentage:.2f}% stage={progress.current_stage.value}",
        ]

    def skip_task(self, command: TaskControlCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            engine = build_engine(settings, repository, ProviderBridge())
            try:
                engine.skip_task(command.task_id)
            finally:
                engine.close()
        return [f"Task skipped: {command.task_id}"]

    def block_task(self, command: TaskControlCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            engine = build_engine(settings, repository, ProviderBridge())
            try:
                blocker = engine.mark_blocked(command.task_id, command.text)
            finally:
                engine.close()
        return [f"Task blocked: {command.task_id} blocker_id={blocker.blocker_id}"]

    def resolve_task(self, command: TaskControlCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            engine = build_engine(settings, repository, ProviderBridge())
            try:
                blocker = engine.resolve_blocker(command.task_id, command.text)
            finally:
                engine.close()
        return [
            f"Blocker resolved: {blocker.blocker_id} task_id={command.task_id}",
            "Task status: not_started",
        ]

    def blockers(self, command: ProjectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            project_id = _resolve_project_id(repository, command.project_id)
            active = repository.list_active_blockers(project_id)
        if not active:
            return [f"No active blockers for project {project_id}."]
        lines = [f"Active blockers: {len(active)}"]
        for blocker in active:
            lines.append(
                f"- task_id={blocker.task_id} blocker_id={blocker.blocker_id} "
                f"since={blocker.created_at.isoformat()} reason={blocker.description}",
            )
        return lines

    def status(self, command: ProjectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            project_id = _resolve_project_id(repository, command.project_id)
            project = repository.get_project(project_id)
            progress = repository.calculate_progress(project_id)
            tokens = repository.get_token_stats(project_id)

        lines = [
            f"Project: {project.name} ({project.project_id})",
            f"Stage: {progress.current_stage.value} "
            f"current_phase={progress.current_phase_id or '-'}",
            "Phases: "
            f"total={progress.total_phases} completed={progress.completed_phases} "
            f"in_progress={progress.in_progress_phases} blocked={progress.blocked_phases} "
            f"pending={progress.pending_phases}",
            "Tasks: "
            f"total={progress.total_tasks} completed={progress.completed_tasks} "
            f"in_progress={progress.in_progress_tasks} blocked={progress.blocked_tasks} "
            f"skipped={progress.skipped_tasks} pending={progress.pending_tasks}",
            f"Completion: {progress.completion_percentage:.2f}%",
            f"Tokens: input={tokens.total_input} output={tokens.total_output}",
        ]
        for provider, total in sorted(tokens.by_provider.items()):
            lines.append(f"- provider={provider} tokens={total}")
        return lines

    def providers(self, command: ProvidersCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _bridge(settings) as bridge:
            lines = [f"Default provider: {bridge.default_provider or '-'}"]
            for name in bridge.list_providers():
                provider = bridge.get_provider(name)
                lines.append(
                    f"- {name} authenticated={_yes_no(provider.is_authenticated())} "
                    f"coding_plan={_yes_no(provider.supports_coding_plan())}",
                )
        return lines


def render_update(update: TaskUpdate) -> str:
    scope = f"task={update.task_id}" if update.task_id else f"phase={update.phase_id or '-'}"
    line = f"[{update.kind.value}] {scope} {update.content}".rstrip()
    if update.error and update.error not in update.content:
        line = f"{line} error={update.error}"
    return line


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _resolve_project_id(repository: StateRepository, project_id: str | None) -> str:
    if project_id is not None:
        return repository.get_project(project_id).project_id
    projects = repository.list_projects()
    if len(projects) != 1:
        raise ValueError(
            f"Found {len(projects)} projects; pass --project-id to choose one.",
        )
    return projects[0].project_id


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


@contextmanager
def _repository(settings: Settings) -> Iterator[StateRepository]:
    repository = StateRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _bridge(settings: Settings) -> Iterator[ProviderBridge]:
    bridge = build_bridge(settings)
    try:
        yield bridge
    finally:
        for name in bridge.list_providers():
            provider = bridge.get_provider(name)
            if isinstance(provider, HttpProvider):
                provider.close()
