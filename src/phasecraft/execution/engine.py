"""Task/phase state machine with operator controls and a progress-event stream."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import NoReturn
from uuid import uuid4

from phasecraft.errors import InvalidStateError, NotFoundError
from phasecraft.execution.codegen import (
    CodeGenerationAdapter,
    CodeGenerationResult,
    ExecutionContext,
)
from phasecraft.execution.manifest import GeneratedFile
from phasecraft.execution.updates import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_PUBLISH_TIMEOUT_SECONDS,
    TaskUpdate,
    UpdateKind,
    UpdateStream,
)
from phasecraft.state.models import (
    TERMINAL_TASK_STATUSES,
    Blocker,
    PhaseStatus,
    Stage,
    TaskStatus,
    TokenUsage,
    can_transition,
)
from phasecraft.state.repository import StateRepository
from phasecraft.storage.common import utc_now

logger = logging.getLogger(__name__)


class ExecutionEngine:
    """Runs tasks strictly one at a time and reports progress on one stream.

    Control calls (pause, resume, skip, block, resolve) may come from other
    threads while a task runs. Pause is honoured only at task and phase
    boundaries; an in-flight model call is never interrupted. A failed task
    keeps its `in_progress` status; the operator decides whether to retry,
    block, or skip it.
    """

    def __init__(
        self,
        store: StateRepository,
        codegen: CodeGenerationAdapter,
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        publish_timeout_seconds: float = DEFAULT_PUBLISH_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.codegen = codegen
        self._updates = UpdateStream(
            buffer_size=buffer_size,
            publish_timeout_seconds=publish_timeout_seconds,
        )
        self._pause_condition = threading.Condition()
        self._paused = False
        self._closed = False

    # Stream and lifecycle

    def stream_output(self) -> UpdateStream:
        """The shared update channel; every call returns the same object."""

        return self._updates

    @property
    def is_paused(self) -> bool:
        with self._pause_condition:
            return self._paused

    def close(self) -> None:
        """Stop accepting work, release paused waiters, and end the stream."""

        with self._pause_condition:
            if self._closed:
                return
            self._closed = True
            self._pause_condition.notify_all()
        self._updates.close()
        logger.debug("Execution engine closed.")

    # Pause / resume

    def pause_execution(self) -> None:
        with self._pause_condition:
            self._ensure_open()
            if self._paused:
                raise InvalidStateError("execution already paused")
            self._paused = True
        logger.info("Execution paused.")
        self._publish("", "", UpdateKind.PAUSED, "Execution paused")

    def resume_execution(self) -> None:
        with self._pause_condition:
            self._ensure_open()
            if not self._paused:
                raise InvalidStateError("execution not paused")
            self._paused = False
            self._pause_condition.notify_all()
        logger.info("Execution resumed.")
        self._publish("", "", UpdateKind.RESUMED, "Execution resumed")

    # Execution

    def execute_task(self, task_id: str) -> CodeGenerationResult:
        """Generate and write one task's code.

        Emits `started`, one `progress` per written file, then `completed`
        with token counts. On failure emits `error` and re-raises; the task
        status is left untouched. If an operator blocked or skipped the task
        while it ran, no `completed` event is published and the returned
        result carries that status.
        """

        self._wait_at_boundary()
        context = self._load_context(task_id)
        task = context.task
        if task.status is not TaskStatus.IN_PROGRESS and not can_transition(
            task.status,
            TaskStatus.IN_PROGRESS,
        ):
            raise InvalidStateError(f"task {task_id} is {task.status.value} and cannot be executed")

        self.store.update_task_status(
            task_id,
            TaskStatus.IN_PROGRESS,
            expected={TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS},
        )
        logger.info("Starting task %s (phase=%s).", task_id, task.phase_id)
        self._publish(
            task_id,
            task.phase_id,
            UpdateKind.STARTED,
            f"Starting task: {task.description}",
        )

        def on_file_written(generated: GeneratedFile, path: Path) -> None:
            self._publish(
                task_id,
                task.phase_id,
                UpdateKind.PROGRESS,
                f"Created: {generated.path} ({len(generated.content)} chars)",
            )

        try:
            result = self.codegen.generate(context, on_file_written=on_file_written)
        except Exception as error:
            logger.warning("Task %s failed: %s", task_id, error)
            self._publish(
                task_id,
                task.phase_id,
                UpdateKind.ERROR,
                f"Task failed: {error}",
                error=str(error),
            )
            raise

        self.store.record_token_usage(
            TokenUsage(
                project_id=context.project.project_id,
                phase_id=task.phase_id,
                task_id=task_id,
                provider=result.provider,
                model=result.model,
                tokens_input=result.tokens_input,
                tokens_output=result.tokens_output,
            ),
        )
        try:
            self.store.update_task_status(
                task_id,
                TaskStatus.COMPLETED,
                expected={TaskStatus.IN_PROGRESS},
            )
        except InvalidStateError:
            result.task_status = self.store.get_task(task_id).status
            logger.info(
                "Task %s became %s while running; keeping operator decision.",
                task_id,
                result.task_status.value,
            )
            return result

        self._publish(
            task_id,
            task.phase_id,
            UpdateKind.COMPLETED,
            f"Completed task: {task.description} "
            f"(tokens in={result.tokens_input} out={result.tokens_output})",
        )
        logger.info("Completed task %s (%d file(s)).", task_id, len(result.written_paths))
        return result

    def execute_phase(self, phase_id: str) -> None:
        """Run every unfinished task of a phase in stored order.

        The first failing task stops the loop. A blocked task halts the phase
        with `InvalidStateError`. The phase becomes completed only when every
        task is completed or skipped.
        """

        self._wait_at_boundary()
        phase = self.store.get_phase(phase_id)
        if phase.status is PhaseStatus.COMPLETED:
            logger.info("Phase %s is already completed.", phase_id)
            return
        self._check_dependencies(phase.project_id, phase.number, phase.dependencies)

        self.store.update_phase_status(phase_id, PhaseStatus.IN_PROGRESS)
        self.store.update_project_stage(
            phase.project_id,
            Stage.DEVELOP,
            current_phase_id=phase_id,
        )
        logger.info("Starting phase %s (%d: %s).", phase_id, phase.number, phase.title)
        self._publish("", phase_id, UpdateKind.STARTED, f"Starting phase: {phase.title}")

        for task in self.store.list_tasks(phase_id):
            current = self.store.get_task(task.task_id)
            if current.status in TERMINAL_TASK_STATUSES:
                continue
            if current.status is TaskStatus.BLOCKED:
                self._halt_blocked_phase(phase_id, task.task_id)
            try:
                result = self.execute_task(task.task_id)
            except Exception as error:
                self._publish(
                    "",
                    phase_id,
                    UpdateKind.ERROR,
                    f"Phase stopped due to task error: {error}",
                    error=str(error),
                )
                raise
            if result.task_status is TaskStatus.BLOCKED:
                self._halt_blocked_phase(phase_id, task.task_id)

        unfinished = [
            task.task_id
            for task in self.store.list_tasks(phase_id)
            if task.status not in TERMINAL_TASK_STATUSES
        ]
        if unfinished:
            raise InvalidStateError(
                f"phase {phase_id} has unfinished tasks: {', '.join(unfinished)}",
            )

        self.store.update_phase_status(phase_id, PhaseStatus.COMPLETED)
        self._publish("", phase_id, UpdateKind.COMPLETED, f"Completed phase: {phase.title}")
        logger.info("Completed phase %s.", phase_id)

        phases = self.store.list_phases(phase.project_id)
        if all(item.status is PhaseStatus.COMPLETED for item in phases):
            self.store.update_project_stage(phase.project_id, Stage.COMPLETE)

    # Operator controls

    def skip_task(self, task_id: str) -> None:
        """Mark a task skipped from any status; open blockers are closed."""

        task = self.store.get_task(task_id)
        self.store.update_task_status(task_id, TaskStatus.SKIPPED)
        closed = self.store.resolve_blocker(task_id, "Task skipped")
        if closed:
            logger.info("Closed %d blocker(s) of skipped task %s.", len(closed), task_id)
        self._publish(task_id, task.phase_id, UpdateKind.SKIPPED, "Task skipped")

    def mark_blocked(self, task_id: str, reason: str) -> Blocker:
        task = self.store.get_task(task_id)
        if not can_transition(task.status, TaskStatus.BLOCKED):
            raise InvalidStateError(
                f"task {task_id} is {task.status.value}; only in-progress tasks can be blocked",
            )
        self.store.update_task_status(
            task_id,
            TaskStatus.BLOCKED,
            expected={TaskStatus.IN_PROGRESS},
        )
        blocker = Blocker(
            blocker_id=str(uuid4()),
            task_id=task_id,
            description=reason,
            created_at=utc_now(),
        )
        try:
            self.store.save_blocker(blocker)
        except Exception:
            self.store.update_task_status(
                task_id,
                TaskStatus.IN_PROGRESS,
                expected={TaskStatus.BLOCKED},
            )
            raise
        logger.info("Task %s blocked: %s", task_id, reason)
        self._publish(task_id, task.phase_id, UpdateKind.BLOCKED, f"Task blocked: {reason}")
        return blocker

    def resolve_blocker(self, task_id: str, resolution: str) -> Blocker:
        """Close the task's open blocker and reset it to `not_started`."""

        task = self.store.get_task(task_id)
        if task.status is not TaskStatus.BLOCKED:
            raise InvalidStateError(f"task {task_id} is {task.status.value}, not blocked")
        closed = self.store.resolve_blocker(task_id, resolution)
        if not closed:
            raise NotFoundError(f"no active blocker found for task {task_id}")
        self.store.update_task_status(
            task_id,
            TaskStatus.NOT_STARTED,
            expected={TaskStatus.BLOCKED},
        )
        logger.info("Resolved blocker of task %s: %s", task_id, resolution)
        return closed[-1]

    # Internals

    def _ensure_open(self) -> None:
        if self._closed:
            raise InvalidStateError("execution engine is closed")

    def _wait_at_boundary(self) -> None:
        with self._pause_condition:
            while self._paused and not self._closed:
                self._pause_condition.wait()
            self._ensure_open()

    def _halt_blocked_phase(self, phase_id: str, task_id: str) -> NoReturn:
        self.store.update_phase_status(phase_id, PhaseStatus.BLOCKED)
        message = f"Phase halted: task {task_id} is blocked"
        self._publish(task_id, phase_id, UpdateKind.BLOCKED, message)
        raise InvalidStateError(message)

    def _load_context(self, task_id: str) -> ExecutionContext:
        task = self.store.get_task(task_id)
        phase = self.store.get_phase(task.phase_id)
        project = self.store.get_project(phase.project_id)
        return ExecutionContext(
            project=project,
            phase=phase,
            task=task,
            interview=self.store.get_interview_data(project.project_id),
            architecture=self.store.get_architecture(project.project_id),
        )

    def _check_dependencies(self, project_id: str, number: int, dependencies: set[int]) -> None:
        if not dependencies:
            return
        by_number = {item.number: item for item in self.store.list_phases(project_id)}
        for dependency in sorted(dependencies):
            required = by_number.get(dependency)
            if required is None:
                raise NotFoundError(f"phase {number} depends on missing phase {dependency}")
            if required.status is not PhaseStatus.COMPLETED:
                raise InvalidStateError(
                    f"phase {number} depends on phase {dependency}, "
                    f"which is {required.status.value}",
                )

    def _publish(
        self,
        task_id: str,
        phase_id: str,
        kind: UpdateKind,
        content: str,
        *,
        error: str | None = None,
    ) -> None:
        self._updates.publish(
            TaskUpdate(
                task_id=task_id,
                phase_id=phase_id,
                kind=kind,
                content=content,
                error=error,
            ),
        )
