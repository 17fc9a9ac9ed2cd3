from __future__ import annotations

import threading
import time
from pathlib import Path

import allure
import pytest
from conftest import (
    PHASE_ONE_ID,
    PHASE_TWO_ID,
    PROJECT_ID,
    TASK_IDS,
    FakeProvider,
    manifest_json,
)
from sqlalchemy.exc import OperationalError

from phasecraft.errors import (
    FilesystemError,
    InvalidStateError,
    NotFoundError,
    ProviderError,
    RetryExhaustedError,
)
from phasecraft.execution.codegen import CodeGenerationResult
from phasecraft.execution.engine import ExecutionEngine
from phasecraft.execution.updates import UpdateKind
from phasecraft.state.models import Blocker, PhaseStatus, Stage, Task, TaskStatus
from phasecraft.state.repository import StateRepository

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Task and Phase State Machine"),
]


def _kinds(engine: ExecutionEngine) -> list[UpdateKind]:
    return [update.kind for update in engine.stream_output().drain()]


def test_execute_task_writes_manifest_files_and_emits_ordered_events(
    engine: ExecutionEngine,
    fake_provider: FakeProvider,
    seeded_repository: StateRepository,
    output_root: Path,
) -> None:
    fake_provider.replies.append(
        manifest_json(("pkg/__init__.py", ""), ("pkg/app.py", "print('hi')\n")),
    )

    result = engine.execute_task(TASK_IDS[0])

    assert (output_root / "pkg" / "app.py").read_text(encoding="utf-8") == "print('hi')\n"
    assert len(result.written_paths) == 2
    updates = engine.stream_output().drain()
    assert [update.kind for update in updates] == [
        UpdateKind.STARTED,
        UpdateKind.PROGRESS,
        UpdateKind.PROGRESS,
        UpdateKind.COMPLETED,
    ]
    assert all(update.task_id == TASK_IDS[0] for update in updates)
    assert "in=100 out=50" in updates[-1].content
    assert seeded_repository.get_task(TASK_IDS[0]).status is TaskStatus.COMPLETED

    stats = seeded_repository.get_token_stats(PROJECT_ID)
    assert stats.total_input == 100
    assert stats.total_output == 50
    assert stats.by_provider == {"fake": 150}


def test_execute_task_with_plain_text_falls_back_to_output_md(
    engine: ExecutionEngine,
    fake_provider: FakeProvider,
    output_root: Path,
) -> None:
    fake_provider.replies.append("Just do it")

    result = engine.execute_task(TASK_IDS[0])

    assert result.manifest.fallback is True
    assert sorted(path.name for path in output_root.iterdir()) == ["output.md"]
    assert (output_root / "output.md").read_text(encoding="utf-8") == "Just do it"
    assert _kinds(engine) == [UpdateKind.STARTED, UpdateKind.PROGRESS, UpdateKind.COMPLETED]


def test_prompt_carries_task_and_architecture_context(
    engine: ExecutionEngine,
    fake_provider: FakeProvider,
) -> None:
    fake_provider.replies.append(manifest_json(("a.txt", "a")))

    engine.execute_task(TASK_IDS[0])

    prompt = fake_provider.prompts[0]
    assert "Project: Todo API" in prompt
    assert "PHASE 1: Foundation" in prompt
    assert "TASK: Create package layout" in prompt
    assert "- package imports" in prompt
    assert "FastAPI service backed by SQLite." in prompt


def test_failed_task_emits_error_and_keeps_in_progress(
    engine: ExecutionEngine,
    fake_provider: FakeProvider,
    seeded_repository: StateRepository,
) -> None:
    fake_provider.replies.append(manifest_json(("/etc/passwd", "nope")))

    with pytest.raises(FilesystemError, match="absolute paths are not allowed"):
        engine.execute_task(TASK_IDS[0])

    updates = engine.stream_output().drain()
    assert [update.kind for update in updates] == [UpdateKind.STARTED, UpdateKind.ERROR]
    assert updates[-1].error is not None
    assert seeded_repository.get_task(TASK_IDS[0]).status is TaskStatus.IN_PROGRESS
    assert seeded_repository.get_token_stats(PROJECT_ID).total_input == 0


def test_failed_task_can_be_executed_again(
    engine: ExecutionEngine,
    fake_provider: FakeProvider,
    seeded_repository: StateRepository,
) -> None:
    fake_provider.replies.extend(
        [manifest_json(("../escape.txt", "x")), manifest_json(("ok.txt", "ok"))],
    )
    with pytest.raises(FilesystemError, match="escapes the output root"):
        engine.execute_task(TASK_IDS[0])

    engine.execute_task(TASK_IDS[0])

    assert seeded_repository.get_task(TASK_IDS[0]).status is TaskStatus.COMPLETED


def test_execute_task_rejects_terminal_and_missing_tasks(
    engine: ExecutionEngine,
    seeded_repository: StateRepository,
) -> None:
    engine.skip_task(TASK_IDS[0])

    with pytest.raises(InvalidStateError):
        engine.execute_task(TASK_IDS[0])
    with pytest.raises(NotFoundError):
        engine.execute_task("missing-task")


def test_execute_phase_completes_phase_and_then_project(
    engine: ExecutionEngine,
    fake_provider: FakeProvider,
    seeded_repository: StateRepository,
) -> None:
    fake_provider.replies.extend(
        [
            manifest_json(("one.txt", "1")),
            manifest_json(("two.txt", "2")),
            manifest_json(("three.txt", "3")),
        ],
    )

    engine.execute_phase(PHASE_ONE_ID)

    assert seeded_repository.get_phase(PHASE_ONE_ID).status is PhaseStatus.COMPLETED
    project = seeded_repository.get_project(PROJECT_ID)
    assert project.current_stage is Stage.DEVELOP
    assert project.current_phase_id == PHASE_ONE_ID
    updates = engine.stream_output().drain()
    assert updates[0].kind is UpdateKind.STARTED
    assert updates[0].task_id == ""
    assert updates[-1].kind is UpdateKind.COMPLETED
    assert updates[-1].task_id == ""
    assert updates[-1].phase_id == PHASE_ONE_ID

    engine.execute_phase(PHASE_TWO_ID)

    assert seeded_repository.get_project(PROJECT_ID).current_stage is Stage.COMPLETE
    progress = seeded_repository.calculate_progress(PROJECT_ID)
    assert progress.completion_percentage == 100.0


def test_execute_phase_stops_at_task_that_exhausts_retries(
    engine: ExecutionEngine,
    fake_provider: FakeProvider,
    seeded_repository: StateRepository,
) -> None:
    seeded_repository.save_task(
        Task(task_id="task-4", phase_id=PHASE_ONE_ID, sequence=3, description="Add logging"),
    )
    transient = [
        ProviderError("overloaded", provider="fake", status_code=503, retryable=True)
        for _ in range(4)
    ]
    fake_provider.replies.extend([manifest_json(("one.txt", "1")), *transient])

    with pytest.raises(RetryExhaustedError, match="failed after 4 attempts"):
        engine.execute_phase(PHASE_ONE_ID)

    assert seeded_repository.get_task(TASK_IDS[0]).status is TaskStatus.COMPLETED
    assert seeded_repository.get_task(TASK_IDS[1]).status is TaskStatus.IN_PROGRESS
    assert seeded_repository.get_task("task-4").status is TaskStatus.NOT_STARTED
    assert seeded_repository.get_phase(PHASE_ONE_ID).status is not PhaseStatus.COMPLETED
    assert fake_provider.attempts == 5
    assert fake_provider.delays == [0.5, 1.0, 2.0]
    kinds = _kinds(engine)
    assert kinds[-2:] == [UpdateKind.ERROR, UpdateKind.ERROR]


def test_execute_phase_requires_completed_dependencies(engine: ExecutionEngine) -> None:
    with pytest.raises(InvalidStateError, match="depends on phase 1"):
        engine.execute_phase(PHASE_TWO_ID)


def test_execute_phase_passes_over_skipped_tasks(
    engine: ExecutionEngine,
    fake_provider: FakeProvider,
    seeded_repository: StateRepository,
) -> None:
    engine.skip_task(TASK_IDS[0])
    fake_provider.replies.append(manifest_json(("two.txt", "2")))

    engine.execute_phase(PHASE_ONE_ID)

    assert fake_provider.attempts == 1
    assert seeded_repository.get_phase(PHASE_ONE_ID).status is PhaseStatus.COMPLETED


def test_execute_phase_halts_on_blocked_task(
    engine: ExecutionEngine,
    seeded_repository: StateRepository,
) -> None:
    seeded_repository.update_task_status(TASK_IDS[0], TaskStatus.IN_PROGRESS)
    engine.mark_blocked(TASK_IDS[0], "waiting for credentials")

    with pytest.raises(InvalidStateError, match="is blocked"):
        engine.execute_phase(PHASE_ONE_ID)

    assert seeded_repository.get_phase(PHASE_ONE_ID).status is PhaseStatus.BLOCKED


def test_mark_blocked_then_resolve_round_trip(
    engine: ExecutionEngine,
    seeded_repository: StateRepository,
) -> None:
    seeded_repository.update_task_status(TASK_IDS[0], TaskStatus.IN_PROGRESS)

    engine.mark_blocked(TASK_IDS[0], "missing API contract")

    active = seeded_repository.list_active_blockers(PROJECT_ID)
    assert [(item.task_id, item.description) for item in active] == [
        (TASK_IDS[0], "missing API contract"),
    ]
    assert seeded_repository.get_task(TASK_IDS[0]).status is TaskStatus.BLOCKED

    resolved = engine.resolve_blocker(TASK_IDS[0], "contract delivered")

    assert resolved.resolution == "contract delivered"
    assert seeded_repository.list_active_blockers(PROJECT_ID) == []
    assert seeded_repository.get_task(TASK_IDS[0]).status is TaskStatus.NOT_STARTED
    assert _kinds(engine) == [UpdateKind.BLOCKED]


def test_mark_blocked_requires_in_progress(
    engine: ExecutionEngine,
    seeded_repository: StateRepository,
) -> None:
    with pytest.raises(InvalidStateError):
        engine.mark_blocked(TASK_IDS[0], "not started yet")

    seeded_repository.update_task_status(TASK_IDS[0], TaskStatus.IN_PROGRESS)
    engine.mark_blocked(TASK_IDS[0], "first")
    with pytest.raises(InvalidStateError):
        engine.mark_blocked(TASK_IDS[0], "second")
    assert len(seeded_repository.list_active_blockers(PROJECT_ID)) == 1


def test_resolve_blocker_requires_blocked_task(engine: ExecutionEngine) -> None:
    with pytest.raises(InvalidStateError, match="not blocked"):
        engine.resolve_blocker(TASK_IDS[0], "nothing to resolve")


@pytest.mark.parametrize(
    "prior",
    [TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, TaskStatus.COMPLETED],
)
def test_skip_task_succeeds_from_any_status(
    engine: ExecutionEngine,
    seeded_repository: StateRepository,
    prior: TaskStatus,
) -> None:
    seeded_repository.update_task_status(TASK_IDS[0], prior)

    engine.skip_task(TASK_IDS[0])
    engine.skip_task(TASK_IDS[0])

    assert seeded_repository.get_task(TASK_IDS[0]).status is TaskStatus.SKIPPED
    assert _kinds(engine) == [UpdateKind.SKIPPED, UpdateKind.SKIPPED]


def test_skip_task_closes_open_blocker(
    engine: ExecutionEngine,
    seeded_repository: StateRepository,
) -> None:
    seeded_repository.update_task_status(TASK_IDS[0], TaskStatus.IN_PROGRESS)
    engine.mark_blocked(TASK_IDS[0], "flaky dependency")

    engine.skip_task(TASK_IDS[0])

    assert seeded_repository.list_active_blockers(PROJECT_ID) == []


def test_mark_blocked_keeps_task_in_progress_when_blocker_insert_fails(
    engine: ExecutionEngine,
    seeded_repository: StateRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    seeded_repository.update_task_status(TASK_IDS[0], TaskStatus.IN_PROGRESS)

    def failing_save(blocker: Blocker) -> None:
        raise OperationalError("INSERT INTO blockers", {}, Exception("disk I/O error"))

    with monkeypatch.context() as patched:
        patched.setattr(seeded_repository, "save_blocker", failing_save)
        with pytest.raises(OperationalError):
            engine.mark_blocked(TASK_IDS[0], "needs review")

    assert seeded_repository.get_task(TASK_IDS[0]).status is TaskStatus.IN_PROGRESS
    assert seeded_repository.list_active_blockers(PROJECT_ID) == []
    assert _kinds(engine) == []

    engine.mark_blocked(TASK_IDS[0], "needs review")
    engine.resolve_blocker(TASK_IDS[0], "reviewed")
    assert seeded_repository.get_task(TASK_IDS[0]).status is TaskStatus.NOT_STARTED


def _hold_provider_call(
    provider: FakeProvider,
    *,
    attempt: int,
) -> tuple[threading.Event, threading.Event]:
    """Park the given provider attempt until `release` is set."""

    entered = threading.Event()
    release = threading.Event()

    def hold(current: int) -> None:
        if current == attempt:
            entered.set()
            release.wait(timeout=5)

    provider.on_call = hold
    return entered, release


def test_skip_during_running_task_wins_and_suppresses_completion(
    engine: ExecutionEngine,
    fake_provider: FakeProvider,
    seeded_repository: StateRepository,
) -> None:
    fake_provider.replies.append(manifest_json(("one.txt", "1")))
    entered, release = _hold_provider_call(fake_provider, attempt=1)
    results: list[CodeGenerationResult] = []
    worker = threading.Thread(
        target=lambda: results.append(engine.execute_task(TASK_IDS[0])),
        daemon=True,
    )
    worker.start()

    assert entered.wait(timeout=5)
    engine.skip_task(TASK_IDS[0])
    release.set()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert results[0].task_status is TaskStatus.SKIPPED
    assert seeded_repository.get_task(TASK_IDS[0]).status is TaskStatus.SKIPPED
    assert _kinds(engine) == [UpdateKind.STARTED, UpdateKind.SKIPPED, UpdateKind.PROGRESS]


def test_skip_during_phase_moves_on_to_next_task(
    engine: ExecutionEngine,
    fake_provider: FakeProvider,
    seeded_repository: StateRepository,
) -> None:
    fake_provider.replies.extend([manifest_json(("one.txt", "1")), manifest_json(("two.txt", "2"))])
    entered, release = _hold_provider_call(fake_provider, attempt=1)
    worker = threading.Thread(target=engine.execute_phase, args=(PHASE_ONE_ID,), daemon=True)
    worker.start()

    assert entered.wait(timeout=5)
    engine.skip_task(TASK_IDS[0])
    release.set()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert seeded_repository.get_task(TASK_IDS[0]).status is TaskStatus.SKIPPED
    assert seeded_repository.get_task(TASK_IDS[1]).status is TaskStatus.COMPLETED
    assert seeded_repository.get_phase(PHASE_ONE_ID).status is PhaseStatus.COMPLETED
    first_task = [
        update.kind
        for update in engine.stream_output().drain()
        if update.task_id == TASK_IDS[0]
    ]
    assert first_task == [UpdateKind.STARTED, UpdateKind.SKIPPED, UpdateKind.PROGRESS]


def test_blocking_a_running_task_halts_its_phase(
    engine: ExecutionEngine,
    fake_provider: FakeProvider,
    seeded_repository: StateRepository,
) -> None:
    fake_provider.replies.extend([manifest_json(("one.txt", "1")), manifest_json(("two.txt", "2"))])
    entered, release = _hold_provider_call(fake_provider, attempt=2)
    errors: list[InvalidStateError] = []

    def run() -> None:
        try:
            engine.execute_phase(PHASE_ONE_ID)
        except InvalidStateError as error:
            errors.append(error)

    worker = threading.Thread(target=run, daemon=True)
    worker.start()

    assert entered.wait(timeout=5)
    engine.mark_blocked(TASK_IDS[1], "schema under review")
    release.set()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert len(errors) == 1
    assert "is blocked" in str(errors[0])
    assert seeded_repository.get_task(TASK_IDS[0]).status is TaskStatus.COMPLETED
    assert seeded_repository.get_task(TASK_IDS[1]).status is TaskStatus.BLOCKED
    assert seeded_repository.get_phase(PHASE_ONE_ID).status is PhaseStatus.BLOCKED
    assert len(seeded_repository.list_active_blockers(PROJECT_ID)) == 1

    updates = engine.stream_output().drain()
    second_task = [update for update in updates if update.task_id == TASK_IDS[1]]
    assert [update.kind for update in second_task] == [
        UpdateKind.STARTED,
        UpdateKind.BLOCKED,
        UpdateKind.PROGRESS,
        UpdateKind.BLOCKED,
    ]
    assert second_task[-1].content.startswith("Phase halted")
    assert not any(
        update.kind is UpdateKind.COMPLETED and update.task_id == ""
        for update in updates
    )


def test_pause_and_resume_are_not_idempotent(engine: ExecutionEngine) -> None:
    engine.pause_execution()
    with pytest.raises(InvalidStateError):
        engine.pause_execution()

    engine.resume_execution()
    with pytest.raises(InvalidStateError):
        engine.resume_execution()

    assert _kinds(engine) == [UpdateKind.PAUSED, UpdateKind.RESUMED]


def test_paused_engine_waits_at_task_boundary_until_resumed(
    engine: ExecutionEngine,
    fake_provider: FakeProvider,
    seeded_repository: StateRepository,
) -> None:
    fake_provider.replies.append(manifest_json(("one.txt", "1")))
    engine.pause_execution()
    worker = threading.Thread(target=engine.execute_task, args=(TASK_IDS[0],), daemon=True)
    worker.start()

    time.sleep(0.2)
    assert worker.is_alive()
    assert fake_provider.attempts == 0

    engine.resume_execution()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert seeded_repository.get_task(TASK_IDS[0]).status is TaskStatus.COMPLETED


def test_close_releases_paused_waiter_with_invalid_state(engine: ExecutionEngine) -> None:
    errors: list[Exception] = []

    def run() -> None:
        try:
            engine.execute_task(TASK_IDS[0])
        except InvalidStateError as error:
            errors.append(error)

    engine.pause_execution()
    worker = threading.Thread(target=run, daemon=True)
    worker.start()
    time.sleep(0.1)

    engine.close()
    engine.close()
    worker.join(timeout=5)

    assert len(errors) == 1
    assert "closed" in str(errors[0])
    with pytest.raises(InvalidStateError):
        engine.execute_phase(PHASE_ONE_ID)
    with pytest.raises(InvalidStateError):
        engine.resume_execution()


def test_stream_output_returns_the_same_channel(engine: ExecutionEngine) -> None:
    assert engine.stream_output() is engine.stream_output()

    engine.close()

    assert list(engine.stream_output()) == []
