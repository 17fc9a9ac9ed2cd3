"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from phasecraft.errors import ProviderError
from phasecraft.execution.codegen import CodeGenerationAdapter
from phasecraft.execution.engine import ExecutionEngine
from phasecraft.provider.base import BaseProvider, Model, QuotaInfo, RateLimitInfo, Response
from phasecraft.provider.bridge import ProviderBridge
from phasecraft.state.models import (
    Architecture,
    InterviewData,
    Phase,
    Project,
    Stage,
    Task,
)
from phasecraft.state.repository import StateRepository

PROJECT_ID = "project-1"
PHASE_ONE_ID = "phase-1"
PHASE_TWO_ID = "phase-2"
TASK_IDS = ("task-1", "task-2", "task-3")


class FakeProvider(BaseProvider):
    """Scripted provider: each call consumes the next reply or raises the next error."""

    def __init__(
        self,
        name: str = "fake",
        *,
        replies: list[str | Exception] | None = None,
        rate_limit: RateLimitInfo | None = None,
        quota: QuotaInfo | None = None,
        coding_plan: bool = False,
        max_retries: int = 3,
    ) -> None:
        self.delays: list[float] = []
        super().__init__(
            name,
            max_retries=max_retries,
            base_delay_seconds=0.5,
            sleep=self.delays.append,
        )
        self.replies: list[str | Exception] = list(replies or [])
        self.rate_limit = rate_limit
        self.quota = quota
        self.coding_plan = coding_plan
        self.prompts: list[str] = []
        self.attempts = 0
        self.rate_limit_reads = 0
        self.on_call: Callable[[int], None] | None = None

    def list_models(self) -> list[Model]:
        self.require_authenticated()
        return [Model(provider=self.name, name="fake-model", display_name="Fake")]

    def call(self, model: str, prompt: str) -> Response:
        self.require_authenticated()
        self.prompts.append(prompt)
        return self.retry_with_backoff(lambda: self._next_reply(model))

    def stream(self, model: str, prompt: str) -> Iterator[str]:
        self.require_authenticated()
        self.prompts.append(prompt)
        reply = self._next_reply(model)
        return iter(reply.content.split())

    def get_rate_limit_info(self) -> RateLimitInfo | None:
        self.rate_limit_reads += 1
        return self.rate_limit

    def get_quota_info(self) -> QuotaInfo | None:
        return self.quota

    def supports_coding_plan(self) -> bool:
        return self.coding_plan

    def _next_reply(self, model: str) -> Response:
        self.attempts += 1
        if self.on_call is not None:
            self.on_call(self.attempts)
        if not self.replies:
            raise ProviderError("no scripted reply left", provider=self.name)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return Response(
            content=reply,
            tokens_input=100,
            tokens_output=50,
            model=model or "fake-model",
            provider=self.name,
        )


def manifest_json(*files: tuple[str, str], explanation: str = "done") -> str:
    return json.dumps(
        {
            "explanation": explanation,
            "files": [{"path": path, "content": content} for path, content in files],
        },
    )


def seed_plan(repository: StateRepository) -> None:
    """Project with phase 1 (two tasks) and phase 2 (one task, depends on phase 1)."""

    repository.save_project(
        Project(
            project_id=PROJECT_ID,
            name="Todo API",
            created_at=datetime(2026, 10, 1, tzinfo=UTC),
            current_stage=Stage.REVIEW,
        ),
    )
    repository.save_interview_data(
        InterviewData(
            project_id=PROJECT_ID,
            project_name="Todo API",
            problem_statement="Teams need a shared todo list over HTTP.",
            payload={"users": "small teams"},
        ),
    )
    repository.save_architecture(
        Architecture(project_id=PROJECT_ID, content="FastAPI service backed by SQLite."),
    )
    repository.save_phase(
        Phase(
            phase_id=PHASE_ONE_ID,
            project_id=PROJECT_ID,
            number=1,
            title="Foundation",
            objective="Project skeleton",
        ),
    )
    repository.save_phase(
        Phase(
            phase_id=PHASE_TWO_ID,
            project_id=PROJECT_ID,
            number=2,
            title="Endpoints",
            objective="CRUD endpoints",
            dependencies={1},
        ),
    )
    repository.save_task(
        Task(
            task_id=TASK_IDS[0],
            phase_id=PHASE_ONE_ID,
            sequence=1,
            description="Create package layout",
            acceptance_criteria=["package imports"],
        ),
    )
    repository.save_task(
        Task(
            task_id=TASK_IDS[1],
            phase_id=PHASE_ONE_ID,
            sequence=2,
            description="Add settings module",
            implementation_notes="Read settings from environment.",
        ),
    )
    repository.save_task(
        Task(
            task_id=TASK_IDS[2],
            phase_id=PHASE_TWO_ID,
            sequence=1,
            description="Add list endpoint",
        ),
    )


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[StateRepository]:
    repo = StateRepository(tmp_path / "state.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def seeded_repository(repository: StateRepository) -> StateRepository:
    seed_plan(repository)
    return repository


@pytest.fixture()
def fake_provider() -> FakeProvider:
    provider = FakeProvider()
    provider.authenticate("test-key")
    return provider


@pytest.fixture()
def bridge(fake_provider: FakeProvider) -> ProviderBridge:
    bridge = ProviderBridge()
    bridge.register_provider(fake_provider)
    return bridge


@pytest.fixture()
def output_root(tmp_path: Path) -> Path:
    root = tmp_path / "out"
    root.mkdir()
    return root


@pytest.fixture()
def engine(
    seeded_repository: StateRepository,
    bridge: ProviderBridge,
    output_root: Path,
) -> Iterator[ExecutionEngine]:
    codegen = CodeGenerationAdapter(bridge, output_root=output_root, model="fake-model")
    engine = ExecutionEngine(seeded_repository, codegen, publish_timeout_seconds=0.05)
    try:
        yield engine
    finally:
        engine.close()
