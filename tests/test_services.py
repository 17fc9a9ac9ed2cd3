from __future__ import annotations

from pathlib import Path

import allure
import httpx
import pytest
from conftest import PHASE_ONE_ID, PHASE_TWO_ID, PROJECT_ID, FakeProvider, manifest_json

from phasecraft.config import Settings
from phasecraft.errors import InvalidStateError
from phasecraft.execution.engine import ExecutionEngine
from phasecraft.services import (
    DevelopmentService,
    PlanImportService,
    build_bridge,
    build_engine,
)
from phasecraft.state.models import PhaseStatus, Stage, TaskStatus
from phasecraft.state.repository import StateRepository

pytestmark = [
    allure.epic("Operator Surface"),
    allure.feature("Services"),
]

PLAN = {
    "project": {"id": "shop", "name": "Shop"},
    "interview": {"problem_statement": "Sell things online.", "budget": "small"},
    "architecture": "Django monolith.",
    "phases": [
        {
            "number": 1,
            "title": "Models",
            "objective": "Data model",
            "success_criteria": ["migrations apply"],
            "tasks": [
                {"description": "Product model", "acceptance_criteria": ["has price"]},
                {"description": "Order model", "implementation_notes": "Use decimals."},
            ],
        },
        {
            "number": 2,
            "title": "Views",
            "dependencies": [1],
            "estimated_tokens": 4000,
            "tasks": [{"id": "views-task", "description": "Product list view"}],
        },
    ],
}


def test_import_plan_stores_every_record(repository: StateRepository) -> None:
    summary = PlanImportService(repository=repository).import_plan(PLAN)

    assert (summary.project.project_id, summary.phases, summary.tasks) == ("shop", 2, 3)
    project = repository.get_project("shop")
    assert project.current_stage is Stage.DEVELOP
    interview = repository.get_interview_data("shop")
    assert interview.project_name == "Shop"
    assert interview.problem_statement == "Sell things online."
    assert interview.payload["budget"] == "small"
    assert repository.get_architecture("shop").content == "Django monolith."

    phases = repository.list_phases("shop")
    assert [phase.title for phase in phases] == ["Models", "Views"]
    assert phases[1].dependencies == {1}
    assert phases[1].estimated_tokens == 4000
    tasks = repository.list_tasks(phases[0].phase_id)
    assert [task.description for task in tasks] == ["Product model", "Order model"]
    assert tasks[0].acceptance_criteria == ["has price"]
    assert repository.get_task("views-task").phase_id == phases[1].phase_id


@pytest.mark.parametrize(
    ("document", "message"),
    [
        ({"phases": []}, "project"),
        ({"project": {"name": "x"}, "phases": []}, "phases"),
        ({"project": {"name": "x"}, "phases": [{"title": "a"}, {"number": 1, "title": "b"}]},
         "duplicate phase number"),
        ({"project": {"name": "x"}, "phases": [{"title": "a", "dependencies": [7]}]},
         "unknown phases"),
        ({"project": {"name": "x"}, "phases": [{"title": "a", "tasks": [{"description": ""}]}]},
         "task"),
    ],
)
def test_import_plan_rejects_invalid_documents(
    repository: StateRepository,
    document: dict,
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        PlanImportService(repository=repository).import_plan(document)
    assert repository.list_projects() == []


def test_run_project_executes_pending_phases_in_order(
    engine: ExecutionEngine,
    fake_provider: FakeProvider,
    seeded_repository: StateRepository,
) -> None:
    fake_provider.replies.extend(manifest_json((f"{index}.txt", "x")) for index in range(3))
    service = DevelopmentService(repository=seeded_repository, engine=engine)

    completed = service.run_project(PROJECT_ID)

    assert completed == [PHASE_ONE_ID, PHASE_TWO_ID]
    assert service.pending_phases(PROJECT_ID) == []
    assert seeded_repository.get_project(PROJECT_ID).current_stage is Stage.COMPLETE


def test_run_phase_refuses_blocked_phase(
    engine: ExecutionEngine,
    seeded_repository: StateRepository,
) -> None:
    seeded_repository.update_phase_status(PHASE_ONE_ID, PhaseStatus.BLOCKED)
    service = DevelopmentService(repository=seeded_repository, engine=engine)

    with pytest.raises(InvalidStateError, match="resolve its blockers"):
        service.run_phase(PHASE_ONE_ID)


def test_build_bridge_authenticates_configured_providers() -> None:
    settings = Settings()
    settings.providers.default_provider = "openai"
    settings.providers.api_keys = {"openai": "sk-openai", "zai": "zai-key"}

    bridge = build_bridge(settings)

    assert bridge.list_providers() == ["anthropic", "kimi", "ollama", "openai", "requesty", "zai"]
    assert bridge.default_provider == "openai"
    authenticated = [
        name for name in bridge.list_providers() if bridge.get_provider(name).is_authenticated()
    ]
    assert authenticated == ["openai", "zai"]


def test_build_bridge_probes_ollama_when_it_is_default() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "gpu-box"
        return httpx.Response(200, json={"models": [{"name": "llama3"}]})

    settings = Settings()
    settings.providers.default_provider = "ollama"
    settings.providers.ollama_base_url = "http://gpu-box:11434"

    bridge = build_bridge(settings, transport=httpx.MockTransport(handler))

    assert bridge.default_provider == "ollama"
    assert bridge.get_provider("ollama").is_authenticated()
    assert [model.name for model in bridge.list_models_by_provider()] == ["llama3"]


def test_build_bridge_tolerates_unreachable_ollama(caplog: pytest.LogCaptureFixture) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    settings = Settings()
    settings.providers.default_provider = "ollama"

    with caplog.at_level("WARNING", logger="phasecraft.services"):
        bridge = build_bridge(settings, transport=httpx.MockTransport(handler))

    assert not bridge.get_provider("ollama").is_authenticated()
    assert "Ollama is not reachable" in caplog.text


def test_build_engine_uses_execution_settings(
    seeded_repository: StateRepository,
    tmp_path: Path,
) -> None:
    settings = Settings()
    settings.execution.output_root = tmp_path / "generated"
    settings.providers.default_model = "default-model"
    bridge = build_bridge(settings)

    engine = build_engine(settings, seeded_repository, bridge, provider_name="openai")

    assert engine.codegen.output_root == tmp_path / "generated"
    assert engine.codegen.model == "default-model"
    assert engine.codegen.provider_name == "openai"
    assert seeded_repository.get_task("task-1").status is TaskStatus.NOT_STARTED
    engine.close()
