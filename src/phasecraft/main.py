"""CLI entrypoint for phasecraft."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from phasecraft import __version__
from phasecraft.controllers import (
    DevelopCommand,
    PhasecraftCliController,
    PlanLoadCommand,
    ProjectCommand,
    ProvidersCommand,
    TaskControlCommand,
)
from phasecraft.errors import PhasecraftError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PhasecraftCliController()

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="phasecraft")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def phasecraft(verbose: bool) -> None:
    """Phase-by-phase LLM code generation with operator controls."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@phasecraft.group()
def plan() -> None:
    """Plan commands."""


@plan.command("load")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument(
    "plan_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
def plan_load(db_path: Path | None, plan_path: Path) -> None:
    """Import a plan JSON document (project, architecture, phases, tasks)."""

    _emit(CONTROLLER.load_plan, PlanLoadCommand(db_path=db_path, plan_path=plan_path))


@phasecraft.command("develop")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", default=None, help="Project id; optional with a single project.")
@click.option("--phase-id", default=None, help="Run only this phase.")
@click.option("--provider", default=None, help="Provider name; defaults to the configured one.")
@click.option("--model", default=None, help="Model name; defaults to PHASECRAFT_DEFAULT_MODEL.")
@click.option(
    "--output-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory generated files are written under.",
)
def develop(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str | None,
    phase_id: str | None,
    provider: str | None,
    model: str | None,
    output_root: Path | None,
) -> None:
    """Run unfinished phases, printing progress updates as they happen."""

    command = DevelopCommand(
        db_path=db_path,
        project_id=project_id,
        phase_id=phase_id,
        provider=provider,
        model=model,
        output_root=output_root,
    )
    _emit(lambda item: CONTROLLER.develop(item, emit=click.echo), command)


@phasecraft.group()
def task() -> None:
    """Operator task controls."""


@task.command("skip")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def task_skip(db_path: Path | None, task_id: str) -> None:
    """Mark a task skipped and close its open blockers."""

    _emit(CONTROLLER.skip_task, TaskControlCommand(db_path=db_path, task_id=task_id))


@task.command("block")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", required=True, help="Why the task is blocked.")
@click.argument("task_id")
def task_block(db_path: Path | None, reason: str, task_id: str) -> None:
    """Mark an in-progress task blocked."""

    _emit(
        CONTROLLER.block_task,
        TaskControlCommand(db_path=db_path, task_id=task_id, text=reason),
    )


@task.command("resolve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--resolution", required=True, help="How the blocker was resolved.")
@click.argument("task_id")
def task_resolve(db_path: Path | None, resolution: str, task_id: str) -> None:
    """Resolve a blocked task's blocker and reset it to not started."""

    _emit(
        CONTROLLER.resolve_task,
        TaskControlCommand(db_path=db_path, task_id=task_id, text=resolution),
    )


@phasecraft.command("blockers")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", default=None, help="Project id; optional with a single project.")
def blockers(db_path: Path | None, project_id: str | None) -> None:
    """List active blockers of a project."""

    _emit(CONTROLLER.blockers, ProjectCommand(db_path=db_path, project_id=project_id))


@phasecraft.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", default=None, help="Project id; optional with a single project.")
def status(db_path: Path | None, project_id: str | None) -> None:
    """Show project progress and token usage."""

    _emit(CONTROLLER.status, ProjectCommand(db_path=db_path, project_id=project_id))


@phasecraft.command("providers")
def providers() -> None:
    """List registered providers with authentication state."""

    _emit(CONTROLLER.providers, ProvidersCommand())


def _emit(method: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = method(command)
    except (PhasecraftError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    phasecraft()
