"""SQLModel-backed project state store."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Collection
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from phasecraft.errors import InvalidStateError, NotFoundError
from phasecraft.state.models import (
    Architecture,
    Blocker,
    InterviewData,
    Phase,
    PhaseStatus,
    ProgressStats,
    Project,
    Stage,
    Task,
    TaskStatus,
    TokenStats,
    TokenUsage,
)
from phasecraft.storage.alembic_runner import upgrade_head
from phasecraft.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_dict,
    load_json_list,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from phasecraft.storage.sqlmodel_models import (
    ArchitectureRow,
    BlockerRow,
    InterviewDataRow,
    PhaseRow,
    ProjectRow,
    TaskRow,
    TokenUsageRow,
)

logger = logging.getLogger(__name__)


class StateRepository:
    """Project/phase/task persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    # Projects and planning context

    def save_project(self, project: Project) -> None:
        with Session(self.engine) as session:
            session.merge(
                ProjectRow(
                    project_id=project.project_id,
                    name=project.name,
                    current_stage=project.current_stage.value,
                    current_phase_id=project.current_phase_id,
                    created_at=to_db_datetime(project.created_at),
                ),
            )
            session.commit()

    def get_project(self, project_id: str) -> Project:
        with Session(self.engine) as session:
            row = session.get(ProjectRow, project_id)
            if row is None:
                raise NotFoundError(f"Project not found: {project_id}")
            return _to_project(row)

    def list_projects(self) -> list[Project]:
        with Session(self.engine) as session:
            rows = session.exec(select(ProjectRow).order_by(col(ProjectRow.created_at))).all()
            return [_to_project(row) for row in rows]

    def update_project_stage(
        self,
        project_id: str,
        stage: Stage,
        *,
        current_phase_id: str | None = None,
    ) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ProjectRow)
                .where(col(ProjectRow.project_id) == project_id)
                .values(current_stage=stage.value, current_phase_id=current_phase_id),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(f"Project not found: {project_id}")
            session.commit()

    def save_interview_data(self, data: InterviewData) -> None:
        with Session(self.engine) as session:
            session.merge(
                InterviewDataRow(
                    project_id=data.project_id,
                    project_name=data.project_name,
                    problem_statement=data.problem_statement,
                    payload_json=dump_json(data.payload),
                    created_at=to_db_datetime(data.created_at or utc_now()),
                ),
            )
            session.commit()

    def get_interview_data(self, project_id: str) -> InterviewData:
        with Session(self.engine) as session:
            row = session.get(InterviewDataRow, project_id)
            if row is None:
                raise NotFoundError(f"Interview data not found for project: {project_id}")
            return InterviewData(
                project_id=row.project_id,
                project_name=row.project_name,
                problem_statement=row.problem_statement,
                payload=load_json_dict(row.payload_json),
                created_at=to_utc_aware(row.created_at),
            )

    def save_architecture(self, architecture: Architecture) -> None:
        with Session(self.engine) as session:
            session.merge(
                ArchitectureRow(
                    project_id=architecture.project_id,
                    content=architecture.content,
                    created_at=to_db_datetime(architecture.created_at or utc_now()),
                ),
            )
            session.commit()

    def get_architecture(self, project_id: str) -> Architecture:
        with Session(self.engine) as session:
            row = session.get(ArchitectureRow, project_id)
            if row is None:
                raise NotFoundError(f"Architecture not found for project: {project_id}")
            return Architecture(
                project_id=row.project_id,
                content=row.content,
                created_at=to_utc_aware(row.created_at),
            )

    # Phases

    def save_phase(self, phase: Phase) -> None:
        """Insert or replace a phase; dependencies must precede it."""

        invalid = sorted(dep for dep in phase.dependencies if dep >= phase.number)
        if invalid:
            raise ValueError(
                f"Phase {phase.number} may only depend on lower-numbered phases, got {invalid}",
            )
        with Session(self.engine) as session:
            session.merge(
                PhaseRow(
                    phase_id=phase.phase_id,
                    project_id=phase.project_id,
                    number=phase.number,
                    title=phase.title,
                    objective=phase.objective,
                    success_criteria_json=dump_json(phase.success_criteria),
                    dependencies_json=dump_json(sorted(phase.dependencies)),
                    status=phase.status.value,
                    estimated_tokens=phase.estimated_tokens,
                    estimated_cost=phase.estimated_cost,
                    created_at=to_db_datetime(phase.created_at or utc_now()),
                    started_at=_optional_db_datetime(phase.started_at),
                    completed_at=_optional_db_datetime(phase.completed_at),
                ),
            )
            session.commit()

    def get_phase(self, phase_id: str) -> Phase:
        with Session(self.engine) as session:
            row = session.get(PhaseRow, phase_id)
            if row is None:
                raise NotFoundError(f"Phase not found: {phase_id}")
            return _to_phase(row, task_ids=_task_ids(session, phase_id))

    def list_phases(self, project_id: str) -> list[Phase]:
        """Phases of a project in execution order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(PhaseRow)
                .where(PhaseRow.project_id == project_id)
                .order_by(col(PhaseRow.number).asc()),
            ).all()
            return [_to_phase(row, task_ids=_task_ids(session, row.phase_id)) for row in rows]

    def update_phase_status(self, phase_id: str, status: PhaseStatus) -> None:
        now = to_db_datetime(utc_now())
        values: dict[str, object] = {"status": status.value}
        if status is PhaseStatus.IN_PROGRESS:
            values["completed_at"] = None
        if status is PhaseStatus.COMPLETED:
            values["completed_at"] = now
        with Session(self.engine) as session:
            row = session.get(PhaseRow, phase_id)
            if row is None:
                raise NotFoundError(f"Phase not found: {phase_id}")
            if status is PhaseStatus.IN_PROGRESS and row.started_at is None:
                values["started_at"] = now
            session.exec(
                sa_update(PhaseRow).where(col(PhaseRow.phase_id) == phase_id).values(**values),
            )
            session.commit()

    # Tasks

    def save_task(self, task: Task) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            session.merge(
                TaskRow(
                    task_id=task.task_id,
                    phase_id=task.phase_id,
                    sequence=task.sequence,
                    description=task.description,
                    acceptance_criteria_json=dump_json(task.acceptance_criteria),
                    implementation_notes=task.implementation_notes,
                    status=task.status.value,
                    created_at=to_db_datetime(task.created_at or now),
                    started_at=_optional_db_datetime(task.started_at),
                    completed_at=_optional_db_datetime(task.completed_at),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()

    def get_task(self, task_id: str) -> Task:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                raise NotFoundError(f"Task not found: {task_id}")
            return _to_task(row)

    def list_tasks(self, phase_id: str) -> list[Task]:
        """Tasks of a phase in stored order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(TaskRow.phase_id == phase_id)
                .order_by(col(TaskRow.sequence).asc()),
            ).all()
            return [_to_task(row) for row in rows]

    def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        expected: Collection[TaskStatus] | None = None,
    ) -> Task:
        """Atomically move a task to `status`, optionally guarded by its current status."""

        now = to_db_datetime(utc_now())
        values: dict[str, object] = {"status": status.value, "updated_at": now}
        if status is TaskStatus.COMPLETED:
            values["completed_at"] = now
        if status is TaskStatus.NOT_STARTED:
            values["started_at"] = None
            values["completed_at"] = None

        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                raise NotFoundError(f"Task not found: {task_id}")
            if status is TaskStatus.IN_PROGRESS and row.started_at is None:
                values["started_at"] = now

            statement = sa_update(TaskRow).where(col(TaskRow.task_id) == task_id)
            if expected is not None:
                statement = statement.where(
                    col(TaskRow.status).in_([item.value for item in expected]),
                )
            result = session.exec(statement.values(**values))
            if result.rowcount != 1:
                session.rollback()
                current = session.get(TaskRow, task_id)
                current_status = current.status if current is not None else "missing"
                raise InvalidStateError(
                    f"Task {task_id} cannot move to {status.value} from {current_status}",
                )
            session.commit()

            updated = session.get(TaskRow, task_id)
            if updated is None:
                raise NotFoundError(f"Task not found: {task_id}")
            session.refresh(updated)
            return _to_task(updated)

    # Blockers

    def save_blocker(self, blocker: Blocker) -> None:
        with Session(self.engine) as session:
            session.merge(
                BlockerRow(
                    blocker_id=blocker.blocker_id or str(uuid4()),
                    task_id=blocker.task_id,
                    description=blocker.description,
                    resolution=blocker.resolution,
                    created_at=to_db_datetime(blocker.created_at),
                    resolved_at=_optional_db_datetime(blocker.resolved_at),
                ),
            )
            session.commit()

    def resolve_blocker(self, task_id: str, resolution: str) -> list[Blocker]:
        """Close every open blocker of a task; returns the blockers closed."""

        now = utc_now()
        with Session(self.engine) as session:
            rows = session.exec(
                select(BlockerRow).where(
                    BlockerRow.task_id == task_id,
                    col(BlockerRow.resolved_at).is_(None),
                ),
            ).all()
            for row in rows:
                row.resolution = resolution
                row.resolved_at = to_db_datetime(now)
                session.add(row)
            session.commit()
            for row in rows:
                session.refresh(row)
            return [_to_blocker(row) for row in rows]

    def list_blockers_for_task(self, task_id: str) -> list[Blocker]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BlockerRow)
                .where(BlockerRow.task_id == task_id)
                .order_by(col(BlockerRow.created_at).asc()),
            ).all()
            return [_to_blocker(row) for row in rows]

    def list_active_blockers(self, project_id: str) -> list[Blocker]:
        """Open blockers across every task of a project."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(BlockerRow)
                .join(TaskRow, col(TaskRow.task_id) == col(BlockerRow.task_id))
                .join(PhaseRow, col(PhaseRow.phase_id) == col(TaskRow.phase_id))
                .where(
                    PhaseRow.project_id == project_id,
                    col(BlockerRow.resolved_at).is_(None),
                )
                .order_by(col(BlockerRow.created_at).asc()),
            ).all()
            return [_to_blocker(row) for row in rows]

    # Token accounting and aggregates

    def record_token_usage(self, usage: TokenUsage) -> None:
        with Session(self.engine) as session:
            session.add(
                TokenUsageRow(
                    project_id=usage.project_id,
                    phase_id=usage.phase_id,
                    task_id=usage.task_id,
                    provider=usage.provider,
                    model=usage.model,
                    tokens_input=usage.tokens_input,
                    tokens_output=usage.tokens_output,
                    cost=usage.cost,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
        logger.debug(
            "Recorded token usage (project=%s task=%s provider=%s in=%d out=%d).",
            usage.project_id,
            usage.task_id,
            usage.provider,
            usage.tokens_input,
            usage.tokens_output,
        )

    def get_token_stats(self, project_id: str) -> TokenStats:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TokenUsageRow).where(TokenUsageRow.project_id == project_id),
            ).all()
        stats = TokenStats()
        by_provider: dict[str, int] = defaultdict(int)
        by_phase: dict[str, int] = defaultdict(int)
        for row in rows:
            total = row.tokens_input + row.tokens_output
            stats.total_input += row.tokens_input
            stats.total_output += row.tokens_output
            by_provider[row.provider] += total
            if row.phase_id:
                by_phase[row.phase_id] += total
        stats.by_provider = dict(by_provider)
        stats.by_phase = dict(by_phase)
        return stats

    def calculate_progress(self, project_id: str) -> ProgressStats:
        project = self.get_project(project_id)
        with Session(self.engine) as session:
            phase_counts = session.exec(
                select(PhaseRow.status, func.count())
                .where(PhaseRow.project_id == project_id)
                .group_by(PhaseRow.status),
            ).all()
            task_counts = session.exec(
                select(TaskRow.status, func.count())
                .join(PhaseRow, col(PhaseRow.phase_id) == col(TaskRow.phase_id))
                .where(PhaseRow.project_id == project_id)
                .group_by(TaskRow.status),
            ).all()

        phases = {status: int(count) for status, count in phase_counts}
        tasks = {status: int(count) for status, count in task_counts}
        stats = ProgressStats(
            total_phases=sum(phases.values()),
            completed_phases=phases.get(PhaseStatus.COMPLETED.value, 0),
            in_progress_phases=phases.get(PhaseStatus.IN_PROGRESS.value, 0),
            blocked_phases=phases.get(PhaseStatus.BLOCKED.value, 0),
            pending_phases=phases.get(PhaseStatus.NOT_STARTED.value, 0),
            total_tasks=sum(tasks.values()),
            completed_tasks=tasks.get(TaskStatus.COMPLETED.value, 0),
            in_progress_tasks=tasks.get(TaskStatus.IN_PROGRESS.value, 0),
            blocked_tasks=tasks.get(TaskStatus.BLOCKED.value, 0),
            skipped_tasks=tasks.get(TaskStatus.SKIPPED.value, 0),
            pending_tasks=tasks.get(TaskStatus.NOT_STARTED.value, 0),
            current_stage=project.current_stage,
            current_phase_id=project.current_phase_id,
        )
        if stats.total_tasks:
            done = stats.completed_tasks + stats.skipped_tasks
            stats.completion_percentage = round(done * 100.0 / stats.total_tasks, 2)
        return stats


def _task_ids(session: Session, phase_id: str) -> list[str]:
    return list(
        session.exec(
            select(TaskRow.task_id)
            .where(TaskRow.phase_id == phase_id)
            .order_by(col(TaskRow.sequence).asc()),
        ).all(),
    )


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return to_db_datetime(value)


def _optional_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return to_utc_aware(value)


def _to_project(row: ProjectRow) -> Project:
    return Project(
        project_id=row.project_id,
        name=row.name,
        created_at=to_utc_aware(row.created_at),
        current_stage=Stage(row.current_stage),
        current_phase_id=row.current_phase_id,
    )


def _to_phase(row: PhaseRow, *, task_ids: list[str]) -> Phase:
    return Phase(
        phase_id=row.phase_id,
        project_id=row.project_id,
        number=row.number,
        title=row.title,
        objective=row.objective,
        success_criteria=[str(item) for item in load_json_list(row.success_criteria_json)],
        dependencies={int(item) for item in load_json_list(row.dependencies_json)},
        status=PhaseStatus(row.status),
        estimated_tokens=row.estimated_tokens,
        estimated_cost=row.estimated_cost,
        task_ids=task_ids,
        created_at=to_utc_aware(row.created_at),
        started_at=_optional_utc(row.started_at),
        completed_at=_optional_utc(row.completed_at),
    )


def _to_task(row: TaskRow) -> Task:
    return Task(
        task_id=row.task_id,
        phase_id=row.phase_id,
        sequence=row.sequence,
        description=row.description,
        acceptance_criteria=[str(item) for item in load_json_list(row.acceptance_criteria_json)],
        implementation_notes=row.implementation_notes,
        status=TaskStatus(row.status),
        created_at=to_utc_aware(row.created_at),
        started_at=_optional_utc(row.started_at),
        completed_at=_optional_utc(row.completed_at),
    )


def _to_blocker(row: BlockerRow) -> Blocker:
    return Blocker(
        blocker_id=row.blocker_id,
        task_id=row.task_id,
        description=row.description,
        created_at=to_utc_aware(row.created_at),
        resolution=row.resolution,
        resolved_at=_optional_utc(row.resolved_at),
    )
