"""Domain models for projects, phases, tasks, and blockers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Stage(str, Enum):
    """Pipeline stage a project is in."""

    INIT = "init"
    INTERVIEW = "interview"
    DESIGN = "design"
    PLAN = "plan"
    REVIEW = "review"
    DEVELOP = "develop"
    COMPLETE = "complete"


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class PhaseStatus(str, Enum):
    """Phase lifecycle states."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})

_TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.NOT_STARTED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.SKIPPED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.BLOCKED, TaskStatus.SKIPPED},
    ),
    TaskStatus.BLOCKED: frozenset({TaskStatus.NOT_STARTED, TaskStatus.SKIPPED}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.SKIPPED}),
    TaskStatus.SKIPPED: frozenset({TaskStatus.SKIPPED}),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Return whether `current -> target` is a legal task edge."""

    return target in _TASK_TRANSITIONS[current]


@dataclass(slots=True)
class Project:
    project_id: str
    name: str
    created_at: datetime
    current_stage: Stage = Stage.INIT
    current_phase_id: str | None = None


@dataclass(slots=True)
class InterviewData:
    """Requirements gathered before planning; `payload` holds the full session."""

    project_id: str
    project_name: str
    problem_statement: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(slots=True)
class Architecture:
    project_id: str
    content: str
    created_at: datetime | None = None


@dataclass(slots=True)
class Phase:
    """Ordered unit of work; `dependencies` are lower phase numbers."""

    phase_id: str
    project_id: str
    number: int
    title: str
    objective: str = ""
    success_criteria: list[str] = field(default_factory=list)
    dependencies: set[int] = field(default_factory=set)
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    estimated_tokens: int = 0
    estimated_cost: float = 0.0
    task_ids: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class Task:
    task_id: str
    phase_id: str
    sequence: int
    description: str
    acceptance_criteria: list[str] = field(default_factory=list)
    implementation_notes: str = ""
    status: TaskStatus = TaskStatus.NOT_STARTED
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class Blocker:
    """Recorded impediment; open while `resolved_at` is unset."""

    blocker_id: str
    task_id: str
    description: str
    created_at: datetime
    resolution: str | None = None
    resolved_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


@dataclass(slots=True)
class TokenUsage:
    project_id: str
    provider: str
    model: str
    tokens_input: int
    tokens_output: int
    phase_id: str | None = None
    task_id: str | None = None
    cost: float = 0.0


@dataclass(slots=True)
class TokenStats:
    total_input: int = 0
    total_output: int = 0
    by_provider: dict[str, int] = field(default_factory=dict)
    by_phase: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class ProgressStats:
    """Aggregate project progress for presentation."""

    total_phases: int = 0
    completed_phases: int = 0
    in_progress_phases: int = 0
    blocked_phases: int = 0
    pending_phases: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0
    in_progress_tasks: int = 0
    blocked_tasks: int = 0
    skipped_tasks: int = 0
    pending_tasks: int = 0
    completion_percentage: float = 0.0
    current_stage: Stage = Stage.INIT
    current_phase_id: str | None = None
