"""SQLModel ORM tables for the project state store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class ProjectRow(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    name: str
    current_stage: str = Field(default="init")
    current_phase_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class InterviewDataRow(SQLModel, table=True):
    __tablename__ = "interview_data"  # type: ignore[bad-override]

    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    project_name: str
    problem_statement: str = Field(default="", sa_column=Column(Text, nullable=False))
    payload_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ArchitectureRow(SQLModel, table=True):
    __tablename__ = "architectures"  # type: ignore[bad-override]

    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    content: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PhaseRow(SQLModel, table=True):
    __tablename__ = "phases"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("project_id", "number", name="uq_phases_project_number"),
    )

    phase_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    number: int
    title: str
    objective: str = Field(default="", sa_column=Column(Text, nullable=False))
    success_criteria_json: str | None = Field(default=None, sa_column=Column(Text))
    dependencies_json: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    estimated_tokens: int = 0
    estimated_cost: float = 0.0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    phase_id: str = Field(
        sa_column=Column(
            ForeignKey("phases.phase_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sequence: int
    description: str = Field(sa_column=Column(Text, nullable=False))
    acceptance_criteria_json: str | None = Field(default=None, sa_column=Column(Text))
    implementation_notes: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BlockerRow(SQLModel, table=True):
    __tablename__ = "blockers"  # type: ignore[bad-override]

    blocker_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    description: str = Field(sa_column=Column(Text, nullable=False))
    resolution: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TokenUsageRow(SQLModel, table=True):
    __tablename__ = "token_usage"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    project_id: str = Field(index=True)
    phase_id: str | None = None
    task_id: str | None = None
    provider: str
    model: str
    tokens_input: int = 0
    tokens_output: int = 0
    cost: float = 0.0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
