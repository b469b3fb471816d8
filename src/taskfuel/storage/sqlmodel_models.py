"""SQLModel ORM tables for task tracking storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_status_priority", "status", "priority", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    short_id: str = Field(sa_column=Column(Text, nullable=False, unique=True, index=True))
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    complexity: str = "simple"
    priority: int = 2
    labels_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    epic_id: str | None = Field(default=None, index=True)
    consumed: bool = False
    consumed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    consumed_output: str | None = Field(default=None, sa_column=Column(Text))
    consumed_exit_code: int | None = None
    consume_pid: int | None = None
    reason: str | None = Field(default=None, sa_column=Column(Text))
    commit_hash: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskDependencyRow(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "blocker_id", name="uq_task_dependencies_edge"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.short_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    # Not a foreign key: a blocker that no longer exists does not block.
    blocker_id: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRunRow(SQLModel, table=True):
    __tablename__ = "task_runs"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(sa_column=Column(Text, nullable=False, unique=True))
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.short_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    agent: str
    model: str | None = None
    status: str = "running"
    runner_instance_id: str | None = None
    pid: int | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    exit_code: int | None = None
    duration_seconds: float | None = None
    session_id: str | None = None
    cost_usd: float | None = None
    output: str | None = Field(default=None, sa_column=Column(Text))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.short_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
