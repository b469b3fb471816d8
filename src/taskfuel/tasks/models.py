"""Domain models for the task backlog."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"
    CANCELLED = "cancelled"
    SOMEDAY = "someday"


class TaskComplexity(str, Enum):
    """Complexity buckets used to route a task to an agent."""

    TRIVIAL = "trivial"
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class RunStatus(str, Enum):
    """Agent run lifecycle states."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


MIN_PRIORITY = 0
MAX_PRIORITY = 4


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    description: str | None = None
    complexity: TaskComplexity = TaskComplexity.SIMPLE
    priority: int = 2
    labels: tuple[str, ...] = ()
    blocked_by: tuple[str, ...] = ()
    epic_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI, scheduler and IPC payloads."""

    seq: int
    short_id: str
    title: str
    description: str | None
    status: TaskStatus
    complexity: TaskComplexity
    priority: int
    labels: list[str]
    blocked_by: list[str]
    epic_id: str | None
    consumed: bool
    consumed_at: datetime | None
    consumed_output: str | None
    consumed_exit_code: int | None
    consume_pid: int | None
    reason: str | None
    commit_hash: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def id(self) -> str:
        return self.short_id

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation used by `--json` output and IPC."""

        return {
            "id": self.short_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "complexity": self.complexity.value,
            "priority": self.priority,
            "labels": list(self.labels),
            "blocked_by": list(self.blocked_by),
            "epic_id": self.epic_id,
            "consumed": self.consumed,
            "consumed_at": self.consumed_at.isoformat() if self.consumed_at else None,
            "consumed_output": self.consumed_output,
            "consumed_exit_code": self.consumed_exit_code,
            "consume_pid": self.consume_pid,
            "reason": self.reason,
            "commit_hash": self.commit_hash,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for the audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RunView:
    """One agent run recorded against a task."""

    run_id: str
    task_id: str
    agent: str
    model: str | None
    status: RunStatus
    runner_instance_id: str | None
    pid: int | None
    started_at: datetime
    ended_at: datetime | None
    exit_code: int | None
    duration_seconds: float | None
    session_id: str | None
    cost_usd: float | None
    output: str | None


@dataclass(slots=True)
class TaskDetails:
    """Task with run history and event stream."""

    task: TaskView
    runs: list[RunView]
    events: list[TaskEventView]


@dataclass(slots=True)
class ReviewResult:
    """Outcome of an external review pass over a completed task."""

    task_id: str
    passed: bool
    issues: list[str]
    completed_at: datetime
