"""Controllers for task backlog CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from taskfuel.config import Settings
from taskfuel.tasks.models import TaskComplexity, TaskCreate, TaskStatus, TaskView
from taskfuel.tasks.repository import TaskRepository


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for task creation."""

    db_path: Path | None
    title: str
    description: str | None
    complexity: str
    priority: int
    labels: tuple[str, ...]
    blocked_by: tuple[str, ...]
    json_output: bool = False


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    ready_only: bool
    limit: int | None
    json_output: bool = False


@dataclass(slots=True)
class TaskShowCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str
    json_output: bool = False


@dataclass(slots=True)
class TaskDependencyCommand:
    """CLI input for adding a blocker."""

    db_path: Path | None
    task_id: str
    blocker_id: str


@dataclass(slots=True)
class TaskDoneCommand:
    """CLI input for closing a task."""

    db_path: Path | None
    task_id: str
    reason: str | None
    commit_hash: str | None


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for reopen."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskRetryCommand:
    """CLI input for retrying failed consumed tasks."""

    db_path: Path | None
    task_ids: tuple[str, ...]
    json_output: bool = False


@dataclass(slots=True)
class TaskRetryResult:
    """Retry output; ``ok`` is False when any id failed."""

    lines: list[str]
    ok: bool
    error: str | None = None


class TaskCliController:
    """Task CRUD operations used by CLI commands."""

    def add(self, command: TaskAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.create(
                TaskCreate(
                    title=command.title,
                    description=command.description,
                    complexity=TaskComplexity(command.complexity),
                    priority=command.priority,
                    labels=command.labels,
                    blocked_by=command.blocked_by,
                ),
            )
        if command.json_output:
            return [json.dumps(task.to_dict(), ensure_ascii=False)]
        return [f"Created task: {task.short_id}", f"  Title: {task.title}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = TaskStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            if command.ready_only:
                tasks = repository.ready()
            else:
                tasks = repository.list_tasks(status=status_filter, limit=command.limit)

        if command.json_output:
            return [json.dumps([task.to_dict() for task in tasks], ensure_ascii=False)]
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def show(self, command: TaskShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(command.task_id)
        if details is None:
            raise RuntimeError(f"Task '{command.task_id}' not found")

        task = details.task
        if command.json_output:
            payload = task.to_dict()
            payload["runs"] = [
                {
                    "run_id": run.run_id,
                    "agent": run.agent,
                    "model": run.model,
                    "status": run.status.value,
                    "exit_code": run.exit_code,
                    "started_at": run.started_at.isoformat(),
                    "ended_at": run.ended_at.isoformat() if run.ended_at else None,
                    "duration_seconds": run.duration_seconds,
                    "session_id": run.session_id,
                    "cost_usd": run.cost_usd,
                }
                for run in details.runs
            ]
            return [json.dumps(payload, ensure_ascii=False)]

        lines = [
            f"Task: {task.short_id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Complexity: {task.complexity.value}",
            f"Priority: {task.priority}",
            f"Labels: {', '.join(task.labels) or '-'}",
            f"Blocked by: {', '.join(task.blocked_by) or '-'}",
            f"Consumed: {task.consumed} exit_code={task.consumed_exit_code}",
        ]
        if task.reason:
            lines.append(f"Reason: {task.reason}")
        if task.description:
            lines.extend(["", task.description])
        if details.runs:
            lines.extend(["", f"Runs: {len(details.runs)}"])
            for run in details.runs:
                duration = (
                    f"{run.duration_seconds:.1f}s" if run.duration_seconds is not None else "-"
                )
                lines.append(
                    f"  {run.run_id} agent={run.agent} status={run.status.value} "
                    f"exit_code={run.exit_code} duration={duration}",
                )
        if details.events:
            lines.extend(["", "Events:"])
            for event in details.events:
                transition = ""
                if event.status_from is not None or event.status_to is not None:
                    status_from = event.status_from.value if event.status_from else "-"
                    status_to = event.status_to.value if event.status_to else "-"
                    transition = f" {status_from}->{status_to}"
                lines.append(
                    f"  {event.created_at.isoformat()} {event.event_type}{transition}",
                )
        return lines

    def add_dependency(self, command: TaskDependencyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.add_dependency(command.task_id, command.blocker_id)
        return [f"Task {task.short_id} is now blocked by: {', '.join(task.blocked_by)}"]

    def done(self, command: TaskDoneCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.done(
                command.task_id,
                reason=command.reason,
                commit_hash=command.commit_hash,
            )
        return [f"Completed task: {task.short_id}"]

    def reopen(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.reopen(command.task_id)
        return [f"Reopened task: {task.short_id}"]

    def retry(self, command: TaskRetryCommand) -> TaskRetryResult:
        settings = Settings.from_env(db_path=command.db_path)
        retried: list[TaskView] = []
        errors: list[tuple[str, str]] = []
        with _repository(settings) as repository:
            for task_id in command.task_ids:
                try:
                    retried.append(repository.retry(task_id))
                except RuntimeError as error:
                    errors.append((task_id, str(error)))

        if not retried and errors:
            return TaskRetryResult(lines=[], ok=False, error=errors[0][1])

        if command.json_output:
            payload: object = (
                retried[0].to_dict() if len(retried) == 1 else [t.to_dict() for t in retried]
            )
            lines = [json.dumps(payload, ensure_ascii=False)]
        else:
            lines = []
            for task in retried:
                lines.extend([f"Retried task: {task.short_id}", f"  Title: {task.title}"])

        if errors:
            return TaskRetryResult(
                lines=lines,
                ok=False,
                error="; ".join(f"Task '{task_id}': {message}" for task_id, message in errors),
            )
        return TaskRetryResult(lines=lines, ok=True)


def _task_line(task: TaskView) -> str:
    blocked = f" blocked_by={','.join(task.blocked_by)}" if task.blocked_by else ""
    labels = f" labels={','.join(task.labels)}" if task.labels else ""
    consumed = f" exit_code={task.consumed_exit_code}" if task.consumed else ""
    return (
        f"{task.short_id} [{task.status.value}] p{task.priority} {task.complexity.value} "
        f"{task.title}{labels}{blocked}{consumed}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
