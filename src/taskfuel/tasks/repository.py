"""Task and run persistence facade backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from taskfuel.storage.alembic_runner import upgrade_head
from taskfuel.storage.common import build_sqlite_engine, to_utc_aware, utc_now
from taskfuel.storage.sqlmodel_models import (
    TaskDependencyRow,
    TaskEventRow,
    TaskRow,
    TaskRunRow,
)
from taskfuel.tasks.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    RunStatus,
    RunView,
    TaskComplexity,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from taskfuel.tasks.readiness import ready_tasks

TASK_ID_PREFIX = "f"
RUN_ID_PREFIX = "run"
_ID_ATTEMPTS = 5
_LABEL_UPDATE_ATTEMPTS = 5

_UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "complexity",
        "priority",
        "labels",
        "epic_id",
        "consumed",
        "consumed_at",
        "consumed_output",
        "consumed_exit_code",
        "consume_pid",
        "reason",
        "commit_hash",
    },
)
_RUN_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "pid",
        "ended_at",
        "exit_code",
        "duration_seconds",
        "session_id",
        "cost_usd",
        "output",
        "model",
    },
)
_CLEARED_ON_RETRY = {
    "consumed": False,
    "consumed_at": None,
    "consumed_output": None,
    "consumed_exit_code": None,
    "consume_pid": None,
}


class TaskRepository:
    """Task backlog and run history persistence.

    Automatic transitions and manual operator commands share this facade. Every
    status change is a conditional UPDATE on the previous status so a completion
    racing a CLI edit fails loudly instead of overwriting it.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    # -- TaskService -----------------------------------------------------------

    def create(self, payload: TaskCreate) -> TaskView:
        """Create an open task, optionally wired to existing blockers."""

        _validate_priority(payload.priority)
        title = payload.title.strip()
        if not title:
            raise RuntimeError("Task title must not be empty.")

        blocker_ids = [self.resolve(blocker).short_id for blocker in payload.blocked_by]
        now = utc_now()
        for _ in range(_ID_ATTEMPTS):
            short_id = f"{TASK_ID_PREFIX}-{uuid4().hex[:6]}"
            with Session(self.engine) as session:
                session.add(
                    TaskRow(
                        short_id=short_id,
                        title=title,
                        description=payload.description,
                        status=TaskStatus.OPEN.value,
                        complexity=TaskComplexity(payload.complexity).value,
                        priority=payload.priority,
                        labels_json=_dump_labels(payload.labels),
                        epic_id=payload.epic_id,
                        created_at=_to_db_datetime(now),
                        updated_at=_to_db_datetime(now),
                    ),
                )
                try:
                    session.flush()
                except IntegrityError as error:
                    session.rollback()
                    if _is_short_id_collision(error):
                        continue
                    raise
                for blocker_id in dict.fromkeys(blocker_ids):
                    session.add(
                        TaskDependencyRow(
                            task_id=short_id,
                            blocker_id=blocker_id,
                            created_at=_to_db_datetime(now),
                        ),
                    )
                self._add_event(
                    session=session,
                    task_id=short_id,
                    event_type="created",
                    status_from=None,
                    status_to=TaskStatus.OPEN,
                    details={"priority": payload.priority, "blocked_by": blocker_ids},
                )
                session.commit()
            return self.resolve(short_id)
        raise RuntimeError("Could not allocate a unique task id; please retry.")

    def find(self, task_id: str) -> TaskView | None:
        """Find a task by exact id or unique id prefix.

        Raises RuntimeError when a prefix matches more than one task.
        """

        needle = task_id.strip()
        if not needle:
            return None
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.short_id == needle)).one_or_none()
            if row is None:
                rows = session.exec(
                    select(TaskRow)
                    .where(
                        or_(
                            col(TaskRow.short_id).startswith(needle),
                            col(TaskRow.short_id).startswith(f"{TASK_ID_PREFIX}-{needle}"),
                        ),
                    )
                    .order_by(col(TaskRow.id)),
                ).all()
                if len(rows) > 1:
                    matches = ", ".join(item.short_id for item in rows)
                    raise RuntimeError(f"Ambiguous task ID '{task_id}'. Matches: {matches}")
                if not rows:
                    return None
                row = rows[0]
            return self._to_task_view(session, row)

    def resolve(self, task_id: str) -> TaskView:
        """Like :meth:`find` but raises when the task does not exist."""

        task = self.find(task_id)
        if task is None:
            raise RuntimeError(f"Task '{task_id}' not found")
        return task

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        """List tasks in insertion order, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(TaskRow).order_by(col(TaskRow.id))
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            blockers = self._blockers_by_task(session)
            return [_to_task_view(row, blockers.get(row.short_id, [])) for row in rows]

    def ready(self) -> list[TaskView]:
        """Open tasks with no unresolved blocker, most urgent first."""

        return ready_tasks(self.list_tasks())

    def start(self, task_id: str) -> TaskView:
        """Move an open task to in_progress."""

        return self._transition(
            task_id,
            allowed_from={TaskStatus.OPEN},
            status_to=TaskStatus.IN_PROGRESS,
            event_type="started",
        )

    def done(
        self,
        task_id: str,
        *,
        reason: str | None = None,
        commit_hash: str | None = None,
    ) -> TaskView:
        """Close a task with an optional reason and commit hash."""

        return self._transition(
            task_id,
            allowed_from={
                TaskStatus.OPEN,
                TaskStatus.IN_PROGRESS,
                TaskStatus.REVIEW,
                TaskStatus.SOMEDAY,
            },
            status_to=TaskStatus.DONE,
            event_type="done",
            values={"reason": reason, "commit_hash": commit_hash, "consume_pid": None},
            details={"reason": reason} if reason else None,
        )

    def reopen(self, task_id: str) -> TaskView:
        """Move a task back to open so it re-enters the ready pool."""

        return self._transition(
            task_id,
            allowed_from={
                TaskStatus.IN_PROGRESS,
                TaskStatus.REVIEW,
                TaskStatus.DONE,
                TaskStatus.CANCELLED,
                TaskStatus.SOMEDAY,
            },
            status_to=TaskStatus.OPEN,
            event_type="reopened",
            values={"reason": None, "consume_pid": None},
        )

    def mark_review(self, task_id: str) -> TaskView:
        """Move an in-progress task to review."""

        return self._transition(
            task_id,
            allowed_from={TaskStatus.IN_PROGRESS},
            status_to=TaskStatus.REVIEW,
            event_type="review_started",
        )

    def retry(self, task_id: str) -> TaskView:
        """Reopen a consumed task that failed or got stuck, clearing consume fields."""

        task = self.resolve(task_id)
        failed = task.consumed_exit_code not in (None, 0)
        stuck = task.status == TaskStatus.IN_PROGRESS
        if not task.consumed or not (failed or stuck):
            raise RuntimeError(
                f"Task '{task.short_id}' is not a consumed task that failed "
                f"(status={task.status.value}, consumed={task.consumed}).",
            )
        return self._transition(
            task.short_id,
            allowed_from={task.status},
            status_to=TaskStatus.OPEN,
            event_type="retried",
            values={**_CLEARED_ON_RETRY, "reason": None},
            details={"previous_exit_code": task.consumed_exit_code},
        )

    def update(self, task_id: str, fields: Mapping[str, Any]) -> TaskView:
        """Update non-status fields of a task."""

        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise RuntimeError(f"Unsupported task fields: {', '.join(sorted(unknown))}")
        values = dict(fields)
        if "labels" in values:
            values["labels_json"] = _dump_labels(values.pop("labels") or ())
        if "complexity" in values:
            values["complexity"] = TaskComplexity(values["complexity"]).value
        if "priority" in values:
            _validate_priority(int(values["priority"]))
        if isinstance(values.get("consumed_at"), datetime):
            values["consumed_at"] = _to_db_datetime(values["consumed_at"])

        task = self.resolve(task_id)
        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(TaskRow)
                .where(col(TaskRow.short_id) == task.short_id)
                .values(**values, updated_at=_to_db_datetime(now)),
            )
            self._add_event(
                session=session,
                task_id=task.short_id,
                event_type="updated",
                status_from=None,
                status_to=None,
                details={"fields": sorted(fields)},
            )
            session.commit()
        return self.resolve(task.short_id)

    def add_label(self, task_id: str, label: str) -> TaskView:
        """Append a label without clobbering concurrent label edits."""

        task = self.resolve(task_id)
        for _ in range(_LABEL_UPDATE_ATTEMPTS):
            with Session(self.engine) as session:
                row = self._get_task_row(session=session, task_id=task.short_id)
                labels = _load_labels(row.labels_json)
                if label in labels:
                    return self.resolve(task.short_id)
                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.short_id) == task.short_id,
                        col(TaskRow.labels_json) == row.labels_json,
                    )
                    .values(
                        labels_json=_dump_labels([*labels, label]),
                        updated_at=_to_db_datetime(utc_now()),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return self.resolve(task.short_id)
        raise RuntimeError(
            f"Task labels changed concurrently; please retry (task_id={task.short_id}).",
        )

    def add_dependency(self, task_id: str, blocker_id: str) -> TaskView:
        """Record that ``task_id`` is blocked by ``blocker_id``."""

        task = self.resolve(task_id)
        blocker = self.find(blocker_id)
        if blocker is None:
            raise RuntimeError(f"Dependency target '{blocker_id}' not found")
        if task.short_id == blocker.short_id:
            raise RuntimeError("A task cannot depend on itself")

        with Session(self.engine) as session:
            blockers = self._blockers_by_task(session)
            if _reaches(blockers, start=blocker.short_id, target=task.short_id):
                raise RuntimeError(
                    f"Adding dependency would create a cycle: {task.short_id} -> "
                    f"{blocker.short_id}",
                )
            if blocker.short_id in blockers.get(task.short_id, []):
                return task
            session.add(
                TaskDependencyRow(
                    task_id=task.short_id,
                    blocker_id=blocker.short_id,
                    created_at=_to_db_datetime(utc_now()),
                ),
            )
            self._add_event(
                session=session,
                task_id=task.short_id,
                event_type="dependency_added",
                status_from=None,
                status_to=None,
                details={"blocker_id": blocker.short_id},
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
        return self.resolve(task.short_id)

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task with runs and event stream."""

        task = self.find(task_id)
        if task is None:
            return None
        with Session(self.engine) as session:
            event_rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task.short_id)
                .order_by(col(TaskEventRow.id)),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=task, runs=self.get_runs(task.short_id), events=events)

    # -- RunService ------------------------------------------------------------

    def log_run(
        self,
        task_id: str,
        *,
        agent: str,
        model: str | None = None,
        runner_instance_id: str | None = None,
        pid: int | None = None,
    ) -> str:
        """Create a running run entry for a task and return its id."""

        run_id = f"{RUN_ID_PREFIX}-{uuid4().hex[:8]}"
        with Session(self.engine) as session:
            session.add(
                TaskRunRow(
                    run_id=run_id,
                    task_id=task_id,
                    agent=agent,
                    model=model,
                    status=RunStatus.RUNNING.value,
                    runner_instance_id=runner_instance_id,
                    pid=pid,
                    started_at=_to_db_datetime(utc_now()),
                ),
            )
            session.commit()
        return run_id

    def update_run(self, run_id: str, fields: Mapping[str, Any]) -> bool:
        """Update one run; returns False when the run does not exist."""

        values = _run_values(fields)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRunRow).where(col(TaskRunRow.run_id) == run_id).values(**values),
            )
            session.commit()
            return result.rowcount == 1

    def update_latest_run(self, task_id: str, fields: Mapping[str, Any]) -> bool:
        """Update the most recent run of a task."""

        latest = self.get_latest_run(task_id)
        if latest is None:
            return False
        return self.update_run(latest.run_id, fields)

    def get_runs(self, task_id: str) -> list[RunView]:
        """All runs of a task, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRunRow)
                .where(TaskRunRow.task_id == task_id)
                .order_by(col(TaskRunRow.id)),
            ).all()
        return [_to_run_view(row) for row in rows]

    def get_latest_run(self, task_id: str) -> RunView | None:
        """Most recent run of a task."""

        with Session(self.engine) as session:
            row = session.exec(
                select(TaskRunRow)
                .where(TaskRunRow.task_id == task_id)
                .order_by(col(TaskRunRow.id).desc())
                .limit(1),
            ).first()
        return _to_run_view(row) if row is not None else None

    # -- internals -------------------------------------------------------------

    def _transition(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        allowed_from: set[TaskStatus],
        status_to: TaskStatus,
        event_type: str,
        values: Mapping[str, Any] | None = None,
        details: dict[str, object] | None = None,
    ) -> TaskView:
        task = self.resolve(task_id)
        previous = task.status
        if previous not in allowed_from:
            raise RuntimeError(
                f"Task '{task.short_id}' cannot move from {previous.value} to {status_to.value}.",
            )
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.short_id) == task.short_id,
                    col(TaskRow.status) == previous.value,
                )
                .values(
                    status=status_to.value,
                    updated_at=_to_db_datetime(now),
                    **dict(values or {}),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    f"Task state changed concurrently while applying {event_type}; "
                    f"please retry command (task_id={task.short_id}).",
                )
            self._add_event(
                session=session,
                task_id=task.short_id,
                event_type=event_type,
                status_from=previous,
                status_to=status_to,
                details=details or {},
            )
            session.commit()
        return self.resolve(task.short_id)

    def _to_task_view(self, session: Session, row: TaskRow) -> TaskView:
        blocker_rows = session.exec(
            select(TaskDependencyRow)
            .where(TaskDependencyRow.task_id == row.short_id)
            .order_by(col(TaskDependencyRow.id)),
        ).all()
        return _to_task_view(row, [item.blocker_id for item in blocker_rows])

    @staticmethod
    def _blockers_by_task(session: Session) -> dict[str, list[str]]:
        rows = session.exec(select(TaskDependencyRow).order_by(col(TaskDependencyRow.id))).all()
        blockers: dict[str, list[str]] = {}
        for row in rows:
            blockers.setdefault(row.task_id, []).append(row.blocker_id)
        return blockers

    @staticmethod
    def _get_task_row(*, session: Session, task_id: str) -> TaskRow:
        row = session.exec(select(TaskRow).where(TaskRow.short_id == task_id)).one_or_none()
        if row is None:
            raise RuntimeError(f"Task '{task_id}' not found")
        return row

    @staticmethod
    def _add_event(  # noqa: PLR0913
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRow(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=_to_db_datetime(utc_now()),
            ),
        )


def _reaches(edges: dict[str, list[str]], *, start: str, target: str) -> bool:
    queue = deque([start])
    seen = {start}
    while queue:
        current = queue.popleft()
        if current == target:
            return True
        for nxt in edges.get(current, []):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return False


def _is_short_id_collision(error: IntegrityError) -> bool:
    message = str(error.orig)
    return "UNIQUE" in message and "short_id" in message


def _validate_priority(priority: int) -> None:
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise RuntimeError(
            f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}.",
        )


def _run_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - _RUN_UPDATABLE_FIELDS
    if unknown:
        raise RuntimeError(f"Unsupported run fields: {', '.join(sorted(unknown))}")
    values = dict(fields)
    if isinstance(values.get("status"), RunStatus):
        values["status"] = values["status"].value
    if isinstance(values.get("ended_at"), datetime):
        values["ended_at"] = _to_db_datetime(values["ended_at"])
    return values


def _dump_labels(labels: tuple[str, ...] | list[str]) -> str:
    cleaned = [label.strip() for label in labels if label.strip()]
    return json.dumps(list(dict.fromkeys(cleaned)), ensure_ascii=False)


def _load_labels(raw: str | None) -> list[str]:
    if not raw:
        return []
    parsed = json.loads(raw)
    return [str(item) for item in parsed] if isinstance(parsed, list) else []


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_task_view(row: TaskRow, blocked_by: list[str]) -> TaskView:
    return TaskView(
        seq=row.id or 0,
        short_id=row.short_id,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        complexity=TaskComplexity(row.complexity),
        priority=row.priority,
        labels=_load_labels(row.labels_json),
        blocked_by=list(blocked_by),
        epic_id=row.epic_id,
        consumed=bool(row.consumed),
        consumed_at=to_utc_aware(row.consumed_at) if row.consumed_at else None,
        consumed_output=row.consumed_output,
        consumed_exit_code=row.consumed_exit_code,
        consume_pid=row.consume_pid,
        reason=row.reason,
        commit_hash=row.commit_hash,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_run_view(row: TaskRunRow) -> RunView:
    return RunView(
        run_id=row.run_id,
        task_id=row.task_id,
        agent=row.agent,
        model=row.model,
        status=RunStatus(row.status),
        runner_instance_id=row.runner_instance_id,
        pid=row.pid,
        started_at=to_utc_aware(row.started_at),
        ended_at=to_utc_aware(row.ended_at) if row.ended_at else None,
        exit_code=row.exit_code,
        duration_seconds=row.duration_seconds,
        session_id=row.session_id,
        cost_usd=row.cost_usd,
        output=row.output,
    )
