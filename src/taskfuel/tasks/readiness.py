"""Readiness rules over the task dependency graph."""

from __future__ import annotations

from collections.abc import Iterable

from taskfuel.tasks.models import TaskStatus, TaskView


def ready_tasks(tasks: Iterable[TaskView]) -> list[TaskView]:
    """Return open tasks whose blockers are all done, most urgent first.

    A blocker id that resolves to no known task does not block. Ordering is
    priority ascending, then creation time, then insertion order.
    """

    all_tasks = list(tasks)
    status_by_id = {task.short_id: task.status for task in all_tasks}
    ready = [
        task
        for task in all_tasks
        if task.status == TaskStatus.OPEN and not _has_open_blocker(task, status_by_id)
    ]
    return sorted(ready, key=lambda task: (task.priority, task.created_at, task.seq))


def _has_open_blocker(task: TaskView, status_by_id: dict[str, TaskStatus]) -> bool:
    for blocker_id in task.blocked_by:
        status = status_by_id.get(blocker_id)
        if status is not None and status != TaskStatus.DONE:
            return True
    return False
