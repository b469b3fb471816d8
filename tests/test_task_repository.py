from __future__ import annotations

from types import SimpleNamespace

import allure
import pytest

from taskfuel.tasks.models import TaskComplexity, TaskCreate, TaskStatus
from taskfuel.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Repository"),
]


def test_create_assigns_prefixed_ids_and_records_event(repository: TaskRepository) -> None:
    task = repository.create(
        TaskCreate(
            title="  Add login page  ",
            description="Use the shared form component",
            complexity=TaskComplexity.MODERATE,
            priority=1,
            labels=("ui", "ui", " frontend "),
        ),
    )

    assert task.short_id.startswith("f-")
    assert len(task.short_id) == 8
    assert task.title == "Add login page"
    assert task.status == TaskStatus.OPEN
    assert task.labels == ["ui", "frontend"]
    details = repository.get_task_details(task.short_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["created"]


def test_create_with_blockers_persists_edges_and_event(repository: TaskRepository) -> None:
    blocker = repository.create(TaskCreate(title="Schema"))

    blocked = repository.create(TaskCreate(title="Endpoints", blocked_by=(blocker.short_id,)))

    assert blocked.blocked_by == [blocker.short_id]
    details = repository.get_task_details(blocked.short_id)
    assert details is not None
    assert details.events[0].details["blocked_by"] == [blocker.short_id]
    assert [task.short_id for task in repository.ready()] == [blocker.short_id]


def test_create_retries_on_short_id_collision(
    repository: TaskRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    hexes = iter(["abc123" + "0" * 26, "abc123" + "0" * 26, "def456" + "0" * 26])
    monkeypatch.setattr(
        "taskfuel.tasks.repository.uuid4",
        lambda: SimpleNamespace(hex=next(hexes)),
    )

    first = repository.create(TaskCreate(title="First"))
    second = repository.create(TaskCreate(title="Second"))

    assert first.short_id == "f-abc123"
    assert second.short_id == "f-def456"
    assert len(repository.list_tasks()) == 2


def test_create_rejects_invalid_input(repository: TaskRepository) -> None:
    with pytest.raises(RuntimeError, match="title"):
        repository.create(TaskCreate(title="   "))
    with pytest.raises(RuntimeError, match="[Pp]riority"):
        repository.create(TaskCreate(title="Too urgent", priority=9))
    with pytest.raises(RuntimeError, match="not found"):
        repository.create(TaskCreate(title="Blocked by ghost", blocked_by=("f-zzzzzz",)))


def test_find_by_unique_prefix(repository: TaskRepository) -> None:
    task = repository.create(TaskCreate(title="Prefix lookup"))
    suffix = task.short_id.removeprefix("f-")

    assert repository.find(task.short_id[:5]).short_id == task.short_id
    assert repository.find(suffix[:4]).short_id == task.short_id
    assert repository.find("f-nomatch-at-all") is None
    assert repository.find("") is None


def test_ambiguous_prefix_raises(repository: TaskRepository) -> None:
    for index in range(40):
        repository.create(TaskCreate(title=f"Task {index}"))

    with pytest.raises(RuntimeError, match="Ambiguous task ID"):
        repository.find("f-")


def test_lifecycle_transitions_are_guarded(repository: TaskRepository) -> None:
    task = repository.create(TaskCreate(title="Lifecycle"))

    started = repository.start(task.short_id)
    assert started.status == TaskStatus.IN_PROGRESS
    with pytest.raises(RuntimeError):
        repository.start(task.short_id)

    closed = repository.done(task.short_id, reason="shipped", commit_hash="abc1234")
    assert closed.status == TaskStatus.DONE
    assert closed.reason == "shipped"
    assert closed.commit_hash == "abc1234"

    reopened = repository.reopen(task.short_id)
    assert reopened.status == TaskStatus.OPEN
    assert reopened.reason is None


def test_dependency_rules(repository: TaskRepository) -> None:
    first = repository.create(TaskCreate(title="First"))
    second = repository.create(TaskCreate(title="Second"))

    updated = repository.add_dependency(second.short_id, first.short_id)
    assert updated.blocked_by == [first.short_id]
    assert repository.add_dependency(second.short_id, first.short_id).blocked_by == [
        first.short_id,
    ]

    with pytest.raises(RuntimeError, match="itself"):
        repository.add_dependency(first.short_id, first.short_id)
    with pytest.raises(RuntimeError, match="cycle"):
        repository.add_dependency(first.short_id, second.short_id)
    with pytest.raises(RuntimeError, match="not found"):
        repository.add_dependency(first.short_id, "f-zzzzzz")

    assert [task.short_id for task in repository.ready()] == [first.short_id]
    repository.done(first.short_id)
    assert [task.short_id for task in repository.ready()] == [second.short_id]


def test_retry_clears_consume_fields(repository: TaskRepository) -> None:
    task = repository.create(TaskCreate(title="Flaky"))
    repository.start(task.short_id)
    repository.update(
        task.short_id,
        {
            "consumed": True,
            "consumed_exit_code": 2,
            "consumed_output": "boom",
            "consume_pid": 4242,
        },
    )

    retried = repository.retry(task.short_id)

    assert retried.status == TaskStatus.OPEN
    assert retried.consumed is False
    assert retried.consumed_at is None
    assert retried.consumed_exit_code is None
    assert retried.consumed_output is None
    assert retried.consume_pid is None
    assert [item.short_id for item in repository.ready()] == [task.short_id]


def test_retry_rejects_tasks_that_did_not_fail(repository: TaskRepository) -> None:
    untouched = repository.create(TaskCreate(title="Never consumed"))
    succeeded = repository.create(TaskCreate(title="Succeeded"))
    repository.update(succeeded.short_id, {"consumed": True, "consumed_exit_code": 0})
    repository.done(succeeded.short_id)

    with pytest.raises(RuntimeError, match="not a consumed task that failed"):
        repository.retry(untouched.short_id)
    with pytest.raises(RuntimeError, match="not a consumed task that failed"):
        repository.retry(succeeded.short_id)


def test_runs_are_recorded_per_task(repository: TaskRepository) -> None:
    task = repository.create(TaskCreate(title="With runs"))
    first = repository.log_run(task.short_id, agent="claude", model="sonnet")
    second = repository.log_run(task.short_id, agent="codex")

    assert repository.update_run(first, {"exit_code": 1, "output": "x"})
    assert repository.update_latest_run(task.short_id, {"exit_code": 0})
    assert not repository.update_run("run-missing", {"exit_code": 0})

    runs = repository.get_runs(task.short_id)
    assert [run.run_id for run in runs] == [first, second]
    assert [run.exit_code for run in runs] == [1, 0]
    assert runs[0].model == "sonnet"
    with pytest.raises(RuntimeError, match="Unsupported"):
        repository.update_run(first, {"task_id": "f-other"})


def test_add_label_is_idempotent(repository: TaskRepository) -> None:
    task = repository.create(TaskCreate(title="Labels", labels=("a",)))

    repository.add_label(task.short_id, "b")
    labelled = repository.add_label(task.short_id, "b")

    assert labelled.labels == ["a", "b"]
