from __future__ import annotations

import json
import os
import subprocess
import sys
import threading

import allure
import pytest

from taskfuel.config import AgentDefinition, Settings
from taskfuel.consume.completion import build_completion_result
from taskfuel.consume.handler import (
    AUTO_CLOSE_REASON,
    AUTO_CLOSED_LABEL,
    NEEDS_HUMAN_LABEL,
)
from taskfuel.consume.health import AgentHealthTracker
from taskfuel.consume.process_manager import ProcessManager, SpawnReason
from taskfuel.consume.runner import ConsumeRunner
from taskfuel.storage.common import utc_now
from taskfuel.tasks.models import (
    ReviewResult,
    RunStatus,
    TaskComplexity,
    TaskCreate,
    TaskStatus,
)
from taskfuel.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Consume Daemon"),
    allure.feature("Scheduler and Completion Routing"),
]


class _ReviewService:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.triggered: list[tuple[str, str]] = []
        self.results: list[ReviewResult] = []

    def trigger_review(self, task_id: str, agent_name: str) -> None:
        if self.fail:
            raise RuntimeError("reviewer offline")
        self.triggered.append((task_id, agent_name))

    def poll_results(self) -> list[ReviewResult]:
        results, self.results = self.results, []
        return results


def _runner(settings: Settings, repository: TaskRepository, processes, **kwargs) -> ConsumeRunner:
    return ConsumeRunner(
        settings=settings,
        repository=repository,
        process_manager=processes,
        **kwargs,
    )


def _add(repository: TaskRepository, title: str, **kwargs):
    return repository.create(TaskCreate(title=title, **kwargs))


def test_success_auto_closes_task_and_releases_slot(settings, repository, fake_processes) -> None:
    runner = _runner(settings, repository, fake_processes)
    task = _add(repository, "Write docs")

    first = runner.tick()
    assert first.spawned == 1
    started = repository.resolve(task.short_id)
    assert started.status == TaskStatus.IN_PROGRESS
    assert started.consumed is True
    assert started.consume_pid == fake_processes.running()[0].pid
    assert runner.limiter.in_flight("claude") == 1

    fake_processes.finish(task.short_id, exit_code=0, output="all done")
    second = runner.tick()

    closed = repository.resolve(task.short_id)
    assert second.completed == 1
    assert closed.status == TaskStatus.DONE
    assert closed.reason == AUTO_CLOSE_REASON
    assert AUTO_CLOSED_LABEL in closed.labels
    assert closed.consumed_exit_code == 0
    assert closed.consume_pid is None
    assert runner.limiter.in_flight("claude") == 0
    assert runner.health.get_health_status("claude").total_successes == 1
    runs = repository.get_runs(task.short_id)
    assert [run.status for run in runs] == [RunStatus.COMPLETED]
    assert runs[0].agent == "claude"


def test_success_skips_auto_close_when_task_moved(settings, repository, fake_processes) -> None:
    runner = _runner(settings, repository, fake_processes)
    task = _add(repository, "Closed by hand")
    runner.tick()
    repository.done(task.short_id, reason="manual")

    fake_processes.finish(task.short_id, exit_code=0)
    runner.tick()

    closed = repository.resolve(task.short_id)
    assert closed.reason == "manual"
    assert AUTO_CLOSED_LABEL not in closed.labels
    assert runner.limiter.in_flight("claude") == 0


def test_failure_keeps_task_consumed_and_backs_off_agent(
    settings, repository, fake_processes
) -> None:
    runner = _runner(settings, repository, fake_processes)
    task = _add(repository, "Flaky work")
    runner.tick()

    fake_processes.finish(task.short_id, exit_code=2, output="boom")
    runner.tick()

    failed = repository.resolve(task.short_id)
    assert failed.status == TaskStatus.IN_PROGRESS
    assert failed.consumed is True
    assert failed.consumed_exit_code == 2
    assert failed.consumed_output == "boom"
    assert runner.health.get_health_status("claude").consecutive_failures == 1
    assert runner.limiter.in_flight("claude") == 0

    waiting = _add(repository, "Next in line")
    results = runner.spawn_ready()
    assert [result.reason for result in results] == [SpawnReason.AGENT_IN_BACKOFF]
    assert results[0].retry_after_seconds == 30
    assert repository.resolve(waiting.short_id).status == TaskStatus.OPEN


def test_permission_blocked_creates_human_blocker(settings, repository, fake_processes) -> None:
    runner = _runner(settings, repository, fake_processes)
    task = _add(repository, "Needs shell")
    runner.tick()

    fake_processes.finish(
        task.short_id,
        exit_code=0,
        output="Sorry, terminal commands are being rejected in this session.",
    )
    runner.tick()

    original = repository.resolve(task.short_id)
    assert original.status == TaskStatus.OPEN
    assert len(original.blocked_by) == 1
    assert task.short_id not in [item.short_id for item in repository.ready()]
    blocker = repository.resolve(original.blocked_by[0])
    assert blocker.title == "Configure agent permissions for claude"
    assert blocker.priority == 1
    assert NEEDS_HUMAN_LABEL in blocker.labels
    assert "allow the shell commands" in (blocker.description or "")
    assert runner.health.get_health_status("claude").consecutive_failures == 1
    assert runner.limiter.in_flight("claude") == 0

    runner.health.reset("claude")
    runner.tick()
    assert len(fake_processes.spawned) == 1
    assert repository.resolve(blocker.short_id).status == TaskStatus.OPEN
    assert runner.snapshot()["board_state"]["human"][0]["id"] == blocker.short_id


def test_capacity_limits_spawns_per_agent(settings, repository, fake_processes) -> None:
    runner = _runner(settings, repository, fake_processes)
    first = _add(repository, "Big one", complexity=TaskComplexity.COMPLEX)
    second = _add(repository, "Big two", complexity=TaskComplexity.COMPLEX)

    results = runner.spawn_ready()

    assert results[0].success
    assert results[1].reason == SpawnReason.AT_CAPACITY
    assert repository.resolve(first.short_id).status == TaskStatus.IN_PROGRESS
    assert repository.resolve(second.short_id).status == TaskStatus.OPEN
    assert fake_processes.running_count("codex") == 1


def test_dead_agent_is_not_scheduled(settings, repository, fake_processes) -> None:
    health = AgentHealthTracker(max_retries=2)
    runner = _runner(settings, repository, fake_processes, health=health)
    health.record_failure("claude")
    health.record_failure("claude")
    _add(repository, "Waiting for a healthy agent")

    results = runner.spawn_ready()

    assert [result.reason for result in results] == [SpawnReason.AGENT_DEAD]
    assert fake_processes.spawned == []


def test_unmapped_complexity_is_config_error(settings, repository, fake_processes) -> None:
    settings.complexity_agents.pop("trivial")
    runner = _runner(settings, repository, fake_processes)
    _add(repository, "Tiny", complexity=TaskComplexity.TRIVIAL)

    results = runner.spawn_ready()

    assert results[0].reason == SpawnReason.CONFIG_ERROR


def test_duplicate_completion_is_ignored(settings, repository, fake_processes) -> None:
    runner = _runner(settings, repository, fake_processes)
    task = _add(repository, "Once only")
    runner.tick()
    run_id = fake_processes.running()[0].run_id
    result = build_completion_result(
        task_id=task.short_id,
        run_id=run_id,
        agent_name="claude",
        exit_code=1,
        duration_seconds=1.0,
        output="",
    )

    assert runner.handler.handle(result) is True
    assert runner.handler.handle(result) is False

    health = runner.health.get_health_status("claude")
    assert health.consecutive_failures == 1
    assert health.total_runs == 1


def test_review_failure_falls_back_to_auto_close(settings, repository, fake_processes) -> None:
    settings.consume.task_review = True
    review = _ReviewService(fail=True)
    runner = _runner(settings, repository, fake_processes, review_service=review)
    task = _add(repository, "Reviewed work")
    runner.tick()

    fake_processes.finish(task.short_id, exit_code=0)
    runner.tick()

    closed = repository.resolve(task.short_id)
    assert closed.status == TaskStatus.DONE
    assert closed.reason == AUTO_CLOSE_REASON


def test_review_pass_closes_task(settings, repository, fake_processes) -> None:
    settings.consume.task_review = True
    review = _ReviewService()
    runner = _runner(settings, repository, fake_processes, review_service=review)
    task = _add(repository, "Reviewed work")
    runner.tick()
    fake_processes.finish(task.short_id, exit_code=0)
    runner.tick()

    assert repository.resolve(task.short_id).status == TaskStatus.REVIEW
    assert review.triggered == [(task.short_id, "claude")]

    review.results.append(
        ReviewResult(task_id=task.short_id, passed=True, issues=[], completed_at=utc_now()),
    )
    summary = runner.tick()

    assert summary.reviews == 1
    assert repository.resolve(task.short_id).status == TaskStatus.DONE


def test_paused_runner_does_not_spawn(settings, repository, fake_processes) -> None:
    runner = _runner(settings, repository, fake_processes)
    _add(repository, "Later")

    runner.pause()
    assert runner.tick().spawned == 0
    runner.resume()
    assert runner.tick().spawned == 1


def test_spawn_failure_rolls_back_claim(settings, repository) -> None:
    settings.agents["claude"] = AgentDefinition(
        name="claude",
        command_template="definitely-not-a-real-agent {prompt}",
    )
    runner = ConsumeRunner(
        settings=settings,
        repository=repository,
        process_manager=ProcessManager(processes_dir=settings.processes_dir),
    )
    task = _add(repository, "Cannot start")

    results = runner.spawn_ready()

    assert results[0].reason == SpawnReason.SPAWN_FAILED
    reopened = repository.resolve(task.short_id)
    assert reopened.status == TaskStatus.OPEN
    assert reopened.consumed is False
    assert runner.limiter.in_flight("claude") == 0
    assert repository.get_runs(task.short_id)[0].status == RunStatus.FAILED


def test_recover_orphans_reopens_dead_runs(settings, repository, fake_processes) -> None:
    task = _add(repository, "Interrupted")
    repository.start(task.short_id)
    repository.log_run(task.short_id, agent="claude")
    finished = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    finished.wait(timeout=10)
    repository.update(task.short_id, {"consumed": True, "consume_pid": finished.pid})
    runner = _runner(settings, repository, fake_processes)

    assert runner.recover_orphans() == [task.short_id]

    recovered = repository.resolve(task.short_id)
    assert recovered.status == TaskStatus.OPEN
    assert recovered.consume_pid is None
    assert repository.get_latest_run(task.short_id).status == RunStatus.KILLED


def test_snapshot_groups_board_columns(settings, repository, fake_processes) -> None:
    runner = _runner(settings, repository, fake_processes)
    blocker = _add(repository, "Blocker", priority=0)
    _add(repository, "Blocked", blocked_by=(blocker.short_id,))
    done = _add(repository, "Finished")
    repository.done(done.short_id)
    runner.tick()

    snapshot = runner.snapshot()

    board = snapshot["board_state"]
    assert [item["id"] for item in board["in_progress"]] == [blocker.short_id]
    assert [item["title"] for item in board["blocked"]] == ["Blocked"]
    assert [item["id"] for item in board["done"]] == [done.short_id]
    assert board["ready"] == []
    assert snapshot["active_processes"][0]["task_id"] == blocker.short_id
    assert set(snapshot["health_summary"]) == {"claude", "codex"}
    assert snapshot["runner_state"]["paused"] is False
    assert snapshot["config"]["agents"] == {"claude": 2, "codex": 1}


def test_run_once_drives_real_agents_to_completion(settings, repository) -> None:
    good = _add(repository, "Say hello")
    bad = _add(repository, "Broken", description="FAIL on purpose")
    runner = ConsumeRunner(settings=settings, repository=repository)

    summary = runner.run(once=True)

    assert summary.stop_reason == "once:idle"
    assert summary.spawned == 2
    assert summary.completed == 2
    assert repository.resolve(good.short_id).status == TaskStatus.DONE
    failed = repository.resolve(bad.short_id)
    assert failed.status == TaskStatus.IN_PROGRESS
    assert failed.consumed_exit_code == 3
    assert repository.get_runs(good.short_id)[0].session_id == (
        "123e4567-e89b-12d3-a456-426614174000"
    )
    assert not settings.pid_file_path.exists()
    assert (settings.processes_dir / bad.short_id / "stderr.log").exists()


def test_second_daemon_refuses_to_start(settings, repository, fake_processes) -> None:
    settings.pid_file_path.parent.mkdir(parents=True, exist_ok=True)
    sleeper = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])  # noqa: S603
    try:
        settings.pid_file_path.write_text(f'{{"pid": {sleeper.pid}, "port": 1}}', "utf-8")
        runner = _runner(settings, repository, fake_processes)
        with pytest.raises(RuntimeError, match="already running"):
            runner.run(once=True)
        assert settings.pid_file_path.exists()
    finally:
        sleeper.kill()
        sleeper.wait(timeout=10)


def test_spawn_setup_error_releases_slot_and_reopens_task(settings, repository) -> None:
    blocked_dir = settings.state_dir / "processes-file"
    blocked_dir.parent.mkdir(parents=True, exist_ok=True)
    blocked_dir.write_text("not a directory", "utf-8")
    runner = ConsumeRunner(
        settings=settings,
        repository=repository,
        process_manager=ProcessManager(processes_dir=blocked_dir),
    )
    task = _add(repository, "Nowhere to log")

    results = runner.spawn_ready()

    assert results[0].reason == SpawnReason.SPAWN_FAILED
    assert runner.limiter.in_flight("claude") == 0
    reopened = repository.resolve(task.short_id)
    assert reopened.status == TaskStatus.OPEN
    assert reopened.consumed is False
    assert reopened.consume_pid is None
    assert repository.get_runs(task.short_id)[0].status == RunStatus.FAILED


def test_unexpected_spawn_error_does_not_leak_slot(
    settings,
    repository,
    fake_processes,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _explode(request):
        raise ValueError("prompt builder produced garbage")

    monkeypatch.setattr(fake_processes, "spawn", _explode)
    runner = _runner(settings, repository, fake_processes)
    task = _add(repository, "Unlucky")

    for _ in range(3):
        results = runner.spawn_ready()
        assert [result.reason for result in results] == [SpawnReason.SPAWN_FAILED]

    assert runner.limiter.in_flight("claude") == 0
    assert repository.resolve(task.short_id).status == TaskStatus.OPEN
    assert [run.status for run in repository.get_runs(task.short_id)] == [RunStatus.FAILED] * 3


def test_pid_file_records_unix_start_time(settings, repository, fake_processes) -> None:
    runner = _runner(settings, repository, fake_processes)

    runner.write_pid_file()
    payload = json.loads(settings.pid_file_path.read_text("utf-8"))
    runner.remove_pid_file()

    assert payload["pid"] == os.getpid()
    assert isinstance(payload["port"], int)
    assert isinstance(payload["started_at"], int)
    assert payload["started_at"] == int(runner.started_at.timestamp())
    assert not settings.pid_file_path.exists()


def test_concurrent_completion_delivery_is_applied_once(
    settings,
    repository,
    fake_processes,
) -> None:
    runner = _runner(settings, repository, fake_processes)
    task = _add(repository, "Raced")
    runner.tick()
    assert runner.limiter.try_acquire("claude")
    run_id = fake_processes.running()[0].run_id
    result = build_completion_result(
        task_id=task.short_id,
        run_id=run_id,
        agent_name="claude",
        exit_code=1,
        duration_seconds=1.0,
        output="boom",
    )
    barrier = threading.Barrier(8)
    outcomes: list[bool] = []
    record = threading.Lock()

    def _deliver() -> None:
        barrier.wait()
        handled = runner.handler.handle(result)
        with record:
            outcomes.append(handled)

    threads = [threading.Thread(target=_deliver) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert outcomes.count(True) == 1
    assert outcomes.count(False) == 7
    health = runner.health.get_health_status("claude")
    assert health.total_runs == 1
    assert health.consecutive_failures == 1
    assert runner.limiter.in_flight("claude") == 1


def test_duplicate_guard_forgets_oldest_runs(
    settings,
    repository,
    fake_processes,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr("taskfuel.consume.handler.HANDLED_RUNS_MEMORY", 2)
    runner = _runner(settings, repository, fake_processes)

    def _result(run_id: str):
        return build_completion_result(
            task_id="f-gone00",
            run_id=run_id,
            agent_name="claude",
            exit_code=1,
            duration_seconds=0.5,
            output="",
        )

    for run_id in ("run-a", "run-b", "run-c"):
        assert runner.handler.handle(_result(run_id)) is True

    assert runner.handler.handle(_result("run-c")) is False
    assert runner.handler.handle(_result("run-b")) is False
    assert runner.handler.handle(_result("run-a")) is True
