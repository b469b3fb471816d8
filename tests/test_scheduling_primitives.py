from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import allure
import pytest

from taskfuel.consume.backoff import BackoffStrategy, format_backoff
from taskfuel.consume.health import AgentHealthTracker, HealthLabel, HealthState
from taskfuel.consume.limiter import ConcurrencyLimiter, ConcurrencyLimitError
from taskfuel.tasks.models import TaskComplexity, TaskStatus, TaskView
from taskfuel.tasks.readiness import ready_tasks

pytestmark = [
    allure.epic("Consume Daemon"),
    allure.feature("Scheduling Primitives"),
]

_BASE_TIME = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


def _task(
    seq: int,
    *,
    status: TaskStatus = TaskStatus.OPEN,
    priority: int = 2,
    blocked_by: tuple[str, ...] = (),
    minutes: int = 0,
) -> TaskView:
    created = _BASE_TIME + timedelta(minutes=minutes)
    return TaskView(
        seq=seq,
        short_id=f"f-{seq:06d}",
        title=f"Task {seq}",
        description=None,
        status=status,
        complexity=TaskComplexity.SIMPLE,
        priority=priority,
        labels=[],
        blocked_by=list(blocked_by),
        epic_id=None,
        consumed=False,
        consumed_at=None,
        consumed_output=None,
        consumed_exit_code=None,
        consume_pid=None,
        reason=None,
        commit_hash=None,
        created_at=created,
        updated_at=created,
    )


class _Clock:
    def __init__(self) -> None:
        self.now = _BASE_TIME

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def test_ready_requires_open_status_and_done_blockers() -> None:
    blocker = _task(1, status=TaskStatus.IN_PROGRESS)
    closed_blocker = _task(2, status=TaskStatus.DONE)
    blocked = _task(3, blocked_by=(blocker.short_id,))
    unblocked = _task(4, blocked_by=(closed_blocker.short_id,))
    in_progress = _task(5, status=TaskStatus.IN_PROGRESS)

    ready = ready_tasks([blocker, closed_blocker, blocked, unblocked, in_progress])

    assert [task.short_id for task in ready] == [unblocked.short_id]


def test_dangling_blocker_does_not_block() -> None:
    task = _task(1, blocked_by=("f-gone00",))

    assert ready_tasks([task]) == [task]


def test_ready_orders_by_priority_then_creation() -> None:
    late_urgent = _task(1, priority=0, minutes=10)
    early_normal = _task(2, priority=2, minutes=0)
    late_normal = _task(3, priority=2, minutes=5)
    early_urgent = _task(4, priority=0, minutes=1)

    ready = ready_tasks([late_urgent, early_normal, late_normal, early_urgent])

    assert [task.seq for task in ready] == [4, 1, 2, 3]


def test_ready_is_idempotent() -> None:
    tasks = [_task(1), _task(2, blocked_by=("f-000001",)), _task(3, priority=1)]

    assert ready_tasks(tasks) == ready_tasks(tasks)


@pytest.mark.parametrize(
    ("failures", "expected"),
    [(0, 0), (1, 30), (2, 60), (3, 120), (4, 240), (5, 480), (6, 960), (7, 960), (50, 960)],
)
def test_backoff_schedule(failures: int, expected: int) -> None:
    assert BackoffStrategy().compute_backoff(failures) == expected


def test_backoff_is_monotonic_and_respects_custom_bounds() -> None:
    strategy = BackoffStrategy(base_seconds=5, max_seconds=100)
    values = [strategy.compute_backoff(n) for n in range(12)]

    assert values == sorted(values)
    assert values[0] == 0
    assert max(values) == 100


def test_format_backoff() -> None:
    assert format_backoff(45) == "45s"
    assert format_backoff(120) == "2m"
    assert format_backoff(150) == "2m 30s"


def test_unknown_agent_is_healthy() -> None:
    tracker = AgentHealthTracker(max_retries=10)

    health = tracker.get_health_status("ghost")

    assert health.consecutive_failures == 0
    assert tracker.is_available("ghost")
    assert tracker.get_state("ghost") == HealthState.HEALTHY
    assert tracker.get_all_health_status() == {}


def test_ten_failures_mark_agent_dead_with_capped_backoff() -> None:
    clock = _Clock()
    tracker = AgentHealthTracker(max_retries=10, clock=clock)

    for _ in range(10):
        tracker.record_failure("claude")

    assert tracker.is_dead("claude")
    assert tracker.get_state("claude") == HealthState.DEAD
    assert not tracker.is_available("claude")
    assert tracker.get_backoff_seconds("claude") == 960
    summary = tracker.summary("claude")
    assert summary.status == HealthLabel.UNHEALTHY
    assert summary.is_dead
    assert summary.consecutive_failures == 10


def test_backoff_window_expires_and_agent_becomes_degraded() -> None:
    clock = _Clock()
    tracker = AgentHealthTracker(max_retries=10, clock=clock)

    tracker.record_failure("codex")
    assert tracker.get_state("codex") == HealthState.IN_BACKOFF
    assert tracker.get_backoff_seconds("codex") == 30

    clock.advance(31)
    assert tracker.get_state("codex") == HealthState.DEGRADED
    assert tracker.is_available("codex")
    assert tracker.summary("codex").status == HealthLabel.DEGRADED


def test_success_resets_failures() -> None:
    clock = _Clock()
    tracker = AgentHealthTracker(max_retries=10, clock=clock)
    for _ in range(3):
        tracker.record_failure("claude")

    health = tracker.record_success("claude")

    assert health.consecutive_failures == 0
    assert health.backoff_until is None
    assert health.total_runs == 4
    assert health.success_rate == pytest.approx(0.25)
    assert tracker.get_state("claude") == HealthState.HEALTHY


def test_reset_single_agent_and_all() -> None:
    tracker = AgentHealthTracker(max_retries=2)
    for agent in ("claude", "codex"):
        tracker.record_failure(agent)
        tracker.record_failure(agent)
    assert tracker.is_dead("claude")

    assert tracker.reset("claude") == ["claude"]
    assert not tracker.is_dead("claude")
    assert tracker.is_dead("codex")

    assert sorted(tracker.reset("all")) == ["claude", "codex"]
    assert tracker.summaries()["codex"].consecutive_failures == 0


def test_summaries_include_requested_agents() -> None:
    tracker = AgentHealthTracker(max_retries=10)
    tracker.record_failure("codex")

    summaries = tracker.summaries(["claude", "codex"])

    assert list(summaries) == ["claude", "codex"]
    assert summaries["claude"].to_dict()["status"] == "healthy"
    assert summaries["codex"].to_dict()["in_backoff"] is True


def test_limiter_allows_n_and_refuses_n_plus_one() -> None:
    limiter = ConcurrencyLimiter(limit_for=lambda agent: 2 if agent == "claude" else 1)

    assert limiter.try_acquire("claude")
    assert limiter.try_acquire("claude")
    assert not limiter.can_schedule("claude")
    assert not limiter.try_acquire("claude")
    with pytest.raises(ConcurrencyLimitError):
        limiter.acquire("claude")
    assert limiter.in_flight("claude") == 2

    limiter.release("claude")
    assert limiter.can_schedule("claude")
    assert limiter.counts() == {"claude": 1}


def test_limiter_release_never_goes_negative() -> None:
    limiter = ConcurrencyLimiter()

    limiter.release("gemini")
    limiter.release("gemini")

    assert limiter.in_flight("gemini") == 0
    assert limiter.can_schedule("gemini")


def test_limiter_slot_releases_on_error() -> None:
    limiter = ConcurrencyLimiter(limit_for=lambda _: 1)

    with pytest.raises(ValueError), limiter.slot("codex"):
        assert limiter.in_flight("codex") == 1
        raise ValueError("boom")

    assert limiter.in_flight("codex") == 0


def test_limiter_never_over_acquires_under_interleaved_callers() -> None:
    limiter = ConcurrencyLimiter(limit_for=lambda _: 3)
    barrier = threading.Barrier(16)
    granted: list[bool] = []
    peaks: list[int] = []
    record = threading.Lock()

    def _first_grab() -> None:
        barrier.wait()
        acquired = limiter.try_acquire("claude")
        with record:
            granted.append(acquired)

    def _churn() -> None:
        barrier.wait()
        for _ in range(200):
            if limiter.try_acquire("codex"):
                with record:
                    peaks.append(limiter.in_flight("codex"))
                limiter.release("codex")

    for target in (_first_grab, _churn):
        threads = [threading.Thread(target=target) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        barrier.reset()

    assert granted.count(True) == 3
    assert limiter.in_flight("claude") == 3
    assert peaks
    assert max(peaks) <= 3
    assert limiter.in_flight("codex") == 0
