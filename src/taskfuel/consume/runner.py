"""Consume daemon: schedules ready tasks onto agents and serves the IPC control plane."""

from __future__ import annotations

import json
import logging
import os
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from taskfuel import __version__
from taskfuel.browser.bridge import BrowserCommandHandler
from taskfuel.config import Settings
from taskfuel.consume.backoff import BackoffStrategy
from taskfuel.consume.completion import CompletionResult
from taskfuel.consume.handler import NEEDS_HUMAN_LABEL, CompletionHandler
from taskfuel.consume.health import AgentHealthTracker
from taskfuel.consume.limiter import ConcurrencyLimiter
from taskfuel.consume.process_manager import (
    ProcessManager,
    SpawnError,
    SpawnReason,
    SpawnRequest,
    SpawnResult,
    is_process_alive,
)
from taskfuel.consume.review import ReviewService
from taskfuel.ipc.client import read_pid_file
from taskfuel.ipc.dispatcher import IpcCommandDispatcher
from taskfuel.ipc.messages import (
    STOP_FORCE,
    STOP_GRACEFUL,
    HealthChangeEvent,
    HelloEvent,
    IpcEvent,
    SnapshotEvent,
    TaskCompletedEvent,
    TaskSpawnedEvent,
)
from taskfuel.ipc.server import IpcServer
from taskfuel.storage.common import utc_now
from taskfuel.tasks.models import RunStatus, TaskStatus, TaskView
from taskfuel.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)

DONE_TASKS_IN_SNAPSHOT = 20
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class RunnerAlreadyRunningError(RuntimeError):
    """Another consume daemon owns the PID file."""


@dataclass(slots=True)
class TickSummary:
    """What one scheduler tick did."""

    spawned: int = 0
    completed: int = 0
    skipped: int = 0
    reviews: int = 0


@dataclass(slots=True)
class RunnerSummary:
    """Totals for one daemon lifetime."""

    ticks: int = 0
    spawned: int = 0
    completed: int = 0
    stop_reason: str | None = None


def build_task_prompt(task: TaskView) -> str:
    """Instructions handed to the agent for one task."""

    lines = [
        f"You are working on task {task.short_id}: {task.title}",
        "",
    ]
    if task.description:
        lines.extend([task.description.strip(), ""])
    lines.extend(
        [
            "Complete the task in this repository, run the relevant checks and commit your work.",
            "Exit with status 0 only when the task is finished.",
        ],
    )
    return "\n".join(lines)


class ConsumeRunner:
    """Owns scheduler state and drives the daemon loop.

    Each tick spawns ready tasks while agents have capacity and health allows,
    collects finished agent processes and hands them to the completion handler,
    then applies review results. The IPC server is serviced between ticks and
    never blocks them.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        repository: TaskRepository,
        process_manager: ProcessManager | None = None,
        health: AgentHealthTracker | None = None,
        limiter: ConcurrencyLimiter | None = None,
        review_service: ReviewService | None = None,
        browser: BrowserCommandHandler | None = None,
        server: IpcServer | None = None,
        prompt_builder: Callable[[TaskView], str] = build_task_prompt,
        cwd: Path | None = None,
        instance_id: str | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.instance_id = instance_id or str(uuid4())
        self.process_manager = process_manager or ProcessManager(
            processes_dir=settings.processes_dir,
            kill_grace_seconds=settings.consume.kill_grace_seconds,
        )
        self.health = health or AgentHealthTracker(
            max_retries=settings.get_agent_max_retries(),
            backoff=BackoffStrategy(
                base_seconds=settings.consume.backoff_base_seconds,
                max_seconds=settings.consume.backoff_max_seconds,
            ),
        )
        self.limiter = limiter or ConcurrencyLimiter(limit_for=settings.get_agent_limit)
        self.review_service = review_service
        self.handler = CompletionHandler(
            repository=repository,
            health=self.health,
            limiter=self.limiter,
            review_service=review_service,
            review_enabled=settings.consume.task_review,
            output_tail_chars=settings.consume.output_tail_chars,
        )
        self.browser = browser
        self.server = server
        self.dispatcher = IpcCommandDispatcher(self)
        self.prompt_builder = prompt_builder
        self.cwd = cwd
        self.paused = False
        self.started_at = utc_now()
        self._stop_requested = False
        self._stop_mode = STOP_GRACEFUL
        self._stop_reason: str | None = None
        self._ready_cache: list[TaskView] | None = None
        self._ready_cached_at = 0.0

    # -- lifecycle -------------------------------------------------------------

    def pause(self) -> None:
        if not self.paused:
            logger.info("Consume paused; running agents continue")
        self.paused = True

    def resume(self) -> None:
        if self.paused:
            logger.info("Consume resumed")
        self.paused = False
        self.invalidate_ready_cache()

    def request_stop(self, *, mode: str = STOP_GRACEFUL, reason: str | None = None) -> None:
        self._stop_requested = True
        self._stop_mode = mode
        self._stop_reason = reason or f"stop:{mode}"
        logger.info("Stop requested (%s)", self._stop_reason)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def set_review_enabled(self, enabled: bool) -> None:
        self.handler.review_enabled = enabled
        logger.info("Task review %s", "enabled" if enabled else "disabled")

    def reload_config(self) -> dict[str, int]:
        """Re-read agent settings from the environment; returns per-agent limits."""

        reloaded = Settings.from_env(db_path=self.settings.db_path)
        self.settings.agents = reloaded.agents
        self.settings.complexity_agents = reloaded.complexity_agents
        self.health.max_retries = reloaded.get_agent_max_retries()
        self.settings.consume.max_retries = reloaded.consume.max_retries
        self.invalidate_ready_cache()
        logger.info("Configuration reloaded")
        return self.settings.get_agent_limits()

    # -- scheduling --------------------------------------------------------------

    def tick(self) -> TickSummary:
        """One scheduler pass: spawn, collect completions, apply reviews."""

        summary = TickSummary()
        if not self.paused and not self._stop_requested:
            for result in self.spawn_ready():
                if result.success:
                    summary.spawned += 1
                else:
                    summary.skipped += 1
        completions = self.collect_completions()
        summary.completed = len(completions)
        summary.reviews = self.apply_reviews()
        return summary

    def spawn_ready(self) -> list[SpawnResult]:
        results: list[SpawnResult] = []
        for task in self.ready_tasks():
            if NEEDS_HUMAN_LABEL in task.labels or self.process_manager.is_running(task.short_id):
                continue
            result = self.try_spawn(task)
            results.append(result)
            if result.success:
                self.invalidate_ready_cache()
        return results

    def try_spawn(self, task: TaskView) -> SpawnResult:
        """Claim one task for its agent and start the agent process."""

        agent = self.settings.get_agent_config(task.complexity.value)
        if agent is None:
            return SpawnResult.refused(
                SpawnReason.CONFIG_ERROR,
                f"No agent configured for complexity {task.complexity.value!r}",
            )
        if self.health.is_dead(agent.name):
            return SpawnResult.refused(
                SpawnReason.AGENT_DEAD,
                f"Agent {agent.name} is dead; reset its health to resume",
            )
        if not self.health.is_available(agent.name):
            retry_after = self.health.get_backoff_seconds(agent.name)
            return SpawnResult.refused(
                SpawnReason.AGENT_IN_BACKOFF,
                f"Agent {agent.name} is backing off for {retry_after}s",
                retry_after_seconds=retry_after,
            )
        if not self.limiter.try_acquire(agent.name):
            return SpawnResult.refused(
                SpawnReason.AT_CAPACITY,
                f"Agent {agent.name} is at capacity",
            )

        try:
            self.repository.start(task.short_id)
        except RuntimeError as error:
            self.limiter.release(agent.name)
            self.invalidate_ready_cache()
            return SpawnResult.refused(SpawnReason.SPAWN_FAILED, str(error))

        run_id: str | None = None
        try:
            self.repository.update(
                task.short_id,
                {
                    "consumed": True,
                    "consumed_at": utc_now(),
                    "consumed_exit_code": None,
                    "consumed_output": None,
                },
            )
            run_id = self.repository.log_run(
                task.short_id,
                agent=agent.name,
                model=agent.model,
                runner_instance_id=self.instance_id,
            )
            process = self.process_manager.spawn(
                SpawnRequest(
                    task_id=task.short_id,
                    run_id=run_id,
                    agent=agent,
                    prompt=self.prompt_builder(task),
                    cwd=self.cwd,
                ),
            )
        except Exception as error:
            self.limiter.release(agent.name)
            self._rollback_spawn(task.short_id, run_id, error)
            return SpawnResult.refused(SpawnReason.SPAWN_FAILED, str(error))

        self.repository.update(task.short_id, {"consume_pid": process.pid})
        self.repository.update_run(run_id, {"pid": process.pid})
        self.broadcast(
            TaskSpawnedEvent(
                task_id=task.short_id,
                run_id=run_id,
                agent=agent.name,
                pid=process.pid,
                instance_id=self.instance_id,
            ),
        )
        return SpawnResult.spawned(process)

    def collect_completions(self) -> list[CompletionResult]:
        completions = self.process_manager.poll()
        for result in completions:
            before = self.health.summary(result.agent_name)
            self.handler.handle(result)
            self.broadcast(
                TaskCompletedEvent(
                    task_id=result.task_id,
                    run_id=result.run_id,
                    agent=result.agent_name,
                    exit_code=result.exit_code,
                    completion_type=result.type.value,
                    duration_seconds=round(result.duration_seconds, 3),
                    instance_id=self.instance_id,
                ),
            )
            after = self.health.summary(result.agent_name)
            if after != before:
                self.broadcast(
                    HealthChangeEvent(
                        agent=result.agent_name,
                        status=after.status.value,
                        summary=after.to_dict(),
                        instance_id=self.instance_id,
                    ),
                )
        if completions:
            self.invalidate_ready_cache()
        return completions

    def apply_reviews(self) -> int:
        if self.review_service is None:
            return 0
        try:
            reviews = self.review_service.poll_results()
        except Exception:
            logger.exception("Polling review results failed")
            return 0
        for review in reviews:
            try:
                self.handler.apply_review_result(review)
            except RuntimeError:
                logger.exception("Applying review result for task %s failed", review.task_id)
        if reviews:
            self.invalidate_ready_cache()
        return len(reviews)

    def ready_tasks(self) -> list[TaskView]:
        now = time.monotonic()
        cache_age = now - self._ready_cached_at
        if self._ready_cache is None or cache_age >= self.settings.consume.ready_cache_seconds:
            self._ready_cache = self.repository.ready()
            self._ready_cached_at = now
        return list(self._ready_cache)

    def invalidate_ready_cache(self) -> None:
        self._ready_cache = None

    # -- IPC ----------------------------------------------------------------------

    def service_ipc(self) -> None:
        """Accept clients, dispatch their commands and deliver browser responses."""

        if self.server is not None:
            for client_id in self.server.accept():
                self.send_to(client_id, HelloEvent(version=__version__, instance_id=self.instance_id))
                self.send_snapshot(client_id)
            for client_id, message in self.server.poll():
                self.dispatcher.dispatch(client_id, message)
        if self.browser is not None:
            for client_id, response in self.browser.drain():
                if not self.send_to(client_id, response):
                    logger.debug(
                        "Dropping browser response %s: client %s is gone",
                        response.request_id,
                        client_id,
                    )

    def attach_client(self, client_id: str) -> None:
        if self.server is not None:
            self.server.mark_attached(client_id)

    def detach_client(self, client_id: str) -> None:
        if self.server is not None:
            self.server.mark_attached(client_id, attached=False)

    def send_to(self, client_id: str, event: IpcEvent) -> bool:
        if self.server is None:
            return False
        return self.server.send_to(client_id, event)

    def broadcast(self, event: IpcEvent) -> None:
        if self.server is not None:
            self.server.broadcast(event)

    def send_snapshot(self, client_id: str, *, request_id: str | None = None) -> None:
        self.send_to(
            client_id,
            SnapshotEvent(
                snapshot=self.snapshot(),
                request_id=request_id,
                instance_id=self.instance_id,
            ),
        )

    def broadcast_snapshot(self, *, request_id: str | None = None) -> None:
        if self.server is None:
            return
        self.invalidate_ready_cache()
        self.broadcast(
            SnapshotEvent(
                snapshot=self.snapshot(),
                request_id=request_id,
                instance_id=self.instance_id,
            ),
        )

    def snapshot(self) -> dict[str, Any]:
        """Board, processes, health and runner state for IPC clients."""

        tasks = self.repository.list_tasks()
        ready_ids = {task.short_id for task in self.repository.ready()}
        board: dict[str, list[dict[str, Any]]] = {
            "ready": [],
            "in_progress": [],
            "review": [],
            "blocked": [],
            "human": [],
            "done": [],
        }
        for task in tasks:
            if task.status == TaskStatus.OPEN:
                if NEEDS_HUMAN_LABEL in task.labels:
                    column = "human"
                elif task.short_id in ready_ids:
                    column = "ready"
                else:
                    column = "blocked"
            elif task.status in {TaskStatus.IN_PROGRESS, TaskStatus.REVIEW, TaskStatus.DONE}:
                column = task.status.value
            else:
                continue
            board[column].append(task.to_dict())
        board["done"] = board["done"][-DONE_TASKS_IN_SNAPSHOT:]

        now = time.monotonic()
        agents = sorted(self.settings.agents)
        return {
            "board_state": board,
            "active_processes": [
                {
                    "task_id": item.task_id,
                    "run_id": item.run_id,
                    "agent": item.agent,
                    "pid": item.pid,
                    "runtime_seconds": round(now - item.started_monotonic, 1),
                }
                for item in self.process_manager.running()
            ],
            "health_summary": {
                name: summary.to_dict()
                for name, summary in self.health.summaries(agents).items()
            },
            "runner_state": {
                "paused": self.paused,
                "started_at": self.started_at.isoformat(),
                "instance_id": self.instance_id,
                "review_enabled": self.handler.review_enabled,
            },
            "config": {"agents": self.settings.get_agent_limits()},
        }

    # -- daemon loop -------------------------------------------------------------

    def run(self, *, once: bool = False) -> RunnerSummary:
        """Run until stopped; with ``once`` exit after the ready queue drains.

        Writes the PID file and serves IPC for the whole lifetime. Running agents
        are terminated on exit.
        """

        summary = RunnerSummary()
        self.ensure_single_instance()
        try:
            self.recover_orphans()
            if self.server is not None:
                self.server.instance_id = self.instance_id
                self.server.start()
            if self.browser is not None:
                self.browser.instance_id = self.instance_id
                self.browser.start()
            self.write_pid_file()
            logger.info(
                "Consume daemon %s started (pid=%d, port=%s)",
                self.instance_id,
                os.getpid(),
                self.server.port if self.server is not None else "-",
            )
            with self._signal_handlers():
                while not self._stop_requested:
                    try:
                        self.service_ipc()
                        tick = self.tick()
                    except Exception:
                        logger.exception("Consume tick failed")
                        tick = TickSummary()
                    summary.ticks += 1
                    summary.spawned += tick.spawned
                    summary.completed += tick.completed
                    if once and tick.spawned == 0 and self.process_manager.running_count() == 0:
                        self._stop_reason = "once:idle"
                        break
                    self._sleep_with_stop(self.settings.consume.poll_interval_seconds)
        finally:
            self._shutdown()
        summary.stop_reason = self._stop_reason
        logger.info("Consume daemon stopped (%s)", summary.stop_reason or "unknown")
        return summary

    def recover_orphans(self) -> list[str]:
        """Reopen tasks left in progress by a daemon whose agent is gone."""

        recovered: list[str] = []
        for task in self.repository.list_tasks(status=TaskStatus.IN_PROGRESS):
            if not task.consumed or task.consume_pid is None:
                continue
            if is_process_alive(task.consume_pid):
                continue
            self.repository.update_latest_run(
                task.short_id,
                {"status": RunStatus.KILLED, "ended_at": utc_now()},
            )
            self.repository.update(task.short_id, {"consume_pid": None})
            self.repository.reopen(task.short_id)
            recovered.append(task.short_id)
        if recovered:
            logger.warning("Reopened orphaned tasks: %s", ", ".join(recovered))
        return recovered

    def ensure_single_instance(self) -> None:
        """Refuse to start next to a live daemon; clear a stale PID file."""

        pid_file = self.settings.pid_file_path
        existing = read_pid_file(pid_file)
        if existing is None:
            return
        try:
            pid = int(existing["pid"])
        except (TypeError, ValueError):
            pid = 0
        if pid != os.getpid() and is_process_alive(pid):
            raise RunnerAlreadyRunningError(f"Consume daemon already running (pid {pid})")
        logger.info("Removing stale PID file for pid %s", pid)
        pid_file.unlink(missing_ok=True)

    def write_pid_file(self) -> None:
        pid_file = self.settings.pid_file_path
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "pid": os.getpid(),
            "port": self.server.port if self.server is not None else 0,
            "started_at": int(self.started_at.timestamp()),
            "instance_id": self.instance_id,
        }
        pid_file.write_text(json.dumps(payload), "utf-8")

    def remove_pid_file(self) -> None:
        data = read_pid_file(self.settings.pid_file_path)
        if data is not None and data.get("instance_id") == self.instance_id:
            self.settings.pid_file_path.unlink(missing_ok=True)

    def _shutdown(self) -> None:
        grace = 0.0 if self._stop_mode == STOP_FORCE else self.settings.consume.shutdown_grace_seconds
        if self.process_manager.running_count():
            logger.info(
                "Stopping %d running agent(s) with %.0fs grace",
                self.process_manager.running_count(),
                grace,
            )
            self.process_manager.shutdown(grace_seconds=grace)
            self.collect_completions()
        if self.browser is not None:
            self.browser.stop()
        if self.server is not None:
            self.server.close()
        self.remove_pid_file()

    def _rollback_spawn(self, task_id: str, run_id: str | None, error: Exception) -> None:
        if isinstance(error, SpawnError):
            logger.error("Failed to spawn agent for task %s: %s", task_id, error)
        else:
            logger.exception("Unexpected error while spawning agent for task %s", task_id)
        self.invalidate_ready_cache()
        if run_id is not None:
            self.repository.update_run(
                run_id,
                {"status": RunStatus.FAILED, "ended_at": utc_now(), "output": str(error)},
            )
        self.repository.update(
            task_id,
            {"consumed": False, "consumed_at": None, "consume_pid": None},
        )
        self.repository.reopen(task_id)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(mode=STOP_GRACEFUL, reason=f"signal:{name}")

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


@contextmanager
def daemon_log_handler(log_path: Path) -> Iterator[logging.Handler]:
    """Route ``taskfuel`` loggers to the daemon log file while the daemon runs."""

    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger = logging.getLogger("taskfuel")
    previous_level = package_logger.level
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.INFO)
    try:
        yield handler
    finally:
        package_logger.removeHandler(handler)
        package_logger.setLevel(previous_level)
        handler.close()
