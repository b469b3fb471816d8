"""Routes finished agent runs to success, failure or permission-blocked handling."""

from __future__ import annotations

import logging
import threading
from collections import deque

from taskfuel.consume.completion import CompletionResult, CompletionType
from taskfuel.consume.health import AgentHealthTracker
from taskfuel.consume.limiter import ConcurrencyLimiter
from taskfuel.consume.review import ReviewService
from taskfuel.storage.common import utc_now
from taskfuel.tasks.models import (
    ReviewResult,
    RunStatus,
    TaskComplexity,
    TaskCreate,
    TaskStatus,
)
from taskfuel.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)

AUTO_CLOSED_LABEL = "auto-closed"
AUTO_CLOSE_REASON = "Auto-completed by consume (agent exit 0)"
NEEDS_HUMAN_LABEL = "needs-human"
PERMISSION_TASK_PRIORITY = 1
REVIEW_PASSED_REASON = "Review passed"
HANDLED_RUNS_MEMORY = 1_024

_RUN_STATUS_BY_TYPE = {
    CompletionType.SUCCESS: RunStatus.COMPLETED,
    CompletionType.FAILED: RunStatus.FAILED,
    CompletionType.PERMISSION_BLOCKED: RunStatus.FAILED,
    CompletionType.KILLED: RunStatus.KILLED,
}


class CompletionHandler:
    """Applies one completion: health bookkeeping, slot release, task transition.

    Each run id is handled at most once. The concurrency slot is released and
    the health tracker is updated exactly once per handled run, even if task
    persistence fails midway.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        health: AgentHealthTracker,
        limiter: ConcurrencyLimiter,
        review_service: ReviewService | None = None,
        review_enabled: bool = False,
        output_tail_chars: int = 4_000,
    ) -> None:
        self.repository = repository
        self.health = health
        self.limiter = limiter
        self.review_service = review_service
        self.review_enabled = review_enabled
        self.output_tail_chars = output_tail_chars
        self._lock = threading.Lock()
        self._handled_runs: set[str] = set()
        self._handled_order: deque[str] = deque()

    def handle(self, result: CompletionResult) -> bool:
        """Apply a completion; returns False for a duplicate delivery."""

        with self._lock:
            if result.run_id in self._handled_runs:
                logger.warning(
                    "Ignoring duplicate completion for task %s (run %s)",
                    result.task_id,
                    result.run_id,
                )
                return False
            self._remember(result.run_id)

        try:
            self._record_health(result)
            self._record_run(result)
            if result.type == CompletionType.SUCCESS:
                self._handle_success(result)
            elif result.type == CompletionType.PERMISSION_BLOCKED:
                self._handle_permission_blocked(result)
            elif result.type == CompletionType.KILLED:
                self._handle_killed(result)
            else:
                self._handle_failed(result)
        except Exception:
            logger.exception(
                "Completion handling failed for task %s (run %s)",
                result.task_id,
                result.run_id,
            )
        finally:
            self.limiter.release(result.agent_name)
        return True

    def _remember(self, run_id: str) -> None:
        # Caller holds self._lock.
        self._handled_runs.add(run_id)
        self._handled_order.append(run_id)
        while len(self._handled_order) > HANDLED_RUNS_MEMORY:
            self._handled_runs.discard(self._handled_order.popleft())

    def apply_review_result(self, review: ReviewResult) -> None:
        """Close a reviewed task when it passed; otherwise leave it in review."""

        task = self.repository.find(review.task_id)
        if task is None or task.status != TaskStatus.REVIEW:
            return
        if review.passed:
            self.repository.done(task.short_id, reason=REVIEW_PASSED_REASON)
            logger.info("Review passed for task %s", task.short_id)
            return
        logger.info(
            "Review found %d issue(s) for task %s: %s",
            len(review.issues),
            task.short_id,
            "; ".join(review.issues),
        )

    def _record_health(self, result: CompletionResult) -> None:
        if result.type == CompletionType.SUCCESS:
            self.health.record_success(result.agent_name)
        elif result.type in {CompletionType.FAILED, CompletionType.PERMISSION_BLOCKED}:
            self.health.record_failure(result.agent_name)

    def _record_run(self, result: CompletionResult) -> None:
        tail = self._tail(result.output)
        self.repository.update_run(
            result.run_id,
            {
                "status": _RUN_STATUS_BY_TYPE[result.type],
                "ended_at": utc_now(),
                "exit_code": result.exit_code,
                "duration_seconds": result.duration_seconds,
                "session_id": result.session_id,
                "cost_usd": result.cost_usd,
                "output": tail,
            },
        )
        if self.repository.find(result.task_id) is None:
            return
        self.repository.update(
            result.task_id,
            {
                "consumed_exit_code": result.exit_code,
                "consumed_output": tail,
                "consume_pid": None,
            },
        )

    def _handle_success(self, result: CompletionResult) -> None:
        task = self.repository.find(result.task_id)
        if task is None:
            return
        if task.status != TaskStatus.IN_PROGRESS:
            logger.info(
                "Task %s already %s after agent exit; skipping auto-close",
                task.short_id,
                task.status.value,
            )
            return

        if self.review_enabled and self.review_service is not None:
            try:
                self.repository.mark_review(task.short_id)
                self.review_service.trigger_review(task.short_id, result.agent_name)
            except Exception:
                logger.exception(
                    "Review hand-off failed for task %s; auto-closing instead",
                    task.short_id,
                )
            else:
                return

        self._auto_close(task.short_id)

    def _auto_close(self, task_id: str) -> None:
        task = self.repository.find(task_id)
        if task is None or task.status not in {TaskStatus.IN_PROGRESS, TaskStatus.REVIEW}:
            return
        self.repository.add_label(task_id, AUTO_CLOSED_LABEL)
        self.repository.done(task_id, reason=AUTO_CLOSE_REASON)
        logger.info("Auto-closed task %s", task_id)

    def _handle_failed(self, result: CompletionResult) -> None:
        logger.warning(
            "Agent %s failed task %s with exit code %d; task stays consumed until retried",
            result.agent_name,
            result.task_id,
            result.exit_code,
        )

    def _handle_permission_blocked(self, result: CompletionResult) -> None:
        task = self.repository.find(result.task_id)
        if task is None:
            return
        blocker = self.repository.create(
            TaskCreate(
                title=f"Configure agent permissions for {result.agent_name}",
                description=_permission_instructions(result),
                complexity=TaskComplexity.TRIVIAL,
                priority=PERMISSION_TASK_PRIORITY,
                labels=(NEEDS_HUMAN_LABEL,),
            ),
        )
        self.repository.add_dependency(task.short_id, blocker.short_id)
        current = self.repository.resolve(task.short_id)
        if current.status != TaskStatus.OPEN:
            self.repository.reopen(task.short_id)
        logger.warning(
            "Agent %s was blocked by permissions on task %s; created %s for a human",
            result.agent_name,
            task.short_id,
            blocker.short_id,
        )

    def _handle_killed(self, result: CompletionResult) -> None:
        task = self.repository.find(result.task_id)
        if task is None or task.status != TaskStatus.IN_PROGRESS:
            return
        self.repository.reopen(task.short_id)
        logger.info("Task %s reopened after its agent was stopped", task.short_id)

    def _tail(self, output: str) -> str:
        if len(output) <= self.output_tail_chars:
            return output
        return output[-self.output_tail_chars :]


def _permission_instructions(result: CompletionResult) -> str:
    return (
        f"The {result.agent_name} agent could not run commands while working on task "
        f"{result.task_id}: its tool or terminal permissions were rejected.\n"
        "\n"
        "To unblock it:\n"
        f"1. Open the {result.agent_name} CLI configuration and allow the shell commands "
        "the task needs (or start it with a permission mode that does not prompt).\n"
        "2. Verify by running the agent manually in this project.\n"
        f"3. Mark this task done; {result.task_id} returns to the ready queue.\n"
        "\n"
        f"Matched output: {result.matched_pattern!r}"
    )
