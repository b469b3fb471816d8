"""Review hand-off contract used when task review mode is enabled."""

from __future__ import annotations

from typing import Protocol

from taskfuel.tasks.models import ReviewResult


class ReviewService(Protocol):
    """External reviewer of completed agent work.

    Any exception raised by ``trigger_review`` is treated by the runner as a
    failed hand-off and the task is auto-closed instead.
    """

    def trigger_review(self, task_id: str, agent_name: str) -> None:
        """Start reviewing a task the agent reported as finished."""

    def poll_results(self) -> list[ReviewResult]:
        """Reviews that finished since the previous call."""
