"""Per-agent health tracking with backoff and dead-agent detection."""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from taskfuel.consume.backoff import BackoffStrategy
from taskfuel.storage.common import utc_now

logger = logging.getLogger(__name__)

RESET_ALL = "all"
UNHEALTHY_FAILURES = 5


class HealthState(str, Enum):
    """Scheduling state of an agent."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    IN_BACKOFF = "in_backoff"
    DEAD = "dead"


class HealthLabel(str, Enum):
    """Coarse status label exposed to IPC clients."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(slots=True)
class AgentHealth:
    """Health counters for one agent name."""

    agent: str
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    consecutive_failures: int = 0
    backoff_until: datetime | None = None
    total_runs: int = 0
    total_successes: int = 0

    @property
    def success_rate(self) -> float | None:
        if self.total_runs == 0:
            return None
        return self.total_successes / self.total_runs


@dataclass(slots=True, frozen=True)
class AgentHealthSummary:
    """Read-only projection of one agent's health for transport."""

    agent: str
    status: HealthLabel
    consecutive_failures: int
    in_backoff: bool
    is_dead: bool
    backoff_seconds: int
    total_runs: int
    total_successes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "in_backoff": self.in_backoff,
            "is_dead": self.is_dead,
            "backoff_seconds": self.backoff_seconds,
            "total_runs": self.total_runs,
            "total_successes": self.total_successes,
        }


class AgentHealthTracker:
    """In-memory health state keyed by agent name.

    Entries are created lazily. Queries for an unknown agent behave as a healthy
    agent with no history. All mutations hold one lock so completions delivered
    from different threads cannot lose updates.
    """

    def __init__(
        self,
        *,
        max_retries: int,
        backoff: BackoffStrategy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.max_retries = max_retries
        self.backoff = backoff or BackoffStrategy()
        self._clock = clock
        self._lock = threading.Lock()
        self._health: dict[str, AgentHealth] = {}

    def record_success(self, agent: str) -> AgentHealth:
        with self._lock:
            health = self._entry(agent)
            health.consecutive_failures = 0
            health.backoff_until = None
            health.last_success_at = self._clock()
            health.total_runs += 1
            health.total_successes += 1
            return replace(health)

    def record_failure(self, agent: str) -> AgentHealth:
        with self._lock:
            now = self._clock()
            health = self._entry(agent)
            health.consecutive_failures += 1
            health.last_failure_at = now
            health.total_runs += 1
            delay = self.backoff.compute_backoff(health.consecutive_failures)
            health.backoff_until = now + timedelta(seconds=delay) if delay > 0 else None
            snapshot = replace(health)
        if snapshot.consecutive_failures >= self.max_retries:
            logger.warning(
                "Agent %s is dead after %d consecutive failures",
                agent,
                snapshot.consecutive_failures,
            )
        else:
            logger.info(
                "Agent %s failure #%d, backing off %ds",
                agent,
                snapshot.consecutive_failures,
                delay,
            )
        return snapshot

    def reset(self, agent: str) -> list[str]:
        """Clear failures and backoff for one agent or, with ``"all"``, every agent.

        Returns the agent names that were reset.
        """

        with self._lock:
            if agent == RESET_ALL:
                targets = list(self._health)
            else:
                targets = [agent]
            for name in targets:
                health = self._entry(name)
                health.consecutive_failures = 0
                health.backoff_until = None
        logger.info("Health reset for %s", ", ".join(targets) or "no agents")
        return targets

    def get_health_status(self, agent: str) -> AgentHealth:
        with self._lock:
            health = self._health.get(agent)
            return replace(health) if health is not None else AgentHealth(agent=agent)

    def get_all_health_status(self) -> dict[str, AgentHealth]:
        with self._lock:
            return {name: replace(health) for name, health in self._health.items()}

    def get_state(self, agent: str) -> HealthState:
        health = self.get_health_status(agent)
        if health.consecutive_failures >= self.max_retries:
            return HealthState.DEAD
        if self._remaining_backoff(health) > 0:
            return HealthState.IN_BACKOFF
        if health.consecutive_failures > 0:
            return HealthState.DEGRADED
        return HealthState.HEALTHY

    def is_dead(self, agent: str) -> bool:
        return self.get_health_status(agent).consecutive_failures >= self.max_retries

    def is_available(self, agent: str) -> bool:
        """Whether the scheduler may hand this agent new work right now."""

        return self.get_state(agent) in {HealthState.HEALTHY, HealthState.DEGRADED}

    def get_backoff_seconds(self, agent: str) -> int:
        return self._remaining_backoff(self.get_health_status(agent))

    def summary(self, agent: str) -> AgentHealthSummary:
        return self._summarize(self.get_health_status(agent))

    def summaries(self, agents: list[str] | None = None) -> dict[str, AgentHealthSummary]:
        """Summaries for tracked agents plus any explicitly requested names."""

        tracked = self.get_all_health_status()
        for name in agents or []:
            tracked.setdefault(name, AgentHealth(agent=name))
        return {name: self._summarize(health) for name, health in sorted(tracked.items())}

    def _summarize(self, health: AgentHealth) -> AgentHealthSummary:
        remaining = self._remaining_backoff(health)
        dead = health.consecutive_failures >= self.max_retries
        if dead or health.consecutive_failures >= UNHEALTHY_FAILURES:
            label = HealthLabel.UNHEALTHY
        elif health.consecutive_failures > 0:
            label = HealthLabel.DEGRADED
        else:
            label = HealthLabel.HEALTHY
        return AgentHealthSummary(
            agent=health.agent,
            status=label,
            consecutive_failures=health.consecutive_failures,
            in_backoff=remaining > 0,
            is_dead=dead,
            backoff_seconds=remaining,
            total_runs=health.total_runs,
            total_successes=health.total_successes,
        )

    def _remaining_backoff(self, health: AgentHealth) -> int:
        if health.backoff_until is None:
            return 0
        remaining = (health.backoff_until - self._clock()).total_seconds()
        return max(0, math.ceil(remaining))

    def _entry(self, agent: str) -> AgentHealth:
        health = self._health.get(agent)
        if health is None:
            health = AgentHealth(agent=agent)
            self._health[agent] = health
        return health
