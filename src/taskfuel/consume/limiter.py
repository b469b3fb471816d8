"""Per-agent in-flight run limits."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from taskfuel.config import DEFAULT_MAX_CONCURRENT


class ConcurrencyLimitError(RuntimeError):
    """Raised when acquiring a slot for an agent that is at capacity."""


class ConcurrencyLimiter:
    """Counts running subprocesses per agent against ``max_concurrent``."""

    def __init__(self, limit_for: Callable[[str], int] | None = None) -> None:
        self._limit_for = limit_for or (lambda _agent: DEFAULT_MAX_CONCURRENT)
        self._lock = threading.Lock()
        self._in_flight: dict[str, int] = {}

    def can_schedule(self, agent: str) -> bool:
        with self._lock:
            return self._in_flight.get(agent, 0) < self._limit_for(agent)

    def try_acquire(self, agent: str) -> bool:
        """Take a slot if one is free; check and increment are one step."""

        with self._lock:
            current = self._in_flight.get(agent, 0)
            if current >= self._limit_for(agent):
                return False
            self._in_flight[agent] = current + 1
            return True

    def acquire(self, agent: str) -> None:
        if not self.try_acquire(agent):
            raise ConcurrencyLimitError(f"Agent {agent!r} is at capacity")

    def release(self, agent: str) -> None:
        with self._lock:
            current = self._in_flight.get(agent, 0)
            if current <= 1:
                self._in_flight.pop(agent, None)
            else:
                self._in_flight[agent] = current - 1

    @contextmanager
    def slot(self, agent: str) -> Iterator[None]:
        """Hold a slot for the duration of the block."""

        self.acquire(agent)
        try:
            yield
        finally:
            self.release(agent)

    def in_flight(self, agent: str) -> int:
        with self._lock:
            return self._in_flight.get(agent, 0)

    def counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._in_flight)
