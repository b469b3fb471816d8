"""Exponential backoff with a cap for failing agents."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_BASE_SECONDS = 30
DEFAULT_MAX_SECONDS = 960


@dataclass(slots=True, frozen=True)
class BackoffStrategy:
    """Maps consecutive failures to a cooldown window.

    ``min(max_seconds, base_seconds * 2 ** (failures - 1))``; zero failures means
    no cooldown. With the defaults: 30s, 60s, 120s, 240s, 480s, then 960s.
    """

    base_seconds: int = DEFAULT_BASE_SECONDS
    max_seconds: int = DEFAULT_MAX_SECONDS

    def compute_backoff(self, consecutive_failures: int) -> int:
        if consecutive_failures <= 0:
            return 0
        # Cap the exponent so large failure counts do not build huge ints.
        exponent = min(consecutive_failures - 1, 32)
        return min(self.max_seconds, self.base_seconds * 2**exponent)


def format_backoff(seconds: float) -> str:
    """Render a remaining backoff window as ``45s`` or ``2m 30s``."""

    total = max(0, int(round(seconds)))
    if total < 60:
        return f"{total}s"
    minutes, rest = divmod(total, 60)
    if rest == 0:
        return f"{minutes}m"
    return f"{minutes}m {rest}s"
