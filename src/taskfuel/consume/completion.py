"""Deterministic classification of finished agent runs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

COMPLETION_CLASSIFIER_VERSION = 1

PERMISSION_BLOCKED_PATTERNS: tuple[str, ...] = (
    "terminal commands are being rejected",
    "commands are being rejected",
    "please manually complete",
)

_SESSION_ID_RE = re.compile(r"Session ID:\s*([a-f0-9-]{36})", re.IGNORECASE)
_COST_RE = re.compile(r'"?total_cost_usd"?\s*[:=]\s*([0-9]+(?:\.[0-9]+)?)')


class CompletionType(str, Enum):
    """How a finished agent run is routed by the completion handler."""

    SUCCESS = "success"
    FAILED = "failed"
    PERMISSION_BLOCKED = "permission_blocked"
    KILLED = "killed"


@dataclass(slots=True, frozen=True)
class CompletionResult:
    """One finished subprocess run, consumed once by the completion handler."""

    task_id: str
    run_id: str
    agent_name: str
    exit_code: int
    duration_seconds: float
    output: str
    type: CompletionType
    session_id: str | None = None
    cost_usd: float | None = None
    matched_pattern: str | None = None

    @property
    def is_success(self) -> bool:
        return self.type == CompletionType.SUCCESS

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": COMPLETION_CLASSIFIER_VERSION,
            "run_id": self.run_id,
            "agent": self.agent_name,
            "exit_code": self.exit_code,
            "completion_type": self.type.value,
            "matched_pattern": self.matched_pattern,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(slots=True)
class CompletionClassification:
    """Classifier verdict with diagnostics for task events."""

    type: CompletionType
    matched_rule: str
    matched_pattern: str | None


def classify_completion(
    *,
    exit_code: int,
    output: str,
    killed: bool = False,
) -> CompletionClassification:
    """Route a finished run: permission blocked wins over the exit code."""

    if killed:
        return CompletionClassification(
            type=CompletionType.KILLED,
            matched_rule="killed_by_runner",
            matched_pattern=None,
        )

    pattern = _first_match(output.lower(), PERMISSION_BLOCKED_PATTERNS)
    if pattern is not None:
        return CompletionClassification(
            type=CompletionType.PERMISSION_BLOCKED,
            matched_rule="permission_blocked",
            matched_pattern=pattern,
        )

    if exit_code == 0:
        return CompletionClassification(
            type=CompletionType.SUCCESS,
            matched_rule="exit_zero",
            matched_pattern=None,
        )

    return CompletionClassification(
        type=CompletionType.FAILED,
        matched_rule="nonzero_exit",
        matched_pattern=None,
    )


def build_completion_result(  # noqa: PLR0913
    *,
    task_id: str,
    run_id: str,
    agent_name: str,
    exit_code: int,
    duration_seconds: float,
    output: str,
    killed: bool = False,
) -> CompletionResult:
    """Classify and package one run, extracting session id and cost from output."""

    classification = classify_completion(exit_code=exit_code, output=output, killed=killed)
    return CompletionResult(
        task_id=task_id,
        run_id=run_id,
        agent_name=agent_name,
        exit_code=exit_code,
        duration_seconds=duration_seconds,
        output=output,
        type=classification.type,
        session_id=extract_session_id(output),
        cost_usd=extract_cost_usd(output),
        matched_pattern=classification.matched_pattern,
    )


def extract_session_id(output: str) -> str | None:
    match = _SESSION_ID_RE.search(output)
    return match.group(1).lower() if match else None


def extract_cost_usd(output: str) -> float | None:
    match = _COST_RE.search(output)
    return float(match.group(1)) if match else None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
