"""Typed IPC commands and events.

Every message is an immutable dataclass with a class-level ``TYPE`` tag. The
wire form is one JSON object carrying that tag under ``type`` plus the envelope
fields ``request_id``, ``timestamp`` and ``instance_id``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar

from taskfuel.storage.common import utc_now

ENVELOPE_FIELDS = frozenset({"request_id", "timestamp", "instance_id"})

STOP_GRACEFUL = "graceful"
STOP_FORCE = "force"


class BrowserTargetError(ValueError):
    """Browser command addressed with both or neither of selector and ref."""


@dataclass(slots=True, frozen=True, kw_only=True)
class IpcMessage:
    """Base for everything sent over the control socket."""

    TYPE: ClassVar[str] = ""

    request_id: str | None = None
    timestamp: datetime = field(default_factory=utc_now)
    instance_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.TYPE,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
            "instance_id": self.instance_id,
        }
        for item in fields(self):
            if item.name in ENVELOPE_FIELDS:
                continue
            value = getattr(self, item.name)
            payload[item.name] = list(value) if isinstance(value, tuple) else value
        return payload


@dataclass(slots=True, frozen=True, kw_only=True)
class IpcCommand(IpcMessage):
    """Client to daemon."""


@dataclass(slots=True, frozen=True, kw_only=True)
class IpcEvent(IpcMessage):
    """Daemon to client."""


# Commands


@dataclass(slots=True, frozen=True, kw_only=True)
class AttachCommand(IpcCommand):
    TYPE: ClassVar[str] = "attach"

    last_event_id: str | None = None


@dataclass(slots=True, frozen=True, kw_only=True)
class DetachCommand(IpcCommand):
    TYPE: ClassVar[str] = "detach"


@dataclass(slots=True, frozen=True, kw_only=True)
class PauseCommand(IpcCommand):
    TYPE: ClassVar[str] = "pause"


@dataclass(slots=True, frozen=True, kw_only=True)
class ResumeCommand(IpcCommand):
    TYPE: ClassVar[str] = "resume"


@dataclass(slots=True, frozen=True, kw_only=True)
class StopCommand(IpcCommand):
    TYPE: ClassVar[str] = "stop"

    mode: str = STOP_GRACEFUL

    def __post_init__(self) -> None:
        if self.mode not in {STOP_GRACEFUL, STOP_FORCE}:
            raise ValueError(f"Unsupported stop mode: {self.mode!r}")


@dataclass(slots=True, frozen=True, kw_only=True)
class RequestSnapshotCommand(IpcCommand):
    TYPE: ClassVar[str] = "request_snapshot"


@dataclass(slots=True, frozen=True, kw_only=True)
class SetTaskReviewCommand(IpcCommand):
    TYPE: ClassVar[str] = "set_task_review_enabled"

    enabled: bool


@dataclass(slots=True, frozen=True, kw_only=True)
class ReloadConfigCommand(IpcCommand):
    TYPE: ClassVar[str] = "reload_config"


@dataclass(slots=True, frozen=True, kw_only=True)
class TaskStartCommand(IpcCommand):
    TYPE: ClassVar[str] = "task_start"

    task_id: str


@dataclass(slots=True, frozen=True, kw_only=True)
class TaskReopenCommand(IpcCommand):
    TYPE: ClassVar[str] = "task_reopen"

    task_id: str


@dataclass(slots=True, frozen=True, kw_only=True)
class TaskDoneCommand(IpcCommand):
    TYPE: ClassVar[str] = "task_done"

    task_id: str
    reason: str | None = None
    commit_hash: str | None = None


@dataclass(slots=True, frozen=True, kw_only=True)
class TaskCreateCommand(IpcCommand):
    TYPE: ClassVar[str] = "task_create"

    title: str
    description: str | None = None
    complexity: str = "simple"
    priority: int = 2
    labels: tuple[str, ...] = ()
    blocked_by: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True, kw_only=True)
class DependencyAddCommand(IpcCommand):
    TYPE: ClassVar[str] = "dependency_add"

    task_id: str
    blocker_id: str


@dataclass(slots=True, frozen=True, kw_only=True)
class HealthResetCommand(IpcCommand):
    TYPE: ClassVar[str] = "health_reset"

    agent: str = "all"


@dataclass(slots=True, frozen=True, kw_only=True)
class BrowserCommand(IpcCommand):
    """Browser operation on one page of the sidecar."""

    page_id: str

    @property
    def method(self) -> str:
        return self.TYPE.removeprefix("browser_")

    def params(self) -> dict[str, Any]:
        payload = self.to_payload()
        for key in ("type", *ENVELOPE_FIELDS):
            payload.pop(key, None)
        return payload


@dataclass(slots=True, frozen=True, kw_only=True)
class BrowserTargetCommand(BrowserCommand):
    """Browser operation on one element, addressed by selector or ref."""

    selector: str | None = None
    ref: str | None = None

    def __post_init__(self) -> None:
        validate_target(selector=self.selector, ref=self.ref)


@dataclass(slots=True, frozen=True, kw_only=True)
class BrowserClickCommand(BrowserTargetCommand):
    TYPE: ClassVar[str] = "browser_click"


@dataclass(slots=True, frozen=True, kw_only=True)
class BrowserTypeCommand(BrowserTargetCommand):
    TYPE: ClassVar[str] = "browser_type"

    text: str
    delay: int = 0


@dataclass(slots=True, frozen=True, kw_only=True)
class BrowserHtmlCommand(BrowserTargetCommand):
    TYPE: ClassVar[str] = "browser_html"

    inner: bool = False


@dataclass(slots=True, frozen=True, kw_only=True)
class BrowserSnapshotCommand(BrowserCommand):
    TYPE: ClassVar[str] = "browser_snapshot"

    scope: str | None = None
    interactive_only: bool = False


@dataclass(slots=True, frozen=True, kw_only=True)
class BrowserRunCommand(BrowserCommand):
    TYPE: ClassVar[str] = "browser_run"

    code: str


@dataclass(slots=True, frozen=True, kw_only=True)
class BrowserStatusCommand(IpcCommand):
    TYPE: ClassVar[str] = "browser_status"


# Events


@dataclass(slots=True, frozen=True, kw_only=True)
class HelloEvent(IpcEvent):
    TYPE: ClassVar[str] = "hello"

    version: str = ""


@dataclass(slots=True, frozen=True, kw_only=True)
class SnapshotEvent(IpcEvent):
    TYPE: ClassVar[str] = "snapshot"

    snapshot: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True, kw_only=True)
class TaskSpawnedEvent(IpcEvent):
    TYPE: ClassVar[str] = "task_spawned"

    task_id: str
    run_id: str
    agent: str
    pid: int | None = None


@dataclass(slots=True, frozen=True, kw_only=True)
class TaskCompletedEvent(IpcEvent):
    TYPE: ClassVar[str] = "task_completed"

    task_id: str
    run_id: str
    agent: str
    exit_code: int
    completion_type: str
    duration_seconds: float = 0.0


@dataclass(slots=True, frozen=True, kw_only=True)
class HealthChangeEvent(IpcEvent):
    TYPE: ClassVar[str] = "health_change"

    agent: str
    status: str
    summary: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True, kw_only=True)
class TaskCreateResponseEvent(IpcEvent):
    TYPE: ClassVar[str] = "task_create_response"

    success: bool
    task_id: str | None = None
    error: str | None = None


@dataclass(slots=True, frozen=True, kw_only=True)
class ConfigReloadedEvent(IpcEvent):
    TYPE: ClassVar[str] = "config_reloaded"

    agents: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True, frozen=True, kw_only=True)
class ErrorEvent(IpcEvent):
    TYPE: ClassVar[str] = "error"

    message: str


@dataclass(slots=True, frozen=True, kw_only=True)
class BrowserResponseEvent(IpcEvent):
    """Outcome of one browser command, correlated by ``request_id``."""

    TYPE: ClassVar[str] = "browser_response"

    success: bool
    result: dict[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def ok(
        cls,
        *,
        request_id: str | None,
        instance_id: str | None,
        result: dict[str, Any] | None,
    ) -> BrowserResponseEvent:
        return cls(
            success=True,
            result=result,
            request_id=request_id,
            instance_id=instance_id,
        )

    @classmethod
    def failed(
        cls,
        *,
        request_id: str | None,
        instance_id: str | None,
        error: str,
        error_code: str,
    ) -> BrowserResponseEvent:
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            request_id=request_id,
            instance_id=instance_id,
        )


MESSAGE_TYPES: tuple[type[IpcMessage], ...] = (
    AttachCommand,
    DetachCommand,
    PauseCommand,
    ResumeCommand,
    StopCommand,
    RequestSnapshotCommand,
    SetTaskReviewCommand,
    ReloadConfigCommand,
    TaskStartCommand,
    TaskReopenCommand,
    TaskDoneCommand,
    TaskCreateCommand,
    DependencyAddCommand,
    HealthResetCommand,
    BrowserClickCommand,
    BrowserTypeCommand,
    BrowserHtmlCommand,
    BrowserSnapshotCommand,
    BrowserRunCommand,
    BrowserStatusCommand,
    HelloEvent,
    SnapshotEvent,
    TaskSpawnedEvent,
    TaskCompletedEvent,
    HealthChangeEvent,
    TaskCreateResponseEvent,
    ConfigReloadedEvent,
    ErrorEvent,
    BrowserResponseEvent,
)

MESSAGE_REGISTRY: dict[str, type[IpcMessage]] = {cls.TYPE: cls for cls in MESSAGE_TYPES}


def validate_target(*, selector: str | None, ref: str | None) -> None:
    """Require exactly one element address."""

    if selector and ref:
        raise BrowserTargetError("Cannot provide both selector and ref")
    if not selector and not ref:
        raise BrowserTargetError("Must provide either selector or ref")
