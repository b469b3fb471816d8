"""Routes decoded IPC commands to daemon operations by type tag."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from taskfuel.ipc.messages import (
    AttachCommand,
    BrowserClickCommand,
    BrowserHtmlCommand,
    BrowserResponseEvent,
    BrowserRunCommand,
    BrowserSnapshotCommand,
    BrowserStatusCommand,
    BrowserTypeCommand,
    ConfigReloadedEvent,
    DependencyAddCommand,
    DetachCommand,
    ErrorEvent,
    HealthChangeEvent,
    HealthResetCommand,
    IpcMessage,
    PauseCommand,
    ReloadConfigCommand,
    RequestSnapshotCommand,
    ResumeCommand,
    SetTaskReviewCommand,
    StopCommand,
    TaskCreateCommand,
    TaskCreateResponseEvent,
    TaskDoneCommand,
    TaskReopenCommand,
    TaskStartCommand,
)
from taskfuel.tasks.models import TaskComplexity, TaskCreate

if TYPE_CHECKING:
    from taskfuel.consume.runner import ConsumeRunner

logger = logging.getLogger(__name__)

ERROR_CODE_BROWSER_UNAVAILABLE = "BROWSER_UNAVAILABLE"

Handler = Callable[[str, Any], None]


class IpcCommandDispatcher:
    """Handler table keyed by message ``TYPE``.

    Task and lifecycle handlers act synchronously on the runner. Browser commands
    are queued on the browser bridge; their ``BrowserResponseEvent`` is delivered
    later by the daemon loop with the original ``request_id``.
    """

    def __init__(self, runner: ConsumeRunner) -> None:
        self.runner = runner
        self.handlers: dict[str, Handler] = {
            AttachCommand.TYPE: self._handle_attach,
            DetachCommand.TYPE: self._handle_detach,
            PauseCommand.TYPE: self._handle_pause,
            ResumeCommand.TYPE: self._handle_resume,
            StopCommand.TYPE: self._handle_stop,
            RequestSnapshotCommand.TYPE: self._handle_request_snapshot,
            SetTaskReviewCommand.TYPE: self._handle_set_task_review,
            ReloadConfigCommand.TYPE: self._handle_reload_config,
            TaskStartCommand.TYPE: self._handle_task_start,
            TaskReopenCommand.TYPE: self._handle_task_reopen,
            TaskDoneCommand.TYPE: self._handle_task_done,
            TaskCreateCommand.TYPE: self._handle_task_create,
            DependencyAddCommand.TYPE: self._handle_dependency_add,
            HealthResetCommand.TYPE: self._handle_health_reset,
            BrowserClickCommand.TYPE: self._handle_browser,
            BrowserTypeCommand.TYPE: self._handle_browser,
            BrowserHtmlCommand.TYPE: self._handle_browser,
            BrowserSnapshotCommand.TYPE: self._handle_browser,
            BrowserRunCommand.TYPE: self._handle_browser,
            BrowserStatusCommand.TYPE: self._handle_browser,
            ErrorEvent.TYPE: self._handle_decode_error,
        }

    def dispatch(self, client_id: str, message: IpcMessage) -> None:
        handler = self.handlers.get(message.TYPE)
        if handler is None:
            logger.debug("Ignoring %s message from %s", message.TYPE, client_id)
            return
        try:
            handler(client_id, message)
        except RuntimeError as error:
            logger.warning("IPC %s from %s failed: %s", message.TYPE, client_id, error)
            self._reply_error(client_id, message, str(error))
        except Exception as error:
            logger.exception("IPC %s from %s crashed", message.TYPE, client_id)
            self._reply_error(client_id, message, str(error))

    def _handle_attach(self, client_id: str, command: AttachCommand) -> None:
        self.runner.attach_client(client_id)
        if command.request_id is not None:
            self.runner.send_snapshot(client_id, request_id=command.request_id)

    def _handle_detach(self, client_id: str, _: IpcMessage) -> None:
        self.runner.detach_client(client_id)

    def _handle_pause(self, _: str, command: PauseCommand) -> None:
        self.runner.pause()
        self.runner.broadcast_snapshot(request_id=command.request_id)

    def _handle_resume(self, _: str, command: ResumeCommand) -> None:
        self.runner.resume()
        self.runner.broadcast_snapshot(request_id=command.request_id)

    def _handle_stop(self, _: str, command: StopCommand) -> None:
        self.runner.request_stop(mode=command.mode)

    def _handle_request_snapshot(self, client_id: str, command: RequestSnapshotCommand) -> None:
        self.runner.send_snapshot(client_id, request_id=command.request_id)

    def _handle_set_task_review(self, _: str, command: SetTaskReviewCommand) -> None:
        self.runner.set_review_enabled(command.enabled)

    def _handle_reload_config(self, client_id: str, command: ReloadConfigCommand) -> None:
        limits = self.runner.reload_config()
        self.runner.send_to(
            client_id,
            ConfigReloadedEvent(
                agents=limits,
                request_id=command.request_id,
                instance_id=self.runner.instance_id,
            ),
        )

    def _handle_task_start(self, _: str, command: TaskStartCommand) -> None:
        self.runner.repository.start(command.task_id)
        self.runner.broadcast_snapshot(request_id=command.request_id)

    def _handle_task_reopen(self, _: str, command: TaskReopenCommand) -> None:
        task = self.runner.repository.resolve(command.task_id)
        if not self.runner.process_manager.kill(task.short_id):
            self.runner.repository.reopen(task.short_id)
        self.runner.broadcast_snapshot(request_id=command.request_id)

    def _handle_task_done(self, _: str, command: TaskDoneCommand) -> None:
        task = self.runner.repository.done(
            command.task_id,
            reason=command.reason,
            commit_hash=command.commit_hash,
        )
        self.runner.process_manager.kill(task.short_id)
        self.runner.broadcast_snapshot(request_id=command.request_id)

    def _handle_task_create(self, client_id: str, command: TaskCreateCommand) -> None:
        try:
            task = self.runner.repository.create(
                TaskCreate(
                    title=command.title,
                    description=command.description,
                    complexity=TaskComplexity(command.complexity),
                    priority=command.priority,
                    labels=command.labels,
                    blocked_by=command.blocked_by,
                ),
            )
        except (RuntimeError, ValueError) as error:
            self.runner.send_to(
                client_id,
                TaskCreateResponseEvent(
                    success=False,
                    error=str(error),
                    request_id=command.request_id,
                    instance_id=self.runner.instance_id,
                ),
            )
            return
        self.runner.send_to(
            client_id,
            TaskCreateResponseEvent(
                success=True,
                task_id=task.short_id,
                request_id=command.request_id,
                instance_id=self.runner.instance_id,
            ),
        )
        self.runner.broadcast_snapshot()

    def _handle_dependency_add(self, _: str, command: DependencyAddCommand) -> None:
        self.runner.repository.add_dependency(command.task_id, command.blocker_id)
        self.runner.broadcast_snapshot(request_id=command.request_id)

    def _handle_health_reset(self, client_id: str, command: HealthResetCommand) -> None:
        for agent in self.runner.health.reset(command.agent):
            summary = self.runner.health.summary(agent)
            self.runner.broadcast(
                HealthChangeEvent(
                    agent=agent,
                    status=summary.status.value,
                    summary=summary.to_dict(),
                    instance_id=self.runner.instance_id,
                ),
            )
        self.runner.send_snapshot(client_id, request_id=command.request_id)

    def _handle_browser(self, client_id: str, command: IpcMessage) -> None:
        browser = self.runner.browser
        if browser is None:
            self.runner.send_to(
                client_id,
                BrowserResponseEvent.failed(
                    request_id=command.request_id,
                    instance_id=self.runner.instance_id,
                    error="Browser support is not enabled in this daemon",
                    error_code=ERROR_CODE_BROWSER_UNAVAILABLE,
                ),
            )
            return
        browser.submit(client_id, command)

    def _handle_decode_error(self, client_id: str, event: ErrorEvent) -> None:
        logger.warning("Rejected IPC message from %s: %s", client_id, event.message)
        self.runner.send_to(client_id, event)

    def _reply_error(self, client_id: str, message: IpcMessage, error: str) -> None:
        self.runner.send_to(
            client_id,
            ErrorEvent(
                message=error,
                request_id=message.request_id,
                instance_id=self.runner.instance_id,
            ),
        )
