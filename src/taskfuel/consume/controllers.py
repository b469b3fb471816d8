"""Controllers for consume daemon CLI commands."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path

from taskfuel.browser.bridge import BrowserCommandHandler
from taskfuel.browser.sidecar import BrowserSidecar
from taskfuel.config import Settings
from taskfuel.consume.backoff import format_backoff
from taskfuel.consume.health import RESET_ALL
from taskfuel.consume.runner import ConsumeRunner, daemon_log_handler
from taskfuel.ipc.client import (
    ConsumeIpcClient,
    DaemonUnavailableError,
    daemon_session,
    read_pid_file,
)
from taskfuel.ipc.messages import (
    STOP_GRACEFUL,
    ErrorEvent,
    HealthResetCommand,
    ResumeCommand,
    SnapshotEvent,
    StopCommand,
)
from taskfuel.ipc.protocol import generate_request_id
from taskfuel.ipc.server import IpcServer
from taskfuel.tasks.repository import TaskRepository

COMMAND_TIMEOUT_SECONDS = 10.0
STOP_WAIT_EXTRA_SECONDS = 5.0


@dataclass(slots=True)
class ConsumeCommand:
    """CLI input for running the consume daemon."""

    db_path: Path | None
    once: bool
    restart: bool
    resume: bool


@dataclass(slots=True)
class HealthCommand:
    """CLI input for agent health inspection."""

    db_path: Path | None
    json_output: bool = False


@dataclass(slots=True)
class HealthResetCliCommand:
    """CLI input for clearing agent failures."""

    db_path: Path | None
    agent: str = RESET_ALL
    json_output: bool = False


class ConsumeCliController:
    """Starts the daemon or talks to the running one."""

    def consume(self, command: ConsumeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        lines: list[str] = []
        if ConsumeIpcClient.is_runner_alive(settings.pid_file_path):
            pid = (read_pid_file(settings.pid_file_path) or {}).get("pid")
            if command.restart:
                self._stop_running_daemon(settings)
                lines.append(f"Stopped consume daemon (pid {pid})")
            elif command.resume:
                with daemon_session(settings.pid_file_path, host=settings.consume.ipc_host) as client:
                    request_id = generate_request_id()
                    client.send_command(
                        ResumeCommand(request_id=request_id, instance_id=client.instance_id),
                    )
                    client.wait_for_response(request_id, timeout_seconds=COMMAND_TIMEOUT_SECONDS)
                return [f"Resumed consume daemon (pid {pid})"]
            else:
                raise RuntimeError(
                    f"Consume daemon already running (pid {pid}). "
                    "Use --restart to replace it or --resume to unpause it.",
                )

        repository = TaskRepository(settings.db_path)
        repository.init_schema()
        try:
            runner = ConsumeRunner(
                settings=settings,
                repository=repository,
                server=IpcServer(
                    host=settings.consume.ipc_host,
                    port=settings.consume.ipc_port,
                ),
                browser=BrowserCommandHandler(
                    sidecar=BrowserSidecar(
                        command=settings.browser.command,
                        response_timeout_seconds=settings.browser.response_timeout_seconds,
                    ),
                ),
                cwd=Path.cwd(),
            )
            with daemon_log_handler(settings.log_path):
                summary = runner.run(once=command.once)
        finally:
            repository.close()

        lines.extend(
            [
                f"Consume daemon stopped: {summary.stop_reason or 'unknown'}",
                f"  ticks={summary.ticks} spawned={summary.spawned} "
                f"completed={summary.completed}",
            ],
        )
        return lines

    def health(self, command: HealthCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with daemon_session(settings.pid_file_path, host=settings.consume.ipc_host) as client:
            summaries = dict(client.health_summary)
        return _render_health(summaries, json_output=command.json_output)

    def health_reset(self, command: HealthResetCliCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with daemon_session(settings.pid_file_path, host=settings.consume.ipc_host) as client:
            request_id = generate_request_id()
            client.send_command(
                HealthResetCommand(
                    agent=command.agent,
                    request_id=request_id,
                    instance_id=client.instance_id,
                ),
            )
            response = client.wait_for_response(
                request_id,
                timeout_seconds=COMMAND_TIMEOUT_SECONDS,
            )
        if response is None:
            raise RuntimeError("Timeout waiting for health reset confirmation")
        if isinstance(response, ErrorEvent):
            raise RuntimeError(response.message)
        summaries = (
            response.snapshot.get("health_summary", {})
            if isinstance(response, SnapshotEvent)
            else {}
        )
        target = "all agents" if command.agent == RESET_ALL else command.agent
        if command.json_output:
            return [json.dumps({"success": True, "reset": target, "health": summaries})]
        return [f"Health reset for {target}", *_render_health(summaries, json_output=False)]

    def _stop_running_daemon(self, settings: Settings) -> None:
        with daemon_session(settings.pid_file_path, host=settings.consume.ipc_host) as client:
            client.send_command(
                StopCommand(
                    mode=STOP_GRACEFUL,
                    request_id=generate_request_id(),
                    instance_id=client.instance_id,
                ),
            )
        deadline = time.monotonic() + (
            settings.consume.shutdown_grace_seconds + STOP_WAIT_EXTRA_SECONDS
        )
        while ConsumeIpcClient.is_runner_alive(settings.pid_file_path):
            if time.monotonic() >= deadline:
                raise DaemonUnavailableError("Timed out waiting for consume daemon to stop")
            time.sleep(0.2)


def _render_health(summaries: dict[str, dict], *, json_output: bool) -> list[str]:
    if json_output:
        return [json.dumps(summaries, ensure_ascii=False)]
    if not summaries:
        return ["No agent health recorded yet."]
    lines = ["Agent health:"]
    for agent, summary in sorted(summaries.items()):
        detail = f"failures={summary.get('consecutive_failures', 0)}"
        if summary.get("is_dead"):
            detail += " dead"
        elif summary.get("in_backoff"):
            detail += f" backoff={format_backoff(summary.get('backoff_seconds', 0))}"
        lines.append(f"  {agent}: {summary.get('status', 'healthy')} {detail}")
    return lines
