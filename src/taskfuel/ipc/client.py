"""Client side of the consume daemon control plane."""

from __future__ import annotations

import json
import logging
import select
import socket
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from taskfuel.consume.process_manager import is_process_alive
from taskfuel.ipc.messages import (
    AttachCommand,
    DetachCommand,
    HealthChangeEvent,
    HelloEvent,
    IpcCommand,
    IpcMessage,
    SnapshotEvent,
    TaskCompletedEvent,
    TaskSpawnedEvent,
)
from taskfuel.ipc.protocol import (
    LineBuffer,
    decode,
    encode,
    generate_instance_id,
    generate_request_id,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.05
DAEMON_NOT_RUNNING_MESSAGE = "Consume daemon not running. Start it with: taskfuel consume"


class DaemonUnavailableError(RuntimeError):
    """Consume daemon is not running or cannot be reached."""


def read_pid_file(pid_file: Path) -> dict[str, Any] | None:
    """Parsed PID file content, or None when missing or unreadable."""

    try:
        data = json.loads(pid_file.read_text("utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict) or "pid" not in data:
        return None
    return data


class ConsumeIpcClient:
    """Connects to a running daemon, sends commands and polls for events.

    Events that are not the answer to an outstanding request are folded into a
    local mirror of the daemon state by ``apply_event``.
    """

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        instance_id: str | None = None,
        connect_timeout_seconds: float = 5.0,
    ) -> None:
        self.host = host
        self.instance_id = instance_id or generate_instance_id()
        self.connect_timeout_seconds = connect_timeout_seconds
        self.board_state: dict[str, list[dict[str, Any]]] = {}
        self.active_processes: dict[str, dict[str, Any]] = {}
        self.health_summary: dict[str, dict[str, Any]] = {}
        self.paused = False
        self.runner_instance_id: str | None = None
        self.daemon_version: str | None = None
        self._sock: socket.socket | None = None
        self._buffer = LineBuffer()
        self._attached = False

    @staticmethod
    def is_runner_alive(pid_file: Path) -> bool:
        data = read_pid_file(pid_file)
        if data is None:
            return False
        try:
            pid = int(data["pid"])
        except (TypeError, ValueError):
            return False
        return is_process_alive(pid)

    @property
    def is_connected(self) -> bool:
        return self._sock is not None

    @property
    def is_attached(self) -> bool:
        return self._attached and self._sock is not None

    def connect(self, port: int) -> None:
        try:
            sock = socket.create_connection(
                (self.host, port),
                timeout=self.connect_timeout_seconds,
            )
        except OSError as error:
            raise DaemonUnavailableError(
                f"Failed to connect to consume daemon on {self.host}:{port}: {error}",
            ) from error
        self._sock = sock
        self._buffer = LineBuffer()

    def disconnect(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            finally:
                self._sock = None
        self._attached = False

    def attach(self, *, timeout_seconds: float = 5.0) -> None:
        """Announce this client and wait for the daemon's hello and attach snapshot.

        The snapshot answering the attach command is correlated by request id, so
        once this returns the daemon already counts the client as attached.
        """

        request_id = generate_request_id()
        self.send_command(AttachCommand(request_id=request_id, instance_id=self.instance_id))
        received_hello = False
        received_snapshot = False
        deadline = time.monotonic() + timeout_seconds
        while time.monotonic() < deadline and not (received_hello and received_snapshot):
            if self._sock is None:
                break
            for event in self.poll_events():
                if isinstance(event, HelloEvent):
                    received_hello = True
                elif isinstance(event, SnapshotEvent) and event.request_id == request_id:
                    received_snapshot = True
                self.apply_event(event)
            if not (received_hello and received_snapshot):
                time.sleep(DEFAULT_POLL_INTERVAL_SECONDS)
        if not received_hello:
            raise DaemonUnavailableError("Did not receive hello from consume daemon")
        if not received_snapshot:
            raise DaemonUnavailableError("Did not receive snapshot from consume daemon")
        self._attached = True

    def detach(self) -> None:
        if self._sock is None:
            return
        self.send_command(DetachCommand(instance_id=self.instance_id))
        self._attached = False

    def send_command(self, command: IpcCommand) -> None:
        """Write one command; does not wait for any reply."""

        sock = self._require_socket()
        try:
            sock.sendall(encode(command))
        except OSError as error:
            self.disconnect()
            raise DaemonUnavailableError(f"Lost connection to consume daemon: {error}") from error

    def poll_events(self) -> list[IpcMessage]:
        """Every event readable right now, in arrival order; never blocks."""

        sock = self._require_socket()
        events: list[IpcMessage] = []
        while True:
            readable, _, _ = select.select([sock], [], [], 0)
            if not readable:
                break
            try:
                chunk = sock.recv(65_536)
            except OSError as error:
                self.disconnect()
                raise DaemonUnavailableError(
                    f"Lost connection to consume daemon: {error}",
                ) from error
            if not chunk:
                self.disconnect()
                break
            events.extend(
                decode(line, instance_id=self.instance_id) for line in self._buffer.feed(chunk)
            )
        return events

    def wait_for_response(
        self,
        request_id: str,
        *,
        timeout_seconds: float,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> IpcMessage | None:
        """First event correlated with ``request_id``, or None after the timeout.

        Uncorrelated events are applied to local state and otherwise ignored.
        """

        deadline = time.monotonic() + timeout_seconds
        while True:
            if self._sock is None:
                return None
            for event in self.poll_events():
                if event.request_id == request_id:
                    return event
                self.apply_event(event)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(poll_interval_seconds, remaining))

    def apply_event(self, event: IpcMessage) -> None:
        if isinstance(event, HelloEvent):
            self.daemon_version = event.version
            self.runner_instance_id = event.instance_id
        elif isinstance(event, SnapshotEvent):
            self._apply_snapshot(event.snapshot)
        elif isinstance(event, TaskSpawnedEvent):
            self.active_processes[event.task_id] = {
                "task_id": event.task_id,
                "run_id": event.run_id,
                "agent": event.agent,
                "pid": event.pid,
            }
        elif isinstance(event, TaskCompletedEvent):
            self.active_processes.pop(event.task_id, None)
        elif isinstance(event, HealthChangeEvent):
            self.health_summary[event.agent] = dict(event.summary)

    def _apply_snapshot(self, snapshot: dict[str, Any]) -> None:
        self.board_state = {
            status: list(tasks) for status, tasks in snapshot.get("board_state", {}).items()
        }
        self.active_processes = {
            item["task_id"]: dict(item) for item in snapshot.get("active_processes", [])
        }
        self.health_summary = dict(snapshot.get("health_summary", {}))
        runner_state = snapshot.get("runner_state", {})
        self.paused = bool(runner_state.get("paused", False))
        self.runner_instance_id = runner_state.get("instance_id", self.runner_instance_id)

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise DaemonUnavailableError("Not connected to consume daemon")
        return self._sock


@contextmanager
def daemon_session(
    pid_file: Path,
    *,
    host: str = "127.0.0.1",
    attach_timeout_seconds: float = 5.0,
) -> Iterator[ConsumeIpcClient]:
    """Attached client for one CLI round trip; fails fast when no daemon runs."""

    if not ConsumeIpcClient.is_runner_alive(pid_file):
        raise DaemonUnavailableError(DAEMON_NOT_RUNNING_MESSAGE)
    data = read_pid_file(pid_file) or {}
    port = int(data.get("port") or 0)
    if port == 0:
        raise DaemonUnavailableError("Invalid port in PID file")

    client = ConsumeIpcClient(host=host)
    client.connect(port)
    try:
        client.attach(timeout_seconds=attach_timeout_seconds)
        yield client
    finally:
        if client.is_connected:
            try:
                client.detach()
            except DaemonUnavailableError:
                pass
        client.disconnect()
