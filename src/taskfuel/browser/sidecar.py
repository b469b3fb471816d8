"""Browser sidecar subprocess speaking JSON lines over stdin/stdout.

Request: ``{"id": 1, "method": "click", "params": {...}}``.
Response: ``{"id": 1, "ok": true, "result": {...}}`` or
``{"id": 1, "ok": false, "error": {"message": "...", "code": "..."}}``.
"""

from __future__ import annotations

import json
import logging
import os
import selectors
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Any

from taskfuel.consume.process_manager import terminate_process
from taskfuel.ipc.protocol import LineBuffer

logger = logging.getLogger(__name__)

ERROR_CODE_START_FAILED = "BROWSER_START_FAILED"
ERROR_CODE_OPERATION_FAILED = "BROWSER_OPERATION_FAILED"

STOP_GRACE_SECONDS = 2.0


class BrowserSidecarError(RuntimeError):
    """Sidecar could not start or reported a failed operation."""

    def __init__(self, message: str, *, code: str = ERROR_CODE_OPERATION_FAILED) -> None:
        super().__init__(message)
        self.code = code


class BrowserSidecar:
    """Owns the sidecar process; one request in flight at a time."""

    def __init__(
        self,
        *,
        command: str,
        response_timeout_seconds: float = 30.0,
        cwd: Path | None = None,
    ) -> None:
        self.command = command
        self.response_timeout_seconds = response_timeout_seconds
        self.cwd = cwd
        self._process: subprocess.Popen[bytes] | None = None
        self._buffer = LineBuffer()
        self._lock = threading.Lock()
        self._next_id = 0

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def start(self) -> None:
        if self.is_running():
            return
        argv = shlex.split(self.command)
        if not argv:
            raise BrowserSidecarError(
                "Failed to start browser daemon: empty command",
                code=ERROR_CODE_START_FAILED,
            )
        try:
            self._process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=self.cwd,
                bufsize=0,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except OSError as error:
            raise BrowserSidecarError(
                f"Failed to start browser daemon: {error}",
                code=ERROR_CODE_START_FAILED,
            ) from error
        self._buffer = LineBuffer()

        try:
            result = self.request("ping", {})
        except BrowserSidecarError as error:
            self.stop()
            raise BrowserSidecarError(
                f"Failed to start browser daemon: {error}",
                code=ERROR_CODE_START_FAILED,
            ) from error
        if result.get("status") != "ok":
            self.stop()
            raise BrowserSidecarError(
                "Failed to start browser daemon: ping failed",
                code=ERROR_CODE_START_FAILED,
            )
        logger.info("Browser sidecar started (pid=%s)", self.pid)

    def stop(self) -> None:
        process = self._process
        self._process = None
        if process is None:
            return
        for stream in (process.stdin, process.stdout):
            if stream is not None:
                stream.close()
        if process.poll() is None:
            terminate_process(process, grace_seconds=STOP_GRACE_SECONDS)
        logger.info("Browser sidecar stopped")

    def restart(self) -> None:
        self.stop()
        self.start()

    def is_healthy(self) -> bool:
        if not self.is_running():
            return False
        try:
            return self.request("ping", {}).get("status") == "ok"
        except BrowserSidecarError:
            return False

    def ensure_running(self) -> None:
        """Start the sidecar, restarting it if the process died or stopped answering."""

        if self.is_running() and self.is_healthy():
            return
        if self._process is not None:
            logger.warning("Browser sidecar unhealthy; restarting")
        self.restart()

    def request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """Send one request and block until its response or the timeout."""

        with self._lock:
            process = self._process
            if process is None or process.stdin is None or process.stdout is None:
                raise BrowserSidecarError("Browser daemon is not running")
            self._next_id += 1
            request_id = self._next_id
            line = json.dumps({"id": request_id, "method": method, "params": params}) + "\n"
            try:
                process.stdin.write(line.encode("utf-8"))
                process.stdin.flush()
            except OSError as error:
                raise BrowserSidecarError(
                    f"Failed to write to browser daemon: {error}",
                ) from error
            response = self._read_response(process.stdout, request_id)

        if not response.get("ok"):
            error = response.get("error") or {}
            raise BrowserSidecarError(
                f"{error.get('message', 'Unknown error')} (code: {error.get('code', 'ERR')})",
            )
        result = response.get("result")
        return result if isinstance(result, dict) else {"value": result}

    def _read_response(self, stdout: IO[bytes], request_id: int) -> dict[str, Any]:
        deadline = time.monotonic() + self.response_timeout_seconds
        with selectors.DefaultSelector() as selector:
            selector.register(stdout, selectors.EVENT_READ)
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise BrowserSidecarError("Timeout waiting for browser daemon response")
                if not selector.select(timeout=remaining):
                    continue
                chunk = os.read(stdout.fileno(), 65_536)
                if not chunk:
                    raise BrowserSidecarError("Browser daemon exited unexpectedly")
                for raw in self._buffer.feed(chunk):
                    try:
                        data = json.loads(raw)
                    except json.JSONDecodeError as error:
                        raise BrowserSidecarError(
                            f"Invalid JSON response from browser daemon: {raw[:200]!r}",
                        ) from error
                    if isinstance(data, dict) and data.get("id") == request_id:
                        return data
