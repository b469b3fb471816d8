"""Executes browser IPC commands off the daemon loop and queues their responses."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass

from taskfuel.browser.sidecar import (
    ERROR_CODE_OPERATION_FAILED,
    BrowserSidecar,
    BrowserSidecarError,
)
from taskfuel.ipc.messages import (
    BrowserCommand,
    BrowserResponseEvent,
    BrowserStatusCommand,
    IpcCommand,
)

logger = logging.getLogger(__name__)

_STOP_JOIN_SECONDS = 15.0


@dataclass(slots=True)
class BrowserJob:
    """One browser command waiting for the worker thread."""

    client_id: str
    command: IpcCommand


class BrowserCommandHandler:
    """Runs sidecar requests on a worker thread.

    ``submit()`` returns immediately. Finished responses carry the original
    ``request_id`` and are collected by the daemon loop through ``drain()``.
    """

    def __init__(self, *, sidecar: BrowserSidecar, instance_id: str | None = None) -> None:
        self.sidecar = sidecar
        self.instance_id = instance_id
        self._jobs: queue.Queue[BrowserJob | None] = queue.Queue()
        self._responses: queue.Queue[tuple[str, BrowserResponseEvent]] = queue.Queue()
        self._worker_stop = threading.Event()
        self._worker_thread: threading.Thread | None = None

    def start(self) -> None:
        if self._worker_thread is not None:
            return
        self._worker_stop.clear()
        self._worker_thread = threading.Thread(
            target=self._worker_loop,
            daemon=True,
            name="taskfuel-browser",
        )
        self._worker_thread.start()
        logger.info("Browser worker thread started")

    def stop(self) -> None:
        if self._worker_thread is not None:
            self._worker_stop.set()
            self._jobs.put(None)
            self._worker_thread.join(timeout=_STOP_JOIN_SECONDS)
            self._worker_thread = None
            logger.info("Browser worker thread stopped")
        self.sidecar.stop()

    def submit(self, client_id: str, command: IpcCommand) -> None:
        self._jobs.put(BrowserJob(client_id=client_id, command=command))

    def drain(self) -> list[tuple[str, BrowserResponseEvent]]:
        """Responses finished since the last call, as ``(client_id, event)`` pairs."""

        drained: list[tuple[str, BrowserResponseEvent]] = []
        while True:
            try:
                drained.append(self._responses.get_nowait())
            except queue.Empty:
                return drained

    def execute(self, command: IpcCommand) -> BrowserResponseEvent:
        """Run one command against the sidecar and build its response event."""

        try:
            if isinstance(command, BrowserStatusCommand):
                result = self._status()
            elif isinstance(command, BrowserCommand):
                self.sidecar.ensure_running()
                result = self.sidecar.request(command.method, command.params())
            else:
                raise BrowserSidecarError(f"Not a browser command: {command.TYPE}")
        except BrowserSidecarError as error:
            logger.warning("Browser %s failed: %s", command.TYPE, error)
            return BrowserResponseEvent.failed(
                request_id=command.request_id,
                instance_id=self.instance_id,
                error=str(error),
                error_code=error.code,
            )
        except Exception as error:
            logger.exception("Browser %s crashed", command.TYPE)
            return BrowserResponseEvent.failed(
                request_id=command.request_id,
                instance_id=self.instance_id,
                error=str(error),
                error_code=ERROR_CODE_OPERATION_FAILED,
            )
        return BrowserResponseEvent.ok(
            request_id=command.request_id,
            instance_id=self.instance_id,
            result=result,
        )

    def _status(self) -> dict[str, object]:
        running = self.sidecar.is_running()
        status: dict[str, object] = {"running": running, "pid": self.sidecar.pid}
        if running:
            status.update(self.sidecar.request("status", {}))
        return status

    def _worker_loop(self) -> None:
        while not self._worker_stop.is_set():
            job = self._jobs.get()
            if job is None:
                continue
            response = self.execute(job.command)
            self._responses.put((job.client_id, response))
