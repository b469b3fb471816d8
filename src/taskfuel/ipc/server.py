"""Non-blocking TCP server for the consume daemon control plane."""

from __future__ import annotations

import logging
import selectors
import socket
from dataclasses import dataclass, field

from taskfuel.ipc.messages import IpcMessage
from taskfuel.ipc.protocol import MAX_BUFFER_BYTES, LineBuffer, decode, encode

logger = logging.getLogger(__name__)

_RECV_CHUNK = 65_536


@dataclass(slots=True)
class _Client:
    client_id: str
    sock: socket.socket
    inbound: LineBuffer
    outbound: bytearray = field(default_factory=bytearray)
    attached: bool = False


class IpcServer:
    """Accepts clients, reads framed commands and writes events without blocking.

    The daemon loop calls ``accept()`` and ``poll()`` once per tick. A client that
    overflows either buffer or resets its connection is dropped.
    """

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        port: int = 0,
        instance_id: str | None = None,
        max_buffer_bytes: int = MAX_BUFFER_BYTES,
    ) -> None:
        self.host = host
        self.requested_port = port
        self.instance_id = instance_id
        self.max_buffer_bytes = max_buffer_bytes
        self._selector = selectors.DefaultSelector()
        self._listener: socket.socket | None = None
        self._clients: dict[str, _Client] = {}
        self._next_client = 0

    @property
    def port(self) -> int:
        if self._listener is None:
            raise RuntimeError("IPC server is not started.")
        return int(self._listener.getsockname()[1])

    def start(self) -> int:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind((self.host, self.requested_port))
        listener.listen()
        listener.setblocking(False)
        self._listener = listener
        self._selector.register(listener, selectors.EVENT_READ, data=None)
        logger.info("IPC server listening on %s:%d", self.host, self.port)
        return self.port

    def close(self) -> None:
        for client_id in list(self._clients):
            self.disconnect(client_id)
        if self._listener is not None:
            self._selector.unregister(self._listener)
            self._listener.close()
            self._listener = None
        self._selector.close()

    def accept(self) -> list[str]:
        """Accept every pending connection; returns the new client ids."""

        if self._listener is None:
            return []
        accepted: list[str] = []
        while True:
            try:
                sock, address = self._listener.accept()
            except (BlockingIOError, InterruptedError):
                break
            sock.setblocking(False)
            self._next_client += 1
            client_id = f"client-{self._next_client}"
            client = _Client(
                client_id=client_id,
                sock=sock,
                inbound=LineBuffer(max_bytes=self.max_buffer_bytes),
            )
            self._clients[client_id] = client
            self._selector.register(sock, selectors.EVENT_READ, data=client_id)
            accepted.append(client_id)
            logger.debug("Accepted IPC client %s from %s", client_id, address)
        return accepted

    def poll(self) -> list[tuple[str, IpcMessage]]:
        """Flush pending writes and read every complete message available now."""

        self._flush_all()
        received: list[tuple[str, IpcMessage]] = []
        for key, _ in self._selector.select(timeout=0):
            client_id = key.data
            if client_id is None:
                continue
            received.extend(self._read_client(client_id))
        return received

    def send_to(self, client_id: str, message: IpcMessage) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            return False
        client.outbound.extend(encode(message))
        if len(client.outbound) > self.max_buffer_bytes:
            logger.warning("Dropping slow IPC client %s: outbound buffer full", client_id)
            self.disconnect(client_id)
            return False
        self._flush(client)
        return client_id in self._clients

    def broadcast(self, message: IpcMessage) -> None:
        """Send to every attached client."""

        for client_id, client in list(self._clients.items()):
            if client.attached:
                self.send_to(client_id, message)

    def mark_attached(self, client_id: str, *, attached: bool = True) -> None:
        client = self._clients.get(client_id)
        if client is not None:
            client.attached = attached

    def is_attached(self, client_id: str) -> bool:
        client = self._clients.get(client_id)
        return client is not None and client.attached

    def disconnect(self, client_id: str) -> None:
        client = self._clients.pop(client_id, None)
        if client is None:
            return
        try:
            self._selector.unregister(client.sock)
        except (KeyError, ValueError):
            pass
        client.sock.close()
        logger.debug("IPC client %s disconnected", client_id)

    def _read_client(self, client_id: str) -> list[tuple[str, IpcMessage]]:
        client = self._clients.get(client_id)
        if client is None:
            return []
        received: list[tuple[str, IpcMessage]] = []
        while True:
            try:
                chunk = client.sock.recv(_RECV_CHUNK)
            except (BlockingIOError, InterruptedError):
                break
            except OSError as error:
                logger.debug("IPC client %s read failed: %s", client_id, error)
                self.disconnect(client_id)
                break
            if not chunk:
                self.disconnect(client_id)
                break
            try:
                lines = client.inbound.feed(chunk)
            except BufferError as error:
                logger.warning("Dropping IPC client %s: %s", client_id, error)
                self.disconnect(client_id)
                break
            received.extend(
                (client_id, decode(line, instance_id=self.instance_id)) for line in lines
            )
        return received

    def _flush_all(self) -> None:
        for client in list(self._clients.values()):
            self._flush(client)

    def _flush(self, client: _Client) -> None:
        while client.outbound:
            try:
                sent = client.sock.send(client.outbound)
            except (BlockingIOError, InterruptedError):
                return
            except OSError as error:
                logger.debug("IPC client %s write failed: %s", client.client_id, error)
                self.disconnect(client.client_id)
                return
            del client.outbound[:sent]
