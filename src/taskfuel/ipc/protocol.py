"""Newline-delimited JSON codec for IPC messages."""

from __future__ import annotations

import json
import uuid
from dataclasses import fields
from typing import Any

from taskfuel.ipc.messages import (
    ENVELOPE_FIELDS,
    MESSAGE_REGISTRY,
    ErrorEvent,
    IpcMessage,
)
from taskfuel.storage.common import from_iso, utc_now

MAX_BUFFER_BYTES = 10 * 1024 * 1024


def encode(message: IpcMessage) -> bytes:
    """One JSON object terminated by a newline."""

    return (json.dumps(message.to_payload(), ensure_ascii=False) + "\n").encode("utf-8")


def decode(line: bytes | str, *, instance_id: str | None = None) -> IpcMessage:
    """Decode one line; malformed input becomes an ``ErrorEvent`` instead of raising."""

    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    try:
        data = json.loads(text.strip())
    except json.JSONDecodeError as error:
        return ErrorEvent(message=f"Malformed JSON: {error.msg}", instance_id=instance_id)

    if not isinstance(data, dict):
        return ErrorEvent(
            message=f"Expected JSON object, got {type(data).__name__}",
            instance_id=instance_id,
        )
    type_tag = data.get("type")
    if not type_tag:
        return ErrorEvent(message="Missing required field: type", instance_id=instance_id)
    message_cls = MESSAGE_REGISTRY.get(str(type_tag))
    if message_cls is None:
        return ErrorEvent(
            message=f"Unknown message type: {type_tag}",
            instance_id=instance_id,
            request_id=_optional_str(data.get("request_id")),
        )

    try:
        return message_cls(**_message_kwargs(message_cls, data))
    except (TypeError, ValueError) as error:
        return ErrorEvent(
            message=f"Invalid {type_tag} message: {error}",
            instance_id=instance_id,
            request_id=_optional_str(data.get("request_id")),
        )


def generate_request_id() -> str:
    return str(uuid.uuid4())


def generate_instance_id() -> str:
    return str(uuid.uuid4())


class LineBuffer:
    """Accumulates stream bytes and yields complete lines.

    Raises ``BufferError`` once buffered bytes without a newline exceed the cap.
    """

    def __init__(self, *, max_bytes: int = MAX_BUFFER_BYTES) -> None:
        self.max_bytes = max_bytes
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[bytes]:
        self._buffer.extend(chunk)
        lines: list[bytes] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            if line.strip():
                lines.append(line)
        if len(self._buffer) > self.max_bytes:
            self._buffer.clear()
            raise BufferError(f"IPC buffer exceeded {self.max_bytes} bytes without a newline")
        return lines

    def __len__(self) -> int:
        return len(self._buffer)


def _message_kwargs(message_cls: type[IpcMessage], data: dict[str, Any]) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "request_id": _optional_str(data.get("request_id")),
        "instance_id": _optional_str(data.get("instance_id")),
    }
    raw_timestamp = data.get("timestamp")
    kwargs["timestamp"] = from_iso(str(raw_timestamp)) if raw_timestamp else utc_now()

    for item in fields(message_cls):
        if item.name in ENVELOPE_FIELDS or item.name not in data:
            continue
        value = data[item.name]
        if isinstance(value, list) and "tuple" in str(item.type):
            value = tuple(value)
        kwargs[item.name] = value
    return kwargs


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)
