"""Controllers for ``browser:*`` CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskfuel.config import Settings
from taskfuel.ipc.client import DaemonUnavailableError, daemon_session
from taskfuel.ipc.messages import (
    BrowserClickCommand,
    BrowserCommand,
    BrowserHtmlCommand,
    BrowserResponseEvent,
    BrowserRunCommand,
    BrowserSnapshotCommand,
    BrowserTargetError,
    BrowserTypeCommand,
    ErrorEvent,
)
from taskfuel.ipc.protocol import generate_request_id

REF_PREFIX = "@"


@dataclass(slots=True)
class BrowserTarget:
    """Element address resolved from CLI arguments."""

    selector: str | None
    ref: str | None

    @property
    def label(self) -> str:
        return self.ref or self.selector or ""


@dataclass(slots=True)
class BrowserClickCliCommand:
    """CLI input for ``browser:click``."""

    db_path: Path | None
    page_id: str
    target: str | None
    ref: str | None
    json_output: bool = False


@dataclass(slots=True)
class BrowserTypeCliCommand:
    """CLI input for ``browser:type``."""

    db_path: Path | None
    page_id: str
    target: str | None
    text: str
    ref: str | None
    delay: int = 0
    json_output: bool = False


@dataclass(slots=True)
class BrowserHtmlCliCommand:
    """CLI input for ``browser:html``."""

    db_path: Path | None
    page_id: str
    target: str | None
    ref: str | None
    inner: bool = False
    json_output: bool = False


@dataclass(slots=True)
class BrowserSnapshotCliCommand:
    """CLI input for ``browser:snapshot``."""

    db_path: Path | None
    page_id: str
    scope: str | None = None
    interactive_only: bool = False
    json_output: bool = False


@dataclass(slots=True)
class BrowserRunCliCommand:
    """CLI input for ``browser:run``."""

    db_path: Path | None
    page_id: str
    code: str
    json_output: bool = False


@dataclass(slots=True)
class BrowserCliResult:
    """Rendered output plus failure state for exit-code mapping."""

    lines: list[str]
    ok: bool
    error: str | None = None


def resolve_target(target: str | None, ref: str | None) -> BrowserTarget:
    """Map CLI arguments to exactly one of selector or ref.

    A bare target starting with ``@`` is a ref; anything else is a CSS selector.
    """

    if target and ref:
        raise BrowserTargetError("Cannot provide both selector and --ref option")
    if not target and not ref:
        raise BrowserTargetError("Must provide either a selector or --ref option")
    if ref:
        return BrowserTarget(selector=None, ref=ref)
    if target is not None and target.startswith(REF_PREFIX):
        return BrowserTarget(selector=None, ref=target)
    return BrowserTarget(selector=target, ref=None)


class BrowserCliController:
    """Sends browser commands to the daemon and waits for the correlated response."""

    def click(self, command: BrowserClickCliCommand) -> BrowserCliResult:
        try:
            target = resolve_target(command.target, command.ref)
        except BrowserTargetError as error:
            return _failure(str(error), json_output=command.json_output)
        return self._round_trip(
            command.db_path,
            lambda request_id, instance_id: BrowserClickCommand(
                page_id=command.page_id,
                selector=target.selector,
                ref=target.ref,
                request_id=request_id,
                instance_id=instance_id,
            ),
            json_output=command.json_output,
            render=lambda _: [f"Clicked {target.label} on page {command.page_id}"],
        )

    def type_text(self, command: BrowserTypeCliCommand) -> BrowserCliResult:
        try:
            target = resolve_target(command.target, command.ref)
        except BrowserTargetError as error:
            return _failure(str(error), json_output=command.json_output)
        return self._round_trip(
            command.db_path,
            lambda request_id, instance_id: BrowserTypeCommand(
                page_id=command.page_id,
                selector=target.selector,
                ref=target.ref,
                text=command.text,
                delay=command.delay,
                request_id=request_id,
                instance_id=instance_id,
            ),
            json_output=command.json_output,
            render=lambda _: [f"Typed into {target.label} on page {command.page_id}"],
        )

    def html(self, command: BrowserHtmlCliCommand) -> BrowserCliResult:
        try:
            target = resolve_target(command.target, command.ref)
        except BrowserTargetError as error:
            return _failure(str(error), json_output=command.json_output)
        return self._round_trip(
            command.db_path,
            lambda request_id, instance_id: BrowserHtmlCommand(
                page_id=command.page_id,
                selector=target.selector,
                ref=target.ref,
                inner=command.inner,
                request_id=request_id,
                instance_id=instance_id,
            ),
            json_output=command.json_output,
            render=lambda result: [str(result["html"])]
            if result.get("html") is not None
            else ["No HTML content found"],
        )

    def snapshot(self, command: BrowserSnapshotCliCommand) -> BrowserCliResult:
        return self._round_trip(
            command.db_path,
            lambda request_id, instance_id: BrowserSnapshotCommand(
                page_id=command.page_id,
                scope=command.scope,
                interactive_only=command.interactive_only,
                request_id=request_id,
                instance_id=instance_id,
            ),
            json_output=command.json_output,
            render=_render_snapshot,
        )

    def run(self, command: BrowserRunCliCommand) -> BrowserCliResult:
        return self._round_trip(
            command.db_path,
            lambda request_id, instance_id: BrowserRunCommand(
                page_id=command.page_id,
                code=command.code,
                request_id=request_id,
                instance_id=instance_id,
            ),
            json_output=command.json_output,
            render=_render_run,
        )

    def _round_trip(
        self,
        db_path: Path | None,
        build: Callable[[str, str], BrowserCommand],
        *,
        json_output: bool,
        render: Callable[[dict[str, Any]], list[str]],
    ) -> BrowserCliResult:
        settings = Settings.from_env(db_path=db_path)
        try:
            with daemon_session(
                settings.pid_file_path,
                host=settings.consume.ipc_host,
            ) as client:
                request_id = generate_request_id()
                client.send_command(build(request_id, client.instance_id))
                response = client.wait_for_response(
                    request_id,
                    timeout_seconds=settings.browser.client_timeout_seconds,
                )
        except DaemonUnavailableError as error:
            return _failure(str(error), json_output=json_output)

        if response is None:
            return _failure("Timeout waiting for browser response", json_output=json_output)
        if isinstance(response, ErrorEvent):
            return _failure(response.message, json_output=json_output)
        if not isinstance(response, BrowserResponseEvent):
            return _failure(
                f"Unexpected response from daemon: {response.TYPE}",
                json_output=json_output,
            )
        if not response.success:
            return _failure(
                response.error or "Browser operation failed",
                json_output=json_output,
                error_code=response.error_code,
            )

        result = response.result or {}
        if json_output:
            return BrowserCliResult(
                lines=[json.dumps({"success": True, "data": result}, ensure_ascii=False)],
                ok=True,
            )
        return BrowserCliResult(lines=render(result), ok=True)


def _render_snapshot(result: dict[str, Any]) -> list[str]:
    snapshot = result.get("snapshot")
    if snapshot is None:
        return ["Snapshot captured (no accessibility tree available)"]
    if isinstance(snapshot, dict) and isinstance(snapshot.get("text"), str):
        return snapshot["text"].splitlines()
    return [json.dumps(snapshot, indent=2, ensure_ascii=False)]


def _render_run(result: dict[str, Any]) -> list[str]:
    value = result.get("result", result.get("value"))
    if isinstance(value, str):
        return [value]
    return [json.dumps(value, indent=2, ensure_ascii=False)]


def _failure(
    message: str,
    *,
    json_output: bool,
    error_code: str | None = None,
) -> BrowserCliResult:
    if json_output:
        payload: dict[str, Any] = {"success": False, "error": message}
        if error_code:
            payload["error_code"] = error_code
        return BrowserCliResult(
            lines=[json.dumps(payload, ensure_ascii=False)],
            ok=False,
            error=message,
        )
    return BrowserCliResult(lines=[], ok=False, error=message)
