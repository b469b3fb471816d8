"""Spawn, poll and kill coding-agent subprocesses."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from taskfuel.config import AgentDefinition
from taskfuel.consume.completion import CompletionResult, build_completion_result

logger = logging.getLogger(__name__)

KILL_WAIT_SECONDS = 2.0


class SpawnError(RuntimeError):
    """Agent process could not be started."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class SpawnReason(str, Enum):
    """Why a spawn attempt did not produce a process."""

    AT_CAPACITY = "at_capacity"
    AGENT_IN_BACKOFF = "agent_in_backoff"
    AGENT_DEAD = "agent_dead"
    CONFIG_ERROR = "config_error"
    SPAWN_FAILED = "spawn_failed"


@dataclass(slots=True)
class SpawnRequest:
    """Everything needed to launch one agent run for a task."""

    task_id: str
    run_id: str
    agent: AgentDefinition
    prompt: str
    cwd: Path | None = None


@dataclass(slots=True)
class AgentProcess:
    """A running agent subprocess owned by the manager."""

    task_id: str
    run_id: str
    agent: str
    process: subprocess.Popen[bytes]
    stdout_path: Path
    stderr_path: Path
    started_monotonic: float
    killed: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid


@dataclass(slots=True)
class SpawnResult:
    """Outcome of one spawn attempt."""

    success: bool
    process: AgentProcess | None = None
    reason: SpawnReason | None = None
    message: str | None = None
    retry_after_seconds: int | None = None

    @classmethod
    def spawned(cls, process: AgentProcess) -> SpawnResult:
        return cls(success=True, process=process)

    @classmethod
    def refused(
        cls,
        reason: SpawnReason,
        message: str,
        *,
        retry_after_seconds: int | None = None,
    ) -> SpawnResult:
        return cls(
            success=False,
            reason=reason,
            message=message,
            retry_after_seconds=retry_after_seconds,
        )


class ProcessManager:
    """Owns agent subprocesses and turns their exits into completion results.

    Output goes to ``<processes_dir>/<task_id>/stdout.log`` and ``stderr.log``.
    ``poll()`` never blocks; it reports each exited process exactly once.
    """

    def __init__(self, *, processes_dir: Path, kill_grace_seconds: float = 5.0) -> None:
        self.processes_dir = processes_dir
        self.kill_grace_seconds = kill_grace_seconds
        self._lock = threading.Lock()
        self._by_task: dict[str, AgentProcess] = {}

    def spawn(self, request: SpawnRequest) -> AgentProcess:
        task_dir = self.processes_dir / request.task_id
        prompt_file = task_dir / "prompt.txt"
        try:
            task_dir.mkdir(parents=True, exist_ok=True)
            prompt_file.write_text(request.prompt, "utf-8")
        except OSError as error:
            raise SpawnError(
                f"Cannot prepare process directory {task_dir}: {error}",
                transient=True,
            ) from error
        stdout_path = task_dir / "stdout.log"
        stderr_path = task_dir / "stderr.log"

        argv = build_run_args(
            command_template=request.agent.command_template,
            model=request.agent.model or "",
            prompt=request.prompt,
            prompt_file=prompt_file,
        )
        env = os.environ.copy()
        env["TASKFUEL_TASK_ID"] = request.task_id
        env["TASKFUEL_RUN_ID"] = request.run_id
        env["TASKFUEL_AGENT"] = request.agent.name

        try:
            with (
                stdout_path.open("wb") as stdout_handle,
                stderr_path.open("wb") as stderr_handle,
            ):
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    cwd=request.cwd,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                )
        except FileNotFoundError as error:
            raise SpawnError(f"Agent command not found: {argv[0]}", transient=False) from error
        except OSError as error:
            raise SpawnError(f"Agent failed to start: {error}", transient=True) from error

        agent_process = AgentProcess(
            task_id=request.task_id,
            run_id=request.run_id,
            agent=request.agent.name,
            process=process,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            started_monotonic=time.monotonic(),
        )
        with self._lock:
            self._by_task[request.task_id] = agent_process
        logger.info(
            "Spawned %s for task %s (pid=%d, run=%s)",
            request.agent.name,
            request.task_id,
            process.pid,
            request.run_id,
        )
        return agent_process

    def poll(self) -> list[CompletionResult]:
        """Collect runs whose process has exited since the last call."""

        with self._lock:
            finished = [
                item for item in self._by_task.values() if item.process.poll() is not None
            ]
            for item in finished:
                del self._by_task[item.task_id]

        results: list[CompletionResult] = []
        for item in finished:
            duration = time.monotonic() - item.started_monotonic
            output = _read_output(item.stdout_path, item.stderr_path)
            exit_code = item.process.returncode
            results.append(
                build_completion_result(
                    task_id=item.task_id,
                    run_id=item.run_id,
                    agent_name=item.agent,
                    exit_code=exit_code,
                    duration_seconds=duration,
                    output=output,
                    killed=item.killed,
                ),
            )
            logger.info(
                "Agent %s finished task %s with exit code %d after %.1fs",
                item.agent,
                item.task_id,
                exit_code,
                duration,
            )
        return results

    def kill(self, task_id: str, *, grace_seconds: float | None = None) -> bool:
        """Terminate a task's agent: SIGTERM, bounded grace, then SIGKILL.

        The process stays registered so the next ``poll()`` reports it as killed.
        """

        with self._lock:
            item = self._by_task.get(task_id)
            if item is None:
                return False
            item.killed = True
        grace = self.kill_grace_seconds if grace_seconds is None else grace_seconds
        terminate_process(item.process, grace_seconds=grace)
        logger.info("Killed agent %s for task %s", item.agent, task_id)
        return True

    def shutdown(self, *, grace_seconds: float) -> None:
        """Terminate every running agent within one shared grace window."""

        with self._lock:
            items = list(self._by_task.values())
            for item in items:
                item.killed = True
        for item in items:
            try:
                item.process.terminate()
            except OSError:
                continue
        deadline = time.monotonic() + max(0.0, grace_seconds)
        for item in items:
            remaining = max(0.0, deadline - time.monotonic())
            try:
                item.process.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                terminate_process(item.process, grace_seconds=0)

    def is_running(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._by_task

    def running(self) -> list[AgentProcess]:
        with self._lock:
            return list(self._by_task.values())

    def running_count(self, agent: str | None = None) -> int:
        with self._lock:
            if agent is None:
                return len(self._by_task)
            return sum(1 for item in self._by_task.values() if item.agent == agent)


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    """Render an agent command template into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise SpawnError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise SpawnError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise SpawnError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise SpawnError("Agent command template rendered empty command.", transient=False)
    return argv


def terminate_process(process: subprocess.Popen[bytes], *, grace_seconds: float) -> None:
    """Graceful terminate, wait for the grace period, then force kill."""

    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=max(0.0, grace_seconds))
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=KILL_WAIT_SECONDS)


def is_process_alive(pid: int) -> bool:
    """Check process existence with signal 0."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _read_output(stdout_path: Path, stderr_path: Path) -> str:
    stdout = stdout_path.read_text("utf-8", errors="replace") if stdout_path.exists() else ""
    stderr = stderr_path.read_text("utf-8", errors="replace") if stderr_path.exists() else ""
    if stderr.strip():
        return f"{stdout}\n{stderr}" if stdout else stderr
    return stdout
