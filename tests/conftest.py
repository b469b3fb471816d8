"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from taskfuel.config import AgentDefinition, Settings
from taskfuel.consume.completion import CompletionResult, build_completion_result
from taskfuel.consume.process_manager import SpawnRequest
from taskfuel.tasks.repository import TaskRepository

_FAKE_AGENT_SCRIPT = """
import argparse
import sys
from pathlib import Path

parser = argparse.ArgumentParser()
parser.add_argument("--prompt-file", required=True)
args = parser.parse_args()
text = Path(args.prompt_file).read_text("utf-8")
if "PERMISSION" in text:
    print("Terminal commands are being rejected")
    raise SystemExit(0)
if "FAIL" in text:
    print("agent failed", file=sys.stderr)
    raise SystemExit(3)
print("Session ID: 123e4567-e89b-12d3-a456-426614174000")
print("done")
"""


@pytest.fixture()
def fake_agent_command(tmp_path: Path) -> str:
    """Command template running a tiny python agent that reacts to the prompt text."""

    script = tmp_path / "fake_agent.py"
    script.write_text(_FAKE_AGENT_SCRIPT.strip() + "\n", "utf-8")
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} --prompt-file {{prompt_file}}"


@pytest.fixture()
def state_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point TASKFUEL_* state at a temporary directory."""

    state_dir = tmp_path / ".taskfuel"
    monkeypatch.setenv("TASKFUEL_STATE_DIR", str(state_dir))
    monkeypatch.delenv("TASKFUEL_DB_PATH", raising=False)
    return state_dir


@pytest.fixture()
def settings(tmp_path: Path, fake_agent_command: str) -> Settings:
    state_dir = tmp_path / ".taskfuel"
    settings = Settings(state_dir=state_dir, db_path=state_dir / "tasks.db")
    settings.agents = {
        "claude": AgentDefinition(name="claude", command_template=fake_agent_command),
        "codex": AgentDefinition(
            name="codex",
            command_template=fake_agent_command,
            max_concurrent=1,
        ),
    }
    settings.complexity_agents = {
        "trivial": "claude",
        "simple": "claude",
        "moderate": "claude",
        "complex": "codex",
    }
    settings.consume.ready_cache_seconds = 0.0
    settings.consume.poll_interval_seconds = 0.01
    settings.consume.shutdown_grace_seconds = 1.0
    return settings


@pytest.fixture()
def repository(settings: Settings):
    repo = TaskRepository(settings.db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@dataclass
class FakeAgentProcess:
    task_id: str
    run_id: str
    agent: str
    pid: int
    started_monotonic: float = field(default_factory=time.monotonic)


class FakeProcessManager:
    """In-memory stand-in for ProcessManager; tests decide when runs finish."""

    def __init__(self) -> None:
        self.spawned: list[SpawnRequest] = []
        self.killed: list[str] = []
        self._running: dict[str, FakeAgentProcess] = {}
        self._finished: list[CompletionResult] = []
        self._next_pid = 40_000

    def spawn(self, request: SpawnRequest) -> FakeAgentProcess:
        self._next_pid += 1
        process = FakeAgentProcess(
            task_id=request.task_id,
            run_id=request.run_id,
            agent=request.agent.name,
            pid=self._next_pid,
        )
        self.spawned.append(request)
        self._running[request.task_id] = process
        return process

    def finish(self, task_id: str, *, exit_code: int, output: str = "") -> None:
        process = self._running.pop(task_id)
        self._finished.append(
            build_completion_result(
                task_id=task_id,
                run_id=process.run_id,
                agent_name=process.agent,
                exit_code=exit_code,
                duration_seconds=1.5,
                output=output,
            ),
        )

    def poll(self) -> list[CompletionResult]:
        finished, self._finished = self._finished, []
        return finished

    def kill(self, task_id: str, *, grace_seconds: float | None = None) -> bool:
        process = self._running.pop(task_id, None)
        if process is None:
            return False
        self.killed.append(task_id)
        self._finished.append(
            build_completion_result(
                task_id=task_id,
                run_id=process.run_id,
                agent_name=process.agent,
                exit_code=-15,
                duration_seconds=0.1,
                output="",
                killed=True,
            ),
        )
        return True

    def shutdown(self, *, grace_seconds: float) -> None:
        for task_id in list(self._running):
            self.kill(task_id, grace_seconds=grace_seconds)

    def is_running(self, task_id: str) -> bool:
        return task_id in self._running

    def running(self) -> list[FakeAgentProcess]:
        return list(self._running.values())

    def running_count(self, agent: str | None = None) -> int:
        if agent is None:
            return len(self._running)
        return sum(1 for item in self._running.values() if item.agent == agent)


@pytest.fixture()
def fake_processes() -> FakeProcessManager:
    return FakeProcessManager()
