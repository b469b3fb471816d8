"""Runtime configuration for the task store and consume daemon."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_AGENTS = ("claude", "codex", "gemini")
DEFAULT_MAX_CONCURRENT = 2
DEFAULT_MAX_RETRIES = 10

DEFAULT_COMMAND_TEMPLATES = {
    "claude": "claude -p --model {model} --output-format text -- {prompt}",
    "codex": "codex exec --sandbox workspace-write {model} {prompt}",
    "gemini": "gemini --model {model} --approval-mode auto_edit --prompt {prompt}",
}
DEFAULT_MODELS = {
    "claude": "sonnet",
    "codex": "gpt-5-codex",
    "gemini": "gemini-2.5-pro",
}
DEFAULT_COMPLEXITY_AGENTS = {
    "trivial": "claude",
    "simple": "claude",
    "moderate": "claude",
    "complex": "claude",
}


@dataclass(slots=True)
class AgentDefinition:
    """One coding-agent CLI the daemon can drive."""

    name: str
    command_template: str
    model: str | None = None
    max_concurrent: int = DEFAULT_MAX_CONCURRENT


@dataclass(slots=True)
class ConsumeSettings:
    """Consume daemon tunables."""

    poll_interval_seconds: float = 0.1
    ready_cache_seconds: float = 2.0
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base_seconds: int = 30
    backoff_max_seconds: int = 960
    kill_grace_seconds: float = 5.0
    shutdown_grace_seconds: float = 30.0
    ipc_host: str = "127.0.0.1"
    ipc_port: int = 0
    task_review: bool = False
    output_tail_chars: int = 4_000


@dataclass(slots=True)
class BrowserSettings:
    """Browser sidecar settings."""

    command: str = "node browser-daemon.js"
    response_timeout_seconds: float = 30.0
    client_timeout_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns.

    Also serves the daemon's agent lookups (complexity routing, limits, retry
    ceiling) so the runner depends on one configuration object.
    """

    state_dir: Path = Path(".taskfuel")
    db_path: Path = Path(".taskfuel/tasks.db")
    consume: ConsumeSettings = field(default_factory=ConsumeSettings)
    browser: BrowserSettings = field(default_factory=BrowserSettings)
    agents: dict[str, AgentDefinition] = field(default_factory=dict)
    complexity_agents: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_COMPLEXITY_AGENTS),
    )

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        state_dir = Path(os.getenv("TASKFUEL_STATE_DIR", ".taskfuel"))
        settings = cls(
            state_dir=state_dir,
            db_path=db_path or Path(os.getenv("TASKFUEL_DB_PATH", str(state_dir / "tasks.db"))),
            consume=ConsumeSettings(
                poll_interval_seconds=float(
                    os.getenv("TASKFUEL_POLL_INTERVAL_SECONDS", "0.1"),
                ),
                ready_cache_seconds=float(os.getenv("TASKFUEL_READY_CACHE_SECONDS", "2.0")),
                max_retries=int(
                    os.getenv("TASKFUEL_AGENT_MAX_RETRIES", str(DEFAULT_MAX_RETRIES)),
                ),
                backoff_base_seconds=int(os.getenv("TASKFUEL_BACKOFF_BASE_SECONDS", "30")),
                backoff_max_seconds=int(os.getenv("TASKFUEL_BACKOFF_MAX_SECONDS", "960")),
                kill_grace_seconds=float(os.getenv("TASKFUEL_KILL_GRACE_SECONDS", "5")),
                shutdown_grace_seconds=float(
                    os.getenv("TASKFUEL_SHUTDOWN_GRACE_SECONDS", "30"),
                ),
                ipc_host=os.getenv("TASKFUEL_IPC_HOST", "127.0.0.1"),
                ipc_port=int(os.getenv("TASKFUEL_IPC_PORT", "0")),
                task_review=_env_bool("TASKFUEL_TASK_REVIEW", default=False),
                output_tail_chars=int(os.getenv("TASKFUEL_OUTPUT_TAIL_CHARS", "4000")),
            ),
            browser=BrowserSettings(
                command=os.getenv("TASKFUEL_BROWSER_COMMAND", "node browser-daemon.js"),
                response_timeout_seconds=float(
                    os.getenv("TASKFUEL_BROWSER_RESPONSE_TIMEOUT_SECONDS", "30"),
                ),
                client_timeout_seconds=float(
                    os.getenv("TASKFUEL_BROWSER_TIMEOUT_SECONDS", "30"),
                ),
            ),
            agents=_collect_agents(),
            complexity_agents=_collect_complexity_agents(),
        )
        settings.validate()
        return settings

    @property
    def pid_file_path(self) -> Path:
        return self.state_dir / "consume-runner.pid"

    @property
    def processes_dir(self) -> Path:
        return self.state_dir / "processes"

    @property
    def log_path(self) -> Path:
        return self.state_dir / "consume.log"

    def validate(self) -> None:
        """Raise configuration error for inconsistent agent or daemon settings."""

        if self.consume.max_retries <= 0:
            raise ValueError("TASKFUEL_AGENT_MAX_RETRIES must be > 0.")
        if self.consume.backoff_base_seconds < 0 or self.consume.backoff_max_seconds < 0:
            raise ValueError("Backoff seconds must be >= 0.")
        if not 0 <= self.consume.ipc_port <= 65_535:
            raise ValueError("TASKFUEL_IPC_PORT must be between 0 and 65535.")
        for name, agent in self.agents.items():
            if agent.max_concurrent <= 0:
                raise ValueError(f"max_concurrent for agent {name!r} must be > 0.")
            if "{prompt}" not in agent.command_template and (
                "{prompt_file}" not in agent.command_template
            ):
                raise ValueError(
                    f"Command template for agent {name!r} must include {{prompt}} "
                    "or {prompt_file}.",
                )
        for complexity, agent_name in self.complexity_agents.items():
            if agent_name not in self.agents:
                raise ValueError(
                    f"Complexity {complexity!r} maps to unknown agent {agent_name!r}.",
                )

    def get_agent_config(self, complexity: str) -> AgentDefinition | None:
        """Agent definition responsible for tasks of the given complexity."""

        agent_name = self.complexity_agents.get(complexity)
        if agent_name is None:
            return None
        return self.agents.get(agent_name)

    def get_agent_limit(self, agent_name: str) -> int:
        agent = self.agents.get(agent_name)
        return agent.max_concurrent if agent is not None else DEFAULT_MAX_CONCURRENT

    def get_agent_limits(self) -> dict[str, int]:
        return {name: agent.max_concurrent for name, agent in self.agents.items()}

    def get_agent_max_retries(self) -> int:
        return self.consume.max_retries


def _collect_agents() -> dict[str, AgentDefinition]:
    agents: dict[str, AgentDefinition] = {}
    for name in SUPPORTED_AGENTS:
        prefix = f"TASKFUEL_{name.upper()}"
        agents[name] = AgentDefinition(
            name=name,
            command_template=os.getenv(
                f"{prefix}_COMMAND_TEMPLATE",
                DEFAULT_COMMAND_TEMPLATES[name],
            ),
            model=os.getenv(f"{prefix}_MODEL", DEFAULT_MODELS[name]) or None,
            max_concurrent=int(
                os.getenv(f"{prefix}_MAX_CONCURRENT", str(DEFAULT_MAX_CONCURRENT)),
            ),
        )
    return agents


def _collect_complexity_agents() -> dict[str, str]:
    mapping: dict[str, str] = {}
    default_agent = os.getenv("TASKFUEL_DEFAULT_AGENT", "").strip().lower()
    for complexity, fallback in DEFAULT_COMPLEXITY_AGENTS.items():
        value = os.getenv(f"TASKFUEL_COMPLEXITY_{complexity.upper()}_AGENT", "").strip().lower()
        mapping[complexity] = value or default_agent or fallback
    return mapping


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
