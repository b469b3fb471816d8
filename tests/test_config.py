from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskfuel.config import AgentDefinition, Settings

pytestmark = [
    allure.epic("Consume Daemon"),
    allure.feature("Configuration"),
]


def test_from_env_defaults_route_every_complexity_to_claude(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    for name in ("TASKFUEL_STATE_DIR", "TASKFUEL_DB_PATH", "TASKFUEL_DEFAULT_AGENT"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".taskfuel/tasks.db")
    assert settings.pid_file_path == Path(".taskfuel/consume-runner.pid")
    assert set(settings.agents) == {"claude", "codex", "gemini"}
    assert settings.get_agent_config("complex").name == "claude"
    assert settings.get_agent_max_retries() == 10
    assert settings.consume.task_review is False


def test_from_env_reads_agent_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKFUEL_STATE_DIR", str(tmp_path))
    monkeypatch.setenv("TASKFUEL_COMPLEXITY_COMPLEX_AGENT", "codex")
    monkeypatch.setenv("TASKFUEL_CODEX_MAX_CONCURRENT", "4")
    monkeypatch.setenv("TASKFUEL_AGENT_MAX_RETRIES", "3")
    monkeypatch.setenv("TASKFUEL_TASK_REVIEW", "yes")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "tasks.db"
    assert settings.get_agent_config("complex").name == "codex"
    assert settings.get_agent_config("simple").name == "claude"
    assert settings.get_agent_limit("codex") == 4
    assert settings.get_agent_limits()["codex"] == 4
    assert settings.get_agent_max_retries() == 3
    assert settings.consume.task_review is True


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKFUEL_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKFUEL_TASK_REVIEW", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for TASKFUEL_TASK_REVIEW"):
        Settings.from_env()


def test_complexity_mapping_to_unknown_agent_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKFUEL_COMPLEXITY_TRIVIAL_AGENT", "copilot")

    with pytest.raises(ValueError, match="maps to unknown agent 'copilot'"):
        Settings.from_env()


def test_validate_requires_prompt_placeholder() -> None:
    settings = Settings(
        agents={"claude": AgentDefinition(name="claude", command_template="claude -p")},
        complexity_agents={"simple": "claude"},
    )

    with pytest.raises(ValueError, match="must include"):
        settings.validate()


def test_unknown_complexity_has_no_agent() -> None:
    settings = Settings(
        agents={"claude": AgentDefinition(name="claude", command_template="claude {prompt}")},
        complexity_agents={"simple": "claude"},
    )

    assert settings.get_agent_config("epic") is None
    assert settings.get_agent_limit("unknown") == 2
