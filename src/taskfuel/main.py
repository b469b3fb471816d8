"""CLI entrypoint for taskfuel."""

from pathlib import Path

import rich_click as click

from taskfuel import __version__
from taskfuel.browser.controllers import (
    BrowserClickCliCommand,
    BrowserCliController,
    BrowserCliResult,
    BrowserHtmlCliCommand,
    BrowserRunCliCommand,
    BrowserSnapshotCliCommand,
    BrowserTypeCliCommand,
)
from taskfuel.consume.controllers import (
    ConsumeCliController,
    ConsumeCommand,
    HealthCommand,
    HealthResetCliCommand,
)
from taskfuel.consume.health import RESET_ALL
from taskfuel.tasks.controllers import (
    TaskAddCommand,
    TaskCliController,
    TaskDependencyCommand,
    TaskDoneCommand,
    TaskListCommand,
    TaskMutateCommand,
    TaskRetryCommand,
    TaskShowCommand,
)
from taskfuel.tasks.models import MAX_PRIORITY, MIN_PRIORITY, TaskComplexity, TaskStatus

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()
CONSUME_CONTROLLER = ConsumeCliController()
BROWSER_CONTROLLER = BrowserCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_JSON_OPTION = click.option("--json", "json_output", is_flag=True, help="Print JSON output.")


@click.group()
@click.version_option(version=__version__, prog_name="taskfuel")
def taskfuel() -> None:
    """Local task tracker with an agent **consume** daemon."""


@taskfuel.command("add")
@_DB_PATH_OPTION
@click.argument("title")
@click.option("--description", "-d", default=None, help="Task description.")
@click.option(
    "--complexity",
    type=click.Choice([item.value for item in TaskComplexity]),
    default=TaskComplexity.SIMPLE.value,
    show_default=True,
    help="Complexity bucket used to route the task to an agent.",
)
@click.option(
    "--priority",
    "-p",
    type=click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY),
    default=2,
    show_default=True,
    help="Priority, 0 is most urgent.",
)
@click.option("--label", "labels", multiple=True, help="Label. Can be repeated.")
@click.option("--blocked-by", "blocked_by", multiple=True, help="Blocker task id. Can be repeated.")
@_JSON_OPTION
def add_task(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str | None,
    complexity: str,
    priority: int,
    labels: tuple[str, ...],
    blocked_by: tuple[str, ...],
    json_output: bool,
) -> None:
    """Create a task."""

    _emit_lines(
        _run_task_command(
            lambda: TASK_CONTROLLER.add(
                TaskAddCommand(
                    db_path=db_path,
                    title=title,
                    description=description,
                    complexity=complexity,
                    priority=priority,
                    labels=labels,
                    blocked_by=blocked_by,
                    json_output=json_output,
                ),
            ),
        ),
    )


@taskfuel.command("tasks")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([item.value for item in TaskStatus]),
    default=None,
    help="Only show tasks in this status.",
)
@click.option("--ready", "ready_only", is_flag=True, help="Only show tasks ready to start.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=None,
    help="Max number of tasks to print.",
)
@_JSON_OPTION
def list_tasks(
    db_path: Path | None,
    status: str | None,
    ready_only: bool,
    limit: int | None,
    json_output: bool,
) -> None:
    """List tasks ordered by priority then creation time."""

    _emit_lines(
        TASK_CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                status=status,
                ready_only=ready_only,
                limit=limit,
                json_output=json_output,
            ),
        ),
    )


@taskfuel.command("show")
@_DB_PATH_OPTION
@click.argument("task_id")
@_JSON_OPTION
def show_task(db_path: Path | None, task_id: str, json_output: bool) -> None:
    """Show task details, run history and audit events."""

    _emit_lines(
        _run_task_command(
            lambda: TASK_CONTROLLER.show(
                TaskShowCommand(db_path=db_path, task_id=task_id, json_output=json_output),
            ),
        ),
    )


@taskfuel.command("dep:add")
@_DB_PATH_OPTION
@click.argument("task_id")
@click.argument("blocker_id")
def add_dependency(db_path: Path | None, task_id: str, blocker_id: str) -> None:
    """Make TASK_ID blocked by BLOCKER_ID."""

    _emit_lines(
        _run_task_command(
            lambda: TASK_CONTROLLER.add_dependency(
                TaskDependencyCommand(db_path=db_path, task_id=task_id, blocker_id=blocker_id),
            ),
        ),
    )


@taskfuel.command("done")
@_DB_PATH_OPTION
@click.argument("task_id")
@click.option("--reason", default=None, help="Completion note stored on the task.")
@click.option("--commit", "commit_hash", default=None, help="Commit hash that closed the task.")
def done_task(
    db_path: Path | None,
    task_id: str,
    reason: str | None,
    commit_hash: str | None,
) -> None:
    """Close a task."""

    _emit_lines(
        _run_task_command(
            lambda: TASK_CONTROLLER.done(
                TaskDoneCommand(
                    db_path=db_path,
                    task_id=task_id,
                    reason=reason,
                    commit_hash=commit_hash,
                ),
            ),
        ),
    )


@taskfuel.command("reopen")
@_DB_PATH_OPTION
@click.argument("task_id")
def reopen_task(db_path: Path | None, task_id: str) -> None:
    """Move a task back to open."""

    _emit_lines(
        _run_task_command(
            lambda: TASK_CONTROLLER.reopen(TaskMutateCommand(db_path=db_path, task_id=task_id)),
        ),
    )


@taskfuel.command("retry")
@_DB_PATH_OPTION
@click.argument("task_ids", nargs=-1, required=True)
@_JSON_OPTION
def retry_tasks(db_path: Path | None, task_ids: tuple[str, ...], json_output: bool) -> None:
    """Reset failed consumed tasks so the daemon picks them up again."""

    result = TASK_CONTROLLER.retry(
        TaskRetryCommand(db_path=db_path, task_ids=task_ids, json_output=json_output),
    )
    _emit_lines(result.lines)
    if not result.ok:
        raise click.ClickException(result.error or "Retry failed.")


@taskfuel.command("consume")
@_DB_PATH_OPTION
@click.option("--once", is_flag=True, help="Exit once no task is ready and nothing is running.")
@click.option("--restart", is_flag=True, help="Stop a running daemon before starting.")
@click.option(
    "--resume",
    "--unpause",
    "resume",
    is_flag=True,
    help="Resume a paused running daemon instead of starting a new one.",
)
def consume(db_path: Path | None, once: bool, restart: bool, resume: bool) -> None:
    """Run the consume daemon: spawn agents for ready tasks until stopped."""

    if restart and resume:
        raise click.UsageError("Use either --restart or --resume, not both.")
    try:
        lines = CONSUME_CONTROLLER.consume(
            ConsumeCommand(db_path=db_path, once=once, restart=restart, resume=resume),
        )
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@taskfuel.command("health")
@_DB_PATH_OPTION
@_JSON_OPTION
def health(db_path: Path | None, json_output: bool) -> None:
    """Show agent health as seen by the running daemon."""

    try:
        lines = CONSUME_CONTROLLER.health(HealthCommand(db_path=db_path, json_output=json_output))
    except RuntimeError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@taskfuel.command("health-reset")
@_DB_PATH_OPTION
@click.argument("agent", required=False, default=RESET_ALL)
@_JSON_OPTION
def health_reset(db_path: Path | None, agent: str, json_output: bool) -> None:
    """Clear failures and backoff for AGENT (default: all agents)."""

    try:
        lines = CONSUME_CONTROLLER.health_reset(
            HealthResetCliCommand(db_path=db_path, agent=agent.lower(), json_output=json_output),
        )
    except RuntimeError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@taskfuel.command("browser:click")
@_DB_PATH_OPTION
@click.argument("page_id")
@click.argument("target", required=False)
@click.option("--ref", default=None, help="Element ref from a snapshot, for example @e3.")
@_JSON_OPTION
def browser_click(
    db_path: Path | None,
    page_id: str,
    target: str | None,
    ref: str | None,
    json_output: bool,
) -> None:
    """Click an element by CSS selector or `@ref`."""

    _finish_browser(
        BROWSER_CONTROLLER.click(
            BrowserClickCliCommand(
                db_path=db_path,
                page_id=page_id,
                target=target,
                ref=ref,
                json_output=json_output,
            ),
        ),
    )


@taskfuel.command("browser:type")
@_DB_PATH_OPTION
@click.argument("page_id")
@click.argument("target", required=False)
@click.option("--text", required=True, help="Text to type.")
@click.option("--ref", default=None, help="Element ref from a snapshot, for example @e3.")
@click.option(
    "--delay",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Delay between keystrokes in milliseconds.",
)
@_JSON_OPTION
def browser_type(  # noqa: PLR0913
    db_path: Path | None,
    page_id: str,
    target: str | None,
    text: str,
    ref: str | None,
    delay: int,
    json_output: bool,
) -> None:
    """Type text into an element by CSS selector or `@ref`."""

    _finish_browser(
        BROWSER_CONTROLLER.type_text(
            BrowserTypeCliCommand(
                db_path=db_path,
                page_id=page_id,
                target=target,
                text=text,
                ref=ref,
                delay=delay,
                json_output=json_output,
            ),
        ),
    )


@taskfuel.command("browser:html")
@_DB_PATH_OPTION
@click.argument("page_id")
@click.argument("target", required=False)
@click.option("--ref", default=None, help="Element ref from a snapshot, for example @e3.")
@click.option("--inner", is_flag=True, help="Return innerHTML instead of outerHTML.")
@_JSON_OPTION
def browser_html(  # noqa: PLR0913
    db_path: Path | None,
    page_id: str,
    target: str | None,
    ref: str | None,
    inner: bool,
    json_output: bool,
) -> None:
    """Print the HTML of an element by CSS selector or `@ref`."""

    _finish_browser(
        BROWSER_CONTROLLER.html(
            BrowserHtmlCliCommand(
                db_path=db_path,
                page_id=page_id,
                target=target,
                ref=ref,
                inner=inner,
                json_output=json_output,
            ),
        ),
    )


@taskfuel.command("browser:snapshot")
@_DB_PATH_OPTION
@click.argument("page_id")
@click.option("--scope", default=None, help="CSS selector limiting the snapshot.")
@click.option(
    "--interactive",
    "interactive_only",
    "-i",
    is_flag=True,
    help="Only include interactive elements.",
)
@_JSON_OPTION
def browser_snapshot(
    db_path: Path | None,
    page_id: str,
    scope: str | None,
    interactive_only: bool,
    json_output: bool,
) -> None:
    """Print the accessibility snapshot of a page."""

    _finish_browser(
        BROWSER_CONTROLLER.snapshot(
            BrowserSnapshotCliCommand(
                db_path=db_path,
                page_id=page_id,
                scope=scope,
                interactive_only=interactive_only,
                json_output=json_output,
            ),
        ),
    )


@taskfuel.command("browser:run")
@_DB_PATH_OPTION
@click.argument("page_id")
@click.argument("code")
@_JSON_OPTION
def browser_run(db_path: Path | None, page_id: str, code: str, json_output: bool) -> None:
    """Evaluate JavaScript in a page and print the result."""

    _finish_browser(
        BROWSER_CONTROLLER.run(
            BrowserRunCliCommand(
                db_path=db_path,
                page_id=page_id,
                code=code,
                json_output=json_output,
            ),
        ),
    )


def _run_task_command(action) -> list[str]:
    try:
        return action()
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _finish_browser(result: BrowserCliResult) -> None:
    _emit_lines(result.lines)
    if result.ok:
        return
    if result.lines:
        raise SystemExit(1)
    raise click.ClickException(result.error or "Browser command failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskfuel()
