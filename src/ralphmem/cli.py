from __future__ import annotations

from functools import partial
from pathlib import Path
from typing import NoReturn

import anyio
import typer

from . import __version__
from .config import ConfigError, Settings, load_settings
from .criteria import CriteriaEvaluator
from .engine import LoopEngine, LoopError
from .logging import get_logger, setup_logging
from .paths import project_db_path
from .model import (
    CRITERION_KINDS,
    STOPPED,
    IterationContext,
    IterationResult,
    SuccessCriterion,
)
from .process import execute_command
from .render import (
    format_evaluation,
    format_loop_result,
    format_start_message,
    format_status,
)
from .store import LoopRunStore
from .utils.command import parse_command

logger = get_logger(__name__)

SESSION_ENV = "RALPHMEM_SESSION_ID"

_PROJECT_OPTION = typer.Option(
    Path("."),
    "--project",
    "-p",
    help="Project directory (config, database and working directory).",
)
_SESSION_OPTION = typer.Option(
    "default",
    "--session",
    envvar=SESSION_ENV,
    help="Logical session that owns the loop.",
)
_CONFIG_OPTION = typer.Option(
    None,
    "--config",
    help="Read settings from this file instead of the global/project config.",
)
_CRITERIA_OPTION = typer.Option(
    None,
    "--criteria",
    "-c",
    help="Built-in criterion to check (test_pass, build_success, lint_clean, type_check).",
)
_CHECK_OPTION = typer.Option(
    None,
    "--check",
    help="Custom command that must exit 0. Repeatable.",
)
_DEBUG_OPTION = typer.Option(
    False,
    "--debug/--no-debug",
    help="Log to the console at debug level.",
)


def _exit_error(message: str, code: int = 2) -> NoReturn:
    typer.echo(f"error: {message}", err=True)
    raise typer.Exit(code=code)


def _load_settings_or_exit(project: Path, config: Path | None) -> Settings:
    try:
        return load_settings(project, config)
    except ConfigError as e:
        _exit_error(str(e))


def _build_criteria(
    kinds: list[str] | None,
    checks: list[str] | None,
    settings: Settings,
) -> list[SuccessCriterion]:
    criteria: list[SuccessCriterion] = []
    for raw in kinds or []:
        kind = raw.strip().lower()
        if kind not in CRITERION_KINDS or kind == "custom":
            raise ConfigError(
                f"Unknown criterion {raw!r}; use --check for custom commands."
            )
        criteria.append(SuccessCriterion(kind=kind))
    for check in checks or []:
        if not check.strip():
            raise ConfigError("Invalid `--check`; expected a non-empty command.")
        criteria.append(SuccessCriterion(kind="custom", command=check))
    return criteria or list(settings.loop.success_criteria)


def _describe(criterion: SuccessCriterion) -> str:
    if criterion.command:
        return f"{criterion.kind} ({criterion.command})"
    return criterion.kind


def _print_version_and_exit() -> None:
    typer.echo(__version__)
    raise typer.Exit()


def _version_callback(value: bool) -> None:
    if value:
        _print_version_and_exit()


def check(
    criteria: list[str] | None = _CRITERIA_OPTION,
    checks: list[str] | None = _CHECK_OPTION,
    project: Path = _PROJECT_OPTION,
    config: Path | None = _CONFIG_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """Evaluate success criteria once."""
    settings = _load_settings_or_exit(project, config)
    setup_logging(
        debug=debug, level=settings.logging.level, cache_logger_on_first_use=False
    )
    try:
        items = _build_criteria(criteria, checks, settings)
    except ConfigError as e:
        _exit_error(str(e))
    evaluator = CriteriaEvaluator(
        cwd=project, default_timeout_ms=settings.loop.timeout_ms
    )
    result = anyio.run(evaluator.evaluate_all, items)
    typer.echo(format_evaluation(result))
    raise typer.Exit(code=0 if result.success else 1)


def run(
    task: str = typer.Argument(..., help="Task description."),
    criteria: list[str] | None = _CRITERIA_OPTION,
    checks: list[str] | None = _CHECK_OPTION,
    max_iterations: int | None = typer.Option(
        None, "--max-iterations", "-n", min=1, help="Iteration cap."
    ),
    cooldown_ms: int | None = typer.Option(
        None, "--cooldown-ms", min=0, help="Pause between iterations."
    ),
    agent: str | None = typer.Option(
        None,
        "--agent",
        help="Command to run at the start of every iteration.",
    ),
    agent_timeout_ms: int | None = typer.Option(
        None, "--agent-timeout-ms", min=1, help="Deadline for the agent command."
    ),
    session: str = _SESSION_OPTION,
    project: Path = _PROJECT_OPTION,
    config: Path | None = _CONFIG_OPTION,
    debug: bool = _DEBUG_OPTION,
) -> None:
    """Run a task until its success criteria pass."""
    settings = _load_settings_or_exit(project, config)
    setup_logging(
        debug=debug, level=settings.logging.level, cache_logger_on_first_use=False
    )
    try:
        items = _build_criteria(criteria, checks, settings)
    except ConfigError as e:
        _exit_error(str(e))
    limit = max_iterations or settings.loop.max_iterations
    evaluator = CriteriaEvaluator(
        cwd=project, default_timeout_ms=settings.loop.timeout_ms
    )

    async def iterate(ctx: IterationContext) -> IterationResult:
        if ctx.iteration == 1:
            typer.echo(
                format_start_message(
                    ctx.loop_run_id, ctx.task, [_describe(c) for c in items], limit
                )
            )
        if agent:
            program, args = parse_command(agent)
            agent_result = await execute_command(
                program,
                args,
                cwd=project,
                timeout_ms=agent_timeout_ms,
                env={
                    "RALPHMEM_TASK": ctx.task,
                    "RALPHMEM_ITERATION": str(ctx.iteration),
                    "RALPHMEM_LOOP_RUN_ID": ctx.loop_run_id,
                },
            )
            if agent_result.exit_code != 0:
                logger.warning(
                    "cli.agent.failed",
                    iteration=ctx.iteration,
                    exit_code=agent_result.exit_code,
                )
        evaluation = await evaluator.evaluate_all(items)
        typer.echo(f"[{ctx.iteration}/{limit}] {format_evaluation(evaluation)}")
        if evaluation.success:
            return IterationResult(success=True, output=evaluation.output)
        return IterationResult(
            success=False, output=evaluation.output, error=evaluation.reason
        )

    try:
        with LoopEngine(project, session, settings=settings.loop) as engine:
            engine.on_iteration(iterate)
            engine.on_complete(lambda result: typer.echo(format_loop_result(result)))
            result = anyio.run(
                partial(
                    engine.start,
                    task,
                    criteria=items,
                    max_iterations=limit,
                    cooldown_ms=cooldown_ms,
                )
            )
    except LoopError as e:
        _exit_error(str(e))
    raise typer.Exit(code=0 if result.success else 1)


def status(
    session: str = _SESSION_OPTION,
    project: Path = _PROJECT_OPTION,
) -> None:
    """Show the running loop of a session, or its recent runs."""
    db_path = project_db_path(project)
    if not db_path.exists():
        typer.echo(format_status(None))
        return
    with LoopRunStore(db_path) as store:
        active = store.get_active_loop_run(session)
        recent = [] if active is not None else store.list_loop_runs(session, limit=5)
    typer.echo(format_status(active, recent))


def stop(
    session: str = _SESSION_OPTION,
    project: Path = _PROJECT_OPTION,
) -> None:
    """Mark the running loop of a session as stopped."""
    db_path = project_db_path(project)
    if not db_path.exists():
        typer.echo("no loop running")
        raise typer.Exit(code=1)
    with LoopRunStore(db_path) as store:
        active = store.get_active_loop_run(session)
        if active is None:
            typer.echo("no loop running")
            raise typer.Exit(code=1)
        store.finish_loop_run(active.id, STOPPED)
    typer.echo(f"stop requested: {active.id}")


def app_main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Run tasks until their success criteria pass."""


def create_app() -> typer.Typer:
    app = typer.Typer(add_completion=False, no_args_is_help=True)
    app.callback()(app_main)
    app.command(name="check")(check)
    app.command(name="run")(run)
    app.command(name="status")(status)
    app.command(name="stop")(stop)
    return app


def main() -> None:
    app = create_app()
    app()
