"""CLI entrypoint for agent-workflows."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from agent_workflows import __version__
from agent_workflows.orchestrator.controllers import (
    AgentsCommand,
    CancelCommand,
    CleanCommand,
    ListCommand,
    LogsCommand,
    ResumeCommand,
    RunCommand,
    RunResult,
    StatusCommand,
    UsageCommand,
    WorkflowCliController,
    WorkflowsCommand,
)
from agent_workflows.orchestrator.errors import WorkflowError
from agent_workflows.orchestrator.models import SessionStatus, Tier
from agent_workflows.orchestrator.sessions import LOG_LEVELS
from agent_workflows.orchestrator.workflows import PREDEFINED_WORKFLOWS

click.rich_click.USE_MARKDOWN = True
CONTROLLER = WorkflowCliController(echo=click.echo)

_sessions_dir_option = click.option(
    "--sessions-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Session storage directory (default: AGENT_WORKFLOWS_SESSIONS_DIR or .sessions).",
)
_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite task store path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-workflows")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging verbosity for engine diagnostics.",
)
def agent_workflows(log_level: str) -> None:
    """Multi-agent workflow orchestration CLI.

    Runs predefined agent workflows stage by stage with **checkpoints**,
    so interrupted sessions can be resumed.
    """

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_workflows.command("run")
@click.argument("workflow", type=click.Choice(list(PREDEFINED_WORKFLOWS), case_sensitive=False))
@click.option("--project", "-p", required=True, help="Project name, used for the branch name.")
@click.option("--description", "-d", required=True, help="What the agents should build.")
@click.option(
    "--max-tier",
    type=click.Choice([tier.value for tier in Tier], case_sensitive=False),
    default=None,
    help="Ceiling for agent resource tiers.",
)
@click.option(
    "--complexity",
    type=click.Choice(["low", "medium", "high"], case_sensitive=False),
    default=None,
    help="Complexity hint used by tier selection.",
)
@click.option("--no-branch", is_flag=True, help="Do not create a feature branch.")
@click.option("--no-pr", is_flag=True, help="Do not open a pull request on completion.")
@click.option("--dry-run", is_flag=True, help="Show stages and cost estimate without running.")
@_sessions_dir_option
@_db_path_option
def run_workflow(  # noqa: PLR0913
    workflow: str,
    project: str,
    description: str,
    max_tier: str | None,
    complexity: str | None,
    no_branch: bool,
    no_pr: bool,
    dry_run: bool,
    sessions_dir: Path | None,
    db_path: Path | None,
) -> None:
    """Start a workflow; Ctrl+C cancels the run."""

    with _cli_errors():
        result = CONTROLLER.run(
            RunCommand(
                workflow=workflow.upper(),
                project=project,
                description=description,
                max_tier=max_tier,
                complexity=complexity,
                no_branch=no_branch,
                no_pr=no_pr,
                dry_run=dry_run,
                sessions_dir=sessions_dir,
                db_path=db_path,
            ),
        )
    _emit_result(result)


@agent_workflows.command("status")
@click.argument("session_id")
@click.option("--verbose", "-v", is_flag=True, help="Include agent executions and recent logs.")
@click.option("--json", "as_json", is_flag=True, help="Print the session record as JSON.")
@_sessions_dir_option
def session_status(
    session_id: str,
    verbose: bool,
    as_json: bool,
    sessions_dir: Path | None,
) -> None:
    """Show one session's state."""

    with _cli_errors():
        lines = CONTROLLER.status(
            StatusCommand(
                session_id=session_id,
                verbose=verbose,
                as_json=as_json,
                sessions_dir=sessions_dir,
            ),
        )
    _emit_lines(lines)


@agent_workflows.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include completed sessions.")
@click.option("--zombies", is_flag=True, help="Only sessions running without a live run.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in SessionStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--workflow", default=None, help="Optional workflow id filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Maximum sessions to show.",
)
@_sessions_dir_option
def list_sessions(  # noqa: PLR0913
    show_all: bool,
    zombies: bool,
    status: str | None,
    workflow: str | None,
    limit: int,
    sessions_dir: Path | None,
) -> None:
    """List sessions with summary counts."""

    with _cli_errors():
        lines = CONTROLLER.list_sessions(
            ListCommand(
                show_all=show_all,
                zombies_only=zombies,
                status=status,
                workflow=workflow,
                limit=limit,
                sessions_dir=sessions_dir,
            ),
        )
    _emit_lines(lines)


@agent_workflows.command("cancel")
@click.argument("session_id")
@click.option("--force", is_flag=True, help="Cancel even if the session already finished.")
@click.option("--cleanup", is_flag=True, help="Delete the session's feature branch.")
@_sessions_dir_option
def cancel_session(
    session_id: str,
    force: bool,
    cleanup: bool,
    sessions_dir: Path | None,
) -> None:
    """Cancel a session; stale running sessions are marked failed."""

    with _cli_errors():
        lines = CONTROLLER.cancel(
            CancelCommand(
                session_id=session_id,
                force=force,
                cleanup=cleanup,
                sessions_dir=sessions_dir,
            ),
        )
    _emit_lines(lines)


@agent_workflows.command("resume")
@click.argument("session_id")
@click.option(
    "--from-stage",
    type=click.IntRange(min=1),
    default=None,
    help="1-based stage to restart from; later agents are re-run.",
)
@_sessions_dir_option
@_db_path_option
def resume_session(
    session_id: str,
    from_stage: int | None,
    sessions_dir: Path | None,
    db_path: Path | None,
) -> None:
    """Resume a failed, paused, or interrupted session from its latest checkpoint."""

    with _cli_errors():
        result = CONTROLLER.resume(
            ResumeCommand(
                session_id=session_id,
                from_stage=from_stage,
                sessions_dir=sessions_dir,
                db_path=db_path,
            ),
        )
    _emit_result(result)


@agent_workflows.command("logs")
@click.argument("session_id")
@click.option("--follow", "-f", is_flag=True, help="Keep printing new entries while running.")
@click.option(
    "--lines",
    "-n",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
    help="Number of recent entries to show.",
)
@click.option(
    "--level",
    type=click.Choice(list(LOG_LEVELS), case_sensitive=False),
    default=None,
    help="Minimum log level.",
)
@_sessions_dir_option
def session_logs(
    session_id: str,
    follow: bool,
    lines: int,
    level: str | None,
    sessions_dir: Path | None,
) -> None:
    """Show a session's log entries."""

    with _cli_errors():
        output = CONTROLLER.logs(
            LogsCommand(
                session_id=session_id,
                follow=follow,
                lines=lines,
                level=level,
                sessions_dir=sessions_dir,
            ),
        )
    _emit_lines(output)


@agent_workflows.command("usage")
@click.option("--session", "session_id", default=None, help="Limit to one session.")
@click.option("--since", default=None, help="Window such as 7d, 24h, or an ISO timestamp.")
@click.option("--breakdown", is_flag=True, help="Include per-agent totals.")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@_sessions_dir_option
def usage_report(
    session_id: str | None,
    since: str | None,
    breakdown: bool,
    as_json: bool,
    sessions_dir: Path | None,
) -> None:
    """Resource usage per tier and agent with an estimated cost."""

    with _cli_errors():
        lines = CONTROLLER.usage(
            UsageCommand(
                session_id=session_id,
                since=since,
                breakdown=breakdown,
                as_json=as_json,
                sessions_dir=sessions_dir,
            ),
        )
    _emit_lines(lines)


@agent_workflows.command("workflows")
@click.option("--category", default=None, help="Optional category filter.")
@click.option("--json", "as_json", is_flag=True, help="Print definitions as JSON.")
def list_workflows(category: str | None, as_json: bool) -> None:
    """List predefined workflows and their stages."""

    _emit_lines(CONTROLLER.workflows(WorkflowsCommand(category=category, as_json=as_json)))


@agent_workflows.command("agents")
@click.option("--json", "as_json", is_flag=True, help="Print descriptors as JSON.")
def list_agents(as_json: bool) -> None:
    """List registered agents and their dependencies."""

    _emit_lines(CONTROLLER.agents(AgentsCommand(as_json=as_json)))


@agent_workflows.command("clean")
@click.option(
    "--days",
    type=click.IntRange(min=0),
    default=30,
    show_default=True,
    help="Delete finished sessions not updated for this many days.",
)
@click.option("--dry-run", is_flag=True, help="Only list what would be deleted.")
@_sessions_dir_option
@_db_path_option
def clean_sessions(
    days: int,
    dry_run: bool,
    sessions_dir: Path | None,
    db_path: Path | None,
) -> None:
    """Remove stale sessions and old completed tasks."""

    with _cli_errors():
        lines = CONTROLLER.clean(
            CleanCommand(days=days, dry_run=dry_run, sessions_dir=sessions_dir, db_path=db_path),
        )
    _emit_lines(lines)


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (WorkflowError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_result(result: RunResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Workflow did not complete.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_workflows()
