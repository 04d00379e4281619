"""Controllers for workflow CLI commands."""

from __future__ import annotations

import json
import logging
import queue
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_workflows.config import Settings
from agent_workflows.orchestrator.agents import AgentGraph, build_default_graph
from agent_workflows.orchestrator.backend import CliAgentRunner
from agent_workflows.orchestrator.collaborators import AgentRunner, PullRequestClient, VcsClient
from agent_workflows.orchestrator.engine import GIT_BRANCH_KEY, WorkflowEngine
from agent_workflows.orchestrator.errors import CancellationError, CollaboratorError, WorkflowError
from agent_workflows.orchestrator.events import EventKind, WorkflowEvent
from agent_workflows.orchestrator.models import LogEntry, Session, SessionStatus, Tier
from agent_workflows.orchestrator.sessions import JsonFileSessionStorage, SessionStore
from agent_workflows.orchestrator.task_store import SqlTaskStore
from agent_workflows.orchestrator.tiers import TierSelector
from agent_workflows.orchestrator.usage import ModelPricing, parse_since, summarize_usage
from agent_workflows.orchestrator.vcs import GhPullRequestClient, GitClient
from agent_workflows.orchestrator.workflows import PREDEFINED_WORKFLOWS

logger = logging.getLogger(__name__)

ZOMBIE_CANCEL_MESSAGE = "Cancelled - zombie session cleanup"
_TERMINAL_STATUSES = (SessionStatus.COMPLETED, SessionStatus.FAILED)
_PROGRESS_QUEUE_SIZE = 1000


@dataclass(slots=True)
class RunCommand:
    """CLI input for starting a workflow."""

    workflow: str
    project: str
    description: str
    max_tier: str | None = None
    complexity: str | None = None
    no_branch: bool = False
    no_pr: bool = False
    dry_run: bool = False
    sessions_dir: Path | None = None
    db_path: Path | None = None


@dataclass(slots=True)
class StatusCommand:
    session_id: str
    verbose: bool = False
    as_json: bool = False
    sessions_dir: Path | None = None


@dataclass(slots=True)
class ListCommand:
    """CLI input for session listing."""

    show_all: bool = False
    zombies_only: bool = False
    status: str | None = None
    workflow: str | None = None
    limit: int = 20
    sessions_dir: Path | None = None


@dataclass(slots=True)
class CancelCommand:
    session_id: str
    force: bool = False
    cleanup: bool = False
    sessions_dir: Path | None = None


@dataclass(slots=True)
class ResumeCommand:
    """CLI input for resuming a session; ``from_stage`` is 1-based."""

    session_id: str
    from_stage: int | None = None
    sessions_dir: Path | None = None
    db_path: Path | None = None


@dataclass(slots=True)
class LogsCommand:
    session_id: str
    follow: bool = False
    lines: int = 50
    level: str | None = None
    sessions_dir: Path | None = None


@dataclass(slots=True)
class UsageCommand:
    """CLI input for the resource usage report."""

    session_id: str | None = None
    since: str | None = None
    breakdown: bool = False
    as_json: bool = False
    sessions_dir: Path | None = None


@dataclass(slots=True)
class WorkflowsCommand:
    category: str | None = None
    as_json: bool = False


@dataclass(slots=True)
class AgentsCommand:
    as_json: bool = False


@dataclass(slots=True)
class CleanCommand:
    days: int | None = None
    dry_run: bool = False
    sessions_dir: Path | None = None
    db_path: Path | None = None


@dataclass(slots=True)
class RunResult:
    """Lines to render plus the overall outcome."""

    lines: list[str]
    success: bool
    session_id: str | None = None


@dataclass(slots=True)
class _CancelRequests:
    """Run ids seen on this process and the cancel threads spawned for them."""

    run_ids: list[str] = field(default_factory=list)
    threads: list[threading.Thread] = field(default_factory=list)


class WorkflowCliController:
    """Builds the engine and its collaborators per command and renders results.

    Collaborators can be injected for embedding and tests; otherwise they are
    built from :class:`Settings`.
    """

    def __init__(
        self,
        *,
        runner: AgentRunner | None = None,
        vcs: VcsClient | None = None,
        pull_requests: PullRequestClient | None = None,
        echo: Callable[[str], None] | None = None,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self._runner = runner
        self._vcs = vcs
        self._pull_requests = pull_requests
        self._echo = echo or (lambda _line: None)
        self._poll_interval_seconds = poll_interval_seconds
        self._engine: WorkflowEngine | None = None

    # -- run / resume ----------------------------------------------------------

    def run(self, command: RunCommand) -> RunResult:
        settings = _settings(command.sessions_dir, command.db_path)
        graph = build_default_graph()
        selector = TierSelector.from_settings(graph, settings.tiers)
        if command.max_tier:
            selector.configure(max_tier=Tier(command.max_tier.strip().lower()))

        context: dict[str, Any] = {
            "project_name": command.project,
            "description": command.description,
        }
        if command.complexity:
            context["complexity"] = command.complexity.strip().lower()

        if command.dry_run:
            return RunResult(
                lines=_dry_run_lines(command.workflow, selector, graph, context),
                success=True,
            )

        options = {"create_branch": not command.no_branch, "create_pr": not command.no_pr}
        with self._workflow_engine(settings, selector=selector, graph=graph) as engine:
            return self._drive(
                engine,
                lambda: engine.start_workflow(command.workflow, context, options),
            )

    def resume(self, command: ResumeCommand) -> RunResult:
        settings = _settings(command.sessions_dir, command.db_path)
        from_stage = command.from_stage - 1 if command.from_stage is not None else None
        with self._workflow_engine(settings) as engine:
            return self._drive(
                engine,
                lambda: engine.resume_workflow(command.session_id, from_stage=from_stage),
            )

    def _drive(self, engine: WorkflowEngine, start: Callable[[], object]) -> RunResult:
        requests = _CancelRequests()
        session_ids: list[str] = []

        def _track(event: WorkflowEvent) -> None:
            if event.kind in (EventKind.WORKFLOW_STARTED, EventKind.WORKFLOW_RESUMED):
                if event.run_id is not None:
                    requests.run_ids.append(event.run_id)
                if event.session_id is not None:
                    session_ids.append(event.session_id)

        unsubscribe = engine.events.subscribe(_track)
        progress = engine.events.open_queue(maxsize=_PROGRESS_QUEUE_SIZE)
        finished = threading.Event()
        printer = threading.Thread(
            target=self._print_progress,
            args=(progress, finished),
            daemon=True,
        )
        printer.start()
        try:
            with _signal_handlers(engine, requests):
                start()
        except CancellationError as error:
            return RunResult(
                lines=[f"Workflow cancelled: {error}", *_resume_hint(error.session_id)],
                success=False,
                session_id=error.session_id,
            )
        except WorkflowError as error:
            session_id = error.session_id or (session_ids[-1] if session_ids else None)
            lines = [f"Workflow failed: {error}"]
            if session_id is not None:
                lines.append(f"Session: {session_id}")
                if engine.sessions.is_resumable(session_id):
                    lines.extend(_resume_hint(session_id))
            return RunResult(lines=lines, success=False, session_id=session_id)
        finally:
            unsubscribe()
            engine.events.close_queue(progress)
            finished.set()
            printer.join(timeout=5)

        session_id = session_ids[-1] if session_ids else None
        lines = ["Workflow completed."]
        if session_id is not None:
            session = engine.sessions.require(session_id)
            result = session.result or {}
            lines.append(f"Session: {session_id}")
            lines.append(f"Agents completed: {', '.join(session.completed_agents) or '-'}")
            if result.get("git_branch"):
                lines.append(f"Branch: {result['git_branch']}")
            if result.get("pr_url"):
                lines.append(f"Pull request: {result['pr_url']}")
            lines.append(f"Resource units: {session.metadata.total_resource_units}")
        return RunResult(lines=lines, success=True, session_id=session_id)

    def _print_progress(
        self,
        progress: queue.Queue[WorkflowEvent],
        finished: threading.Event,
    ) -> None:
        """Echo progress lines off the engine threads until the run ends and the queue drains."""

        while not (finished.is_set() and progress.empty()):
            try:
                event = progress.get(timeout=0.1)
            except queue.Empty:
                continue
            line = _progress_line(event)
            if line is not None:
                self._echo(line)

    # -- inspection ------------------------------------------------------------

    def status(self, command: StatusCommand) -> list[str]:
        store = _session_store(_settings(command.sessions_dir))
        session = store.require(command.session_id)
        zombie = self._is_zombie(session)
        if command.as_json:
            payload = session.to_record()
            payload["zombie"] = zombie
            payload["resumable"] = store.is_resumable(session.session_id)
            return [json.dumps(payload, indent=2, ensure_ascii=False)]

        definition = PREDEFINED_WORKFLOWS.get(session.workflow_id)
        total_stages = len(definition.stages) if definition is not None else "?"
        status = session.status.value + (" (zombie: no live run)" if zombie else "")
        lines = [
            f"Session: {session.session_id}",
            f"Workflow: {session.workflow_id}",
            f"Status: {status}",
            f"Stage: {session.current_stage}/{total_stages}",
            f"Completed agents: {', '.join(session.completed_agents) or '-'}",
            f"Checkpoints: {len(session.checkpoints)}",
            f"Created: {session.created_at.isoformat()}",
            f"Updated: {session.updated_at.isoformat()}",
            f"Resource units: {session.metadata.total_resource_units}",
            f"Execution time: {session.metadata.total_execution_time_ms / 1000:.1f}s",
        ]
        branch = session.context.get(GIT_BRANCH_KEY)
        if branch:
            lines.append(f"Branch: {branch}")
        if session.error:
            lines.append(f"Error: {session.error}")
        if command.verbose:
            lines.append("Agent executions:")
            for record in session.metadata.agent_executions:
                lines.append(
                    f"  {record.get('agent')} attempt={record.get('attempt')} "
                    f"status={record.get('status')} tier={record.get('tier') or '-'} "
                    f"units={record.get('resource_units', 0)} "
                    f"time_ms={record.get('execution_time_ms', 0)}"
                    + (f" error={record['error']}" if record.get("error") else ""),
                )
            lines.append("Recent logs:")
            lines.extend(f"  {_format_log(entry)}" for entry in session.logs[-10:])
        if zombie:
            lines.append(
                f"Hint: cancel with `agent-workflows cancel {session.session_id}` "
                "or resume it.",
            )
        if store.is_resumable(session.session_id) or zombie:
            lines.extend(_resume_hint(session.session_id))
        return lines

    def list_sessions(self, command: ListCommand) -> list[str]:
        store = _session_store(_settings(command.sessions_dir))
        status = SessionStatus(command.status.strip().lower()) if command.status else None
        workflow_id = command.workflow.strip().upper() if command.workflow else None
        everything = store.list_sessions(workflow_id=workflow_id)
        zombies = [session for session in everything if self._is_zombie(session)]

        if command.zombies_only:
            selected = zombies
        elif status is not None:
            selected = [session for session in everything if session.status == status]
        elif command.show_all:
            selected = everything
        else:
            selected = [
                session for session in everything if session.status != SessionStatus.COMPLETED
            ]

        counts = {item.value: 0 for item in SessionStatus}
        for session in everything:
            counts[session.status.value] += 1
        lines = [
            f"Sessions: {len(everything)} "
            + " ".join(f"{name}={count}" for name, count in counts.items()),
        ]
        zombie_ids = {session.session_id for session in zombies}
        for session in selected[: max(0, command.limit)]:
            marker = " zombie" if session.session_id in zombie_ids else ""
            lines.append(
                f"  {session.session_id} workflow={session.workflow_id} "
                f"status={session.status.value}{marker} stage={session.current_stage} "
                f"agents={len(session.completed_agents)} "
                f"created={session.created_at.isoformat()}",
            )
        if len(selected) > command.limit:
            lines.append(f"  ... {len(selected) - command.limit} more (use --limit)")
        if zombies:
            lines.append(
                f"Warning: {len(zombies)} zombie session(s) marked running without a live run. "
                "Cancel them with `agent-workflows cancel <session-id>`.",
            )
        return lines

    def logs(self, command: LogsCommand) -> list[str]:
        settings = _settings(command.sessions_dir)
        store = _session_store(settings)
        entries = store.get_logs(command.session_id, level=command.level, limit=command.lines)
        lines = [_format_log(entry) for entry in entries]
        if not command.follow:
            return lines or [f"No logs for session {command.session_id}"]

        for line in lines:
            self._echo(line)
        last_seen = entries[-1].timestamp if entries else None
        storage = JsonFileSessionStorage(settings.sessions_dir)
        while True:
            record = storage.load(command.session_id)
            if record is None:
                return [f"Session {command.session_id} was deleted"]
            session = Session.from_record(record)
            fresh = SessionStore.filter_logs(session.logs, level=command.level)
            for entry in fresh:
                if last_seen is None or entry.timestamp > last_seen:
                    self._echo(_format_log(entry))
                    last_seen = entry.timestamp
            if session.status != SessionStatus.RUNNING:
                return [f"Session {command.session_id} is {session.status.value}"]
            time.sleep(self._poll_interval_seconds)

    def usage(self, command: UsageCommand) -> list[str]:
        settings = _settings(command.sessions_dir)
        store = _session_store(settings)
        if command.session_id:
            sessions = [store.require(command.session_id)]
        else:
            sessions = store.list_sessions()
        since = parse_since(command.since) if command.since else None
        summary = summarize_usage(
            sessions,
            since,
            pricing=ModelPricing.from_settings(settings.pricing),
        )
        if command.as_json:
            return [json.dumps(summary.to_dict(), indent=2, ensure_ascii=False)]

        lines = [
            f"Sessions: {summary.sessions}",
            f"Agent executions: {summary.total.executions} (failed: {summary.total.failures})",
            f"Resource units: {summary.total.resource_units}",
            f"Execution time: {summary.total.execution_time_ms / 1000:.1f}s",
            f"Estimated cost: ${summary.estimated_cost_usd:.4f}",
        ]
        lines.append("By tier:")
        for tier, bucket in sorted(summary.by_tier.items()):
            lines.append(
                f"  {tier}: executions={bucket.executions} units={bucket.resource_units}",
            )
        if command.breakdown:
            lines.append("By agent:")
            for agent, bucket in sorted(summary.by_agent.items()):
                lines.append(
                    f"  {agent}: executions={bucket.executions} units={bucket.resource_units} "
                    f"time_ms={bucket.execution_time_ms} failures={bucket.failures}",
                )
        return lines

    def workflows(self, command: WorkflowsCommand) -> list[str]:
        definitions = [
            definition
            for definition in PREDEFINED_WORKFLOWS.values()
            if command.category is None or definition.category == command.category
        ]
        if command.as_json:
            payload = [
                {
                    "id": definition.workflow_id,
                    "name": definition.name,
                    "category": definition.category,
                    "description": definition.description,
                    "stages": [
                        {
                            "name": stage.name,
                            "agents": list(stage.agents),
                            "execution_mode": stage.execution_mode.value,
                        }
                        for stage in definition.stages
                    ],
                    "options": definition.options.to_dict(),
                }
                for definition in definitions
            ]
            return [json.dumps(payload, indent=2, ensure_ascii=False)]

        lines = [f"Workflows: {len(definitions)}"]
        for definition in definitions:
            lines.append(
                f"  {definition.workflow_id} ({definition.category}): {definition.name}",
            )
            for index, stage in enumerate(definition.stages, start=1):
                lines.append(
                    f"    {index}. {stage.name} [{stage.execution_mode.value}] "
                    f"{', '.join(stage.agents)}",
                )
        return lines

    def agents(self, command: AgentsCommand) -> list[str]:
        graph = build_default_graph()
        descriptors = [graph.get(tag) for tag in graph.tags()]
        if command.as_json:
            payload = [
                {
                    "tag": descriptor.tag,
                    "name": descriptor.name,
                    "dependencies": list(descriptor.dependencies),
                    "default_tier": descriptor.default_tier.value,
                    "max_retries": descriptor.max_retries,
                    "timeout_seconds": descriptor.timeout_seconds,
                    "capabilities": list(descriptor.capabilities),
                }
                for descriptor in descriptors
            ]
            return [json.dumps(payload, indent=2, ensure_ascii=False)]

        lines = [f"Agents: {len(descriptors)}"]
        for descriptor in descriptors:
            requires = ", ".join(descriptor.dependencies) or "-"
            lines.append(
                f"  {descriptor.tag:<8} {descriptor.name} tier={descriptor.default_tier.value} "
                f"retries={descriptor.max_retries} requires={requires}",
            )
        return lines

    # -- mutation --------------------------------------------------------------

    def cancel(self, command: CancelCommand) -> list[str]:
        settings = _settings(command.sessions_dir)
        store = _session_store(settings)
        session = store.require(command.session_id)

        if session.status in _TERMINAL_STATUSES and not command.force:
            return [
                f"Session {session.session_id} is already {session.status.value}; "
                "use --force to mark it cancelled anyway.",
            ]

        engine = self._engine
        if engine is not None:
            for run in engine.active_runs():
                if run.session_id == session.session_id:
                    engine.cancel_workflow(run.run_id, cleanup=command.cleanup)
                    return [f"Cancelled run {run.run_id} for session {session.session_id}"]

        store.mark_failed(session.session_id, ZOMBIE_CANCEL_MESSAGE)
        store.add_log(
            session.session_id,
            "session_cancelled",
            ZOMBIE_CANCEL_MESSAGE,
            level="warn",
        )
        lines = [f"Session {session.session_id} marked failed: {ZOMBIE_CANCEL_MESSAGE}"]
        branch = session.context.get(GIT_BRANCH_KEY)
        if command.cleanup and branch:
            vcs = self._vcs or GitClient(settings.engine.repo_root)
            try:
                vcs.delete_branch(branch, force=True)
            except CollaboratorError as error:
                logger.warning("Branch cleanup failed for %s: %s", branch, error)
                lines.append(f"Branch cleanup failed: {error}")
            else:
                lines.append(f"Deleted branch {branch}")
        return lines

    def clean(self, command: CleanCommand) -> list[str]:
        settings = _settings(command.sessions_dir, command.db_path)
        days = command.days if command.days is not None else settings.engine.session_retention_days
        store = _session_store(settings)
        removed = store.cleanup(days, dry_run=command.dry_run)
        verb = "Would delete" if command.dry_run else "Deleted"
        lines = [f"{verb} {len(removed)} session(s) older than {days} days"]
        lines.extend(f"  {session_id}" for session_id in removed)
        if not command.dry_run and settings.db_path.exists():
            task_store = SqlTaskStore(settings.db_path)
            try:
                lines.append(f"Deleted {task_store.cleanup(days)} completed task(s)")
            finally:
                task_store.close()
        return lines

    # -- wiring ----------------------------------------------------------------

    @contextmanager
    def _workflow_engine(
        self,
        settings: Settings,
        *,
        selector: TierSelector | None = None,
        graph: AgentGraph | None = None,
    ) -> Iterator[WorkflowEngine]:
        graph = graph or build_default_graph()
        selector = selector or TierSelector.from_settings(graph, settings.tiers)
        task_store = SqlTaskStore(settings.db_path)
        task_store.init_schema()
        git = GitClient(settings.engine.repo_root)
        engine = WorkflowEngine(
            sessions=_session_store(settings),
            graph=graph,
            tier_selector=selector,
            runner=self._runner or CliAgentRunner.from_settings(settings.runner),
            task_store=task_store,
            vcs=self._vcs or git,
            pull_requests=self._pull_requests
            or GhPullRequestClient(git, base_branch=settings.engine.base_branch),
            max_parallel_agents=settings.engine.max_parallel_agents,
        )
        self._engine = engine
        try:
            yield engine
        finally:
            self._engine = None
            task_store.close()

    def _is_zombie(self, session: Session) -> bool:
        if session.status != SessionStatus.RUNNING:
            return False
        engine = self._engine
        return engine is None or not engine.has_active_run(session.session_id)


def _settings(sessions_dir: Path | None = None, db_path: Path | None = None) -> Settings:
    settings = Settings.from_env(sessions_dir=sessions_dir, db_path=db_path)
    settings.validate()
    return settings


def _session_store(settings: Settings) -> SessionStore:
    return SessionStore(
        JsonFileSessionStorage(settings.sessions_dir),
        log_ring_size=settings.engine.log_ring_size,
    )


def _dry_run_lines(
    workflow_id: str,
    selector: TierSelector,
    graph: AgentGraph,
    context: dict[str, Any],
) -> list[str]:
    definition = PREDEFINED_WORKFLOWS.get(workflow_id.strip().upper())
    if definition is None:
        raise ValueError(
            f"Unknown workflow: {workflow_id}. Available: {', '.join(PREDEFINED_WORKFLOWS)}",
        )
    lines = [
        f"Dry run: {definition.workflow_id} - {definition.name}",
        f"Project: {context['project_name']}",
        f"Max tier: {selector.max_tier.value}",
    ]
    for index, stage in enumerate(definition.stages, start=1):
        agents = ", ".join(
            f"{tag}({selector.select(tag, context).value})" for tag in stage.agents
        )
        lines.append(f"  {index}. {stage.name} [{stage.execution_mode.value}] {agents}")
    estimate = selector.estimate_cost(definition.agents(), context=context)
    lines.append(
        f"Estimated cost: weight={estimate.total_weight} "
        f"relative={estimate.relative_cost:.2f} units~{estimate.estimated_units}",
    )
    missing = [
        str(item) for item in graph.validate_satisfied(definition.agents(), completed=())
    ]
    if missing:
        lines.append(f"Note: external prerequisites: {'; '.join(missing)}")
    return lines


def _progress_line(event: WorkflowEvent) -> str | None:  # noqa: PLR0911
    payload = event.payload
    if event.kind == EventKind.WORKFLOW_STARTED:
        return f"Session {event.session_id} started ({payload.get('workflow_id')})"
    if event.kind == EventKind.WORKFLOW_RESUMED:
        return f"Session {event.session_id} resumed at stage {payload.get('stage_index', 0) + 1}"
    if event.kind == EventKind.STAGE_STARTED:
        return f"Stage {payload.get('stage_index', 0) + 1}: {payload.get('stage')}"
    if event.kind == EventKind.AGENT_SPAWNED:
        return f"  {payload.get('agent')} spawned on {payload.get('tier')} ({payload.get('model')})"
    if event.kind == EventKind.AGENT_COMPLETED:
        return f"  {payload.get('agent')} completed in {payload.get('execution_time_ms', 0)}ms"
    if event.kind == EventKind.AGENT_RETRY:
        return f"  {payload.get('agent')} retry attempt {payload.get('attempt')}"
    if event.kind == EventKind.AGENT_FAILED:
        return f"  {payload.get('agent')} failed: {payload.get('error')}"
    if event.kind == EventKind.PR_CREATED:
        return f"Pull request: {payload.get('url')}"
    if event.kind == EventKind.PR_FAILED:
        return f"Pull request failed: {payload.get('error')}"
    return None


def _format_log(entry: LogEntry) -> str:
    return f"{entry.timestamp.isoformat()} [{entry.level.upper()}] {entry.event}: {entry.message}"


def _resume_hint(session_id: str | None) -> list[str]:
    if session_id is None:
        return []
    return [f"Hint: resume with `agent-workflows resume {session_id}`"]


@contextmanager
def _signal_handlers(engine: WorkflowEngine, requests: _CancelRequests) -> Iterator[None]:
    """Cancel the tracked runs on SIGINT/SIGTERM.

    Cancellation runs on a helper thread because the interrupted main thread may
    hold engine locks; the threads are joined before the context exits.
    """

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _cancel(run_id: str) -> None:
        try:
            engine.cancel_workflow(run_id)
        except WorkflowError as error:
            logger.warning("Cancel of run %s failed: %s", run_id, error)

    def _handler(signum: int, _: object | None) -> None:
        logger.warning("Received %s, cancelling workflow", signal.Signals(signum).name)
        for run_id in list(requests.run_ids):
            thread = threading.Thread(target=_cancel, args=(run_id,), daemon=True)
            requests.threads.append(thread)
            thread.start()

    installed = False
    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        installed = True
    except ValueError:
        # Signal handlers can only be installed in main thread.
        installed = False
    try:
        yield
    finally:
        for thread in requests.threads:
            thread.join(timeout=10)
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
