"""WorkflowEngine: stage scheduling, agent retries, checkpoints, cancel and resume."""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any
from uuid import uuid4

from agent_workflows.orchestrator.agents import AgentGraph
from agent_workflows.orchestrator.collaborators import (
    AgentRunner,
    AgentRunRequest,
    PullRequestClient,
    ResponseParser,
    TaskCreate,
    TaskStore,
    VcsClient,
)
from agent_workflows.orchestrator.context_serializer import serialize_context
from agent_workflows.orchestrator.errors import (
    CancellationError,
    CollaboratorError,
    ExecutionError,
    RunNotFoundError,
    StageExecutionError,
    UnknownWorkflowError,
    WorkflowError,
)
from agent_workflows.orchestrator.events import EventChannel, EventKind
from agent_workflows.orchestrator.models import (
    AgentDescriptor,
    AgentExecution,
    AgentOutput,
    AgentStatus,
    ExecutionMode,
    PrFailureMode,
    RestoredSession,
    RunStatus,
    Stage,
    WorkflowDefinition,
    WorkflowOptions,
    WorkflowRun,
)
from agent_workflows.orchestrator.response_parser import parse_agent_response, validate_output
from agent_workflows.orchestrator.sessions import SessionStore
from agent_workflows.orchestrator.tiers import TierSelector
from agent_workflows.orchestrator.workflows import PREDEFINED_WORKFLOWS, validate_workflow
from agent_workflows.storage.common import utc_now

logger = logging.getLogger(__name__)

OUTPUT_SUFFIX = "_output"
RETRIES_SUFFIX = "_retries"
GIT_BRANCH_KEY = "git_branch"
CANCELLED_MESSAGE = "Workflow cancelled"

_BRANCH_UNSAFE = re.compile(r"[^a-z0-9._-]+")


def output_key(tag: str) -> str:
    return f"{tag}{OUTPUT_SUFFIX}"


def retries_key(tag: str) -> str:
    return f"{tag}{RETRIES_SUFFIX}"


def branch_name_for(context: Mapping[str, Any]) -> str:
    """``feature/{project}/{YYYYMMDD}`` with the project slugged for git."""

    project = str(context.get("project_name") or "").strip().lower()
    slug = _BRANCH_UNSAFE.sub("-", project).strip("-.") or "app"
    return f"feature/{slug}/{utc_now():%Y%m%d}"


class WorkflowEngine:
    """Drives workflow runs stage by stage against injected collaborators.

    Live runs are held in an in-process registry. A session persisted as
    ``running`` with no registered run is a zombie; see :meth:`has_active_run`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        sessions: SessionStore,
        graph: AgentGraph,
        tier_selector: TierSelector,
        runner: AgentRunner,
        parser: ResponseParser = parse_agent_response,
        task_store: TaskStore | None = None,
        vcs: VcsClient | None = None,
        pull_requests: PullRequestClient | None = None,
        events: EventChannel | None = None,
        max_parallel_agents: int = 4,
        context_serializer: Callable[..., str] = serialize_context,
    ) -> None:
        self._sessions = sessions
        self._graph = graph
        self._tiers = tier_selector
        self._runner = runner
        self._parser = parser
        self._task_store = task_store
        self._vcs = vcs
        self._pull_requests = pull_requests
        self._events = events or sessions.events
        self._max_parallel_agents = max(1, max_parallel_agents)
        self._serialize_context = context_serializer
        self._runs: dict[str, WorkflowRun] = {}
        self._runs_lock = threading.Lock()
        self._definitions: dict[str, WorkflowDefinition] = dict(PREDEFINED_WORKFLOWS)

    @property
    def events(self) -> EventChannel:
        return self._events

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    # -- run registry ----------------------------------------------------------

    def register_workflow(self, definition: WorkflowDefinition) -> None:
        """Make a custom definition resolvable by id for start and resume."""

        validate_workflow(definition, self._graph)
        self._definitions[definition.workflow_id] = definition

    def resolve_workflow(self, workflow: str | WorkflowDefinition) -> WorkflowDefinition:
        if isinstance(workflow, WorkflowDefinition):
            self.register_workflow(workflow)
            return workflow
        definition = self._definitions.get(workflow.strip().upper())
        if definition is None:
            raise UnknownWorkflowError(workflow)
        validate_workflow(definition, self._graph)
        return definition

    def get_run(self, run_id: str) -> WorkflowRun | None:
        with self._runs_lock:
            return self._runs.get(run_id)

    def active_runs(self) -> list[WorkflowRun]:
        with self._runs_lock:
            return list(self._runs.values())

    def has_active_run(self, session_id: str) -> bool:
        with self._runs_lock:
            return any(run.session_id == session_id for run in self._runs.values())

    def _register(self, run: WorkflowRun) -> None:
        with self._runs_lock:
            self._runs[run.run_id] = run

    def _unregister(self, run: WorkflowRun) -> None:
        with self._runs_lock:
            self._runs.pop(run.run_id, None)

    # -- lifecycle -------------------------------------------------------------

    def start_workflow(
        self,
        workflow: str | WorkflowDefinition,
        context: Mapping[str, Any] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> WorkflowRun:
        definition = self.resolve_workflow(workflow)
        effective = definition.options.merged(dict(options or {}))
        initial_context = dict(context or {})
        session = self._sessions.create(
            definition.workflow_id,
            initial_context,
            effective.to_dict(),
        )
        run = WorkflowRun(
            run_id=str(uuid4()),
            workflow=definition,
            session_id=session.session_id,
            status=RunStatus.RUNNING,
            context=dict(initial_context),
        )
        self._register(run)
        self._emit(EventKind.WORKFLOW_STARTED, run, workflow_id=definition.workflow_id)
        self._log(run, "workflow_started", f"Workflow {definition.name} started")
        logger.info(
            "Run %s started workflow %s (session %s)",
            run.run_id,
            definition.workflow_id,
            run.session_id,
        )

        try:
            if effective.create_branch and self._vcs is not None:
                run.git_branch = self._vcs.create_branch(branch_name_for(run.context))
                run.context[GIT_BRANCH_KEY] = run.git_branch
                self._sessions.update_context(run.session_id, {GIT_BRANCH_KEY: run.git_branch})
                self._log(run, "branch_created", f"Created branch {run.git_branch}")
        except WorkflowError as error:
            self._fail_run(run, error)
            raise

        self._run_to_completion(run, effective)
        return run

    def resume_workflow(self, session_id: str, *, from_stage: int | None = None) -> WorkflowRun:
        """Rebuild a run from the session's durable state and finish it.

        ``from_stage`` is a zero-based stage index; agents of that stage and later
        are re-executed even if previously completed. Retry counters start fresh.
        """

        if self.has_active_run(session_id):
            raise WorkflowError(
                f"Session {session_id} already has an active run",
                session_id=session_id,
            )
        session = self._sessions.require(session_id)
        definition = self.resolve_workflow(session.workflow_id)
        if from_stage is not None and not 0 <= from_stage < len(definition.stages):
            raise ValueError(
                f"Stage index {from_stage} out of range for {definition.workflow_id} "
                f"({len(definition.stages)} stages)",
            )

        restored = self._sessions.restore(session_id)
        session = restored.session
        context = _restorable_context(session.context, restored)
        completed = list(dict.fromkeys(session.completed_agents))
        stage_index = restored.resume_stage_index
        if from_stage is not None:
            stage_index = from_stage
            rerun = {tag for stage in definition.stages[from_stage:] for tag in stage.agents}
            completed = [tag for tag in completed if tag not in rerun]

        run = WorkflowRun(
            run_id=str(uuid4()),
            workflow=definition,
            session_id=session_id,
            status=RunStatus.RUNNING,
            context=context,
            current_stage_index=stage_index,
            completed_agents=completed,
            git_branch=context.get(GIT_BRANCH_KEY),
        )
        self._register(run)
        self._emit(EventKind.WORKFLOW_RESUMED, run, stage_index=stage_index)
        self._log(
            run,
            "workflow_resumed",
            f"Resumed at stage {stage_index + 1} with {len(completed)} completed agents",
        )
        logger.info("Run %s resumed session %s at stage %d", run.run_id, session_id, stage_index)

        options = definition.options.merged(session.options)
        self._run_to_completion(run, options)
        return run

    def cancel_workflow(self, run_id: str, *, cleanup: bool = False) -> WorkflowRun:
        run = self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)

        run.status = RunStatus.CANCELLED
        run.ended_at = utc_now()
        run.error = CANCELLED_MESSAGE
        for execution in run.executions:
            if execution.status in (AgentStatus.RUNNING, AgentStatus.SPAWNING):
                execution.status = AgentStatus.FAILED
                execution.error = CANCELLED_MESSAGE
                execution.ended_at = run.ended_at

        self._log(run, "workflow_cancelled", CANCELLED_MESSAGE, level="warn")
        self._sessions.mark_failed(run.session_id, CANCELLED_MESSAGE)

        if cleanup and run.git_branch and self._vcs is not None:
            try:
                self._vcs.delete_branch(run.git_branch, force=True)
            except CollaboratorError as error:
                logger.warning("Branch cleanup failed for %s: %s", run.git_branch, error)

        self._unregister(run)
        self._emit(EventKind.WORKFLOW_CANCELLED, run, cleanup=cleanup)
        logger.info("Run %s cancelled", run_id)
        return run

    def _run_to_completion(self, run: WorkflowRun, options: WorkflowOptions) -> None:
        try:
            self.execute_workflow(run)
            if run.cancelled:
                raise CancellationError(
                    CANCELLED_MESSAGE,
                    session_id=run.session_id,
                    run_id=run.run_id,
                )
            pr_url = None
            if options.create_pr and run.git_branch and self._pull_requests is not None:
                pr_url = self._create_pull_request(
                    run,
                    options,
                    branch=run.git_branch,
                    client=self._pull_requests,
                )
        except Exception as error:
            if not run.cancelled:
                self._fail_run(run, error)
            raise

        run.status = RunStatus.COMPLETED
        run.ended_at = utc_now()
        self._sessions.mark_completed(
            run.session_id,
            {"run_id": run.run_id, "git_branch": run.git_branch, "pr_url": pr_url},
        )
        self._unregister(run)
        self._emit(EventKind.WORKFLOW_COMPLETED, run, pr_url=pr_url)
        self._log(run, "workflow_completed", "Workflow completed")
        logger.info("Run %s completed", run.run_id)

    def _fail_run(self, run: WorkflowRun, error: BaseException) -> None:
        if isinstance(error, WorkflowError):
            _attach_context(error, run)
        message = str(error) or type(error).__name__
        run.status = RunStatus.FAILED
        run.ended_at = utc_now()
        run.error = message
        self._log(run, "workflow_failed", message, level="error")
        self._sessions.mark_failed(run.session_id, message)
        self._unregister(run)
        self._emit(EventKind.WORKFLOW_FAILED, run, error=message)
        logger.error("Run %s failed: %s", run.run_id, message)

    # -- stages ----------------------------------------------------------------

    def execute_workflow(self, run: WorkflowRun) -> None:
        stages = run.workflow.stages
        for index in range(run.current_stage_index, len(stages)):
            stage = stages[index]
            if run.cancelled:
                raise CancellationError(
                    CANCELLED_MESSAGE,
                    session_id=run.session_id,
                    run_id=run.run_id,
                    stage=stage.name,
                )
            run.current_stage_index = index
            self._emit(EventKind.STAGE_STARTED, run, stage_index=index, stage=stage.name)
            self._log(run, "stage_started", f"Stage {index + 1}/{len(stages)}: {stage.name}")

            self.execute_stage(run, stage)

            self._sessions.checkpoint(
                run.session_id,
                stage_index=index,
                stage_name=stage.name,
                completed_agents=run.completed_agents,
                state={
                    "current_stage_index": index + 1,
                    "context": _checkpoint_context(run.context),
                },
            )
            run.current_stage_index = index + 1
            self._emit(EventKind.STAGE_COMPLETED, run, stage_index=index, stage=stage.name)

    def execute_stage(self, run: WorkflowRun, stage: Stage) -> list[str]:
        """Run the stage's not-yet-completed agents; returns the tags executed."""

        pending = [tag for tag in stage.agents if tag not in run.completed_agents]
        if not pending:
            self._log(run, "stage_skipped", f"Stage {stage.name}: all agents already completed")
            return []

        if stage.execution_mode == ExecutionMode.PARALLEL and len(pending) > 1:
            self._execute_parallel(run, stage, pending)
            return pending

        for tag in pending:
            try:
                self.spawn_and_execute_agent(run, tag)
            except WorkflowError as error:
                if error.stage is None:
                    error.stage = stage.name
                raise
        return pending

    def _execute_parallel(self, run: WorkflowRun, stage: Stage, pending: list[str]) -> None:
        failures: dict[str, BaseException] = {}
        workers = min(self._max_parallel_agents, len(pending))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="agent") as pool:
            futures = {pool.submit(self.spawn_and_execute_agent, run, tag): tag for tag in pending}
            for future in as_completed(futures):
                tag = futures[future]
                try:
                    future.result()
                except Exception as error:  # noqa: BLE001
                    failures[tag] = error

        if not failures:
            return
        cancelled = [error for error in failures.values() if isinstance(error, CancellationError)]
        if cancelled and len(cancelled) == len(failures):
            raise cancelled[0]
        error = StageExecutionError(stage.name, failures)
        _attach_context(error, run)
        raise error

    # -- agents ----------------------------------------------------------------

    def spawn_and_execute_agent(self, run: WorkflowRun, tag: str) -> AgentOutput:
        """Execute one agent with bounded retries; raises once retries are exhausted.

        The retry counter lives in ``run.context`` under ``{TAG}_retries``, so an agent
        with ``max_retries = n`` is attempted at most ``n + 1`` times per run.
        """

        descriptor = self._graph.get(tag)
        key = retries_key(tag)
        while True:
            retries_used = int(run.context.get(key, 0))
            try:
                return self._attempt_agent(run, descriptor, attempt=retries_used + 1)
            except ExecutionError as error:
                if run.cancelled:
                    raise CancellationError(
                        CANCELLED_MESSAGE,
                        session_id=run.session_id,
                        run_id=run.run_id,
                        agent=tag,
                    ) from error
                if retries_used >= descriptor.max_retries:
                    logger.warning(
                        "Agent %s exhausted %d retries in run %s",
                        tag,
                        descriptor.max_retries,
                        run.run_id,
                    )
                    raise
                run.context[key] = retries_used + 1
                self._emit(
                    EventKind.AGENT_RETRY,
                    run,
                    agent=tag,
                    attempt=retries_used + 2,
                    max_retries=descriptor.max_retries,
                )
                self._log(
                    run,
                    "agent_retry",
                    f"Retrying {tag} ({retries_used + 1}/{descriptor.max_retries}): {error}",
                    level="warn",
                )

    def _attempt_agent(
        self,
        run: WorkflowRun,
        descriptor: AgentDescriptor,
        *,
        attempt: int,
    ) -> AgentOutput:
        tag = descriptor.tag
        execution = AgentExecution(execution_id=str(uuid4()), agent=tag, attempt=attempt)
        run.executions.append(execution)
        try:
            tier = self._tiers.select(tag, run.context)
            execution.tier = tier
            model = self._tiers.model_for(tier)
            self._emit(EventKind.AGENT_SPAWNED, run, agent=tag, tier=tier.value, model=model)
            self._log(run, "agent_spawned", f"Spawning {tag} on {tier.value} tier ({model})")

            dependency_outputs = self._dependency_outputs(run, descriptor)
            task_context = _task_context(run.context)
            if self._task_store is not None:
                execution.task_id = self._task_store.create(
                    TaskCreate(
                        agent=tag,
                        summary=f"Execute {descriptor.name}",
                        description=descriptor.description,
                        context=task_context,
                        dependency_task_ids=self._dependency_task_ids(run, descriptor),
                        workflow_id=run.workflow.workflow_id,
                        session_id=run.session_id,
                    ),
                )
            serialized = self._serialize_context(
                agent_tag=tag,
                workflow_id=run.workflow.workflow_id,
                context=task_context,
                dependency_outputs=dependency_outputs,
                task_id=execution.task_id,
            )

            execution.status = AgentStatus.RUNNING
            started = time.monotonic()
            raw = self._runner.execute(
                AgentRunRequest(
                    agent=tag,
                    task_id=execution.task_id,
                    context=serialized,
                    tier=tier,
                    model=model,
                    timeout_seconds=descriptor.timeout_seconds,
                    prompt_file=descriptor.prompt_file,
                    shutdown_requested=lambda: run.cancelled,
                ),
            )
            if execution.status == AgentStatus.FAILED:
                raise CancellationError(CANCELLED_MESSAGE, agent=tag)

            output = self._parser(raw)
            if not output.metadata.execution_time_ms:
                output.metadata.execution_time_ms = int((time.monotonic() - started) * 1000)
            if not output.success:
                self._log(
                    run,
                    "agent_reported_problems",
                    f"{tag} output reports problems: {output.summary}",
                    level="warn",
                )
            for problem in validate_output(output):
                self._log(run, "agent_output_invalid", f"{tag} output: {problem}", level="warn")
            if self._task_store is not None and execution.task_id is not None:
                self._task_store.complete(execution.task_id, output.to_dict())
            files = output.file_artifacts()
            if files and self._vcs is not None and run.git_branch:
                self._vcs.commit_files(files, f"[{tag}] {_first_line(output.summary)}")
        except Exception as error:
            self._record_failure(run, execution, error)
            if isinstance(error, WorkflowError):
                _attach_context(error, run, agent=tag)
            raise

        run.context[output_key(tag)] = output.to_dict()
        if tag not in run.completed_agents:
            run.completed_agents.append(tag)
        execution.status = AgentStatus.COMPLETED
        execution.output = output
        execution.ended_at = utc_now()
        self._sessions.record_agent_execution(
            run.session_id,
            execution,
            context_updates={output_key(tag): run.context[output_key(tag)]},
        )
        self._emit(
            EventKind.AGENT_COMPLETED,
            run,
            agent=tag,
            resource_units=output.metadata.resource_units,
            execution_time_ms=execution.duration_ms,
        )
        self._log(run, "agent_completed", f"{tag} completed: {_first_line(output.summary)}")
        return output

    def _record_failure(
        self,
        run: WorkflowRun,
        execution: AgentExecution,
        error: BaseException,
    ) -> None:
        message = str(error) or type(error).__name__
        execution.status = AgentStatus.FAILED
        execution.error = message
        execution.ended_at = utc_now()
        if self._task_store is not None and execution.task_id is not None:
            try:
                self._task_store.fail(execution.task_id, message)
            except CollaboratorError as task_error:
                logger.warning("Could not mark task %s failed: %s", execution.task_id, task_error)
        self._sessions.record_agent_execution(run.session_id, execution)
        self._emit(EventKind.AGENT_FAILED, run, agent=execution.agent, error=message)
        self._log(
            run,
            "agent_failed",
            f"{execution.agent} failed (attempt {execution.attempt}): {message}",
            level="error",
        )

    def _dependency_outputs(
        self,
        run: WorkflowRun,
        descriptor: AgentDescriptor,
    ) -> dict[str, AgentOutput]:
        outputs: dict[str, AgentOutput] = {}
        for dependency in descriptor.dependencies:
            payload = run.context.get(output_key(dependency))
            if isinstance(payload, dict):
                outputs[dependency] = AgentOutput.from_dict(payload)
        return outputs

    def _dependency_task_ids(
        self,
        run: WorkflowRun,
        descriptor: AgentDescriptor,
    ) -> tuple[str, ...]:
        return tuple(
            execution.task_id
            for execution in run.executions
            if execution.agent in descriptor.dependencies
            and execution.status == AgentStatus.COMPLETED
            and execution.task_id is not None
        )

    # -- pull requests ---------------------------------------------------------

    def _create_pull_request(
        self,
        run: WorkflowRun,
        options: WorkflowOptions,
        *,
        branch: str,
        client: PullRequestClient,
    ) -> str | None:
        title = f"[{run.workflow.workflow_id}] {run.context.get('project_name') or 'Generated App'}"
        try:
            url = client.create_pull_request(
                branch,
                title=title,
                body=build_pr_body(run),
                draft=options.draft_pr,
            )
        except CollaboratorError as error:
            if options.pr_failure_mode == PrFailureMode.FAIL:
                raise
            logger.warning("Pull request creation failed for run %s: %s", run.run_id, error)
            self._log(run, "pr_failed", f"Pull request creation failed: {error}", level="warn")
            self._emit(EventKind.PR_FAILED, run, error=str(error))
            return None

        self._log(run, "pr_created", f"Pull request created: {url}")
        self._emit(EventKind.PR_CREATED, run, url=url)
        return url

    # -- notifications ---------------------------------------------------------

    def _emit(self, kind: EventKind, run: WorkflowRun, **payload: Any) -> None:
        self._events.emit(kind, session_id=run.session_id, run_id=run.run_id, **payload)

    def _log(self, run: WorkflowRun, event: str, message: str, *, level: str = "info") -> None:
        self._sessions.add_log(
            run.session_id,
            event,
            message,
            level=level,
            data={"run_id": run.run_id},
        )


def build_pr_body(run: WorkflowRun) -> str:
    """Markdown pull request description summarizing agent results."""

    definition = run.workflow
    lines = [
        f"## {definition.name}",
        "",
        definition.description,
        "",
        "### Agents executed",
        "",
    ]
    for tag in definition.agents():
        marker = "✅" if tag in run.completed_agents else "❌"
        lines.append(f"- {marker} {tag}")

    summaries = []
    for tag in definition.agents():
        payload = run.context.get(output_key(tag))
        if isinstance(payload, dict) and payload.get("summary"):
            summaries.append(f"**{tag}**: {payload['summary']}")
    if summaries:
        lines.extend(["", "### Summaries", "", *summaries])
    return "\n".join(lines).strip() + "\n"


def _task_context(context: Mapping[str, Any]) -> dict[str, Any]:
    return {
        key: value
        for key, value in context.items()
        if not key.endswith((OUTPUT_SUFFIX, RETRIES_SUFFIX))
    }


def _checkpoint_context(context: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in context.items() if not key.endswith(RETRIES_SUFFIX)}


def _restorable_context(
    context: Mapping[str, Any],
    restored: RestoredSession,
) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    checkpoint = restored.latest_checkpoint
    if checkpoint is not None and isinstance(checkpoint.state.get("context"), dict):
        merged.update(checkpoint.state["context"])
    merged.update(context)
    return _checkpoint_context(merged)


def _attach_context(error: WorkflowError, run: WorkflowRun, *, agent: str | None = None) -> None:
    if error.session_id is None:
        error.session_id = run.session_id
    if error.run_id is None:
        error.run_id = run.run_id
    if agent is not None and error.agent is None:
        error.agent = agent


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()[:120]
    return ""
