from __future__ import annotations

import allure
import pytest

from agent_workflows.orchestrator.agents import AgentGraph
from agent_workflows.orchestrator.context_serializer import deserialize_context
from agent_workflows.orchestrator.errors import (
    AgentExecutionError,
    CancellationError,
    CollaboratorError,
    SessionAlreadyCompletedError,
    StageExecutionError,
    UnknownWorkflowError,
)
from agent_workflows.orchestrator.events import EventKind, WorkflowEvent
from agent_workflows.orchestrator.models import (
    AgentDescriptor,
    ExecutionMode,
    SessionStatus,
    Stage,
    Tier,
    WorkflowDefinition,
    WorkflowOptions,
)
from agent_workflows.orchestrator.tiers import TierSelector
from conftest import ABC_WORKFLOW, ALWAYS, FakePullRequests, FakeVcs, abc_graph

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Stage Scheduling, Retries, Resume"),
]


def _collect(engine) -> list[WorkflowEvent]:
    events: list[WorkflowEvent] = []
    engine.events.subscribe(events.append)
    return events


def test_bug_fix_workflow_runs_every_stage_and_opens_pull_request(
    make_engine,
    fake_runner,
    fake_tasks,
    fake_vcs,
    fake_prs,
    session_store,
) -> None:
    fake_runner.responses["DEV_BACKEND"] = {
        "success": True,
        "summary": "Fixed the null check",
        "artifacts": [{"path": "src/api.py", "content": "print('ok')\n"}],
        "tokensUsed": 250,
    }
    engine = make_engine()

    run = engine.start_workflow("bug_fix", {"project_name": "Demo App"})

    session = session_store.require(run.session_id)
    assert session.status == SessionStatus.COMPLETED
    assert set(session.completed_agents) == {"PM", "DEV_FRONTEND", "DEV_BACKEND", "TEST"}
    assert session.completed_agents[0] == "PM"
    assert session.completed_agents[-1] == "TEST"
    assert len(session.checkpoints) == 3
    assert [checkpoint.stage_index for checkpoint in session.checkpoints] == [0, 1, 2]
    assert fake_vcs.branches and fake_vcs.branches[0].startswith("feature/demo-app/")
    assert fake_vcs.commits == [(["src/api.py"], "[DEV_BACKEND] Fixed the null check")]
    assert fake_prs.requests[0]["draft"] is False
    assert "[BUG_FIX]" in fake_prs.requests[0]["title"]
    assert session.result is not None
    assert session.result["pr_url"] == "https://example.com/pr/1"
    assert fake_tasks.statuses() == ["completed"] * 4
    assert session.metadata.total_resource_units == 100 * 3 + 250
    assert not engine.has_active_run(run.session_id)


def test_dependent_task_references_dependency_tasks(make_engine, fake_tasks) -> None:
    engine = make_engine()

    engine.start_workflow("BUG_FIX", {"project_name": "Demo"})

    test_task = next(
        task for task in fake_tasks.tasks.values() if task["payload"].agent == "TEST"
    )
    dependency_agents = {
        fake_tasks.tasks[task_id]["payload"].agent
        for task_id in test_task["payload"].dependency_task_ids
    }
    assert dependency_agents == {"DEV_FRONTEND", "DEV_BACKEND"}


def test_retry_bound_attempts_agent_once_plus_max_retries(
    make_engine,
    fake_runner,
    session_store,
) -> None:
    fake_runner.failures["A"] = ALWAYS
    engine = make_engine(graph=abc_graph(max_retries=2))
    events = _collect(engine)

    with pytest.raises(AgentExecutionError) as raised:
        engine.start_workflow(ABC_WORKFLOW)

    assert fake_runner.attempts("A") == 3
    assert raised.value.agent == "A"
    assert raised.value.stage == "First"
    assert [event.kind for event in events].count(EventKind.AGENT_RETRY) == 2
    session = session_store.require(raised.value.session_id)
    assert session.status == SessionStatus.FAILED
    assert session.error == "A crashed"
    assert not session_store.is_resumable(session.session_id)
    assert sum(1 for entry in session.logs if entry.event == "agent_failed") == 3


def test_transient_failure_is_retried_and_counter_not_checkpointed(
    make_engine,
    fake_runner,
    session_store,
) -> None:
    fake_runner.failures["A"] = 1
    engine = make_engine(graph=abc_graph())

    run = engine.start_workflow(ABC_WORKFLOW)

    assert fake_runner.attempts("A") == 2
    session = session_store.require(run.session_id)
    assert session.status == SessionStatus.COMPLETED
    assert "A_retries" not in session.checkpoints[0].state["context"]
    assert "A_retries" not in session.context
    attempts = [
        record["attempt"]
        for record in session.metadata.agent_executions
        if record["agent"] == "A"
    ]
    assert attempts == [1, 2]


def test_parallel_failure_keeps_checkpoint_and_session_resumable(
    make_engine,
    fake_runner,
    session_store,
) -> None:
    fake_runner.failures["C"] = ALWAYS
    engine = make_engine(graph=abc_graph(max_retries=2))

    with pytest.raises(StageExecutionError) as raised:
        engine.start_workflow(ABC_WORKFLOW, {"project_name": "Demo"})

    error = raised.value
    assert set(error.failures) == {"C"}
    assert error.stage == "Fan out"
    assert fake_runner.attempts("B") == 1
    assert fake_runner.attempts("C") == 3

    for call in fake_runner.calls:
        if call.agent in {"B", "C"}:
            parsed = deserialize_context(call.context)
            assert parsed["dependency_outputs"]["A"]["summary"] == "A done"
            assert parsed["context"]["project_name"] == "Demo"

    session = session_store.require(error.session_id)
    assert session.status == SessionStatus.FAILED
    assert [checkpoint.stage_index for checkpoint in session.checkpoints] == [0]
    assert session.checkpoints[0].completed_agents == ("A",)
    assert session_store.is_resumable(session.session_id)


def test_resume_skips_completed_agents_and_finishes(
    make_engine,
    fake_runner,
    session_store,
) -> None:
    fake_runner.failures["C"] = ALWAYS
    engine = make_engine(graph=abc_graph(max_retries=1))
    with pytest.raises(StageExecutionError) as raised:
        engine.start_workflow(ABC_WORKFLOW)
    session_id = raised.value.session_id
    fake_runner.failures.clear()
    fake_runner.calls.clear()

    engine.resume_workflow(session_id)

    assert [call.agent for call in fake_runner.calls] == ["C"]
    session = session_store.require(session_id)
    assert session.status == SessionStatus.COMPLETED
    assert set(session.completed_agents) == {"A", "B", "C"}
    resumed_context = deserialize_context(fake_runner.calls[0].context)
    assert resumed_context["dependency_outputs"]["A"]["summary"] == "A done"


def test_resume_keeps_outputs_of_agents_finished_before_stage_failure(
    make_engine,
    fake_runner,
    session_store,
) -> None:
    graph = AgentGraph(
        [
            AgentDescriptor(tag="A", name="Agent A", max_retries=0),
            AgentDescriptor(tag="B", name="Agent B", dependencies=("A",), max_retries=0),
            AgentDescriptor(tag="C", name="Agent C", dependencies=("A",), max_retries=0),
            AgentDescriptor(tag="D", name="Agent D", dependencies=("B",), max_retries=0),
        ],
    )
    workflow = WorkflowDefinition(
        workflow_id="ABCD",
        name="A, then B and C, then D",
        stages=(
            Stage("First", ("A",), ExecutionMode.SEQUENTIAL),
            Stage("Fan out", ("B", "C"), ExecutionMode.PARALLEL, depends_on="First"),
            Stage("Last", ("D",), ExecutionMode.SEQUENTIAL, depends_on="Fan out"),
        ),
        options=WorkflowOptions(create_pr=False, create_branch=False),
    )
    fake_runner.failures["C"] = ALWAYS
    engine = make_engine(graph=graph)
    with pytest.raises(StageExecutionError) as raised:
        engine.start_workflow(workflow)
    session_id = raised.value.session_id
    failed = session_store.require(session_id)
    assert "B" in failed.completed_agents
    assert failed.context["B_output"]["summary"] == "B done"
    fake_runner.failures.clear()
    fake_runner.calls.clear()

    engine.resume_workflow(session_id)

    assert [call.agent for call in fake_runner.calls] == ["C", "D"]
    d_context = deserialize_context(fake_runner.calls[1].context)
    assert d_context["dependency_outputs"]["B"]["summary"] == "B done"
    assert session_store.require(session_id).status == SessionStatus.COMPLETED


def test_resume_from_stage_reruns_that_stage_onwards(
    make_engine,
    fake_runner,
    session_store,
) -> None:
    fake_runner.failures["C"] = ALWAYS
    engine = make_engine(graph=abc_graph(max_retries=0))
    with pytest.raises(StageExecutionError) as raised:
        engine.start_workflow(ABC_WORKFLOW)
    fake_runner.failures.clear()
    fake_runner.calls.clear()

    engine.resume_workflow(raised.value.session_id, from_stage=0)

    assert sorted(call.agent for call in fake_runner.calls) == ["A", "B", "C"]
    assert session_store.require(raised.value.session_id).status == SessionStatus.COMPLETED


def test_resume_rejects_completed_session(make_engine) -> None:
    engine = make_engine(graph=abc_graph())
    run = engine.start_workflow(ABC_WORKFLOW)

    with pytest.raises(SessionAlreadyCompletedError):
        engine.resume_workflow(run.session_id)


def test_resume_rejects_stage_out_of_range(make_engine, fake_runner) -> None:
    fake_runner.failures["B"] = ALWAYS
    engine = make_engine(graph=abc_graph(max_retries=0))
    with pytest.raises(StageExecutionError) as raised:
        engine.start_workflow(ABC_WORKFLOW)

    with pytest.raises(ValueError, match="out of range"):
        engine.resume_workflow(raised.value.session_id, from_stage=5)


def test_running_session_without_live_run_is_zombie(make_engine, fake_runner, session_store) -> None:
    engine = make_engine(graph=abc_graph())
    orphan = session_store.create("ABC", {"project_name": "Demo"})
    observed: list[bool] = []

    def _observe(_request) -> None:
        observed.extend(engine.has_active_run(run.session_id) for run in engine.active_runs())

    fake_runner.on_execute = _observe

    engine.start_workflow(ABC_WORKFLOW)

    assert session_store.require(orphan.session_id).status == SessionStatus.RUNNING
    assert not engine.has_active_run(orphan.session_id)
    assert observed and all(observed)
    assert engine.active_runs() == []


def test_cancel_marks_session_failed_and_cleans_branch(
    make_engine,
    fake_runner,
    fake_vcs,
    session_store,
) -> None:
    engine = make_engine(graph=abc_graph())
    cancelled_runs: list[str] = []

    def _cancel_during_first_agent(request) -> None:
        if request.agent == "A" and not cancelled_runs:
            run = engine.active_runs()[0]
            cancelled_runs.append(run.run_id)
            engine.cancel_workflow(run.run_id, cleanup=True)

    fake_runner.on_execute = _cancel_during_first_agent
    events = _collect(engine)

    with pytest.raises(CancellationError) as raised:
        engine.start_workflow(ABC_WORKFLOW, {"project_name": "Demo"}, {"create_branch": True})

    assert fake_runner.attempts("A") == 1
    assert fake_runner.attempts("B") == 0
    session = session_store.require(raised.value.session_id)
    assert session.status == SessionStatus.FAILED
    assert session.error == "Workflow cancelled"
    assert fake_vcs.deleted == fake_vcs.branches
    assert EventKind.WORKFLOW_CANCELLED in [event.kind for event in events]
    assert EventKind.WORKFLOW_FAILED not in [event.kind for event in events]
    assert not engine.has_active_run(session.session_id)


def test_pull_request_failure_warns_by_default(make_engine, session_store) -> None:
    engine = make_engine(
        graph=abc_graph(),
        pull_requests=FakePullRequests(error="gh: not authenticated"),
    )
    events = _collect(engine)

    run = engine.start_workflow(
        ABC_WORKFLOW,
        {"project_name": "Demo"},
        {"create_branch": True, "create_pr": True},
    )

    session = session_store.require(run.session_id)
    assert session.status == SessionStatus.COMPLETED
    assert session.result is not None
    assert session.result["pr_url"] is None
    assert EventKind.PR_FAILED in [event.kind for event in events]


def test_pull_request_failure_fails_workflow_in_fail_mode(make_engine, session_store) -> None:
    engine = make_engine(
        graph=abc_graph(),
        pull_requests=FakePullRequests(error="gh: not authenticated"),
    )

    with pytest.raises(CollaboratorError) as raised:
        engine.start_workflow(
            ABC_WORKFLOW,
            {"project_name": "Demo"},
            {"create_branch": True, "create_pr": True, "pr_failure_mode": "fail"},
        )

    session = session_store.require(raised.value.session_id)
    assert session.status == SessionStatus.FAILED
    assert session_store.is_resumable(session.session_id)


def test_branch_creation_failure_escalates(make_engine, fake_runner, session_store) -> None:
    engine = make_engine(graph=abc_graph(), vcs=FakeVcs(fail_create=True))

    with pytest.raises(CollaboratorError) as raised:
        engine.start_workflow(ABC_WORKFLOW, {"project_name": "Demo"}, {"create_branch": True})

    assert fake_runner.calls == []
    assert session_store.require(raised.value.session_id).status == SessionStatus.FAILED


def test_tier_ceiling_is_applied_to_every_agent(make_engine, fake_runner) -> None:
    graph = abc_graph()
    engine = make_engine(graph=graph, tier_selector=TierSelector(graph, max_tier=Tier.ECONOMY))

    engine.start_workflow(ABC_WORKFLOW)

    assert {call.tier for call in fake_runner.calls} == {Tier.ECONOMY}


def test_output_reporting_problems_only_logs_warning(
    make_engine,
    fake_runner,
    session_store,
) -> None:
    fake_runner.responses["A"] = {"success": False, "summary": "partial result"}
    engine = make_engine(graph=abc_graph())

    run = engine.start_workflow(ABC_WORKFLOW)

    session = session_store.require(run.session_id)
    assert session.status == SessionStatus.COMPLETED
    warnings = [entry for entry in session.logs if entry.event == "agent_reported_problems"]
    assert warnings and warnings[0].level == "warn"


def test_unknown_workflow_is_configuration_error(make_engine) -> None:
    engine = make_engine()

    with pytest.raises(UnknownWorkflowError):
        engine.start_workflow("NOPE")


def test_pull_request_needs_a_workflow_branch(make_engine, fake_prs, session_store) -> None:
    engine = make_engine(graph=abc_graph())

    run = engine.start_workflow(ABC_WORKFLOW, {}, {"create_branch": False, "create_pr": True})

    session = session_store.require(run.session_id)
    assert session.status == SessionStatus.COMPLETED
    assert fake_prs.requests == []
    assert session.result is not None
    assert session.result["pr_url"] is None


def test_output_breaking_the_contract_logs_warning(
    make_engine,
    fake_runner,
    session_store,
) -> None:
    fake_runner.responses["B"] = {
        "success": True,
        "summary": "",
        "files": [{"filepath": "../outside.py", "code": "print('x')"}],
    }
    engine = make_engine(graph=abc_graph())

    run = engine.start_workflow(ABC_WORKFLOW)

    session = session_store.require(run.session_id)
    assert session.status == SessionStatus.COMPLETED
    entries = [entry for entry in session.logs if entry.event == "agent_output_invalid"]
    invalid = [entry.message for entry in entries]
    assert "B output: summary is empty" in invalid
    assert any("escapes the repository: ../outside.py" in message for message in invalid)
    assert {entry.level for entry in entries} == {"warn"}
