"""Shared test fixtures and in-memory collaborators."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from agent_workflows.orchestrator.agents import AgentGraph, build_default_graph
from agent_workflows.orchestrator.collaborators import AgentRunRequest, TaskCreate
from agent_workflows.orchestrator.engine import WorkflowEngine
from agent_workflows.orchestrator.errors import AgentExecutionError, CollaboratorError
from agent_workflows.orchestrator.models import (
    AgentDescriptor,
    Artifact,
    ExecutionMode,
    Stage,
    Tier,
    WorkflowDefinition,
    WorkflowOptions,
)
from agent_workflows.orchestrator.sessions import JsonFileSessionStorage, SessionStore
from agent_workflows.orchestrator.tiers import TierSelector

ALWAYS = -1


class FakeRunner:
    """Scripted agent runner; ``failures[tag]`` failing attempts, ``ALWAYS`` for every one."""

    def __init__(
        self,
        responses: dict[str, Any] | None = None,
        failures: dict[str, int] | None = None,
    ) -> None:
        self.responses = dict(responses or {})
        self.failures = dict(failures or {})
        self.calls: list[AgentRunRequest] = []
        self.on_execute: Callable[[AgentRunRequest], None] | None = None
        self._lock = threading.Lock()

    def execute(self, request: AgentRunRequest) -> str:
        with self._lock:
            self.calls.append(request)
            remaining = self.failures.get(request.agent, 0)
            should_fail = remaining != 0
            if remaining > 0:
                self.failures[request.agent] = remaining - 1
        if self.on_execute is not None:
            self.on_execute(request)
        if should_fail:
            raise AgentExecutionError(f"{request.agent} crashed", agent=request.agent)
        response = self.responses.get(request.agent)
        if response is None:
            response = {"success": True, "summary": f"{request.agent} done", "tokensUsed": 100}
        return response if isinstance(response, str) else json.dumps(response)

    def attempts(self, agent: str) -> int:
        return sum(1 for call in self.calls if call.agent == agent)


class FakeTaskStore:
    def __init__(self) -> None:
        self.tasks: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create(self, payload: TaskCreate) -> str:
        with self._lock:
            task_id = f"TASK-{len(self.tasks) + 1:04d}"
            self.tasks[task_id] = {"payload": payload, "status": "pending", "output": None}
        return task_id

    def complete(self, task_id: str, output: dict[str, Any]) -> None:
        self.tasks[task_id].update(status="completed", output=output)

    def fail(self, task_id: str, error: str) -> None:
        self.tasks[task_id].update(status="failed", error=error)

    def statuses(self) -> list[str]:
        return [task["status"] for task in self.tasks.values()]


class FakeVcs:
    def __init__(self, *, fail_create: bool = False) -> None:
        self.fail_create = fail_create
        self.branches: list[str] = []
        self.commits: list[tuple[list[str], str]] = []
        self.deleted: list[str] = []

    def create_branch(self, name: str) -> str:
        if self.fail_create:
            raise CollaboratorError("git is not available")
        self.branches.append(name)
        return name

    def commit_files(self, files: Sequence[Artifact], message: str) -> str | None:
        self.commits.append(([artifact.path or artifact.name for artifact in files], message))
        return f"sha{len(self.commits)}"

    def delete_branch(self, name: str, *, force: bool = False) -> None:
        self.deleted.append(name)


class FakePullRequests:
    def __init__(self, *, error: str | None = None) -> None:
        self.error = error
        self.requests: list[dict[str, Any]] = []

    def create_pull_request(self, branch: str, *, title: str, body: str, draft: bool) -> str:
        self.requests.append({"branch": branch, "title": title, "body": body, "draft": draft})
        if self.error is not None:
            raise CollaboratorError(self.error)
        return f"https://example.com/pr/{len(self.requests)}"


def abc_graph(*, max_retries: int = 2) -> AgentGraph:
    """A -> (B, C): the smallest graph with a parallel fan-out."""

    return AgentGraph(
        [
            AgentDescriptor(tag="A", name="Agent A", max_retries=max_retries),
            AgentDescriptor(
                tag="B",
                name="Agent B",
                dependencies=("A",),
                max_retries=max_retries,
                default_tier=Tier.ECONOMY,
            ),
            AgentDescriptor(
                tag="C",
                name="Agent C",
                dependencies=("A",),
                max_retries=max_retries,
                default_tier=Tier.PREMIUM,
            ),
        ],
    )


ABC_WORKFLOW = WorkflowDefinition(
    workflow_id="ABC",
    name="A then B and C",
    stages=(
        Stage("First", ("A",), ExecutionMode.SEQUENTIAL),
        Stage("Fan out", ("B", "C"), ExecutionMode.PARALLEL, depends_on="First"),
    ),
    options=WorkflowOptions(create_pr=False, create_branch=False),
)


@pytest.fixture()
def sessions_dir(tmp_path: Path) -> Path:
    return tmp_path / "sessions"


@pytest.fixture()
def session_store(sessions_dir: Path) -> SessionStore:
    return SessionStore(JsonFileSessionStorage(sessions_dir))


@pytest.fixture()
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def fake_tasks() -> FakeTaskStore:
    return FakeTaskStore()


@pytest.fixture()
def fake_vcs() -> FakeVcs:
    return FakeVcs()


@pytest.fixture()
def fake_prs() -> FakePullRequests:
    return FakePullRequests()


@pytest.fixture()
def make_engine(
    session_store: SessionStore,
    fake_runner: FakeRunner,
    fake_tasks: FakeTaskStore,
    fake_vcs: FakeVcs,
    fake_prs: FakePullRequests,
) -> Callable[..., WorkflowEngine]:
    """Engine factory; keyword arguments replace the default collaborators."""

    def _make(**overrides: Any) -> WorkflowEngine:
        graph = overrides.pop("graph", None) or build_default_graph()
        arguments: dict[str, Any] = {
            "sessions": session_store,
            "graph": graph,
            "tier_selector": TierSelector(graph),
            "runner": fake_runner,
            "task_store": fake_tasks,
            "vcs": fake_vcs,
            "pull_requests": fake_prs,
        }
        arguments.update(overrides)
        return WorkflowEngine(**arguments)

    return _make
