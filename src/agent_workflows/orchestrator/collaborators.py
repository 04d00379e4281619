"""Interfaces for external collaborators invoked by the workflow engine."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from agent_workflows.orchestrator.models import AgentOutput, Artifact, Tier


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one agent attempt."""

    agent: str
    task_id: str | None
    context: str
    tier: Tier
    model: str
    timeout_seconds: float
    prompt_file: str | None = None
    shutdown_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class TaskCreate:
    """Input payload for external task bookkeeping."""

    agent: str
    summary: str
    description: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    dependency_task_ids: tuple[str, ...] = ()
    workflow_id: str | None = None
    session_id: str | None = None


class AgentRunner(Protocol):
    """Executes one agent and returns its raw response.

    Raises ``AgentTimeoutError`` when the timeout elapses and ``AgentExecutionError``
    for any other failure.
    """

    def execute(self, request: AgentRunRequest) -> str:
        """Run the agent and return raw output text."""


ResponseParser = Callable[[Any], AgentOutput]


class TaskStore(Protocol):
    def create(self, payload: TaskCreate) -> str:
        """Create a task and return its identifier."""

    def complete(self, task_id: str, output: dict[str, Any]) -> None:
        """Mark the task completed with its output."""

    def fail(self, task_id: str, error: str) -> None:
        """Mark the task failed."""


class VcsClient(Protocol):
    def create_branch(self, name: str) -> str:
        """Create or check out ``name`` and return the branch identity."""

    def commit_files(self, files: Sequence[Artifact], message: str) -> str | None:
        """Write artifacts to disk and commit them; returns the commit id."""

    def delete_branch(self, name: str, *, force: bool = False) -> None:
        """Delete a local branch."""


class PullRequestClient(Protocol):
    def create_pull_request(self, branch: str, *, title: str, body: str, draft: bool) -> str:
        """Open a pull request for ``branch`` and return its URL."""
