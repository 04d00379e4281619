"""Error taxonomy for workflow orchestration."""

from __future__ import annotations


class WorkflowError(RuntimeError):
    """Base error carrying enough context to support manual resume."""

    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        run_id: str | None = None,
        stage: str | None = None,
        agent: str | None = None,
    ) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.run_id = run_id
        self.stage = stage
        self.agent = agent

    def context(self) -> dict[str, str]:
        """Non-empty context fields for logs and event payloads."""

        fields = {
            "session_id": self.session_id,
            "run_id": self.run_id,
            "stage": self.stage,
            "agent": self.agent,
        }
        return {key: value for key, value in fields.items() if value is not None}


class ConfigurationError(WorkflowError):
    """Fatal misconfiguration; never retried."""


class DuplicateAgentError(ConfigurationError):
    def __init__(self, tag: str) -> None:
        super().__init__(f"Agent already registered: {tag}", agent=tag)
        self.tag = tag


class UnknownAgentError(ConfigurationError):
    def __init__(self, tag: str) -> None:
        super().__init__(f"Unknown agent: {tag}", agent=tag)
        self.tag = tag


class CircularDependencyError(ConfigurationError):
    """Raised when some agents cannot be placed on any topological level."""

    def __init__(self, remaining: list[str]) -> None:
        super().__init__(
            "Circular dependency detected among agents: " + ", ".join(sorted(remaining)),
        )
        self.remaining = sorted(remaining)


class UnknownWorkflowError(ConfigurationError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Unknown workflow: {workflow_id}")
        self.workflow_id = workflow_id


class WorkflowValidationError(ConfigurationError):
    """Workflow authoring defect found at definition-load time."""

    def __init__(self, workflow_id: str, problems: list[str]) -> None:
        super().__init__(f"Invalid workflow {workflow_id}: " + "; ".join(problems))
        self.workflow_id = workflow_id
        self.problems = problems


class ExecutionError(WorkflowError):
    """Agent runner failure; retried up to the agent's bound."""


class AgentExecutionError(ExecutionError):
    pass


class AgentTimeoutError(ExecutionError):
    def __init__(self, agent: str, timeout_seconds: float) -> None:
        super().__init__(f"Agent {agent} timed out after {timeout_seconds:g}s", agent=agent)
        self.timeout_seconds = timeout_seconds


class StageExecutionError(ExecutionError):
    """Raised once every agent of a stage settled and at least one failed."""

    def __init__(self, stage: str, failures: dict[str, BaseException]) -> None:
        details = ", ".join(f"{agent}: {error}" for agent, error in sorted(failures.items()))
        super().__init__(f"Stage {stage} failed ({details})", stage=stage)
        self.failures = failures


class CancellationError(WorkflowError):
    """Run was cancelled by an external request."""


class CollaboratorError(WorkflowError):
    """VCS, pull request, or task store failure."""


class PersistenceError(WorkflowError):
    """Session storage read or write failure."""


class SessionError(WorkflowError):
    pass


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}", session_id=session_id)


class SessionAlreadyCompletedError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session {session_id} is already completed",
            session_id=session_id,
        )


class NoCheckpointsError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session {session_id} failed with no checkpoints to resume from",
            session_id=session_id,
        )


class InvalidTaskTransitionError(WorkflowError):
    def __init__(self, task_id: str, status_from: str, status_to: str) -> None:
        super().__init__(f"Invalid task transition for {task_id}: {status_from} -> {status_to}")
        self.task_id = task_id
        self.status_from = status_from
        self.status_to = status_to


class RunNotFoundError(WorkflowError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"No active run: {run_id}", run_id=run_id)
