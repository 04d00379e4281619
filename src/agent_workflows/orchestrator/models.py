"""Domain models for agent workflows, sessions, and runs."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from agent_workflows.storage.common import from_iso, utc_now


class Tier(str, Enum):
    """Ordered resource tiers, cheapest first."""

    ECONOMY = "economy"
    STANDARD = "standard"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)


TIER_ORDER: tuple[Tier, ...] = (Tier.ECONOMY, Tier.STANDARD, Tier.PREMIUM)


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class PrFailureMode(str, Enum):
    """What to do when pull request creation fails after a successful run."""

    FAIL = "fail"
    WARN = "warn"


class SessionStatus(str, Enum):
    """Durable session lifecycle states."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    """In-memory run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AgentStatus(str, Enum):
    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    """External task bookkeeping states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and dependency display."""

    task_id: str
    agent: str
    summary: str
    description: str
    status: TaskStatus
    priority: TaskPriority
    workflow_id: str | None
    session_id: str | None
    dependencies: list[str]
    context: dict[str, Any]
    output: dict[str, Any] | None
    error: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass(slots=True, frozen=True)
class AgentDescriptor:
    """Immutable agent identity and execution policy."""

    tag: str
    name: str
    dependencies: tuple[str, ...] = ()
    default_tier: Tier = Tier.STANDARD
    max_retries: int = 3
    timeout_seconds: float = 300.0
    description: str = ""
    prompt_file: str | None = None
    capabilities: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Stage:
    """Set of agents executed together inside a workflow."""

    name: str
    agents: tuple[str, ...]
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    description: str = ""
    depends_on: str | None = None


@dataclass(slots=True, frozen=True)
class WorkflowOptions:
    """Completion-time side effects for a workflow."""

    create_pr: bool = True
    draft_pr: bool = True
    pr_failure_mode: PrFailureMode = PrFailureMode.WARN
    create_branch: bool = True

    def merged(self, overrides: dict[str, Any]) -> WorkflowOptions:
        known = {key: value for key, value in overrides.items() if key in _OPTION_FIELDS}
        if "pr_failure_mode" in known:
            known["pr_failure_mode"] = PrFailureMode(known["pr_failure_mode"])
        return replace(self, **known)

    def to_dict(self) -> dict[str, Any]:
        return {
            "create_pr": self.create_pr,
            "draft_pr": self.draft_pr,
            "pr_failure_mode": self.pr_failure_mode.value,
            "create_branch": self.create_branch,
        }


_OPTION_FIELDS = frozenset({"create_pr", "draft_pr", "pr_failure_mode", "create_branch"})


@dataclass(slots=True, frozen=True)
class WorkflowDefinition:
    """Ordered stages plus workflow-level options."""

    workflow_id: str
    name: str
    stages: tuple[Stage, ...]
    description: str = ""
    category: str = "general"
    options: WorkflowOptions = field(default_factory=WorkflowOptions)

    def agents(self) -> list[str]:
        """All agent tags in stage order, without duplicates."""

        seen: list[str] = []
        for stage in self.stages:
            for tag in stage.agents:
                if tag not in seen:
                    seen.append(tag)
        return seen


@dataclass(slots=True)
class Artifact:
    """File or snippet produced by an agent."""

    name: str
    type: str
    content: str
    path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type, "content": self.content, "path": self.path}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Artifact:
        return cls(
            name=str(payload.get("name") or payload.get("path") or "artifact"),
            type=str(payload.get("type") or "text"),
            content=str(payload.get("content") or ""),
            path=payload.get("path"),
        )


@dataclass(slots=True)
class OutputMetadata:
    resource_units: int = 0
    execution_time_ms: int = 0
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AgentOutput:
    """Structured result parsed from an agent runner response."""

    success: bool
    summary: str
    artifacts: list[Artifact] = field(default_factory=list)
    metadata: OutputMetadata = field(default_factory=OutputMetadata)
    next_steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def file_artifacts(self) -> list[Artifact]:
        return [artifact for artifact in self.artifacts if artifact.path and artifact.content]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "summary": self.summary,
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
            "metadata": {
                "resource_units": self.metadata.resource_units,
                "execution_time_ms": self.metadata.execution_time_ms,
                "files_created": list(self.metadata.files_created),
                "files_modified": list(self.metadata.files_modified),
            },
            "next_steps": list(self.next_steps),
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AgentOutput:
        metadata = payload.get("metadata") or {}
        return cls(
            success=bool(payload.get("success", True)),
            summary=str(payload.get("summary") or ""),
            artifacts=[Artifact.from_dict(item) for item in payload.get("artifacts") or []],
            metadata=OutputMetadata(
                resource_units=int(metadata.get("resource_units") or 0),
                execution_time_ms=int(metadata.get("execution_time_ms") or 0),
                files_created=list(metadata.get("files_created") or []),
                files_modified=list(metadata.get("files_modified") or []),
            ),
            next_steps=list(payload.get("next_steps") or []),
            warnings=list(payload.get("warnings") or []),
        )


@dataclass(slots=True)
class AgentExecution:
    """One attempt of one agent inside a run."""

    execution_id: str
    agent: str
    status: AgentStatus = AgentStatus.SPAWNING
    tier: Tier | None = None
    task_id: str | None = None
    attempt: int = 1
    started_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None
    output: AgentOutput | None = None
    error: str | None = None

    @property
    def duration_ms(self) -> int:
        if self.ended_at is None:
            return 0
        return int((self.ended_at - self.started_at).total_seconds() * 1000)

    def to_record(self) -> dict[str, Any]:
        """Session metadata projection of the execution."""

        return {
            "execution_id": self.execution_id,
            "agent": self.agent,
            "status": self.status.value,
            "tier": self.tier.value if self.tier is not None else None,
            "task_id": self.task_id,
            "attempt": self.attempt,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at is not None else None,
            "execution_time_ms": self.duration_ms,
            "resource_units": self.output.metadata.resource_units if self.output else 0,
            "error": self.error,
        }


@dataclass(slots=True, frozen=True)
class Checkpoint:
    """Append-only snapshot taken after a stage completes."""

    checkpoint_id: str
    session_id: str
    stage_index: int
    stage_name: str
    completed_agents: tuple[str, ...]
    state: dict[str, Any]
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.checkpoint_id,
            "session_id": self.session_id,
            "stage_index": self.stage_index,
            "stage_name": self.stage_name,
            "completed_agents": list(self.completed_agents),
            "state": self.state,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Checkpoint:
        return cls(
            checkpoint_id=payload["id"],
            session_id=payload["session_id"],
            stage_index=int(payload["stage_index"]),
            stage_name=payload.get("stage_name", ""),
            completed_agents=tuple(payload.get("completed_agents") or ()),
            state=dict(payload.get("state") or {}),
            timestamp=from_iso(payload["timestamp"]),
        )


@dataclass(slots=True)
class LogEntry:
    timestamp: datetime
    level: str
    event: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "event": self.event,
            "message": self.message,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LogEntry:
        return cls(
            timestamp=from_iso(payload["timestamp"]),
            level=payload.get("level", "info"),
            event=payload.get("event", ""),
            message=payload.get("message", ""),
            data=dict(payload.get("data") or {}),
        )


@dataclass(slots=True)
class SessionMetadata:
    total_resource_units: int = 0
    total_execution_time_ms: int = 0
    agent_executions: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class Session:
    """Durable record of one workflow execution across crashes and resumes."""

    session_id: str
    workflow_id: str
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    context: dict[str, Any] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)
    checkpoints: list[Checkpoint] = field(default_factory=list)
    logs: list[LogEntry] = field(default_factory=list)
    completed_agents: list[str] = field(default_factory=list)
    current_stage: int = 0
    metadata: SessionMetadata = field(default_factory=SessionMetadata)
    error: str | None = None
    result: dict[str, Any] | None = None

    @property
    def latest_checkpoint(self) -> Checkpoint | None:
        return self.checkpoints[-1] if self.checkpoints else None

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.session_id,
            "status": self.status.value,
            "workflow_id": self.workflow_id,
            "context": self.context,
            "options": self.options,
            "checkpoints": [checkpoint.to_dict() for checkpoint in self.checkpoints],
            "logs": [entry.to_dict() for entry in self.logs],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_agents": list(self.completed_agents),
            "current_stage": self.current_stage,
            "metadata": {
                "total_resource_units": self.metadata.total_resource_units,
                "total_execution_time_ms": self.metadata.total_execution_time_ms,
                "agent_executions": list(self.metadata.agent_executions),
            },
            "error": self.error,
            "result": self.result,
        }

    @classmethod
    def from_record(cls, payload: dict[str, Any]) -> Session:
        metadata = payload.get("metadata") or {}
        return cls(
            session_id=payload["id"],
            workflow_id=payload["workflow_id"],
            status=SessionStatus(payload["status"]),
            created_at=from_iso(payload["created_at"]),
            updated_at=from_iso(payload["updated_at"]),
            context=dict(payload.get("context") or {}),
            options=dict(payload.get("options") or {}),
            checkpoints=[Checkpoint.from_dict(item) for item in payload.get("checkpoints") or []],
            logs=[LogEntry.from_dict(item) for item in payload.get("logs") or []],
            completed_agents=list(payload.get("completed_agents") or []),
            current_stage=int(payload.get("current_stage") or 0),
            metadata=SessionMetadata(
                total_resource_units=int(metadata.get("total_resource_units") or 0),
                total_execution_time_ms=int(metadata.get("total_execution_time_ms") or 0),
                agent_executions=list(metadata.get("agent_executions") or []),
            ),
            error=payload.get("error"),
            result=payload.get("result"),
        )


@dataclass(slots=True)
class RestoredSession:
    session: Session
    latest_checkpoint: Checkpoint | None

    @property
    def resume_stage_index(self) -> int:
        if self.latest_checkpoint is not None:
            return self.latest_checkpoint.stage_index + 1
        return self.session.current_stage


@dataclass(slots=True)
class WorkflowRun:
    """In-memory execution handle for a session; never persisted."""

    run_id: str
    workflow: WorkflowDefinition
    session_id: str
    status: RunStatus = RunStatus.PENDING
    context: dict[str, Any] = field(default_factory=dict)
    current_stage_index: int = 0
    executions: list[AgentExecution] = field(default_factory=list)
    completed_agents: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None
    git_branch: str | None = None
    error: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.status == RunStatus.CANCELLED
