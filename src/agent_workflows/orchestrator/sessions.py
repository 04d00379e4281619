"""Durable session store with checkpoints, log ring, and execution metadata."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from agent_workflows.orchestrator.errors import (
    NoCheckpointsError,
    PersistenceError,
    SessionAlreadyCompletedError,
    SessionNotFoundError,
)
from agent_workflows.orchestrator.events import EventChannel, EventKind
from agent_workflows.orchestrator.models import (
    AgentExecution,
    AgentStatus,
    Checkpoint,
    LogEntry,
    RestoredSession,
    Session,
    SessionStatus,
)
from agent_workflows.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_LOG_RING_SIZE = 1000
LOG_LEVELS = ("debug", "info", "warn", "error")

_STATUS_EVENTS = {
    SessionStatus.FAILED: EventKind.SESSION_FAILED,
    SessionStatus.COMPLETED: EventKind.SESSION_COMPLETED,
    SessionStatus.PAUSED: EventKind.SESSION_PAUSED,
}


class SessionStorage(Protocol):
    """Persistence backend for session records."""

    def load(self, session_id: str) -> dict[str, Any] | None:
        """Return the stored record or ``None`` when absent."""

    def save(self, record: dict[str, Any]) -> None:
        """Persist the record synchronously."""

    def list_ids(self) -> list[str]:
        """Identifiers of every stored record."""

    def delete(self, session_id: str) -> bool:
        """Remove a record; ``False`` if it did not exist."""


class JsonFileSessionStorage:
    """One ``{id}.json`` file per session under a root directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, session_id: str) -> Path:
        return self.root / f"{session_id}.json"

    def load(self, session_id: str) -> dict[str, Any] | None:
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise PersistenceError(
                f"Failed to read session file {path}: {error}",
                session_id=session_id,
            ) from error

    def save(self, record: dict[str, Any]) -> None:
        session_id = record["id"]
        path = self._path(session_id)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{session_id}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record, handle, indent=2, ensure_ascii=False)
            os.replace(tmp_name, path)
        except OSError as error:
            raise PersistenceError(
                f"Failed to write session file {path}: {error}",
                session_id=session_id,
            ) from error

    def list_ids(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(path.stem for path in self.root.glob("*.json"))

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as error:
            raise PersistenceError(
                f"Failed to delete session file {path}: {error}",
                session_id=session_id,
            ) from error
        return True


@dataclass(slots=True)
class SessionStatistics:
    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_workflow: dict[str, int] = field(default_factory=dict)
    total_resource_units: int = 0
    total_execution_time_ms: int = 0


class SessionStore:
    """Session persistence facade; every mutation is written before returning.

    Single-writer: concurrent processes writing the same session are unsupported.
    Within a process, mutations are serialized so agents of a parallel stage can
    record their executions safely.
    """

    def __init__(
        self,
        storage: SessionStorage,
        *,
        events: EventChannel | None = None,
        log_ring_size: int = DEFAULT_LOG_RING_SIZE,
    ) -> None:
        self._storage = storage
        self._events = events or EventChannel()
        self._log_ring_size = log_ring_size
        self._cache: dict[str, Session] = {}
        self._lock = threading.RLock()

    @property
    def events(self) -> EventChannel:
        return self._events

    def create(
        self,
        workflow_id: str,
        context: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> Session:
        now = utc_now()
        session = Session(
            session_id=str(uuid4()),
            workflow_id=workflow_id,
            status=SessionStatus.RUNNING,
            created_at=now,
            updated_at=now,
            context=dict(context or {}),
            options=dict(options or {}),
        )
        with self._lock:
            self._persist(session)
        self._events.emit(
            EventKind.SESSION_CREATED,
            session_id=session.session_id,
            workflow_id=workflow_id,
        )
        logger.info("Session %s created for workflow %s", session.session_id, workflow_id)
        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            cached = self._cache.get(session_id)
            if cached is not None:
                return cached
            record = self._storage.load(session_id)
            if record is None:
                return None
            session = Session.from_record(record)
            self._cache[session_id] = session
            return session

    def require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def update_status(
        self,
        session_id: str,
        status: SessionStatus,
        patch: dict[str, Any] | None = None,
    ) -> Session:
        """Set any status (no transition table) and merge top-level ``patch`` fields."""

        with self._lock:
            session = self.require(session_id)
            old_status = session.status
            session.status = status
            for key, value in (patch or {}).items():
                if key == "context":
                    session.context.update(value)
                elif hasattr(session, key):
                    setattr(session, key, value)
                else:
                    raise ValueError(f"Unknown session field: {key}")
            self._persist(session)
        self._events.emit(
            EventKind.SESSION_STATUS_CHANGED,
            session_id=session_id,
            old_status=old_status.value,
            new_status=status.value,
        )
        return session

    def update_context(self, session_id: str, patch: dict[str, Any]) -> Session:
        with self._lock:
            session = self.require(session_id)
            session.context.update(patch)
            self._persist(session)
        return session

    def checkpoint(
        self,
        session_id: str,
        *,
        stage_index: int,
        stage_name: str,
        completed_agents: Iterable[str],
        state: dict[str, Any] | None = None,
    ) -> Checkpoint:
        with self._lock:
            session = self.require(session_id)
            snapshot = tuple(dict.fromkeys(completed_agents))
            checkpoint = Checkpoint(
                checkpoint_id=str(uuid4()),
                session_id=session_id,
                stage_index=stage_index,
                stage_name=stage_name,
                completed_agents=snapshot,
                state=json.loads(json.dumps(state or {}, default=str)),
                timestamp=utc_now(),
            )
            session.checkpoints.append(checkpoint)
            session.current_stage = stage_index + 1
            session.completed_agents = list(snapshot)
            checkpoint_context = checkpoint.state.get("context")
            if isinstance(checkpoint_context, dict):
                session.context.update(checkpoint_context)
            self._persist(session)
        self._events.emit(
            EventKind.CHECKPOINT_CREATED,
            session_id=session_id,
            checkpoint_id=checkpoint.checkpoint_id,
            stage_index=stage_index,
        )
        return checkpoint

    def restore(self, session_id: str) -> RestoredSession:
        with self._lock:
            session = self.require(session_id)
            if session.status == SessionStatus.COMPLETED:
                raise SessionAlreadyCompletedError(session_id)
            if session.status == SessionStatus.FAILED and not session.checkpoints:
                raise NoCheckpointsError(session_id)
            session.status = SessionStatus.RUNNING
            session.error = None
            self._persist(session)
        latest = session.latest_checkpoint
        self._events.emit(
            EventKind.SESSION_RESTORED,
            session_id=session_id,
            checkpoint_id=latest.checkpoint_id if latest is not None else None,
        )
        logger.info("Session %s restored", session_id)
        return RestoredSession(session=session, latest_checkpoint=latest)

    def add_log(
        self,
        session_id: str,
        event: str,
        message: str,
        *,
        level: str = "info",
        data: dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            session = self.require(session_id)
            session.logs.append(
                LogEntry(
                    timestamp=utc_now(),
                    level=level,
                    event=event,
                    message=message,
                    data=dict(data or {}),
                ),
            )
            overflow = len(session.logs) - self._log_ring_size
            if overflow > 0:
                del session.logs[:overflow]
            self._persist(session)

    def record_agent_execution(
        self,
        session_id: str,
        execution: AgentExecution,
        *,
        context_updates: dict[str, Any] | None = None,
    ) -> None:
        """Append the execution record; ``context_updates`` land in the same persisted write."""

        with self._lock:
            session = self.require(session_id)
            if context_updates:
                session.context.update(json.loads(json.dumps(context_updates, default=str)))
            record = execution.to_record()
            session.metadata.agent_executions.append(record)
            session.metadata.total_resource_units += record["resource_units"]
            session.metadata.total_execution_time_ms += record["execution_time_ms"]
            if (
                execution.status == AgentStatus.COMPLETED
                and execution.agent not in session.completed_agents
            ):
                session.completed_agents.append(execution.agent)
            self._persist(session)

    def mark_failed(self, session_id: str, error: str) -> Session:
        session = self.update_status(session_id, SessionStatus.FAILED, {"error": error})
        self._emit_terminal(session)
        return session

    def mark_completed(self, session_id: str, result: dict[str, Any] | None = None) -> Session:
        session = self.update_status(session_id, SessionStatus.COMPLETED, {"result": result})
        self._emit_terminal(session)
        return session

    def mark_paused(self, session_id: str) -> Session:
        session = self.update_status(session_id, SessionStatus.PAUSED)
        self._emit_terminal(session)
        return session

    def list_sessions(
        self,
        *,
        status: SessionStatus | None = None,
        workflow_id: str | None = None,
    ) -> list[Session]:
        sessions: list[Session] = []
        for session_id in self._storage.list_ids():
            try:
                session = self.get(session_id)
            except PersistenceError:
                logger.warning("Skipping unreadable session %s", session_id)
                continue
            if session is None:
                continue
            if status is not None and session.status != status:
                continue
            if workflow_id is not None and session.workflow_id != workflow_id:
                continue
            sessions.append(session)
        sessions.sort(key=lambda item: item.created_at, reverse=True)
        return sessions

    def delete(self, session_id: str) -> bool:
        with self._lock:
            self._cache.pop(session_id, None)
            deleted = self._storage.delete(session_id)
        if deleted:
            self._events.emit(EventKind.SESSION_DELETED, session_id=session_id)
        return deleted

    def get_logs(
        self,
        session_id: str,
        *,
        level: str | None = None,
        limit: int | None = None,
    ) -> list[LogEntry]:
        return self.filter_logs(self.require(session_id).logs, level=level, limit=limit)

    @staticmethod
    def filter_logs(
        logs: Iterable[LogEntry],
        *,
        level: str | None = None,
        limit: int | None = None,
    ) -> list[LogEntry]:
        """Entries at or above ``level``, keeping the newest ``limit``."""

        selected = list(logs)
        if level is not None:
            threshold = _level_rank(level)
            selected = [entry for entry in selected if _level_rank(entry.level) >= threshold]
        if limit is not None:
            selected = selected[-limit:] if limit > 0 else []
        return selected

    def statistics(self) -> SessionStatistics:
        sessions = self.list_sessions()
        statuses = Counter(session.status.value for session in sessions)
        workflows = Counter(session.workflow_id for session in sessions)
        return SessionStatistics(
            total=len(sessions),
            by_status=dict(statuses),
            by_workflow=dict(workflows),
            total_resource_units=sum(s.metadata.total_resource_units for s in sessions),
            total_execution_time_ms=sum(s.metadata.total_execution_time_ms for s in sessions),
        )

    def is_resumable(self, session_id: str) -> bool:
        session = self.get(session_id)
        if session is None:
            return False
        if session.status not in (SessionStatus.FAILED, SessionStatus.PAUSED):
            return False
        return bool(session.checkpoints or session.completed_agents)

    def cleanup(self, max_age_days: int = 30, *, dry_run: bool = False) -> list[str]:
        """Delete stale non-running sessions; returns affected ids."""

        cutoff = utc_now() - timedelta(days=max_age_days)
        stale = [
            session.session_id
            for session in self.list_sessions()
            if session.updated_at < cutoff and session.status != SessionStatus.RUNNING
        ]
        if not dry_run:
            for session_id in stale:
                self.delete(session_id)
            if stale:
                logger.info("Cleaned up %d stale sessions", len(stale))
        return stale

    def _persist(self, session: Session) -> None:
        session.updated_at = utc_now()
        self._storage.save(session.to_record())
        self._cache[session.session_id] = session

    def _emit_terminal(self, session: Session) -> None:
        kind = _STATUS_EVENTS.get(session.status)
        if kind is None:
            return
        self._events.emit(
            kind,
            session_id=session.session_id,
            error=session.error,
        )


def _level_rank(level: str) -> int:
    normalized = level.strip().lower()
    if normalized == "warning":
        normalized = "warn"
    try:
        return LOG_LEVELS.index(normalized)
    except ValueError:
        return 0
