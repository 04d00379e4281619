"""Persistent task bookkeeping backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import threading
from collections import Counter
from datetime import timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, col, select

from agent_workflows.orchestrator.collaborators import TaskCreate
from agent_workflows.orchestrator.errors import CollaboratorError, InvalidTaskTransitionError
from agent_workflows.orchestrator.models import TaskPriority, TaskStatus, TaskView
from agent_workflows.storage.common import build_sqlite_engine, to_utc_aware, utc_now
from agent_workflows.storage.sqlmodel_models import WorkflowTask, WorkflowTaskEvent

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BLOCKED},
    ),
    TaskStatus.BLOCKED: frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
}


class SqlTaskStore:
    """Task store facade; ids are sequential ``TASK-0001`` style."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._write_lock = threading.Lock()

    def init_schema(self) -> None:
        if self.db_path.parent != Path(""):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(
            self.engine,
            tables=[WorkflowTask.__table__, WorkflowTaskEvent.__table__],  # type: ignore[attr-defined]
        )

    def close(self) -> None:
        self.engine.dispose()

    def create(self, payload: TaskCreate, *, priority: TaskPriority = TaskPriority.MEDIUM) -> str:
        now = utc_now()
        try:
            with self._write_lock, Session(self.engine) as session:
                seq = (session.exec(select(func.max(WorkflowTask.seq))).one() or 0) + 1
                task_id = f"TASK-{seq:04d}"
                dependencies = list(dict.fromkeys(payload.dependency_task_ids))
                unfinished = self._unfinished(session, dependencies)
                status = TaskStatus.BLOCKED if unfinished else TaskStatus.PENDING
                session.add(
                    WorkflowTask(
                        task_id=task_id,
                        seq=seq,
                        agent=payload.agent,
                        summary=payload.summary,
                        description=payload.description,
                        status=status.value,
                        priority=priority.value,
                        workflow_id=payload.workflow_id,
                        session_id=payload.session_id,
                        context_json=json.dumps(payload.context, ensure_ascii=False, default=str),
                        dependencies_json=json.dumps(dependencies),
                        created_at=now,
                        updated_at=now,
                    ),
                )
                session.flush()
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="created",
                    status_from=None,
                    status_to=status,
                    details={"blocked_by": unfinished} if unfinished else {},
                )
                session.commit()
        except SQLAlchemyError as error:
            raise CollaboratorError(f"Task store create failed: {error}") from error
        return task_id

    def get(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(WorkflowTask, task_id)
            return _to_task_view(row) if row is not None else None

    def start(self, task_id: str) -> TaskView:
        return self._transition(task_id, TaskStatus.IN_PROGRESS)

    def complete(self, task_id: str, output: dict[str, Any]) -> None:
        self._transition(task_id, TaskStatus.COMPLETED, output=output)

    def fail(self, task_id: str, error: str) -> None:
        self._transition(task_id, TaskStatus.FAILED, error=error)

    def reopen(self, task_id: str) -> TaskView:
        return self._transition(task_id, TaskStatus.PENDING)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        agent: str | None = None,
        session_id: str | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        with Session(self.engine) as session:
            statement = select(WorkflowTask)
            if status is not None:
                statement = statement.where(WorkflowTask.status == status.value)
            if agent is not None:
                statement = statement.where(WorkflowTask.agent == agent)
            if session_id is not None:
                statement = statement.where(WorkflowTask.session_id == session_id)
            statement = statement.order_by(col(WorkflowTask.seq).asc())
            if limit is not None:
                statement = statement.limit(limit)
            return [_to_task_view(row) for row in session.exec(statement).all()]

    def ready_tasks(self) -> list[TaskView]:
        """Pending tasks whose dependencies are all completed."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkflowTask)
                .where(WorkflowTask.status == TaskStatus.PENDING.value)
                .order_by(col(WorkflowTask.seq).asc()),
            ).all()
            return [
                _to_task_view(row)
                for row in rows
                if not self._unfinished(session, json.loads(row.dependencies_json))
            ]

    def statistics(self) -> dict[str, Any]:
        with Session(self.engine) as session:
            rows = session.exec(select(WorkflowTask)).all()
        statuses = Counter(row.status for row in rows)
        agents = Counter(row.agent for row in rows)
        return {
            "total": len(rows),
            "by_status": {status.value: statuses.get(status.value, 0) for status in TaskStatus},
            "by_agent": dict(agents),
        }

    def dependency_graph(self) -> dict[str, dict[str, Any]]:
        """Per task: status, the tasks it waits on, and the tasks it blocks."""

        with Session(self.engine) as session:
            rows = session.exec(select(WorkflowTask).order_by(col(WorkflowTask.seq).asc())).all()
        graph: dict[str, dict[str, Any]] = {
            row.task_id: {
                "agent": row.agent,
                "status": row.status,
                "depends_on": json.loads(row.dependencies_json),
                "blocking": [],
            }
            for row in rows
        }
        for task_id, node in graph.items():
            for dependency in node["depends_on"]:
                if dependency in graph:
                    graph[dependency]["blocking"].append(task_id)
        return graph

    def cleanup(self, days: int = 7) -> int:
        """Delete completed tasks older than ``days``; returns the number removed."""

        cutoff = utc_now() - timedelta(days=days)
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkflowTask).where(WorkflowTask.status == TaskStatus.COMPLETED.value),
            ).all()
            stale = [
                row
                for row in rows
                if row.completed_at is not None and to_utc_aware(row.completed_at) < cutoff
            ]
            for row in stale:
                for event in session.exec(
                    select(WorkflowTaskEvent).where(WorkflowTaskEvent.task_id == row.task_id),
                ).all():
                    session.delete(event)
                session.delete(row)
            session.commit()
        return len(stale)

    def _transition(
        self,
        task_id: str,
        target: TaskStatus,
        *,
        output: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> TaskView:
        try:
            with self._write_lock, Session(self.engine) as session:
                row = session.get(WorkflowTask, task_id)
                if row is None:
                    raise CollaboratorError(f"Task not found: {task_id}")
                current = TaskStatus(row.status)
                # complete/fail on a task nobody started passes through in_progress.
                if target in (TaskStatus.COMPLETED, TaskStatus.FAILED) and current in (
                    TaskStatus.PENDING,
                    TaskStatus.BLOCKED,
                ):
                    self._apply(session, row, current, TaskStatus.IN_PROGRESS)
                    current = TaskStatus.IN_PROGRESS
                if target not in TASK_TRANSITIONS[current]:
                    raise InvalidTaskTransitionError(task_id, current.value, target.value)

                if output is not None:
                    row.output_json = json.dumps(output, ensure_ascii=False, default=str)
                if error is not None:
                    row.error = error
                self._apply(session, row, current, target)
                if target == TaskStatus.COMPLETED:
                    row.completed_at = utc_now()
                    self._unblock_dependents(session, task_id)
                session.commit()
                session.refresh(row)
                return _to_task_view(row)
        except SQLAlchemyError as db_error:
            raise CollaboratorError(f"Task store update failed: {db_error}") from db_error

    def _apply(
        self,
        session: Session,
        row: WorkflowTask,
        current: TaskStatus,
        target: TaskStatus,
    ) -> None:
        row.status = target.value
        row.updated_at = utc_now()
        session.add(row)
        self._add_event(
            session=session,
            task_id=row.task_id,
            event_type="status_changed",
            status_from=current,
            status_to=target,
            details={},
        )

    def _unblock_dependents(self, session: Session, completed_task_id: str) -> None:
        session.flush()
        blocked = session.exec(
            select(WorkflowTask).where(WorkflowTask.status == TaskStatus.BLOCKED.value),
        ).all()
        for row in blocked:
            dependencies = json.loads(row.dependencies_json)
            if completed_task_id not in dependencies:
                continue
            if not self._unfinished(session, dependencies):
                self._apply(session, row, TaskStatus.BLOCKED, TaskStatus.PENDING)

    def _unfinished(self, session: Session, task_ids: list[str]) -> list[str]:
        if not task_ids:
            return []
        completed = set(
            session.exec(
                select(WorkflowTask.task_id).where(
                    col(WorkflowTask.task_id).in_(task_ids),
                    WorkflowTask.status == TaskStatus.COMPLETED.value,
                ),
            ).all(),
        )
        return [task_id for task_id in task_ids if task_id not in completed]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            WorkflowTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _to_task_view(row: WorkflowTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        agent=row.agent,
        summary=row.summary,
        description=row.description,
        status=TaskStatus(row.status),
        priority=TaskPriority(row.priority),
        workflow_id=row.workflow_id,
        session_id=row.session_id,
        dependencies=json.loads(row.dependencies_json),
        context=json.loads(row.context_json) if row.context_json else {},
        output=json.loads(row.output_json) if row.output_json else None,
        error=row.error,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        completed_at=to_utc_aware(row.completed_at) if row.completed_at is not None else None,
    )
