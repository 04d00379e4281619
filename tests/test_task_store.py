from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlmodel import Session, select

from agent_workflows.orchestrator.collaborators import TaskCreate
from agent_workflows.orchestrator.errors import CollaboratorError, InvalidTaskTransitionError
from agent_workflows.orchestrator.models import TaskPriority, TaskStatus
from agent_workflows.orchestrator.task_store import SqlTaskStore
from agent_workflows.storage.common import utc_now
from agent_workflows.storage.sqlmodel_models import WorkflowTask, WorkflowTaskEvent

pytestmark = [
    allure.epic("Collaborators"),
    allure.feature("Task Store"),
]


@pytest.fixture()
def task_store(tmp_path: Path):
    store = SqlTaskStore(tmp_path / "tasks.db")
    store.init_schema()
    yield store
    store.close()


def test_create_assigns_sequential_ids_and_blocks_on_dependencies(
    task_store: SqlTaskStore,
) -> None:
    first = task_store.create(TaskCreate(agent="PM", summary="Plan", session_id="s1"))
    second = task_store.create(
        TaskCreate(agent="ARCHITECT", summary="Design", dependency_task_ids=(first, first)),
        priority=TaskPriority.HIGH,
    )

    assert (first, second) == ("TASK-0001", "TASK-0002")
    blocked = task_store.get(second)
    assert blocked is not None
    assert blocked.status == TaskStatus.BLOCKED
    assert blocked.dependencies == [first]
    assert blocked.priority == TaskPriority.HIGH
    assert [task.task_id for task in task_store.ready_tasks()] == [first]


def test_completing_dependency_unblocks_dependents(task_store: SqlTaskStore) -> None:
    first = task_store.create(TaskCreate(agent="PM", summary="Plan"))
    second = task_store.create(
        TaskCreate(agent="ARCHITECT", summary="Design", dependency_task_ids=(first,)),
    )

    task_store.complete(first, {"summary": "requirements"})

    done = task_store.get(first)
    assert done is not None
    assert done.status == TaskStatus.COMPLETED
    assert done.output == {"summary": "requirements"}
    assert done.completed_at is not None
    unblocked = task_store.get(second)
    assert unblocked is not None
    assert unblocked.status == TaskStatus.PENDING

    with Session(task_store.engine) as session:
        events = session.exec(
            select(WorkflowTaskEvent).where(WorkflowTaskEvent.task_id == first),
        ).all()
    assert [(event.status_from, event.status_to) for event in events] == [
        (None, "pending"),
        ("pending", "in_progress"),
        ("in_progress", "completed"),
    ]


def test_invalid_transitions_are_rejected(task_store: SqlTaskStore) -> None:
    task_id = task_store.create(TaskCreate(agent="PM", summary="Plan"))
    task_store.complete(task_id, {})

    with pytest.raises(InvalidTaskTransitionError):
        task_store.start(task_id)
    with pytest.raises(CollaboratorError, match="Task not found"):
        task_store.fail("TASK-9999", "boom")


def test_failed_task_can_be_reopened(task_store: SqlTaskStore) -> None:
    task_id = task_store.create(TaskCreate(agent="DEV_BACKEND", summary="Build"))
    task_store.start(task_id)
    task_store.fail(task_id, "compile error")

    failed = task_store.get(task_id)
    assert failed is not None
    assert failed.error == "compile error"
    assert task_store.reopen(task_id).status == TaskStatus.PENDING


def test_listing_statistics_and_dependency_graph(task_store: SqlTaskStore) -> None:
    first = task_store.create(TaskCreate(agent="PM", summary="Plan", session_id="s1"))
    second = task_store.create(
        TaskCreate(agent="UIUX", summary="Design", dependency_task_ids=(first,), session_id="s1"),
    )
    task_store.create(TaskCreate(agent="PM", summary="Other", session_id="s2"))

    assert [task.task_id for task in task_store.list_tasks(session_id="s1")] == [first, second]
    assert len(task_store.list_tasks(agent="PM")) == 2
    assert [task.task_id for task in task_store.list_tasks(status=TaskStatus.BLOCKED)] == [second]

    stats = task_store.statistics()
    assert stats["total"] == 3
    assert stats["by_status"]["pending"] == 2
    assert stats["by_status"]["blocked"] == 1
    assert stats["by_agent"] == {"PM": 2, "UIUX": 1}

    graph = task_store.dependency_graph()
    assert graph[first]["blocking"] == [second]
    assert graph[second]["depends_on"] == [first]


def test_cleanup_removes_old_completed_tasks(task_store: SqlTaskStore) -> None:
    old = task_store.create(TaskCreate(agent="PM", summary="Old"))
    fresh = task_store.create(TaskCreate(agent="PM", summary="Fresh"))
    task_store.complete(old, {})
    task_store.complete(fresh, {})
    with Session(task_store.engine) as session:
        row = session.get(WorkflowTask, old)
        assert row is not None
        row.completed_at = utc_now() - timedelta(days=10)
        session.add(row)
        session.commit()

    assert task_store.cleanup(days=7) == 1
    assert task_store.get(old) is None
    assert task_store.get(fresh) is not None
