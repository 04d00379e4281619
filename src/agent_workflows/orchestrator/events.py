"""Typed notification channel for session and workflow lifecycle events."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_workflows.storage.common import utc_now

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    SESSION_CREATED = "session_created"
    SESSION_STATUS_CHANGED = "session_status_changed"
    CHECKPOINT_CREATED = "checkpoint_created"
    SESSION_RESTORED = "session_restored"
    SESSION_FAILED = "session_failed"
    SESSION_COMPLETED = "session_completed"
    SESSION_PAUSED = "session_paused"
    SESSION_DELETED = "session_deleted"
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_RESUMED = "workflow_resumed"
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    AGENT_SPAWNED = "agent_spawned"
    AGENT_COMPLETED = "agent_completed"
    AGENT_FAILED = "agent_failed"
    AGENT_RETRY = "agent_retry"
    PR_CREATED = "pr_created"
    PR_FAILED = "pr_failed"


@dataclass(slots=True, frozen=True)
class WorkflowEvent:
    kind: EventKind
    session_id: str | None = None
    run_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


EventHandler = Callable[[WorkflowEvent], None]


class EventChannel:
    """Fan-out of events to callback observers and bounded queues.

    Publishing is thread-safe so agents of a parallel stage can emit concurrently.
    A full queue drops its oldest event; a failing callback is logged and skipped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: list[EventHandler] = []
        self._queues: list[queue.Queue[WorkflowEvent]] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return _unsubscribe

    def open_queue(self, maxsize: int = 256) -> queue.Queue[WorkflowEvent]:
        subscriber: queue.Queue[WorkflowEvent] = queue.Queue(maxsize=max(1, maxsize))
        with self._lock:
            self._queues.append(subscriber)
        return subscriber

    def close_queue(self, subscriber: queue.Queue[WorkflowEvent]) -> None:
        with self._lock:
            if subscriber in self._queues:
                self._queues.remove(subscriber)

    def publish(self, event: WorkflowEvent) -> None:
        with self._lock:
            handlers = list(self._handlers)
            queues = list(self._queues)

        for subscriber in queues:
            _put_dropping_oldest(subscriber, event)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event.kind.value)

    def emit(
        self,
        kind: EventKind,
        *,
        session_id: str | None = None,
        run_id: str | None = None,
        **payload: Any,
    ) -> None:
        self.publish(
            WorkflowEvent(kind=kind, session_id=session_id, run_id=run_id, payload=payload),
        )


def _put_dropping_oldest(subscriber: queue.Queue[WorkflowEvent], event: WorkflowEvent) -> None:
    while True:
        try:
            subscriber.put_nowait(event)
            return
        except queue.Full:
            try:
                subscriber.get_nowait()
            except queue.Empty:
                continue
