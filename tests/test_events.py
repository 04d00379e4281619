from __future__ import annotations

import allure

from agent_workflows.orchestrator.events import EventChannel, EventKind, WorkflowEvent

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Notifications"),
]


def test_subscribers_receive_events_until_unsubscribed() -> None:
    channel = EventChannel()
    received: list[WorkflowEvent] = []
    unsubscribe = channel.subscribe(received.append)

    channel.emit(EventKind.STAGE_STARTED, session_id="s1", run_id="r1", stage="Planning")
    unsubscribe()
    channel.emit(EventKind.STAGE_COMPLETED, session_id="s1", run_id="r1")

    assert len(received) == 1
    assert received[0].kind == EventKind.STAGE_STARTED
    assert received[0].payload == {"stage": "Planning"}
    assert received[0].run_id == "r1"


def test_failing_handler_does_not_block_other_observers() -> None:
    channel = EventChannel()
    received: list[EventKind] = []

    def _broken(_event: WorkflowEvent) -> None:
        raise RuntimeError("observer bug")

    channel.subscribe(_broken)
    channel.subscribe(lambda event: received.append(event.kind))

    channel.emit(EventKind.AGENT_SPAWNED, agent="PM")

    assert received == [EventKind.AGENT_SPAWNED]


def test_bounded_queue_drops_oldest_events() -> None:
    channel = EventChannel()
    subscriber = channel.open_queue(maxsize=2)

    for index in range(3):
        channel.emit(EventKind.AGENT_RETRY, attempt=index)

    drained = [subscriber.get_nowait().payload["attempt"] for _ in range(subscriber.qsize())]
    assert drained == [1, 2]

    channel.close_queue(subscriber)
    channel.emit(EventKind.AGENT_RETRY, attempt=9)
    assert subscriber.empty()
