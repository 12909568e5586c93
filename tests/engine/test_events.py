"""EventHub / EventRecorder 单元测试"""

import asyncio

from codeswarm.core.models import EventType
from codeswarm.engine.events import EventHub, EventRecorder


class TestEventHub:
    """事件广播"""

    def test_emit_builds_event(self):
        hub = EventHub(run_id="run-1")

        event = hub.emit(EventType.TASK_ASSIGNED, "A", worker_id="w1")

        assert event.run_id == "run-1"
        assert event.task_id == "A"
        assert event.type == EventType.TASK_ASSIGNED
        assert event.payload == {"worker_id": "w1"}
        assert len(event.event_id) == 26
        assert hub.history == [event]

    def test_seq_continues_from_start(self):
        hub = EventHub(start_seq=5)

        first = hub.emit(EventType.RUN_STARTED)
        second = hub.emit(EventType.TASK_ASSIGNED, "A")

        assert (first.seq, second.seq) == (6, 7)

    def test_of_type_filters(self):
        hub = EventHub()
        hub.emit(EventType.TASK_ASSIGNED, "A")
        hub.emit(EventType.TASK_COMPLETED, "A")
        hub.emit(EventType.TASK_ASSIGNED, "B")

        assert [e.task_id for e in hub.of_type(EventType.TASK_ASSIGNED)] == ["A", "B"]

    def test_listeners_receive_events(self):
        hub = EventHub()
        received = []
        hub.add_listener(received.append)

        hub.emit(EventType.BUDGET_WARNING, remaining=0.1)
        hub.remove_listener(received.append)
        hub.emit(EventType.BUDGET_WARNING, remaining=0.05)

        assert len(received) == 1
        assert received[0].task_id is None

    def test_listener_error_does_not_propagate(self):
        hub = EventHub()
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        hub.add_listener(broken)
        hub.add_listener(received.append)

        hub.emit(EventType.TASK_FAILED, "A", reason="escalated")

        assert len(received) == 1

    async def test_subscriber_queue(self):
        hub = EventHub()
        queue = hub.subscribe()

        hub.emit(EventType.TASK_COMPLETED, "A")

        event = await asyncio.wait_for(queue.get(), 1)
        assert event.task_id == "A"

        hub.unsubscribe(queue)
        hub.emit(EventType.TASK_COMPLETED, "B")
        assert queue.empty()

    async def test_full_subscriber_dropped(self):
        hub = EventHub(queue_maxsize=1)
        queue = hub.subscribe()

        hub.emit(EventType.TASK_ASSIGNED, "A")
        hub.emit(EventType.TASK_ASSIGNED, "B")
        hub.emit(EventType.TASK_ASSIGNED, "C")

        assert queue.qsize() == 1
        assert (await queue.get()).task_id == "A"
        assert len(hub.history) == 3


class TestEventRecorder:
    """事件持久化"""

    async def test_events_mirrored_to_store(self, store_group):
        hub = EventHub(run_id="run-rec")
        recorder = EventRecorder(hub, store_group)
        await recorder.start()

        hub.emit(EventType.RUN_STARTED, task_count=2)
        hub.emit(EventType.TASK_ASSIGNED, "A", worker_id="w1")
        hub.emit(EventType.TASK_COMPLETED, "A", cost_usd=0.5)
        await recorder.stop()

        events = await store_group.event_store.get_events_for_run("run-rec")
        assert {e.type for e in events} == {
            EventType.RUN_STARTED,
            EventType.TASK_ASSIGNED,
            EventType.TASK_COMPLETED,
        }
        task_events = await store_group.event_store.get_events_for_task("A")
        assert len(task_events) == 2

    async def test_stop_without_start_is_noop(self, store_group):
        recorder = EventRecorder(EventHub(), store_group)
        await recorder.stop()

    async def test_events_after_stop_not_recorded(self, store_group):
        hub = EventHub(run_id="run-stop")
        recorder = EventRecorder(hub, store_group)
        await recorder.start()
        hub.emit(EventType.RUN_STARTED)
        await recorder.stop()

        hub.emit(EventType.RUN_FINISHED)

        events = await store_group.event_store.get_events_for_run("run-stop")
        assert [e.type for e in events] == [EventType.RUN_STARTED]
