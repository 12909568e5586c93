"""EventHub -- 内存中的编排事件广播器

事件仅用于观测：同步回调监听器 + asyncio.Queue 订阅者。
EventRecorder 作为一个订阅者，把事件镜像写入 SQLite 事件表。
"""

import asyncio
import contextlib
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from ulid import ULID

from codeswarm.core.models import Event, EventType
from codeswarm.core.store import StoreGroup

log = structlog.get_logger()

EventListener = Callable[[Event], None]


class EventHub:
    """编排事件广播器 -- 监听器回调 + 基于 asyncio.Queue 的发布/订阅"""

    def __init__(self, run_id: str = "", queue_maxsize: int = 1000, start_seq: int = 0) -> None:
        """
        Args:
            run_id: 所属运行 ID（调度器在载入后写入）
            queue_maxsize: 每个订阅队列的容量，写满的订阅者会被移除
            start_seq: 起始序号，resume 时从已持久化的最大 seq 继续
        """
        self.run_id = run_id
        self._seq = start_seq
        self._queue_maxsize = queue_maxsize
        self._listeners: list[EventListener] = []
        self._subscribers: set[asyncio.Queue] = set()
        self._history: list[Event] = []

    @property
    def history(self) -> list[Event]:
        """本次运行已发出的全部事件（按时间顺序）"""
        return list(self._history)

    def of_type(self, event_type: EventType) -> list[Event]:
        return [e for e in self._history if e.type == event_type]

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def subscribe(self) -> asyncio.Queue:
        """订阅事件流

        Returns:
            asyncio.Queue 实例，新事件会被推送到此队列
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_maxsize)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def emit(self, event_type: EventType, task_id: str | None = None, **payload: Any) -> Event:
        """构建并广播事件

        监听器抛出的异常只记录日志，不会影响调用方。
        """
        self._seq += 1
        event = Event(
            event_id=str(ULID()),
            run_id=self.run_id,
            seq=self._seq,
            type=event_type,
            task_id=task_id,
            ts=datetime.now(UTC),
            payload=payload,
        )
        self._history.append(event)
        log.debug("event_emitted", event_type=event_type.value, task_id=task_id)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("event_listener_failed", event_type=event_type.value)

        dead_queues = []
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                dead_queues.append(queue)

        # 清理已满的队列
        for queue in dead_queues:
            self._subscribers.discard(queue)
            log.warning("event_subscriber_dropped", queue_maxsize=self._queue_maxsize)

        return event


class EventRecorder:
    """把 EventHub 的事件追加到 SQLite 事件表"""

    def __init__(self, hub: EventHub, store_group: StoreGroup) -> None:
        self._hub = hub
        self._store_group = store_group
        self._queue: asyncio.Queue | None = None
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._queue = self._hub.subscribe()
        self._task = asyncio.get_running_loop().create_task(self._drain(self._queue))

    async def stop(self) -> None:
        """写完已排队的事件后停止"""
        if self._queue is None or self._task is None:
            return
        self._hub.unsubscribe(self._queue)
        await self._queue.join()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        await self._store_group.conn.commit()
        self._queue = None
        self._task = None

    async def _drain(self, queue: asyncio.Queue) -> None:
        event_store = self._store_group.event_store
        while True:
            event = await queue.get()
            try:
                await event_store.append_event(event)
                if queue.empty():
                    await self._store_group.conn.commit()
            except Exception:
                log.exception(
                    "event_persist_failed",
                    event_id=event.event_id,
                    event_type=event.type.value,
                )
            finally:
                queue.task_done()
