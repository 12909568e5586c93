"""WorkerPool -- 按类别复用 Worker 实例

每个类别维护空闲列表与忙碌集合，总数不超过 max_per_category。
Worker 在释放时打上时间戳，空闲超过 idle_timeout_s 的实例会被回收
（周期回收任务 + acquire 时惰性检查），从而给新实例腾出槽位。
"""

import asyncio
import contextlib
import inspect
import time
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from ulid import ULID

from codeswarm.core.exceptions import WorkerPoolExhaustedError
from codeswarm.core.models import Task, TaskCategory, TaskResult, WorkerState

log = structlog.get_logger()

WorkerFactory = Callable[[], Any | Awaitable[Any]]


@dataclass(eq=False)
class PooledWorker:
    """池内 Worker：包装由工厂创建的执行器

    eq=False 保证按实例身份比较，同一实例复用时 acquire 返回同一对象。
    """

    worker_id: str
    category: TaskCategory
    executor: Any
    created_at: float
    state: WorkerState = WorkerState.IDLE
    last_released_at: float | None = None
    acquired_at: float | None = None
    tasks_executed: int = 0

    async def execute(self, task: Task) -> TaskResult:
        """委托执行器执行任务，兼容同步与异步 execute()"""
        self.tasks_executed += 1
        outcome = self.executor.execute(task)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if isinstance(outcome, TaskResult):
            return outcome
        return TaskResult.model_validate(outcome)


@dataclass
class PoolMetrics:
    """池统计"""

    acquired: int = 0
    released: int = 0
    created: int = 0
    reused: int = 0
    evicted: int = 0
    destroyed: int = 0
    exhausted: int = 0

    def efficiency(self) -> float:
        """复用率（百分比）"""
        return (self.reused / self.acquired) * 100 if self.acquired else 0.0


@dataclass
class _CategoryPool:
    idle: list[PooledWorker] = field(default_factory=list)
    busy: dict[str, PooledWorker] = field(default_factory=dict)
    creating: int = 0
    waiters: deque[asyncio.Future] = field(default_factory=deque)

    @property
    def total(self) -> int:
        return len(self.idle) + len(self.busy) + self.creating


class WorkerPool:
    """有界、可复用、按类别划分的 Worker 池

    独占不变式：标记为 busy 的 Worker 绝不会被并发的 acquire() 再次返回。
    """

    def __init__(
        self,
        max_per_category: int = 3,
        idle_timeout_s: float = 300.0,
        reap_interval_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        on_evict: Callable[[PooledWorker, float], None] | None = None,
    ) -> None:
        """
        Args:
            max_per_category: 每个类别的实例上限（空闲 + 忙碌 + 创建中）
            idle_timeout_s: 空闲超过此时长的 Worker 被回收
            reap_interval_s: 周期回收间隔
            clock: 单调时钟（测试可注入）
            on_evict: 回收回调 (worker, idle_seconds)
        """
        if max_per_category < 1:
            raise ValueError("max_per_category 必须 >= 1")
        self._max = max_per_category
        self._idle_timeout_s = idle_timeout_s
        self._reap_interval_s = reap_interval_s
        self._clock = clock
        self._on_evict = on_evict
        self._pools: dict[TaskCategory, _CategoryPool] = defaultdict(_CategoryPool)
        self._reaper: asyncio.Task | None = None
        self.metrics = PoolMetrics()

    async def acquire(
        self,
        category: TaskCategory | str,
        factory: WorkerFactory,
        timeout: float | None = None,
    ) -> PooledWorker:
        """获取一个该类别的 Worker

        优先复用空闲实例；否则在未达上限时通过 factory() 创建；
        否则等待槽位释放。

        Args:
            category: Worker 类别
            factory: 无参工厂，返回执行器（可为 awaitable）
            timeout: 等待阈值（秒），0 表示不等待，None 表示一直等待

        Raises:
            WorkerPoolExhaustedError: 超过等待阈值仍无可用槽位
        """
        category = TaskCategory(category)
        pool = self._pools[category]
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        woken = False

        while True:
            self._evict_expired(category)

            if pool.idle:
                return self._checkout(pool.idle.pop(), reused=True)

            if pool.total < self._max:
                return await self._create(category, factory)

            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                self.metrics.exhausted += 1
                log.info(
                    "worker_pool_exhausted",
                    category=category.value,
                    busy=len(pool.busy),
                    max_per_category=self._max,
                )
                raise WorkerPoolExhaustedError(category.value, timeout)

            # 被唤醒却没抢到槽位的等待者回到队首，保持 FIFO
            waiter = loop.create_future()
            if woken:
                pool.waiters.appendleft(waiter)
            else:
                pool.waiters.append(waiter)
            try:
                await asyncio.wait_for(waiter, remaining)
            except TimeoutError:
                self._pass_wakeup(pool, waiter)
                self.metrics.exhausted += 1
                raise WorkerPoolExhaustedError(category.value, timeout) from None
            except asyncio.CancelledError:
                self._pass_wakeup(pool, waiter)
                raise
            finally:
                if waiter in pool.waiters:
                    pool.waiters.remove(waiter)
            woken = True

    def release(self, worker: PooledWorker, failed: bool = False) -> None:
        """归还 Worker

        failed=True 表示 Worker 不健康，直接丢弃而不是放回空闲列表。
        """
        pool = self._pools[worker.category]
        if pool.busy.get(worker.worker_id) is not worker:
            log.warning(
                "release_unknown_worker",
                worker_id=worker.worker_id,
                category=worker.category.value,
            )
            return

        del pool.busy[worker.worker_id]
        self.metrics.released += 1

        if failed:
            self.metrics.destroyed += 1
            log.info(
                "worker_discarded",
                worker_id=worker.worker_id,
                category=worker.category.value,
            )
        else:
            worker.state = WorkerState.IDLE
            worker.last_released_at = self._clock()
            pool.idle.append(worker)
            log.debug(
                "worker_released",
                worker_id=worker.worker_id,
                category=worker.category.value,
                available=len(pool.idle),
            )

        self._wake_waiter(pool)

    def reclaim_idle(self) -> list[PooledWorker]:
        """回收所有类别中空闲超时的 Worker"""
        evicted: list[PooledWorker] = []
        for category in list(self._pools):
            evicted.extend(self._evict_expired(category))
        return evicted

    def start(self) -> None:
        """启动周期回收任务（需在事件循环内调用）"""
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.get_running_loop().create_task(self._reap_loop())

    async def close(self) -> None:
        """停止回收任务并清空池"""
        if self._reaper is not None:
            self._reaper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reaper
            self._reaper = None

        for pool in self._pools.values():
            for waiter in pool.waiters:
                if not waiter.done():
                    waiter.cancel()
        self._pools.clear()
        log.debug("worker_pool_closed")

    def stats(self) -> dict[str, Any]:
        """池统计（按类别）"""
        return {
            "metrics": {
                "acquired": self.metrics.acquired,
                "released": self.metrics.released,
                "created": self.metrics.created,
                "reused": self.metrics.reused,
                "evicted": self.metrics.evicted,
                "destroyed": self.metrics.destroyed,
                "exhausted": self.metrics.exhausted,
            },
            "efficiency": self.metrics.efficiency(),
            "pools": {
                category.value: {
                    "available": len(pool.idle),
                    "busy": len(pool.busy),
                    "total": pool.total,
                }
                for category, pool in self._pools.items()
            },
        }

    def busy_workers(self) -> list[PooledWorker]:
        """当前所有忙碌 Worker"""
        return [w for pool in self._pools.values() for w in pool.busy.values()]

    async def _create(self, category: TaskCategory, factory: WorkerFactory) -> PooledWorker:
        pool = self._pools[category]
        # 先占槽位，避免 await 工厂期间被其它 acquire 超额创建
        pool.creating += 1
        try:
            executor = factory()
            if inspect.isawaitable(executor):
                executor = await executor
        except Exception:
            self._wake_waiter(pool)
            raise
        finally:
            pool.creating -= 1

        worker = PooledWorker(
            worker_id=str(ULID()),
            category=category,
            executor=executor,
            created_at=self._clock(),
        )
        self.metrics.created += 1
        log.info(
            "worker_created",
            worker_id=worker.worker_id,
            category=category.value,
            total=pool.total + 1,
        )
        return self._checkout(worker, reused=False)

    def _checkout(self, worker: PooledWorker, reused: bool) -> PooledWorker:
        pool = self._pools[worker.category]
        worker.state = WorkerState.BUSY
        worker.acquired_at = self._clock()
        pool.busy[worker.worker_id] = worker
        self.metrics.acquired += 1
        if reused:
            self.metrics.reused += 1
            log.debug(
                "worker_reused",
                worker_id=worker.worker_id,
                category=worker.category.value,
                available=len(pool.idle),
            )
        return worker

    def _evict_expired(self, category: TaskCategory) -> list[PooledWorker]:
        pool = self._pools[category]
        now = self._clock()
        keep: list[PooledWorker] = []
        evicted: list[PooledWorker] = []
        for worker in pool.idle:
            idle_for = now - self._idle_since(worker)
            if idle_for > self._idle_timeout_s:
                evicted.append(worker)
            else:
                keep.append(worker)

        if not evicted:
            return evicted

        pool.idle = keep
        for worker in evicted:
            idle_for = now - self._idle_since(worker)
            self.metrics.evicted += 1
            log.info(
                "worker_evicted",
                worker_id=worker.worker_id,
                category=category.value,
                idle_seconds=round(idle_for, 3),
            )
            if self._on_evict is not None:
                self._on_evict(worker, idle_for)
            self._wake_waiter(pool)
        return evicted

    @staticmethod
    def _idle_since(worker: PooledWorker) -> float:
        if worker.last_released_at is None:
            return worker.created_at
        return worker.last_released_at

    @staticmethod
    def _wake_waiter(pool: _CategoryPool) -> None:
        while pool.waiters:
            waiter = pool.waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    @classmethod
    def _pass_wakeup(cls, pool: _CategoryPool, waiter: asyncio.Future) -> None:
        """已被唤醒的等待者放弃等待时，把唤醒转交给下一个等待者"""
        if waiter.done() and not waiter.cancelled():
            cls._wake_waiter(pool)

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self._reap_interval_s)
            self.reclaim_idle()
