"""Orchestrator -- 编排门面

把 EngineConfig、依赖图构建、Worker 池、预算控制、失败恢复与调度器装配在一起。
PlanningError 总是在任何派发之前抛给调用方；之后的运行总是以汇总结束。
"""

import time
from collections.abc import Callable, Sequence

import structlog

from codeswarm.core.config import EngineConfig
from codeswarm.core.exceptions import CodeSwarmError, PlanningError
from codeswarm.core.models import EventType, ExecutionSummary, PlanInput, Task
from codeswarm.core.store import StoreGroup

from .budget import BudgetController
from .events import EventHub, EventListener, EventRecorder
from .graph import DependencyGraph, DependencyGraphBuilder
from .pool import PooledWorker, WorkerPool
from .recovery import FailureRecoveryCoordinator
from .replanner import Replanner
from .scheduler import TaskScheduler
from .workers import EchoWorker, WorkerRegistry

log = structlog.get_logger()


class Orchestrator:
    """编排引擎入口

    每次 run()/resume() 使用全新的池、账本与熔断器；
    只有配置、注册表、重规划方和 Store 在多次运行间共享。
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        registry: WorkerRegistry | None = None,
        replanner: Replanner | None = None,
        store_group: StoreGroup | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            config: 引擎配置，默认使用 EngineConfig()
            registry: 类别工厂注册表，默认所有类别使用 EchoWorker
            replanner: 重规划协作方，默认 RetryReplanner
            store_group: 可选的 SQLite Store，提供快照与事件持久化
            clock: 单调时钟（池回收与熔断重置共用）
        """
        self.config = config or EngineConfig()
        self.registry = registry or WorkerRegistry.for_all_categories(EchoWorker)
        self._replanner = replanner
        self._store_group = store_group
        self._clock = clock
        self._listeners: list[EventListener] = []
        self.last_scheduler: TaskScheduler | None = None

    def add_listener(self, listener: EventListener) -> None:
        """注册事件监听器（对之后的每次运行生效）"""
        self._listeners.append(listener)

    def plan(self, plan: PlanInput | Sequence[Task]) -> DependencyGraph:
        """构建依赖图并检查类别注册

        Raises:
            PlanningError: 依赖图非法或存在未注册工厂的类别
        """
        if not isinstance(plan, PlanInput):
            plan = PlanInput(tasks=list(plan))
        builder = DependencyGraphBuilder(
            allow_unknown_dependencies=self.config.allow_unknown_dependencies,
        )
        graph = builder.build_from_plan(plan)
        self._check_categories(graph.tasks.values())
        return graph

    async def run(
        self,
        plan: PlanInput | Sequence[Task],
        run_id: str | None = None,
    ) -> ExecutionSummary:
        """规划并执行

        Raises:
            PlanningError: 依赖图非法（派发之前）
        """
        graph = self.plan(plan)
        return await self._execute(lambda scheduler: scheduler.load(graph), run_id)

    async def resume(self, run_id: str) -> ExecutionSummary:
        """从 SQLite 快照继续一次中断的运行

        Raises:
            CodeSwarmError: 未配置 Store 或快照不存在
            PlanningError: 快照中的任务类别未注册
        """
        if self._store_group is None:
            raise CodeSwarmError("未配置 Store，无法恢复运行", recoverable=False)
        snapshot = await self._store_group.snapshot_store.load_snapshot(run_id)
        if snapshot is None:
            raise CodeSwarmError(f"未找到运行快照: {run_id}", recoverable=False)

        self._check_categories([*snapshot.pending, *snapshot.active])
        last_seq = await self._store_group.event_store.get_last_seq(run_id)
        log.info("run_resuming", run_id=run_id, last_event_seq=last_seq)
        return await self._execute(
            lambda scheduler: scheduler.restore(snapshot), run_id, start_seq=last_seq
        )

    async def _execute(
        self,
        prepare: Callable[[TaskScheduler], None],
        run_id: str | None,
        start_seq: int = 0,
    ) -> ExecutionSummary:
        config = self.config
        hub = EventHub(start_seq=start_seq)
        for listener in self._listeners:
            hub.add_listener(listener)

        def on_evict(worker: PooledWorker, idle_seconds: float) -> None:
            hub.emit(
                EventType.WORKER_EVICTED,
                worker_id=worker.worker_id,
                category=worker.category.value,
                idle_seconds=idle_seconds,
            )

        pool = WorkerPool(
            max_per_category=config.worker_max_per_category,
            idle_timeout_s=config.worker_idle_timeout_s,
            reap_interval_s=config.worker_reap_interval_s,
            clock=self._clock,
            on_evict=on_evict,
        )
        scheduler = TaskScheduler(
            pool=pool,
            budget=BudgetController(config.total_budget, min_reserve=config.min_reserve),
            recovery=FailureRecoveryCoordinator(
                self._replanner,
                max_attempts=config.max_attempts,
                reset_window_s=config.breaker_reset_window_s,
                clock=self._clock,
            ),
            registry=self.registry,
            max_concurrent_tasks=config.max_concurrent_tasks,
            budget_warning_threshold=config.budget_warning_threshold,
            worker_wait_warning_s=config.worker_wait_warning_s,
            clock=self._clock,
            hub=hub,
            snapshot_store=self._store_group.snapshot_store if self._store_group else None,
            run_id=run_id,
        )
        prepare(scheduler)
        self.last_scheduler = scheduler

        recorder = EventRecorder(hub, self._store_group) if self._store_group else None
        if recorder is not None:
            await recorder.start()
        pool.start()
        try:
            return await scheduler.run()
        finally:
            await pool.close()
            if recorder is not None:
                await recorder.stop()

    def _check_categories(self, tasks) -> None:
        missing = self.registry.missing(task.category for task in tasks)
        if missing:
            raise PlanningError(
                f"未注册 Worker 工厂的类别: {', '.join(c.value for c in missing)}"
            )
