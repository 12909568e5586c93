"""TaskScheduler -- 并发受限的调度主循环

每轮迭代：
  1. 扫描待执行队列，选出依赖全部 completed 的就绪任务，至多 (上限 - |active|) 个
  2. 逐个获取 Worker、预留预算并派发；DispatchError 只推迟任务
  3. 等待任意一个在途操作结束（完成令牌队列上的一次阻塞读取）
  4. 对账：成功 -> completed + 归还 Worker + 提交实际成本；失败 -> 失败恢复协调器
  5. 检查预算健康度，必要时发出 BUDGET_WARNING
所有簿记都在这一个循环里同步完成，唯一的挂起点是第 3 步。
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from ulid import ULID

from codeswarm.core.exceptions import (
    BudgetExceededError,
    BudgetOverrunAlarm,
    DispatchError,
    RecoveryExhaustedError,
    TaskExecutionError,
)
from codeswarm.core.models import (
    PRIORITY_RANK,
    CompletedEntry,
    EventType,
    ExecutionSummary,
    FailedEntry,
    FileAction,
    RunSnapshot,
    Task,
    TaskRecord,
    TaskResult,
    TaskStatus,
    validate_transition,
)
from codeswarm.core.store import SqliteSnapshotStore

from .budget import BudgetController
from .events import EventHub
from .graph import DependencyGraph
from .pool import PooledWorker, WorkerPool
from .recovery import (
    REASON_CIRCUIT_BREAKER_OPEN,
    REASON_ESCALATED,
    FailureRecoveryCoordinator,
    RecoveryOutcome,
)
from .workers import WorkerRegistry

log = structlog.get_logger()

# 未能派发的原因
UNSCHEDULED_DEPENDENCY_FAILED = "dependency_failed"
UNSCHEDULED_BUDGET_EXHAUSTED = "budget_exhausted"
UNSCHEDULED_WORKER_UNAVAILABLE = "worker_unavailable"
UNSCHEDULED_BUDGET_OVERRUN = "budget_overrun"

_EPSILON = 1e-9


@dataclass
class _Dispatch:
    record: TaskRecord
    worker: PooledWorker
    handle: asyncio.Task


@dataclass
class _Completion:
    """完成令牌：result 与 error 二选一"""

    task_id: str
    result: TaskResult | None = None
    error: BaseException | None = None


class TaskScheduler:
    """调度器 -- TaskRecord、待执行队列与在途集合的唯一所有者"""

    def __init__(
        self,
        *,
        pool: WorkerPool,
        budget: BudgetController,
        recovery: FailureRecoveryCoordinator,
        registry: WorkerRegistry,
        max_concurrent_tasks: int = 3,
        budget_warning_threshold: float = 0.2,
        worker_wait_warning_s: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        hub: EventHub | None = None,
        snapshot_store: SqliteSnapshotStore | None = None,
        run_id: str | None = None,
    ) -> None:
        if max_concurrent_tasks < 1:
            raise ValueError("max_concurrent_tasks 必须 >= 1")
        if worker_wait_warning_s < 0:
            raise ValueError("worker_wait_warning_s 必须 >= 0")
        self._pool = pool
        self._budget = budget
        self._recovery = recovery
        self._registry = registry
        self._max_concurrent = max_concurrent_tasks
        self._warning_threshold = budget_warning_threshold
        self._wait_warning_s = worker_wait_warning_s
        self._clock = clock
        self._snapshot_store = snapshot_store
        self.run_id = run_id or str(ULID())
        self._hub = hub or EventHub()
        self._hub.run_id = self.run_id

        self._records: dict[str, TaskRecord] = {}
        self._pending: list[str] = []
        self._active: dict[str, _Dispatch] = {}
        self._completed: list[str] = []
        self._failed: dict[str, str] = {}
        self._unscheduled: dict[str, str] = {}
        self._deferrals: dict[str, str] = {}
        # task_id -> 首次因 Worker 不足被推迟的时刻
        self._waiting_since: dict[str, float] = {}
        self._wait_warned: set[str] = set()
        self._completions: asyncio.Queue[_Completion] = asyncio.Queue()
        self._halted = False
        self._budget_warned = False
        self._running = False
        self.peak_active = 0

    @property
    def hub(self) -> EventHub:
        return self._hub

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    @property
    def budget(self) -> BudgetController:
        return self._budget

    @property
    def recovery(self) -> FailureRecoveryCoordinator:
        return self._recovery

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    @property
    def active_ids(self) -> list[str]:
        return list(self._active)

    @property
    def completed_ids(self) -> list[str]:
        return list(self._completed)

    @property
    def failed_tasks(self) -> dict[str, str]:
        return dict(self._failed)

    def record(self, task_id: str) -> TaskRecord:
        return self._records[task_id]

    def load(self, graph: DependencyGraph) -> None:
        """载入依赖图：全部记录为 pending，队列顺序即拓扑 + 优先级顺序"""
        if self._records:
            raise RuntimeError("调度器已载入任务，不能重复载入")
        for record in graph.to_records():
            self._records[record.task_id] = record
            self._pending.append(record.task_id)

    async def run(self, graph: DependencyGraph | None = None) -> ExecutionSummary:
        """驱动待执行队列直到耗尽

        除非调度器本身存在缺陷，否则总是返回汇总而不是抛出异常。
        """
        if self._running:
            raise RuntimeError("调度器已在运行")
        if graph is not None:
            self.load(graph)

        # 本次运行内的日志（包括在途操作）都带上 run_id
        with structlog.contextvars.bound_contextvars(run_id=self.run_id):
            return await self._run()

    async def _run(self) -> ExecutionSummary:
        self._running = True
        started = time.monotonic()
        self._hub.emit(EventType.RUN_STARTED, task_count=len(self._pending))
        log.info(
            "run_started",
            pending=len(self._pending),
            completed=len(self._completed),
            max_concurrent_tasks=self._max_concurrent,
        )

        try:
            while self._pending or self._active:
                progressed = False
                if not self._halted:
                    progressed = await self._dispatch_ready()

                if self._active:
                    await self._wait_and_reconcile()
                elif not progressed:
                    self._mark_unscheduled()
                    break

                self._check_budget_health()
                await self._checkpoint()
        except asyncio.CancelledError:
            # 最近一次检查点之后的进度会丢失，resume 时在途任务重新执行
            for dispatch in self._active.values():
                dispatch.handle.cancel()
            log.warning("run_cancelled", active=len(self._active))
            raise
        finally:
            self._running = False

        await self._checkpoint()
        summary = self._summarize(int((time.monotonic() - started) * 1000))
        self._hub.emit(
            EventType.RUN_FINISHED,
            success=summary.success,
            completed=summary.completed_task_count,
            failed=summary.failed_task_count,
            unscheduled=summary.unscheduled_task_count,
            total_cost=summary.total_cost,
        )
        log.info(
            "run_finished",
            success=summary.success,
            completed=summary.completed_task_count,
            failed=summary.failed_task_count,
            unscheduled=summary.unscheduled_task_count,
            total_cost=round(summary.total_cost, 6),
            duration_ms=summary.duration_ms,
        )
        return summary

    # ---- 派发 ----

    async def _dispatch_ready(self) -> bool:
        capacity = self._max_concurrent - len(self._active)
        if capacity <= 0:
            return False

        candidates = [
            (position, self._records[task_id])
            for position, task_id in enumerate(self._pending)
            if self._is_ready(self._records[task_id])
        ]
        # 恢复重排的任务优先，其次按优先级，最后按队列位置
        candidates.sort(
            key=lambda c: (not c[1].requeued, PRIORITY_RANK[c[1].task.priority], c[0])
        )

        progressed = False
        dispatched: set[str] = set()
        for _, record in candidates:
            if len(dispatched) >= capacity:
                break
            outcome = await self._try_dispatch(record)
            if outcome is True:
                dispatched.add(record.task_id)
                progressed = True
            elif outcome is None:
                progressed = True

        if dispatched:
            self._pending = [tid for tid in self._pending if tid not in dispatched]
        return progressed

    async def _try_dispatch(self, record: TaskRecord) -> bool | None:
        """尝试派发单个任务

        Returns:
            True 已派发；False 被推迟；None 工厂报错并已交给失败恢复
        """
        task = record.task
        self._transition(record, TaskStatus.READY)

        # 不在池内等待：释放 Worker 的对账只在第 3 步发生
        try:
            worker = await self._pool.acquire(
                task.category,
                self._registry.factory_for(task.category),
                timeout=0,
            )
        except DispatchError as exc:
            waited = self._check_worker_wait(task)
            self._defer(record, UNSCHEDULED_WORKER_UNAVAILABLE, exc, waited_s=round(waited, 3))
            return False
        except Exception as exc:
            log.error(
                "worker_factory_failed",
                task_id=task.id,
                category=task.category.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._handle_failure(record, f"Worker 创建失败: {exc}")
            return None

        try:
            self._budget.reserve(
                task.id,
                task.estimated_cost,
                priority=task.priority.value,
                category=task.category.value,
            )
        except BudgetExceededError as exc:
            self._pool.release(worker)
            self._defer(record, UNSCHEDULED_BUDGET_EXHAUSTED, exc)
            return False

        self._transition(record, TaskStatus.ACTIVE)
        record.started_at = datetime.now(UTC)
        self._deferrals.pop(task.id, None)
        self._waiting_since.pop(task.id, None)
        self._wait_warned.discard(task.id)
        handle = asyncio.get_running_loop().create_task(
            self._execute(task, worker), name=f"codeswarm-task-{task.id}"
        )
        self._active[task.id] = _Dispatch(record=record, worker=worker, handle=handle)
        self.peak_active = max(self.peak_active, len(self._active))

        self._hub.emit(
            EventType.TASK_ASSIGNED,
            task.id,
            worker_id=worker.worker_id,
            category=task.category.value,
            priority=task.priority.value,
            estimated_cost=task.estimated_cost,
        )
        log.info(
            "task_dispatched",
            task_id=task.id,
            worker_id=worker.worker_id,
            category=task.category.value,
            active=len(self._active),
        )
        return True

    def _defer(
        self, record: TaskRecord, reason: str, exc: DispatchError, **payload: float
    ) -> None:
        self._transition(record, TaskStatus.PENDING)
        self._deferrals[record.task_id] = reason
        self._hub.emit(
            EventType.TASK_DEFERRED, record.task_id, reason=reason, error=str(exc), **payload
        )
        log.info("task_deferred", task_id=record.task_id, reason=reason, error=str(exc))

    def _check_worker_wait(self, task: Task) -> float:
        """返回任务累计等待 Worker 的时长；超过阈值时告警一次"""
        now = self._clock()
        since = self._waiting_since.setdefault(task.id, now)
        waited = now - since
        if self._wait_warning_s <= 0 or task.id in self._wait_warned:
            return waited
        if waited >= self._wait_warning_s:
            self._wait_warned.add(task.id)
            log.warning(
                "worker_wait_exceeded",
                task_id=task.id,
                category=task.category.value,
                waited_s=round(waited, 3),
                threshold_s=self._wait_warning_s,
            )
        return waited

    async def _execute(self, task: Task, worker: PooledWorker) -> None:
        """在途操作：结束时向完成队列投递一个令牌"""
        try:
            result = await worker.execute(task)
            if not result.success:
                raise TaskExecutionError(result.error or "Worker 报告失败", cost_usd=result.cost_usd)
        except Exception as exc:
            await self._completions.put(_Completion(task_id=task.id, error=exc))
        else:
            await self._completions.put(_Completion(task_id=task.id, result=result))

    # ---- 对账 ----

    async def _wait_and_reconcile(self) -> None:
        batch = [await self._completions.get()]
        while not self._completions.empty():
            batch.append(self._completions.get_nowait())
        for completion in batch:
            await self._reconcile(completion)

    async def _reconcile(self, completion: _Completion) -> None:
        dispatch = self._active.pop(completion.task_id)
        record = dispatch.record
        task = record.task

        if completion.error is None:
            result = completion.result
            self._pool.release(dispatch.worker)
            self._commit_cost(task.id, result.cost_usd)
            self._transition(record, TaskStatus.COMPLETED)
            record.completed_at = datetime.now(UTC)
            record.result = result
            self._completed.append(task.id)
            self._recovery.record_success(task.id)
            self._hub.emit(
                EventType.TASK_COMPLETED,
                task.id,
                cost_usd=result.cost_usd,
                files=[change.path for change in result.files],
            )
            log.info(
                "task_completed",
                task_id=task.id,
                cost_usd=result.cost_usd,
                estimated_cost=task.estimated_cost,
            )
            return

        error = completion.error
        self._pool.release(dispatch.worker, failed=True)
        cost = getattr(error, "cost_usd", 0.0) or 0.0
        if cost > 0:
            self._commit_cost(task.id, cost)
        else:
            self._budget.release(task.id)
        log.warning(
            "task_execution_failed",
            task_id=task.id,
            error_type=type(error).__name__,
            error=str(error),
            cost_usd=cost,
        )
        await self._handle_failure(record, str(error) or type(error).__name__)

    def _commit_cost(self, task_id: str, cost: float) -> None:
        try:
            self._budget.commit(task_id, cost)
        except BudgetOverrunAlarm as alarm:
            self._halted = True
            self._hub.emit(
                EventType.BUDGET_OVERRUN,
                task_id,
                committed=alarm.committed,
                reserved=alarm.reserved,
                total_budget=alarm.total_budget,
            )
            log.error(
                "budget_overrun_halt",
                task_id=task_id,
                committed=round(alarm.committed, 6),
                total_budget=alarm.total_budget,
                active=len(self._active),
            )

    # ---- 失败恢复 ----

    async def _handle_failure(self, record: TaskRecord, error: str) -> None:
        task = record.task
        if task.id in self._pending:
            self._pending.remove(task.id)

        try:
            outcome = await self._recovery.handle_failure(
                task,
                error,
                pending_tasks=[self._records[tid].task for tid in self._pending],
                completed_task_ids=list(self._completed),
                budget=self._budget.status(),
            )
        except RecoveryExhaustedError as exc:
            self._fail_permanently(record, exc.reason, error)
            return

        rejection = self._validate_revision(task, outcome)
        if rejection:
            log.warning("replan_rejected", task_id=task.id, problem=rejection)
            self._fail_permanently(record, REASON_ESCALATED, error)
            return

        self._apply_revision(record, outcome)

    def _validate_revision(self, task: Task, outcome: RecoveryOutcome) -> str:
        revised_ids = [t.id for t in outcome.tasks]
        if len(set(revised_ids)) != len(revised_ids):
            return "重规划任务 ID 重复"
        conflicts = [tid for tid in revised_ids if tid != task.id and tid in self._records]
        if conflicts:
            return f"重规划任务 ID 与已有任务冲突: {', '.join(conflicts)}"
        known = set(self._records) | set(revised_ids)
        if outcome.replaced:
            known.discard(task.id)
        unknown = sorted(
            {dep for t in outcome.tasks for dep in t.dependencies if dep not in known}
        )
        if unknown:
            return f"重规划任务依赖未知任务: {', '.join(unknown)}"
        return ""

    def _apply_revision(self, record: TaskRecord, outcome: RecoveryOutcome) -> None:
        original = record.task
        revised_ids = [t.id for t in outcome.tasks]

        if outcome.replaced:
            # 原任务被拆解替换：待执行的下游改为依赖全部新任务
            del self._records[original.id]
            for tid in self._pending:
                dependent = self._records[tid]
                if original.id in dependent.task.dependencies:
                    deps = (dependent.task.dependencies - {original.id}) | set(revised_ids)
                    dependent.task = dependent.task.model_copy(update={"dependencies": deps})

        for revised in outcome.tasks:
            if revised.id == original.id:
                self._transition(record, TaskStatus.PENDING)
                record.task = revised
                record.started_at = None
                record.result = None
                record.requeued = True
            else:
                self._records[revised.id] = TaskRecord(
                    task=revised,
                    status=TaskStatus.PENDING,
                    requeued=True,
                )

        self._pending[0:0] = revised_ids
        self._hub.emit(
            EventType.TASK_REQUEUED,
            original.id,
            strategy=outcome.strategy.value,
            attempt=outcome.attempt,
            requeued=revised_ids,
        )

    def _fail_permanently(self, record: TaskRecord, reason: str, error: str) -> None:
        self._transition(record, TaskStatus.FAILED)
        record.failure_reason = reason
        record.completed_at = datetime.now(UTC)
        self._failed[record.task_id] = reason

        if reason == REASON_CIRCUIT_BREAKER_OPEN:
            self._hub.emit(
                EventType.CIRCUIT_BREAKER_OPEN,
                record.task_id,
                attempts=self._recovery.attempts(record.task_id),
                max_attempts=self._recovery.max_attempts,
            )
        self._hub.emit(EventType.TASK_FAILED, record.task_id, reason=reason, error=error)
        log.warning("task_failed_permanently", task_id=record.task_id, reason=reason, error=error)

    # ---- 辅助 ----

    def _is_ready(self, record: TaskRecord) -> bool:
        for dep in record.task.dependencies:
            dep_record = self._records.get(dep)
            if dep_record is None or dep_record.status != TaskStatus.COMPLETED:
                return False
        return True

    def _mark_unscheduled(self) -> None:
        """无在途操作且本轮没有任何进展：剩余任务无法再被派发"""
        for task_id in self._pending:
            record = self._records[task_id]
            if self._halted:
                reason = UNSCHEDULED_BUDGET_OVERRUN
            elif not self._is_ready(record):
                reason = UNSCHEDULED_DEPENDENCY_FAILED
            else:
                reason = self._deferrals.get(task_id, UNSCHEDULED_WORKER_UNAVAILABLE)
            self._unscheduled[task_id] = reason

        log.warning(
            "run_stalled",
            unscheduled=len(self._unscheduled),
            halted=self._halted,
        )

    def _check_budget_health(self) -> None:
        if self._budget_warned:
            return
        ratio = self._budget.remaining_ratio()
        if ratio < self._warning_threshold - _EPSILON:
            self._budget_warned = True
            status = self._budget.status()
            self._hub.emit(
                EventType.BUDGET_WARNING,
                remaining=status.remaining,
                total_budget=status.total_budget,
                utilization_percent=status.utilization_percent,
                threshold=self._warning_threshold,
            )
            log.warning(
                "budget_warning",
                remaining=round(status.remaining, 6),
                remaining_ratio=round(ratio, 4),
                threshold=self._warning_threshold,
            )

    async def _checkpoint(self) -> None:
        if self._snapshot_store is None:
            return
        await self._snapshot_store.save_snapshot(self.serialize())

    def _transition(self, record: TaskRecord, to_status: TaskStatus) -> None:
        if not validate_transition(record.status, to_status):
            raise RuntimeError(
                f"非法状态流转: {record.task_id} {record.status.value} -> {to_status.value}"
            )
        record.status = to_status

    def _summarize(self, duration_ms: int) -> ExecutionSummary:
        created: dict[str, None] = {}
        modified: dict[str, None] = {}
        for task_id in self._completed:
            result = self._records[task_id].result
            if result is None:
                continue
            for change in result.files:
                target = created if change.action == FileAction.CREATE else modified
                target.setdefault(change.path, None)

        return ExecutionSummary(
            run_id=self.run_id,
            success=not self._failed and not self._unscheduled and not self._halted,
            completed_task_count=len(self._completed),
            failed_task_count=len(self._failed),
            unscheduled_task_count=len(self._unscheduled),
            files_created=list(created),
            files_modified=list(modified),
            total_cost=self._budget.committed,
            failed_tasks=dict(self._failed),
            unscheduled_tasks=dict(self._unscheduled),
            budget=self._budget.status(),
            duration_ms=duration_ms,
        )

    # ---- 快照 ----

    def serialize(self) -> RunSnapshot:
        """生成可恢复运行的最小快照"""
        return RunSnapshot(
            run_id=self.run_id,
            created_at=datetime.now(UTC),
            pending=[self._records[tid].task for tid in self._pending],
            active=[dispatch.record.task for dispatch in self._active.values()],
            completed=[
                CompletedEntry(
                    task=self._records[tid].task,
                    result=self._records[tid].result,
                    completed_at=self._records[tid].completed_at,
                )
                for tid in self._completed
            ],
            failed=[
                FailedEntry(
                    task=self._records[tid].task,
                    reason=reason,
                    failed_at=self._records[tid].completed_at,
                )
                for tid, reason in self._failed.items()
            ],
            breaker_attempts=self._recovery.snapshot(),
            budget_committed=self._budget.committed,
        )

    def restore(self, snapshot: RunSnapshot) -> None:
        """从快照恢复

        快照时仍在途的任务重新排到队首（视为恢复重排）；
        已完成与永久失败的任务不会再执行。
        """
        if self._records or self._running:
            raise RuntimeError("只能在空调度器上恢复快照")

        self.run_id = snapshot.run_id
        self._hub.run_id = snapshot.run_id

        for entry in snapshot.completed:
            self._records[entry.task.id] = TaskRecord(
                task=entry.task,
                status=TaskStatus.COMPLETED,
                result=entry.result,
                completed_at=entry.completed_at,
            )
            self._completed.append(entry.task.id)
        for entry in snapshot.failed:
            self._records[entry.task.id] = TaskRecord(
                task=entry.task,
                status=TaskStatus.FAILED,
                failure_reason=entry.reason,
                completed_at=entry.failed_at,
            )
            self._failed[entry.task.id] = entry.reason
        for task in snapshot.active:
            self._records[task.id] = TaskRecord(task=task, requeued=True)
            self._pending.append(task.id)
        for task in snapshot.pending:
            self._records[task.id] = TaskRecord(task=task)
            self._pending.append(task.id)

        self._recovery.restore(snapshot.breaker_attempts)
        self._budget.restore(snapshot.budget_committed)
        log.info(
            "run_restored",
            run_id=self.run_id,
            pending=len(self._pending),
            completed=len(self._completed),
            failed=len(self._failed),
        )
