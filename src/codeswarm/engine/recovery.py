"""FailureRecoveryCoordinator -- 按任务的熔断器 + 重规划委托

状态机：NoRecord -> Attempt(1) -> ... -> Attempt(max_attempts) -> PermanentlyFailed。
Attempt(k) 表示已记录 k 次失败；已处于 Attempt(max_attempts) 时再次失败即熔断，
不再咨询重规划方。熔断记录在静默 reset_window_s 之后惰性清除
（仅在查询时比较距上次失败的时间，不为每个任务保留定时器）。
"""

import inspect
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import structlog

from codeswarm.core.exceptions import RecoveryExhaustedError
from codeswarm.core.models import (
    BudgetStatus,
    RecoveryContext,
    RecoveryDecision,
    RecoveryStrategy,
    Task,
)

from .replanner import Replanner, RetryReplanner

log = structlog.get_logger()

REASON_CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
REASON_ESCALATED = "escalated"


@dataclass
class BreakerRecord:
    """单个任务的熔断记录"""

    attempts: int
    last_failure_at: float


@dataclass
class RecoveryOutcome:
    """恢复结果：需要重新排到队首的任务"""

    tasks: list[Task]
    strategy: RecoveryStrategy
    attempt: int
    reason: str = ""
    replaced: bool = False


class FailureRecoveryCoordinator:
    """失败恢复协调器"""

    def __init__(
        self,
        replanner: Replanner | None = None,
        max_attempts: int = 3,
        reset_window_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts 必须 >= 1")
        self._replanner = replanner or RetryReplanner()
        self._max_attempts = max_attempts
        self._reset_window_s = reset_window_s
        self._clock = clock
        self._records: dict[str, BreakerRecord] = {}

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def attempts(self, task_id: str) -> int:
        """已记录的失败次数（过期记录视为 0）"""
        record = self._lookup(task_id)
        return record.attempts if record else 0

    def is_open(self, task_id: str) -> bool:
        return self.attempts(task_id) >= self._max_attempts

    async def handle_failure(
        self,
        task: Task,
        error: str,
        *,
        pending_tasks: Sequence[Task] = (),
        completed_task_ids: Sequence[str] = (),
        budget: BudgetStatus | None = None,
    ) -> RecoveryOutcome:
        """处理一次任务失败

        Args:
            task: 失败的任务
            error: 失败原因
            pending_tasks: 当前待执行队列（交给重规划方参考）
            completed_task_ids: 已完成的任务 ID
            budget: 当前预算状态

        Returns:
            RecoveryOutcome，tasks 需重新排到待执行队列队首

        Raises:
            RecoveryExhaustedError: 熔断打开或重规划方上报
        """
        now = self._clock()
        record = self._lookup(task.id, now)

        if record is not None and record.attempts >= self._max_attempts:
            record.last_failure_at = now
            log.warning(
                "circuit_breaker_open",
                task_id=task.id,
                attempts=record.attempts,
                max_attempts=self._max_attempts,
                error=error,
            )
            raise RecoveryExhaustedError(task.id, REASON_CIRCUIT_BREAKER_OPEN)

        attempt = (record.attempts if record else 0) + 1
        self._records[task.id] = BreakerRecord(attempts=attempt, last_failure_at=now)

        context = RecoveryContext(
            failed_task=task,
            error=error,
            attempt=attempt,
            pending_tasks=list(pending_tasks),
            completed_task_ids=list(completed_task_ids),
            budget=budget,
        )
        decision = await self._consult(context)

        if decision.strategy == RecoveryStrategy.ESCALATE:
            log.warning("recovery_escalated", task_id=task.id, reason=decision.reason)
            raise RecoveryExhaustedError(task.id, REASON_ESCALATED)

        # 除 escalate 外的裁决（含 skip）都重新入队
        revised = list(decision.modified_tasks) or [task]
        # 拆解出的新任务继承原任务的失败次数
        for revised_task in revised:
            if revised_task.id != task.id:
                self._records[revised_task.id] = BreakerRecord(attempts=attempt, last_failure_at=now)

        log.info(
            "recovery_requeued",
            task_id=task.id,
            strategy=decision.strategy.value,
            attempt=attempt,
            requeued=[t.id for t in revised],
        )
        return RecoveryOutcome(
            tasks=revised,
            strategy=decision.strategy,
            attempt=attempt,
            reason=decision.reason,
            replaced=all(t.id != task.id for t in revised),
        )

    def record_success(self, task_id: str) -> None:
        """任务成功后清除其熔断记录"""
        if self._records.pop(task_id, None) is not None:
            log.debug("circuit_breaker_cleared", task_id=task_id)

    def snapshot(self) -> dict[str, int]:
        """未过期的失败次数，用于运行快照"""
        now = self._clock()
        return {
            task_id: record.attempts
            for task_id in list(self._records)
            if (record := self._lookup(task_id, now)) is not None
        }

    def restore(self, attempts: dict[str, int]) -> None:
        """从快照恢复失败次数，重置窗口从恢复时刻重新计时"""
        now = self._clock()
        self._records = {
            task_id: BreakerRecord(attempts=count, last_failure_at=now)
            for task_id, count in attempts.items()
            if count > 0
        }

    async def _consult(self, context: RecoveryContext) -> RecoveryDecision:
        try:
            decision = self._replanner.replan(context)
            if inspect.isawaitable(decision):
                decision = await decision
            if not isinstance(decision, RecoveryDecision):
                decision = RecoveryDecision.model_validate(decision)
        except Exception as exc:
            log.error(
                "replanner_failed",
                task_id=context.failed_task.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return RecoveryDecision(strategy=RecoveryStrategy.ESCALATE, reason=str(exc))
        return decision

    def _lookup(self, task_id: str, now: float | None = None) -> BreakerRecord | None:
        record = self._records.get(task_id)
        if record is None:
            return None
        if now is None:
            now = self._clock()
        if now - record.last_failure_at >= self._reset_window_s:
            del self._records[task_id]
            log.debug("circuit_breaker_reset", task_id=task_id, attempts=record.attempts)
            return None
        return record
