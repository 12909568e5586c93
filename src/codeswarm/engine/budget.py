"""BudgetController -- 预算准入控制（reserve / commit / release）

账本不变式：committed + Σreserved <= total_budget。
预留在派发前检查；实际成本在完成时提交，可以与预估不同（差异被吸收）。
若吸收差异后不变式被破坏，成本照常记账，然后抛出 BudgetOverrunAlarm。
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from codeswarm.core.exceptions import BudgetError, BudgetExceededError, BudgetOverrunAlarm
from codeswarm.core.models import BudgetStatus

log = structlog.get_logger()

# 浮点比较容差
_EPSILON = 1e-9


@dataclass
class Reservation:
    """一次未决的预算预留"""

    operation_id: str
    estimated_cost: float
    created_at: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UsageRecord:
    """已提交操作的用量记录"""

    operation_id: str
    estimated_cost: float
    actual_cost: float
    committed_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def variance(self) -> float:
        return self.actual_cost - self.estimated_cost

    @property
    def variance_percent(self) -> float | None:
        if self.estimated_cost <= 0:
            return None
        return self.variance / self.estimated_cost * 100


class BudgetController:
    """预算准入控制器

    由调度循环独占调用，所有方法均为同步簿记。
    """

    def __init__(
        self,
        total_budget: float,
        min_reserve: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            total_budget: 总预算（USD）
            min_reserve: 预留之后必须保留的最小余额
            clock: 单调时钟，用于预留过期判断
        """
        if total_budget <= 0:
            raise BudgetError(f"total_budget 必须为正数: {total_budget}")
        if min_reserve < 0:
            raise BudgetError(f"min_reserve 不能为负数: {min_reserve}")
        self._total = total_budget
        self._min_reserve = min_reserve
        self._clock = clock
        self._committed = 0.0
        self._reservations: dict[str, Reservation] = {}
        self._history: list[UsageRecord] = []

    @property
    def total_budget(self) -> float:
        return self._total

    @property
    def committed(self) -> float:
        return self._committed

    @property
    def reserved(self) -> float:
        return sum(r.estimated_cost for r in self._reservations.values())

    @property
    def history(self) -> tuple[UsageRecord, ...]:
        return tuple(self._history)

    def has_reservation(self, operation_id: str) -> bool:
        return operation_id in self._reservations

    def reserve(self, operation_id: str, estimated_cost: float, **metadata: Any) -> Reservation:
        """预留预算

        仅当 committed + Σreserved + estimated_cost <= total_budget
        （且剩余不低于 min_reserve）时成功。

        Args:
            operation_id: 操作 ID（调度器使用 task_id）
            estimated_cost: 预估成本
            **metadata: 附加信息（priority、category 等），进入用量历史

        Returns:
            Reservation 实例

        Raises:
            BudgetError: 成本为负或 operation_id 已有预留
            BudgetExceededError: 预留会突破预算上限
        """
        if estimated_cost < 0:
            raise BudgetError(f"预估成本不能为负数: {operation_id}={estimated_cost}")
        if operation_id in self._reservations:
            raise BudgetError(f"操作已存在预留: {operation_id}")

        projected = self._committed + self.reserved + estimated_cost
        if projected > self._total + _EPSILON:
            log.info(
                "budget_reservation_rejected",
                operation_id=operation_id,
                requested=estimated_cost,
                projected=round(projected, 6),
                limit=self._total,
            )
            raise BudgetExceededError(operation_id, estimated_cost, projected, self._total)

        if self._min_reserve > 0 and self._total - projected < self._min_reserve - _EPSILON:
            limit = self._total - self._min_reserve
            log.info(
                "budget_min_reserve_violation",
                operation_id=operation_id,
                requested=estimated_cost,
                projected=round(projected, 6),
                min_reserve=self._min_reserve,
            )
            raise BudgetExceededError(operation_id, estimated_cost, projected, limit)

        reservation = Reservation(
            operation_id=operation_id,
            estimated_cost=estimated_cost,
            created_at=self._clock(),
            metadata=dict(metadata),
        )
        self._reservations[operation_id] = reservation
        log.debug(
            "budget_reserved",
            operation_id=operation_id,
            estimated_cost=estimated_cost,
            remaining=round(self.remaining(), 6),
        )
        return reservation

    def commit(self, operation_id: str, actual_cost: float) -> UsageRecord:
        """提交实际成本并移除预留

        Raises:
            BudgetError: 未知操作或成本为负
            BudgetOverrunAlarm: 记账后账本不变式被破坏
        """
        if actual_cost < 0:
            raise BudgetError(f"实际成本不能为负数: {operation_id}={actual_cost}")
        reservation = self._reservations.pop(operation_id, None)
        if reservation is None:
            raise BudgetError(f"提交未知预留: {operation_id}")

        self._committed += actual_cost
        record = UsageRecord(
            operation_id=operation_id,
            estimated_cost=reservation.estimated_cost,
            actual_cost=actual_cost,
            committed_at=datetime.now(UTC),
            metadata=reservation.metadata,
        )
        self._history.append(record)
        log.debug(
            "budget_committed",
            operation_id=operation_id,
            estimated_cost=reservation.estimated_cost,
            actual_cost=actual_cost,
            variance=round(record.variance, 6),
        )

        reserved = self.reserved
        if self._committed + reserved > self._total + _EPSILON:
            log.error(
                "budget_overrun",
                operation_id=operation_id,
                committed=round(self._committed, 6),
                reserved=round(reserved, 6),
                total_budget=self._total,
            )
            raise BudgetOverrunAlarm(self._committed, reserved, self._total)
        return record

    def release(self, operation_id: str) -> None:
        """释放预留（操作在上报用量前中止）

        Raises:
            BudgetError: 未知操作
        """
        reservation = self._reservations.pop(operation_id, None)
        if reservation is None:
            raise BudgetError(f"释放未知预留: {operation_id}")
        log.debug(
            "budget_released",
            operation_id=operation_id,
            estimated_cost=reservation.estimated_cost,
        )

    def remaining(self) -> float:
        """total_budget - committed - Σreserved"""
        return self._total - self._committed - self.reserved

    def remaining_ratio(self) -> float:
        return self.remaining() / self._total

    def expire_reservations(self, max_age_s: float) -> list[str]:
        """释放存在时间超过 max_age_s 的预留，返回被释放的操作 ID"""
        now = self._clock()
        expired = [
            op_id
            for op_id, reservation in self._reservations.items()
            if now - reservation.created_at > max_age_s
        ]
        for op_id in expired:
            del self._reservations[op_id]
            log.warning("budget_reservation_expired", operation_id=op_id)
        return expired

    def restore(self, committed: float) -> None:
        """从快照恢复已提交金额（仅在没有未决预留时允许）"""
        if self._reservations:
            raise BudgetError("存在未决预留时不能恢复账本")
        if committed < 0:
            raise BudgetError(f"已提交金额不能为负数: {committed}")
        self._committed = committed
        log.info("budget_restored", committed=committed, total_budget=self._total)

    def status(self) -> BudgetStatus:
        """当前账本状态"""
        reserved = self.reserved
        completed = len(self._history)
        return BudgetStatus(
            total_budget=self._total,
            committed=self._committed,
            reserved=reserved,
            remaining=self._total - self._committed - reserved,
            utilization_percent=(self._committed + reserved) / self._total * 100,
            active_reservations=len(self._reservations),
            completed_operations=completed,
            average_cost=(
                sum(r.actual_cost for r in self._history) / completed if completed else 0.0
            ),
        )
