"""CodeSwarm 异常体系

PlanningError 在派发前中止运行；DispatchError 只推迟任务；
TaskExecutionError 交给失败恢复协调器；BudgetOverrunAlarm 视为缺陷信号。
"""


class CodeSwarmError(Exception):
    """CodeSwarm 基础异常"""

    def __init__(self, message: str, recoverable: bool = True) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 运行能否在本地吸收此错误并继续
        """
        super().__init__(message)
        self.recoverable = recoverable


class PlanningError(CodeSwarmError):
    """依赖图非法（重复 ID、未知依赖、环、未注册类别等）

    在任何派发之前抛给调用方。
    """

    def __init__(self, message: str, cycle: list[str] | None = None) -> None:
        super().__init__(message, recoverable=False)
        self.cycle = cycle or []


class DispatchError(CodeSwarmError):
    """派发失败 -- 任务被推迟而不是失败，下一轮扫描再试"""

    def __init__(self, message: str, task_id: str | None = None) -> None:
        super().__init__(message, recoverable=True)
        self.task_id = task_id


class WorkerPoolExhaustedError(DispatchError):
    """等待 Worker 超过阈值"""

    def __init__(self, category: str, timeout_s: float | None) -> None:
        super().__init__(f"Worker 池已满: category={category}, 等待 {timeout_s}s 未获得空闲槽位")
        self.category = category
        self.timeout_s = timeout_s


class BudgetExceededError(DispatchError):
    """预算预留被拒绝"""

    def __init__(
        self,
        operation_id: str,
        requested: float,
        projected: float,
        limit: float,
    ) -> None:
        super().__init__(
            f"预算不足: operation={operation_id}, 预计 ${projected:.4f} > 上限 ${limit:.4f}"
        )
        self.operation_id = operation_id
        self.requested = requested
        self.projected = projected
        self.limit = limit


class BudgetError(CodeSwarmError):
    """预算协议误用（重复预留、负成本、未知操作）"""

    def __init__(self, message: str) -> None:
        super().__init__(message, recoverable=False)


class BudgetOverrunAlarm(CodeSwarmError):
    """账本不变式被破坏：committed + Σreserved > totalBudget

    实际成本已记入账本后才抛出。
    """

    def __init__(self, committed: float, reserved: float, total_budget: float) -> None:
        super().__init__(
            f"预算超支告警: committed={committed:.4f} + reserved={reserved:.4f} "
            f"> total={total_budget:.4f}",
            recoverable=False,
        )
        self.committed = committed
        self.reserved = reserved
        self.total_budget = total_budget


class TaskExecutionError(CodeSwarmError):
    """Worker 报告任务执行失败

    cost_usd 为失败前已经产生的成本，0 表示未上报用量。
    """

    def __init__(self, message: str, cost_usd: float = 0.0) -> None:
        super().__init__(message, recoverable=True)
        self.cost_usd = cost_usd


class RecoveryExhaustedError(CodeSwarmError):
    """熔断器达到上限或重规划放弃 -- 本次运行内不再重试"""

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"任务 {task_id} 永久失败: {reason}", recoverable=False)
        self.task_id = task_id
        self.reason = reason
