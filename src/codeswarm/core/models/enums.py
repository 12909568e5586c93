"""枚举定义 -- 任务状态机、优先级、类别、事件类型

包含 TaskStatus 状态机、TaskPriority、TaskCategory、WorkerState、EventType、
RecoveryStrategy、FileAction 枚举，以及 VALID_TRANSITIONS 合法流转映射和
TERMINAL_STATES 终态集合。
"""

from enum import StrEnum


class TaskStatus(StrEnum):
    """TaskRecord 状态机（由调度器独占修改）"""

    PENDING = "pending"
    READY = "ready"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# 合法状态流转
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.READY, TaskStatus.FAILED},
    # READY -> PENDING 为派发被推迟（Worker 或预算不足）；
    # READY -> FAILED 为 Worker 工厂报错后恢复失败
    TaskStatus.READY: {TaskStatus.ACTIVE, TaskStatus.PENDING, TaskStatus.FAILED},
    # ACTIVE -> PENDING 为失败后经恢复重新入队
    TaskStatus.ACTIVE: {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.PENDING,
    },
    # 终态不可再流转
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}

TERMINAL_STATES: set[TaskStatus] = {
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
}


class TaskPriority(StrEnum):
    """任务优先级，仅影响同时就绪任务之间的先后"""

    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


# 排序用：数值越小越优先
PRIORITY_RANK: dict[TaskPriority, int] = {
    TaskPriority.HIGH: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.LOW: 2,
}


class TaskCategory(StrEnum):
    """Worker 类别（封闭集合，通过工厂注册表解析）"""

    BACKEND = "backend"
    FRONTEND = "frontend"
    TESTING = "testing"
    DATABASE = "database"
    DEVOPS = "devops"
    DOCS = "docs"
    ARCHITECT = "architect"


class WorkerState(StrEnum):
    """Worker 生命周期状态"""

    IDLE = "idle"
    BUSY = "busy"


class FileAction(StrEnum):
    """任务结果中的文件动作"""

    CREATE = "create"
    MODIFY = "modify"


class RecoveryStrategy(StrEnum):
    """重规划协作方返回的恢复策略"""

    RETRY = "retry"
    REASSIGN = "reassign"
    BREAKDOWN = "breakdown"
    SKIP = "skip"
    ESCALATE = "escalate"


class EventType(StrEnum):
    """编排事件类型（仅用于观测，不影响正确性）"""

    TASK_ASSIGNED = "TASK_ASSIGNED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_FAILED = "TASK_FAILED"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    BUDGET_WARNING = "BUDGET_WARNING"
    TASK_DEFERRED = "TASK_DEFERRED"
    TASK_REQUEUED = "TASK_REQUEUED"
    BUDGET_OVERRUN = "BUDGET_OVERRUN"
    WORKER_EVICTED = "WORKER_EVICTED"
    RUN_STARTED = "RUN_STARTED"
    RUN_FINISHED = "RUN_FINISHED"


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """验证状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed
