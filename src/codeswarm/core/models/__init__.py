"""CodeSwarm Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .enums import (
    PRIORITY_RANK,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    EventType,
    FileAction,
    RecoveryStrategy,
    TaskCategory,
    TaskPriority,
    TaskStatus,
    WorkerState,
    validate_transition,
)
from .event import Event
from .plan import (
    BudgetStatus,
    CompletedEntry,
    ExecutionSummary,
    FailedEntry,
    FeatureConstraint,
    PlanInput,
    RunSnapshot,
    SubPlan,
)
from .recovery import RecoveryContext, RecoveryDecision
from .task import FileChange, Task, TaskRecord, TaskResult

__all__ = [
    # 枚举
    "TaskStatus",
    "TaskPriority",
    "TaskCategory",
    "WorkerState",
    "FileAction",
    "RecoveryStrategy",
    "EventType",
    "PRIORITY_RANK",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "validate_transition",
    # Task
    "Task",
    "TaskRecord",
    "TaskResult",
    "FileChange",
    # Plan
    "SubPlan",
    "FeatureConstraint",
    "PlanInput",
    "ExecutionSummary",
    "BudgetStatus",
    "RunSnapshot",
    "CompletedEntry",
    "FailedEntry",
    # Recovery
    "RecoveryContext",
    "RecoveryDecision",
    # Event
    "Event",
]
