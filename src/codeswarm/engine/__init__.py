"""CodeSwarm Engine -- 依赖图、调度循环、Worker 池、预算准入与失败恢复"""

from .budget import BudgetController, Reservation, UsageRecord
from .events import EventHub, EventRecorder
from .graph import (
    DependencyGraph,
    DependencyGraphBuilder,
    apply_feature_constraints,
    merge_sub_plans,
)
from .orchestrator import Orchestrator
from .pool import PooledWorker, PoolMetrics, WorkerPool
from .recovery import FailureRecoveryCoordinator, RecoveryOutcome
from .replanner import EscalatingReplanner, Replanner, RetryReplanner
from .scheduler import TaskScheduler
from .workers import EchoWorker, TaskWorker, WorkerRegistry

__all__ = [
    # 依赖图
    "DependencyGraph",
    "DependencyGraphBuilder",
    "merge_sub_plans",
    "apply_feature_constraints",
    # Worker
    "WorkerPool",
    "PooledWorker",
    "PoolMetrics",
    "WorkerRegistry",
    "TaskWorker",
    "EchoWorker",
    # 预算
    "BudgetController",
    "Reservation",
    "UsageRecord",
    # 失败恢复
    "FailureRecoveryCoordinator",
    "RecoveryOutcome",
    "Replanner",
    "RetryReplanner",
    "EscalatingReplanner",
    # 调度
    "TaskScheduler",
    "Orchestrator",
    "EventHub",
    "EventRecorder",
]
