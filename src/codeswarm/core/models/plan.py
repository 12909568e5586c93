"""计划输入与执行产出模型

PlanInput 为计划文件（JSON）的结构；ExecutionSummary 为一次运行的汇总；
RunSnapshot 为可恢复运行的最小快照。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .task import Task, TaskResult


class SubPlan(BaseModel):
    """单个 feature 独立规划出的子计划"""

    feature_id: str = Field(min_length=1, description="feature 标识，合并时作为 ID 前缀")
    tasks: list[Task] = Field(default_factory=list)


class FeatureConstraint(BaseModel):
    """feature 级顺序约束：target_feature 须在 source_feature 之后执行"""

    source_feature: str
    target_feature: str


class PlanInput(BaseModel):
    """计划输入：扁平任务列表和/或待合并的子计划"""

    tasks: list[Task] = Field(default_factory=list)
    sub_plans: list[SubPlan] = Field(default_factory=list)
    feature_constraints: list[FeatureConstraint] = Field(default_factory=list)


class BudgetStatus(BaseModel):
    """预算账本状态"""

    total_budget: float
    committed: float
    reserved: float
    remaining: float
    utilization_percent: float
    active_reservations: int = 0
    completed_operations: int = 0
    average_cost: float = 0.0


class ExecutionSummary(BaseModel):
    """一次运行的执行汇总"""

    run_id: str
    success: bool
    completed_task_count: int = 0
    failed_task_count: int = 0
    unscheduled_task_count: int = 0
    files_created: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    total_cost: float = 0.0
    failed_tasks: dict[str, str] = Field(
        default_factory=dict,
        description="task_id -> 永久失败原因",
    )
    unscheduled_tasks: dict[str, str] = Field(
        default_factory=dict,
        description="task_id -> 未能派发的原因",
    )
    budget: BudgetStatus | None = Field(default=None)
    duration_ms: int = Field(default=0, ge=0)


class CompletedEntry(BaseModel):
    """快照中的已完成任务"""

    task: Task
    result: TaskResult | None = None
    completed_at: datetime | None = None


class FailedEntry(BaseModel):
    """快照中的永久失败任务"""

    task: Task
    reason: str
    failed_at: datetime | None = None


class RunSnapshot(BaseModel):
    """运行快照 -- 足以在中断后继续执行，而无需重新规划"""

    run_id: str
    created_at: datetime
    pending: list[Task] = Field(default_factory=list)
    # 快照时仍在执行中的任务；恢复时重新排到队首
    active: list[Task] = Field(default_factory=list)
    completed: list[CompletedEntry] = Field(default_factory=list)
    failed: list[FailedEntry] = Field(default_factory=list)
    breaker_attempts: dict[str, int] = Field(default_factory=dict)
    budget_committed: float = Field(default=0.0, ge=0.0)
