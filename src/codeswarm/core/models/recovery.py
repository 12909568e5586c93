"""失败恢复模型 -- 重规划协作方的输入上下文与返回裁决"""

from pydantic import BaseModel, Field

from .enums import RecoveryStrategy
from .plan import BudgetStatus
from .task import Task


class RecoveryContext(BaseModel):
    """交给重规划协作方的失败上下文"""

    failed_task: Task
    error: str
    attempt: int = Field(ge=1, description="该任务已记录的失败次数")
    pending_tasks: list[Task] = Field(default_factory=list)
    completed_task_ids: list[str] = Field(default_factory=list)
    budget: BudgetStatus | None = None


class RecoveryDecision(BaseModel):
    """重规划裁决

    modified_tasks 为空时，retry/reassign/breakdown 均退化为重新入队原任务。
    """

    strategy: RecoveryStrategy
    modified_tasks: list[Task] = Field(default_factory=list)
    reason: str = Field(default="")
