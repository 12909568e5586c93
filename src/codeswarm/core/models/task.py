"""Task Domain Model -- 任务描述符与调度器持有的 TaskRecord

Task 为不可变描述符，在计划导入阶段创建；进入调度器前只允许
通过 model_copy 追加合成依赖边（来自 feature 级顺序约束）。
TaskRecord 由调度器独占持有和修改。
"""

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .enums import FileAction, TaskCategory, TaskPriority, TaskStatus


class Task(BaseModel):
    """任务描述符（不可变）"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1, description="全局唯一任务 ID（合并子计划时带来源前缀）")
    name: str = Field(default="", description="任务名称")
    description: str = Field(default="", description="任务描述")
    category: TaskCategory = Field(description="Worker 类别")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM, description="优先级")
    estimated_cost: float = Field(
        default=0.0,
        ge=0.0,
        validation_alias=AliasChoices("estimated_cost", "estimatedCost"),
        description="预估成本（USD）",
    )
    dependencies: frozenset[str] = Field(
        default_factory=frozenset,
        description="依赖的任务 ID 集合",
    )
    file_targets: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("file_targets", "files"),
        description="目标文件路径",
    )
    metadata: dict[str, Any] = Field(default_factory=dict, description="附加元数据")
    feature_id: str | None = Field(default=None, description="所属 feature（子计划来源）")

    def with_dependencies(self, *extra: str) -> "Task":
        """返回追加了依赖边的新 Task"""
        return self.model_copy(update={"dependencies": self.dependencies | set(extra)})


class FileChange(BaseModel):
    """单个文件动作"""

    path: str
    action: FileAction


class TaskResult(BaseModel):
    """Worker 执行结果

    cost_usd 为实际产生的成本，可能与预估不同（差异由预算账本吸收）。
    """

    success: bool = Field(default=True, description="是否执行成功")
    cost_usd: float = Field(default=0.0, ge=0.0, description="实际成本（USD）")
    files: list[FileChange] = Field(default_factory=list, description="文件动作列表")
    output: dict[str, Any] = Field(default_factory=dict, description="结构化输出")
    error: str = Field(default="", description="失败原因（success=False 时）")


class TaskRecord(BaseModel):
    """调度器内部的任务包装记录"""

    task: Task
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)
    result: TaskResult | None = Field(default=None)
    failure_reason: str | None = Field(default=None)
    # 失败恢复后重新入队的任务优先于未触碰的任务
    requeued: bool = Field(default=False)

    @property
    def task_id(self) -> str:
        return self.task.id
