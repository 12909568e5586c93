"""Worker 契约、类别工厂注册表与 Echo Worker

Worker 只需暴露 execute(task) -> TaskResult；失败时抛出异常
（推荐 TaskExecutionError，可携带失败前已产生的成本）。
具体类别的提示词构建与响应解析不在引擎范围内。
"""

import asyncio
from collections.abc import Awaitable, Iterable, Mapping
from typing import Protocol, runtime_checkable

import structlog

from codeswarm.core.models import FileAction, FileChange, Task, TaskCategory, TaskResult

from .pool import WorkerFactory

log = structlog.get_logger()


@runtime_checkable
class TaskWorker(Protocol):
    """Worker 协议：execute() 可以是同步方法，也可以是协程"""

    def execute(self, task: Task) -> TaskResult | Awaitable[TaskResult]: ...


class WorkerRegistry:
    """类别 -> Worker 工厂 的封闭注册表"""

    def __init__(self, factories: Mapping[TaskCategory | str, WorkerFactory] | None = None) -> None:
        self._factories: dict[TaskCategory, WorkerFactory] = {}
        for category, factory in (factories or {}).items():
            self.register(category, factory)

    @classmethod
    def for_all_categories(cls, factory: WorkerFactory) -> "WorkerRegistry":
        """所有类别共用同一个工厂"""
        return cls({category: factory for category in TaskCategory})

    def register(self, category: TaskCategory | str, factory: WorkerFactory) -> None:
        category = TaskCategory(category)
        if category in self._factories:
            log.warning("worker_factory_replaced", category=category.value)
        self._factories[category] = factory

    def factory_for(self, category: TaskCategory | str) -> WorkerFactory:
        """
        Raises:
            KeyError: 类别未注册
        """
        return self._factories[TaskCategory(category)]

    def missing(self, categories: Iterable[TaskCategory]) -> list[TaskCategory]:
        """返回未注册工厂的类别（去重，保持首次出现顺序）"""
        seen: dict[TaskCategory, None] = {}
        for category in categories:
            if category not in self._factories:
                seen.setdefault(category, None)
        return list(seen)

    def __contains__(self, category: object) -> bool:
        return category in self._factories


class EchoWorker:
    """Echo Worker -- 不做真实工作

    行为:
        1. 模拟少量延迟
        2. 按预估成本上报实际成本
        3. 每个 file_target 记为一个文件动作（metadata["file_action"] 可指定 modify）
    """

    def __init__(self, latency_s: float = 0.01) -> None:
        self._latency_s = latency_s

    async def execute(self, task: Task) -> TaskResult:
        await asyncio.sleep(self._latency_s)
        action = FileAction(task.metadata.get("file_action", FileAction.CREATE))
        return TaskResult(
            success=True,
            cost_usd=task.estimated_cost,
            files=[FileChange(path=path, action=action) for path in task.file_targets],
            output={"echo": task.description or task.name or task.id},
        )
