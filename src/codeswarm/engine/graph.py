"""依赖图构建 -- 合并子计划、物化 feature 约束、拓扑排序

输出一个确定性的线性执行顺序：节点只在其全部依赖输出之后才输出；
互不约束的任务之间按优先级（HIGH > MEDIUM > LOW）排序，最后按输入顺序。
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

import structlog

from codeswarm.core.exceptions import PlanningError
from codeswarm.core.models import (
    PRIORITY_RANK,
    FeatureConstraint,
    PlanInput,
    SubPlan,
    Task,
    TaskRecord,
    TaskStatus,
)

log = structlog.get_logger()

# DFS 节点着色
_IN_PROGRESS = 1
_DONE = 2


def merge_sub_plans(sub_plans: Sequence[SubPlan]) -> list[Task]:
    """合并多个独立规划的子计划

    每个任务 ID 以及子计划内部的依赖都加上 "<feature_id>:" 前缀；
    指向子计划外部的依赖保持原样（应已是全局 ID）。

    Raises:
        PlanningError: feature_id 重复
    """
    merged: list[Task] = []
    seen_features: set[str] = set()

    for sub_plan in sub_plans:
        if sub_plan.feature_id in seen_features:
            raise PlanningError(f"子计划 feature_id 重复: {sub_plan.feature_id}")
        seen_features.add(sub_plan.feature_id)

        prefix = f"{sub_plan.feature_id}:"
        local_ids = {task.id for task in sub_plan.tasks}
        for task in sub_plan.tasks:
            dependencies = frozenset(
                f"{prefix}{dep}" if dep in local_ids else dep for dep in task.dependencies
            )
            merged.append(
                task.model_copy(
                    update={
                        "id": f"{prefix}{task.id}",
                        "dependencies": dependencies,
                        "feature_id": sub_plan.feature_id,
                    }
                )
            )

    return merged


def apply_feature_constraints(
    tasks: Sequence[Task],
    constraints: Iterable[FeatureConstraint],
) -> list[Task]:
    """把 feature 级顺序约束物化为合成依赖边

    (source, target) 约束会让 target feature 的第一个任务依赖
    source feature 的最后一个任务（按输入顺序）。

    Raises:
        PlanningError: 约束引用了未知 feature，或 source 与 target 相同
    """
    by_feature: dict[str, list[int]] = {}
    for index, task in enumerate(tasks):
        if task.feature_id is not None:
            by_feature.setdefault(task.feature_id, []).append(index)

    result = list(tasks)
    for constraint in constraints:
        source, target = constraint.source_feature, constraint.target_feature
        if source == target:
            raise PlanningError(f"feature 约束自引用: {source}")
        for feature in (source, target):
            if feature not in by_feature:
                raise PlanningError(f"feature 约束引用了未知 feature: {feature}")

        source_last = result[by_feature[source][-1]]
        target_first_index = by_feature[target][0]
        result[target_first_index] = result[target_first_index].with_dependencies(source_last.id)
        log.debug(
            "feature_constraint_applied",
            source_feature=source,
            target_feature=target,
            edge_from=result[target_first_index].id,
            edge_to=source_last.id,
        )

    return result


@dataclass
class DependencyGraph:
    """依赖图：task_id -> 依赖 ID 集合，附带确定性的执行顺序"""

    tasks: dict[str, Task]
    order: list[str]
    dependencies: dict[str, frozenset[str]] = field(default_factory=dict)

    def dependents_of(self, task_id: str) -> list[str]:
        """返回直接依赖 task_id 的任务"""
        return [tid for tid, deps in self.dependencies.items() if task_id in deps]

    def to_records(self) -> list[TaskRecord]:
        """按执行顺序生成全部为 pending 的 TaskRecord"""
        return [
            TaskRecord(task=self.tasks[task_id], status=TaskStatus.PENDING)
            for task_id in self.order
        ]


class DependencyGraphBuilder:
    """依赖图构建器（每个规划轮次运行一次）"""

    def __init__(self, allow_unknown_dependencies: bool = False) -> None:
        """
        Args:
            allow_unknown_dependencies: True 时丢弃未知依赖边并记录 warning，
                否则未知依赖视为规划错误
        """
        self._allow_unknown = allow_unknown_dependencies

    def build_from_plan(self, plan: PlanInput) -> DependencyGraph:
        """从计划输入构建：扁平任务在前，合并后的子计划任务在后"""
        tasks = [*plan.tasks, *merge_sub_plans(plan.sub_plans)]
        return self.build(tasks, plan.feature_constraints)

    def build(
        self,
        tasks: Sequence[Task],
        feature_constraints: Iterable[FeatureConstraint] = (),
    ) -> DependencyGraph:
        """构建依赖图并计算执行顺序

        Raises:
            PlanningError: 重复 ID、未知依赖、依赖环
        """
        tasks = apply_feature_constraints(tasks, feature_constraints)

        by_id: dict[str, Task] = {}
        index: dict[str, int] = {}
        for position, task in enumerate(tasks):
            if task.id in by_id:
                raise PlanningError(f"任务 ID 重复: {task.id}")
            by_id[task.id] = task
            index[task.id] = position

        by_id = self._resolve_unknown_dependencies(by_id)
        dependencies = {task_id: task.dependencies for task_id, task in by_id.items()}

        def rank(task_id: str) -> tuple[int, int]:
            return PRIORITY_RANK[by_id[task_id].priority], index[task_id]

        order = self._topological_order(dependencies, rank)

        log.info(
            "dependency_graph_built",
            task_count=len(order),
            edge_count=sum(len(deps) for deps in dependencies.values()),
        )
        return DependencyGraph(tasks=by_id, order=order, dependencies=dependencies)

    def _resolve_unknown_dependencies(self, by_id: dict[str, Task]) -> dict[str, Task]:
        resolved: dict[str, Task] = {}
        for task_id, task in by_id.items():
            unknown = sorted(dep for dep in task.dependencies if dep not in by_id)
            if not unknown:
                resolved[task_id] = task
                continue
            if not self._allow_unknown:
                raise PlanningError(f"任务 {task_id} 依赖未知任务: {', '.join(unknown)}")
            log.warning(
                "unknown_dependency_ignored",
                task_id=task_id,
                unknown_dependencies=unknown,
            )
            resolved[task_id] = task.model_copy(
                update={"dependencies": task.dependencies - set(unknown)}
            )
        return resolved

    @staticmethod
    def _topological_order(dependencies, rank) -> list[str]:
        """显式栈的 DFS 拓扑排序

        正在访问（in-progress）标记区别于已完成，遇到回边立即报环。
        """
        state: dict[str, int] = {}
        order: list[str] = []

        for root in sorted(dependencies, key=rank):
            if root in state:
                continue
            state[root] = _IN_PROGRESS
            stack = [(root, iter(sorted(dependencies[root], key=rank)))]

            while stack:
                node, pending_deps = stack[-1]
                for dep in pending_deps:
                    dep_state = state.get(dep)
                    if dep_state == _IN_PROGRESS:
                        path = [entry[0] for entry in stack]
                        cycle = [*path[path.index(dep):], dep]
                        raise PlanningError(
                            f"检测到依赖环: {' -> '.join(cycle)}",
                            cycle=cycle,
                        )
                    if dep_state is None:
                        state[dep] = _IN_PROGRESS
                        stack.append((dep, iter(sorted(dependencies[dep], key=rank))))
                        break
                else:
                    stack.pop()
                    state[node] = _DONE
                    order.append(node)

        return order
