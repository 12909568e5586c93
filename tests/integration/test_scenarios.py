"""端到端场景测试 -- 通过 Orchestrator 驱动完整运行

Scenario A: 依赖顺序 + 并发上限
Scenario B: 熔断（第 4 次失败不再咨询重规划方）
Scenario C: 预算不足时任务保持 pending
Scenario D: Worker 复用优先于创建
"""

from unittest.mock import AsyncMock

import pytest

from codeswarm.core.config import EngineConfig
from codeswarm.core.models import (
    EventType,
    RecoveryDecision,
    RecoveryStrategy,
    Task,
    TaskStatus,
)
from codeswarm.engine.orchestrator import Orchestrator
from codeswarm.engine.workers import WorkerRegistry


def _task(task_id: str, *deps: str, priority: str = "MEDIUM", cost: float = 0.1) -> Task:
    return Task(
        id=task_id,
        category="backend",
        priority=priority,
        estimated_cost=cost,
        dependencies=set(deps),
    )


class TestScenarioA:
    """A(HIGH) -> {B, C}(MEDIUM) -> D(LOW)，max_concurrent_tasks=2"""

    async def test_dispatch_waves(self, recording_worker):
        orchestrator = Orchestrator(
            config=EngineConfig(max_concurrent_tasks=2),
            registry=WorkerRegistry.for_all_categories(lambda: recording_worker),
        )
        # 派发时刻已完成的任务集合
        seen_completed: dict[str, set[str]] = {}

        def on_event(event):
            if event.type == EventType.TASK_ASSIGNED:
                seen_completed[event.task_id] = set(orchestrator.last_scheduler.completed_ids)

        orchestrator.add_listener(on_event)

        summary = await orchestrator.run(
            [
                _task("A", priority="HIGH"),
                _task("B", "A"),
                _task("C", "A"),
                _task("D", "B", "C", priority="LOW"),
            ]
        )

        assert summary.completed_task_count == 4
        assert summary.success is True
        assert recording_worker.started == ["A", "B", "C", "D"]
        assert seen_completed == {
            "A": set(),
            "B": {"A"},
            "C": {"A"},
            "D": {"A", "B", "C"},
        }
        assert recording_worker.max_running == 2


class TestScenarioB:
    """X 连续失败，max_attempts=3"""

    async def test_fourth_failure_opens_breaker(self, recording_worker):
        recording_worker.failures["X"] = 10
        replanner = AsyncMock()
        replanner.replan = AsyncMock(
            return_value=RecoveryDecision(strategy=RecoveryStrategy.RETRY)
        )
        orchestrator = Orchestrator(
            config=EngineConfig(max_attempts=3),
            registry=WorkerRegistry.for_all_categories(lambda: recording_worker),
            replanner=replanner,
        )

        summary = await orchestrator.run([_task("X"), _task("Y", "X")])

        assert recording_worker.started == ["X"] * 4
        assert replanner.replan.call_count == 3
        assert summary.failed_tasks == {"X": "circuit_breaker_open"}
        assert summary.unscheduled_tasks == {"Y": "dependency_failed"}

        hub = orchestrator.last_scheduler.hub
        assert len(hub.of_type(EventType.TASK_REQUEUED)) == 3
        breaker = hub.of_type(EventType.CIRCUIT_BREAKER_OPEN)
        assert [e.task_id for e in breaker] == ["X"]
        assert breaker[0].payload == {"attempts": 3, "max_attempts": 3}

    async def test_replan_context_reports_attempts(self, recording_worker):
        recording_worker.failures["X"] = 2
        replanner = AsyncMock()
        replanner.replan = AsyncMock(
            return_value=RecoveryDecision(strategy=RecoveryStrategy.RETRY)
        )
        orchestrator = Orchestrator(
            registry=WorkerRegistry.for_all_categories(lambda: recording_worker),
            replanner=replanner,
        )

        summary = await orchestrator.run([_task("X")])

        assert summary.success is True
        attempts = [call.args[0].attempt for call in replanner.replan.call_args_list]
        assert attempts == [1, 2]


class TestScenarioC:
    """total_budget=1.00，committed=0.95 后 0.10 的任务无法预留"""

    async def test_task_stays_pending(self, recording_worker):
        orchestrator = Orchestrator(
            config=EngineConfig(total_budget=1.0),
            registry=WorkerRegistry.for_all_categories(lambda: recording_worker),
        )

        summary = await orchestrator.run([_task("T1", cost=0.95), _task("T2", "T1", cost=0.10)])

        scheduler = orchestrator.last_scheduler
        assert summary.completed_task_count == 1
        assert summary.failed_task_count == 0
        assert summary.unscheduled_tasks == {"T2": "budget_exhausted"}
        assert summary.total_cost == pytest.approx(0.95)
        assert scheduler.record("T2").status == TaskStatus.PENDING
        assert recording_worker.started == ["T1"]
        assert len(scheduler.hub.of_type(EventType.BUDGET_WARNING)) == 1


class TestScenarioD:
    """串行任务复用同一个 Worker"""

    async def test_worker_reused_across_tasks(self, recording_worker):
        created = []

        def factory():
            created.append(1)
            return recording_worker

        orchestrator = Orchestrator(registry=WorkerRegistry.for_all_categories(factory))

        await orchestrator.run([_task("A"), _task("B", "A"), _task("C", "B")])

        worker_ids = {
            e.payload["worker_id"]
            for e in orchestrator.last_scheduler.hub.of_type(EventType.TASK_ASSIGNED)
        }
        assert len(created) == 1
        assert len(worker_ids) == 1
        assert orchestrator.last_scheduler.pool.metrics.reused == 2
