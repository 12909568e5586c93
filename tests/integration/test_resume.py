"""中断 -> 快照 -> resume 集成测试"""

import asyncio

import pytest

from codeswarm.core.config import EngineConfig
from codeswarm.core.exceptions import PlanningError
from codeswarm.core.models import EventType, RunSnapshot, Task, TaskResult
from codeswarm.engine.orchestrator import Orchestrator
from codeswarm.engine.workers import WorkerRegistry


class HangingWorker:
    """对指定任务永不返回的 Worker，用于模拟运行中断"""

    def __init__(self, hang_on: set[str]) -> None:
        self.hang_on = hang_on
        self.started: list[str] = []

    async def execute(self, task: Task) -> TaskResult:
        self.started.append(task.id)
        if task.id in self.hang_on:
            await asyncio.Event().wait()
        return TaskResult(cost_usd=task.estimated_cost)


def _task(task_id: str, *deps: str, cost: float = 0.25) -> Task:
    return Task(id=task_id, category="backend", estimated_cost=cost, dependencies=set(deps))


async def _wait_for_completed(store_group, run_id: str, count: int) -> RunSnapshot:
    for _ in range(200):
        snapshot = await store_group.snapshot_store.load_snapshot(run_id)
        if snapshot is not None and len(snapshot.completed) >= count:
            return snapshot
        await asyncio.sleep(0.01)
    raise AssertionError(f"快照未在预期时间内出现: {run_id}")


class TestResume:
    """恢复中断的运行"""

    async def test_resume_runs_only_remaining_tasks(self, store_group, recording_worker):
        hanging = HangingWorker(hang_on={"B"})
        first = Orchestrator(
            config=EngineConfig(max_concurrent_tasks=1),
            registry=WorkerRegistry.for_all_categories(lambda: hanging),
            store_group=store_group,
        )
        run = asyncio.ensure_future(
            first.run([_task("A"), _task("B", "A"), _task("C", "B")], run_id="run-int")
        )

        snapshot = await _wait_for_completed(store_group, "run-int", 1)
        run.cancel()
        with pytest.raises(asyncio.CancelledError):
            await run

        assert [e.task.id for e in snapshot.completed] == ["A"]
        assert [t.id for t in snapshot.pending] == ["B", "C"]
        assert snapshot.budget_committed == 0.25

        second = Orchestrator(
            registry=WorkerRegistry.for_all_categories(lambda: recording_worker),
            store_group=store_group,
        )
        summary = await second.resume("run-int")

        assert summary.run_id == "run-int"
        assert summary.success is True
        assert recording_worker.started == ["B", "C"]
        assert summary.completed_task_count == 3
        assert summary.total_cost == 0.75

        # 两段运行的事件连续编号
        events = await store_group.event_store.get_events_for_run("run-int")
        seqs = [e.seq for e in events]
        assert seqs == list(range(1, len(events) + 1))
        assert [e.type for e in events].count(EventType.RUN_STARTED) == 2

    async def test_breaker_counts_survive_resume(self, store_group, recording_worker):
        task = _task("X")
        await store_group.snapshot_store.save_snapshot(
            RunSnapshot(
                run_id="run-breaker",
                created_at="2026-01-01T00:00:00Z",
                active=[task],
                breaker_attempts={"X": 2},
            )
        )
        recording_worker.failures["X"] = 5
        orchestrator = Orchestrator(
            config=EngineConfig(max_attempts=3),
            registry=WorkerRegistry.for_all_categories(lambda: recording_worker),
            store_group=store_group,
        )

        summary = await orchestrator.resume("run-breaker")

        # 恢复后第 1 次失败记为第 3 次，第 2 次失败即熔断
        assert recording_worker.started == ["X", "X"]
        assert summary.failed_tasks == {"X": "circuit_breaker_open"}

        stored = await store_group.snapshot_store.load_snapshot("run-breaker")
        assert [(e.task.id, e.reason) for e in stored.failed] == [("X", "circuit_breaker_open")]

    async def test_resume_rejects_unregistered_category(self, store_group):
        await store_group.snapshot_store.save_snapshot(
            RunSnapshot(
                run_id="run-cat",
                created_at="2026-01-01T00:00:00Z",
                pending=[Task(id="ui", category="frontend")],
            )
        )
        orchestrator = Orchestrator(
            registry=WorkerRegistry({"backend": lambda: None}),
            store_group=store_group,
        )

        with pytest.raises(PlanningError, match="frontend"):
            await orchestrator.resume("run-cat")
