"""engine 测试配置 -- 调度器装配 fixture"""

import pytest

from codeswarm.engine.budget import BudgetController
from codeswarm.engine.events import EventHub
from codeswarm.engine.pool import WorkerPool
from codeswarm.engine.recovery import FailureRecoveryCoordinator
from codeswarm.engine.scheduler import TaskScheduler
from codeswarm.engine.workers import WorkerRegistry


@pytest.fixture
def make_scheduler(fake_clock, recording_worker):
    """按需装配 TaskScheduler，默认所有类别共用 recording_worker"""

    def _make(
        *,
        registry: WorkerRegistry | None = None,
        replanner=None,
        max_concurrent_tasks: int = 3,
        total_budget: float = 100.0,
        budget_warning_threshold: float = 0.2,
        max_attempts: int = 3,
        worker_max_per_category: int = 3,
        worker_wait_warning_s: float = 0.0,
        snapshot_store=None,
    ) -> TaskScheduler:
        return TaskScheduler(
            pool=WorkerPool(max_per_category=worker_max_per_category, clock=fake_clock),
            budget=BudgetController(total_budget),
            recovery=FailureRecoveryCoordinator(
                replanner, max_attempts=max_attempts, clock=fake_clock
            ),
            registry=registry or WorkerRegistry.for_all_categories(lambda: recording_worker),
            max_concurrent_tasks=max_concurrent_tasks,
            budget_warning_threshold=budget_warning_threshold,
            worker_wait_warning_s=worker_wait_warning_s,
            clock=fake_clock,
            hub=EventHub(),
            snapshot_store=snapshot_store,
        )

    return _make
