"""全局 pytest 配置 -- 临时 SQLite 数据库、可控时钟与测试 Worker"""

import asyncio
from collections.abc import AsyncGenerator
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio

from codeswarm.core.exceptions import TaskExecutionError
from codeswarm.core.models import FileAction, FileChange, Task, TaskResult


class FakeClock:
    """可手动推进的单调时钟"""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingWorker:
    """记录执行顺序与并发度的测试 Worker

    failures: task_id -> 剩余失败次数；failure_cost: 失败时上报的成本；
    actual_costs: task_id -> 覆盖实际成本。
    """

    def __init__(self, latency_s: float = 0.01) -> None:
        self.latency_s = latency_s
        self.started: list[str] = []
        self.finished: list[str] = []
        self.running = 0
        self.max_running = 0
        self.failures: dict[str, int] = {}
        self.failure_cost = 0.0
        self.actual_costs: dict[str, float] = {}

    async def execute(self, task: Task) -> TaskResult:
        self.started.append(task.id)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.latency_s)
            if self.failures.get(task.id, 0) > 0:
                self.failures[task.id] -= 1
                raise TaskExecutionError(f"{task.id} 执行失败", cost_usd=self.failure_cost)
        finally:
            self.running -= 1

        self.finished.append(task.id)
        action = FileAction(task.metadata.get("file_action", FileAction.CREATE))
        return TaskResult(
            cost_usd=self.actual_costs.get(task.id, task.estimated_cost),
            files=[FileChange(path=path, action=action) for path in task.file_targets],
        )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_worker() -> RecordingWorker:
    return RecordingWorker()


@pytest_asyncio.fixture
async def tmp_db_path(tmp_path: Path) -> Path:
    """提供临时 SQLite 数据库路径"""
    return tmp_path / "test.db"


@pytest_asyncio.fixture
async def db_conn(tmp_db_path: Path) -> AsyncGenerator[aiosqlite.Connection, None]:
    """提供已初始化的临时 SQLite 数据库连接"""
    from codeswarm.core.store.sqlite_init import init_db

    conn = await aiosqlite.connect(str(tmp_db_path))
    await init_db(conn)
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def store_group(tmp_db_path: Path):
    """提供共享连接的 StoreGroup"""
    from codeswarm.core.store import create_store_group

    group = await create_store_group(str(tmp_db_path))
    yield group
    await group.close()
