"""SQLite 数据库初始化

PRAGMA 配置 + 快照/事件两张表 DDL + 索引创建。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# snapshots 表 DDL：每个 run 只保留最新快照
_SNAPSHOTS_DDL = """
CREATE TABLE IF NOT EXISTS snapshots (
    run_id      TEXT PRIMARY KEY,
    created_at  TEXT NOT NULL,
    pending     INTEGER NOT NULL DEFAULT 0,
    active      INTEGER NOT NULL DEFAULT 0,
    completed   INTEGER NOT NULL DEFAULT 0,
    failed      INTEGER NOT NULL DEFAULT 0,
    payload     TEXT NOT NULL DEFAULT '{}'
);
"""

_SNAPSHOTS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_snapshots_created_at ON snapshots(created_at DESC);",
]

# events 表 DDL：append-only，同一 run 内按 seq 排序
_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS events (
    event_id    TEXT PRIMARY KEY,
    run_id      TEXT NOT NULL,
    seq         INTEGER NOT NULL DEFAULT 0,
    task_id     TEXT,
    ts          TEXT NOT NULL,
    type        TEXT NOT NULL,
    payload     TEXT NOT NULL DEFAULT '{}'
);
"""

_EVENTS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_events_run_seq ON events(run_id, seq);",
    "CREATE INDEX IF NOT EXISTS idx_events_task_id ON events(task_id);",
]


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    await conn.execute(_SNAPSHOTS_DDL)
    await conn.execute(_EVENTS_DDL)

    for idx_sql in _SNAPSHOTS_INDEXES + _EVENTS_INDEXES:
        await conn.execute(idx_sql)

    await conn.commit()
