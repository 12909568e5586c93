"""SnapshotStore SQLite 实现

每个 run 只保留最新一份快照（覆盖写入），payload 为 RunSnapshot JSON。
"""

import aiosqlite

from ..models.plan import RunSnapshot


class SqliteSnapshotStore:
    """运行快照的 SQLite 存储"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def save_snapshot(self, snapshot: RunSnapshot) -> None:
        """写入（覆盖）指定 run 的快照并提交"""
        await self._conn.execute(
            """
            INSERT INTO snapshots (run_id, created_at, pending, active,
                                   completed, failed, payload)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
                created_at = excluded.created_at,
                pending = excluded.pending,
                active = excluded.active,
                completed = excluded.completed,
                failed = excluded.failed,
                payload = excluded.payload
            """,
            (
                snapshot.run_id,
                snapshot.created_at.isoformat(),
                len(snapshot.pending),
                len(snapshot.active),
                len(snapshot.completed),
                len(snapshot.failed),
                snapshot.model_dump_json(),
            ),
        )
        await self._conn.commit()

    async def load_snapshot(self, run_id: str) -> RunSnapshot | None:
        """根据 run_id 读取最新快照"""
        cursor = await self._conn.execute(
            "SELECT payload FROM snapshots WHERE run_id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return RunSnapshot.model_validate_json(row[0])

    async def list_runs(self) -> list[dict[str, object]]:
        """列出所有已保存的 run 概要，按快照时间倒序"""
        cursor = await self._conn.execute(
            """
            SELECT run_id, created_at, pending, active, completed, failed
            FROM snapshots ORDER BY created_at DESC
            """
        )
        rows = await cursor.fetchall()
        return [
            {
                "run_id": row[0],
                "created_at": row[1],
                "pending": row[2],
                "active": row[3],
                "completed": row[4],
                "failed": row[5],
            }
            for row in rows
        ]
