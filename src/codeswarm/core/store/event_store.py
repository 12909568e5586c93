"""EventStore SQLite 实现

事件表 append-only：只允许插入，不允许更新或删除。
同一 run 内按 seq 排序；seq 相同（手工构造的事件）时退回 event_id 的字典序。
"""

import json
from datetime import datetime

import aiosqlite

from ..models.enums import EventType
from ..models.event import Event


class SqliteEventStore:
    """EventStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def append_event(self, event: Event) -> None:
        """追加事件（append-only）

        注意：此方法不自动提交事务，需由调用方管理事务。
        """
        await self._conn.execute(
            """
            INSERT INTO events (event_id, run_id, seq, task_id, ts, type, payload)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_id,
                event.run_id,
                event.seq,
                event.task_id,
                event.ts.isoformat(),
                event.type.value,
                json.dumps(event.payload, ensure_ascii=False, default=str),
            ),
        )

    async def get_events_for_run(self, run_id: str) -> list[Event]:
        """查询指定 run 的所有事件，按 seq 正序"""
        cursor = await self._conn.execute(
            "SELECT * FROM events WHERE run_id = ? ORDER BY seq ASC, event_id ASC",
            (run_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    async def get_events_for_task(self, task_id: str) -> list[Event]:
        """查询指定任务的所有事件（可能跨多个 run）"""
        cursor = await self._conn.execute(
            "SELECT * FROM events WHERE task_id = ? ORDER BY ts ASC, seq ASC, event_id ASC",
            (task_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    async def get_last_seq(self, run_id: str) -> int:
        """获取指定 run 已持久化的最大 seq，无事件时为 0

        resume 时新的 EventHub 从此值之后继续编号。
        """
        cursor = await self._conn.execute(
            "SELECT COALESCE(MAX(seq), 0) FROM events WHERE run_id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()
        return row[0]

    @staticmethod
    def _row_to_event(row: aiosqlite.Row) -> Event:
        """将数据库行转换为 Event 模型"""
        return Event(
            event_id=row[0],
            run_id=row[1],
            seq=row[2],
            task_id=row[3],
            ts=datetime.fromisoformat(row[4]),
            type=EventType(row[5]),
            payload=json.loads(row[6]),
        )
