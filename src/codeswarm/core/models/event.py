"""Event Domain Model -- 编排事件

事件仅用于观测，不参与正确性判断。
event_id 使用 ULID 格式；同一 run 内的先后以 seq 为准。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .enums import EventType


class Event(BaseModel):
    """编排事件数据模型"""

    event_id: str = Field(description="唯一标识，ULID 格式，时间有序")
    run_id: str = Field(description="所属运行 ID")
    seq: int = Field(default=0, ge=0, description="run 内单调递增序号（resume 后继续递增）")
    type: EventType = Field(description="事件类型")
    task_id: str | None = Field(default=None, description="关联的 Task ID（预算类事件可为空）")
    ts: datetime = Field(description="事件时间戳")
    payload: dict[str, Any] = Field(default_factory=dict, description="结构化 payload")
