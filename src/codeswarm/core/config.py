"""配置模块 -- 可通过环境变量覆盖

包含数据目录、SQLite 路径常量，以及编排引擎配置 EngineConfig。
不合法的环境变量值记录 warning 后回落到默认值，不阻塞启动。
"""

import os
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

log = structlog.get_logger()


def get_data_dir() -> Path:
    """获取项目 data 基础目录"""
    return Path(os.environ.get("CODESWARM_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径（快照 + 事件）"""
    return os.environ.get(
        "CODESWARM_DB_PATH",
        str(get_data_dir() / "sqlite" / "codeswarm.db"),
    )


class EngineConfig(BaseModel):
    """编排引擎配置

    环境变量:
        CODESWARM_MAX_CONCURRENT_TASKS: 全局并发上限
        CODESWARM_TOTAL_BUDGET: 总预算（USD）
        CODESWARM_MIN_RESERVE: 预留后必须保留的最小余额
        CODESWARM_BUDGET_WARNING_THRESHOLD: 剩余比例低于此值时发出预算告警
        CODESWARM_MAX_ATTEMPTS: 单任务熔断上限
        CODESWARM_BREAKER_RESET_WINDOW_S: 熔断记录的静默重置窗口（秒）
        CODESWARM_WORKER_MAX_PER_CATEGORY: 每个类别的 Worker 上限
        CODESWARM_WORKER_IDLE_TIMEOUT_S: 空闲 Worker 回收阈值（秒）
        CODESWARM_WORKER_REAP_INTERVAL_S: 周期回收间隔（秒）
        CODESWARM_WORKER_WAIT_WARNING_S: 任务等待 Worker 超过此时长（秒）时告警，0 表示不告警
        CODESWARM_ALLOW_UNKNOWN_DEPENDENCIES: 是否容忍未知依赖 ID
    """

    max_concurrent_tasks: int = Field(default=3, ge=1, description="全局并发上限")
    total_budget: float = Field(default=100.0, gt=0.0, description="总预算（USD）")
    min_reserve: float = Field(default=0.0, ge=0.0, description="最小保留余额（USD）")
    budget_warning_threshold: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="剩余/总预算 低于此比例时告警",
    )
    max_attempts: int = Field(default=3, ge=1, description="单任务熔断上限")
    breaker_reset_window_s: float = Field(default=300.0, gt=0.0, description="熔断重置窗口")
    worker_max_per_category: int = Field(default=3, ge=1, description="每类别 Worker 上限")
    worker_idle_timeout_s: float = Field(default=300.0, gt=0.0, description="空闲回收阈值")
    worker_reap_interval_s: float = Field(default=60.0, gt=0.0, description="周期回收间隔")
    worker_wait_warning_s: float = Field(
        default=0.0,
        ge=0.0,
        description="任务因 Worker 不足被推迟累计超过此时长时告警，0 表示不告警",
    )
    allow_unknown_dependencies: bool = Field(
        default=False,
        description="True 时未知依赖视为已满足（记录 warning），否则为规划错误",
    )


# 环境变量 -> (字段名, 类型转换)
_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "CODESWARM_MAX_CONCURRENT_TASKS": ("max_concurrent_tasks", int),
    "CODESWARM_TOTAL_BUDGET": ("total_budget", float),
    "CODESWARM_MIN_RESERVE": ("min_reserve", float),
    "CODESWARM_BUDGET_WARNING_THRESHOLD": ("budget_warning_threshold", float),
    "CODESWARM_MAX_ATTEMPTS": ("max_attempts", int),
    "CODESWARM_BREAKER_RESET_WINDOW_S": ("breaker_reset_window_s", float),
    "CODESWARM_WORKER_MAX_PER_CATEGORY": ("worker_max_per_category", int),
    "CODESWARM_WORKER_IDLE_TIMEOUT_S": ("worker_idle_timeout_s", float),
    "CODESWARM_WORKER_REAP_INTERVAL_S": ("worker_reap_interval_s", float),
    "CODESWARM_WORKER_WAIT_WARNING_S": ("worker_wait_warning_s", float),
}


def load_engine_config() -> EngineConfig:
    """从环境变量加载引擎配置

    数值解析失败或超出合法范围时记录 warning 并使用默认值。

    Returns:
        EngineConfig 实例
    """
    defaults = EngineConfig()
    kwargs: dict = {}

    for env_var, (field_name, cast) in _ENV_FIELDS.items():
        val = os.environ.get(env_var)
        if not val:
            continue
        try:
            parsed = cast(val)
            # 单字段校验，避免一个坏值拖垮整个配置
            EngineConfig(**{field_name: parsed})
        except ValueError:
            log.warning(
                "invalid_engine_config",
                env_var=env_var,
                value=val,
                fallback=getattr(defaults, field_name),
            )
            continue
        kwargs[field_name] = parsed

    if val := os.environ.get("CODESWARM_ALLOW_UNKNOWN_DEPENDENCIES"):
        kwargs["allow_unknown_dependencies"] = val.strip().lower() in ("1", "true", "yes")

    return EngineConfig(**kwargs)
