"""structlog 配置模块

dev 模式：pretty print 可读输出
json 模式：结构化 JSON 输出（每行一条，便于按 run_id 聚合）

日志统一写到 stderr，stdout 留给 CLI 的 JSON 输出。
"""

import logging
import os

import structlog

# 这些库在 DEBUG 级别下每次操作都会打日志，淹没调度事件
_NOISY_LOGGERS = ("aiosqlite", "asyncio")


def setup_logging(log_format: str | None = None, log_level: str | None = None) -> None:
    """初始化 structlog 配置

    Args:
        log_format: "json" 或 "dev"；None 时读取 CODESWARM_LOG_FORMAT（默认 dev）
        log_level: 日志级别名；None 时读取 CODESWARM_LOG_LEVEL（默认 INFO）
    """
    log_format = log_format or os.environ.get("CODESWARM_LOG_FORMAT", "dev")
    log_level = log_level or os.environ.get("CODESWARM_LOG_LEVEL", "INFO")
    level = getattr(logging, log_level.upper(), logging.INFO)

    # run_id 等上下文由调度器通过 contextvars 绑定
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
        shared_processors.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))
