"""CLI 入口模块 -- python -m codeswarm.engine <command>

支持的命令：
  run <plan.json>   使用 Echo Worker 执行计划，打印执行汇总
  resume <run_id>   从最新快照继续执行
  show <run_id>     打印已保存的运行快照
"""

import asyncio
import sys
from pathlib import Path

from pydantic import ValidationError

from codeswarm.core.config import get_db_path, load_engine_config
from codeswarm.core.exceptions import CodeSwarmError
from codeswarm.core.logging_config import setup_logging
from codeswarm.core.models import PlanInput

_USAGE = """用法: python -m codeswarm.engine <command>
命令:
  run <plan.json>   执行计划
  resume <run_id>   从快照继续执行
  show <run_id>     打印运行快照"""


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 3:
        print(_USAGE)
        sys.exit(1)

    command, argument = sys.argv[1], sys.argv[2]
    setup_logging()

    if command == "run":
        code = asyncio.run(run_plan(Path(argument)))
    elif command == "resume":
        code = asyncio.run(resume_run(argument))
    elif command == "show":
        code = asyncio.run(show_run(argument))
    else:
        print(f"未知命令: {command}")
        print("可用命令: run, resume, show")
        code = 1
    sys.exit(code)


async def run_plan(plan_path: Path) -> int:
    """执行计划文件，返回进程退出码"""
    from codeswarm.core.store import create_store_group

    from .orchestrator import Orchestrator

    if not plan_path.is_file():
        print(f"计划文件不存在: {plan_path}")
        return 1
    try:
        plan = PlanInput.model_validate_json(plan_path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        print(f"计划文件格式错误: {exc}")
        return 2

    store_group = await create_store_group(get_db_path())
    try:
        orchestrator = Orchestrator(config=load_engine_config(), store_group=store_group)
        summary = await orchestrator.run(plan)
    except CodeSwarmError as exc:
        print(f"执行失败: {exc}")
        return 2
    finally:
        await store_group.close()

    print(summary.model_dump_json(indent=2))
    return 0 if summary.success else 3


async def resume_run(run_id: str) -> int:
    """从快照继续执行"""
    from codeswarm.core.store import create_store_group

    from .orchestrator import Orchestrator

    store_group = await create_store_group(get_db_path())
    try:
        orchestrator = Orchestrator(config=load_engine_config(), store_group=store_group)
        summary = await orchestrator.resume(run_id)
    except CodeSwarmError as exc:
        print(f"恢复失败: {exc}")
        return 2
    finally:
        await store_group.close()

    print(summary.model_dump_json(indent=2))
    return 0 if summary.success else 3


async def show_run(run_id: str) -> int:
    """打印运行快照"""
    from codeswarm.core.store import create_store_group

    store_group = await create_store_group(get_db_path())
    try:
        snapshot = await store_group.snapshot_store.load_snapshot(run_id)
    finally:
        await store_group.close()

    if snapshot is None:
        print(f"未找到运行快照: {run_id}")
        return 1
    print(snapshot.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    main()
