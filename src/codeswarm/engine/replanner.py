"""重规划协作方契约与内置实现

真正的重规划（例如调用 LLM 拆解失败任务）不在引擎范围内，
引擎只消费 (RecoveryContext) -> RecoveryDecision 这一契约。
"""

from collections.abc import Awaitable
from typing import Protocol, runtime_checkable

from codeswarm.core.models import RecoveryContext, RecoveryDecision, RecoveryStrategy


@runtime_checkable
class Replanner(Protocol):
    """重规划协作方协议

    replan() 可以是同步方法，也可以是协程。
    """

    def replan(
        self, context: RecoveryContext
    ) -> RecoveryDecision | Awaitable[RecoveryDecision]: ...


class RetryReplanner:
    """默认实现：总是原样重试"""

    async def replan(self, context: RecoveryContext) -> RecoveryDecision:
        return RecoveryDecision(
            strategy=RecoveryStrategy.RETRY,
            reason=f"第 {context.attempt} 次失败后重试",
        )


class EscalatingReplanner:
    """从不自动恢复，所有失败直接上报"""

    async def replan(self, context: RecoveryContext) -> RecoveryDecision:
        return RecoveryDecision(
            strategy=RecoveryStrategy.ESCALATE,
            reason=context.error,
        )
