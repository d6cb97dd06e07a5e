"""
浏览器环境快照 - 外部协作者的接口与预算适配
"""
import logging
from typing import Callable, Protocol

from .context_budget import estimate_tokens

logger = logging.getLogger(__name__)


SNAPSHOT_TRUNCATION_MARKER = (
    "\n\n-- IMPORTANT: TRUNCATED DUE TO TOKEN LIMIT, "
    "USE AN ELEMENT SEARCH TOOL TO FIND ELEMENTS IF NEEDED --\n"
)


class BrowserEnvironment(Protocol):
    """浏览器环境接口"""

    async def get_snapshot(self, size_hint: int, reduced: bool = False) -> str:
        """
        获取当前页面状态文本

        Args:
            size_hint: 期望的token上限（提示性质）
            reduced: 为True时去掉非必要细节（如不可见元素）
        """
        ...


class NullEnvironment:
    """没有连接浏览器时使用"""

    async def get_snapshot(self, size_hint: int, reduced: bool = False) -> str:
        return "No browser attached."


async def fit_snapshot(
    environment: BrowserEnvironment,
    token_budget: int,
    token_counter: Callable[[str], int] = estimate_tokens
) -> str:
    """
    获取符合预算的快照

    两级降级：先请求精简快照，仍然超出时按比例截断并附加截断标记。
    """
    snapshot = await environment.get_snapshot(token_budget)
    tokens = token_counter(snapshot)
    if tokens <= token_budget:
        return snapshot

    snapshot = await environment.get_snapshot(token_budget, reduced=True)
    tokens = token_counter(snapshot)
    if tokens <= token_budget:
        return snapshot

    ratio = token_budget / tokens if tokens else 0
    target_length = int(len(snapshot) * ratio)
    logger.info(f"Browser state truncated from {tokens} to ~{token_budget} tokens")
    return snapshot[:target_length] + SNAPSHOT_TRUNCATION_MARKER


def wrap_snapshot(snapshot: str) -> str:
    return f"<browser-state>{snapshot}</browser-state>"
