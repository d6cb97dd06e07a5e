"""
协作式取消令牌
"""
import asyncio
from typing import Optional

from .errors import RunCancelledError


class CancellationToken:
    """取消令牌 - 每次运行一个，在每轮迭代开始和每次工具调用前检查"""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def event(self) -> asyncio.Event:
        """传给工具调用的取消事件"""
        return self._event

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "User cancelled execution") -> None:
        """发出取消信号（幂等，保留第一次的原因）"""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self._reason)
