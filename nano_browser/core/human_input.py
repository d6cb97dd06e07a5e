"""
人工输入闸门 - 单槽位的请求/响应会合点

编排循环发出请求后以轮询方式等待外部响应：
- 每个轮询间隔检查一次是否已有响应
- 超过绝对超时时间视为超时（按中止处理）
- 等待期间取消优先于一切
"""
import asyncio
import logging
import time
import uuid
from collections import deque
from typing import Deque, Dict, Optional, Protocol

from .cancellation import CancellationToken
from .errors import HumanInputPendingError
from .types import (
    HumanInputAction, HumanInputOutcome, HumanInputRequest, HumanInputResponse
)

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 600.0        # 10分钟
DEFAULT_POLL_INTERVAL = 0.5    # 500毫秒
RESOLVED_HISTORY = 32          # 记住最近已结束的请求ID，用于识别迟到的重复响应


class Clock(Protocol):
    """时钟抽象，测试中可替换为虚拟时间"""

    def now(self) -> float:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """真实时钟"""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class HumanInputGate:
    """人工输入闸门"""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT
    ):
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._pending: Optional[HumanInputRequest] = None
        self._responses: Dict[str, HumanInputResponse] = {}
        self._resolved: Deque[str] = deque(maxlen=RESOLVED_HISTORY)

    @property
    def pending(self) -> Optional[HumanInputRequest]:
        """当前未解决的请求"""
        return self._pending

    def request(self, prompt: str) -> str:
        """发出请求，返回请求ID"""
        if self._pending is not None:
            raise HumanInputPendingError(
                f"Human input request {self._pending.id} is still outstanding"
            )
        request = HumanInputRequest(
            id=f"hi_{uuid.uuid4().hex[:12]}",
            prompt=prompt,
            created_at=self.clock.now()
        )
        self._pending = request
        logger.info(f"Human input requested ({request.id}): {prompt}")
        return request.id

    def respond(self, request_id: str, action) -> bool:
        """
        提交响应

        只接受第一次响应；未知ID或重复响应直接忽略并返回False。
        """
        action = HumanInputAction(action)
        if request_id in self._responses or request_id in self._resolved:
            logger.debug(f"Ignoring duplicate response for {request_id}")
            return False
        if self._pending is None or self._pending.id != request_id:
            logger.debug(f"Ignoring response for unknown request {request_id}")
            return False
        self._responses[request_id] = HumanInputResponse(request_id=request_id, action=action)
        logger.info(f"Human input {request_id} resolved: {action.value}")
        return True

    def get_response(self, request_id: str) -> Optional[HumanInputResponse]:
        return self._responses.get(request_id)

    async def wait(
        self,
        request_id: str,
        cancellation: Optional[CancellationToken] = None,
        timeout: Optional[float] = None
    ) -> HumanInputOutcome:
        """轮询等待响应"""
        timeout = self.timeout if timeout is None else timeout
        start = self.clock.now()
        try:
            while True:
                if cancellation is not None and cancellation.cancelled:
                    return HumanInputOutcome.CANCELLED

                response = self._responses.get(request_id)
                if response is not None:
                    return HumanInputOutcome(response.action.value)

                if self.clock.now() - start >= timeout:
                    logger.warning(f"Human input {request_id} timed out after {timeout:.0f}s")
                    return HumanInputOutcome.TIMEOUT

                await self.clock.sleep(self.poll_interval)
        finally:
            if self._pending is not None and self._pending.id == request_id:
                self._pending = None
            self._responses.pop(request_id, None)
            if request_id not in self._resolved:
                self._resolved.append(request_id)

    def clear(self) -> None:
        """丢弃未解决的请求以及所有已记录的响应"""
        self._pending = None
        self._responses.clear()
        self._resolved.clear()
