"""
测试夹具 - 脚本化模型、假浏览器环境和虚拟时钟
"""
import asyncio
import json

import pytest

from nano_browser.core.stream_filter import TextDelta, ToolCallDelta
from nano_browser.core.types import Message


def text(content):
    return TextDelta(text=content)


def tool_call(name, arguments=None, call_id=None, index=0):
    return ToolCallDelta(
        index=index,
        id=call_id or f"call_{name}_{index}",
        name=name,
        arguments=json.dumps(arguments or {})
    )


class ScriptedModelClient:
    """
    按脚本逐轮返回流事件的模型客户端

    每一轮是一个事件列表；列表项也可以是异常（调用时抛出）
    或无参协程函数（流到该位置时执行，用于模拟外部操作）。
    脚本用完后返回空回合。
    """

    def __init__(self, turns=None, summary="Summary of earlier actions"):
        self.turns = list(turns or [])
        self.summary = summary
        self.stream_calls = []
        self.generate_calls = []

    def stream(self, messages, tools=None, temperature=0.2, max_tokens=None):
        self.stream_calls.append(messages)
        turn = self.turns.pop(0) if self.turns else []
        return self._events(turn)

    async def _events(self, turn):
        if isinstance(turn, BaseException):
            raise turn
        for event in turn:
            if isinstance(event, BaseException):
                raise event
            if callable(event):
                await event()
                continue
            yield event

    async def generate(self, messages, tools=None, temperature=0.2, max_tokens=None):
        self.generate_calls.append(messages)
        if isinstance(self.summary, BaseException):
            raise self.summary
        return Message(role="assistant", content=self.summary)


class FakeEnvironment:
    """假浏览器环境"""

    def __init__(self, full="[1] <C> <button> \"Submit\"", reduced=None):
        self.full = full
        self.reduced = reduced
        self.requests = []

    async def get_snapshot(self, size_hint, reduced=False):
        self.requests.append((size_hint, reduced))
        if reduced and self.reduced is not None:
            return self.reduced
        return self.full


class FakeClock:
    """虚拟时钟：sleep 立即推进时间并让出事件循环"""

    def __init__(self):
        self.time = 0.0
        self.sleeps = 0

    def now(self):
        return self.time

    async def sleep(self, seconds):
        self.time += seconds
        self.sleeps += 1
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def environment():
    return FakeEnvironment()
