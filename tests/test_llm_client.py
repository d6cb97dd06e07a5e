"""
测试用例 - LLM客户端的流式增量转换
"""
from types import SimpleNamespace

import pytest

from nano_browser.core.llm_client import LLMClient, to_openai_messages
from nano_browser.core.stream_filter import StreamingResponseFilter, TextDelta, ToolCallDelta
from nano_browser.core.types import Message


def chunk(content=None, tool_calls=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)])


def tool_delta(index, id=None, name=None, arguments=None):
    return SimpleNamespace(
        index=index,
        id=id,
        function=SimpleNamespace(name=name, arguments=arguments)
    )


class FakeCompletions:
    def __init__(self, chunks):
        self.chunks = chunks
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs

        async def iterate():
            for c in self.chunks:
                yield c

        return iterate()


class TestLLMClient:
    """测试OpenAI兼容客户端"""

    def setup_method(self):
        self.client = LLMClient(api_key="sk-test", model="gpt-4o-mini")

    def _install(self, chunks):
        completions = FakeCompletions(chunks)
        self.client.client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
        return completions

    @pytest.mark.asyncio
    async def test_stream_yields_deltas(self):
        completions = self._install([
            chunk(content="Opening"),
            chunk(tool_calls=[tool_delta(0, id="c1", name="navigate", arguments='{"url": ')]),
            chunk(tool_calls=[tool_delta(0, arguments='"https://a.b"}')]),
            SimpleNamespace(choices=[]),
        ])

        events = [e async for e in self.client.stream([Message(role="user", content="hi")], tools=[{"type": "function"}])]

        assert events[0] == TextDelta("Opening")
        assert events[1] == ToolCallDelta(index=0, id="c1", name="navigate", arguments='{"url": ')
        assert events[2].arguments == '"https://a.b"}'
        assert len(events) == 3
        assert completions.kwargs["stream"] is True
        assert completions.kwargs["tool_choice"] == "auto"

    @pytest.mark.asyncio
    async def test_stream_through_filter(self):
        self._install([
            chunk(tool_calls=[tool_delta(0, id="c1", name="click", arguments='{"nodeId"')]),
            chunk(tool_calls=[tool_delta(0, arguments=': 5}')]),
        ])

        response = await StreamingResponseFilter().consume(self.client.stream([]))

        assert response.tool_calls[0].name == "click"
        assert response.tool_calls[0].arguments == {"nodeId": 5}

    @pytest.mark.asyncio
    async def test_no_tools_no_tool_choice(self):
        completions = self._install([])

        _ = [e async for e in self.client.stream([], max_tokens=100)]

        assert "tools" not in completions.kwargs
        assert completions.kwargs["max_tokens"] == 100

    def test_message_conversion(self):
        messages = to_openai_messages([
            Message(role="system", content="sys"),
            Message(role="tool", content="result", tool_call_id="c1"),
        ])

        assert messages[0] == {"role": "system", "content": "sys"}
        assert messages[1] == {"role": "tool", "tool_call_id": "c1", "content": "result"}
