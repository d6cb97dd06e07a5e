"""
LLM客户端 - 基于OpenAI兼容接口（OpenAI / Gemini / Ollama / 自定义）
"""
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol
from openai import AsyncOpenAI
from openai.types.chat.chat_completion_message_param import ChatCompletionMessageParam

from .types import Message
from .stream_filter import StreamEvent, TextDelta, ToolCallDelta


DEFAULT_BASE_URLS = {
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai/",
    "ollama": "http://localhost:11434/v1",
}


class ModelClient(Protocol):
    """编排循环依赖的模型接口"""

    def stream(
        self,
        messages: List[Message],
        tools: Optional[List[Dict]] = None,
        temperature: float = 0.2,
        max_tokens: Optional[int] = None
    ) -> AsyncIterator[StreamEvent]:
        ...

    async def generate(
        self,
        messages: List[Message],
        tools: Optional[List[Dict]] = None,
        temperature: float = 0.2,
        max_tokens: Optional[int] = None
    ) -> Message:
        ...


def to_openai_messages(messages: List[Message]) -> List[ChatCompletionMessageParam]:
    """转换为OpenAI消息格式"""
    msgs: List[ChatCompletionMessageParam] = []
    for msg in messages:
        if msg.role == "tool":
            msgs.append({
                "role": "tool",
                "tool_call_id": msg.tool_call_id or "",
                "content": msg.content or ""
            })
        elif msg.tool_calls:
            msgs.append({
                "role": "assistant",
                "content": msg.content or "",
                "tool_calls": msg.tool_calls
            })
        else:
            msgs.append({"role": msg.role, "content": msg.content or ""})
    return msgs


class LLMClient:
    """LLM客户端封装"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = "gpt-4o-mini",
        provider: str = "openai"
    ):
        self.provider = provider
        self.model = model
        self.api_key = api_key or os.getenv("OPENAI_API_KEY") or os.getenv("GEMINI_API_KEY")

        base_url = base_url or DEFAULT_BASE_URLS.get(provider)
        # Ollama 不校验密钥，但 SDK 要求非空
        if provider == "ollama" and not self.api_key:
            self.api_key = "ollama"

        self.client = AsyncOpenAI(
            api_key=self.api_key,
            base_url=base_url
        )

    def _request_kwargs(
        self,
        messages: List[Message],
        tools: Optional[List[Dict]],
        temperature: float,
        max_tokens: Optional[int]
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(messages),
            "temperature": temperature,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        return kwargs

    async def generate(
        self,
        messages: List[Message],
        tools: Optional[List[Dict]] = None,
        temperature: float = 0.2,
        max_tokens: Optional[int] = None
    ) -> Message:
        """生成非流式响应"""
        response = await self.client.chat.completions.create(
            **self._request_kwargs(messages, tools, temperature, max_tokens)
        )

        message = response.choices[0].message

        tool_calls = None
        if message.tool_calls:
            tool_calls = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {
                        "name": tc.function.name,
                        "arguments": tc.function.arguments
                    }
                }
                for tc in message.tool_calls
            ]

        return Message(
            role="assistant",
            content=message.content,
            tool_calls=tool_calls
        )

    async def stream(
        self,
        messages: List[Message],
        tools: Optional[List[Dict]] = None,
        temperature: float = 0.2,
        max_tokens: Optional[int] = None
    ) -> AsyncIterator[StreamEvent]:
        """生成流式响应，产出文本和工具调用增量"""
        stream = await self.client.chat.completions.create(
            stream=True,
            **self._request_kwargs(messages, tools, temperature, max_tokens)
        )

        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                yield TextDelta(delta.content)
            for tc in delta.tool_calls or []:
                function = tc.function
                yield ToolCallDelta(
                    index=tc.index,
                    id=tc.id,
                    name=function.name if function else None,
                    arguments=(function.arguments or "") if function else ""
                )
