"""
流式响应过滤器

把模型的增量输出折叠成不可变的最终结果：
- 可见文本实时转发给界面，直到出现内部标记（浏览器状态、系统提醒）
- 出现内部标记后停止转发，界面内容替换为占位文本
- 工具调用片段独立累积，不受标记检测影响
"""
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Tuple, Union
import inspect
import json
import logging
import uuid

from .cancellation import CancellationToken
from .types import ToolCallRequest

logger = logging.getLogger(__name__)


PROHIBITED_MARKERS = (
    "<browser-state>",
    "</browser-state>",
    "<system-reminder>",
    "</system-reminder>",
)

PLACEHOLDER_TEXT = "Processing..."

CORRECTIVE_REMINDER = (
    "I will never output <browser-state> or <system-reminder> tags or their contents. "
    "These are for my internal reference only. If I have completed all actions, "
    "I will complete the task and call the 'done' tool."
)


@dataclass(frozen=True)
class TextDelta:
    """文本增量"""
    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    """工具调用增量（按 index 归并）"""
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


StreamEvent = Union[TextDelta, ToolCallDelta]


@dataclass(frozen=True)
class ToolCallFragment:
    index: int
    id: Optional[str] = None
    name: str = ""
    arguments: str = ""


@dataclass(frozen=True)
class FilterState:
    """折叠过程中的状态"""
    text: str = ""
    leaked_marker: Optional[str] = None
    tool_calls: Tuple[ToolCallFragment, ...] = ()

    @property
    def leaked(self) -> bool:
        return self.leaked_marker is not None


@dataclass(frozen=True)
class ModelResponse:
    """一轮模型输出的最终结果"""
    text: str
    tool_calls: Tuple[ToolCallRequest, ...] = ()
    leaked_marker: Optional[str] = None

    @property
    def leaked(self) -> bool:
        return self.leaked_marker is not None

    @property
    def visible_text(self) -> str:
        return "" if self.leaked else self.text


def find_marker(text: str, markers=PROHIBITED_MARKERS) -> Optional[str]:
    """返回文本中最先出现的内部标记"""
    found = [(text.find(m), m) for m in markers if m in text]
    if not found:
        return None
    return min(found)[1]


def withhold_partial_marker(text: str, markers=PROHIBITED_MARKERS) -> str:
    """去掉结尾处可能是某个标记开头的部分（等下一个片段再判断）"""
    held = 0
    for marker in markers:
        for size in range(min(len(marker) - 1, len(text)), held, -1):
            if text.endswith(marker[:size]):
                held = size
                break
    return text[:len(text) - held]


def _merge_tool_call(
    fragments: Tuple[ToolCallFragment, ...],
    delta: ToolCallDelta
) -> Tuple[ToolCallFragment, ...]:
    merged = []
    matched = False
    for fragment in fragments:
        if fragment.index == delta.index:
            matched = True
            fragment = replace(
                fragment,
                id=fragment.id or delta.id,
                name=fragment.name or delta.name or "",
                arguments=fragment.arguments + (delta.arguments or "")
            )
        merged.append(fragment)
    if not matched:
        merged.append(ToolCallFragment(
            index=delta.index,
            id=delta.id,
            name=delta.name or "",
            arguments=delta.arguments or ""
        ))
    return tuple(merged)


def fold(state: FilterState, event: StreamEvent, markers=PROHIBITED_MARKERS) -> FilterState:
    """把一个流事件折叠进状态，返回新状态"""
    if isinstance(event, TextDelta):
        text = state.text + event.text
        leaked_marker = state.leaked_marker
        if leaked_marker is None:
            leaked_marker = find_marker(text, markers)
        return replace(state, text=text, leaked_marker=leaked_marker)
    if isinstance(event, ToolCallDelta):
        return replace(state, tool_calls=_merge_tool_call(state.tool_calls, event))
    return state


def _parse_fragment(fragment: ToolCallFragment) -> ToolCallRequest:
    call_id = fragment.id or f"call_{uuid.uuid4().hex[:8]}"
    raw = fragment.arguments.strip()
    if not raw:
        return ToolCallRequest(id=call_id, name=fragment.name, arguments={})
    try:
        arguments = json.loads(raw)
    except json.JSONDecodeError as e:
        return ToolCallRequest(
            id=call_id, name=fragment.name, arguments={}, parse_error=f"malformed JSON ({e.msg})"
        )
    if not isinstance(arguments, dict):
        return ToolCallRequest(
            id=call_id, name=fragment.name, arguments={}, parse_error="arguments must be a JSON object"
        )
    return ToolCallRequest(id=call_id, name=fragment.name, arguments=arguments)


def finalize(state: FilterState) -> ModelResponse:
    """从折叠状态生成最终结果"""
    ordered = sorted(state.tool_calls, key=lambda f: f.index)
    return ModelResponse(
        text=state.text,
        tool_calls=tuple(_parse_fragment(f) for f in ordered),
        leaked_marker=state.leaked_marker
    )


TextCallback = Callable[[str], Union[None, Awaitable[None]]]


class StreamingResponseFilter:
    """流式响应过滤器"""

    def __init__(self, markers=PROHIBITED_MARKERS, placeholder: str = PLACEHOLDER_TEXT):
        self.markers = tuple(markers)
        self.placeholder = placeholder

    async def consume(
        self,
        stream: AsyncIterator[StreamEvent],
        on_text: Optional[TextCallback] = None,
        cancellation: Optional[CancellationToken] = None
    ) -> ModelResponse:
        """
        消费整个流

        Args:
            stream: 模型的增量事件流
            on_text: 可见文本更新回调（内容为截至目前的完整可见文本）
            cancellation: 每个事件后检查的取消令牌
        """
        state = FilterState()
        shown: Optional[str] = ""
        try:
            async for event in stream:
                if cancellation is not None:
                    cancellation.raise_if_cancelled()

                state = fold(state, event, self.markers)

                if not isinstance(event, TextDelta) or on_text is None:
                    continue
                if state.leaked:
                    if shown is None:
                        continue
                    logger.warning(
                        f"Model output contained internal marker {state.leaked_marker!r}, streaming stopped"
                    )
                    # 只有已经开始显示时才需要替换
                    if shown.strip():
                        await _call(on_text, self.placeholder)
                    shown = None
                    continue
                visible = withhold_partial_marker(state.text, self.markers)
                if visible != shown and visible.strip():
                    shown = visible
                    await _call(on_text, shown)

            # 流结束时不再有后续片段，补发被暂扣的结尾
            if on_text is not None and shown is not None and not state.leaked:
                if state.text != shown and state.text.strip():
                    await _call(on_text, state.text)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        return finalize(state)


async def _call(callback: Callable[..., Any], *args) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result
