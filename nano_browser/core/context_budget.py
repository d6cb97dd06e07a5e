"""
上下文预算管理 - 执行历史的记录、渲染与压缩

历史是只追加的条目序列；渲染后超出预算时，调用一次独立的摘要模型，
用单条摘要原子地替换整个序列。摘要失败时退化为只返回最近的若干条。
"""
import asyncio
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from .types import CallRecord, HistoryEntry, Message, SummaryRecord

logger = logging.getLogger(__name__)


EMPTY_HISTORY_TEXT = "No previous actions attempted"
TRUNCATION_MARKER = "\n-- SUMMARY TRUNCATED --"
MIN_SUMMARY_TOKENS = 100
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Token数量估算（每4个字符约1个token）"""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def compute_budget(max_tokens: int, used_tokens: int, ratio: float = 0.7) -> int:
    """扣除固定开销后按比例分配的剩余预算"""
    return max(0, int((max_tokens - used_tokens) * ratio))


SUMMARIZER_SYSTEM_PROMPT = """You condense the execution log of a browser automation agent.

Write a compact summary that keeps:
- what the user asked for
- the actions taken, in order, and whether each one worked
- errors, dead ends and anything that was tried repeatedly
- the state the task is in right now

Stay under {token_limit} tokens. Reply with the summary only."""


class HistorySummarizer:
    """执行历史摘要器 - 使用独立的小模型调用"""

    def __init__(self, llm_client, temperature: float = 0.2):
        self.llm_client = llm_client
        self.temperature = temperature

    async def summarize(self, history: str, task: str, token_limit: int) -> str:
        """生成摘要"""
        token_limit = max(MIN_SUMMARY_TOKENS, int(token_limit))
        messages = [
            Message(role="system", content=SUMMARIZER_SYSTEM_PROMPT.format(token_limit=token_limit)),
            Message(
                role="user",
                content=f"User task: {task}\n\nExecution log:\n{history}\n\nSummary:"
            ),
        ]
        response = await self.llm_client.generate(
            messages,
            temperature=self.temperature,
            max_tokens=token_limit
        )
        return (response.content or "").strip()


class ContextBudgetManager:
    """上下文预算管理器"""

    def __init__(
        self,
        summarizer: Optional[HistorySummarizer] = None,
        recent_fallback: int = 5,
        token_counter=estimate_tokens
    ):
        self.summarizer = summarizer
        self.recent_fallback = recent_fallback
        self.count_tokens = token_counter
        self._entries: List[HistoryEntry] = []
        self._reminders: List[str] = []

    @property
    def entries(self) -> Tuple[HistoryEntry, ...]:
        """只读快照"""
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: HistoryEntry) -> None:
        self._entries.append(entry)

    def record_call(
        self,
        iteration: int,
        tool: str,
        arguments: Dict[str, Any],
        result: str
    ) -> CallRecord:
        """追加一条工具调用记录"""
        record = CallRecord(iteration=iteration, tool=tool, arguments=dict(arguments), result=result)
        self._entries.append(record)
        return record

    def add_reminder(self, text: str) -> None:
        """为下一轮排队一条纠正性提醒"""
        if text not in self._reminders:
            self._reminders.append(text)

    def pop_reminders(self) -> List[str]:
        reminders, self._reminders = self._reminders, []
        return reminders

    def clear(self) -> None:
        self._entries.clear()
        self._reminders.clear()

    @staticmethod
    def render(entries) -> str:
        return "\n\n".join(entry.render() for entry in entries)

    async def get_context(self, token_limit: int, task: str = "") -> str:
        """
        返回预算内的历史文本

        超出预算时压缩为单条摘要；摘要失败时只返回最近的若干条原文。
        """
        if not self._entries:
            return EMPTY_HISTORY_TEXT

        full_history = self.render(self._entries)
        if self.count_tokens(full_history) <= token_limit:
            return full_history

        try:
            if self.summarizer is None:
                raise RuntimeError("no summarizer configured")
            summary = await self.summarizer.summarize(full_history, task, token_limit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to summarize execution history: {e}")
            return self.render(self._entries[-self.recent_fallback:])

        record = self._fit_summary(
            SummaryRecord(
                start_iteration=min(e.first_iteration for e in self._entries),
                end_iteration=max(e.last_iteration for e in self._entries),
                summary=summary
            ),
            token_limit
        )
        self._entries = [record]
        logger.info(
            f"Execution history compacted into iterations "
            f"{record.start_iteration}-{record.end_iteration} summary"
        )
        rendered = record.render()
        if self.count_tokens(rendered) > token_limit:
            # 预算连摘要标题都放不下
            rendered = rendered[:max(0, int(token_limit)) * CHARS_PER_TOKEN]
        return rendered

    def _fit_summary(self, record: SummaryRecord, token_limit: int) -> SummaryRecord:
        """摘要超出预算时硬截断"""
        if self.count_tokens(record.render()) <= token_limit:
            return record
        budget_chars = max(0, int(token_limit) * CHARS_PER_TOKEN - len(record.header()) - len(TRUNCATION_MARKER))
        text = record.summary[:budget_chars] + TRUNCATION_MARKER
        fitted = SummaryRecord(
            start_iteration=record.start_iteration,
            end_iteration=record.end_iteration,
            summary=text,
            timestamp=record.timestamp
        )
        if self.count_tokens(fitted.render()) > token_limit:
            # 预算连截断标记都放不下，只保留标题
            fitted = SummaryRecord(
                start_iteration=record.start_iteration,
                end_iteration=record.end_iteration,
                summary="",
                timestamp=record.timestamp
            )
        return fitted
