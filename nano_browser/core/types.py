"""
核心类型定义 - 任务、执行历史、运行状态和事件
"""
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional, Union
from dataclasses import dataclass, field
from datetime import datetime
import json
import time

from .cancellation import CancellationToken


class ExecutionMode(str, Enum):
    """执行模式"""
    DYNAMIC = "dynamic"         # 模型逐轮自行分解任务
    PREDEFINED = "predefined"   # 按外部提供的固定步骤执行


class LoopState(Enum):
    """Agent Loop 状态机"""
    IDLE = "idle"
    INITIALIZING = "initializing"
    ITERATING = "iterating"
    WAITING_HUMAN_INPUT = "waiting_human_input"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """运行结果类型"""
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    ITERATION_LIMIT_EXCEEDED = "iteration_limit_exceeded"


class HumanInputAction(str, Enum):
    """人工响应动作"""
    DONE = "done"
    ABORT = "abort"


class HumanInputOutcome(str, Enum):
    """等待人工输入的结果"""
    DONE = "done"
    ABORT = "abort"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class Message:
    """对话消息"""
    role: str  # "user", "assistant", "system", "tool"
    content: Optional[str] = None
    tool_calls: Optional[List[Dict]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        data = {"role": self.role}
        if self.content:
            data["content"] = self.content
        if self.tool_calls:
            data["tool_calls"] = self.tool_calls
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.name:
            data["name"] = self.name
        return data


@dataclass(frozen=True)
class PredefinedPlan:
    """预定义计划"""
    name: str
    goal: str
    steps: tuple = ()
    agent_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "PredefinedPlan":
        return cls(
            name=data.get("name", ""),
            goal=data.get("goal", ""),
            steps=tuple(data.get("steps", [])),
            agent_id=data.get("agent_id") or data.get("agentId"),
        )


@dataclass(frozen=True)
class Task:
    """任务 - 每次运行创建一次，不可变"""
    goal: str
    mode: ExecutionMode = ExecutionMode.DYNAMIC
    source: Optional[str] = None
    plan: Optional[PredefinedPlan] = None


@dataclass(frozen=True)
class CallRecord:
    """历史条目：一次工具调用及其结果"""
    iteration: int
    tool: str
    arguments: Dict[str, Any]
    result: str
    timestamp: float = field(default_factory=time.time)

    @property
    def first_iteration(self) -> int:
        return self.iteration

    @property
    def last_iteration(self) -> int:
        return self.iteration

    def render(self) -> str:
        args = json.dumps(self.arguments, ensure_ascii=False, default=str)
        return f"Iteration {self.iteration}: Tool Call: {self.tool}({args}) Tool Result: {self.result}"


@dataclass(frozen=True)
class SummaryRecord:
    """历史条目：压缩后的摘要"""
    start_iteration: int
    end_iteration: int
    summary: str
    timestamp: float = field(default_factory=time.time)

    @property
    def first_iteration(self) -> int:
        return self.start_iteration

    @property
    def last_iteration(self) -> int:
        return self.end_iteration

    def header(self) -> str:
        return f"=== ITERATIONS {self.start_iteration}-{self.end_iteration} SUMMARY ===\n"

    def render(self) -> str:
        return self.header() + self.summary


HistoryEntry = Union[CallRecord, SummaryRecord]


@dataclass
class ToolCallRequest:
    """工具调用请求 - 由模型的结构化输出产生，只被消费一次"""
    id: str
    name: str
    arguments: Dict[str, Any]
    parse_error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "ToolCallRequest":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            arguments=data.get("arguments", {})
        )


@dataclass(frozen=True)
class HumanInputRequest:
    """人工输入请求"""
    id: str
    prompt: str
    created_at: float


@dataclass(frozen=True)
class HumanInputResponse:
    """人工输入响应"""
    request_id: str
    action: HumanInputAction


@dataclass
class ExecutionMetrics:
    """执行指标"""
    tool_calls: int = 0
    errors: int = 0
    observations: int = 0
    tool_frequency: Dict[str, int] = field(default_factory=dict)
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    def record_tool_call(self, name: str, ok: bool) -> None:
        self.tool_calls += 1
        self.tool_frequency[name] = self.tool_frequency.get(name, 0) + 1
        if not ok:
            self.errors += 1

    @property
    def failure_rate(self) -> float:
        """失败率（百分比）"""
        if self.tool_calls == 0:
            return 0.0
        return self.errors / self.tool_calls * 100

    @property
    def duration(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return self.end_time - self.start_time


@dataclass
class ExecutionState:
    """单次运行的执行状态，运行结束即丢弃"""
    cancellation: CancellationToken
    iteration: int = 0
    consecutive_no_tool_calls: int = 0
    done_called: bool = False
    done_success: bool = True
    done_message: str = ""
    requires_human_input: bool = False
    human_input_prompt: str = ""
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)


@dataclass
class RunOutcome:
    """一次运行的结果"""
    status: RunStatus
    reason: Optional[str] = None
    message: str = ""
    success: bool = False
    iterations: int = 0

    @property
    def completed(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "success": self.success,
            "iterations": self.iterations,
        }


@dataclass
class AgentEvent:
    """Agent事件"""
    type: str
    data: Any
    timestamp: datetime = field(default_factory=datetime.now)


# 事件处理器类型（同步或异步）
EventHandler = Callable[[AgentEvent], Union[None, Coroutine[Any, Any, None]]]


class EventType:
    """事件类型常量"""
    STARTED = "started"
    STATE_CHANGE = "state_change"
    THINKING = "thinking"
    MESSAGE = "message"
    NOTICE = "notice"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    HUMAN_INPUT_REQUEST = "human_input_request"
    HUMAN_INPUT_RESPONSE = "human_input_response"
    COMPLETION = "completion"
    ERROR = "error"
    CANCELLED = "cancelled"
