"""
Nano Browser - 由大模型驱动的浏览器任务执行引擎

包含功能:
- Agent Loop核心循环（迭代上限、停滞检测、协作式取消）
- 工具注册与分发（参数校验，失败作为数据返回）
- 执行历史的上下文预算与摘要压缩
- 流式输出过滤（防止内部标签泄漏）
- HumanInTheLoop人工输入闸门
- 会话管理与预定义计划
"""

__version__ = "0.1.0"

from .core.types import (
    ExecutionMode, LoopState, RunStatus, HumanInputAction,
    Message, Task, PredefinedPlan, ToolCallRequest, RunOutcome, AgentEvent, EventType
)
from .core.errors import AgentError, RunCancelledError, ModelCallError, StallError
from .core.llm_client import LLMClient
from .core.agent_loop import AgentLoop, AgentConfig, EventBus
from .core.session import Session, SessionManager
from .core.workflow import PlanCatalog, load_workflow
from .tools.base import ToolRegistry, ToolBuilder, ToolInvocation, ToolResult

__all__ = [
    # Core types
    "ExecutionMode", "LoopState", "RunStatus", "HumanInputAction",
    "Message", "Task", "PredefinedPlan", "ToolCallRequest", "RunOutcome",
    "AgentEvent", "EventType",
    # Errors
    "AgentError", "RunCancelledError", "ModelCallError", "StallError",
    # Core components
    "LLMClient", "AgentLoop", "AgentConfig", "EventBus",
    "Session", "SessionManager", "PlanCatalog", "load_workflow",
    # Tools
    "ToolRegistry", "ToolBuilder", "ToolInvocation", "ToolResult",
]
