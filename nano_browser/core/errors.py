"""
异常定义 - Agent运行过程中的错误分类
"""
from typing import Optional


class AgentError(Exception):
    """Agent错误基类"""


class RunCancelledError(AgentError):
    """运行被取消（用户取消或人工中止），不属于错误上报路径"""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "Run cancelled")
        self.reason = reason or "cancelled"


class ModelCallError(AgentError):
    """模型调用在重试后仍然失败"""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class StallError(AgentError):
    """模型连续多轮没有产生工具调用"""

    def __init__(self, turns: int):
        super().__init__(
            f"No progress: model returned no tool calls for {turns} consecutive turns"
        )
        self.turns = turns


class HumanInputPendingError(AgentError):
    """同一时间只允许一个待处理的人工输入请求"""


class WorkflowLoadError(AgentError):
    """工作流文件无法加载或校验失败"""
