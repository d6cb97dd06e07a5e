"""
流程控制工具 - done 和 human_input
"""
from typing import Any, Dict
import asyncio

from pydantic import BaseModel, Field

from .base import ToolBuilder, ToolInvocation, ToolResult


class DoneArgs(BaseModel):
    success: bool = Field(True, description="Whether the task was accomplished")
    message: str = Field("", description="Final message for the user")


class HumanInputArgs(BaseModel):
    prompt: str = Field(..., description="What the human should do before the agent continues")


class DoneInvocation(ToolInvocation):
    """完成任务"""

    async def execute(self, cancellation_event: asyncio.Event = None) -> ToolResult:
        success = self.params.get("success", True)
        message = self.params.get("message", "")
        return ToolResult(
            call_id=self.call_id,
            ok=True,
            output={"success": success, "message": message},
            done=True
        )


class DoneTool(ToolBuilder):
    """完成任务工具"""

    def __init__(self):
        super().__init__(
            name="done",
            description="Mark the task as complete. Use success=false with a reason when the task is impossible.",
            args_model=DoneArgs
        )

    def build(self, call_id: str, params: Dict[str, Any]) -> ToolInvocation:
        return DoneInvocation(name=self.name, params=params, call_id=call_id)


class HumanInputInvocation(ToolInvocation):
    """请求人工协助"""

    async def execute(self, cancellation_event: asyncio.Event = None) -> ToolResult:
        prompt = self.params.get("prompt", "")
        return ToolResult(
            call_id=self.call_id,
            ok=True,
            output=f"Waiting for human: {prompt}",
            requires_human_input=True,
            metadata={"prompt": prompt}
        )


class HumanInputTool(ToolBuilder):
    """人工协助工具"""

    def __init__(self):
        super().__init__(
            name="human_input",
            description="Ask the human to perform a manual step (login, captcha, confirmation) and wait until they finish.",
            args_model=HumanInputArgs
        )

    def build(self, call_id: str, params: Dict[str, Any]) -> ToolInvocation:
        return HumanInputInvocation(name=self.name, params=params, call_id=call_id)


def register_control_tools(registry) -> None:
    """注册流程控制工具"""
    registry.register(DoneTool())
    registry.register(HumanInputTool())
