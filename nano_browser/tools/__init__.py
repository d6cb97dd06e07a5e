"""Tool system module - 工具注册、校验与分发"""

from .base import (
    ToolRegistry,
    ToolInvocation,
    ToolResult,
    ToolBuilder,
    FunctionTool,
)
from .control import register_control_tools

__all__ = [
    'ToolRegistry',
    'ToolInvocation',
    'ToolResult',
    'ToolBuilder',
    'FunctionTool',
    'register_control_tools',
]
