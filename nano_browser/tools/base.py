"""
工具基类 - 工具声明、调用实例和注册表
"""
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union
import asyncio
import inspect
import json
import logging

from pydantic import BaseModel, ValidationError

from ..core.types import ToolCallRequest

logger = logging.getLogger(__name__)


class ToolResult:
    """工具执行结果 - 总是结构化的 ok/output/error"""

    def __init__(
        self,
        call_id: str = "",
        ok: bool = True,
        output: Any = None,
        error: str = None,
        done: bool = False,
        requires_human_input: bool = False,
        metadata: Dict = None
    ):
        self.call_id = call_id
        self.ok = ok
        self.output = output
        self.error = error
        self.done = done
        self.requires_human_input = requires_human_input
        self.metadata = metadata or {}

    @classmethod
    def failure(cls, call_id: str, error: str) -> "ToolResult":
        return cls(call_id=call_id, ok=False, error=error)

    def to_payload(self) -> Dict:
        """转换为记录到历史中的结果格式"""
        payload: Dict[str, Any] = {"ok": self.ok}
        if self.ok:
            if self.output is not None:
                payload["output"] = self.output
        else:
            payload["error"] = self.error or "Unknown error"
        if self.requires_human_input:
            payload["requiresHumanInput"] = True
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False, default=str)


class ToolInvocation:
    """工具调用实例"""

    def __init__(
        self,
        name: str,
        params: Dict[str, Any] = None,
        call_id: str = None
    ):
        self.name = name
        self.params = params or {}
        self.call_id = call_id or ""

    async def execute(self, cancellation_event: asyncio.Event = None) -> ToolResult:
        """执行工具调用（子类重写）"""
        return ToolResult(call_id=self.call_id, ok=True, output="Tool executed")


class ToolBuilder(ABC):
    """工具构建器基类"""

    def __init__(
        self,
        name: str,
        description: str = "",
        args_model: Optional[Type[BaseModel]] = None,
        parameter_schema: Dict = None
    ):
        self.name = name
        self.description = description
        self.args_model = args_model
        if parameter_schema is None and args_model is not None:
            parameter_schema = args_model.model_json_schema()
        self.parameter_schema = parameter_schema or {"type": "object", "properties": {}}

    @abstractmethod
    def build(self, call_id: str, params: Dict[str, Any]) -> ToolInvocation:
        """构建工具调用实例"""

    def validate(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """按声明的参数模型校验参数，失败时抛出 ValidationError"""
        if self.args_model is None:
            return params
        return self.args_model.model_validate(params).model_dump()

    def to_schema(self) -> Dict:
        """转换为OpenAI工具格式"""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameter_schema
            }
        }

    def describe(self) -> str:
        """一行描述，用于系统提示词"""
        properties = self.parameter_schema.get("properties", {})
        return f"- {self.name}({', '.join(properties)}): {self.description}"


ToolHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class FunctionInvocation(ToolInvocation):
    """函数工具调用"""

    def __init__(self, handler: ToolHandler, **kwargs):
        super().__init__(**kwargs)
        self.handler = handler

    async def execute(self, cancellation_event: asyncio.Event = None) -> ToolResult:
        value = self.handler(self.params)
        if inspect.isawaitable(value):
            value = await value
        if isinstance(value, ToolResult):
            value.call_id = self.call_id
            return value
        return ToolResult(call_id=self.call_id, ok=True, output=value)


class FunctionTool(ToolBuilder):
    """把普通函数包装为工具"""

    def __init__(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        args_model: Optional[Type[BaseModel]] = None,
        parameter_schema: Dict = None
    ):
        super().__init__(
            name=name,
            description=description,
            args_model=args_model,
            parameter_schema=parameter_schema
        )
        self.handler = handler

    def build(self, call_id: str, params: Dict[str, Any]) -> ToolInvocation:
        return FunctionInvocation(
            self.handler,
            name=self.name,
            params=params,
            call_id=call_id
        )


class ToolRegistry:
    """工具注册表"""

    def __init__(self):
        self._tools: Dict[str, ToolBuilder] = {}

    def register(self, tool: ToolBuilder) -> None:
        """注册工具（同名覆盖）"""
        self._tools[tool.name] = tool

    def register_function(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        args_model: Optional[Type[BaseModel]] = None,
        parameter_schema: Dict = None
    ) -> FunctionTool:
        """注册函数工具"""
        tool = FunctionTool(
            name=name,
            handler=handler,
            description=description,
            args_model=args_model,
            parameter_schema=parameter_schema
        )
        self.register(tool)
        return tool

    def unregister(self, name: str) -> None:
        """注销工具"""
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[ToolBuilder]:
        """获取工具"""
        return self._tools.get(name)

    def get_all(self) -> List[ToolBuilder]:
        """获取所有工具"""
        return list(self._tools.values())

    def get_all_schemas(self) -> List[Dict]:
        """获取所有工具的Schema"""
        return [tool.to_schema() for tool in self._tools.values()]

    def describe_tools(self) -> str:
        """生成工具说明文本"""
        lines = ["Available tools:"]
        lines.extend(tool.describe() for tool in self._tools.values())
        return "\n".join(lines)

    async def dispatch(
        self,
        request: ToolCallRequest,
        cancellation_event: asyncio.Event = None
    ) -> ToolResult:
        """
        执行一次工具调用

        任何工具层面的问题（未知工具、参数错误、处理器抛异常）都转换为
        ok=False 的结果，保证每个调用都有且只有一个结果。
        """
        tool = self._tools.get(request.name)
        if not tool:
            logger.warning(f"Unknown tool: {request.name}")
            return ToolResult.failure(request.id, f"Unknown tool: {request.name}")

        if request.parse_error:
            return ToolResult.failure(
                request.id,
                f"Invalid arguments for {request.name}: {request.parse_error}"
            )

        try:
            params = tool.validate(request.arguments)
        except ValidationError as e:
            return ToolResult.failure(
                request.id,
                f"Invalid arguments for {request.name}: {e.errors(include_url=False)}"
            )

        invocation = tool.build(request.id, params)
        try:
            result = await invocation.execute(cancellation_event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Tool {request.name} execution failed: {e}")
            return ToolResult.failure(request.id, f"Tool execution failed: {e}")

        result.call_id = request.id
        return result

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
