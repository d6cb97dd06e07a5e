"""
Nano Browser 简单使用示例

用一个内存中的"页面"代替真实浏览器，演示工具注册、环境快照和事件订阅。
"""
import asyncio
import os

from pydantic import BaseModel

from nano_browser import EventType, LLMClient, Session, ToolRegistry


class ToyPage:
    """一个只有搜索框和按钮的假页面"""

    def __init__(self):
        self.query = ""
        self.results = []

    async def get_snapshot(self, size_hint, reduced=False):
        lines = [
            f'[1] <T> <input> "Search" value="{self.query}"',
            '[2] <C> <button> "Go"',
        ]
        if not reduced:
            lines.extend(f'[{i}] <C> <a> "{r}"' for i, r in enumerate(self.results, 10))
        return "\n".join(lines)


class TypeArgs(BaseModel):
    nodeId: int
    text: str


class ClickArgs(BaseModel):
    nodeId: int


async def main():
    """简单示例"""
    # 检查 API 密钥
    api_key = os.getenv("OPENAI_API_KEY") or os.getenv("GEMINI_API_KEY")
    if not api_key:
        print("请设置 OPENAI_API_KEY 或 GEMINI_API_KEY 环境变量")
        return

    provider = "gemini" if os.getenv("GEMINI_API_KEY") else "openai"
    model = "gemini-2.0-flash" if provider == "gemini" else "gpt-4o-mini"
    llm = LLMClient(api_key=api_key, provider=provider, model=model)

    page = ToyPage()
    registry = ToolRegistry()

    def type_text(params):
        if params["nodeId"] != 1:
            raise ValueError(f"Node {params['nodeId']} is not typeable")
        page.query = params["text"]
        return f"Typed '{params['text']}'"

    def click(params):
        if params["nodeId"] != 2:
            raise ValueError(f"Node {params['nodeId']} is not clickable")
        page.results = [f"{page.query} - result {i}" for i in range(1, 4)]
        return "Search submitted"

    registry.register_function("type", type_text, "Type text into an input", args_model=TypeArgs)
    registry.register_function("click", click, "Click an element", args_model=ClickArgs)

    session = Session("demo", llm, tool_registry=registry, environment=page)

    # 定义事件处理器
    def on_message(event):
        print(f"\n🤖 Assistant: {event.data['content']}")

    def on_tool_call(event):
        for call in event.data.get("calls", []):
            print(f"\n🔧 Calling tool: {call['name']}")
            print(f"   Arguments: {call['arguments']}")

    def on_tool_result(event):
        data = event.data
        if data.get("ok"):
            print(f"\n✅ Tool result: {str(data.get('output'))[:200]}")
        else:
            print(f"\n❌ Tool error: {data.get('error')}")

    # 注册事件处理器
    session.event_bus.on(EventType.MESSAGE, on_message)
    session.event_bus.on(EventType.TOOL_CALL, on_tool_call)
    session.event_bus.on(EventType.TOOL_RESULT, on_tool_result)

    outcome = await session.start("Search for 'python asyncio' and tell me the first result")
    print(f"\n{outcome.status.value}: {outcome.message}")


if __name__ == "__main__":
    asyncio.run(main())
