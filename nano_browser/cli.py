"""
Nano Browser CLI - 交互式命令行界面

任务在后台运行，输入框保持可用，以便随时 /cancel 或回应人工输入请求。
"""
import asyncio
import logging
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.markdown import Markdown
from rich.table import Table
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout
from prompt_toolkit.styles import Style

from .core.errors import WorkflowLoadError
from .core.session import Session
from .core.stream_filter import PLACEHOLDER_TEXT
from .core.types import EventType, HumanInputAction, RunOutcome, RunStatus
from .core.workflow import load_workflow

logger = logging.getLogger(__name__)


# 自定义样式
style = Style.from_dict({
    'prompt': '#00aa00 bold',
    'hint': '#666666',
})


HELP_TEXT = """
# Available Commands

- `/exit`, `/quit` - Exit the application
- `/help` - Show this help message
- `/cancel` - Pause the running task (history is kept)
- `/reset` - Cancel and clear the execution history
- `/done` - Tell the agent the requested manual step is finished
- `/abort` - Abort the task waiting for manual input
- `/status` - Show the session status
- `/history` - Show the execution history
- `/workflow <path>` - Run a recorded workflow (JSON)

Any other input starts a new task.
"""


class NanoBrowserCLI:
    """Nano Browser命令行界面"""

    def __init__(self, session: Session, console: Optional[Console] = None):
        self.console = console or Console()
        self.prompt = PromptSession(style=style)
        self.session = session
        self._run_task: Optional[asyncio.Task] = None

        bus = session.event_bus
        bus.on(EventType.MESSAGE, self._on_message)
        bus.on(EventType.NOTICE, self._on_notice)
        bus.on(EventType.THINKING, self._on_thinking)
        bus.on(EventType.TOOL_CALL, self._on_tool_call)
        bus.on(EventType.TOOL_RESULT, self._on_tool_result)
        bus.on(EventType.HUMAN_INPUT_REQUEST, self._on_human_input_request)
        bus.on(EventType.ERROR, self._on_error)
        bus.on(EventType.CANCELLED, self._on_cancelled)

    def print_banner(self):
        """打印欢迎信息"""
        banner = """
╭────────────────────────────────────────────────────────────╮
│                                                            │
│   Nano Browser - LLM Browser Task Agent                    │
│                                                            │
│   Features:                                                │
│   • Agent Loop with Tool Calling                           │
│   • Context Budget & History Summaries                     │
│   • Predefined Plans / Recorded Workflows                  │
│   • Human-in-the-Loop                                      │
│                                                            │
╰────────────────────────────────────────────────────────────╯
        """
        self.console.print(banner, style="cyan")

    async def _on_message(self, event):
        """处理消息事件"""
        data = event.data
        if data.get("role") == "assistant" and data.get("content"):
            self.console.print(Markdown(data["content"]))

    async def _on_notice(self, event):
        self.console.print(f"[yellow]{event.data.get('message')}[/yellow]")

    async def _on_thinking(self, event):
        """处理思考事件（流式增量只显示占位符，完整文本由MESSAGE事件显示）"""
        message = event.data.get("message")
        if not message:
            return
        if event.data.get("message_id") is None or message == PLACEHOLDER_TEXT:
            self.console.print(f"[dim]{message}[/dim]")

    async def _on_tool_call(self, event):
        """处理工具调用事件"""
        for call in event.data.get("calls", []):
            self.console.print(f"[dim]🔧 Calling tool: {call['name']}[/dim]", highlight=False)

    async def _on_tool_result(self, event):
        """处理工具结果事件"""
        data = event.data
        if not data.get("ok"):
            self.console.print(f"[red]Tool error ({data.get('name')}): {data.get('error')}[/red]")

    async def _on_human_input_request(self, event):
        """处理人工输入请求"""
        self.console.print(Panel(
            f"{event.data.get('prompt')}\n\n"
            "[dim]Type /done when finished or /abort to stop the task[/dim]",
            title="Human Input Required",
            border_style="yellow"
        ))

    async def _on_error(self, event):
        """处理错误事件"""
        self.console.print(f"[red]Error: {event.data.get('error')}[/red]")

    async def _on_cancelled(self, event):
        if event.data.get("reason") not in ("aborted_by_human", "human_input_timeout"):
            self.console.print(
                "[yellow]Task paused. Type your next request to continue, "
                "or use /reset to start over.[/yellow]"
            )

    def report(self, outcome: RunOutcome):
        if outcome.status == RunStatus.COMPLETED:
            mark = "[green]✓[/green]" if outcome.success else "[red]✗[/red]"
            self.console.print(f"{mark} {outcome.message} [dim]({outcome.iterations} iterations)[/dim]")
        elif outcome.status == RunStatus.ITERATION_LIMIT_EXCEEDED:
            self.console.print(f"[yellow]Stopped after {outcome.iterations} iterations[/yellow]")

    async def _run(self, coro):
        try:
            outcome = await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Run failed")
            self.console.print(f"[red]Error: {e}[/red]")
            return
        self.report(outcome)

    def _start_background(self, coro):
        self._run_task = asyncio.create_task(self._run(coro))

    async def run_interactive(self):
        """运行交互式会话"""
        self.print_banner()
        self.console.print("\n[dim]Type /help for commands, /exit to quit[/dim]\n")

        with patch_stdout():
            while True:
                try:
                    user_input = await self.prompt.prompt_async("You: ", style=style)
                    user_input = user_input.strip()

                    if not user_input:
                        continue

                    # 处理命令
                    if user_input.startswith('/'):
                        if await self._handle_command(user_input):
                            break
                        continue

                    self._start_background(self.session.start(user_input))

                except KeyboardInterrupt:
                    if self.session.cancel():
                        continue
                    break
                except EOFError:
                    break

        await self.session.dispose()
        if self._run_task is not None:
            await asyncio.wait({self._run_task})

    async def _handle_command(self, command: str) -> bool:
        """处理命令，返回True表示退出"""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if cmd in ('/exit', '/quit'):
            self.console.print("[green]Goodbye![/green]")
            return True

        elif cmd == '/help':
            self.console.print(Markdown(HELP_TEXT))

        elif cmd == '/cancel':
            if not self.session.cancel():
                self.console.print("[yellow]No task is running[/yellow]")

        elif cmd == '/reset':
            await self.session.reset()
            self.console.print("[green]Execution history cleared[/green]")

        elif cmd in ('/done', '/abort'):
            action = HumanInputAction.DONE if cmd == '/done' else HumanInputAction.ABORT
            if not self.session.respond_to_human_input(action):
                self.console.print("[yellow]No pending human input request[/yellow]")

        elif cmd == '/status':
            table = Table(title="Session Status", show_header=False)
            for key, value in self.session.get_status().items():
                table.add_row(key, str(value))
            self.console.print(table)

        elif cmd == '/history':
            entries = self.session.history
            if not entries:
                self.console.print("[yellow]No previous actions attempted[/yellow]")
            for entry in entries:
                self.console.print(entry.render(), highlight=False, markup=False)

        elif cmd == '/workflow':
            if not arg:
                self.console.print("[red]Usage: /workflow <path>[/red]")
                return False
            try:
                workflow = load_workflow(arg)
            except WorkflowLoadError as e:
                self.console.print(f"[red]{e}[/red]")
                return False
            plan = workflow.to_plan()
            self.console.print(f"[green]Running workflow: {plan.name} ({len(plan.steps)} steps)[/green]")
            self._start_background(self.session.start(plan.goal, plan=plan))

        else:
            self.console.print(f"[red]Unknown command: {cmd}[/red]")

        return False
