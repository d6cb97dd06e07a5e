"""
Nano Browser 主入口 - 支持配置文件
"""
import argparse
import asyncio
import logging
import sys
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from .config_loader import (
    build_agent_config, build_plan_catalog, create_llm_client, load_config
)
from .core.errors import WorkflowLoadError
from .core.session import Session
from .core.types import RunStatus
from .core.workflow import load_workflow
from .cli import NanoBrowserCLI


console = Console()


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """配置日志：终端使用 RichHandler，可选写入文件"""
    handlers: list = [RichHandler(console=console, rich_tracebacks=True, show_path=False)]
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True
    )
    # 第三方库的请求日志太吵
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


def create_session(config) -> Optional[Session]:
    """根据配置创建会话；缺少API密钥时返回None"""
    llm_client = create_llm_client(config)
    if llm_client is None:
        console.print("[red]Error: API key not found![/red]")
        console.print("\nPlease set one of the following:")
        console.print("  1. Environment variable: OPENAI_API_KEY or GEMINI_API_KEY")
        console.print("  2. Add api_key to config.yaml")
        return None

    return Session(
        "default",
        llm_client,
        config=build_agent_config(config),
        plan_catalog=build_plan_catalog(config)
    )


async def run(args) -> int:
    config = load_config(args.config)
    setup_logging(args.log_level or config['logging']['level'], config['logging'].get('file'))

    session = create_session(config)
    if session is None:
        return 1

    cli = NanoBrowserCLI(session, console=console)

    if args.workflow:
        try:
            plan = load_workflow(args.workflow).to_plan()
        except WorkflowLoadError as e:
            console.print(f"[red]{e}[/red]")
            return 1
        outcome = await session.start(args.task or plan.goal, plan=plan)
    elif args.task:
        outcome = await session.start(args.task)
    else:
        await cli.run_interactive()
        return 0

    cli.report(outcome)
    await session.dispose()
    return 0 if outcome.status == RunStatus.COMPLETED and outcome.success else 1


def main():
    """主入口"""
    parser = argparse.ArgumentParser(description='Nano Browser - LLM browser task agent')
    parser.add_argument('-c', '--config', default='config.yaml', help='Config file path')
    parser.add_argument('--task', help='Run a single task and exit')
    parser.add_argument('--workflow', help='Run a recorded workflow (JSON) and exit')
    parser.add_argument('--log-level', help='Logging level (DEBUG, INFO, WARNING, ...)')
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        console.print("\n[green]Goodbye! 👋[/green]")


if __name__ == "__main__":
    main()
