"""
会话管理 - 每个会话一个常驻编排循环

- 同一会话任何时刻最多一个运行中的任务
- 启动新任务前先取消并等待上一次运行结束
- cancel 保留执行历史，reset 清空历史
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Tuple, Union

from .agent_loop import AgentConfig, AgentLoop, EventBus
from .cancellation import CancellationToken
from .context_budget import ContextBudgetManager
from .environment import BrowserEnvironment
from .errors import AgentError
from .human_input import HumanInputGate
from .types import (
    ExecutionMode, HistoryEntry, HumanInputAction, PredefinedPlan, RunOutcome, Task
)
from .workflow import PlanCatalog
from ..tools.base import ToolRegistry

logger = logging.getLogger(__name__)


class Session:
    """单个逻辑会话"""

    def __init__(
        self,
        session_id: str,
        llm_client,
        tool_registry: Optional[ToolRegistry] = None,
        environment: Optional[BrowserEnvironment] = None,
        config: Optional[AgentConfig] = None,
        event_bus: Optional[EventBus] = None,
        plan_catalog: Optional[PlanCatalog] = None,
        gate: Optional[HumanInputGate] = None,
        history: Optional[ContextBudgetManager] = None
    ):
        self.session_id = session_id
        self.loop = AgentLoop(
            llm_client,
            tool_registry=tool_registry,
            environment=environment,
            history=history,
            gate=gate,
            config=config,
            event_bus=event_bus,
            plan_catalog=plan_catalog
        )
        self._current: Optional[asyncio.Task] = None
        self._token: Optional[CancellationToken] = None
        # 首次启动时在运行中的事件循环里创建
        self._start_lock: Optional[asyncio.Lock] = None
        self._disposed = False

    @property
    def event_bus(self) -> EventBus:
        return self.loop.event_bus

    @property
    def is_running(self) -> bool:
        return self._current is not None and not self._current.done()

    @property
    def history(self) -> Tuple[HistoryEntry, ...]:
        """执行历史（只读快照）"""
        return self.loop.history.entries

    async def start(
        self,
        task: Union[str, Task],
        mode: Optional[Union[str, ExecutionMode]] = None,
        plan: Optional[PredefinedPlan] = None
    ) -> RunOutcome:
        """启动一次运行并等待其结束"""
        if self._disposed:
            raise AgentError(f"Session {self.session_id} has been disposed")

        if self._start_lock is None:
            self._start_lock = asyncio.Lock()
        async with self._start_lock:
            if self.is_running:
                logger.info(f"[{self.session_id}] Cancelling in-flight run before starting a new one")
                self.cancel()
                await self._wait_current()

            if plan is not None:
                goal = task.goal if isinstance(task, Task) else task
                task = Task(goal=goal, mode=ExecutionMode.PREDEFINED, source="workflow", plan=plan)

            token = CancellationToken()
            self._token = token
            self._current = asyncio.create_task(self.loop.run(task, mode=mode, cancellation=token))
            current = self._current

        return await current

    def cancel(self) -> bool:
        """取消运行中的任务（保留历史）；没有运行中的任务时返回False"""
        if not self.is_running or self._token is None:
            return False
        logger.info(f"[{self.session_id}] Cancelling current run")
        self._token.cancel()
        return True

    async def reset(self) -> None:
        """取消运行中的任务并清空执行历史"""
        self.cancel()
        await self._wait_current()
        self.loop.history.clear()
        self.loop.gate.clear()
        logger.info(f"[{self.session_id}] Session reset")

    async def dispose(self) -> None:
        """释放会话，之后不能再启动任务"""
        self._disposed = True
        await self.reset()

    def respond_to_human_input(
        self,
        action: Union[str, HumanInputAction],
        request_id: Optional[str] = None
    ) -> bool:
        """
        响应待处理的人工输入请求

        Args:
            action: "done" 或 "abort"
            request_id: 请求ID，省略时使用当前待处理的请求
        """
        if request_id is None:
            pending = self.loop.gate.pending
            if pending is None:
                return False
            request_id = pending.id
        return self.loop.gate.respond(request_id, action)

    def get_status(self) -> Dict[str, Any]:
        execution = self.loop.execution
        pending = self.loop.gate.pending
        return {
            "session_id": self.session_id,
            "state": self.loop.state.value,
            "running": self.is_running,
            "iteration": execution.iteration if execution else 0,
            "tool_calls": execution.metrics.tool_calls if execution else 0,
            "errors": execution.metrics.errors if execution else 0,
            "history_entries": len(self.loop.history),
            "pending_human_input": pending.prompt if pending else None,
        }

    async def _wait_current(self) -> None:
        current = self._current
        if current is None or current.done():
            return
        # 结果由发起 start 的调用方处理，这里只等待结束
        await asyncio.wait({current})


class SessionManager:
    """会话表 - 每个会话ID一个 Session"""

    def __init__(self, llm_client, **session_kwargs):
        self.llm_client = llm_client
        self.session_kwargs = session_kwargs
        self._sessions: Dict[str, Session] = {}

    def get_or_create(self, session_id: str, **overrides) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            kwargs = {**self.session_kwargs, **overrides}
            session = Session(session_id, self.llm_client, **kwargs)
            self._sessions[session_id] = session
            logger.debug(f"Created session {session_id}")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def remove(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.dispose()
        return True

    async def dispose_all(self) -> None:
        for session_id in list(self._sessions):
            await self.remove(session_id)

    def __len__(self) -> int:
        return len(self._sessions)
