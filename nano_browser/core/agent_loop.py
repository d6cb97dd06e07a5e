"""
Agent Loop - 任务执行编排循环

每轮迭代:
1. 检查取消令牌
2. 渲染系统提示词和预算内的执行历史
3. 获取符合预算的浏览器状态快照
4. 通过流式过滤器调用模型
5. 按顺序执行返回的工具调用，每个调用都记录结果
6. done 则结束；需要人工输入则挂起等待；否则继续
"""
import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Optional, Sequence, Union

from .types import (
    AgentEvent, EventHandler, EventType, ExecutionMode, ExecutionState,
    HumanInputOutcome, LoopState, Message, RunOutcome, RunStatus, Task,
    ToolCallRequest
)
from .cancellation import CancellationToken
from .context_budget import (
    ContextBudgetManager, HistorySummarizer, compute_budget, estimate_tokens
)
from .environment import BrowserEnvironment, NullEnvironment, fit_snapshot, wrap_snapshot
from .errors import ModelCallError, RunCancelledError, StallError
from .human_input import HumanInputGate
from .prompts import build_user_prompt, generate_dynamic_prompt, generate_predefined_prompt
from .stream_filter import CORRECTIVE_REMINDER, ModelResponse, StreamingResponseFilter
from .workflow import PlanCatalog
from ..tools.base import ToolRegistry, ToolResult
from ..tools.control import register_control_tools

logger = logging.getLogger(__name__)


@dataclass
class AgentConfig:
    """Agent配置"""
    system_prompt_extra: str = ""
    max_iterations: int = 30
    max_consecutive_no_tool_calls: int = 3
    max_model_retries: int = 3
    temperature: float = 0.2
    max_output_tokens: int = 4096
    max_context_tokens: int = 128_000
    history_budget_ratio: float = 0.7
    snapshot_budget_ratio: float = 0.7
    recent_history_fallback: int = 5
    limited_context_threshold: int = 32_000
    human_input_timeout: float = 600.0
    human_input_poll_interval: float = 0.5

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AgentConfig":
        """从配置字典创建，忽略未知字段"""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


class EventBus:
    """事件总线 - 解耦组件通信"""

    ANY = "*"

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}

    def on(self, event_type: str, handler: EventHandler) -> None:
        """订阅事件"""
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)

    def on_any(self, handler: EventHandler) -> None:
        """订阅全部事件"""
        self.on(self.ANY, handler)

    def off(self, event_type: str, handler: EventHandler) -> None:
        """取消订阅"""
        if event_type in self._handlers and handler in self._handlers[event_type]:
            self._handlers[event_type].remove(handler)

    async def emit(self, event: AgentEvent) -> None:
        """发布事件，处理器的异常不会影响发布者"""
        handlers = self._handlers.get(event.type, []) + self._handlers.get(self.ANY, [])
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in event handler for {event.type}: {e}")


class AgentLoop:
    """
    Agent主循环

    一个实例对应一个会话；每次 run 创建新的 ExecutionState，
    执行历史（ContextBudgetManager）跨运行保留。
    """

    def __init__(
        self,
        llm_client,
        tool_registry: Optional[ToolRegistry] = None,
        environment: Optional[BrowserEnvironment] = None,
        history: Optional[ContextBudgetManager] = None,
        gate: Optional[HumanInputGate] = None,
        config: Optional[AgentConfig] = None,
        event_bus: Optional[EventBus] = None,
        plan_catalog: Optional[PlanCatalog] = None,
        response_filter: Optional[StreamingResponseFilter] = None
    ):
        self.llm = llm_client
        self.config = config or AgentConfig()

        self.tool_registry = tool_registry if tool_registry is not None else ToolRegistry()
        if "done" not in self.tool_registry:
            register_control_tools(self.tool_registry)

        self.environment = environment or NullEnvironment()
        self.history = history if history is not None else ContextBudgetManager(
            HistorySummarizer(llm_client),
            recent_fallback=self.config.recent_history_fallback
        )
        self.gate = gate or HumanInputGate(
            poll_interval=self.config.human_input_poll_interval,
            timeout=self.config.human_input_timeout
        )
        self.event_bus = event_bus or EventBus()
        self.plan_catalog = plan_catalog
        self.response_filter = response_filter or StreamingResponseFilter()

        self.state = LoopState.IDLE
        self.execution: Optional[ExecutionState] = None

    @property
    def is_running(self) -> bool:
        return self.state in (
            LoopState.INITIALIZING, LoopState.ITERATING, LoopState.WAITING_HUMAN_INPUT
        )

    async def _emit(self, event_type: str, **data) -> None:
        await self.event_bus.emit(AgentEvent(type=event_type, data=data))

    async def _set_state(self, state: LoopState) -> None:
        if self.state == state:
            return
        self.state = state
        await self._emit(EventType.STATE_CHANGE, state=state.value)

    def resolve_task(self, task: Union[str, Task], mode: Optional[Union[str, ExecutionMode]] = None) -> Task:
        """把输入规范化为 Task，并在循环开始前执行计划查找"""
        if isinstance(task, str):
            task = Task(goal=task)
        if mode is not None:
            task = replace(task, mode=ExecutionMode(mode))

        if task.plan is None and self.plan_catalog is not None:
            found = self.plan_catalog.lookup(task.goal)
            if found:
                goal, plan = found
                logger.info(f"Predefined plan matched: {plan.name}")
                task = Task(goal=goal, mode=ExecutionMode.PREDEFINED, source=task.source or "plan_catalog", plan=plan)

        if task.mode == ExecutionMode.PREDEFINED and task.plan is None:
            logger.warning("Predefined mode requested without a plan, running dynamically")
            task = replace(task, mode=ExecutionMode.DYNAMIC)
        elif task.plan is not None and task.mode != ExecutionMode.PREDEFINED:
            task = replace(task, mode=ExecutionMode.PREDEFINED)
        return task

    async def run(
        self,
        task: Union[str, Task],
        mode: Optional[Union[str, ExecutionMode]] = None,
        cancellation: Optional[CancellationToken] = None
    ) -> RunOutcome:
        """
        运行一次任务

        Returns:
            RunOutcome: completed / cancelled / failed / iteration_limit_exceeded
        """
        if self.is_running:
            await self._emit(EventType.ERROR, error="Agent is already running")
            return RunOutcome(status=RunStatus.FAILED, reason="already_running",
                              message="Agent is already running")

        task = self.resolve_task(task, mode)
        execution = ExecutionState(cancellation=cancellation or CancellationToken())
        self.execution = execution
        execution.metrics.start_time = time.time()

        await self._set_state(LoopState.INITIALIZING)
        await self._emit(EventType.STARTED, task=task.goal, mode=task.mode.value,
                         plan=task.plan.name if task.plan else None)
        logger.info(f"Starting {task.mode.value} execution: {task.goal}")

        if self.config.max_context_tokens < self.config.limited_context_threshold:
            await self._emit(
                EventType.NOTICE,
                message=f"Running with limited context ({self.config.max_context_tokens // 1000}k tokens). "
                        "The agent might struggle with complex workflows."
            )

        try:
            outcome = await self._iterate(task, execution)
        except RunCancelledError as e:
            outcome = RunOutcome(status=RunStatus.CANCELLED, reason=e.reason,
                                 message=str(e), iterations=execution.iteration)
            logger.info(f"Execution cancelled: {e.reason}")
            await self._set_state(LoopState.CANCELLED)
            await self._emit(EventType.CANCELLED, reason=e.reason)
        except asyncio.CancelledError:
            execution.cancellation.cancel("Task cancelled")
            await self._set_state(LoopState.CANCELLED)
            raise
        except StallError as e:
            logger.error(f"Execution stalled: {e}")
            outcome = await self._fail(execution, "no_progress", e)
        except ModelCallError as e:
            logger.error(f"Execution failed: {e}")
            outcome = await self._fail(execution, "model_error", e)
        except Exception as e:
            logger.exception(f"Execution error: {e}")
            outcome = await self._fail(execution, "error", e)
        finally:
            execution.metrics.end_time = time.time()
            self._log_metrics(execution)

        return outcome

    async def _fail(self, execution: ExecutionState, reason: str, error: Exception) -> RunOutcome:
        await self._set_state(LoopState.FAILED)
        await self._emit(EventType.ERROR, error=str(error), reason=reason)
        return RunOutcome(status=RunStatus.FAILED, reason=reason,
                          message=str(error), iterations=execution.iteration)

    async def _iterate(self, task: Task, execution: ExecutionState) -> RunOutcome:
        max_iterations = self.config.max_iterations
        await self._emit(EventType.THINKING, message="Starting task execution...")

        while execution.iteration < max_iterations:
            execution.cancellation.raise_if_cancelled()
            execution.iteration += 1
            await self._set_state(LoopState.ITERATING)
            logger.info(f"Iteration {execution.iteration}/{max_iterations}")

            await self._run_iteration(task, execution)

            if execution.done_called:
                await self._set_state(LoopState.COMPLETED)
                message = execution.done_message or "Task completed"
                await self._emit(EventType.COMPLETION, success=execution.done_success,
                                 message=message, iterations=execution.iteration)
                return RunOutcome(status=RunStatus.COMPLETED, message=message,
                                  success=execution.done_success, iterations=execution.iteration)

            if execution.requires_human_input:
                if execution.iteration >= max_iterations:
                    # 之后没有迭代可以恢复，不再挂起等待
                    logger.info("Human input requested on the last iteration, not waiting")
                    execution.requires_human_input = False
                    execution.human_input_prompt = ""
                    continue
                await self._handle_human_input(execution)

        message = f"Task did not complete within {max_iterations} iterations"
        logger.warning(message)
        await self._set_state(LoopState.FAILED)
        await self._emit(EventType.ERROR, error=message, reason="iteration_limit")
        return RunOutcome(status=RunStatus.ITERATION_LIMIT_EXCEEDED, reason="iteration_limit",
                          message=message, iterations=execution.iteration)

    async def _run_iteration(self, task: Task, execution: ExecutionState) -> None:
        cfg = self.config
        execution.metrics.observations += 1

        tool_descriptions = self.tool_registry.describe_tools()
        if task.plan is not None:
            system_prompt = generate_predefined_prompt(tool_descriptions)
        else:
            system_prompt = generate_dynamic_prompt(tool_descriptions)
        if cfg.system_prompt_extra:
            system_prompt += "\n\n" + cfg.system_prompt_extra
        system_tokens = estimate_tokens(system_prompt)

        history_budget = compute_budget(cfg.max_context_tokens, system_tokens, cfg.history_budget_ratio)
        history_text = await self.history.get_context(history_budget, task.goal)

        user_prompt = build_user_prompt(
            task.goal,
            history_text,
            execution.metrics,
            execution.iteration,
            plan=task.plan,
            reminders=self.history.pop_reminders()
        )
        user_tokens = estimate_tokens(user_prompt)

        snapshot_budget = compute_budget(
            cfg.max_context_tokens, system_tokens + user_tokens, cfg.snapshot_budget_ratio
        )
        snapshot = await fit_snapshot(self.environment, snapshot_budget)

        messages = [
            Message(role="system", content=system_prompt),
            Message(role="user", content=wrap_snapshot(snapshot)),
            Message(role="user", content=user_prompt),
        ]

        response = await self._invoke_model(messages, execution)

        if not response.tool_calls:
            execution.consecutive_no_tool_calls += 1
            logger.warning(
                f"No tool calls in iteration {execution.iteration} "
                f"({execution.consecutive_no_tool_calls}/{cfg.max_consecutive_no_tool_calls})"
            )
            if execution.consecutive_no_tool_calls >= cfg.max_consecutive_no_tool_calls:
                raise StallError(execution.consecutive_no_tool_calls)
            return

        execution.consecutive_no_tool_calls = 0
        await self._dispatch_batch(response.tool_calls, execution)

    async def _invoke_model(self, messages: List[Message], execution: ExecutionState) -> ModelResponse:
        """调用模型（有限次重试，同一提示词）"""
        attempts = self.config.max_model_retries
        tools = self.tool_registry.get_all_schemas()
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            execution.cancellation.raise_if_cancelled()
            message_id = f"msg_assistant_{uuid.uuid4().hex[:8]}"

            async def on_text(content: str) -> None:
                await self._emit(EventType.THINKING, message=content, message_id=message_id)

            try:
                stream = self.llm.stream(
                    messages,
                    tools=tools,
                    temperature=self.config.temperature,
                    max_tokens=self.config.max_output_tokens
                )
                response = await self.response_filter.consume(
                    stream, on_text=on_text, cancellation=execution.cancellation
                )
            except (RunCancelledError, asyncio.CancelledError):
                raise
            except Exception as e:
                last_error = e
                logger.warning(f"Model call failed (attempt {attempt}/{attempts}): {e}")
                continue

            if response.leaked:
                self.history.add_reminder(CORRECTIVE_REMINDER)
                execution.metrics.errors += 1
            elif response.text.strip():
                await self._emit(EventType.MESSAGE, role="assistant",
                                 content=response.text, message_id=message_id)
            return response

        raise ModelCallError(f"Model call failed after {attempts} attempts: {last_error}", attempts=attempts)

    async def _dispatch_batch(self, calls: Sequence[ToolCallRequest], execution: ExecutionState) -> None:
        """按收到的顺序逐个执行工具调用，每个调用都记录一个结果"""
        await self._emit(
            EventType.TOOL_CALL,
            iteration=execution.iteration,
            calls=[{"id": c.id, "name": c.name, "arguments": c.arguments} for c in calls]
        )

        for index, request in enumerate(calls):
            if execution.cancellation.cancelled:
                for skipped in calls[index:]:
                    await self._record(
                        execution, skipped,
                        ToolResult.failure(skipped.id, "Cancelled before execution"),
                        count=False
                    )
                execution.cancellation.raise_if_cancelled()

            logger.debug(f"Calling tool {request.name} with {request.arguments}")
            result = await self.tool_registry.dispatch(request, execution.cancellation.event)
            await self._record(execution, request, result)

            if not result.ok:
                continue
            if result.done:
                execution.done_called = True
                output = result.output if isinstance(result.output, dict) else {}
                execution.done_success = bool(output.get("success", True))
                execution.done_message = str(output.get("message", ""))
            if result.requires_human_input:
                execution.requires_human_input = True
                execution.human_input_prompt = result.metadata.get("prompt", "")

    async def _record(
        self,
        execution: ExecutionState,
        request: ToolCallRequest,
        result: ToolResult,
        count: bool = True
    ) -> None:
        self.history.record_call(execution.iteration, request.name, request.arguments, result.to_json())
        if count:
            execution.metrics.record_tool_call(request.name, result.ok)
        await self._emit(
            EventType.TOOL_RESULT,
            call_id=request.id,
            name=request.name,
            ok=result.ok,
            output=result.output,
            error=result.error
        )

    async def _handle_human_input(self, execution: ExecutionState) -> None:
        """挂起等待人工输入，然后恢复迭代"""
        prompt = execution.human_input_prompt
        request_id = self.gate.request(prompt)
        await self._set_state(LoopState.WAITING_HUMAN_INPUT)
        await self._emit(EventType.HUMAN_INPUT_REQUEST, request_id=request_id, prompt=prompt)

        outcome = await self.gate.wait(request_id, execution.cancellation)
        execution.requires_human_input = False
        execution.human_input_prompt = ""
        await self._emit(EventType.HUMAN_INPUT_RESPONSE, request_id=request_id, outcome=outcome.value)

        if outcome == HumanInputOutcome.CANCELLED:
            execution.cancellation.raise_if_cancelled()
            raise RunCancelledError("cancelled")
        if outcome == HumanInputOutcome.TIMEOUT:
            minutes = self.gate.timeout / 60
            await self._emit(
                EventType.ERROR,
                error=f"Human input timed out after {minutes:g} minutes",
                reason="human_input_timeout"
            )
            raise RunCancelledError("human_input_timeout")
        if outcome == HumanInputOutcome.ABORT:
            await self._emit(EventType.MESSAGE, role="assistant", content="Task aborted by human")
            raise RunCancelledError("aborted_by_human")

        await self._emit(EventType.THINKING, message="Human completed manual action. Continuing...")

    def _log_metrics(self, execution: ExecutionState) -> None:
        metrics = execution.metrics
        success_rate = 100 - metrics.failure_rate if metrics.tool_calls else 0.0
        logger.info(
            f"Execution complete: {execution.iteration} iterations, {metrics.tool_calls} tool calls, "
            f"{metrics.observations} observations, {metrics.errors} errors, "
            f"{success_rate:.1f}% success rate, {metrics.duration * 1000:.0f}ms duration"
        )
        if metrics.tool_calls:
            logger.info(f"Tool frequency: {metrics.tool_frequency}")
