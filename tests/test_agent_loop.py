"""
测试用例 - Agent Loop 编排
"""
import pytest

from nano_browser.core.agent_loop import AgentConfig, AgentLoop, EventBus
from nano_browser.core.cancellation import CancellationToken
from nano_browser.core.human_input import HumanInputGate
from nano_browser.core.stream_filter import CORRECTIVE_REMINDER
from nano_browser.core.types import (
    AgentEvent, CallRecord, EventType, ExecutionMode, LoopState, PredefinedPlan, RunStatus, Task
)
from nano_browser.core.workflow import PlanCatalog
from nano_browser.tools.base import ToolRegistry

from conftest import FakeClock, FakeEnvironment, ScriptedModelClient, text, tool_call


def done(success=True, message="ok", index=0):
    return tool_call("done", {"success": success, "message": message}, index=index)


class LoopHarness:
    """组装被测的 AgentLoop"""

    def __init__(self, turns, config=None, plan_catalog=None):
        self.model = ScriptedModelClient(turns)
        self.environment = FakeEnvironment()
        self.clock = FakeClock()
        self.registry = ToolRegistry()
        self.invoked = []
        self.events = []

        async def click(params):
            self.invoked.append(("click", params))
            return {"clicked": params.get("nodeId")}

        async def type_text(params):
            self.invoked.append(("type", params))
            return {"typed": params.get("text")}

        def explode(params):
            self.invoked.append(("explode", params))
            raise RuntimeError("node is detached")

        self.registry.register_function("click", click, "Click an element")
        self.registry.register_function("type", type_text, "Type into an element")
        self.registry.register_function("explode", explode, "Always fails")

        self.bus = EventBus()
        self.bus.on_any(self.events.append)
        self.loop = AgentLoop(
            self.model,
            tool_registry=self.registry,
            environment=self.environment,
            gate=HumanInputGate(clock=self.clock, poll_interval=0.5, timeout=600),
            config=config or AgentConfig(),
            event_bus=self.bus,
            plan_catalog=plan_catalog
        )

    def history(self):
        return self.loop.history.entries

    def event_types(self):
        return [e.type for e in self.events]

    def user_prompt(self, turn):
        return self.model.stream_calls[turn][2].content

    def system_prompt(self, turn):
        return self.model.stream_calls[turn][0].content


class TestAgentLoopScenarios:
    """测试完整的运行场景"""

    @pytest.mark.asyncio
    async def test_click_type_done(self):
        """测试 click → type → done 三轮后完成"""
        h = LoopHarness([
            [tool_call("click", {"nodeId": 5})],
            [tool_call("type", {"nodeId": 5, "text": "a"})],
            [done(True, "ok")],
        ])

        outcome = await h.loop.run("X", mode="dynamic")

        assert outcome.status == RunStatus.COMPLETED
        assert outcome.success
        assert outcome.message == "ok"
        assert [e.tool for e in h.history()] == ["click", "type", "done"]
        assert [e.iteration for e in h.history()] == [1, 2, 3]
        assert h.loop.state == LoopState.COMPLETED

    @pytest.mark.asyncio
    async def test_no_iteration_after_done(self):
        """测试 done 之后不再有下一轮"""
        h = LoopHarness([
            [tool_call("click", {"nodeId": 1})],
            [done()],
            [tool_call("click", {"nodeId": 2})],
        ])

        outcome = await h.loop.run("X")

        assert outcome.iterations == 2
        assert len(h.model.stream_calls) == 2
        assert h.invoked == [("click", {"nodeId": 1})]

    @pytest.mark.asyncio
    async def test_done_with_failure(self):
        h = LoopHarness([[done(False, "Site requires an account")]])

        outcome = await h.loop.run("X")

        assert outcome.status == RunStatus.COMPLETED
        assert not outcome.success
        assert outcome.message == "Site requires an account"

    @pytest.mark.asyncio
    async def test_stall_after_three_empty_turns(self):
        """测试模型一直不调用工具时恰好3轮后失败"""
        h = LoopHarness([[text("thinking")] for _ in range(10)])

        outcome = await h.loop.run("X")

        assert outcome.status == RunStatus.FAILED
        assert outcome.reason == "no_progress"
        assert outcome.iterations == 3
        assert len(h.model.stream_calls) == 3
        assert "No progress" in outcome.message

    @pytest.mark.asyncio
    async def test_empty_turn_counter_resets(self):
        h = LoopHarness([
            [], [],
            [tool_call("click", {"nodeId": 1})],
            [], [],
            [done()],
        ])

        outcome = await h.loop.run("X")

        assert outcome.status == RunStatus.COMPLETED
        assert outcome.iterations == 6

    @pytest.mark.asyncio
    async def test_iteration_cap(self):
        """测试迭代上限"""
        h = LoopHarness(
            [[tool_call("click", {"nodeId": i})] for i in range(5)],
            config=AgentConfig(max_iterations=2)
        )

        outcome = await h.loop.run("X")

        assert outcome.status == RunStatus.ITERATION_LIMIT_EXCEEDED
        assert outcome.iterations == 2
        assert len(h.model.stream_calls) == 2
        assert EventType.ERROR in h.event_types()

    @pytest.mark.asyncio
    async def test_one_result_per_call_when_handler_throws(self):
        """测试一个处理器抛异常时每个调用仍各有一个结果"""
        h = LoopHarness([
            [
                tool_call("click", {"nodeId": 1}, index=0),
                tool_call("explode", {}, index=1),
                tool_call("unknown_tool", {}, index=2),
                tool_call("click", {"nodeId": 2}, index=3),
            ],
            [done()],
        ])

        await h.loop.run("X")

        first = [e for e in h.history() if e.iteration == 1]
        assert [e.tool for e in first] == ["click", "explode", "unknown_tool", "click"]
        assert '"ok": false' in first[1].result
        assert '"ok": false' in first[2].result
        assert h.invoked[-1] == ("click", {"nodeId": 2})

    @pytest.mark.asyncio
    async def test_done_completes_after_current_batch(self):
        """测试同一批次中 done 之后的调用仍然执行"""
        h = LoopHarness([[done(index=0), tool_call("click", {"nodeId": 3}, index=1)]])

        outcome = await h.loop.run("X")

        assert outcome.completed
        assert [e.tool for e in h.history()] == ["done", "click"]


class TestCancellation:
    """测试取消"""

    @pytest.mark.asyncio
    async def test_cancel_mid_batch_skips_remaining_calls(self):
        """测试批次中途取消后不再执行新的工具调用"""
        token = CancellationToken()
        h = LoopHarness([[
            tool_call("click", {"nodeId": 1}, index=0),
            tool_call("click", {"nodeId": 2}, index=1),
            tool_call("type", {"nodeId": 2, "text": "a"}, index=2),
        ]])

        async def click_and_cancel(params):
            h.invoked.append(("click", params))
            token.cancel()
            return "clicked"

        h.registry.register_function("click", click_and_cancel)

        outcome = await h.loop.run("X", cancellation=token)

        assert outcome.status == RunStatus.CANCELLED
        assert h.invoked == [("click", {"nodeId": 1})]
        # 每个调用都有结果，剩余的记为取消
        assert len(h.history()) == 3
        assert "Cancelled before execution" in h.history()[2].result
        assert h.loop.state == LoopState.CANCELLED
        assert EventType.ERROR not in h.event_types()
        assert EventType.CANCELLED in h.event_types()

    @pytest.mark.asyncio
    async def test_cancel_before_first_iteration(self):
        token = CancellationToken()
        token.cancel()
        h = LoopHarness([[done()]])

        outcome = await h.loop.run("X", cancellation=token)

        assert outcome.status == RunStatus.CANCELLED
        assert outcome.iterations == 0
        assert h.model.stream_calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_model_stream(self):
        token = CancellationToken()

        async def cancel():
            token.cancel()

        h = LoopHarness([[text("working"), cancel, tool_call("click", {"nodeId": 1})]])

        outcome = await h.loop.run("X", cancellation=token)

        assert outcome.status == RunStatus.CANCELLED
        assert h.invoked == []


class TestHumanInput:
    """测试人工输入挂起与恢复"""

    @pytest.mark.asyncio
    async def test_resume_after_done(self):
        h = LoopHarness([
            [tool_call("human_input", {"prompt": "Please log in"})],
            [done()],
        ])
        h.bus.on(
            EventType.HUMAN_INPUT_REQUEST,
            lambda e: h.loop.gate.respond(e.data["request_id"], "done")
        )

        outcome = await h.loop.run("X")

        assert outcome.completed
        assert outcome.iterations == 2
        assert EventType.HUMAN_INPUT_RESPONSE in h.event_types()

    @pytest.mark.asyncio
    async def test_abort(self):
        h = LoopHarness([
            [tool_call("human_input", {"prompt": "Confirm payment"})],
            [done()],
        ])
        h.bus.on(
            EventType.HUMAN_INPUT_REQUEST,
            lambda e: h.loop.gate.respond(e.data["request_id"], "abort")
        )

        outcome = await h.loop.run("X")

        assert outcome.status == RunStatus.CANCELLED
        assert outcome.reason == "aborted_by_human"
        assert len(h.model.stream_calls) == 1

    @pytest.mark.asyncio
    async def test_timeout_treated_as_abort(self):
        """测试无人响应时超时并停止运行"""
        h = LoopHarness([
            [tool_call("human_input", {"prompt": "Solve captcha"})],
            [done()],
        ])

        outcome = await h.loop.run("X")

        assert outcome.status == RunStatus.CANCELLED
        assert outcome.reason == "human_input_timeout"
        assert h.clock.time >= 600
        # 历史只保留请求本身
        assert [e.tool for e in h.history()] == ["human_input"]
        errors = [e for e in h.events if e.type == EventType.ERROR]
        assert len(errors) == 1
        assert "timed out" in errors[0].data["error"]
        assert h.loop.gate.pending is None

    @pytest.mark.asyncio
    async def test_request_on_last_iteration_hits_limit(self):
        """测试最后一轮请求人工输入时不挂起，直接达到迭代上限"""
        h = LoopHarness(
            [[tool_call("human_input", {"prompt": "Solve captcha"})]],
            config=AgentConfig(max_iterations=1)
        )

        outcome = await h.loop.run("X")

        assert outcome.status == RunStatus.ITERATION_LIMIT_EXCEEDED
        assert outcome.iterations == 1
        assert h.clock.sleeps == 0
        assert EventType.HUMAN_INPUT_REQUEST not in h.event_types()
        assert h.loop.gate.pending is None


class TestModelCalls:
    """测试模型调用的重试与输出过滤"""

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        h = LoopHarness([RuntimeError("502 Bad Gateway"), [done()]])

        outcome = await h.loop.run("X")

        assert outcome.completed
        assert outcome.iterations == 1
        assert len(h.model.stream_calls) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        h = LoopHarness([RuntimeError("down")] * 3 + [[done()]])

        outcome = await h.loop.run("X")

        assert outcome.status == RunStatus.FAILED
        assert outcome.reason == "model_error"
        assert len(h.model.stream_calls) == 3

    @pytest.mark.asyncio
    async def test_leak_queues_corrective_reminder(self):
        """测试泄漏内部标签后下一轮注入纠正提醒"""
        h = LoopHarness([
            [text("<browser-state>[1] button"), tool_call("click", {"nodeId": 1})],
            [done()],
        ])

        await h.loop.run("X")

        assert "<system-reminder>" not in h.user_prompt(0)
        assert f"<system-reminder>{CORRECTIVE_REMINDER}</system-reminder>" in h.user_prompt(1)
        assert h.loop.execution.metrics.errors == 1
        messages = [e for e in h.events if e.type == EventType.MESSAGE]
        assert messages == []

    @pytest.mark.asyncio
    async def test_assistant_text_published(self):
        h = LoopHarness([[text("Clicking submit"), done()]])

        await h.loop.run("X")

        messages = [e.data["content"] for e in h.events if e.type == EventType.MESSAGE]
        assert messages == ["Clicking submit"]


class TestPrompts:
    """测试提示词与上下文组装"""

    @pytest.mark.asyncio
    async def test_prompt_layout(self):
        h = LoopHarness([[tool_call("click", {"nodeId": 5})], [done()]])

        await h.loop.run("Find the submit button")

        messages = h.model.stream_calls[1]
        assert [m.role for m in messages] == ["system", "user", "user"]
        assert "- click(): Click an element" in messages[0].content
        assert messages[1].content.startswith("<browser-state>")
        assert "TASK: Find the submit button" in messages[2].content
        assert "Iteration 1: Tool Call: click" in messages[2].content
        assert "No previous actions attempted" in h.user_prompt(0)

    @pytest.mark.asyncio
    async def test_snapshot_degrades_to_reduced(self):
        h = LoopHarness([[done()]], config=AgentConfig(max_context_tokens=6000))
        h.environment.full = "x" * 100000
        h.environment.reduced = "[1] <C> <button>"

        await h.loop.run("X")

        assert [r[1] for r in h.environment.requests] == [False, True]
        assert "[1] <C> <button>" in h.model.stream_calls[0][1].content

    @pytest.mark.asyncio
    async def test_limited_context_notice(self):
        h = LoopHarness([[done()]], config=AgentConfig(max_context_tokens=16000))

        await h.loop.run("X")

        notices = [e for e in h.events if e.type == EventType.NOTICE]
        assert len(notices) == 1
        assert "limited context" in notices[0].data["message"]

    @pytest.mark.asyncio
    async def test_plan_catalog_lookup(self):
        """测试循环开始前匹配预定义计划"""
        catalog = PlanCatalog()
        catalog.register(
            "star the repo",
            PredefinedPlan(name="GitHub Star", goal="Star it", steps=("Open repo", "Click Star")),
            task="Star the nano-browser repository"
        )
        h = LoopHarness([[done()]], plan_catalog=catalog)

        await h.loop.run("  Star the Repo ")

        assert "## Predefined plan" in h.system_prompt(0)
        prompt = h.user_prompt(0)
        assert "TASK: Star the nano-browser repository" in prompt
        assert "1. Open repo" in prompt
        started = [e for e in h.events if e.type == EventType.STARTED][0]
        assert started.data["mode"] == "predefined"

    def test_predefined_without_plan_runs_dynamic(self):
        h = LoopHarness([])
        task = h.loop.resolve_task(Task(goal="X", mode=ExecutionMode.PREDEFINED))
        assert task.mode == ExecutionMode.DYNAMIC

    @pytest.mark.asyncio
    async def test_high_error_warning(self):
        h = LoopHarness([
            [tool_call("explode", {}, index=i) for i in range(4)],
            [done()],
        ])

        await h.loop.run("X")

        assert "HIGH ERROR RATE" not in h.user_prompt(0)
        assert "HIGH ERROR RATE" in h.user_prompt(1)


class TestEventBus:
    """测试事件总线"""

    @pytest.mark.asyncio
    async def test_handler_failure_is_isolated(self):
        h = LoopHarness([[done()]])

        def broken(event):
            raise ValueError("ui crashed")

        h.bus.on(EventType.TOOL_RESULT, broken)

        outcome = await h.loop.run("X")

        assert outcome.completed

    @pytest.mark.asyncio
    async def test_off(self):
        bus = EventBus()
        seen = []
        bus.on("x", seen.append)
        bus.off("x", seen.append)

        await bus.emit(AgentEvent(type="x", data={}))

        assert seen == []


class TestRunState:
    """测试跨运行状态"""

    @pytest.mark.asyncio
    async def test_history_persists_and_state_is_fresh(self):
        h = LoopHarness([
            [tool_call("click", {"nodeId": 1})], [done()],
            [done()],
        ])

        await h.loop.run("first")
        first_execution = h.loop.execution
        await h.loop.run("second")

        assert h.loop.execution is not first_execution
        assert h.loop.execution.iteration == 1
        assert len(h.history()) == 3
        assert all(isinstance(e, CallRecord) for e in h.history())
