"""
提示词模板 - 动态模式和预定义计划模式
"""
from typing import List, Optional

from .types import ExecutionMetrics, PredefinedPlan


HIGH_ERROR_RATE_PERCENT = 30
HIGH_ERROR_MIN_ERRORS = 3


DYNAMIC_PROMPT = """# Browser Task Agent

You complete tasks in a web browser by calling tools, one step at a time.
Every turn you receive the task, a log of what you already did, and the current
browser state. You act only through tool calls.

## How to work
1. Read the task and the execution log. Do not repeat actions that already failed.
2. Find the element you need in the browser state. Elements look like
   `[nodeId] <C/T> <tag> "text" attributes` (C = clickable, T = typeable).
3. Call the tool for the next action, using real nodeIds from the browser state.
4. Several independent actions may go in one turn; they run in the order given.
5. When the task is finished call `done(success=true, message=...)`.
   When it cannot be finished call `done(success=false, message=<reason>)`.
6. If you are blocked by something only a person can do (login, captcha,
   payment confirmation) call `human_input(prompt=...)` and wait.

## Rules
- Never repeat or quote the contents of <browser-state> or <system-reminder>
  tags. They are internal context, not output for the user.
- Keep any text you write short; the user sees it as your reasoning.
- If the same action fails three times, change approach.

## Tools
{tool_descriptions}"""


PREDEFINED_SUFFIX = """

## Predefined plan
This task comes with a fixed plan in the user message. Follow its steps in
order. Adapt how you locate elements, but keep each step's intent and the
order of the steps."""


def generate_dynamic_prompt(tool_descriptions: str = "") -> str:
    """动态模式系统提示词"""
    return DYNAMIC_PROMPT.format(tool_descriptions=tool_descriptions)


def generate_predefined_prompt(tool_descriptions: str = "") -> str:
    """预定义计划模式系统提示词"""
    return generate_dynamic_prompt(tool_descriptions) + PREDEFINED_SUFFIX


def format_plan(plan: PredefinedPlan) -> str:
    steps = "\n".join(f"  {i}. {step}" for i, step in enumerate(plan.steps, 1))
    return f"PREDEFINED PLAN:\n- Agent: {plan.name}\n- Goal: {plan.goal}\n- Steps:\n{steps}"


def build_user_prompt(
    task: str,
    history: str,
    metrics: ExecutionMetrics,
    iteration: int,
    plan: Optional[PredefinedPlan] = None,
    reminders: Optional[List[str]] = None
) -> str:
    """构建用户消息：任务、执行指标、计划、历史和提醒"""
    parts = [
        f"TASK: {task}",
        "EXECUTION METRICS:\n"
        f"- Tool calls: {metrics.tool_calls} ({metrics.errors} errors, "
        f"{metrics.failure_rate:.1f}% failure rate)\n"
        f"- Iterations: {iteration}",
    ]

    if metrics.failure_rate > HIGH_ERROR_RATE_PERCENT and metrics.errors > HIGH_ERROR_MIN_ERRORS:
        parts.append(
            "WARNING: HIGH ERROR RATE - learn from the execution history and change your approach"
        )

    if plan is not None:
        parts.append(format_plan(plan))

    parts.append(f"EXECUTION HISTORY:\n{history}")

    for reminder in reminders or []:
        parts.append(f"<system-reminder>{reminder}</system-reminder>")

    return "\n\n".join(parts)
