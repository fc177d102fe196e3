"""Prompt construction from the goal, step history and tool catalog."""

from __future__ import annotations

import json
from collections import Counter

from agent_engine.llm.base import ChatMessage
from agent_engine.models import AgentState, Step, Task

STEP_PREVIEW_CHARS = 500

RESPONSE_FORMAT_HELP = """Respond with a single JSON object and nothing else:
{"thought": "short reasoning", "action": {"type": "tool_call", "tool_name": "<tool>", "tool_args": {...}}}
{"thought": "short reasoning", "action": {"type": "answer", "content": "<final answer>"}}
{"action": {"type": "thought", "content": "<intermediate reasoning>"}}
Use "answer" only once the goal is fully achieved."""


def build_messages(
    *,
    task: Task,
    state: AgentState,
    steps: list[Step],
    tools_description: str,
    recent_steps: int = 10,
) -> list[ChatMessage]:
    older, recent = _split_history(steps, recent_steps)
    system_prompt = "\n\n".join(
        [
            "You are an autonomous agent working toward a goal through tool calls.",
            f"## Goal\n{task.goal}",
            "## Progress\n"
            f"- Iteration: {state.iteration} of {task.config.max_iterations}\n"
            f"- Tool calls: {state.tool_calls} of {task.config.max_tool_calls}",
            f"## Available tools\n{tools_description or '(no tools registered)'}",
            f"## Response format\n{RESPONSE_FORMAT_HELP}",
        ]
    )

    history_lines: list[str] = []
    if older:
        history_lines.append(summarize_steps(older))
    history_lines.extend(render_step(step) for step in recent)
    history = "\n".join(history_lines) if history_lines else "No steps taken yet."

    user_prompt = f"## History\n{history}\n\nContinue toward the goal: {task.goal}"
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


def _split_history(steps: list[Step], recent_steps: int) -> tuple[list[Step], list[Step]]:
    if recent_steps <= 0:
        return list(steps), []
    if len(steps) <= recent_steps:
        return [], list(steps)
    return list(steps[:-recent_steps]), list(steps[-recent_steps:])


def summarize_steps(steps: list[Step]) -> str:
    counts = Counter(step.type for step in steps)
    failed = sum(1 for step in steps if step.type == "tool_call" and step.status == "failed")
    tools = sorted({step.tool_name for step in steps if step.tool_name})
    parts = [
        f"Earlier: {len(steps)} steps",
        f"{counts.get('tool_call', 0)} tool calls ({failed} failed)",
        f"{counts.get('thought', 0)} thoughts",
    ]
    summary = ", ".join(parts) + "."
    if tools:
        summary += f" Tools used: {', '.join(tools)}."
    return summary


def render_step(step: Step) -> str:
    prefix = f"[{step.sequence}] {step.type}"
    if step.type in {"tool_call", "wait_confirmation"}:
        args = json.dumps(step.tool_args or {}, ensure_ascii=True, sort_keys=True)
        call = f"{step.tool_name}({_preview(args)})"
        if step.type == "wait_confirmation":
            return f"{prefix}: {call} awaiting confirmation"
        result = step.tool_result
        if result is None:
            return f"{prefix}: {call}"
        if result.success:
            return f"{prefix}: {call} -> ok: {_preview(result.output)}"
        return f"{prefix}: {call} -> failed: {_preview(result.error or '')}"
    return f"{prefix}: {_preview(step.content)}"


def _preview(text: str) -> str:
    compacted = " ".join(text.split())
    if len(compacted) <= STEP_PREVIEW_CHARS:
        return compacted
    return compacted[: STEP_PREVIEW_CHARS - 3].rstrip() + "..."
