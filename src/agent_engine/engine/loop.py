"""LangGraph agent loop: guard -> think -> act, repeated until an outcome is reached."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, assert_never

from langgraph.graph import END, StateGraph

from agent_engine.engine.actions import AnswerAction, ThoughtAction, ToolCallAction, parse_action
from agent_engine.engine.events import EventBus
from agent_engine.engine.loop_state import LoopOutcome, LoopState
from agent_engine.engine.prompt import build_messages
from agent_engine.engine.state_manager import StateManager
from agent_engine.engine.task_queue import TaskQueue
from agent_engine.errors import (
    ClaimLostError,
    LimitExceededError,
    ModelRequestError,
    ModelUnavailableError,
    TimeoutError,
    UnknownToolError,
)
from agent_engine.llm.base import LanguageModel, LLMResponse
from agent_engine.models import (
    AgentState,
    PendingToolCall,
    Step,
    StepStatus,
    StepType,
    Task,
    ToolResult,
    WorkerEvent,
    utcnow,
)
from agent_engine.tools.registry import ToolRegistry
from agent_engine.tools.schemas import ToolContext

logger = logging.getLogger(__name__)

OBSERVATION_PREVIEW_CHARS = 500


class AgentLoop:
    """Drive one claimed task until it completes, fails, or suspends.

    Every iteration appends exactly one step and snapshots the resulting
    state. Pause and cancel requests are honored at the top of the next
    iteration, so an in-flight model or tool call always finishes first.
    """

    def __init__(
        self,
        *,
        queue: TaskQueue,
        state_manager: StateManager,
        registry: ToolRegistry,
        llm: LanguageModel,
        events: EventBus | None = None,
        context_recent_steps: int = 10,
        llm_max_retries: int = 3,
        llm_backoff_s: float = 1.0,
        llm_temperature: float | None = None,
        llm_max_tokens: int | None = None,
        workspace_root: Path | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.queue = queue
        self.state_manager = state_manager
        self.registry = registry
        self.llm = llm
        self.events = events
        self.context_recent_steps = context_recent_steps
        self.llm_max_retries = llm_max_retries
        self.llm_backoff_s = llm_backoff_s
        self.llm_temperature = llm_temperature
        self.llm_max_tokens = llm_max_tokens
        self.workspace_root = workspace_root
        self._clock = clock
        self._sleep = sleep
        self._graph = self._build_graph()

    def _build_graph(self):
        def _route(state: LoopState) -> str:
            return "stop" if state.get("outcome") is not None else "continue"

        graph = StateGraph(LoopState)

        graph.add_node("resume", self._resume_node)
        graph.add_node("guard", self._guard_node)
        graph.add_node("think", self._think_node)
        graph.add_node("act", self._act_node)

        graph.set_entry_point("resume")
        graph.add_conditional_edges("resume", _route, {"continue": "guard", "stop": END})
        graph.add_conditional_edges("guard", _route, {"continue": "think", "stop": END})
        graph.add_conditional_edges("think", _route, {"continue": "act", "stop": END})
        graph.add_conditional_edges("act", _route, {"continue": "guard", "stop": END})

        return graph.compile()

    def run(self, task: Task, worker_id: str) -> LoopOutcome:
        self.state_manager.discard_uncheckpointed(task.task_id)
        agent_state = self.state_manager.load_state(task.task_id)
        run_started = self._clock()
        remaining = max(task.config.max_iterations - agent_state.iteration, 0)
        logger.info(
            "agent_loop event=start task_id=%s worker_id=%s iteration=%s tool_calls=%s",
            task.task_id,
            worker_id,
            agent_state.iteration,
            agent_state.tool_calls,
        )
        self._publish(task.task_id, "task_started", "running", data={"iteration": agent_state.iteration})

        initial: LoopState = {
            "task": task,
            "worker_id": worker_id,
            "agent_state": agent_state,
            "action": None,
            "outcome": None,
            "run_started": run_started,
            "base_elapsed": agent_state.elapsed_s,
        }
        try:
            result = self._graph.invoke(
                initial,
                config={"recursion_limit": 3 * (remaining + 2) + 10},
            )
            final_state: AgentState = result["agent_state"]
            final_state.elapsed_s = result["base_elapsed"] + (self._clock() - run_started)
            outcome: LoopOutcome = result["outcome"]
            self._finish(task.task_id, worker_id, final_state, outcome)
        except ClaimLostError as exc:
            logger.warning(
                "agent_loop event=claim_lost task_id=%s worker_id=%s",
                task.task_id,
                worker_id,
            )
            return LoopOutcome(status="claim_lost", error=str(exc), error_type=type(exc).__name__)
        return outcome

    # Graph nodes

    def _resume_node(self, state: LoopState) -> dict[str, Any]:
        task = state["task"]
        agent_state = state["agent_state"]
        pending = agent_state.pending_action
        if pending is None:
            return {}

        if task.confirmation != "approved":
            self.state_manager.record_observation(
                agent_state,
                f"Pending call to {pending.tool_name} was dropped without confirmation",
            )
            agent_state.pending_action = None
            return {"agent_state": agent_state}

        self.queue.clear_confirmation(task.task_id, state["worker_id"])
        agent_state.pending_action = None
        if agent_state.tool_calls >= task.config.max_tool_calls:
            self.state_manager.record_observation(
                agent_state,
                f"Confirmed call to {pending.tool_name} was not run: tool call limit reached",
            )
            outcome = _failure(
                LimitExceededError(f"Maximum tool calls ({task.config.max_tool_calls}) reached")
            )
            return {"agent_state": agent_state, "outcome": outcome}

        logger.info(
            "agent_loop event=confirmed_tool task_id=%s tool=%s",
            task.task_id,
            pending.tool_name,
        )
        self._execute_tool(
            task,
            agent_state,
            state["worker_id"],
            tool_name=pending.tool_name,
            tool_args=pending.tool_args,
            thought=f"Confirmed: {pending.tool_name}",
        )
        self.state_manager.snapshot(task.task_id, agent_state, reason="step")
        return {"agent_state": agent_state}

    def _guard_node(self, state: LoopState) -> dict[str, Any]:
        task = self.queue.get_task(state["task"].task_id)
        if task.status != "running" or task.claimed_by != state["worker_id"]:
            raise ClaimLostError(task.task_id, state["worker_id"])
        agent_state = state["agent_state"]
        config = task.config
        agent_state.elapsed_s = state["base_elapsed"] + (self._clock() - state["run_started"])

        outcome: LoopOutcome | None = None
        if task.cancel_requested:
            outcome = LoopOutcome(status="cancelled")
        elif task.pause_requested:
            outcome = LoopOutcome(status="paused")
        elif agent_state.elapsed_s > config.timeout_s:
            outcome = _failure(TimeoutError(f"Task exceeded its timeout of {config.timeout_s:.0f}s"))
        elif agent_state.iteration >= config.max_iterations:
            outcome = _failure(
                LimitExceededError(f"Maximum iterations ({config.max_iterations}) reached")
            )
        elif agent_state.tool_calls >= config.max_tool_calls:
            outcome = _failure(
                LimitExceededError(f"Maximum tool calls ({config.max_tool_calls}) reached")
            )
        elif not self.queue.heartbeat(task.task_id, state["worker_id"]):
            raise ClaimLostError(task.task_id, state["worker_id"])

        return {"task": task, "agent_state": agent_state, "action": None, "outcome": outcome}

    def _think_node(self, state: LoopState) -> dict[str, Any]:
        task = state["task"]
        agent_state = state["agent_state"]
        messages = build_messages(
            task=task,
            state=agent_state,
            steps=self.state_manager.get_steps(task.task_id),
            tools_description=self.registry.describe_for_prompt(),
            recent_steps=self.context_recent_steps,
        )
        self._publish(task.task_id, "thinking", "running", data={"iteration": agent_state.iteration + 1})
        try:
            response = self._invoke_with_retry(task.task_id, state["worker_id"], messages)
        except (ModelUnavailableError, ModelRequestError) as exc:
            logger.warning(
                "agent_loop event=llm_failed task_id=%s error_type=%s error=%s",
                task.task_id,
                type(exc).__name__,
                exc,
            )
            return {"outcome": _failure(exc)}
        return {"action": parse_action(response.content)}

    def _act_node(self, state: LoopState) -> dict[str, Any]:
        task = state["task"]
        worker_id = state["worker_id"]
        agent_state = state["agent_state"]
        action = state["action"]
        agent_state.iteration += 1
        outcome: LoopOutcome | None = None

        if isinstance(action, AnswerAction):
            self._append_step(
                task,
                agent_state,
                worker_id,
                step_type="answer",
                status="succeeded",
                content=action.content,
            )
            outcome = LoopOutcome(status="completed", result=action.content or "Task completed")
        elif isinstance(action, ThoughtAction):
            self._append_step(
                task,
                agent_state,
                worker_id,
                step_type="thought",
                status="succeeded",
                content=action.content,
            )
        elif isinstance(action, ToolCallAction):
            if self._needs_confirmation(task, action.tool_name):
                step = self._append_step(
                    task,
                    agent_state,
                    worker_id,
                    step_type="wait_confirmation",
                    status="awaiting_confirmation",
                    content=action.thought,
                    tool_name=action.tool_name,
                    tool_args=action.tool_args,
                )
                agent_state.pending_action = PendingToolCall(
                    tool_name=action.tool_name,
                    tool_args=action.tool_args,
                    step_id=step.step_id,
                )
                outcome = LoopOutcome(status="waiting")
            else:
                self._execute_tool(
                    task,
                    agent_state,
                    worker_id,
                    tool_name=action.tool_name,
                    tool_args=action.tool_args,
                    thought=action.thought,
                )
        elif action is None:
            raise RuntimeError("act reached without an action")
        else:
            assert_never(action)

        if outcome is None:
            self.state_manager.snapshot(task.task_id, agent_state, reason="step")
        return {"agent_state": agent_state, "action": None, "outcome": outcome}

    # Helpers

    def _needs_confirmation(self, task: Task, tool_name: str) -> bool:
        if not task.config.require_confirmation:
            return False
        spec = self.registry.get(tool_name)
        return spec is not None and spec.requires_confirmation

    def _execute_tool(
        self,
        task: Task,
        agent_state: AgentState,
        worker_id: str,
        *,
        tool_name: str,
        tool_args: dict[str, Any],
        thought: str,
    ) -> Step:
        context = ToolContext(
            owner_id=task.owner_id,
            session_id=task.task_id,
            workspace_root=self.workspace_root,
        )
        started = utcnow()
        try:
            result = self.registry.execute(tool_name, tool_args, context)
        except UnknownToolError as exc:
            result = ToolResult(success=False, error=str(exc))

        agent_state.tool_calls += 1
        for artifact in result.artifacts:
            self.state_manager.add_artifact(agent_state, artifact)
        if result.success:
            observation = f"{tool_name} succeeded: {result.output[:OBSERVATION_PREVIEW_CHARS]}"
        else:
            observation = f"{tool_name} failed: {result.error}"
        self.state_manager.record_observation(agent_state, observation)

        return self._append_step(
            task,
            agent_state,
            worker_id,
            step_type="tool_call",
            status="succeeded" if result.success else "failed",
            content=thought,
            tool_name=tool_name,
            tool_args=tool_args,
            tool_result=result,
            started_at=started,
        )

    def _append_step(
        self,
        task: Task,
        agent_state: AgentState,
        worker_id: str,
        *,
        step_type: StepType,
        status: StepStatus,
        content: str = "",
        tool_name: str | None = None,
        tool_args: dict[str, Any] | None = None,
        tool_result: ToolResult | None = None,
        started_at: datetime | None = None,
    ) -> Step:
        completed_at = utcnow()
        started_at = started_at or completed_at
        step = self.state_manager.append_step(
            task.task_id,
            Step(
                step_id=str(uuid.uuid4()),
                task_id=task.task_id,
                type=step_type,
                content=content,
                status=status,
                tool_name=tool_name,
                tool_args=tool_args,
                tool_result=tool_result,
                started_at=started_at,
                completed_at=None if status == "awaiting_confirmation" else completed_at,
                duration_s=(completed_at - started_at).total_seconds(),
            ),
            worker_id=worker_id,
        )
        agent_state.last_step_id = step.step_id
        agent_state.last_step_sequence = step.sequence
        self._publish(
            task.task_id,
            "step",
            step.status,
            step_id=step.step_id,
            data={"type": step.type, "sequence": step.sequence, "tool_name": step.tool_name},
        )
        return step

    def _invoke_with_retry(
        self,
        task_id: str,
        worker_id: str,
        messages: list[dict[str, str]],
    ) -> LLMResponse:
        attempt = 0
        while True:
            try:
                return self.llm.invoke(
                    messages,
                    temperature=self.llm_temperature,
                    max_tokens=self.llm_max_tokens,
                )
            except ModelUnavailableError as exc:
                if attempt >= self.llm_max_retries:
                    raise
                delay = self.llm_backoff_s * (2**attempt)
                attempt += 1
                logger.info(
                    "agent_loop event=llm_retry task_id=%s attempt=%s delay_s=%.2f error=%s",
                    task_id,
                    attempt,
                    delay,
                    exc,
                )
                if delay > 0:
                    self._sleep(delay)
                if not self.queue.heartbeat(task_id, worker_id):
                    raise ClaimLostError(task_id, worker_id)

    def _finish(self, task_id: str, worker_id: str, agent_state: AgentState, outcome: LoopOutcome) -> None:
        if not self.queue.heartbeat(task_id, worker_id):
            raise ClaimLostError(task_id, worker_id)
        self.state_manager.snapshot(task_id, agent_state, reason=outcome.status)
        if outcome.status == "completed":
            self.queue.complete(task_id, outcome.result or "", worker_id=worker_id)
        elif outcome.status == "failed":
            self.queue.fail(
                task_id,
                outcome.error or "Task failed",
                outcome.error_type,
                worker_id=worker_id,
            )
        elif outcome.status == "cancelled":
            self.queue.mark_cancelled(task_id, worker_id=worker_id)
        else:
            self.queue.suspend(task_id, outcome.status, worker_id=worker_id)
        logger.info(
            "agent_loop event=finish task_id=%s status=%s iteration=%s tool_calls=%s error_type=%s",
            task_id,
            outcome.status,
            agent_state.iteration,
            agent_state.tool_calls,
            outcome.error_type,
        )
        self._publish(
            task_id,
            f"task_{outcome.status}",
            outcome.status,
            step_id=agent_state.last_step_id,
            data={
                "result": outcome.result,
                "error": outcome.error,
                "error_type": outcome.error_type,
                "iteration": agent_state.iteration,
            },
        )

    def _publish(
        self,
        task_id: str,
        event_type: str,
        status: str,
        *,
        step_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        if self.events is None:
            return
        self.events.publish(
            WorkerEvent(type=event_type, task_id=task_id, step_id=step_id, status=status, data=data or {})
        )


def _failure(exc: Exception) -> LoopOutcome:
    return LoopOutcome(status="failed", error=str(exc), error_type=type(exc).__name__)
