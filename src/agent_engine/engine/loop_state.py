"""Typed state contract for the agent loop graph."""

from dataclasses import dataclass
from typing import Literal, TypedDict

from agent_engine.engine.actions import AnswerAction, ThoughtAction, ToolCallAction
from agent_engine.models import AgentState, Task

# "claim_lost" ends a run without touching the task: another worker owns it.
OutcomeStatus = Literal["completed", "failed", "cancelled", "paused", "waiting", "claim_lost"]


@dataclass(frozen=True)
class LoopOutcome:
    status: OutcomeStatus
    result: str | None = None
    error: str | None = None
    error_type: str | None = None


class LoopState(TypedDict, total=False):
    task: Task
    worker_id: str
    agent_state: AgentState
    action: AnswerAction | ToolCallAction | ThoughtAction | None
    outcome: LoopOutcome | None
    # Monotonic clock reading when this run started, and active seconds
    # accumulated by earlier runs.
    run_started: float
    base_elapsed: float
