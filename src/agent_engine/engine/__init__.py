"""Task engine: queue, state manager, agent loop, worker and service façade."""

from agent_engine.engine.actions import (
    AgentAction,
    AnswerAction,
    ThoughtAction,
    ToolCallAction,
    parse_action,
)
from agent_engine.engine.events import EventBus, Subscription
from agent_engine.engine.loop import AgentLoop
from agent_engine.engine.loop_state import LoopOutcome
from agent_engine.engine.service import AgentEngine, build_engine, build_storage
from agent_engine.engine.state_manager import StateManager
from agent_engine.engine.task_queue import TaskQueue
from agent_engine.engine.worker import Worker

__all__ = [
    "AgentAction",
    "AgentEngine",
    "AgentLoop",
    "AnswerAction",
    "EventBus",
    "LoopOutcome",
    "StateManager",
    "Subscription",
    "TaskQueue",
    "ThoughtAction",
    "ToolCallAction",
    "Worker",
    "build_engine",
    "build_storage",
    "parse_action",
]
