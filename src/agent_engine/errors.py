"""Error taxonomy for the agent task engine."""

from __future__ import annotations

import builtins


class AgentEngineError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(AgentEngineError):
    """Bad goal, config or priority; rejected before anything is stored."""


class InvalidTransitionError(AgentEngineError):
    def __init__(self, task_id: str, current: str, operation: str) -> None:
        super().__init__(f"Cannot {operation} task {task_id} while it is {current}")
        self.task_id = task_id
        self.current = current
        self.operation = operation


class UnknownTaskError(AgentEngineError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} does not exist")
        self.task_id = task_id


class AccessDeniedError(AgentEngineError):
    """Owner identity does not match the task owner."""


class CheckpointNotFoundError(AgentEngineError):
    pass


class UnknownToolError(AgentEngineError):
    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class DuplicateToolError(AgentEngineError):
    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool already registered: {tool_name}")
        self.tool_name = tool_name


class ToolExecutionError(AgentEngineError):
    """Raised by tool executors; always captured by the registry."""


class ModelUnavailableError(AgentEngineError):
    """Transient language-model failure (retryable)."""


class ModelRequestError(AgentEngineError):
    """Fatal language-model failure (bad request, malformed response)."""


class LimitExceededError(AgentEngineError):
    pass


class TimeoutError(AgentEngineError, builtins.TimeoutError):  # noqa: A001
    """Task exceeded its configured wall-clock budget."""


class ConcurrentClaimConflict(AgentEngineError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is already claimed or not claimable")
        self.task_id = task_id


class ClaimLostError(AgentEngineError):
    """The worker's lease lapsed and another worker now owns the task."""

    def __init__(self, task_id: str, worker_id: str) -> None:
        super().__init__(f"Worker {worker_id} no longer holds the claim on task {task_id}")
        self.task_id = task_id
        self.worker_id = worker_id
