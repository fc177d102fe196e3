"""Pydantic models shared by the queue, state manager, loop and storage backends.

Terms used in this file:
- Task: one durable unit of agent work tied to a single goal.
- Step: one recorded loop iteration; append-only, ordered by `sequence`.
- Checkpoint: snapshot of the resumable AgentState at a step boundary.
- Lease: time-bounded claim on a running task, renewed every iteration.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

TaskStatus = Literal["pending", "running", "paused", "waiting", "completed", "failed", "cancelled"]
StepType = Literal["thought", "tool_call", "answer", "wait_confirmation"]
StepStatus = Literal["pending", "running", "succeeded", "failed", "awaiting_confirmation"]
ArtifactType = Literal["text", "image", "file", "code", "data"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

# Edges of the task state machine. `running -> running` re-claims after an
# expired lease are not transitions and are handled by the claim itself.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "cancelled"}),
    "running": frozenset({"paused", "waiting", "completed", "failed", "cancelled"}),
    "paused": frozenset({"running", "cancelled"}),
    "waiting": frozenset({"running", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


class TaskConfig(BaseModel):
    """Per-task execution limits."""

    model_config = ConfigDict(extra="forbid")

    max_iterations: int = Field(default=100, ge=1, le=500)
    max_tool_calls: int = Field(default=150, ge=1, le=500)
    timeout_s: float = Field(default=1800.0, ge=60.0, le=3600.0)
    require_confirmation: bool = False
    verbose: bool = True
    confirmation_timeout_s: float = Field(default=3600.0, gt=0.0)


class Task(BaseModel):
    """Canonical task record owned by the task queue."""

    task_id: str
    owner_id: str
    goal: str
    config: TaskConfig = Field(default_factory=TaskConfig)
    status: TaskStatus = "pending"
    priority: int = 0
    result: str | None = None
    error: str | None = None
    error_type: str | None = None
    # Claim bookkeeping.
    claimed_by: str | None = None
    lease_expires_at: datetime | None = None
    # Cooperative control flags.
    pause_requested: bool = False
    cancel_requested: bool = False
    resume_requested: bool = False
    confirmation: Literal["approved"] | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def is_claimable(task: Task, now: datetime) -> bool:
    """Whether a worker may move the task into (or back into) `running`."""
    if task.status == "pending":
        return True
    if task.status == "waiting":
        return task.confirmation == "approved"
    if task.status == "paused":
        return task.resume_requested
    if task.status == "running":
        return task.lease_expires_at is None or task.lease_expires_at < now
    return False


class Artifact(BaseModel):
    type: ArtifactType = "text"
    content: str
    name: str | None = None
    mime_type: str | None = None


class ToolResult(BaseModel):
    """Normalized result of one tool execution."""

    success: bool
    output: str = ""
    error: str | None = None
    artifacts: list[Artifact] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Step(BaseModel):
    """Immutable record of one loop iteration."""

    step_id: str
    task_id: str
    # Assigned by storage on append; monotonically increasing per task.
    sequence: int = 0
    type: StepType
    content: str = ""
    status: StepStatus
    tool_name: str | None = None
    tool_args: dict[str, Any] | None = None
    tool_result: ToolResult | None = None
    started_at: datetime
    completed_at: datetime | None = None
    duration_s: float | None = None


class PendingToolCall(BaseModel):
    """Tool call suspended while waiting for external confirmation."""

    tool_name: str
    tool_args: dict[str, Any] = Field(default_factory=dict)
    step_id: str


class AgentState(BaseModel):
    """Resumable loop state captured by every checkpoint."""

    task_id: str
    iteration: int = 0
    tool_calls: int = 0
    # Active running time consumed so far (excludes paused/waiting time).
    elapsed_s: float = 0.0
    observations: list[str] = Field(default_factory=list)
    artifacts: list[Artifact] = Field(default_factory=list)
    working_memory: dict[str, Any] = Field(default_factory=dict)
    last_step_id: str | None = None
    last_step_sequence: int = 0
    pending_action: PendingToolCall | None = None


class Checkpoint(BaseModel):
    checkpoint_id: str
    task_id: str
    # Assigned by storage on insert; monotonically increasing per task.
    sequence: int = 0
    iteration: int
    tool_calls: int
    last_step_sequence: int
    reason: str = "step"
    state: AgentState
    created_at: datetime


class WorkerEvent(BaseModel):
    """Lifecycle/progress event published to subscribers."""

    type: str
    task_id: str
    step_id: str | None = None
    status: str
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)
