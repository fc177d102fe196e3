"""Step history and checkpoint façade over the task storage."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from agent_engine.errors import (
    CheckpointNotFoundError,
    ClaimLostError,
    InvalidTransitionError,
    UnknownTaskError,
)
from agent_engine.models import AgentState, Artifact, Checkpoint, Step, utcnow
from agent_engine.storage.base import TaskStorage

logger = logging.getLogger(__name__)

MAX_OBSERVATIONS = 50


class StateManager:
    """Append steps, snapshot state and restore it for a task.

    Steps are only accepted while the task is `running`; checkpoints may be
    taken in any state so pause and cancel can be recorded.
    """

    def __init__(self, storage: TaskStorage, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.storage = storage
        self._clock = clock

    def append_step(self, task_id: str, step: Step, *, worker_id: str | None = None) -> Step:
        task = self.storage.get_task(task_id)
        if task is None:
            raise UnknownTaskError(task_id)
        if task.status != "running":
            raise InvalidTransitionError(task_id, task.status, "append a step to")
        if worker_id is not None and task.claimed_by != worker_id:
            raise ClaimLostError(task_id, worker_id)
        if step.task_id != task_id:
            step = step.model_copy(update={"task_id": task_id})
        stored = self.storage.append_step(step)
        logger.debug(
            "state_manager event=append_step task_id=%s sequence=%s type=%s status=%s",
            task_id,
            stored.sequence,
            stored.type,
            stored.status,
        )
        return stored

    def get_steps(self, task_id: str, limit: int | None = None) -> list[Step]:
        return self.storage.list_steps(task_id, limit=limit)

    def snapshot(self, task_id: str, state: AgentState, *, reason: str = "step") -> str:
        checkpoint = self.storage.insert_checkpoint(
            Checkpoint(
                checkpoint_id=str(uuid.uuid4()),
                task_id=task_id,
                iteration=state.iteration,
                tool_calls=state.tool_calls,
                last_step_sequence=state.last_step_sequence,
                reason=reason,
                state=state.model_copy(deep=True),
                created_at=self._clock(),
            )
        )
        logger.debug(
            "state_manager event=snapshot task_id=%s checkpoint_id=%s iteration=%s reason=%s",
            task_id,
            checkpoint.checkpoint_id,
            checkpoint.iteration,
            reason,
        )
        return checkpoint.checkpoint_id

    def get_checkpoints(self, task_id: str) -> list[Checkpoint]:
        return self.storage.list_checkpoints(task_id)

    def get_checkpoint(self, task_id: str, checkpoint_id: str | None = None) -> Checkpoint:
        if checkpoint_id is None:
            checkpoints = self.storage.list_checkpoints(task_id)
            if not checkpoints:
                raise CheckpointNotFoundError(f"Task {task_id} has no checkpoints")
            return checkpoints[0]
        checkpoint = self.storage.get_checkpoint(checkpoint_id)
        if checkpoint is None or checkpoint.task_id != task_id:
            raise CheckpointNotFoundError(f"Checkpoint {checkpoint_id} not found for task {task_id}")
        return checkpoint

    def restore_from_checkpoint(self, task_id: str, checkpoint_id: str | None = None) -> AgentState:
        return self.get_checkpoint(task_id, checkpoint_id).state.model_copy(deep=True)

    def load_state(self, task_id: str) -> AgentState:
        checkpoints = self.storage.list_checkpoints(task_id)
        if not checkpoints:
            return AgentState(task_id=task_id)
        return checkpoints[0].state.model_copy(deep=True)

    def rewind(self, task_id: str, checkpoint: Checkpoint) -> tuple[int, int]:
        """Drop history recorded after `checkpoint` so replay resumes from its exact prefix."""
        if checkpoint.task_id != task_id:
            raise CheckpointNotFoundError(
                f"Checkpoint {checkpoint.checkpoint_id} not found for task {task_id}"
            )
        removed_steps = self.storage.delete_steps_after(task_id, checkpoint.last_step_sequence)
        removed_checkpoints = self.storage.delete_checkpoints_after(task_id, checkpoint.sequence)
        logger.info(
            "state_manager event=rewind task_id=%s checkpoint_id=%s removed_steps=%s removed_checkpoints=%s",
            task_id,
            checkpoint.checkpoint_id,
            removed_steps,
            removed_checkpoints,
        )
        return removed_steps, removed_checkpoints

    def discard_uncheckpointed(self, task_id: str) -> int:
        """Delete steps newer than the latest checkpoint, left behind by a crashed run."""
        checkpoints = self.storage.list_checkpoints(task_id)
        last_sequence = checkpoints[0].last_step_sequence if checkpoints else 0
        removed = self.storage.delete_steps_after(task_id, last_sequence)
        if removed:
            logger.warning(
                "state_manager event=discard_uncheckpointed task_id=%s after_sequence=%s removed_steps=%s",
                task_id,
                last_sequence,
                removed,
            )
        return removed

    @staticmethod
    def add_artifact(state: AgentState, artifact: Artifact) -> None:
        state.artifacts.append(artifact.model_copy())

    @staticmethod
    def record_observation(state: AgentState, observation: str) -> None:
        state.observations.append(observation)
        if len(state.observations) > MAX_OBSERVATIONS:
            del state.observations[: len(state.observations) - MAX_OBSERVATIONS]
