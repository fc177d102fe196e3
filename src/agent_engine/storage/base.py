"""Storage interface for tasks, step history and checkpoints."""

from __future__ import annotations

from collections.abc import Collection
from datetime import datetime
from typing import Any, Protocol

from agent_engine.models import Checkpoint, Step, Task, TaskStatus


class TaskStorage(Protocol):
    def migrate(self) -> None: ...

    # Tasks

    def insert_task(self, task: Task) -> Task: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def update_task(
        self,
        task_id: str,
        *,
        expected_status: Collection[TaskStatus] | None = None,
        expected_claim: str | None = None,
        **changes: Any,
    ) -> Task | None:
        """Apply `changes` atomically; None when missing, status not expected or claimed by another worker."""
        ...

    def claim_task(
        self,
        task_id: str,
        *,
        worker_id: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> Task | None:
        """Compare-and-swap a claimable task into `running`; None if not claimable."""
        ...

    def list_tasks(
        self,
        *,
        owner_id: str | None = None,
        statuses: Collection[TaskStatus] | None = None,
        limit: int | None = None,
    ) -> list[Task]: ...

    def list_claimable(self, *, now: datetime, limit: int | None = None) -> list[Task]: ...

    def delete_task(self, task_id: str) -> bool: ...

    # Step history

    def append_step(self, step: Step) -> Step: ...

    def list_steps(self, task_id: str, *, limit: int | None = None) -> list[Step]: ...

    def delete_steps_after(self, task_id: str, sequence: int) -> int: ...

    # Checkpoints

    def insert_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint: ...

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None: ...

    def list_checkpoints(self, task_id: str) -> list[Checkpoint]: ...

    def delete_checkpoints_after(self, task_id: str, sequence: int) -> int: ...
