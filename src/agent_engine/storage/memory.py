"""In-memory storage backend for tests and single-process runs."""

from __future__ import annotations

import threading
from collections.abc import Collection
from datetime import datetime
from typing import Any

from agent_engine.models import Checkpoint, Step, Task, TaskStatus, is_claimable, utcnow


class InMemoryTaskStorage:
    """Thread-safe in-memory implementation of TaskStorage.

    Every read returns a deep copy so callers never share mutable records.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}
        self._steps: dict[str, list[Step]] = {}
        self._checkpoints: dict[str, list[Checkpoint]] = {}

    def migrate(self) -> None:
        return None

    def insert_task(self, task: Task) -> Task:
        with self._lock:
            if task.task_id in self._tasks:
                raise ValueError(f"Task {task.task_id} already exists")
            self._tasks[task.task_id] = task.model_copy(deep=True)
            self._steps.setdefault(task.task_id, [])
            self._checkpoints.setdefault(task.task_id, [])
        return task.model_copy(deep=True)

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def update_task(
        self,
        task_id: str,
        *,
        expected_status: Collection[TaskStatus] | None = None,
        expected_claim: str | None = None,
        **changes: Any,
    ) -> Task | None:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return None
            if expected_status is not None and current.status not in expected_status:
                return None
            if expected_claim is not None and current.claimed_by != expected_claim:
                return None
            updated = current.model_copy(deep=True, update={**changes, "updated_at": utcnow()})
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    def claim_task(
        self,
        task_id: str,
        *,
        worker_id: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> Task | None:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None or not is_claimable(current, now):
                return None
            updated = current.model_copy(
                deep=True,
                update={
                    "status": "running",
                    "claimed_by": worker_id,
                    "lease_expires_at": lease_expires_at,
                    "resume_requested": False,
                    "started_at": current.started_at or now,
                    "updated_at": now,
                },
            )
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    def list_tasks(
        self,
        *,
        owner_id: str | None = None,
        statuses: Collection[TaskStatus] | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        with self._lock:
            rows = [
                task
                for task in self._tasks.values()
                if (owner_id is None or task.owner_id == owner_id)
                and (statuses is None or task.status in statuses)
            ]
            rows.sort(key=lambda task: task.created_at, reverse=True)
            if limit is not None:
                rows = rows[:limit]
            return [task.model_copy(deep=True) for task in rows]

    def list_claimable(self, *, now: datetime, limit: int | None = None) -> list[Task]:
        with self._lock:
            rows = [task for task in self._tasks.values() if is_claimable(task, now)]
            rows.sort(key=lambda task: (-task.priority, task.created_at))
            if limit is not None:
                rows = rows[:limit]
            return [task.model_copy(deep=True) for task in rows]

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            existed = self._tasks.pop(task_id, None) is not None
            self._steps.pop(task_id, None)
            self._checkpoints.pop(task_id, None)
            return existed

    def append_step(self, step: Step) -> Step:
        with self._lock:
            if step.task_id not in self._tasks:
                raise KeyError(f"Task {step.task_id} does not exist")
            history = self._steps.setdefault(step.task_id, [])
            sequence = history[-1].sequence + 1 if history else 1
            stored = step.model_copy(deep=True, update={"sequence": sequence})
            history.append(stored)
            return stored.model_copy(deep=True)

    def list_steps(self, task_id: str, *, limit: int | None = None) -> list[Step]:
        with self._lock:
            history = self._steps.get(task_id, [])
            if limit is not None:
                history = history[-limit:] if limit > 0 else []
            return [step.model_copy(deep=True) for step in history]

    def delete_steps_after(self, task_id: str, sequence: int) -> int:
        with self._lock:
            history = self._steps.get(task_id, [])
            kept = [step for step in history if step.sequence <= sequence]
            self._steps[task_id] = kept
            return len(history) - len(kept)

    def insert_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        with self._lock:
            if checkpoint.task_id not in self._tasks:
                raise KeyError(f"Task {checkpoint.task_id} does not exist")
            history = self._checkpoints.setdefault(checkpoint.task_id, [])
            sequence = history[-1].sequence + 1 if history else 1
            stored = checkpoint.model_copy(deep=True, update={"sequence": sequence})
            history.append(stored)
            return stored.model_copy(deep=True)

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        with self._lock:
            for history in self._checkpoints.values():
                for checkpoint in history:
                    if checkpoint.checkpoint_id == checkpoint_id:
                        return checkpoint.model_copy(deep=True)
            return None

    def list_checkpoints(self, task_id: str) -> list[Checkpoint]:
        with self._lock:
            history = self._checkpoints.get(task_id, [])
            return [checkpoint.model_copy(deep=True) for checkpoint in reversed(history)]

    def delete_checkpoints_after(self, task_id: str, sequence: int) -> int:
        with self._lock:
            history = self._checkpoints.get(task_id, [])
            kept = [checkpoint for checkpoint in history if checkpoint.sequence <= sequence]
            self._checkpoints[task_id] = kept
            return len(history) - len(kept)
