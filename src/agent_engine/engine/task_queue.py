"""Durable task lifecycle: creation, claims and status transitions."""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import ValidationError as PydanticValidationError

from agent_engine.errors import (
    AccessDeniedError,
    ClaimLostError,
    ConcurrentClaimConflict,
    InvalidTransitionError,
    UnknownTaskError,
    ValidationError,
)
from agent_engine.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    Task,
    TaskConfig,
    TaskStatus,
    utcnow,
)
from agent_engine.storage.base import TaskStorage

logger = logging.getLogger(__name__)

MAX_GOAL_CHARS = 10_000
MIN_PRIORITY = 0
MAX_PRIORITY = 100

_RELEASED_CLAIM: dict[str, Any] = {"claimed_by": None, "lease_expires_at": None}


class TaskQueue:
    """Owns every task status change.

    Control operations on a running task only raise cooperative flags; the
    agent loop applies them at its next iteration boundary.
    """

    def __init__(
        self,
        storage: TaskStorage,
        *,
        lease_s: float = 120.0,
        default_config: TaskConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.lease_s = lease_s
        self.default_config = default_config or TaskConfig()
        self._clock = clock

    # Creation and lookup

    def create_task(
        self,
        owner_id: str,
        goal: str,
        config: TaskConfig | dict[str, Any] | None = None,
        priority: int = 0,
    ) -> str:
        owner = (owner_id or "").strip()
        if not owner:
            raise ValidationError("owner_id must not be empty")
        if not isinstance(goal, str) or not goal.strip():
            raise ValidationError("goal must not be empty")
        if len(goal) > MAX_GOAL_CHARS:
            raise ValidationError(f"goal must be at most {MAX_GOAL_CHARS} characters")
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError("priority must be an integer")
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")
        task_config = self._resolve_config(config)

        now = self._clock()
        task = self.storage.insert_task(
            Task(
                task_id=str(uuid.uuid4()),
                owner_id=owner,
                goal=goal.strip(),
                config=task_config,
                priority=priority,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "task_queue event=create task_id=%s owner_id=%s priority=%s",
            task.task_id,
            owner,
            priority,
        )
        return task.task_id

    def _resolve_config(self, config: TaskConfig | dict[str, Any] | None) -> TaskConfig:
        if config is None:
            return self.default_config.model_copy()
        if isinstance(config, TaskConfig):
            return config.model_copy()
        try:
            return TaskConfig.model_validate({**self.default_config.model_dump(), **config})
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid task config: {exc}") from exc

    def get_task(self, task_id: str) -> Task:
        task = self.storage.get_task(task_id)
        if task is None:
            raise UnknownTaskError(task_id)
        return task

    def get_owned_task(self, task_id: str, owner_id: str | None) -> Task:
        task = self.get_task(task_id)
        if owner_id is not None and task.owner_id != owner_id:
            raise AccessDeniedError(f"Task {task_id} belongs to another owner")
        return task

    def get_user_tasks(
        self,
        owner_id: str,
        limit: int = 50,
        status: TaskStatus | None = None,
    ) -> list[Task]:
        statuses = [status] if status is not None else None
        return self.storage.list_tasks(owner_id=owner_id, statuses=statuses, limit=limit)

    def get_queued_tasks(self, limit: int | None = None) -> list[Task]:
        return self.storage.list_claimable(now=self._clock(), limit=limit)

    def get_queue_length(self) -> int:
        return len(self.get_queued_tasks())

    def get_stats(self) -> dict[str, Any]:
        counts = Counter(task.status for task in self.storage.list_tasks())
        by_status = {status: counts.get(status, 0) for status in ALLOWED_TRANSITIONS}
        return {
            "total": sum(counts.values()),
            "by_status": by_status,
            "queue_length": self.get_queue_length(),
        }

    # Caller-facing control operations

    def pause(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task.status != "running" or task.pause_requested or task.cancel_requested:
            raise InvalidTransitionError(task_id, task.status, "pause")
        updated = self.storage.update_task(task_id, expected_status=["running"], pause_requested=True)
        return self._checked(updated, task_id, "pause")

    def resume(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task.status != "paused" or task.resume_requested:
            raise InvalidTransitionError(task_id, task.status, "resume")
        updated = self.storage.update_task(task_id, expected_status=["paused"], resume_requested=True)
        task = self._checked(updated, task_id, "resume")
        logger.info("task_queue event=resume task_id=%s", task_id)
        return task

    def cancel(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task.is_terminal:
            raise InvalidTransitionError(task_id, task.status, "cancel")
        if task.status == "running":
            if task.cancel_requested:
                raise InvalidTransitionError(task_id, task.status, "cancel")
            updated = self.storage.update_task(
                task_id,
                expected_status=["running"],
                cancel_requested=True,
            )
            return self._checked(updated, task_id, "cancel")
        task = self._transition(
            task,
            "cancelled",
            "cancel",
            completed_at=self._clock(),
            resume_requested=False,
            confirmation=None,
            **_RELEASED_CLAIM,
        )
        logger.info("task_queue event=cancel task_id=%s", task_id)
        return task

    def confirm(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task.status != "waiting" or task.confirmation is not None:
            raise InvalidTransitionError(task_id, task.status, "confirm")
        updated = self.storage.update_task(task_id, expected_status=["waiting"], confirmation="approved")
        task = self._checked(updated, task_id, "confirm")
        logger.info("task_queue event=confirm task_id=%s", task_id)
        return task

    def reject(self, task_id: str, reason: str | None = None) -> Task:
        task = self.get_task(task_id)
        if task.status != "waiting" or task.confirmation is not None:
            raise InvalidTransitionError(task_id, task.status, "reject")
        task = self._transition(
            task,
            "cancelled",
            "reject",
            error=reason or "Confirmation rejected",
            completed_at=self._clock(),
        )
        logger.info("task_queue event=reject task_id=%s", task_id)
        return task

    def delete_task(self, task_id: str, owner_id: str | None = None) -> None:
        task = self.get_owned_task(task_id, owner_id)
        if task.status == "running":
            raise InvalidTransitionError(task_id, task.status, "delete")
        self.storage.delete_task(task_id)
        logger.info("task_queue event=delete task_id=%s", task_id)

    # Worker-facing operations

    def claim(self, task_id: str, worker_id: str) -> Task:
        now = self._clock()
        claimed = self.storage.claim_task(
            task_id,
            worker_id=worker_id,
            now=now,
            lease_expires_at=now + timedelta(seconds=self.lease_s),
        )
        if claimed is None:
            if self.storage.get_task(task_id) is None:
                raise UnknownTaskError(task_id)
            raise ConcurrentClaimConflict(task_id)
        logger.info("task_queue event=claim task_id=%s worker_id=%s", task_id, worker_id)
        return claimed

    def heartbeat(self, task_id: str, worker_id: str) -> bool:
        """Extend the lease; False once the task is no longer running under `worker_id`."""
        updated = self.storage.update_task(
            task_id,
            expected_status=["running"],
            expected_claim=worker_id,
            lease_expires_at=self._clock() + timedelta(seconds=self.lease_s),
        )
        return updated is not None

    def release(self, task_id: str) -> Task:
        """Drop the claim on a running task so another worker may pick it up."""
        updated = self.storage.update_task(task_id, expected_status=["running"], **_RELEASED_CLAIM)
        return self._checked(updated, task_id, "release")

    def clear_confirmation(self, task_id: str, worker_id: str | None = None) -> Task:
        updated = self.storage.update_task(
            task_id,
            expected_status=["running"],
            expected_claim=worker_id,
            confirmation=None,
        )
        return self._checked(updated, task_id, "clear confirmation on", expected_claim=worker_id)

    def complete(self, task_id: str, result: str, worker_id: str | None = None) -> Task:
        task = self._transition(
            self.get_task(task_id),
            "completed",
            "complete",
            expected_claim=worker_id,
            result=result,
            error=None,
            error_type=None,
            completed_at=self._clock(),
            **self._cleared_flags(),
        )
        logger.info("task_queue event=complete task_id=%s", task_id)
        return task

    def fail(
        self,
        task_id: str,
        error: str,
        error_type: str | None = None,
        worker_id: str | None = None,
    ) -> Task:
        task = self._transition(
            self.get_task(task_id),
            "failed",
            "fail",
            expected_claim=worker_id,
            error=error,
            error_type=error_type,
            completed_at=self._clock(),
            **self._cleared_flags(),
        )
        logger.info("task_queue event=fail task_id=%s error_type=%s", task_id, error_type)
        return task

    def mark_cancelled(self, task_id: str, worker_id: str | None = None) -> Task:
        task = self._transition(
            self.get_task(task_id),
            "cancelled",
            "cancel",
            expected_claim=worker_id,
            completed_at=self._clock(),
            **self._cleared_flags(),
        )
        logger.info("task_queue event=cancelled task_id=%s", task_id)
        return task

    def suspend(
        self,
        task_id: str,
        status: Literal["paused", "waiting"],
        worker_id: str | None = None,
    ) -> Task:
        task = self._transition(
            self.get_task(task_id),
            status,
            "suspend",
            expected_claim=worker_id,
            **self._cleared_flags(),
        )
        logger.info("task_queue event=suspend task_id=%s status=%s", task_id, status)
        return task

    # Maintenance

    def expire_confirmations(self, now: datetime | None = None) -> list[str]:
        current = now or self._clock()
        expired: list[str] = []
        for task in self.storage.list_tasks(statuses=["waiting"]):
            if task.confirmation is not None:
                continue
            deadline = task.updated_at + timedelta(seconds=task.config.confirmation_timeout_s)
            if deadline >= current:
                continue
            updated = self.storage.update_task(
                task.task_id,
                expected_status=["waiting"],
                status="cancelled",
                error="Confirmation timed out",
                error_type="TimeoutError",
                completed_at=current,
            )
            if updated is not None:
                expired.append(task.task_id)
                logger.info("task_queue event=confirmation_expired task_id=%s", task.task_id)
        return expired

    def cleanup(self, older_than_days: float = 7) -> int:
        cutoff = self._clock() - timedelta(days=older_than_days)
        removed = 0
        for task in self.storage.list_tasks(statuses=sorted(TERMINAL_STATUSES)):
            finished_at = task.completed_at or task.updated_at
            if finished_at < cutoff and self.storage.delete_task(task.task_id):
                removed += 1
        logger.info("task_queue event=cleanup removed=%s older_than_days=%s", removed, older_than_days)
        return removed

    # Helpers

    def _transition(
        self,
        task: Task,
        target: TaskStatus,
        operation: str,
        *,
        expected_claim: str | None = None,
        **changes: Any,
    ) -> Task:
        if expected_claim is not None and task.claimed_by != expected_claim:
            raise ClaimLostError(task.task_id, expected_claim)
        if target not in ALLOWED_TRANSITIONS[task.status]:
            raise InvalidTransitionError(task.task_id, task.status, operation)
        updated = self.storage.update_task(
            task.task_id,
            expected_status=[task.status],
            expected_claim=expected_claim,
            status=target,
            **changes,
        )
        return self._checked(updated, task.task_id, operation, expected_claim=expected_claim)

    def _checked(
        self,
        updated: Task | None,
        task_id: str,
        operation: str,
        *,
        expected_claim: str | None = None,
    ) -> Task:
        if updated is not None:
            return updated
        # The row changed underneath us (or vanished) between read and write.
        current = self.get_task(task_id)
        if expected_claim is not None and current.claimed_by != expected_claim:
            raise ClaimLostError(task_id, expected_claim)
        raise InvalidTransitionError(task_id, current.status, operation)

    @staticmethod
    def _cleared_flags() -> dict[str, Any]:
        return {
            **_RELEASED_CLAIM,
            "pause_requested": False,
            "cancel_requested": False,
            "resume_requested": False,
            "confirmation": None,
        }
