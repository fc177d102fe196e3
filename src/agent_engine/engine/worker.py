"""Background scheduler that claims runnable tasks and drives the agent loop."""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from agent_engine.engine.events import EventBus
from agent_engine.engine.loop import AgentLoop
from agent_engine.engine.loop_state import LoopOutcome
from agent_engine.engine.task_queue import TaskQueue
from agent_engine.errors import AgentEngineError, ConcurrentClaimConflict, UnknownTaskError
from agent_engine.models import Task, WorkerEvent

logger = logging.getLogger(__name__)


class Worker:
    """Poll the queue and run up to `max_concurrent` tasks on a thread pool.

    The claim is the only mutual exclusion: a task is driven only by the
    worker whose compare-and-swap moved it into `running`.
    """

    def __init__(
        self,
        *,
        queue: TaskQueue,
        loop: AgentLoop,
        events: EventBus | None = None,
        poll_interval_s: float = 1.0,
        max_concurrent: int = 2,
        worker_id: str | None = None,
    ) -> None:
        self.queue = queue
        self.loop = loop
        self.events = events
        self.poll_interval_s = poll_interval_s
        self.max_concurrent = max_concurrent
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._lock = threading.Lock()
        self._active: set[str] = set()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._pool: ThreadPoolExecutor | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._pool = ThreadPoolExecutor(
                max_workers=self.max_concurrent,
                thread_name_prefix=f"{self.worker_id}-task",
            )
            self._thread = threading.Thread(
                target=self._poll_forever,
                name=f"{self.worker_id}-poller",
                daemon=True,
            )
            self._thread.start()
        logger.info(
            "worker event=start worker_id=%s max_concurrent=%s poll_interval_s=%s",
            self.worker_id,
            self.max_concurrent,
            self.poll_interval_s,
        )

    def stop(self, *, wait: bool = True, timeout_s: float | None = None) -> None:
        with self._lock:
            thread, pool = self._thread, self._pool
            self._thread = None
            self._pool = None
        if thread is None:
            return
        self._stop_event.set()
        thread.join(timeout=timeout_s)
        if pool is not None:
            pool.shutdown(wait=wait)
        logger.info("worker event=stop worker_id=%s", self.worker_id)

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            task_ids = sorted(self._active)
        return {
            "running": self.running,
            "worker_id": self.worker_id,
            "active_tasks": len(task_ids),
            "task_ids": task_ids,
        }

    def poll_once(self) -> list[str]:
        """Claim as many runnable tasks as there is capacity for and submit them."""
        pool = self._pool
        if pool is None:
            return []
        self.queue.expire_confirmations()
        claimed: list[str] = []
        for task in self._claim_batch():
            claimed.append(task.task_id)
            pool.submit(self._drive, task)
        return claimed

    def run_pending(self, max_tasks: int | None = None) -> list[str]:
        """Synchronously claim and drive every currently runnable task once."""
        self.queue.expire_confirmations()
        processed: list[str] = []
        for candidate in self.queue.get_queued_tasks(limit=max_tasks):
            task = self._try_claim(candidate.task_id)
            if task is None:
                continue
            self._drive(task)
            processed.append(task.task_id)
        return processed

    def run_task(self, task_id: str) -> LoopOutcome | None:
        task = self._try_claim(task_id)
        if task is None:
            return None
        return self._drive(task)

    def _poll_forever(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:  # noqa: BLE001
                logger.exception("worker event=poll_error worker_id=%s", self.worker_id)
            self._stop_event.wait(self.poll_interval_s)

    def _claim_batch(self) -> list[Task]:
        with self._lock:
            capacity = self.max_concurrent - len(self._active)
        if capacity <= 0:
            return []
        batch: list[Task] = []
        for candidate in self.queue.get_queued_tasks(limit=capacity * 2):
            if len(batch) >= capacity:
                break
            task = self._try_claim(candidate.task_id)
            if task is not None:
                batch.append(task)
        return batch

    def _try_claim(self, task_id: str) -> Task | None:
        with self._lock:
            if task_id in self._active:
                return None
        try:
            task = self.queue.claim(task_id, self.worker_id)
        except (ConcurrentClaimConflict, UnknownTaskError):
            return None
        with self._lock:
            self._active.add(task_id)
        self._publish(task, "task_claimed")
        return task

    def _drive(self, task: Task) -> LoopOutcome | None:
        try:
            return self.loop.run(task, self.worker_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "worker event=task_error worker_id=%s task_id=%s error_type=%s",
                self.worker_id,
                task.task_id,
                type(exc).__name__,
            )
            self._fail_quietly(task.task_id, exc)
            return LoopOutcome(status="failed", error=str(exc), error_type=type(exc).__name__)
        finally:
            with self._lock:
                self._active.discard(task.task_id)

    def _fail_quietly(self, task_id: str, exc: Exception) -> None:
        try:
            self.queue.fail(
                task_id,
                f"{type(exc).__name__}: {exc}",
                type(exc).__name__,
                worker_id=self.worker_id,
            )
        except AgentEngineError as fail_exc:
            logger.warning(
                "worker event=fail_skipped worker_id=%s task_id=%s reason=%s",
                self.worker_id,
                task_id,
                fail_exc,
            )
            return
        if self.events is not None:
            self.events.publish(
                WorkerEvent(
                    type="task_failed",
                    task_id=task_id,
                    status="failed",
                    data={"error": str(exc), "error_type": type(exc).__name__},
                )
            )

    def _publish(self, task: Task, event_type: str) -> None:
        if self.events is None:
            return
        self.events.publish(
            WorkerEvent(
                type=event_type,
                task_id=task.task_id,
                status=task.status,
                data={"worker_id": self.worker_id},
            )
        )
