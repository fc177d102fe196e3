"""Service façade wiring storage, queue, loop and worker together."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict
from typing import Any

from agent_engine.config.settings import Settings, get_settings
from agent_engine.engine.events import EventBus, Subscription
from agent_engine.engine.loop import AgentLoop
from agent_engine.engine.state_manager import StateManager
from agent_engine.engine.task_queue import TaskQueue
from agent_engine.engine.worker import Worker
from agent_engine.errors import InvalidTransitionError
from agent_engine.llm.base import LanguageModel
from agent_engine.llm.openai_adapter import build_language_model
from agent_engine.models import Checkpoint, Step, Task, TaskConfig, TaskStatus
from agent_engine.storage.base import TaskStorage
from agent_engine.storage.cache import TTLCache
from agent_engine.storage.memory import InMemoryTaskStorage
from agent_engine.storage.postgres import PostgresTaskStorage
from agent_engine.tools.builtin import build_default_registry
from agent_engine.tools.registry import ToolRegistry
from agent_engine.tools.schemas import ToolDescriptor

logger = logging.getLogger(__name__)


class AgentEngine:
    """Owner-scoped operations over the task engine.

    Passing `owner_id=None` skips the ownership check (admin and internal use).
    """

    def __init__(
        self,
        *,
        storage: TaskStorage,
        queue: TaskQueue,
        state_manager: StateManager,
        registry: ToolRegistry,
        loop: AgentLoop,
        worker: Worker,
        events: EventBus,
        cache: TTLCache | None = None,
    ) -> None:
        self.storage = storage
        self.queue = queue
        self.state_manager = state_manager
        self.registry = registry
        self.loop = loop
        self.worker = worker
        self.events = events
        self.cache = cache

    # Tasks

    def create_task(
        self,
        owner_id: str,
        goal: str,
        config: TaskConfig | dict[str, Any] | None = None,
        priority: int = 0,
    ) -> Task:
        task_id = self.queue.create_task(owner_id, goal, config, priority)
        return self.queue.get_task(task_id)

    def get_task(self, task_id: str, owner_id: str | None = None) -> Task:
        return self.queue.get_owned_task(task_id, owner_id)

    def list_tasks(
        self,
        owner_id: str,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[Task]:
        return self.queue.get_user_tasks(owner_id, limit=limit, status=status)

    def get_steps(self, task_id: str, owner_id: str | None = None, limit: int | None = None) -> list[Step]:
        self.queue.get_owned_task(task_id, owner_id)
        return self.state_manager.get_steps(task_id, limit=limit)

    def get_checkpoints(self, task_id: str, owner_id: str | None = None) -> list[Checkpoint]:
        self.queue.get_owned_task(task_id, owner_id)
        return self.state_manager.get_checkpoints(task_id)

    def delete_task(self, task_id: str, owner_id: str | None = None) -> None:
        self.queue.delete_task(task_id, owner_id)

    # Control

    def pause(self, task_id: str, owner_id: str | None = None) -> Task:
        self.queue.get_owned_task(task_id, owner_id)
        return self.queue.pause(task_id)

    def resume(self, task_id: str, owner_id: str | None = None) -> Task:
        self.queue.get_owned_task(task_id, owner_id)
        return self.queue.resume(task_id)

    def cancel(self, task_id: str, owner_id: str | None = None) -> Task:
        self.queue.get_owned_task(task_id, owner_id)
        task = self.queue.cancel(task_id)
        if task.status == "cancelled":
            # A running task records its own final checkpoint when it observes the request.
            self.state_manager.snapshot(task_id, self.state_manager.load_state(task_id), reason="cancelled")
        return task

    def confirm(self, task_id: str, owner_id: str | None = None) -> Task:
        self.queue.get_owned_task(task_id, owner_id)
        return self.queue.confirm(task_id)

    def reject(self, task_id: str, owner_id: str | None = None, reason: str | None = None) -> Task:
        self.queue.get_owned_task(task_id, owner_id)
        task = self.queue.reject(task_id, reason)
        self.state_manager.snapshot(task_id, self.state_manager.load_state(task_id), reason="cancelled")
        return task

    def restore(
        self,
        task_id: str,
        checkpoint_id: str | None = None,
        owner_id: str | None = None,
    ) -> Task:
        """Rewind a paused task to a checkpoint and queue it for resumption."""
        task = self.queue.get_owned_task(task_id, owner_id)
        if task.status != "paused" or task.resume_requested:
            raise InvalidTransitionError(task_id, task.status, "restore")
        checkpoint = self.state_manager.get_checkpoint(task_id, checkpoint_id)
        self.state_manager.rewind(task_id, checkpoint)
        logger.info(
            "engine event=restore task_id=%s checkpoint_id=%s iteration=%s",
            task_id,
            checkpoint.checkpoint_id,
            checkpoint.iteration,
        )
        return self.queue.resume(task_id)

    # Tools, events and administration

    def list_tools(self) -> list[ToolDescriptor]:
        return self.registry.list_all()

    def subscribe(self, task_id: str | None = None) -> Subscription:
        return self.events.subscribe(task_id=task_id)

    def run_pending(self) -> list[str]:
        return self.worker.run_pending()

    def start_worker(self) -> dict[str, Any]:
        self.worker.start()
        return self.worker.get_status()

    def stop_worker(self) -> dict[str, Any]:
        self.worker.stop()
        return self.worker.get_status()

    def worker_status(self) -> dict[str, Any]:
        return self.worker.get_status()

    def cleanup(self, older_than_days: float = 7) -> int:
        return self.queue.cleanup(older_than_days)

    def stats(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "queue": self.queue.get_stats(),
            "worker": self.worker.get_status(),
            "tools": len(self.registry),
            "subscribers": self.events.subscriber_count,
        }
        if self.cache is not None:
            payload["cache"] = asdict(self.cache.stats())
        return payload

    def shutdown(self) -> None:
        self.worker.stop()


def build_storage(settings: Settings) -> TaskStorage:
    backend = settings.storage_backend.lower().strip()
    if backend == "memory":
        storage: TaskStorage = InMemoryTaskStorage()
    elif backend == "postgres":
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set AGENT_ENGINE_DATABASE_URL "
                "or DATABASE_URL before using the postgres storage backend."
            )
        storage = PostgresTaskStorage(database_url)
    else:
        raise RuntimeError(f"Unsupported storage backend: {settings.storage_backend}")
    storage.migrate()
    return storage


def build_engine(
    settings: Settings | None = None,
    *,
    storage: TaskStorage | None = None,
    llm: LanguageModel | None = None,
    registry: ToolRegistry | None = None,
    sleep: Callable[[float], None] | None = None,
) -> AgentEngine:
    settings = settings or get_settings()
    storage = storage if storage is not None else build_storage(settings)
    llm = llm if llm is not None else build_language_model(settings)

    cache = TTLCache(ttl_s=settings.cache_ttl_s, max_entries=settings.cache_max_entries)
    if registry is None:
        registry = build_default_registry(
            cache=cache,
            tool_timeout_s=settings.tool_timeout_s,
            output_max_chars=settings.tool_output_max_chars,
            shell_timeout_s=settings.shell_timeout_s,
        )
    elif registry.cache is not None:
        cache = registry.cache

    events = EventBus()
    queue = TaskQueue(storage, lease_s=settings.worker_lease_s, default_config=settings.task_defaults())
    state_manager = StateManager(storage)
    loop_kwargs: dict[str, Any] = {}
    if sleep is not None:
        loop_kwargs["sleep"] = sleep
    loop = AgentLoop(
        queue=queue,
        state_manager=state_manager,
        registry=registry,
        llm=llm,
        events=events,
        context_recent_steps=settings.context_recent_steps,
        llm_max_retries=settings.llm_max_retries,
        llm_backoff_s=settings.llm_backoff_s,
        llm_temperature=settings.llm_temperature,
        llm_max_tokens=settings.llm_max_tokens,
        workspace_root=settings.workspace_root,
        **loop_kwargs,
    )
    worker = Worker(
        queue=queue,
        loop=loop,
        events=events,
        poll_interval_s=settings.worker_poll_interval_s,
        max_concurrent=settings.worker_max_concurrent_tasks,
    )
    logger.info(
        "engine event=built storage=%s tools=%s worker_id=%s",
        type(storage).__name__,
        len(registry),
        worker.worker_id,
    )
    return AgentEngine(
        storage=storage,
        queue=queue,
        state_manager=state_manager,
        registry=registry,
        loop=loop,
        worker=worker,
        events=events,
        cache=cache if registry.cache is not None else None,
    )
