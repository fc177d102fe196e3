"""FastAPI app factory for the agent task engine."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from agent_engine import errors
from agent_engine.config.settings import Settings, get_settings
from agent_engine.engine.service import AgentEngine, build_engine
from agent_engine.llm.base import LanguageModel
from agent_engine.models import Checkpoint, Step, Task, TaskStatus
from agent_engine.storage.base import TaskStorage

logger = logging.getLogger(__name__)

_ERROR_STATUS: list[tuple[type[errors.AgentEngineError], int]] = [
    (errors.ValidationError, 422),
    (errors.UnknownTaskError, 404),
    (errors.CheckpointNotFoundError, 404),
    (errors.InvalidTransitionError, 409),
    (errors.ConcurrentClaimConflict, 409),
    (errors.ClaimLostError, 409),
    (errors.AccessDeniedError, 403),
]


class CreateTaskRequest(BaseModel):
    goal: str
    config: dict[str, Any] | None = None
    priority: int = 0


class RejectRequest(BaseModel):
    reason: str | None = None


class RestoreRequest(BaseModel):
    checkpoint_id: str | None = None


class TaskListResponse(BaseModel):
    tasks: list[Task] = Field(default_factory=list)


class StepListResponse(BaseModel):
    task_id: str
    steps: list[Step] = Field(default_factory=list)


class CheckpointListResponse(BaseModel):
    task_id: str
    checkpoints: list[Checkpoint] = Field(default_factory=list)


def _configure_logging(level: str) -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level.upper(),
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    else:
        root.setLevel(level.upper())


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: TaskStorage | None,
    llm_override: LanguageModel | None,
    engine_override: AgentEngine | None,
) -> None:
    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "engine"):
        app.state.engine = engine_override or build_engine(
            settings,
            storage=storage_override,
            llm=llm_override,
        )


def create_app(
    *,
    storage: TaskStorage | None = None,
    settings_override: Settings | None = None,
    llm: LanguageModel | None = None,
    engine: AgentEngine | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    _configure_logging(settings.log_level)

    def _ensure(app: FastAPI) -> None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            llm_override=llm,
            engine_override=engine,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure(app)
        if settings.worker_autostart:
            app.state.engine.start_worker()
        try:
            yield
        finally:
            app.state.engine.shutdown()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    # Fail fast on a missing model or database before the server starts accepting requests,
    # and keep test paths reliable when lifespan is not executed by the client.
    _ensure(app)

    for error_type, status_code in _ERROR_STATUS:
        app.add_exception_handler(error_type, _error_handler(status_code))

    def _engine(request: Request) -> AgentEngine:
        if not hasattr(request.app.state, "engine"):
            _ensure(request.app)
        return request.app.state.engine

    def _owner(x_owner_id: str | None = Header(default=None)) -> str:
        owner = (x_owner_id or "").strip()
        if not owner:
            raise HTTPException(status_code=400, detail="X-Owner-Id header is required")
        return owner

    def _admin(x_admin: str | None = Header(default=None)) -> None:
        if x_admin != "1":
            raise HTTPException(status_code=403, detail="Admin access required")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/tools")
    def tools(request: Request) -> dict[str, Any]:
        return {"tools": [tool.model_dump(mode="json") for tool in _engine(request).list_tools()]}

    @app.post("/tasks", response_model=Task)
    def create_task(payload: CreateTaskRequest, request: Request, owner_id: str = Depends(_owner)) -> Task:
        return _engine(request).create_task(
            owner_id,
            payload.goal,
            config=payload.config,
            priority=payload.priority,
        )

    @app.get("/tasks", response_model=TaskListResponse)
    def list_tasks(
        request: Request,
        owner_id: str = Depends(_owner),
        status: TaskStatus | None = None,
        limit: int = Query(default=50, ge=1, le=500),
    ) -> TaskListResponse:
        return TaskListResponse(tasks=_engine(request).list_tasks(owner_id, status=status, limit=limit))

    @app.get("/tasks/{task_id}", response_model=Task)
    def get_task(task_id: str, request: Request, owner_id: str = Depends(_owner)) -> Task:
        return _engine(request).get_task(task_id, owner_id)

    @app.delete("/tasks/{task_id}")
    def delete_task(task_id: str, request: Request, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        _engine(request).delete_task(task_id, owner_id)
        return {"task_id": task_id, "deleted": True}

    @app.get("/tasks/{task_id}/steps", response_model=StepListResponse)
    def get_steps(
        task_id: str,
        request: Request,
        owner_id: str = Depends(_owner),
        limit: int | None = Query(default=None, ge=1),
    ) -> StepListResponse:
        steps = _engine(request).get_steps(task_id, owner_id, limit=limit)
        return StepListResponse(task_id=task_id, steps=steps)

    @app.get("/tasks/{task_id}/checkpoints", response_model=CheckpointListResponse)
    def get_checkpoints(task_id: str, request: Request, owner_id: str = Depends(_owner)) -> CheckpointListResponse:
        checkpoints = _engine(request).get_checkpoints(task_id, owner_id)
        return CheckpointListResponse(task_id=task_id, checkpoints=checkpoints)

    @app.post("/tasks/{task_id}/pause", response_model=Task)
    def pause_task(task_id: str, request: Request, owner_id: str = Depends(_owner)) -> Task:
        return _engine(request).pause(task_id, owner_id)

    @app.post("/tasks/{task_id}/resume", response_model=Task)
    def resume_task(task_id: str, request: Request, owner_id: str = Depends(_owner)) -> Task:
        return _engine(request).resume(task_id, owner_id)

    @app.post("/tasks/{task_id}/cancel", response_model=Task)
    def cancel_task(task_id: str, request: Request, owner_id: str = Depends(_owner)) -> Task:
        return _engine(request).cancel(task_id, owner_id)

    @app.post("/tasks/{task_id}/confirm", response_model=Task)
    def confirm_task(task_id: str, request: Request, owner_id: str = Depends(_owner)) -> Task:
        return _engine(request).confirm(task_id, owner_id)

    @app.post("/tasks/{task_id}/reject", response_model=Task)
    def reject_task(
        task_id: str,
        request: Request,
        payload: RejectRequest | None = None,
        owner_id: str = Depends(_owner),
    ) -> Task:
        reason = payload.reason if payload is not None else None
        return _engine(request).reject(task_id, owner_id, reason=reason)

    @app.post("/tasks/{task_id}/restore", response_model=Task)
    def restore_task(
        task_id: str,
        request: Request,
        payload: RestoreRequest | None = None,
        owner_id: str = Depends(_owner),
    ) -> Task:
        checkpoint_id = payload.checkpoint_id if payload is not None else None
        return _engine(request).restore(task_id, checkpoint_id, owner_id)

    @app.get("/admin/stats", dependencies=[Depends(_admin)])
    def admin_stats(request: Request) -> dict[str, Any]:
        return _engine(request).stats()

    @app.get("/admin/worker", dependencies=[Depends(_admin)])
    def admin_worker_status(request: Request) -> dict[str, Any]:
        return _engine(request).worker_status()

    @app.post("/admin/worker/start", dependencies=[Depends(_admin)])
    def admin_worker_start(request: Request) -> dict[str, Any]:
        return _engine(request).start_worker()

    @app.post("/admin/worker/stop", dependencies=[Depends(_admin)])
    def admin_worker_stop(request: Request) -> dict[str, Any]:
        return _engine(request).stop_worker()

    @app.post("/admin/run-pending", dependencies=[Depends(_admin)])
    def admin_run_pending(request: Request) -> dict[str, Any]:
        return {"processed": _engine(request).run_pending()}

    @app.post("/admin/cleanup", dependencies=[Depends(_admin)])
    def admin_cleanup(
        request: Request,
        older_than_days: float = Query(default=7.0, ge=0.0),
    ) -> dict[str, Any]:
        return {"removed": _engine(request).cleanup(older_than_days)}

    return app


def _error_handler(status_code: int):
    async def _handle(request: Request, exc: Exception) -> JSONResponse:
        logger.info(
            "api_error status=%s error_type=%s path=%s detail=%s",
            status_code,
            type(exc).__name__,
            request.url.path,
            exc,
        )
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "error_type": type(exc).__name__},
        )

    return _handle


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "agent_engine.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
