"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
import threading
from collections.abc import Collection
from datetime import datetime
from typing import Any

from agent_engine.models import (
    AgentState,
    Checkpoint,
    Step,
    Task,
    TaskConfig,
    TaskStatus,
    ToolResult,
    utcnow,
)

# Task fields that may be changed through update_task, mapped to their columns.
_TASK_COLUMNS: dict[str, str] = {
    "status": "status",
    "priority": "priority",
    "config": "config_json",
    "result": "result",
    "error": "error",
    "error_type": "error_type",
    "claimed_by": "claimed_by",
    "lease_expires_at": "lease_expires_at",
    "pause_requested": "pause_requested",
    "cancel_requested": "cancel_requested",
    "resume_requested": "resume_requested",
    "confirmation": "confirmation",
    "started_at": "started_at",
    "completed_at": "completed_at",
}

# Mirrors agent_engine.models.is_claimable; parameters: (now,).
_CLAIMABLE_SQL = """
    (
        status = 'pending'
        OR (status = 'waiting' AND confirmation = 'approved')
        OR (status = 'paused' AND resume_requested)
        OR (status = 'running' AND (lease_expires_at IS NULL OR lease_expires_at < %s))
    )
"""


class PostgresTaskStorage:
    """Persist tasks, steps and checkpoints in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("AGENT_ENGINE_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_tasks (
                    task_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    goal TEXT NOT NULL,
                    config_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    status TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 0,
                    result TEXT,
                    error TEXT,
                    error_type TEXT,
                    claimed_by TEXT,
                    lease_expires_at TIMESTAMPTZ,
                    pause_requested BOOLEAN NOT NULL DEFAULT FALSE,
                    cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
                    resume_requested BOOLEAN NOT NULL DEFAULT FALSE,
                    confirmation TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    started_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agent_tasks_status
                ON agent_tasks(status)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agent_tasks_owner
                ON agent_tasks(owner_id, created_at DESC)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_steps (
                    step_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES agent_tasks(task_id) ON DELETE CASCADE,
                    sequence INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    content TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL,
                    tool_name TEXT,
                    tool_args_json JSONB,
                    tool_result_json JSONB,
                    started_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ,
                    duration_s DOUBLE PRECISION,
                    UNIQUE (task_id, sequence)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_checkpoints (
                    checkpoint_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES agent_tasks(task_id) ON DELETE CASCADE,
                    sequence INTEGER NOT NULL,
                    iteration INTEGER NOT NULL,
                    tool_calls INTEGER NOT NULL,
                    last_step_sequence INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    state_json JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    UNIQUE (task_id, sequence)
                )
                """)
            conn.commit()

    def insert_task(self, task: Task) -> Task:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO agent_tasks (
                    task_id,
                    owner_id,
                    goal,
                    config_json,
                    status,
                    priority,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    task.task_id,
                    task.owner_id,
                    task.goal,
                    self._json_wrapper(task.config.model_dump(mode="json")),
                    task.status,
                    task.priority,
                    task.created_at,
                    task.updated_at,
                ),
            )
            conn.commit()
        created = self.get_task(task.task_id)
        if created is None:
            raise RuntimeError("Failed to load created task")
        return created

    def get_task(self, task_id: str) -> Task | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM agent_tasks WHERE task_id = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def update_task(
        self,
        task_id: str,
        *,
        expected_status: Collection[TaskStatus] | None = None,
        expected_claim: str | None = None,
        **changes: Any,
    ) -> Task | None:
        assignments: list[str] = []
        params: list[Any] = []
        for field_name, value in changes.items():
            column = _TASK_COLUMNS.get(field_name)
            if column is None:
                raise ValueError(f"Unsupported task field: {field_name}")
            assignments.append(f"{column} = %s")
            params.append(self._column_value(field_name, value))
        assignments.append("updated_at = %s")
        params.append(utcnow())

        where = "task_id = %s"
        params.append(task_id)
        if expected_status is not None:
            where += " AND status = ANY(%s)"
            params.append(list(expected_status))
        if expected_claim is not None:
            where += " AND claimed_by = %s"
            params.append(expected_claim)

        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"UPDATE agent_tasks SET {', '.join(assignments)} WHERE {where} RETURNING *",
                tuple(params),
            ).fetchone()
            conn.commit()
        if row is None:
            return None
        return self._row_to_task(row)

    def claim_task(
        self,
        task_id: str,
        *,
        worker_id: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> Task | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE agent_tasks
                SET status = 'running',
                    claimed_by = %s,
                    lease_expires_at = %s,
                    resume_requested = FALSE,
                    started_at = COALESCE(started_at, %s),
                    updated_at = %s
                WHERE task_id = %s AND {_CLAIMABLE_SQL}
                RETURNING *
                """,
                (worker_id, lease_expires_at, now, now, task_id, now),
            ).fetchone()
            conn.commit()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_tasks(
        self,
        *,
        owner_id: str | None = None,
        statuses: Collection[TaskStatus] | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        clauses: list[str] = []
        params: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = %s")
            params.append(owner_id)
        if statuses is not None:
            clauses.append("status = ANY(%s)")
            params.append(list(statuses))
        query = "SELECT * FROM agent_tasks"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_task(row) for row in rows]

    def list_claimable(self, *, now: datetime, limit: int | None = None) -> list[Task]:
        query = f"""
            SELECT *
            FROM agent_tasks
            WHERE {_CLAIMABLE_SQL}
            ORDER BY priority DESC, created_at ASC
            """
        params: list[Any] = [now]
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_task(row) for row in rows]

    def delete_task(self, task_id: str) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "DELETE FROM agent_tasks WHERE task_id = %s RETURNING task_id",
                (task_id,),
            ).fetchone()
            conn.commit()
        return row is not None

    def append_step(self, step: Step) -> Step:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO agent_steps (
                    step_id,
                    task_id,
                    sequence,
                    type,
                    content,
                    status,
                    tool_name,
                    tool_args_json,
                    tool_result_json,
                    started_at,
                    completed_at,
                    duration_s
                )
                SELECT %s, %s, COALESCE(MAX(sequence), 0) + 1, %s, %s, %s, %s, %s, %s, %s, %s, %s
                FROM agent_steps
                WHERE task_id = %s
                RETURNING *
                """,
                (
                    step.step_id,
                    step.task_id,
                    step.type,
                    step.content,
                    step.status,
                    step.tool_name,
                    self._json_wrapper(step.tool_args) if step.tool_args is not None else None,
                    (
                        self._json_wrapper(step.tool_result.model_dump(mode="json"))
                        if step.tool_result is not None
                        else None
                    ),
                    step.started_at,
                    step.completed_at,
                    step.duration_s,
                    step.task_id,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist step")
        return self._row_to_step(row)

    def list_steps(self, task_id: str, *, limit: int | None = None) -> list[Step]:
        with self._lock, self._connect() as conn:
            if limit is None:
                rows = conn.execute(
                    "SELECT * FROM agent_steps WHERE task_id = %s ORDER BY sequence ASC",
                    (task_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM (
                        SELECT * FROM agent_steps
                        WHERE task_id = %s
                        ORDER BY sequence DESC
                        LIMIT %s
                    ) recent
                    ORDER BY sequence ASC
                    """,
                    (task_id, max(limit, 0)),
                ).fetchall()
        return [self._row_to_step(row) for row in rows]

    def delete_steps_after(self, task_id: str, sequence: int) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM agent_steps WHERE task_id = %s AND sequence > %s",
                (task_id, sequence),
            )
            conn.commit()
        return int(cursor.rowcount or 0)

    def insert_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO agent_checkpoints (
                    checkpoint_id,
                    task_id,
                    sequence,
                    iteration,
                    tool_calls,
                    last_step_sequence,
                    reason,
                    state_json,
                    created_at
                )
                SELECT %s, %s, COALESCE(MAX(sequence), 0) + 1, %s, %s, %s, %s, %s, %s
                FROM agent_checkpoints
                WHERE task_id = %s
                RETURNING *
                """,
                (
                    checkpoint.checkpoint_id,
                    checkpoint.task_id,
                    checkpoint.iteration,
                    checkpoint.tool_calls,
                    checkpoint.last_step_sequence,
                    checkpoint.reason,
                    self._json_wrapper(checkpoint.state.model_dump(mode="json")),
                    checkpoint.created_at,
                    checkpoint.task_id,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist checkpoint")
        return self._row_to_checkpoint(row)

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM agent_checkpoints WHERE checkpoint_id = %s",
                (checkpoint_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_checkpoint(row)

    def list_checkpoints(self, task_id: str) -> list[Checkpoint]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM agent_checkpoints WHERE task_id = %s ORDER BY sequence DESC",
                (task_id,),
            ).fetchall()
        return [self._row_to_checkpoint(row) for row in rows]

    def delete_checkpoints_after(self, task_id: str, sequence: int) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM agent_checkpoints WHERE task_id = %s AND sequence > %s",
                (task_id, sequence),
            )
            conn.commit()
        return int(cursor.rowcount or 0)

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    def _column_value(self, field_name: str, value: Any) -> Any:
        if field_name == "config":
            config = value if isinstance(value, TaskConfig) else TaskConfig.model_validate(value)
            return self._json_wrapper(config.model_dump(mode="json"))
        return value

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        if isinstance(raw, str):
            parsed = json.loads(raw)
        else:
            parsed = raw
        if isinstance(parsed, dict):
            return parsed
        return None

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _parse_datetime_optional(cls, raw: Any) -> datetime | None:
        if raw is None:
            return None
        return cls._parse_datetime(raw)

    @classmethod
    def _row_to_task(cls, row: Any) -> Task:
        return Task(
            task_id=str(row["task_id"]),
            owner_id=str(row["owner_id"]),
            goal=row["goal"],
            config=TaskConfig.model_validate(cls._parse_json_optional(row["config_json"]) or {}),
            status=row["status"],
            priority=int(row["priority"]),
            result=row["result"],
            error=row["error"],
            error_type=row["error_type"],
            claimed_by=row["claimed_by"],
            lease_expires_at=cls._parse_datetime_optional(row["lease_expires_at"]),
            pause_requested=bool(row["pause_requested"]),
            cancel_requested=bool(row["cancel_requested"]),
            resume_requested=bool(row["resume_requested"]),
            confirmation=row["confirmation"],
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
            started_at=cls._parse_datetime_optional(row["started_at"]),
            completed_at=cls._parse_datetime_optional(row["completed_at"]),
        )

    @classmethod
    def _row_to_step(cls, row: Any) -> Step:
        tool_result = cls._parse_json_optional(row["tool_result_json"])
        return Step(
            step_id=str(row["step_id"]),
            task_id=str(row["task_id"]),
            sequence=int(row["sequence"]),
            type=row["type"],
            content=row["content"] or "",
            status=row["status"],
            tool_name=row["tool_name"],
            tool_args=cls._parse_json_optional(row["tool_args_json"]),
            tool_result=ToolResult.model_validate(tool_result) if tool_result is not None else None,
            started_at=cls._parse_datetime(row["started_at"]),
            completed_at=cls._parse_datetime_optional(row["completed_at"]),
            duration_s=row["duration_s"],
        )

    @classmethod
    def _row_to_checkpoint(cls, row: Any) -> Checkpoint:
        return Checkpoint(
            checkpoint_id=str(row["checkpoint_id"]),
            task_id=str(row["task_id"]),
            sequence=int(row["sequence"]),
            iteration=int(row["iteration"]),
            tool_calls=int(row["tool_calls"]),
            last_step_sequence=int(row["last_step_sequence"]),
            reason=str(row["reason"]),
            state=AgentState.model_validate(cls._parse_json_optional(row["state_json"]) or {}),
            created_at=cls._parse_datetime(row["created_at"]),
        )
