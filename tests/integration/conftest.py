from __future__ import annotations

import os
import uuid
from collections.abc import Iterator

import pytest

from agent_engine.storage.postgres import PostgresTaskStorage


@pytest.fixture
def postgres_storage() -> Iterator[PostgresTaskStorage]:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and AGENT_ENGINE_DATABASE_URL "
            "to run integration tests against PostgreSQL."
        )
    database_url = os.getenv("AGENT_ENGINE_DATABASE_URL")
    if not database_url:
        pytest.skip("AGENT_ENGINE_DATABASE_URL is required for integration tests.")

    storage = PostgresTaskStorage(database_url)
    storage.migrate()
    yield storage


@pytest.fixture
def owner_id(postgres_storage: PostgresTaskStorage) -> Iterator[str]:
    owner = f"it-{uuid.uuid4().hex[:12]}"
    yield owner
    for task in postgres_storage.list_tasks(owner_id=owner):
        postgres_storage.delete_task(task.task_id)
