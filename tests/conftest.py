from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from agent_engine.api.main import create_app
from agent_engine.config.settings import Settings
from agent_engine.engine.service import AgentEngine, build_engine
from agent_engine.llm.base import LLMResponse
from agent_engine.storage.memory import InMemoryTaskStorage
from agent_engine.tools.registry import ToolRegistry


class ScriptedLanguageModel:
    """Test double that replays canned responses (or raises canned errors) in order."""

    def __init__(self, responses: list[str | Exception] | None = None, default: str | None = None) -> None:
        self.responses = list(responses or [])
        self.default = default
        self.calls: list[list[dict[str, str]]] = []

    def invoke(
        self,
        messages: list[dict[str, str]],
        *,
        response_format: dict[str, Any] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        self.calls.append(messages)
        if self.responses:
            item = self.responses.pop(0)
        elif self.default is not None:
            item = self.default
        else:
            raise AssertionError("ScriptedLanguageModel ran out of responses")
        if isinstance(item, Exception):
            raise item
        return LLMResponse(content=item, model="scripted")


def tool_call_json(tool_name: str, **tool_args: Any) -> str:
    return json.dumps(
        {
            "thought": f"use {tool_name}",
            "action": {"type": "tool_call", "tool_name": tool_name, "tool_args": tool_args},
        }
    )


def answer_json(content: str) -> str:
    return json.dumps({"thought": "done", "action": {"type": "answer", "content": content}})


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        storage_backend="memory",
        workspace_root=tmp_path / "workspaces",
        llm_backoff_s=0.0,
        worker_poll_interval_s=0.01,
        log_level="WARNING",
    )


@pytest.fixture
def scripted_llm() -> type[ScriptedLanguageModel]:
    return ScriptedLanguageModel


@pytest.fixture
def llm_json() -> dict[str, Callable[..., str]]:
    return {"tool_call": tool_call_json, "answer": answer_json}


@pytest.fixture
def make_engine(settings: Settings) -> Callable[..., tuple[AgentEngine, ScriptedLanguageModel]]:
    def _make(
        responses: list[str | Exception] | None = None,
        *,
        default: str | None = None,
        registry: ToolRegistry | None = None,
        settings_override: Settings | None = None,
    ) -> tuple[AgentEngine, ScriptedLanguageModel]:
        llm = ScriptedLanguageModel(responses, default=default)
        engine = build_engine(
            settings_override or settings,
            storage=InMemoryTaskStorage(),
            llm=llm,
            registry=registry,
            sleep=lambda _: None,
        )
        return engine, llm

    return _make


@pytest.fixture
def api_client(settings: Settings) -> tuple[TestClient, ScriptedLanguageModel]:
    llm = ScriptedLanguageModel(default=answer_json("DONE"))
    app = create_app(storage=InMemoryTaskStorage(), settings_override=settings, llm=llm)
    return TestClient(app), llm
