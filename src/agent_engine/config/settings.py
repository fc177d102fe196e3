"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_engine.models import TaskConfig

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "agent-engine"
    app_env: str = "dev"
    app_debug: bool = False
    log_level: str = "INFO"
    api_host: str = "127.0.0.1"
    api_port: int = Field(default=8000, ge=1, le=65535)

    storage_backend: str = "memory"
    database_url: str = ""

    worker_autostart: bool = False
    worker_poll_interval_s: float = Field(default=1.0, gt=0.0)
    worker_max_concurrent_tasks: int = Field(default=2, ge=1)
    worker_lease_s: float = Field(default=120.0, ge=1.0)

    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=60.0, ge=0.5)
    llm_max_retries: int = Field(default=3, ge=0)
    llm_backoff_s: float = Field(default=1.0, ge=0.0)
    llm_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=2048, ge=1)
    openai_api_key: str = ""

    tool_timeout_s: float = Field(default=60.0, ge=0.01)
    tool_output_max_chars: int = Field(default=2000, ge=100)
    shell_timeout_s: float = Field(default=30.0, ge=0.1)
    workspace_root: Path = PROJECT_ROOT / ".workspaces"

    context_recent_steps: int = Field(default=10, ge=1)

    cache_ttl_s: float = Field(default=600.0, gt=0.0)
    cache_max_entries: int = Field(default=1000, ge=1)

    task_max_iterations: int = Field(default=100, ge=1, le=500)
    task_max_tool_calls: int = Field(default=150, ge=1, le=500)
    task_timeout_s: float = Field(default=1800.0, ge=60.0, le=3600.0)
    task_confirmation_timeout_s: float = Field(default=3600.0, gt=0.0)

    model_config = SettingsConfigDict(
        env_prefix="AGENT_ENGINE_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def task_defaults(self) -> TaskConfig:
        return TaskConfig(
            max_iterations=self.task_max_iterations,
            max_tool_calls=self.task_max_tool_calls,
            timeout_s=self.task_timeout_s,
            confirmation_timeout_s=self.task_confirmation_timeout_s,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
