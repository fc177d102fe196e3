"""Storage backends and the tool result cache."""

from agent_engine.storage.base import TaskStorage
from agent_engine.storage.cache import CacheStats, TTLCache
from agent_engine.storage.memory import InMemoryTaskStorage
from agent_engine.storage.postgres import PostgresTaskStorage

__all__ = [
    "CacheStats",
    "InMemoryTaskStorage",
    "PostgresTaskStorage",
    "TTLCache",
    "TaskStorage",
]
