"""Strict Pydantic schemas describing tools and their parameters."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ToolCategory = Literal["code", "web", "file", "data", "system"]
ParameterType = Literal["string", "number", "integer", "boolean", "object", "array"]


class StrictModel(BaseModel):
    """Base model for strict schema validation."""

    model_config = ConfigDict(extra="forbid")


class ToolParameter(StrictModel):
    name: str
    type: ParameterType = "string"
    description: str = ""
    required: bool = False
    default: Any = None


class ToolDescriptor(StrictModel):
    """Public view of a registered tool; never carries the executor."""

    name: str
    description: str
    category: ToolCategory = "system"
    parameters: list[ToolParameter] = Field(default_factory=list)
    requires_confirmation: bool = False
    cacheable: bool = False
    timeout_s: float | None = None


@dataclass(frozen=True)
class ToolContext:
    """Execution context handed to every tool executor."""

    owner_id: str
    # Task id of the run issuing the call.
    session_id: str
    workspace_root: Path | None = None
    extras: dict[str, Any] = field(default_factory=dict)
