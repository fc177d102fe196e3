"""Tooling layer: registry, schemas and built-in tools."""

from agent_engine.tools.builtin import build_default_registry, default_tool_specs
from agent_engine.tools.registry import ToolRegistry, ToolSpec
from agent_engine.tools.schemas import ToolContext, ToolDescriptor, ToolParameter

__all__ = [
    "ToolContext",
    "ToolDescriptor",
    "ToolParameter",
    "ToolRegistry",
    "ToolSpec",
    "build_default_registry",
    "default_tool_specs",
]
