"""Tool registry: lookup table of ToolSpec entries plus guarded execution."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, create_model
from pydantic import ValidationError as PydanticValidationError

from agent_engine.errors import DuplicateToolError, UnknownToolError
from agent_engine.models import ToolResult
from agent_engine.storage.cache import TTLCache
from agent_engine.tools.schemas import (
    ToolCategory,
    ToolContext,
    ToolDescriptor,
    ToolParameter,
)

logger = logging.getLogger(__name__)

ToolExecutorFn = Callable[[dict[str, Any], ToolContext], Any]

_PYTHON_TYPES: dict[str, Any] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
    "object": dict[str, Any],
    "array": list[Any],
}

TRUNCATION_SUFFIX = "\n... [output truncated]"


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    fn: ToolExecutorFn
    parameters: tuple[ToolParameter, ...] = ()
    category: ToolCategory = "system"
    requires_confirmation: bool = False
    cacheable: bool = False
    timeout_s: float | None = None

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            category=self.category,
            parameters=[parameter.model_copy() for parameter in self.parameters],
            requires_confirmation=self.requires_confirmation,
            cacheable=self.cacheable,
            timeout_s=self.timeout_s,
        )


class ToolRegistry:
    """Register tools at start-up and execute them without ever raising for tool faults.

    Only an unknown tool name raises (`UnknownToolError`); validation errors,
    executor exceptions and timeouts all come back as `ToolResult(success=False)`.
    """

    def __init__(
        self,
        *,
        default_timeout_s: float = 60.0,
        output_max_chars: int = 2000,
        cache: TTLCache | None = None,
    ) -> None:
        self.default_timeout_s = default_timeout_s
        self.output_max_chars = output_max_chars
        self.cache = cache
        self._lock = threading.Lock()
        self._specs: dict[str, ToolSpec] = {}
        self._input_models: dict[str, type[BaseModel]] = {}

    def register(self, spec: ToolSpec) -> None:
        with self._lock:
            if spec.name in self._specs:
                raise DuplicateToolError(spec.name)
            self._input_models[spec.name] = _build_input_model(spec)
            self._specs[spec.name] = spec
        logger.debug("tool_registry event=register tool=%s category=%s", spec.name, spec.category)

    def register_many(self, specs: Iterable[ToolSpec]) -> None:
        for spec in specs:
            self.register(spec)

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def names(self) -> list[str]:
        return sorted(self._specs)

    def list_all(self) -> list[ToolDescriptor]:
        return [self._specs[name].descriptor() for name in self.names()]

    def list_by_category(self, category: ToolCategory) -> list[ToolDescriptor]:
        return [descriptor for descriptor in self.list_all() if descriptor.category == category]

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def execute(self, name: str, args: dict[str, Any] | None, context: ToolContext) -> ToolResult:
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownToolError(name)

        started_at = time.perf_counter()
        try:
            payload = self._input_models[name].model_validate(dict(args or {}))
        except PydanticValidationError as exc:
            return self._failure(
                name,
                f"Invalid arguments: {_format_validation_error(exc)}",
                started_at,
            )
        call_args = payload.model_dump()

        cache_key = _cache_key(name, call_args) if spec.cacheable and self.cache is not None else None
        if cache_key is not None:
            cached = self.cache.get(cache_key)
            if isinstance(cached, ToolResult):
                logger.info("tool_execute event=cache_hit tool=%s task_id=%s", name, context.session_id)
                return cached.model_copy(
                    deep=True,
                    update={"metadata": {**cached.metadata, "cached": True}},
                )

        logger.info("tool_execute event=start tool=%s task_id=%s", name, context.session_id)
        timeout_s = spec.timeout_s if spec.timeout_s is not None else self.default_timeout_s
        try:
            raw = self._run_with_timeout(spec, call_args, context, timeout_s)
            result = _normalize_result(raw)
        except FutureTimeoutError:
            return self._failure(
                name,
                f"TimeoutError: Tool '{name}' timed out after {timeout_s:.2f}s",
                started_at,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "tool_execute event=error tool=%s task_id=%s error=%s",
                name,
                context.session_id,
                exc,
            )
            return self._failure(name, f"{type(exc).__name__}: {exc}", started_at)

        result = result.model_copy(
            update={
                "output": self._truncate(result.output),
                "metadata": {
                    **result.metadata,
                    "duration_ms": _duration_ms(started_at),
                    "cached": False,
                },
            }
        )
        if cache_key is not None and result.success:
            self.cache.set(cache_key, result)
        logger.info(
            "tool_execute event=done tool=%s task_id=%s success=%s duration_ms=%s",
            name,
            context.session_id,
            result.success,
            result.metadata["duration_ms"],
        )
        return result

    def describe_for_prompt(self) -> str:
        blocks: list[str] = []
        for descriptor in self.list_all():
            lines = [f"### {descriptor.name}", descriptor.description, f"Category: {descriptor.category}"]
            if descriptor.requires_confirmation:
                lines.append("Requires confirmation: yes")
            lines.append("Parameters:")
            if not descriptor.parameters:
                lines.append("  (none)")
            for parameter in descriptor.parameters:
                requirement = "required" if parameter.required else "optional"
                line = f"  - {parameter.name} ({parameter.type}, {requirement}): {parameter.description}"
                if not parameter.required and parameter.default is not None:
                    line += f" [default: {parameter.default!r}]"
                lines.append(line)
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)

    def tools_schema(self) -> list[dict[str, Any]]:
        schema: list[dict[str, Any]] = []
        for descriptor in self.list_all():
            schema.append(
                {
                    "type": "function",
                    "function": {
                        "name": descriptor.name,
                        "description": descriptor.description,
                        "parameters": {
                            "type": "object",
                            "properties": {
                                parameter.name: {
                                    "type": parameter.type,
                                    "description": parameter.description,
                                }
                                for parameter in descriptor.parameters
                            },
                            "required": [
                                parameter.name
                                for parameter in descriptor.parameters
                                if parameter.required
                            ],
                        },
                    },
                }
            )
        return schema

    def _run_with_timeout(
        self,
        spec: ToolSpec,
        args: dict[str, Any],
        context: ToolContext,
        timeout_s: float,
    ) -> Any:
        # Not a context manager: exiting one would block on a hung executor.
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"tool-{spec.name}")
        try:
            future = pool.submit(spec.fn, args, context)
            return future.result(timeout=timeout_s)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _truncate(self, output: str) -> str:
        if len(output) <= self.output_max_chars:
            return output
        return output[: self.output_max_chars] + TRUNCATION_SUFFIX

    @staticmethod
    def _failure(name: str, error: str, started_at: float) -> ToolResult:
        logger.info("tool_execute event=failed tool=%s error=%s", name, error)
        return ToolResult(
            success=False,
            output="",
            error=error,
            metadata={"duration_ms": _duration_ms(started_at), "cached": False},
        )


def _build_input_model(spec: ToolSpec) -> type[BaseModel]:
    fields: dict[str, Any] = {}
    for parameter in spec.parameters:
        python_type = _PYTHON_TYPES[parameter.type]
        if parameter.required:
            fields[parameter.name] = (python_type, ...)
        else:
            fields[parameter.name] = (python_type | None, parameter.default)
    model_name = "".join(part.title() for part in spec.name.split("_")) + "Input"
    return create_model(
        model_name,
        __config__=ConfigDict(extra="forbid"),
        **fields,
    )


def _normalize_result(raw: Any) -> ToolResult:
    if isinstance(raw, ToolResult):
        return raw
    if raw is None:
        return ToolResult(success=True, output="")
    if isinstance(raw, str):
        return ToolResult(success=True, output=raw)
    return ToolResult(success=True, output=json.dumps(raw, ensure_ascii=True, default=str))


def _format_validation_error(exc: PydanticValidationError) -> str:
    parts: list[str] = []
    for item in exc.errors():
        location = ".".join(str(segment) for segment in item.get("loc", ())) or "args"
        if item.get("type") == "missing":
            parts.append(f"missing required parameter '{location}'")
        else:
            parts.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "; ".join(parts)


def _cache_key(name: str, args: dict[str, Any]) -> str:
    return f"tool:{name}:{json.dumps(args, sort_keys=True, default=str)}"


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
