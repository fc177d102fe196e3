import time

import pytest

from agent_engine.errors import DuplicateToolError, UnknownToolError
from agent_engine.models import ToolResult
from agent_engine.storage.cache import TTLCache
from agent_engine.tools.registry import TRUNCATION_SUFFIX, ToolRegistry, ToolSpec
from agent_engine.tools.schemas import ToolContext, ToolParameter

CONTEXT = ToolContext(owner_id="owner-1", session_id="task-1")


def _echo(args, context):
    return ToolResult(success=True, output=f"{args['text']}|{args['repeat']}|{context.owner_id}")


def _echo_spec(**overrides) -> ToolSpec:
    values = {
        "name": "echo",
        "description": "Echo text back",
        "fn": _echo,
        "category": "data",
        "parameters": (
            ToolParameter(name="text", type="string", description="Text", required=True),
            ToolParameter(name="repeat", type="integer", description="Times", default=1),
        ),
    }
    values.update(overrides)
    return ToolSpec(**values)


def test_register_rejects_duplicate_names() -> None:
    registry = ToolRegistry()
    registry.register(_echo_spec())

    with pytest.raises(DuplicateToolError):
        registry.register(_echo_spec())


def test_execute_unknown_tool_raises() -> None:
    registry = ToolRegistry()

    with pytest.raises(UnknownToolError):
        registry.execute("missing", {}, CONTEXT)


def test_execute_applies_defaults_and_passes_context() -> None:
    registry = ToolRegistry()
    registry.register(_echo_spec())

    result = registry.execute("echo", {"text": "hi"}, CONTEXT)

    assert result.success is True
    assert result.output == "hi|1|owner-1"
    assert result.metadata["cached"] is False
    assert result.metadata["duration_ms"] >= 0


def test_missing_required_parameter_is_a_failed_result() -> None:
    registry = ToolRegistry()
    registry.register(_echo_spec())

    result = registry.execute("echo", {}, CONTEXT)

    assert result.success is False
    assert "missing required parameter 'text'" in result.error


def test_unexpected_parameter_is_a_failed_result() -> None:
    registry = ToolRegistry()
    registry.register(_echo_spec())

    result = registry.execute("echo", {"text": "hi", "bogus": True}, CONTEXT)

    assert result.success is False
    assert "bogus" in result.error


def test_executor_exception_never_escapes() -> None:
    def explode(args, context):
        raise RuntimeError("kaboom")

    registry = ToolRegistry()
    registry.register(ToolSpec(name="explode", description="Always fails", fn=explode))

    result = registry.execute("explode", {}, CONTEXT)

    assert result.success is False
    assert result.error == "RuntimeError: kaboom"


def test_executor_timeout_becomes_failed_result() -> None:
    def slow(args, context):
        time.sleep(0.3)
        return "too slow"

    registry = ToolRegistry()
    registry.register(ToolSpec(name="slow", description="Sleeps", fn=slow, timeout_s=0.02))

    started = time.perf_counter()
    result = registry.execute("slow", {}, CONTEXT)

    assert result.success is False
    assert "timed out" in result.error
    assert time.perf_counter() - started < 0.25


def test_plain_return_values_are_normalized() -> None:
    registry = ToolRegistry()
    registry.register(ToolSpec(name="text", description="", fn=lambda args, context: "plain"))
    registry.register(ToolSpec(name="data", description="", fn=lambda args, context: {"a": 1}))

    assert registry.execute("text", {}, CONTEXT).output == "plain"
    assert registry.execute("data", {}, CONTEXT).output == '{"a": 1}'


def test_output_is_truncated() -> None:
    registry = ToolRegistry(output_max_chars=100)
    registry.register(ToolSpec(name="big", description="", fn=lambda args, context: "x" * 500))

    result = registry.execute("big", {}, CONTEXT)

    assert result.output == "x" * 100 + TRUNCATION_SUFFIX


def test_cacheable_tools_are_served_from_cache() -> None:
    calls: list[str] = []

    def lookup(args, context):
        calls.append(args["text"])
        return f"value for {args['text']}"

    registry = ToolRegistry(cache=TTLCache())
    registry.register(
        ToolSpec(
            name="lookup",
            description="",
            fn=lookup,
            cacheable=True,
            parameters=(ToolParameter(name="text", required=True),),
        )
    )

    first = registry.execute("lookup", {"text": "a"}, CONTEXT)
    second = registry.execute("lookup", {"text": "a"}, CONTEXT)

    assert calls == ["a"]
    assert first.metadata["cached"] is False
    assert second.metadata["cached"] is True
    assert second.output == first.output


def test_failed_results_are_not_cached() -> None:
    calls: list[int] = []

    def flaky(args, context):
        calls.append(1)
        return ToolResult(success=False, error="nope")

    registry = ToolRegistry(cache=TTLCache())
    registry.register(ToolSpec(name="flaky", description="", fn=flaky, cacheable=True))

    registry.execute("flaky", {}, CONTEXT)
    registry.execute("flaky", {}, CONTEXT)

    assert len(calls) == 2


def test_descriptors_schema_and_prompt_rendering() -> None:
    registry = ToolRegistry()
    registry.register(_echo_spec())
    registry.register(
        ToolSpec(name="danger", description="Risky", fn=_echo, category="system", requires_confirmation=True)
    )

    descriptors = registry.list_all()
    assert [descriptor.name for descriptor in descriptors] == ["danger", "echo"]
    assert not hasattr(descriptors[0], "fn")
    assert [d.name for d in registry.list_by_category("data")] == ["echo"]

    schema = registry.tools_schema()
    echo_schema = next(item for item in schema if item["function"]["name"] == "echo")
    assert echo_schema["type"] == "function"
    assert echo_schema["function"]["parameters"]["required"] == ["text"]
    assert echo_schema["function"]["parameters"]["properties"]["repeat"]["type"] == "integer"

    prompt = registry.describe_for_prompt()
    assert "### echo" in prompt
    assert "- text (string, required): Text" in prompt
    assert "Requires confirmation: yes" in prompt
