"""Tagged union of model actions and the parser that produces them."""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError


class _ActionModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class AnswerAction(_ActionModel):
    type: Literal["answer"] = "answer"
    content: str
    thought: str = ""


class ToolCallAction(_ActionModel):
    type: Literal["tool_call"] = "tool_call"
    tool_name: str = Field(min_length=1)
    tool_args: dict[str, Any] = Field(default_factory=dict)
    thought: str = ""


class ThoughtAction(_ActionModel):
    type: Literal["thought"] = "thought"
    content: str


AgentAction = Annotated[
    AnswerAction | ToolCallAction | ThoughtAction,
    Field(discriminator="type"),
]

_ACTION_ADAPTER: TypeAdapter[AgentAction] = TypeAdapter(AgentAction)

_KEY_ALIASES: dict[str, str] = {
    "tool": "tool_name",
    "name": "tool_name",
    "args": "tool_args",
    "arguments": "tool_args",
    "parameters": "tool_args",
    "answer": "content",
    "final_answer": "content",
}


def parse_action(text: str) -> AgentAction:
    """Turn raw model output into an action.

    Text without a JSON object is treated as the final answer. A JSON object
    that does not describe a valid action becomes a thought carrying the
    validation error, so the next iteration can correct itself.
    """
    raw = text.strip()
    payload = _first_json_object(raw)
    if payload is None:
        return AnswerAction(content=raw)

    normalized = _normalize(payload)
    try:
        return _ACTION_ADAPTER.validate_python(normalized)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in item['loc']) or 'action'}: {item['msg']}"
            for item in exc.errors()
        )
        return ThoughtAction(content=f"Model returned an invalid action ({problems}): {raw[:500]}")


def _first_json_object(text: str) -> dict[str, Any] | None:
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            parsed, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(parsed, dict):
            return parsed
        start = text.find("{", start + 1)
    return None


def _normalize(payload: dict[str, Any]) -> dict[str, Any]:
    thought = payload.get("thought") or payload.get("thinking") or ""
    nested = payload.get("action")
    if isinstance(nested, dict):
        body = dict(nested)
    else:
        body = dict(payload)
        body.pop("thinking", None)
        if isinstance(nested, str) and "type" not in body:
            body["type"] = nested
        body.pop("action", None)

    for alias, canonical in _KEY_ALIASES.items():
        if alias in body and canonical not in body:
            body[canonical] = body.pop(alias)

    if "type" not in body:
        if "tool_name" in body:
            body["type"] = "tool_call"
        elif "content" in body:
            body["type"] = "answer"
        else:
            body["type"] = "thought"

    if body["type"] == "thought":
        body.setdefault("content", body.pop("thought", None) or thought)
    else:
        body.setdefault("thought", thought if isinstance(thought, str) else str(thought))
    if body["type"] == "answer" and body.get("content") is not None and not isinstance(body["content"], str):
        body["content"] = json.dumps(body["content"], ensure_ascii=True)
    return body
