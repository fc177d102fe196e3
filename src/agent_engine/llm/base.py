"""Language-model collaborator contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

ChatMessage = dict[str, str]


@dataclass(frozen=True)
class LLMResponse:
    content: str
    model: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


class LanguageModel(Protocol):
    """Chat-style model invocation.

    Implementations raise `ModelUnavailableError` for transient faults and
    `ModelRequestError` for fatal ones; retries are the caller's concern.
    """

    def invoke(
        self,
        messages: list[ChatMessage],
        *,
        response_format: dict[str, Any] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse: ...
