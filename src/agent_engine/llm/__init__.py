"""Language-model adapters."""

from agent_engine.llm.base import ChatMessage, LanguageModel, LLMResponse
from agent_engine.llm.openai_adapter import OpenAIChatModel, build_language_model

__all__ = [
    "ChatMessage",
    "LLMResponse",
    "LanguageModel",
    "OpenAIChatModel",
    "build_language_model",
]
