"""OpenAI-compatible chat-completions adapter."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib import error, request

from agent_engine.config.settings import Settings
from agent_engine.errors import ModelRequestError, ModelUnavailableError
from agent_engine.llm.base import ChatMessage, LanguageModel, LLMResponse

logger = logging.getLogger(__name__)

# Status codes worth retrying; every other 4xx is a caller error.
_RETRYABLE_STATUS = {408, 409, 429}


class OpenAIChatModel:
    """Single-attempt HTTP client; the agent loop owns retry and backoff."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 60.0,
        default_temperature: float = 0.2,
        default_max_tokens: int = 2048,
    ) -> None:
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is missing")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout_s = timeout_s
        self.default_temperature = default_temperature
        self.default_max_tokens = default_max_tokens

    def invoke(
        self,
        messages: list[ChatMessage],
        *,
        response_format: dict[str, Any] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        request_body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.default_temperature if temperature is None else temperature,
            "max_tokens": self.default_max_tokens if max_tokens is None else max_tokens,
        }
        if response_format is not None:
            request_body["response_format"] = response_format

        response_json = self._request_once(request_body)
        content = _extract_content(response_json)
        usage = response_json.get("usage")
        return LLMResponse(
            content=content,
            model=response_json.get("model") or self.model,
            usage=usage if isinstance(usage, dict) else {},
        )

    def _request_once(self, request_body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        req = request.Request(
            url=url,
            data=json.dumps(request_body).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            message = exc.read().decode("utf-8", errors="replace")
            logger.warning("llm_request event=http_error status=%s model=%s", exc.code, self.model)
            if exc.code in _RETRYABLE_STATUS or exc.code >= 500:
                raise ModelUnavailableError(
                    f"LLM request failed with status {exc.code}: {message[:400]}"
                ) from exc
            raise ModelRequestError(
                f"LLM request failed with status {exc.code}: {message[:400]}"
            ) from exc
        except error.URLError as exc:
            logger.warning("llm_request event=network_error model=%s reason=%s", self.model, exc.reason)
            raise ModelUnavailableError(f"LLM request failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise ModelUnavailableError(f"LLM request timed out after {self.timeout_s:.1f}s") from exc

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ModelRequestError("LLM returned non-JSON response") from exc
        if not isinstance(parsed, dict):
            raise ModelRequestError("LLM response must be a JSON object")
        return parsed


def _extract_content(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices", [])
    if not choices or not isinstance(choices, list):
        raise ModelRequestError("LLM response missing choices")

    message = choices[0].get("message", {}) if isinstance(choices[0], dict) else {}
    content = message.get("content")

    if isinstance(content, str):
        text = content.strip()
    elif isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        text = "".join(parts).strip()
    else:
        text = ""

    if not text:
        raise ModelRequestError("LLM response content is empty")
    return text


def build_language_model(settings: Settings) -> LanguageModel:
    provider = settings.llm_provider.lower().strip()
    if provider != "openai":
        raise RuntimeError(f"Unsupported LLM provider: {settings.llm_provider}")
    return OpenAIChatModel(
        api_key=settings.resolved_openai_api_key(),
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        default_temperature=settings.llm_temperature,
        default_max_tokens=settings.llm_max_tokens,
    )
