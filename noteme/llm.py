"""Thin OpenAI chat-completion wrapper and tolerant JSON parsing."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"


class LLMError(RuntimeError):
    """Raised when the language model cannot be called or answers nothing."""


class ResponseParseError(LLMError):
    """Raised when a model answer is not a JSON object, even without fences."""


class ChatModel(Protocol):
    """Anything that can answer a system + user prompt pair."""

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.3,
        json_mode: bool = False,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Return the assistant message content."""


class OpenAIChatModel:
    """Cloud chat completions using the OpenAI API."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = DEFAULT_MODEL,
        timeout: float = 60.0,
    ) -> None:
        self._model = model
        self._client = None
        if api_key:
            from openai import OpenAI

            self._client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    @property
    def model(self) -> str:
        return self._model

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.3,
        json_mode: bool = False,
        max_tokens: Optional[int] = None,
    ) -> str:  # pragma: no cover - network call
        if self._client is None:
            raise LLMError("OPENAI_API_KEY is not configured")

        from openai import OpenAIError

        request: Dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
        }
        if json_mode:
            request["response_format"] = {"type": "json_object"}
        if max_tokens is not None:
            request["max_tokens"] = max_tokens

        try:
            response = self._client.chat.completions.create(**request)
        except OpenAIError as exc:
            raise LLMError(f"OpenAI API error: {exc}") from exc

        if not response.choices:
            raise LLMError("OpenAI returned no choices")
        if response.usage is not None:
            logger.info(
                "OpenAI usage: prompt=%d completion=%d total=%d",
                response.usage.prompt_tokens,
                response.usage.completion_tokens,
                response.usage.total_tokens,
            )
        return response.choices[0].message.content or ""


def strip_code_fence(content: str) -> str:
    """Remove a surrounding Markdown code fence (```json or ```)."""

    content = content.strip()
    if content.startswith("```json"):
        content = content[len("```json"):]
    elif content.startswith("```"):
        content = content[len("```"):]
    else:
        return content
    if content.endswith("```"):
        content = content[: -len("```")]
    return content.strip()


def parse_json_object(content: str) -> Dict[str, Any]:
    """Decode a model answer, retrying once without a code fence."""

    try:
        payload = json.loads(content)
    except json.JSONDecodeError:
        logger.debug("Model answer is not plain JSON; retrying without code fence")
        try:
            payload = json.loads(strip_code_fence(content))
        except json.JSONDecodeError as exc:
            raise ResponseParseError(f"failed to parse model response as JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ResponseParseError("model response is not a JSON object")
    return payload
