"""Single-shot chat completion through litellm."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, cast

import litellm

from core.logging import get_logger

logger = get_logger(__name__)

CHAT_MODEL = os.getenv("LLM_CHAT_MODEL", "gpt-3.5-turbo")
CHAT_TEMPERATURE = 0.7
CHAT_MAX_TOKENS = 1000
EMPTY_RESPONSE_TEXT = "No response generated"


class ChatCompletionError(RuntimeError):
    """Raised when the language model call fails."""


@dataclass(frozen=True)
class ChatCompletion:
    text: str
    tokens: int
    model: str


def _choice_content(response: Any) -> str:
    """Extract the first choice's message content from litellm responses."""
    response_any = cast(Any, response)
    choices = getattr(response_any, "choices", None)
    if choices is None and isinstance(response_any, Mapping):
        choices = response_any.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first_choice = choices[0]
    message = getattr(first_choice, "message", None)
    if message is None and isinstance(first_choice, Mapping):
        message = first_choice.get("message")
    if message is None:
        return ""
    content = message.get("content") if isinstance(message, Mapping) else getattr(message, "content", None)
    return content if isinstance(content, str) else ""


def _total_tokens(response: Any) -> int:
    usage = getattr(response, "usage", None)
    if usage is None and isinstance(response, Mapping):
        usage = response.get("usage")
    if usage is None:
        return 0
    raw = usage.get("total_tokens") if isinstance(usage, Mapping) else getattr(usage, "total_tokens", None)
    return int(raw) if isinstance(raw, (int, float)) else 0


def complete_chat(messages: List[Dict[str, Any]], *, model: Optional[str] = None) -> ChatCompletion:
    """Return the assistant reply and total token usage for ``messages``."""

    model_name = model or CHAT_MODEL
    try:
        response = litellm.completion(
            model=model_name,
            messages=messages,
            temperature=CHAT_TEMPERATURE,
            max_tokens=CHAT_MAX_TOKENS,
        )
    except Exception as exc:
        logger.error("LLM chat call failed for %s: %s", model_name, exc, exc_info=True)
        raise ChatCompletionError("Failed to generate AI response") from exc

    text = _choice_content(response) or EMPTY_RESPONSE_TEXT
    return ChatCompletion(text=text, tokens=_total_tokens(response), model=model_name)


__all__ = ["CHAT_MODEL", "ChatCompletion", "ChatCompletionError", "complete_chat"]
