"""Prompt template for the general-purpose chat assistant."""

from __future__ import annotations

from typing import Iterable, List, Mapping, Optional

SYSTEM_PROMPT = (
    "You are ZYNX AI, a helpful and friendly AI assistant. "
    "Provide clear, concise, and accurate responses."
)


def get_prompt(history: Iterable[Mapping[str, Optional[str]]], message: str) -> List[dict]:
    """``history`` holds prior exchanges oldest-first as ``{"content", "response"}`` mappings."""
    messages: List[dict] = [{"role": "system", "content": SYSTEM_PROMPT}]
    for exchange in history:
        messages.append({"role": "user", "content": exchange.get("content") or ""})
        response = exchange.get("response")
        if response:
            messages.append({"role": "assistant", "content": response})
    messages.append({"role": "user", "content": message})
    return messages


__all__ = ["SYSTEM_PROMPT", "get_prompt"]
