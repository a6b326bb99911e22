from __future__ import annotations

from typing import Iterable, Optional

from common.config import DEFAULT_SYSTEM_PROMPT
from common.schemas import ChatMessage, ChatRole


def build_system_prompt(
    transcript: str,
    template: Optional[str] = None,
    max_chars: int = 6000,
) -> str:
    """Prompt template followed by the most recent part of the transcript."""
    tail = transcript[-max_chars:] if max_chars > 0 else ""
    return f"""\
{(template or DEFAULT_SYSTEM_PROMPT).strip()}

Meeting Transcription:
---
{tail}
---"""


def normalize_history(
    history: Iterable[ChatMessage],
    question: str,
    limit: int = 20,
) -> list[ChatMessage]:
    """Build a history the chat API accepts: starts and ends with the user, roles alternate."""
    items = list(history)
    if limit > 0:
        items = items[-limit:]
    else:
        items = []

    messages: list[ChatMessage] = []
    for item in items:
        if not item.content.strip():
            continue
        if messages and messages[-1].role == item.role:
            continue
        messages.append(item)

    while messages and messages[0].role == ChatRole.assistant:
        messages.pop(0)
    if messages and messages[-1].role == ChatRole.user:
        messages.pop()

    messages.append(ChatMessage(role=ChatRole.user, content=question))
    return messages


def to_api_messages(system_prompt: str, messages: list[ChatMessage]) -> list[dict[str, str]]:
    return [{"role": "system", "content": system_prompt}] + [
        {"role": m.role.value, "content": m.content} for m in messages
    ]
