"""Bounded rendering of the conversation log for prompts."""

from __future__ import annotations

from collections.abc import Iterable

from commandpilot.agent.models import Message

ROLE_LABELS = {"user": "User", "agent": "Agent"}


def conversation_window(messages: Iterable[Message], limit: int) -> list[Message]:
    """Return the most recent ``limit`` user/agent messages in chronological order."""
    if limit <= 0:
        return []
    visible = [message for message in messages if message.role in ROLE_LABELS]
    return visible[-limit:]


def format_history(messages: Iterable[Message], limit: int) -> str:
    """Render the conversation window as ``Role: content`` lines."""
    return "\n".join(
        f"{ROLE_LABELS[message.role]}: {message.content}"
        for message in conversation_window(messages, limit)
    )
