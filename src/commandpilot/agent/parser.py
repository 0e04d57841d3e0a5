"""Classify raw model replies into typed actions."""

from __future__ import annotations

import logging
import re

from commandpilot.agent.models import (
    ClarificationNeeded,
    Commands,
    Completion,
    Continuing,
    Explanation,
    GoalComplete,
    GoalOutcome,
    NewGoal,
    RefreshTerminal,
    ReplyAction,
    WaitForUser,
)
from commandpilot.errors import ProtocolViolation

LOGGER = logging.getLogger(__name__)

_THINKING_BLOCK = re.compile(r"<thinking>(.*?)</thinking>", re.DOTALL | re.IGNORECASE)
_THINKING_OPEN = re.compile(r"<thinking>", re.IGNORECASE)
_COMMAND_BLOCK = re.compile(r"<cmd>(.*?)</cmd>", re.DOTALL | re.IGNORECASE)
_COMMAND_OPEN = re.compile(r"<cmd>", re.IGNORECASE)
_COMMAND_SELF_CLOSING = re.compile(r"<cmd\s*/>", re.IGNORECASE)
_COMPLETE_MARKER = re.compile(r"<task_complete\s*/>", re.IGNORECASE)
_WAIT_MARKER = re.compile(r"<wait_for_user\s*/>", re.IGNORECASE)
_REFRESH_MARKER = re.compile(r"<read_terminal\s*/>", re.IGNORECASE)
_ACTION_TAGS = re.compile(
    r"</?cmd\s*/?>|<task_complete\s*/>|<wait_for_user\s*/>|<read_terminal\s*/>",
    re.IGNORECASE,
)
_BLANK_RUNS = re.compile(r"\n{3,}")

_GOAL_LABELS = (
    ("continuing goal:", "continuing"),
    ("new goal:", "new"),
    ("clarification needed:", "clarification"),
)
_LEGACY_GOAL_PREFIX = "the current goal is"
_COMPLETE_WORD = "complete"


def parse_reply(text: str) -> ReplyAction:
    """Return the single action encoded in ``text``.

    Raises ``ProtocolViolation`` when the markers contradict each other or a
    command block is malformed; callers must not execute anything then.
    """
    thinking_parts = [part.strip() for part in _THINKING_BLOCK.findall(text)]
    thinking = "\n\n".join(part for part in thinking_parts if part) or None
    body = _THINKING_BLOCK.sub("", text)
    if _THINKING_OPEN.search(body):
        raise ProtocolViolation("Unterminated thinking block", reply=text)
    if _COMMAND_SELF_CLOSING.search(body):
        raise ProtocolViolation("Command block must wrap commands, not self-close", reply=text)

    blocks = _COMMAND_BLOCK.findall(body)
    remainder = _COMMAND_BLOCK.sub("", body)
    if _COMMAND_OPEN.search(remainder):
        raise ProtocolViolation("Unterminated command block", reply=text)

    complete = _COMPLETE_MARKER.search(remainder) is not None
    wait = _WAIT_MARKER.search(remainder) is not None
    refresh = _REFRESH_MARKER.search(remainder) is not None
    message = _clean_message(remainder)

    if blocks and complete:
        raise ProtocolViolation(
            "Reply proposes commands and marks the task complete in the same turn",
            reply=text,
        )
    if complete and wait:
        raise ProtocolViolation(
            "Reply marks the task complete and waits for the user in the same turn",
            reply=text,
        )

    if blocks:
        commands = split_command_block(blocks[0])
        if not commands:
            raise ProtocolViolation("Command block is empty", reply=text)
        violations: tuple[str, ...] = ()
        if len(blocks) > 1:
            LOGGER.warning(
                "reply_multiple_command_blocks",
                extra={"blocks": len(blocks), "kept_commands": len(commands)},
            )
            violations = (f"{len(blocks) - 1} extra command block(s) discarded",)
        return Commands(
            commands=commands,
            message=message,
            thinking=thinking,
            violations=violations,
        )
    if complete:
        return Completion(message=message, thinking=thinking)
    if wait:
        return WaitForUser(message=message, thinking=thinking)
    if refresh:
        return RefreshTerminal(message=message, thinking=thinking)
    return Explanation(message=message, thinking=thinking)


def split_command_block(block: str) -> tuple[str, ...]:
    """Split a command block into ordered, whitespace-normalized lines."""
    return tuple(line.strip() for line in block.splitlines() if line.strip())


def parse_goal_evaluation(text: str, current_goal: str | None = None) -> GoalOutcome:
    """Classify a goal-evaluation reply; anything unclear asks for clarification."""
    stripped = text.strip()
    if not stripped:
        return ClarificationNeeded(question="The goal could not be determined.", raw=text)
    if _ACTION_TAGS.search(stripped) or _THINKING_OPEN.search(stripped):
        LOGGER.warning("goal_evaluation_contains_action_tags")
        return ClarificationNeeded(question=stripped, raw=text)

    lines = [line.strip() for line in stripped.splitlines() if line.strip()]
    first = lines[0]
    labelled_lines = sum(1 for line in lines if _label_of(line) is not None)
    if labelled_lines > 1:
        return ClarificationNeeded(question=stripped, raw=text)

    label = _label_of(first)
    if label is None:
        if labelled_lines:
            return ClarificationNeeded(question=stripped, raw=text)
        if first.lower().startswith(_LEGACY_GOAL_PREFIX):
            if current_goal is not None and first.casefold() == current_goal.strip().casefold():
                return Continuing(statement=first)
            return NewGoal(statement=first)
        return ClarificationNeeded(question=stripped, raw=text)

    kind, rest = label
    if kind == "complete":
        return GoalComplete()
    if not rest:
        return ClarificationNeeded(question=stripped, raw=text)
    if kind == "continuing":
        return Continuing(statement=rest)
    if kind == "new":
        return NewGoal(statement=rest)
    return ClarificationNeeded(question=rest, raw=text)


def _label_of(line: str) -> tuple[str, str] | None:
    normalized = line.replace("**", "").strip("*_ ")
    if normalized.rstrip(".").lower() == _COMPLETE_WORD:
        return "complete", ""
    lowered = normalized.lower()
    for prefix, kind in _GOAL_LABELS:
        if lowered.startswith(prefix):
            return kind, normalized[len(prefix):].strip()
    return None


def _clean_message(remainder: str) -> str:
    message = _ACTION_TAGS.sub("", remainder)
    return _BLANK_RUNS.sub("\n\n", message).strip()
