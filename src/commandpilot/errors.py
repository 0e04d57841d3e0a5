"""Error taxonomy shared by the prompt, parser and session layers."""

from __future__ import annotations

from typing import Literal

TransportSource = Literal["model", "terminal"]


class CommandPilotError(Exception):
    """Base class for all commandpilot errors."""


class CompositionError(CommandPilotError):
    """A prompt could not be rendered; nothing must be sent."""


class ProtocolViolation(CommandPilotError):
    """The model reply broke the structural marker contract."""

    def __init__(self, message: str, *, reply: str = "") -> None:
        super().__init__(message)
        self.reply = reply


class TransportFailure(CommandPilotError):
    """A model or terminal call failed or timed out.

    The session does not retry on its own. ``completed`` lists the commands
    that ran before a terminal execution was interrupted.
    """

    def __init__(
        self,
        message: str,
        *,
        source: TransportSource,
        timed_out: bool = False,
        completed: tuple[str, ...] = (),
    ) -> None:
        super().__init__(message)
        self.source = source
        self.timed_out = timed_out
        self.completed = completed


class SessionStateError(CommandPilotError):
    """An operation was requested in a phase that does not allow it."""
