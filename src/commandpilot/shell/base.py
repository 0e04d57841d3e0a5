"""Terminal backend contract and the shell adapter base class."""

from __future__ import annotations

import abc
import logging
import re
import time
from collections.abc import Sequence
from typing import Protocol

from commandpilot.agent.models import CommandResult, ExecutionReport

LOGGER = logging.getLogger(__name__)

_SECRET_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(--?(?:password|token|secret|api[-_]?key)\s+)([^\s]+)",
        r"((?:password|token|secret|api[-_]?key)\s*=\s*)([^\s]+)",
    )
]


def sanitize_command(command: str) -> str:
    """Mask obvious secrets before a command is logged."""
    sanitized = command
    for pattern in _SECRET_PATTERNS:
        sanitized = pattern.sub(r"\1***", sanitized)
    return sanitized


class TerminalBackend(Protocol):
    """What the session needs from the terminal it drives."""

    async def get_snapshot(self, session_id: str) -> str:
        """Return the last lines of the session's terminal."""

    async def execute(self, session_id: str, commands: Sequence[str]) -> ExecutionReport:
        """Run ``commands`` in order and report which of them ran."""


class ShellAdapter(abc.ABC):
    """Abstract adapter for shell-specific command execution."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Friendly shell adapter name."""

    @abc.abstractmethod
    def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Execute a shell command and return a normalized result."""

    def log_request(self, command: str, *, cwd: str | None, timeout: float | None) -> None:
        LOGGER.info(
            "command_started",
            extra={
                "shell": self.name,
                "command": sanitize_command(command),
                "cwd": cwd,
                "timeout": timeout,
            },
        )

    def log_result(self, result: CommandResult) -> None:
        LOGGER.info(
            "command_finished",
            extra={
                "shell": self.name,
                "command": sanitize_command(result.command),
                "returncode": result.returncode,
                "timed_out": result.timed_out,
                "duration_seconds": round(result.duration_seconds, 4),
                "executed": result.executed,
                "stdout_length": len(result.stdout),
                "stderr_length": len(result.stderr),
            },
        )

    @staticmethod
    def monotonic_now() -> float:
        return time.monotonic()
