"""Local terminal backend built on a shell adapter."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from commandpilot.agent.models import CommandResult, ExecutionReport

from .base import ShellAdapter

LOGGER = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_LINES = 50


class LocalTerminal:
    """Runs approved commands locally and keeps a transcript per session.

    The snapshot of a session is the tail of its transcript: each command
    echoed behind ``prompt`` followed by its stdout and stderr. Sessions
    never see each other's transcript.
    """

    def __init__(
        self,
        adapter: ShellAdapter,
        *,
        snapshot_lines: int = DEFAULT_SNAPSHOT_LINES,
        working_directory: str | None = None,
        command_timeout: float | None = None,
        prompt: str = "$ ",
    ) -> None:
        self.adapter = adapter
        self.snapshot_lines = snapshot_lines
        self.working_directory = working_directory
        self.command_timeout = command_timeout
        self.prompt = prompt
        self._transcripts: dict[str, list[str]] = {}

    async def get_snapshot(self, session_id: str) -> str:
        if self.snapshot_lines <= 0:
            return ""
        lines = self._transcripts.get(session_id, [])
        return "\n".join(lines[-self.snapshot_lines:])

    async def execute(self, session_id: str, commands: Sequence[str]) -> ExecutionReport:
        report = ExecutionReport()
        transcript = self._transcripts.setdefault(session_id, [])
        for command in commands:
            result = await asyncio.to_thread(
                self.adapter.execute,
                command,
                cwd=self.working_directory,
                timeout=self.command_timeout,
            )
            report.results.append(result)
            transcript.append(f"{self.prompt}{command}")
            transcript.extend(_transcript_lines(result))
            if result.timed_out or not result.executed:
                report.interrupted = True
                LOGGER.warning(
                    "terminal_execution_interrupted",
                    extra={
                        "session_id": session_id,
                        "shell": self.adapter.name,
                        "completed": len(report.completed_commands),
                        "requested": len(commands),
                    },
                )
                break
        return report


def _transcript_lines(result: CommandResult) -> list[str]:
    lines = result.stdout.splitlines() + result.stderr.splitlines()
    if result.timed_out:
        lines.append(f"[timed out, returncode={result.returncode}]")
    elif result.returncode != 0:
        lines.append(f"[returncode={result.returncode}]")
    return lines
