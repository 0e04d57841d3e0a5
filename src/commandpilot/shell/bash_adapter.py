"""POSIX shell adapter used by the local terminal."""

from __future__ import annotations

import locale
import os
import shutil
import subprocess
from collections.abc import Mapping

from commandpilot.agent.models import CommandResult

from .base import ShellAdapter

TIMEOUT_RETURNCODE = 124
NOT_FOUND_RETURNCODE = 127

# Keeps pagers and colour codes out of captured output.
NON_INTERACTIVE_ENV = {"PAGER": "cat", "GIT_PAGER": "cat", "TERM": "dumb"}


class BashAdapter(ShellAdapter):
    """Runs each approved command in a fresh ``bash -lc`` (or ``sh -lc``)."""

    def __init__(
        self,
        executable: str | None = None,
        *,
        fallback_to_sh: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.executable = executable or _default_executable(fallback_to_sh=fallback_to_sh)
        self.env = dict(env) if env is not None else None

    @property
    def name(self) -> str:
        return "bash"

    def argv(self, command: str) -> list[str]:
        return [self.executable, "-lc", command]

    def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.log_request(command, cwd=cwd, timeout=timeout)
        started = self.monotonic_now()
        try:
            process = subprocess.run(
                self.argv(command),
                capture_output=True,
                cwd=cwd,
                env=self._environment(),
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            result = self._result(
                command,
                TIMEOUT_RETURNCODE,
                exc.stdout,
                exc.stderr,
                started=started,
                timed_out=True,
            )
        except FileNotFoundError:
            result = CommandResult(
                command=command,
                returncode=NOT_FOUND_RETURNCODE,
                stdout="",
                stderr=f"bash executable not found: {self.executable}",
                executed=False,
            )
        else:
            result = self._result(
                command, process.returncode, process.stdout, process.stderr, started=started
            )

        self.log_result(result)
        return result

    def _environment(self) -> dict[str, str]:
        environment = dict(os.environ)
        environment.update(NON_INTERACTIVE_ENV)
        if self.env:
            environment.update(self.env)
        return environment

    def _result(
        self,
        command: str,
        returncode: int,
        stdout: bytes | str | None,
        stderr: bytes | str | None,
        *,
        started: float,
        timed_out: bool = False,
    ) -> CommandResult:
        return CommandResult(
            command=command,
            returncode=returncode,
            stdout=decode_output(stdout),
            stderr=decode_output(stderr),
            timed_out=timed_out,
            duration_seconds=self.monotonic_now() - started,
        )


def _default_executable(*, fallback_to_sh: bool) -> str:
    if shutil.which("bash") is None and fallback_to_sh and shutil.which("sh"):
        return "sh"
    return "bash"


def decode_output(payload: bytes | str | None) -> str:
    """Decode captured output, trying UTF-8 before the locale encoding."""
    if not payload:
        return ""
    if isinstance(payload, str):
        return payload
    for encoding in ("utf-8", locale.getpreferredencoding(False)):
        try:
            return payload.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            continue
    return payload.decode("utf-8", errors="replace")
