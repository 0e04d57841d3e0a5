"""Shell adapters and the local terminal backend."""

from .base import ShellAdapter, TerminalBackend, sanitize_command
from .bash_adapter import BashAdapter
from .terminal import LocalTerminal


def create_shell_adapter(shell_name: str) -> ShellAdapter:
    normalized = shell_name.strip().lower()
    if normalized in {"bash", "sh", "shell"}:
        return BashAdapter(executable="sh" if normalized == "sh" else None)
    msg = f"Unsupported shell adapter: {shell_name}"
    raise ValueError(msg)


__all__ = [
    "BashAdapter",
    "LocalTerminal",
    "ShellAdapter",
    "TerminalBackend",
    "create_shell_adapter",
    "sanitize_command",
]
