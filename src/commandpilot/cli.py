"""Command-line interface for commandpilot."""

from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import cast

from .agent.models import TurnOutcome
from .agent.session import ConversationSession
from .config import AppConfig
from .errors import SessionStateError, TransportFailure
from .llm.client import LLMClient
from .shell import LocalTerminal, create_shell_adapter

LOGGER = logging.getLogger(__name__)

QUIT_WORDS = {"q", "quit", "exit"}

PHASE_LABELS = {
    "initial": "ready",
    "awaiting_approval": "awaiting approval",
    "after_accepted": "running",
    "after_rejected": "running",
    "continuation": "running",
    "done": "completed",
    "needs_clarification": "needs input",
}


class CLIArgs(argparse.Namespace):
    query: str | None
    working_directory: str | None
    session_id: str


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="commandpilot",
        description="Terminal command assistant with approval-gated execution",
    )
    parser.add_argument(
        "--cwd",
        dest="working_directory",
        help=(
            "Override the working directory for command execution. "
            "Takes precedence over config/env cwd values."
        ),
    )
    parser.add_argument(
        "--session-id",
        dest="session_id",
        default="local",
        help="Identifier of the terminal session to drive (default: local)",
    )
    parser.add_argument("query", nargs="?", help="Initial request for the assistant")
    return parser


def main() -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args())
    config = AppConfig.from_env()
    logging.basicConfig(level=config.log_level)
    adapter = create_shell_adapter(config.shell)

    configured_working_directory = (
        args.working_directory if args.working_directory is not None else config.working_directory
    )
    working_directory: str | None = None
    if configured_working_directory is not None:
        resolved_working_directory = Path(configured_working_directory).expanduser().resolve()
        if not resolved_working_directory.exists() or not resolved_working_directory.is_dir():
            print(f"Invalid configured cwd directory: {configured_working_directory}")
            return 1
        working_directory = str(resolved_working_directory)

    query = args.query or input("Request: ").strip()
    if not query:
        print("No request provided.")
        return 1

    client = LLMClient(
        api_key=config.api_key,
        model=config.model,
        reasoning_effort=config.reasoning_effort,
        api_url=config.api_url,
        timeout=config.request_timeout,
    )
    terminal = LocalTerminal(
        adapter,
        snapshot_lines=config.snapshot_lines,
        working_directory=working_directory,
        command_timeout=config.command_timeout,
    )
    session = ConversationSession(
        session_id=args.session_id,
        invoke=client.invoke,
        terminal=terminal,
        history_limit=config.history_limit,
        max_continuations=config.max_continuations,
        persona=config.persona,
        track_goals=config.track_goals,
        include_snapshot_in_initial=config.include_snapshot_in_initial,
        log_dir=config.log_dir,
    )
    LOGGER.debug("shell_adapter_selected", extra={"shell": adapter.name})
    return asyncio.run(run_session(session, query))


async def run_session(session: ConversationSession, query: str) -> int:
    """Drive ``session`` interactively until the user quits."""
    outcome = await _run_step(session, lambda: session.submit(query))
    while outcome is not None:
        print(_render_outcome(outcome))

        if outcome.awaiting_approval and outcome.pending is not None:
            approved, reason = await asyncio.to_thread(_request_approval)
            if approved is None:
                session.abandon()
                return 0
            if approved:
                outcome = await _run_step(session, session.accept)
            else:
                outcome = await _run_step(session, lambda: session.reject(reason))
            continue

        next_input = await asyncio.to_thread(_request_input, outcome)
        if next_input is None:
            return 0
        outcome = await _run_step(session, lambda: session.submit(next_input))
    return 1


async def _run_step(
    session: ConversationSession,
    step: Callable[[], Awaitable[TurnOutcome]],
) -> TurnOutcome | None:
    try:
        return await step()
    except TransportFailure as exc:
        failure: TransportFailure = exc

    while True:
        print(f"Error ({failure.source}): {failure}")
        if failure.completed:
            print("Commands that ran: " + "; ".join(failure.completed))
        if not session.can_retry:
            return session.current_outcome()
        if not await asyncio.to_thread(_confirm_retry):
            return None
        try:
            return await session.retry()
        except TransportFailure as exc:
            failure = exc
        except SessionStateError as exc:
            print(f"Cannot retry: {exc}")
            return None


def _request_approval() -> tuple[bool | None, str | None]:
    choice = input("Run these commands? [y/N/q]: ").strip().lower()
    if choice in QUIT_WORDS:
        return None, None
    if choice in {"y", "yes"}:
        return True, None
    reason = input("Reason for rejecting (optional): ").strip()
    return False, reason or None


def _request_input(outcome: TurnOutcome) -> str | None:
    if outcome.phase == "needs_clarification":
        message = "Your reply (q to quit): "
    else:
        message = "Next request (q to quit): "
    response = input(message).strip()
    if not response or response.lower() in QUIT_WORDS:
        return None
    return response


def _confirm_retry() -> bool:
    choice = input("Retry the failed step? [y/N]: ").strip().lower()
    return choice in {"y", "yes"}


def _render_outcome(outcome: TurnOutcome) -> str:
    lines = [f"=== {PHASE_LABELS.get(outcome.phase, outcome.phase)} ==="]
    if outcome.goal is not None:
        lines.append(f"[goal] {outcome.goal.statement} ({outcome.goal.status})")

    message = getattr(outcome.action, "message", "") if outcome.action is not None else ""
    if message:
        lines.append("[message]")
        lines.append(message)

    if outcome.pending is not None:
        lines.append("[commands]")
        lines.extend(
            f"{index}. {command}" for index, command in enumerate(outcome.pending.commands, 1)
        )

    if outcome.question and outcome.question != message:
        lines.append("[question]")
        lines.append(outcome.question)
    return "\n".join(lines)


if __name__ == "__main__":
    raise SystemExit(main())
