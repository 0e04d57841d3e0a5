"""Turn state machine for one conversation.

A session owns the goal, the append-only message log and at most one
pending command set. Every entry point (``submit``, ``accept``, ``reject``,
``retry``) returns a ``TurnOutcome`` describing the phase the session
settled in. Model and terminal calls are awaited, so many sessions can run
side by side on one event loop while each session stays strictly
sequential.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar

from commandpilot.agent.goals import GoalTracker, ModelInvoker, apply_goal_outcome
from commandpilot.agent.history import format_history
from commandpilot.agent.models import (
    ClarificationNeeded,
    Commands,
    CommandSetStatus,
    Completion,
    Goal,
    GoalComplete,
    Message,
    ProposedCommandSet,
    ReplyAction,
    Role,
    SessionTurn,
    TurnOutcome,
    TurnPhase,
    WaitForUser,
    action_kind,
)
from commandpilot.agent.parser import parse_reply
from commandpilot.agent.prompts import DEFAULT_PERSONA, PromptPhase, compose_prompt
from commandpilot.errors import ProtocolViolation, SessionStateError, TransportFailure
from commandpilot.shell.base import TerminalBackend, sanitize_command

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
Step = Callable[[], Awaitable[TurnOutcome]]

DEFAULT_HISTORY_LIMIT = 5
DEFAULT_MAX_CONTINUATIONS = 3

PROTOCOL_NOTICE = (
    "NOTICE: Your previous reply was discarded because it broke the reply format"
    " ({reason}). Nothing was executed. Reply again using at most one action marker."
)
CONTINUATION_LIMIT_QUESTION = (
    "The assistant kept explaining without proposing commands or finishing the task."
    " How would you like to proceed?"
)
EXECUTION_FAILED_QUESTION = (
    "Command execution did not finish. Check the terminal and tell me how to proceed."
)


class _Superseded(Exception):
    """Raised inside a step whose result was made stale by newer input."""


class ConversationSession:
    """Drives prompt, reply, approval and execution for one conversation."""

    def __init__(
        self,
        *,
        session_id: str,
        invoke: ModelInvoker,
        terminal: TerminalBackend,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        max_continuations: int = DEFAULT_MAX_CONTINUATIONS,
        persona: str = DEFAULT_PERSONA,
        track_goals: bool = True,
        include_snapshot_in_initial: bool = True,
        call_timeout: float | None = None,
        log_dir: str | Path | None = None,
        history: Iterable[Message] | None = None,
    ) -> None:
        self.session_id = session_id
        self.invoke = invoke
        self.terminal = terminal
        self.history_limit = max(0, history_limit)
        self.max_continuations = max(0, max_continuations)
        self.persona = persona
        self.track_goals = track_goals
        self.include_snapshot_in_initial = include_snapshot_in_initial
        self.call_timeout = call_timeout
        self.log_dir = Path(log_dir) if log_dir is not None else None

        self.phase: TurnPhase = "initial"
        self.goal: Goal | None = None
        self.pending: ProposedCommandSet | None = None
        self.question: str | None = None
        self.last_failure: TransportFailure | None = None
        self.messages: list[Message] = list(history) if history else []
        self.turns: list[SessionTurn] = []

        self._goal_tracker = GoalTracker(self._call_model, history_limit=self.history_limit)
        self._snapshot: str | None = None
        self._continuations = 0
        self._resume: Step | None = None
        self._generation = 0
        self._inflight: asyncio.Future[str] | None = None
        self._executing = False

    # Entry points -------------------------------------------------------------

    async def submit(self, text: str) -> TurnOutcome:
        """Start a turn from new user input, superseding anything in flight."""
        query = text.strip()
        if not query:
            raise SessionStateError("User input is empty")
        self._ensure_not_executing()

        self._supersede()
        self.abandon()
        history = self._history()
        self._append("user", query)
        self._reset_turn_state()
        self.phase = "initial"
        return await self._guarded(lambda: self._attempt(lambda: self._start(query, history)))

    async def accept(self) -> TurnOutcome:
        """Execute the pending command set exactly once and continue."""
        pending = self._take_pending()
        self._reset_turn_state()
        generation = self._generation
        LOGGER.info(
            "commands_accepted",
            extra={
                "session_id": self.session_id,
                "commands": [sanitize_command(command) for command in pending.commands],
            },
        )
        self.phase = "after_accepted"
        self._executing = True
        try:
            report = await self._guard(
                self.terminal.execute(self.session_id, list(pending.commands)),
                source="terminal",
            )
        except TransportFailure as exc:
            self._fail_execution(pending, exc, output="")
            raise
        except Exception as exc:
            failure = TransportFailure(
                f"Terminal execution failed: {exc}", source="terminal"
            )
            self._fail_execution(pending, failure, output="")
            raise failure from exc
        finally:
            self._executing = False

        if report.interrupted:
            failure = TransportFailure(
                (
                    "Terminal execution interrupted after"
                    f" {len(report.completed_commands)} of {len(pending.commands)} command(s)"
                ),
                source="terminal",
                timed_out=any(result.timed_out for result in report.results),
                completed=report.completed_commands,
            )
            self._fail_execution(pending, failure, output=report.output)
            raise failure

        self._retire(pending, "executed", output=report.output)
        if generation != self._generation:
            return self._superseded_outcome()
        self.phase = "after_accepted"
        return await self._guarded(lambda: self._attempt(self._after_accepted))

    async def reject(self, reason: str | None = None) -> TurnOutcome:
        """Decline the pending command set and ask the model for an alternative."""
        pending = self._take_pending()
        self._reset_turn_state()
        normalized_reason = reason.strip() if reason and reason.strip() else None
        self._retire(pending, "rejected", reason=normalized_reason)
        self.phase = "after_rejected"
        self._snapshot = pending.snapshot
        prompt = compose_prompt(
            "after_rejected",
            goal=self._goal_statement(),
            snapshot=pending.snapshot,
            rejection_reason=normalized_reason,
            persona=self.persona,
        )
        return await self._guarded(
            lambda: self._attempt(lambda: self._send(prompt, "after_rejected"))
        )

    def abandon(self) -> ProposedCommandSet | None:
        """Release the pending command set without executing it."""
        pending = self.pending
        if pending is None:
            return None
        self.pending = None
        self._retire(pending, "abandoned")
        self.phase = "initial"
        return pending

    async def retry(self) -> TurnOutcome:
        """Resume the step that last failed with ``TransportFailure``."""
        if self._resume is None:
            raise SessionStateError("There is no failed step to retry")
        self._ensure_idle()
        step = self._resume
        self._resume = None
        self.last_failure = None
        return await self._guarded(lambda: self._attempt(step))

    def current_outcome(self) -> TurnOutcome:
        return self._outcome()

    @property
    def can_retry(self) -> bool:
        return self._resume is not None

    @property
    def busy(self) -> bool:
        return self._inflight is not None

    # Steps --------------------------------------------------------------------

    async def _start(self, query: str, history: str) -> TurnOutcome:
        snapshot = await self._fetch_snapshot()
        if self.track_goals:
            outcome = await self._goal_tracker.evaluate(
                history=history,
                query=query,
                terminal_context=snapshot,
                current_goal=self.goal,
            )
            if isinstance(outcome, ClarificationNeeded):
                self._append("agent", outcome.question)
                self.phase = "needs_clarification"
                self.question = outcome.question
                return self._outcome()
            self.goal = apply_goal_outcome(self.goal, outcome)
            if isinstance(outcome, GoalComplete):
                self.phase = "done"
                return self._outcome()
        elif self.goal is None or not self.goal.is_active:
            self.goal = Goal(statement=query)

        prompt = compose_prompt(
            "initial",
            goal=self._goal_statement(),
            history=history,
            history_limit=self.history_limit,
            snapshot=snapshot if self.include_snapshot_in_initial else None,
            query=query,
            persona=self.persona,
        )
        return await self._attempt(lambda: self._send(prompt, "initial"))

    async def _after_accepted(self) -> TurnOutcome:
        snapshot = await self._fetch_snapshot()
        prompt = compose_prompt(
            "after_accepted",
            goal=self._goal_statement(),
            snapshot=snapshot,
            persona=self.persona,
        )
        return await self._attempt(lambda: self._send(prompt, "after_accepted"))

    async def _continuation(self, notice: str | None) -> TurnOutcome:
        snapshot = await self._fetch_snapshot()
        prompt = compose_prompt(
            "continuation",
            goal=self._goal_statement(),
            history=self._history(),
            history_limit=self.history_limit,
            snapshot=snapshot,
            notice=notice,
            persona=self.persona,
        )
        return await self._attempt(lambda: self._send(prompt, "continuation"))

    async def _send(self, prompt: str, prompt_phase: PromptPhase) -> TurnOutcome:
        reply = await self._call_model(prompt)
        try:
            action = parse_reply(reply)
        except ProtocolViolation as exc:
            LOGGER.warning(
                "reply_protocol_violation",
                extra={
                    "session_id": self.session_id,
                    "prompt_phase": prompt_phase,
                    "reason": str(exc),
                },
            )
            turn = self._record_turn(prompt_phase, reply, None, violation=str(exc))
            self._append("system", f"Reply discarded: {exc}\n{reply}")
            return await self._self_continue(
                turn, None, reply, notice=PROTOCOL_NOTICE.format(reason=exc)
            )

        self._append("agent", reply)
        if isinstance(action, Commands):
            turn = self._record_turn(
                prompt_phase,
                reply,
                action,
                violation="; ".join(action.violations) or None,
            )
            self._continuations = 0
            self.pending = ProposedCommandSet(
                commands=action.commands,
                turn_index=turn.index,
                snapshot=self._snapshot or "",
            )
            self.phase = "awaiting_approval"
            return self._outcome(action, reply)

        turn = self._record_turn(prompt_phase, reply, action)
        if isinstance(action, Completion):
            self._continuations = 0
            if self.goal is not None:
                self.goal.status = "complete"
            self.phase = "done"
            self._append_log(turn)
            return self._outcome(action, reply)
        if isinstance(action, WaitForUser):
            self.phase = "needs_clarification"
            self.question = action.message or reply
            self._append_log(turn)
            return self._outcome(action, reply)
        return await self._self_continue(turn, action, reply, notice=None)

    async def _self_continue(
        self,
        turn: SessionTurn,
        action: ReplyAction | None,
        reply: str,
        *,
        notice: str | None,
    ) -> TurnOutcome:
        if self._continuations >= self.max_continuations:
            LOGGER.warning(
                "continuation_limit_reached",
                extra={"session_id": self.session_id, "limit": self.max_continuations},
            )
            self.phase = "needs_clarification"
            self.question = CONTINUATION_LIMIT_QUESTION
            self._append_log(turn)
            return self._outcome(action, reply)

        self._continuations += 1
        self.phase = "continuation"
        self._append_log(turn)
        return await self._attempt(lambda: self._continuation(notice))

    # Collaborator calls -------------------------------------------------------

    async def _call_model(self, prompt: str) -> str:
        generation = self._generation
        task: asyncio.Future[str] = asyncio.ensure_future(
            self._guard(self.invoke(prompt), source="model")
        )
        self._inflight = task
        try:
            reply = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                raise _Superseded() from None
            raise
        finally:
            if self._inflight is task:
                self._inflight = None
        self._check_current(generation)
        return reply

    async def _fetch_snapshot(self) -> str:
        generation = self._generation
        snapshot = await self._guard(
            self.terminal.get_snapshot(self.session_id),
            source="terminal",
        )
        self._check_current(generation)
        self._snapshot = snapshot
        return snapshot

    async def _guard(self, awaitable: Awaitable[T], *, source: str) -> T:
        try:
            if self.call_timeout is None:
                return await awaitable
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError as exc:
            LOGGER.error(
                "collaborator_call_timeout",
                extra={
                    "session_id": self.session_id,
                    "source": source,
                    "timeout_seconds": self.call_timeout,
                },
            )
            raise TransportFailure(
                f"{source} call timed out after {self.call_timeout:.1f}s",
                source="model" if source == "model" else "terminal",
                timed_out=True,
            ) from exc

    async def _attempt(self, step: Step) -> TurnOutcome:
        try:
            return await step()
        except TransportFailure as exc:
            if self._resume is None:
                self._resume = step
                self.last_failure = exc
                LOGGER.error(
                    "session_step_failed",
                    extra={
                        "session_id": self.session_id,
                        "source": exc.source,
                        "timed_out": exc.timed_out,
                        "phase": self.phase,
                    },
                )
            raise

    async def _guarded(self, step: Step) -> TurnOutcome:
        try:
            return await step()
        except _Superseded:
            return self._superseded_outcome()

    # State helpers ------------------------------------------------------------

    def _supersede(self) -> None:
        self._generation += 1
        inflight = self._inflight
        self._inflight = None
        if inflight is not None and not inflight.done():
            inflight.cancel()
            LOGGER.info("model_call_superseded", extra={"session_id": self.session_id})

    def _check_current(self, generation: int) -> None:
        if generation != self._generation:
            raise _Superseded()

    def _ensure_idle(self) -> None:
        self._ensure_not_executing()
        if self._inflight is not None:
            raise SessionStateError("A model call is already in flight for this session")

    def _ensure_not_executing(self) -> None:
        if self._executing:
            raise SessionStateError("Approved commands are still running in this session")

    def _take_pending(self) -> ProposedCommandSet:
        if self.pending is None or self.phase != "awaiting_approval":
            raise SessionStateError("No command set is awaiting approval")
        self._ensure_idle()
        pending = self.pending
        self.pending = None
        return pending

    def _reset_turn_state(self) -> None:
        self.question = None
        self.last_failure = None
        self._resume = None
        self._continuations = 0

    def _fail_execution(
        self, pending: ProposedCommandSet, failure: TransportFailure, *, output: str
    ) -> None:
        self._retire(pending, "failed", reason=str(failure), output=output)
        self.last_failure = failure
        self.phase = "needs_clarification"
        self.question = EXECUTION_FAILED_QUESTION

    def _retire(
        self,
        pending: ProposedCommandSet,
        status: CommandSetStatus,
        *,
        reason: str | None = None,
        output: str = "",
    ) -> None:
        pending.status = status
        pending.reason = reason
        note = f"Commands {status}: " + "; ".join(pending.commands)
        if reason:
            note = f"{note} (reason: {reason})"
        self._append("system", f"{note}\n{output}" if output else note)

        turn = self._turn_at(pending.turn_index)
        if turn is not None:
            turn.decision = status
            turn.reason = reason
            turn.output = output
            self._append_log(turn)
        LOGGER.info(
            "command_set_resolved",
            extra={
                "session_id": self.session_id,
                "status": status,
                "command_count": len(pending.commands),
            },
        )

    def _append(self, role: Role, content: str) -> None:
        self.messages.append(Message(role=role, content=content))

    def _history(self) -> str:
        return format_history(self.messages, self.history_limit)

    def _goal_statement(self) -> str | None:
        return self.goal.statement if self.goal is not None else None

    def _outcome(self, action: ReplyAction | None = None, reply: str | None = None) -> TurnOutcome:
        return TurnOutcome(
            phase=self.phase,
            goal=self.goal,
            action=action,
            pending=self.pending,
            reply=reply,
            question=self.question,
        )

    def _superseded_outcome(self) -> TurnOutcome:
        LOGGER.info("session_step_superseded", extra={"session_id": self.session_id})
        outcome = self._outcome()
        outcome.superseded = True
        return outcome

    def _record_turn(
        self,
        prompt_phase: PromptPhase,
        reply: str,
        action: ReplyAction | None,
        *,
        violation: str | None = None,
    ) -> SessionTurn:
        turn = SessionTurn(
            index=len(self.turns) + 1,
            prompt_phase=prompt_phase,
            reply=reply,
            action=action_kind(action),
            goal=self._goal_statement(),
            commands=action.commands if isinstance(action, Commands) else (),
            violation=violation,
        )
        self.turns.append(turn)
        return turn

    def _turn_at(self, index: int) -> SessionTurn | None:
        if 1 <= index <= len(self.turns):
            return self.turns[index - 1]
        return None

    def _append_log(self, turn: SessionTurn) -> None:
        if self.log_dir is None:
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        now = datetime.now(timezone.utc)
        day_file = self.log_dir / f"session-{now.date().isoformat()}.log"
        entry = {
            "log_version": 1,
            "timestamp": now.isoformat(),
            "session_id": self.session_id,
            "turn_index": turn.index,
            "prompt_phase": turn.prompt_phase,
            "phase": self.phase,
            "goal": turn.goal,
            "goal_status": self.goal.status if self.goal is not None else None,
            "action": turn.action,
            "commands": [sanitize_command(command) for command in turn.commands],
            "decision": turn.decision,
            "reason": turn.reason,
            "output": turn.output,
            "violation": turn.violation,
        }
        with day_file.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry) + "\n")
