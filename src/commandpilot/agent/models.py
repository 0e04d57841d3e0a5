"""Data models used by the conversation state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Union

Role = Literal["user", "agent", "system"]
GoalStatus = Literal["active", "complete", "needs_clarification"]
TurnPhase = Literal[
    "initial",
    "awaiting_approval",
    "after_accepted",
    "after_rejected",
    "continuation",
    "done",
    "needs_clarification",
]
CommandSetStatus = Literal["pending", "executed", "rejected", "abandoned", "failed"]

QUIESCENT_PHASES: frozenset[str] = frozenset({"done", "needs_clarification"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Message:
    """A single entry of the append-only conversation log."""

    role: Role
    content: str
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class Goal:
    """The single task the agent is currently working toward."""

    statement: str
    status: GoalStatus = "active"

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(slots=True)
class ProposedCommandSet:
    """Commands extracted from one reply, waiting on the user's decision."""

    commands: tuple[str, ...]
    turn_index: int
    snapshot: str
    status: CommandSetStatus = "pending"
    reason: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"


# Reply actions ---------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Explanation:
    """Informational reply without any action marker."""

    message: str
    thinking: str | None = None


@dataclass(frozen=True, slots=True)
class Commands:
    """Reply that proposes one ordered command block for approval."""

    commands: tuple[str, ...]
    message: str = ""
    thinking: str | None = None
    violations: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Completion:
    message: str
    thinking: str | None = None


@dataclass(frozen=True, slots=True)
class WaitForUser:
    """Reply that asks the user a question and blocks on the answer."""

    message: str
    thinking: str | None = None


@dataclass(frozen=True, slots=True)
class RefreshTerminal:
    """Reply that asks for a fresh terminal snapshot before deciding."""

    message: str
    thinking: str | None = None


ReplyAction = Union[Explanation, Commands, Completion, WaitForUser, RefreshTerminal]

ACTION_KINDS: dict[type, str] = {
    Explanation: "explanation",
    Commands: "commands",
    Completion: "completion",
    WaitForUser: "wait_for_user",
    RefreshTerminal: "refresh_terminal",
}


def action_kind(action: ReplyAction | None) -> str | None:
    if action is None:
        return None
    return ACTION_KINDS[type(action)]


# Goal evaluation outcomes ----------------------------------------------------


@dataclass(frozen=True, slots=True)
class Continuing:
    statement: str


@dataclass(frozen=True, slots=True)
class NewGoal:
    statement: str


@dataclass(frozen=True, slots=True)
class GoalComplete:
    pass


@dataclass(frozen=True, slots=True)
class ClarificationNeeded:
    """Goal could not be settled; ``raw`` keeps the unparsed model output."""

    question: str
    raw: str = ""


GoalOutcome = Union[Continuing, NewGoal, GoalComplete, ClarificationNeeded]


# Execution and turn records --------------------------------------------------


@dataclass(slots=True)
class CommandResult:
    """Result of one command run by a terminal backend."""

    command: str
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_seconds: float = 0.0
    executed: bool = True


@dataclass(slots=True)
class ExecutionReport:
    """Ordered results of an approved command set."""

    results: list[CommandResult] = field(default_factory=list)
    interrupted: bool = False

    @property
    def completed_commands(self) -> tuple[str, ...]:
        return tuple(
            result.command
            for result in self.results
            if result.executed and not result.timed_out
        )

    @property
    def output(self) -> str:
        chunks: list[str] = []
        for result in self.results:
            chunks.append(f"$ {result.command}")
            if result.stdout:
                chunks.append(result.stdout.rstrip("\n"))
            if result.stderr:
                chunks.append(result.stderr.rstrip("\n"))
        return "\n".join(chunks)


@dataclass(slots=True)
class SessionTurn:
    """Captured prompt/reply data for a single round of the conversation."""

    index: int
    prompt_phase: str
    reply: str
    action: str | None
    goal: str | None
    commands: tuple[str, ...] = ()
    decision: CommandSetStatus | None = None
    reason: str | None = None
    output: str = ""
    violation: str | None = None


@dataclass(slots=True)
class TurnOutcome:
    """State reported back to the caller after each session entry point."""

    phase: TurnPhase
    goal: Goal | None
    action: ReplyAction | None = None
    pending: ProposedCommandSet | None = None
    reply: str | None = None
    question: str | None = None
    superseded: bool = False

    @property
    def awaiting_approval(self) -> bool:
        return self.phase == "awaiting_approval"

    @property
    def quiescent(self) -> bool:
        return self.phase in QUIESCENT_PHASES
