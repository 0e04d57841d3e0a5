"""Goal tracking across turns."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from commandpilot.agent.models import (
    ClarificationNeeded,
    Continuing,
    Goal,
    GoalComplete,
    GoalOutcome,
    NewGoal,
)
from commandpilot.agent.parser import parse_goal_evaluation
from commandpilot.agent.prompts import compose_prompt

LOGGER = logging.getLogger(__name__)

ModelInvoker = Callable[[str], Awaitable[str]]


class GoalTracker:
    """Asks the model which goal the latest query belongs to."""

    def __init__(self, invoke: ModelInvoker, *, history_limit: int = 5) -> None:
        self.invoke = invoke
        self.history_limit = history_limit

    def build_prompt(
        self,
        *,
        history: str,
        query: str,
        terminal_context: str | None = None,
        current_goal: Goal | None = None,
    ) -> str:
        statement = current_goal.statement if current_goal and current_goal.is_active else None
        return compose_prompt(
            "goal_evaluation",
            goal=statement,
            history=history,
            history_limit=self.history_limit,
            snapshot=terminal_context,
            query=query,
        )

    async def evaluate(
        self,
        *,
        history: str,
        query: str,
        terminal_context: str | None = None,
        current_goal: Goal | None = None,
    ) -> GoalOutcome:
        prompt = self.build_prompt(
            history=history,
            query=query,
            terminal_context=terminal_context,
            current_goal=current_goal,
        )
        reply = await self.invoke(prompt)
        statement = current_goal.statement if current_goal and current_goal.is_active else None
        outcome = parse_goal_evaluation(reply, current_goal=statement)
        LOGGER.info(
            "goal_evaluated",
            extra={"outcome": type(outcome).__name__, "had_goal": statement is not None},
        )
        return outcome


def apply_goal_outcome(current: Goal | None, outcome: GoalOutcome) -> Goal | None:
    """Return the goal the session should hold after ``outcome``.

    A continuing goal keeps its stored statement so that near-duplicate
    phrasing from the model never rewrites it.
    """
    if isinstance(outcome, Continuing):
        if current is not None and current.is_active:
            return current
        return Goal(statement=outcome.statement)
    if isinstance(outcome, NewGoal):
        return Goal(statement=outcome.statement)
    if isinstance(outcome, GoalComplete):
        if current is None:
            return None
        return Goal(statement=current.statement, status="complete")
    if isinstance(outcome, ClarificationNeeded):
        return current
    raise TypeError(f"Unsupported goal outcome: {outcome!r}")
