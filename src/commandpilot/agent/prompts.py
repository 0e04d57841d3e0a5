"""Prompt templates for every phase of the conversation.

Instruction sets are assembled from named clauses. Phases that need a
different planning behaviour (today only the rejection follow-up) swap
individual clauses instead of rewriting the whole instruction text, and an
override that names an unknown clause raises ``CompositionError``.

Rendering never reads clocks or other ambient state, so identical inputs
always produce byte-identical prompts.
"""

from __future__ import annotations

from collections.abc import Mapping
from string import Template
from typing import Literal

from commandpilot.errors import CompositionError

PromptPhase = Literal[
    "initial",
    "after_accepted",
    "after_rejected",
    "continuation",
    "goal_evaluation",
]

DEFAULT_PERSONA = (
    "You are an expert operator whose primary tool is the command line interface."
    " Provide accurate, efficient, best-practice solutions for configuring, managing,"
    " and troubleshooting the connected system with CLI commands."
)

CLAUSE_ORDER = ("understand", "plan", "execute", "explain", "complete", "clarify")

BASE_CLAUSES: dict[str, str] = {
    "understand": (
        "**Understand the Request:** Within the thinking block, restate the user's goal"
        " in one sentence, referencing the history and terminal state."
    ),
    "plan": (
        "**Plan the Steps:** Enumerate the precise, sequential steps (including exact"
        " commands if applicable) you plan to take. Number the steps in your plan."
    ),
    "execute": (
        "**Execute & Verify:** Group related commands into a single <cmd>...</cmd> block"
        " per message, then verify success from the terminal state before moving on."
    ),
    "explain": (
        "**Explain:** In the main reply (outside the thinking block) explain why you are"
        " taking the planned steps and what each command does."
    ),
    "complete": (
        "**Report Completion:** When the current goal is fully resolved and verified,"
        " end the reply with <task_complete/>. Do not include it prematurely and never"
        " together with a <cmd> block."
    ),
    "clarify": (
        "**Clarify:** If you are unsure or need information from the user, ask a single"
        " clear question and end the reply with <wait_for_user/>."
    ),
}

REJECTION_CLAUSES: dict[str, str] = {
    "understand": (
        "**Acknowledge the Rejection:** Within the thinking block, acknowledge that the"
        " user rejected the previous commands and re-evaluate the approach to the goal"
        " based on the rejection."
    ),
    "plan": (
        "**Revise the Plan:** Outline a revised plan towards the current goal: propose"
        " alternative commands, suggest a different approach, or ask for clarification."
        " Do not re-issue the rejected commands. Number the steps in your plan."
    ),
    "explain": (
        "**Explain:** In the main reply clearly state that the previous commands were"
        " rejected and explain your new proposal (alternative commands, question, etc.)."
    ),
    "complete": (
        "**Report Completion:** If the current goal can be considered complete without"
        " the rejected commands, end the reply with <task_complete/>. If commands were"
        " rejected repeatedly, ask the user for more direct guidance instead."
    ),
}

INSTRUCTION_VARIANTS: dict[str, Mapping[str, str]] = {
    "base": {},
    "rejection": REJECTION_CLAUSES,
}

PHASE_INSTRUCTIONS: dict[str, str] = {
    "initial": "base",
    "after_accepted": "base",
    "after_rejected": "rejection",
    "continuation": "base",
}

NEGATIVE_RULES = [
    "Do not wrap commands in backticks or code fences.",
    "Never assume the user wants something executed if it was not requested or is not"
    " necessary for the current goal.",
    "Do not use <task_complete/> early.",
]

RESPONSE_RULES = [
    "A <thinking>...</thinking> block must appear at the very top of every reply.",
    "The main reply tells the user the necessary information; explain each command"
    " individually before the command block.",
    "Commands go in a single <cmd>...</cmd> block, one command per line. Do not intermix"
    " explanation and commands and do not use more than one block.",
    "For risky operations, state the potential impact before the <cmd> block.",
    "Use <read_terminal/> when you need a fresh view of the terminal before deciding.",
    "Do not offer additional suggestions or ask follow-up questions after <task_complete/>.",
]

TAG_REFERENCE = """# Custom Tags

<thinking>
1. Understand: [restate the goal]
2. Plan: [list steps, including any commands]
3. Execute & Verify: [how commands will be run and checked]
</thinking>

<cmd>
command1
command2 --with-options
</cmd>

<task_complete/>  marks the current goal as fully completed and verified.
<wait_for_user/>  marks that you are blocked on an answer from the user.
<read_terminal/>  requests the current terminal state without running anything."""

INSTRUCTIONS_TEMPLATE = Template(
    """**SYSTEM INSTRUCTIONS**

$persona

Follow this process for any request that involves running commands:
$process

**Negatives**
$negatives

**Response Structure**
$response_rules

$tag_reference"""
)

GOAL_EVALUATION_INSTRUCTIONS = """**GOAL EVALUATION INSTRUCTIONS**

Your current task is *only* to evaluate the user's goal based on the provided history and the latest query. Do not attempt to execute the goal yet.

1. Identify whether the conversation has an active, incomplete goal.
2. Decide whether the latest query continues that goal, introduces a new task, or confirms that the goal is finished.
3. Respond with exactly one line, using exactly one of these forms:
   Continuing goal: <the existing goal, with its details>
   New goal: <the new goal, based only on the latest query>
   Clarification needed: <what is unclear>
   Complete

Do not include plans, commands, tags, or conversational filler."""

INITIAL_TEMPLATE = Template(
    """You are an AI assistant interacting with a user and a live terminal.
The current goal is: $goal

**Conversation History (Last $history_limit messages):**
$history
$terminal
**Latest User Query (leading to current goal):** $query

$instructions"""
)

AFTER_ACCEPTED_TEMPLATE = Template(
    """User approved the previous command(s) and they were executed. You are an AI assistant interacting with a user and a live terminal.
The current goal is: $goal

**IMPORTANT CONTEXT: Below is the *updated* state of the terminal after execution. Use this context AND the conversation history to determine the next action towards the goal.**
$terminal
**Previous Conversation History is available.**

$instructions"""
)

AFTER_REJECTED_TEMPLATE = Template(
    """The user REJECTED the previously suggested command(s) related to the goal: $goal. $reason You are an AI assistant interacting with a user and a live terminal.

**IMPORTANT CONTEXT: Below is the current state of the terminal. The previous commands were NOT executed.**
$terminal
**Previous Conversation History is available.**

$instructions"""
)

CONTINUATION_TEMPLATE = Template(
    """You are an AI assistant interacting with a user and a live terminal. The previous step involved explanation or analysis, or a request to read the terminal, and no commands were executed.
$notice
The current goal is: $goal

**IMPORTANT CONTEXT: Below is the *current* state of the terminal. Use this context AND the conversation history to determine the next action towards the goal.**
$terminal
**Conversation History (Last $history_limit messages):**
$history

$instructions"""
)

GOAL_EVALUATION_TEMPLATE = Template(
    """You are an AI assistant responsible *only* for determining the current task goal.

**Conversation History (Last $history_limit messages):**
$history

**Currently Tracked Goal:** $goal

**Latest User Query:** $query
$terminal
$instructions"""
)

PHASE_TEMPLATES: dict[str, Template] = {
    "initial": INITIAL_TEMPLATE,
    "after_accepted": AFTER_ACCEPTED_TEMPLATE,
    "after_rejected": AFTER_REJECTED_TEMPLATE,
    "continuation": CONTINUATION_TEMPLATE,
    "goal_evaluation": GOAL_EVALUATION_TEMPLATE,
}

SNAPSHOT_REQUIRED_PHASES = frozenset({"after_accepted", "after_rejected", "continuation"})
QUERY_REQUIRED_PHASES = frozenset({"initial", "goal_evaluation"})


def build_instructions(
    overrides: Mapping[str, str] | None = None,
    *,
    persona: str = DEFAULT_PERSONA,
) -> str:
    """Render the instruction set, swapping the named clauses for ``overrides``."""
    clauses = dict(BASE_CLAUSES)
    for name, text in (overrides or {}).items():
        if name not in clauses:
            raise CompositionError(f"Unknown instruction clause: {name}")
        clauses[name] = text

    process = "\n".join(
        f"{index}. {clauses[name]}" for index, name in enumerate(CLAUSE_ORDER, start=1)
    )
    return _render(
        INSTRUCTIONS_TEMPLATE,
        persona=persona.strip(),
        process=process,
        negatives=_numbered(NEGATIVE_RULES),
        response_rules=_numbered(RESPONSE_RULES),
        tag_reference=TAG_REFERENCE,
    )


def instructions_for_phase(phase: str, *, persona: str = DEFAULT_PERSONA) -> str:
    variant = PHASE_INSTRUCTIONS.get(phase)
    if variant is None:
        raise CompositionError(f"No instruction set for prompt phase: {phase}")
    return build_instructions(INSTRUCTION_VARIANTS[variant], persona=persona)


def compose_prompt(
    phase: PromptPhase,
    *,
    goal: str | None,
    history: str = "",
    history_limit: int = 0,
    snapshot: str | None = None,
    query: str | None = None,
    rejection_reason: str | None = None,
    notice: str | None = None,
    persona: str = DEFAULT_PERSONA,
) -> str:
    """Build the exact prompt text sent to the model for ``phase``."""
    template = PHASE_TEMPLATES.get(phase)
    if template is None:
        raise CompositionError(f"Unknown prompt phase: {phase}")

    goal_text = (goal or "").strip()
    if phase != "goal_evaluation" and not goal_text:
        raise CompositionError(f"Prompt phase {phase} requires a goal statement")
    if phase in QUERY_REQUIRED_PHASES and not (query or "").strip():
        raise CompositionError(f"Prompt phase {phase} requires the latest user query")
    if phase in SNAPSHOT_REQUIRED_PHASES and snapshot is None:
        raise CompositionError(f"Prompt phase {phase} requires a terminal snapshot")

    fields: dict[str, object] = {
        "goal": goal_text,
        "history": history,
        "history_limit": history_limit,
    }
    if phase == "goal_evaluation":
        fields["goal"] = goal_text or "(none)"
        fields["query"] = (query or "").strip()
        fields["terminal"] = _terminal_section("Terminal context to make decision", snapshot)
        fields["instructions"] = GOAL_EVALUATION_INSTRUCTIONS
        return _render(template, **fields)

    fields["instructions"] = instructions_for_phase(phase, persona=persona)
    if phase == "initial":
        fields["query"] = (query or "").strip()
        fields["terminal"] = _terminal_section("Current Terminal State", snapshot)
    elif phase == "after_accepted":
        fields["terminal"] = _terminal_section("Updated Terminal State", snapshot)
    elif phase == "after_rejected":
        reason = (rejection_reason or "").strip()
        fields["reason"] = f'Reason provided: "{reason}".' if reason else "No reason provided."
        fields["terminal"] = _terminal_section("Current Terminal State", snapshot)
    else:
        fields["notice"] = f"\n{notice.strip()}\n" if notice and notice.strip() else ""
        fields["terminal"] = _terminal_section("Current Terminal State", snapshot)
    return _render(template, **fields)


def _terminal_section(label: str, snapshot: str | None) -> str:
    if snapshot is None:
        return ""
    return f"\n{label}:\n***\n{snapshot}\n***\n"


def _numbered(rules: list[str]) -> str:
    return "\n".join(f"{index}. {rule}" for index, rule in enumerate(rules, start=1))


def _render(template: Template, **fields: object) -> str:
    try:
        return template.substitute(fields)
    except KeyError as exc:
        raise CompositionError(f"Missing prompt section: {exc.args[0]}") from exc
    except ValueError as exc:
        raise CompositionError(f"Malformed prompt template: {exc}") from exc
