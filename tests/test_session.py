from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence

import pytest

from commandpilot.agent.models import CommandResult, Commands, Completion, ExecutionReport
from commandpilot.agent.session import (
    CONTINUATION_LIMIT_QUESTION,
    ConversationSession,
)
from commandpilot.errors import SessionStateError, TransportFailure


class FakeTerminal:
    def __init__(self, snapshot: str = "Router#") -> None:
        self.snapshot = snapshot
        self.after_execute: str | None = None
        self.events: list[str] = []
        self.executed: list[list[str]] = []
        self.interrupt_after: int | None = None

    async def get_snapshot(self, session_id: str) -> str:
        self.events.append("snapshot")
        return self.snapshot

    async def execute(self, session_id: str, commands: Sequence[str]) -> ExecutionReport:
        self.events.append("execute")
        self.executed.append(list(commands))
        report = ExecutionReport()
        for index, command in enumerate(commands):
            if self.interrupt_after is not None and index >= self.interrupt_after:
                report.results.append(
                    CommandResult(
                        command=command, returncode=124, stdout="", stderr="", timed_out=True
                    )
                )
                report.interrupted = True
                break
            report.results.append(
                CommandResult(command=command, returncode=0, stdout="ok", stderr="")
            )
        if self.after_execute is not None:
            self.snapshot = self.after_execute
        return report


class ScriptedModel:
    def __init__(self, *replies: str | Exception) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def _session(model: ScriptedModel, terminal: FakeTerminal, **kwargs: object) -> ConversationSession:
    options: dict[str, object] = {"track_goals": False, "history_limit": 5}
    options.update(kwargs)
    return ConversationSession(
        session_id="s1",
        invoke=model,
        terminal=terminal,
        **options,  # type: ignore[arg-type]
    )


def test_show_interface_status_scenario() -> None:
    model = ScriptedModel(
        "<thinking>Check interfaces</thinking>\nChecking.\n<cmd>\nshow ip interface brief\n</cmd>",
        "Interface Gi0/1 is up.\n<task_complete/>",
    )
    terminal = FakeTerminal()
    session = _session(model, terminal)

    async def scenario() -> None:
        outcome = await session.submit("show interface status")

        initial = model.prompts[0]
        assert "**Conversation History (Last 5 messages):**\n\n" in initial
        assert "show interface status" in initial
        assert outcome.phase == "awaiting_approval"
        assert isinstance(outcome.action, Commands)
        assert outcome.action.commands == ("show ip interface brief",)
        assert outcome.pending is not None
        assert outcome.pending.commands == ("show ip interface brief",)

        terminal.after_execute = "GigabitEthernet0/1 up"
        final = await session.accept()

        assert terminal.executed == [["show ip interface brief"]]
        after_accepted = model.prompts[1]
        assert "Updated Terminal State:\n***\nGigabitEthernet0/1 up\n***" in after_accepted
        assert "The current goal is: show interface status" in after_accepted
        assert final.phase == "done"
        assert isinstance(final.action, Completion)
        assert session.goal is not None
        assert session.goal.statement == "show interface status"
        assert session.goal.status == "complete"

    asyncio.run(scenario())


def test_accept_executes_once_then_refreshes_snapshot() -> None:
    model = ScriptedModel("<cmd>\nshow clock\nshow version\n</cmd>", "Done <task_complete/>")
    terminal = FakeTerminal()
    session = _session(model, terminal)

    async def scenario() -> None:
        await session.submit("what time is it")
        assert terminal.events == ["snapshot"]

        await session.accept()

        assert terminal.events == ["snapshot", "execute", "snapshot"]
        assert terminal.executed == [["show clock", "show version"]]

    asyncio.run(scenario())


def test_reject_reuses_unchanged_snapshot_verbatim() -> None:
    model = ScriptedModel(
        "<cmd>\nreload\n</cmd>",
        "Understood, here is a safer option.\n<cmd>\nshow reload\n</cmd>",
    )
    terminal = FakeTerminal(snapshot="Router# (before)")
    session = _session(model, terminal)

    async def scenario() -> None:
        await session.submit("restart the router")
        terminal.snapshot = "changed behind our back"

        outcome = await session.reject("not during business hours")

        prompt = model.prompts[1]
        assert "Current Terminal State:\n***\nRouter# (before)\n***" in prompt
        assert "changed behind our back" not in prompt
        assert 'Reason provided: "not during business hours".' in prompt
        assert "Acknowledge the Rejection" in prompt
        assert terminal.executed == []
        assert "execute" not in terminal.events
        assert outcome.phase == "awaiting_approval"
        assert outcome.pending is not None
        assert outcome.pending.commands == ("show reload",)
        assert session.turns[0].decision == "rejected"
        assert session.turns[0].reason == "not during business hours"

    asyncio.run(scenario())


def test_explanation_self_continues_until_limit() -> None:
    model = ScriptedModel(*["Still thinking about the topology."] * 4)
    terminal = FakeTerminal()
    session = _session(model, terminal, max_continuations=3)

    outcome = asyncio.run(session.submit("explain the network"))

    assert len(model.prompts) == 4
    for prompt in model.prompts[1:]:
        assert "no commands were executed" in prompt
        assert "Current Terminal State:\n***\nRouter#\n***" in prompt
    assert outcome.phase == "needs_clarification"
    assert outcome.question == CONTINUATION_LIMIT_QUESTION
    assert terminal.executed == []


def test_explanation_followed_by_commands() -> None:
    model = ScriptedModel(
        "Let me look at the terminal. <read_terminal/>",
        "<cmd>\nshow interfaces\n</cmd>",
    )
    session = _session(model, FakeTerminal())

    outcome = asyncio.run(session.submit("check interfaces"))

    assert outcome.phase == "awaiting_approval"
    assert "Agent: Let me look at the terminal. <read_terminal/>" in model.prompts[1]


def test_protocol_violation_never_executes_and_reprompts() -> None:
    model = ScriptedModel(
        "Saving.\n<cmd>\nwrite memory\n</cmd>\n<task_complete/>",
        "Configuration is already saved.\n<task_complete/>",
    )
    terminal = FakeTerminal()
    session = _session(model, terminal)

    outcome = asyncio.run(session.submit("save the config"))

    assert terminal.executed == []
    assert "NOTICE: Your previous reply was discarded" in model.prompts[1]
    assert session.turns[0].violation is not None
    assert session.turns[0].action is None
    assert outcome.phase == "done"
    assert session.pending is None


def test_wait_for_user_is_quiescent() -> None:
    model = ScriptedModel("Which VLAN ID should I use?\n<wait_for_user/>")
    session = _session(model, FakeTerminal())

    outcome = asyncio.run(session.submit("create a vlan"))

    assert outcome.phase == "needs_clarification"
    assert outcome.quiescent is True
    assert outcome.question == "Which VLAN ID should I use?"
    assert len(model.prompts) == 1


def test_goal_tracking_replaces_and_keeps_goal() -> None:
    model = ScriptedModel(
        "New goal: Configure VLAN 10 on the switch",
        "<cmd>\nshow vlan brief\n</cmd>",
        "Continuing goal: configure vlan 10 and name it users",
        "<cmd>\nvlan 10\nname users\n</cmd>",
    )
    terminal = FakeTerminal()
    session = _session(model, terminal, track_goals=True)

    async def scenario() -> None:
        first = await session.submit("set up vlan 10")
        assert "GOAL EVALUATION INSTRUCTIONS" in model.prompts[0]
        assert "<cmd>" not in model.prompts[0]
        assert "The current goal is: Configure VLAN 10 on the switch" in model.prompts[1]
        assert first.pending is not None
        pending = first.pending

        second = await session.submit("name it users")

        assert pending.status == "abandoned"
        assert terminal.executed == []
        assert "**Currently Tracked Goal:** Configure VLAN 10 on the switch" in model.prompts[2]
        assert session.goal is not None
        assert session.goal.statement == "Configure VLAN 10 on the switch"
        assert "User: set up vlan 10" in model.prompts[3]
        assert second.pending is not None
        assert second.pending.commands == ("vlan 10", "name users")

    asyncio.run(scenario())


def test_goal_clarification_does_not_prompt_for_commands() -> None:
    model = ScriptedModel("Clarification needed: Which device should I configure?")
    session = _session(model, FakeTerminal(), track_goals=True)

    outcome = asyncio.run(session.submit("fix it"))

    assert outcome.phase == "needs_clarification"
    assert outcome.question == "Which device should I configure?"
    assert session.goal is None
    assert len(model.prompts) == 1
    assert session.messages[-1].role == "agent"


def test_unclassifiable_goal_surfaces_raw_output() -> None:
    model = ScriptedModel("Sure, happy to help with that!")
    session = _session(model, FakeTerminal(), track_goals=True)

    outcome = asyncio.run(session.submit("hello"))

    assert outcome.phase == "needs_clarification"
    assert outcome.question == "Sure, happy to help with that!"


def test_goal_completion_marks_done() -> None:
    model = ScriptedModel(
        "New goal: restart nginx",
        "Restarted.\n<cmd>\nsystemctl restart nginx\n</cmd>",
        "Complete",
    )
    session = _session(model, FakeTerminal(), track_goals=True)

    async def scenario() -> None:
        await session.submit("restart nginx")
        session.abandon()
        outcome = await session.submit("thanks, that's all")

        assert outcome.phase == "done"
        assert outcome.goal is not None
        assert outcome.goal.status == "complete"
        assert len(model.prompts) == 3

    asyncio.run(scenario())


def test_abandon_releases_pending_set() -> None:
    model = ScriptedModel("<cmd>\nerase startup-config\n</cmd>")
    terminal = FakeTerminal()
    session = _session(model, terminal)

    async def scenario() -> None:
        await session.submit("wipe the config")
        released = session.abandon()

        assert released is not None
        assert released.status == "abandoned"
        assert session.pending is None
        assert session.phase == "initial"
        with pytest.raises(SessionStateError):
            await session.accept()
        assert terminal.executed == []

    asyncio.run(scenario())


def test_accept_and_reject_require_pending_set() -> None:
    session = _session(ScriptedModel(), FakeTerminal())

    with pytest.raises(SessionStateError):
        asyncio.run(session.accept())
    with pytest.raises(SessionStateError):
        asyncio.run(session.reject("no"))


def test_empty_input_is_rejected() -> None:
    session = _session(ScriptedModel(), FakeTerminal())

    with pytest.raises(SessionStateError):
        asyncio.run(session.submit("   "))


def test_model_failure_is_surfaced_and_retry_resends_same_prompt() -> None:
    model = ScriptedModel(
        TransportFailure("connection reset", source="model"),
        "<cmd>\nuptime\n</cmd>",
    )
    session = _session(model, FakeTerminal())

    async def scenario() -> None:
        with pytest.raises(TransportFailure):
            await session.submit("how long has it been up")

        assert session.can_retry is True
        assert session.last_failure is not None
        assert session.last_failure.source == "model"

        outcome = await session.retry()

        assert outcome.phase == "awaiting_approval"
        assert model.prompts[0] == model.prompts[1]
        assert session.can_retry is False

    asyncio.run(scenario())


def test_retry_without_failure_raises() -> None:
    session = _session(ScriptedModel(), FakeTerminal())

    with pytest.raises(SessionStateError):
        asyncio.run(session.retry())


def test_call_timeout_becomes_transport_failure() -> None:
    async def slow_model(prompt: str) -> str:
        await asyncio.sleep(5)
        return "late"

    session = ConversationSession(
        session_id="s1",
        invoke=slow_model,
        terminal=FakeTerminal(),
        track_goals=False,
        call_timeout=0.01,
    )

    with pytest.raises(TransportFailure) as excinfo:
        asyncio.run(session.submit("anything"))

    assert excinfo.value.timed_out is True
    assert excinfo.value.source == "model"


def test_interrupted_execution_fails_closed() -> None:
    model = ScriptedModel("<cmd>\nshow run\ncopy run start\n</cmd>")
    terminal = FakeTerminal()
    terminal.interrupt_after = 1
    session = _session(model, terminal)

    async def scenario() -> None:
        outcome = await session.submit("save config")
        pending = outcome.pending
        assert pending is not None

        with pytest.raises(TransportFailure) as excinfo:
            await session.accept()

        assert excinfo.value.source == "terminal"
        assert excinfo.value.completed == ("show run",)
        assert pending.status == "failed"
        assert session.phase == "needs_clarification"
        assert session.can_retry is False
        assert len(model.prompts) == 1

    asyncio.run(scenario())


def test_new_input_supersedes_inflight_model_call() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        prompts: list[str] = []

        async def model(prompt: str) -> str:
            prompts.append(prompt)
            if len(prompts) == 1:
                await gate.wait()
                return "<cmd>\nstale command\n</cmd>"
            return "Nothing to do.\n<task_complete/>"

        session = ConversationSession(
            session_id="s1",
            invoke=model,
            terminal=FakeTerminal(),
            track_goals=False,
        )
        first = asyncio.create_task(session.submit("first request"))
        while not prompts:
            await asyncio.sleep(0)

        second = await session.submit("second request")
        gate.set()
        stale = await first

        assert stale.superseded is True
        assert second.phase == "done"
        assert session.pending is None
        assert session.phase == "done"

    asyncio.run(scenario())


def test_sessions_are_isolated() -> None:
    model_a = ScriptedModel("<cmd>\nls\n</cmd>")
    model_b = ScriptedModel("Explaining.\n<wait_for_user/>")
    session_a = _session(model_a, FakeTerminal())
    session_b = _session(model_b, FakeTerminal())

    async def scenario() -> None:
        outcome_a, outcome_b = await asyncio.gather(
            session_a.submit("list"),
            session_b.submit("explain"),
        )
        assert outcome_a.phase == "awaiting_approval"
        assert outcome_b.phase == "needs_clarification"
        assert session_b.pending is None

    asyncio.run(scenario())


def test_turns_are_written_to_session_log(tmp_path) -> None:
    model = ScriptedModel("<cmd>\nshow clock\n</cmd>", "Done.\n<task_complete/>")
    session = _session(model, FakeTerminal(), log_dir=tmp_path)

    async def scenario() -> None:
        await session.submit("what time is it")
        await session.accept()

    asyncio.run(scenario())

    log_files = list(tmp_path.glob("session-*.log"))
    assert len(log_files) == 1
    entries = [json.loads(line) for line in log_files[0].read_text(encoding="utf-8").splitlines()]
    assert [entry["action"] for entry in entries] == ["commands", "completion"]
    assert entries[0]["commands"] == ["show clock"]
    assert entries[0]["decision"] == "executed"
    assert entries[0]["output"] == "$ show clock\nok"
    assert entries[1]["phase"] == "done"
    assert entries[1]["goal_status"] == "complete"


def test_terminal_backend_error_fails_closed() -> None:
    model = ScriptedModel("<cmd>\nshow run\n</cmd>")
    terminal = FakeTerminal()
    session = _session(model, terminal)

    async def broken_execute(session_id: str, commands: Sequence[str]) -> ExecutionReport:
        raise PermissionError("cwd not accessible")

    terminal.execute = broken_execute  # type: ignore[method-assign]

    async def scenario() -> None:
        outcome = await session.submit("show config")
        pending = outcome.pending
        assert pending is not None

        with pytest.raises(TransportFailure) as excinfo:
            await session.accept()

        assert excinfo.value.source == "terminal"
        assert "cwd not accessible" in str(excinfo.value)
        assert isinstance(excinfo.value.__cause__, PermissionError)
        assert pending.status == "failed"
        assert session.pending is None
        assert session.phase == "needs_clarification"
        assert session.can_retry is False

    asyncio.run(scenario())


def test_input_is_refused_while_approved_commands_run() -> None:
    async def scenario() -> None:
        release = asyncio.Event()
        started = asyncio.Event()
        model = ScriptedModel("<cmd>\nreload\n</cmd>", "Reloaded.\n<task_complete/>")
        terminal = FakeTerminal()
        original_execute = terminal.execute

        async def slow_execute(session_id: str, commands: Sequence[str]) -> ExecutionReport:
            started.set()
            await release.wait()
            return await original_execute(session_id, commands)

        terminal.execute = slow_execute  # type: ignore[method-assign]
        session = _session(model, terminal)

        await session.submit("reload the router")
        running = asyncio.create_task(session.accept())
        await started.wait()

        with pytest.raises(SessionStateError):
            await session.submit("something else")
        with pytest.raises(SessionStateError):
            await session.retry()
        with pytest.raises(SessionStateError):
            await session.accept()
        with pytest.raises(SessionStateError):
            await session.reject("changed my mind")
        assert len(model.prompts) == 1
        assert session.pending is None

        release.set()
        outcome = await running

        assert outcome.superseded is False
        assert outcome.phase == "done"
        assert terminal.executed == [["reload"]]

    asyncio.run(scenario())


def test_discarded_reply_is_not_replayed_as_agent_history() -> None:
    model = ScriptedModel(
        "<cmd>\nerase startup-config\n</cmd>\n<task_complete/>",
        "Nothing to do.\n<task_complete/>",
    )
    session = _session(model, FakeTerminal())

    asyncio.run(session.submit("tidy up"))

    assert "Agent: <cmd>" not in model.prompts[1]
    assert "erase startup-config" not in model.prompts[1].split("**SYSTEM INSTRUCTIONS**")[0]
    assert all(
        "erase startup-config" not in message.content
        for message in session.messages
        if message.role == "agent"
    )
    assert any(
        message.role == "system" and "erase startup-config" in message.content
        for message in session.messages
    )
