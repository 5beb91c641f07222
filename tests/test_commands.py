"""Tests for the ``sv`` enhanced commands."""

from __future__ import annotations

from pathlib import Path

import pytest

from termwarden.config import SupervisionConfig
from termwarden.supervision.commands import HELP_TEXT, SupervisionCommands
from termwarden.supervision.context import ProjectContextCache
from termwarden.supervision.engine import SupervisionEngine
from termwarden.supervision.intervention import InterventionManager, InterventionRequest
from termwarden.supervision.workflow import WorkflowTracker
from termwarden.wire import Wire


class FakeBridge:
    def __init__(self) -> None:
        self.injected: list[str] = []

    def __contains__(self, session_id: object) -> bool:
        return session_id == "s1"

    async def inject(
        self, session_id: str, text: str, submit: bool = True, bracketed: bool = False
    ) -> None:
        self.injected.append(text)


@pytest.fixture
def engine(tmp_path: Path) -> SupervisionEngine:
    (tmp_path / "main.py").write_text("")
    wire = Wire()
    context = ProjectContextCache(tmp_path)
    return SupervisionEngine(
        FakeBridge(),  # type: ignore[arg-type]
        WorkflowTracker(wire),
        context,
        InterventionManager(context, wire),
        wire,
        SupervisionConfig(),
    )


@pytest.fixture
def commands(engine: SupervisionEngine) -> SupervisionCommands:
    return SupervisionCommands(engine)


async def run(commands: SupervisionCommands, line: str) -> str:
    result = await commands.execute("s1", line)
    assert result.handled
    return result.message


class TestMatches:
    def test_names(self, commands: SupervisionCommands) -> None:
        assert commands.matches("sv")
        assert commands.matches("sv status")
        assert commands.matches("  SUPERVISION mode auto ")
        assert commands.matches("supervise help")

    def test_prefix_needs_word_boundary(self, commands: SupervisionCommands) -> None:
        assert not commands.matches("svn update")
        assert not commands.matches("ls sv")
        assert not commands.matches("")


class TestStatus:
    async def test_default_is_status(self, commands: SupervisionCommands) -> None:
        message = await run(commands, "sv")
        assert message.startswith("Supervision status:")
        assert "Mode: balanced" in message
        assert "Engine: stopped" in message
        assert "CLAUDE.md: missing" in message

    async def test_unknown_subcommand(self, commands: SupervisionCommands) -> None:
        message = await run(commands, "sv dance")
        assert message == 'Unknown subcommand: dance\nTry "sv help" for available commands'

    async def test_help(self, commands: SupervisionCommands) -> None:
        assert await run(commands, "sv help") == HELP_TEXT


class TestMode:
    async def test_show(self, commands: SupervisionCommands) -> None:
        assert await run(commands, "sv mode") == "Current supervision mode: balanced"

    async def test_change(self, commands: SupervisionCommands, engine: SupervisionEngine) -> None:
        assert await run(commands, "sv mode Auto") == "Supervision mode changed to: auto"
        assert engine.mode == "auto"

    async def test_invalid(self, commands: SupervisionCommands, engine: SupervisionEngine) -> None:
        message = await run(commands, "sv mode loud")
        assert message == "Invalid mode: loud\nValid modes: strict, balanced, auto"
        assert engine.mode == "balanced"


class TestHistoryAndStats:
    async def test_empty_history(self, commands: SupervisionCommands) -> None:
        assert await run(commands, "sv history") == "No interventions recorded yet"

    async def test_history_lists_recent(
        self, commands: SupervisionCommands, engine: SupervisionEngine
    ) -> None:
        for line in ("error: one", "error: two"):
            await engine.interventions.process(
                InterventionRequest("error_recovery", "s1", line=line)
            )
        message = await run(commands, "sv history 1")
        lines = message.splitlines()
        assert lines[0] == "Recent interventions:"
        assert len(lines) == 2
        assert "error_recovery (completed): Let's work through this error:" in lines[1]

    async def test_history_bad_count(self, commands: SupervisionCommands, engine: SupervisionEngine) -> None:
        await engine.interventions.process(InterventionRequest("error_recovery", "s1"))
        message = await run(commands, "sv history many")
        assert message.startswith("Recent interventions:")

    async def test_stats(self, commands: SupervisionCommands, engine: SupervisionEngine) -> None:
        await engine.interventions.process(InterventionRequest("error_recovery", "s1"))
        message = await run(commands, "sv stats")
        assert "Total interventions: 1" in message
        assert "error_recovery: 1" in message
        assert "Success rate: 0%" in message

    async def test_reset(self, commands: SupervisionCommands, engine: SupervisionEngine) -> None:
        await engine.intervene(InterventionRequest("error_recovery", "s1"))
        assert await run(commands, "sv reset") == "Supervision statistics have been reset"
        assert engine.interventions.stats()["totalInterventions"] == 0
        assert await engine.intervene(InterventionRequest("error_recovery", "s1")) is not None


class TestWorkflowCommands:
    async def test_no_workflows(self, commands: SupervisionCommands) -> None:
        assert await run(commands, "sv workflows") == "No workflows tracked for this session"

    async def test_workflows(self, commands: SupervisionCommands, engine: SupervisionEngine) -> None:
        wid = engine.tracker.start_workflow("prd-to-claude", "s1")
        engine.tracker.complete_step(wid, "prd_generated")
        engine.tracker.start_workflow("prd-to-claude", "other")
        message = await run(commands, "sv workflows")
        lines = message.splitlines()
        assert len(lines) == 2
        assert f"{wid} [active] 1/6 steps, current: prd_transferred_to_ide" in lines[1]

    async def test_check(self, commands: SupervisionCommands) -> None:
        assert await run(commands, "sv check") == "No stalled workflows"


class TestContextCommands:
    async def test_context_default(self, commands: SupervisionCommands) -> None:
        message = await run(commands, "sv context")
        assert message.startswith("## Context Update: general_confusion")

    async def test_context_scenario(self, commands: SupervisionCommands) -> None:
        message = await run(commands, "sv context file_confusion")
        assert "main.py" in message

    async def test_context_unknown(self, commands: SupervisionCommands) -> None:
        message = await run(commands, "sv context nonsense")
        assert message.startswith("Unknown scenario: nonsense")

    async def test_refresh(self, commands: SupervisionCommands) -> None:
        message = await run(commands, "sv refresh")
        assert message == "Project context refreshed: 1 files, 0 requirements"
