"""Enhanced ``sv`` commands typed into a supervised terminal.

The bridge offers every completed input line to ``matches()``; matching
lines are executed here and never reach the shell.

    sv                      status (default)
    sv mode [mode]          show or change the supervision mode
    sv history [n]          recent interventions (default 5)
    sv stats                intervention and workflow statistics
    sv workflows            workflows tracked for this session
    sv context [scenario]   context payload the agent would receive
    sv refresh              rescan the project
    sv check                run the stuck check on active workflows
    sv reset                clear intervention statistics and cooldowns
    sv help                 this help
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

from termwarden.pty.bridge import CommandResult
from termwarden.supervision.context import SCENARIOS
from termwarden.supervision.engine import MODES, SupervisionEngine

logger = logging.getLogger(__name__)

COMMAND_NAMES = ("sv", "supervision", "supervise")
DEFAULT_HISTORY = 5

HELP_TEXT = """\
Supervision commands:
  sv status              Show supervision status
  sv mode [mode]         Show or change the mode (strict, balanced, auto)
  sv history [count]     Show recent interventions (default: 5)
  sv stats               Show intervention and workflow statistics
  sv workflows           Show workflows tracked for this session
  sv context [scenario]  Show the context the agent would receive
  sv refresh             Rescan the project directory
  sv check               Check active workflows for stalled steps
  sv reset               Reset intervention statistics
  sv help                Show this help

Modes:
  strict                 Never type interventions automatically
  balanced               Type immediate and high-priority interventions
  auto                   Type every intervention"""

_HINT = 'Try "sv help" for available commands'


class SupervisionCommands:
    """Command interceptor for the terminal bridge."""

    def __init__(self, engine: SupervisionEngine) -> None:
        self.engine = engine
        self._handlers: dict[str, Callable[[str, list[str]], Awaitable[str]]] = {
            "status": self._status,
            "mode": self._mode,
            "history": self._history,
            "stats": self._stats,
            "workflows": self._workflows,
            "context": self._context,
            "refresh": self._refresh,
            "check": self._check,
            "reset": self._reset,
            "help": self._help,
        }

    def matches(self, line: str) -> bool:
        text = line.strip().lower()
        return any(text == name or text.startswith(name + " ") for name in COMMAND_NAMES)

    async def execute(self, session_id: str, line: str) -> CommandResult:
        parts = line.split()
        subcommand = parts[1].lower() if len(parts) > 1 else "status"
        args = parts[2:]
        handler = self._handlers.get(subcommand)
        if handler is None:
            return CommandResult(True, f"Unknown subcommand: {subcommand}\n{_HINT}")
        logger.debug("sv %s %s (session %s)", subcommand, args, session_id)
        return CommandResult(True, await handler(session_id, args))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _status(self, session_id: str, args: list[str]) -> str:
        engine = self.engine
        stats = engine.interventions.stats()
        history = engine.interventions.history(1)
        last = history[-1].type if history else "none"
        context = engine.context
        return "\n".join(
            [
                "Supervision status:",
                f"  Engine: {'running' if engine.running else 'stopped'}",
                f"  Mode: {engine.mode}",
                f"  Interventions: {stats['totalInterventions']}",
                f"  Last intervention: {last}",
                f"  Pending permissions: {stats['pendingPermissions']}",
                f"  Active workflows: {len(engine.tracker.active_workflows(session_id))}",
                f"  {context.instruction_file}: "
                + ("found" if context.has_instruction_file() else "missing"),
                "",
                'Use "sv help" for available commands',
            ]
        )

    async def _mode(self, session_id: str, args: list[str]) -> str:
        if not args:
            return f"Current supervision mode: {self.engine.mode}"
        mode = args[0].lower()
        if mode not in MODES:
            return f"Invalid mode: {mode}\nValid modes: {', '.join(MODES)}"
        self.engine.set_mode(mode)
        return f"Supervision mode changed to: {mode}"

    async def _history(self, session_id: str, args: list[str]) -> str:
        try:
            limit = int(args[0]) if args else DEFAULT_HISTORY
        except ValueError:
            limit = DEFAULT_HISTORY
        records = self.engine.interventions.history(max(limit, 1))
        if not records:
            return "No interventions recorded yet"
        lines = ["Recent interventions:"]
        for i, record in enumerate(records, 1):
            stamp = time.strftime("%H:%M:%S", time.localtime(record.timestamp))
            first = record.response.content.strip().splitlines()[0] if record.response.content.strip() else ""
            lines.append(f"  {i}. [{stamp}] {record.type} ({record.outcome}): {first[:60]}")
        return "\n".join(lines)

    async def _stats(self, session_id: str, args: list[str]) -> str:
        interventions = self.engine.interventions.stats()
        workflows = self.engine.tracker.stats()
        engine = self.engine.stats()
        lines = [
            "Supervision statistics:",
            f"  Total interventions: {interventions['totalInterventions']}",
            f"  Successful: {interventions['successfulInterventions']}",
            f"  Failed: {interventions['failedInterventions']}",
            f"  Average response time: {interventions['averageResponseTime']:.1f}ms",
            f"  Injected: {engine['injected']}  Held: {engine['held']}  Suppressed: {engine['suppressed']}",
            "",
            "Workflows:",
            f"  Total: {workflows['total']}  Completed: {workflows['completed']}"
            f"  Stuck: {workflows['stuck']}  Failed: {workflows['failed']}",
            f"  Success rate: {workflows['successRate']:.0%}",
        ]
        if interventions["interventionTypes"]:
            lines += ["", "Intervention types:"]
            lines += [f"  {name}: {count}" for name, count in interventions["interventionTypes"].items()]
        return "\n".join(lines)

    async def _workflows(self, session_id: str, args: list[str]) -> str:
        workflows = [w for w in self.engine.tracker.workflows() if w.session_id == session_id]
        if not workflows:
            return "No workflows tracked for this session"
        lines = ["Workflows:"]
        for workflow in workflows:
            lines.append(
                f"  {workflow.id} [{workflow.status.value}] "
                f"{len(workflow.completed_steps)}/{len(workflow.steps)} steps, "
                f"current: {workflow.current_step or '-'}"
            )
        return "\n".join(lines)

    async def _context(self, session_id: str, args: list[str]) -> str:
        scenario = args[0] if args else "general_confusion"
        if scenario not in SCENARIOS:
            return f"Unknown scenario: {scenario}\nScenarios: {', '.join(SCENARIOS)}"
        payload = await self.engine.context.get_context_for(scenario)
        return payload.message

    async def _refresh(self, session_id: str, args: list[str]) -> str:
        snapshot = await self.engine.context.refresh()
        return (
            f"Project context refreshed: {snapshot.file_count} files, "
            f"{len(snapshot.requirements)} requirements"
        )

    async def _check(self, session_id: str, args: list[str]) -> str:
        stuck = self.engine.check_stalled()
        if not stuck:
            return "No stalled workflows"
        return "Stalled workflows:\n" + "\n".join(f"  {wid}" for wid in stuck)

    async def _reset(self, session_id: str, args: list[str]) -> str:
        self.engine.interventions.reset()
        self.engine.reset_cooldowns()
        return "Supervision statistics have been reset"

    async def _help(self, session_id: str, args: list[str]) -> str:
        return HELP_TEXT
