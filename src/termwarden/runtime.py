"""Runtime assembly shared by the server and CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from termwarden.config import TermwardenConfig
from termwarden.pty.bridge import TerminalBridge
from termwarden.supervision.commands import SupervisionCommands
from termwarden.supervision.context import ProjectContextCache
from termwarden.supervision.engine import SupervisionEngine
from termwarden.supervision.intervention import InterventionManager
from termwarden.supervision.workflow import WorkflowTracker
from termwarden.wire import Wire

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """All components of one termwarden process."""

    config: TermwardenConfig
    wire: Wire
    bridge: TerminalBridge
    tracker: WorkflowTracker
    context: ProjectContextCache
    interventions: InterventionManager
    engine: SupervisionEngine
    commands: SupervisionCommands

    async def start(self) -> None:
        """Take the first project snapshot and start the engine."""
        try:
            await self.context.refresh()
        except OSError as e:
            logger.warning("Initial project scan failed: %s", e)
        await self.engine.start()

    async def shutdown(self) -> None:
        await self.engine.stop()
        await self.bridge.shutdown()
        self.wire.close()


def build_runtime(config: TermwardenConfig | None = None) -> Runtime:
    """Set up all components.

    This is synchronous setup; nothing is spawned until ``start()``.
    """
    config = config or TermwardenConfig()
    supervision = config.supervision
    wire = Wire()

    bridge = TerminalBridge(config.bridge, wire=wire)

    tracker = WorkflowTracker(wire=wire)
    if supervision.workflows_file:
        tracker.load_definitions(Path(supervision.workflows_file).expanduser())

    context = ProjectContextCache(
        project_root=supervision.project_root,
        instruction_file=supervision.instruction_file,
        ttl=supervision.context_ttl,
        tree_depth=supervision.tree_depth,
        skip_dirs=supervision.skip_dirs,
    )
    interventions = InterventionManager(
        context, wire=wire, history_limit=supervision.history_limit
    )
    engine = SupervisionEngine(
        bridge, tracker, context, interventions, wire, config=supervision
    )

    # Enhanced commands are typed into the terminal and never reach the shell
    commands = SupervisionCommands(engine)
    bridge.set_command_interceptor(commands)

    return Runtime(
        config=config,
        wire=wire,
        bridge=bridge,
        tracker=tracker,
        context=context,
        interventions=interventions,
        engine=engine,
        commands=commands,
    )
