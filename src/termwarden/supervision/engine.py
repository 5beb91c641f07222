"""Supervision engine. Watches the wire and decides when to intervene.

The engine is the only wire consumer that acts. Terminal output is split
into lines and scanned for confusion, errors and permission questions;
workflow events (confusion, escalated failures, stalls) are turned into
intervention requests. Each response is either typed into the session
or held for a human, depending on the supervision mode.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from termwarden.config import SupervisionConfig
from termwarden.errors import SessionNotFound, WorkflowNotFound
from termwarden.pty.bridge import TerminalBridge
from termwarden.supervision.context import ProjectContextCache
from termwarden.supervision.intervention import (
    PRIORITY_RANK,
    InterventionManager,
    InterventionRequest,
    InterventionResponse,
)
from termwarden.supervision.signals import SignalKind, detect_signals, strip_ansi
from termwarden.supervision.workflow import WorkflowTracker
from termwarden.wire import (
    EventType,
    InterventionEvent,
    SessionEvent,
    Wire,
    WireEvent,
    WorkflowEvent,
)

logger = logging.getLogger(__name__)

MODES = ("strict", "balanced", "auto")

# Stalled step -> intervention that unblocks it
STUCK_INTERVENTIONS = {
    "claude_md_created": "claude_md_missing",
    "requirements_found": "requirements_missing",
    "prd_transferred_to_ide": "requirements_missing",
}

MAX_PARTIAL_LINE = 4096

# Seconds an injected line may take to come back as terminal echo
ECHO_WINDOW = 10.0
# Shorter output lines are never treated as fragments of an echo
MIN_ECHO_FRAGMENT = 4


def _is_fragment(line: str, injected: str) -> bool:
    if line in injected:
        return True
    start = line.find(injected[:MIN_ECHO_FRAGMENT])
    return start >= 0 and injected.startswith(line[start:])


@dataclass
class HeldIntervention:
    """A response that was not typed into the session automatically."""

    session_id: str | None
    response: InterventionResponse
    reason: str
    held_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "reason": self.reason,
            "heldAt": self.held_at,
            "response": self.response.to_dict(),
        }


class SupervisionEngine:
    """Connects terminal output and workflow events to interventions."""

    def __init__(
        self,
        bridge: TerminalBridge,
        tracker: WorkflowTracker,
        context: ProjectContextCache,
        interventions: InterventionManager,
        wire: Wire,
        config: SupervisionConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bridge = bridge
        self.tracker = tracker
        self.context = context
        self.interventions = interventions
        self.config = config or SupervisionConfig()
        self._wire = wire
        self._clock = clock
        self._mode = self.config.mode
        self._partial: dict[str, str] = {}
        self._last_question: dict[str, str] = {}
        self._echoes: dict[str, list[tuple[str, float]]] = {}
        self._last_fired: dict[tuple[str | None, str], float] = {}
        self._held: deque[HeldIntervention] = deque(maxlen=self.config.history_limit)
        self._queue: asyncio.Queue[WireEvent | None] | None = None
        self._task: asyncio.Task | None = None
        self._stats = {
            "signalsDetected": 0,
            "interventionsTriggered": 0,
            "injected": 0,
            "held": 0,
            "suppressed": 0,
            "listenerErrors": 0,
        }

    # ------------------------------------------------------------------
    # Mode
    # ------------------------------------------------------------------

    @property
    def mode(self) -> str:
        return self._mode

    def set_mode(self, mode: str) -> None:
        mode = mode.lower()
        if mode not in MODES:
            raise ValueError(f"Unknown supervision mode {mode!r} (expected one of {', '.join(MODES)})")
        if mode != self._mode:
            logger.info("Supervision mode: %s -> %s", self._mode, mode)
        self._mode = mode

    def should_inject(self, response: InterventionResponse) -> bool:
        """Delivery policy for the current mode."""
        if response.requires_approval or not response.content:
            return False
        if self._mode == "strict":
            return False
        if self._mode == "auto":
            return True
        return PRIORITY_RANK.get(response.priority, len(PRIORITY_RANK)) <= PRIORITY_RANK["high"]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = self._wire.subscribe()
        self._task = asyncio.get_running_loop().create_task(self._run(self._queue))
        logger.info("Supervision engine started (mode=%s)", self._mode)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if self._queue is not None:
            self._wire.unsubscribe(self._queue)
            self._queue = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Supervision engine stopped")

    async def _run(self, queue: asyncio.Queue[WireEvent | None]) -> None:
        while True:
            event = await queue.get()
            if event is None:
                break
            try:
                await self.handle_event(event)
            except Exception:
                self._stats["listenerErrors"] += 1
                logger.exception("Supervision listener failed on %s", event.type.value)

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    async def handle_event(self, event: WireEvent) -> None:
        if isinstance(event, SessionEvent):
            if event.type == EventType.SESSION_OUTPUT:
                await self.observe_output(event.session_id, event.data)
            elif event.type in (EventType.SESSION_EXIT, EventType.SESSION_TERMINATED):
                self._partial.pop(event.session_id, None)
                self._last_question.pop(event.session_id, None)
                self._echoes.pop(event.session_id, None)
        elif isinstance(event, WorkflowEvent):
            await self._on_workflow_event(event)
        elif isinstance(event, InterventionEvent):
            if event.type == EventType.PERMISSION_RESOLVED:
                await self._on_permission_resolved(event)

    async def observe_output(self, session_id: str, data: str) -> None:
        """Scan complete output lines of one session for signals.

        A trailing partial line is kept until its newline arrives.
        """
        text = self._partial.pop(session_id, "") + data.replace("\r\n", "\n").replace("\r", "\n")
        complete, sep, rest = text.rpartition("\n")
        if rest:
            self._partial[session_id] = rest[-MAX_PARTIAL_LINE:]
            # Permission prompts wait for input without printing a newline
            if not self._is_echo(session_id, rest, consume=False):
                for signal in detect_signals(rest):
                    if signal.kind is SignalKind.QUESTION:
                        await self._on_question(session_id, signal.line, signal.label)
        if not sep:
            return
        complete = self._drop_echo(session_id, complete)
        if not complete.strip():
            return

        workflows = self.tracker.active_workflows(session_id)
        for workflow in workflows:
            self.tracker.observe_output(workflow.id, complete)

        for signal in detect_signals(complete):
            self._stats["signalsDetected"] += 1
            logger.debug("Session %s: %s signal %s", session_id, signal.kind.value, signal.label)
            if signal.kind is SignalKind.QUESTION:
                await self._on_question(
                    session_id,
                    signal.line,
                    signal.label,
                    workflows[0].id if workflows else None,
                )
            elif workflows:
                # The tracker publishes its own events; those are handled below
                workflow = workflows[0]
                if signal.kind is SignalKind.CONFUSION:
                    self.tracker.report_confusion_signal(
                        workflow.id, signal.line, {"label": signal.label}
                    )
                else:
                    self.tracker.report_failure(
                        workflow.id,
                        workflow.current_step or workflow.steps[-1],
                        signal.line,
                        {"label": signal.label},
                    )
            else:
                await self.intervene(
                    InterventionRequest(
                        signal.intervention_type,
                        session_id=session_id,
                        line=signal.line,
                        context={"label": signal.label, "signal_priority": signal.priority},
                    )
                )

    def _expect_echo(self, session_id: str, text: str) -> None:
        expires = self._clock() + ECHO_WINDOW
        lines = [line.strip() for line in text.split("\n") if line.strip()]
        self._echoes.setdefault(session_id, []).extend((line, expires) for line in lines)

    def _is_echo(self, session_id: str, raw: str, consume: bool = True) -> bool:
        """Whether an output line is the terminal echoing injected text.

        A line containing a whole injected line uses up that entry. A
        piece of one (wrapped by the shell, or a prompt followed by the
        start of the paste) does not.
        """
        pending = self._echoes.get(session_id)
        if not pending:
            return False
        now = self._clock()
        pending[:] = [(line, expires) for line, expires in pending if expires > now]
        line = strip_ansi(raw).strip()
        if not line:
            return False
        for i, (injected, _) in enumerate(pending):
            if injected in line:
                if consume:
                    del pending[i]
                return True
            if len(line) >= MIN_ECHO_FRAGMENT and _is_fragment(line, injected):
                return True
        return False

    def _drop_echo(self, session_id: str, text: str) -> str:
        if not self._echoes.get(session_id):
            return text
        kept = [raw for raw in text.split("\n") if not self._is_echo(session_id, raw)]
        if not self._echoes.get(session_id):
            self._echoes.pop(session_id, None)
        return "\n".join(kept)

    async def _on_question(
        self, session_id: str, line: str, label: str, workflow_id: str | None = None
    ) -> None:
        # A prompt is seen once as a partial line and again when it completes
        if self._last_question.get(session_id) == line:
            return
        self._last_question[session_id] = line
        await self.intervene(
            InterventionRequest(
                "permission_request",
                session_id=session_id,
                workflow_id=workflow_id,
                line=line,
                context={"label": label},
            )
        )

    async def _on_workflow_event(self, event: WorkflowEvent) -> None:
        data = event.data
        if event.type == EventType.STEP_COMPLETED:
            self.context.set_phase(event.step)
        elif event.type == EventType.CONFUSION_DETECTED:
            await self.intervene(
                InterventionRequest(
                    data["intervention_type"],
                    session_id=event.session_id,
                    workflow_id=event.workflow_id,
                    line=data.get("signal", ""),
                    context={"category": data.get("category"), "step": event.step},
                )
            )
        elif event.type == EventType.INTERVENTION_NEEDED:
            await self.intervene(
                InterventionRequest(
                    data["intervention_type"],
                    session_id=event.session_id,
                    workflow_id=event.workflow_id,
                    line=data.get("error", ""),
                    context={"step": event.step, "severity": data.get("severity")},
                )
            )
        elif event.type == EventType.WORKFLOW_STUCK:
            step = event.step or ""
            await self.intervene(
                InterventionRequest(
                    STUCK_INTERVENTIONS.get(step, "general_confusion"),
                    session_id=event.session_id,
                    workflow_id=event.workflow_id,
                    context={
                        "scenario": "implementation_stuck",
                        "current_activity": step.replace("_", " "),
                        "elapsed_ms": data.get("elapsed_ms"),
                    },
                )
            )

    async def _on_permission_resolved(self, event: InterventionEvent) -> None:
        if event.session_id is None or event.session_id not in self.bridge:
            return
        approved = bool(event.data.get("approved"))
        keys = self.config.approve_input if approved else self.config.reject_input
        try:
            await self.bridge.inject(event.session_id, keys, submit=False)
        except SessionNotFound:
            logger.warning("Session %s gone before permission decision", event.session_id)

    # ------------------------------------------------------------------
    # Interventions
    # ------------------------------------------------------------------

    async def intervene(self, request: InterventionRequest) -> InterventionResponse | None:
        """Process a request and deliver the response.

        Returns None when the request was suppressed by the cooldown.
        """
        if request.type == "requirements_missing" and not self.context.has_instruction_file():
            request.type = "claude_md_missing"

        key = (request.session_id, request.type)
        now = self._clock()
        last = self._last_fired.get(key)
        # Every permission prompt needs its own decision
        cooling = request.type != "permission_request"
        if cooling and last is not None and now - last < self.config.cooldown:
            self._stats["suppressed"] += 1
            logger.debug("Suppressed %s for session %s (cooldown)", request.type, request.session_id)
            return None
        self._last_fired[key] = now

        self._stats["interventionsTriggered"] += 1
        response = await self.interventions.process(request)
        if request.workflow_id:
            try:
                self.tracker.record_intervention(request.workflow_id, response.id)
            except WorkflowNotFound:
                logger.debug("Workflow %s pruned before intervention was recorded", request.workflow_id)
        await self._deliver(request.session_id, response)
        return response

    async def _deliver(self, session_id: str | None, response: InterventionResponse) -> None:
        if response.requires_approval:
            self._hold(session_id, response, "awaiting_approval")
            return
        if session_id is None or session_id not in self.bridge:
            self._hold(session_id, response, "no_session")
            return
        if not self.should_inject(response):
            self._hold(session_id, response, f"mode_{self._mode}")
            return
        text = response.content.rstrip("\n")
        # Registered first: the echo can arrive before inject() returns
        self._expect_echo(session_id, text)
        try:
            await self.bridge.inject(
                session_id,
                text,
                submit=True,
                bracketed=self.config.bracketed_paste,
            )
        except SessionNotFound:
            self._echoes.pop(session_id, None)
            self._hold(session_id, response, "no_session")
            return
        self._stats["injected"] += 1
        logger.info("Injected %s intervention %s into session %s", response.type, response.id, session_id)

    def _hold(self, session_id: str | None, response: InterventionResponse, reason: str) -> None:
        self._held.append(HeldIntervention(session_id, response, reason))
        self._stats["held"] += 1
        logger.info("Holding %s intervention %s (%s)", response.type, response.id, reason)

    def held(self, session_id: str | None = None) -> list[HeldIntervention]:
        return [h for h in self._held if session_id is None or h.session_id == session_id]

    def check_stalled(self) -> list[str]:
        """Run the stuck check on every active workflow; returns the stuck ids."""
        stuck = []
        for workflow in self.tracker.active_workflows():
            if self.tracker.check_stuck(workflow.id):
                stuck.append(workflow.id)
        return stuck

    def reset_cooldowns(self) -> None:
        self._last_fired.clear()

    def stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "mode": self._mode,
            "running": self.running,
            "heldCount": len(self._held),
        }
