"""Workflow tracker: milestone state machines for multi-step agent tasks.

A workflow is a named, ordered list of steps the supervised agent is
expected to pass through (e.g. requirements written, instruction file
created, agent launched, implementation started). The tracker records
completions, failures and stalls, and publishes events on the wire so
the supervision engine can decide whether to intervene.

Timeouts are evaluated on demand by comparing timestamps; nothing is
scheduled.
"""

from __future__ import annotations

import enum
import logging
import re
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from termwarden.errors import UnknownWorkflowType, WorkflowNotFound
from termwarden.supervision.signals import (
    ConfusionCategory,
    FailureSeverity,
    assess_failure,
    classify_confusion,
    recommend_for_failure,
)
from termwarden.wire import EventType, Wire

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT_MS = 60_000
FAILURE_PATTERN_LIMIT = 50


class WorkflowStatus(enum.Enum):
    ACTIVE = "active"
    STUCK = "stuck"
    FAILED = "failed"
    COMPLETED = "completed"


@dataclass(frozen=True)
class WorkflowDefinition:
    """Steps, per-step timeouts (ms), critical steps and output markers."""

    name: str
    steps: tuple[str, ...]
    timeouts: dict[str, int] = field(default_factory=dict)
    critical_steps: frozenset[str] = frozenset()
    # step -> regexes that mark the step complete when seen in output
    markers: dict[str, tuple[str, ...]] = field(default_factory=dict)
    default_timeout: int = DEFAULT_STEP_TIMEOUT_MS

    def timeout_for(self, step: str) -> int:
        return self.timeouts.get(step, self.default_timeout)

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> WorkflowDefinition:
        steps = tuple(data.get("steps") or ())
        if not steps:
            raise ValueError(f"Workflow {name!r} declares no steps")
        markers = {
            step: tuple([patterns] if isinstance(patterns, str) else patterns)
            for step, patterns in (data.get("markers") or {}).items()
        }
        unknown = (set(data.get("critical_steps") or ()) | set(markers)) - set(steps)
        if unknown:
            raise ValueError(f"Workflow {name!r} references unknown steps: {sorted(unknown)}")
        return cls(
            name=name,
            steps=steps,
            timeouts={k: int(v) for k, v in (data.get("timeouts") or {}).items()},
            critical_steps=frozenset(data.get("critical_steps") or ()),
            markers=markers,
            default_timeout=int(data.get("default_timeout", DEFAULT_STEP_TIMEOUT_MS)),
        )


PRD_TO_CLAUDE = WorkflowDefinition(
    name="prd-to-claude",
    steps=(
        "prd_generated",
        "prd_transferred_to_ide",
        "claude_md_created",
        "claude_code_launched",
        "requirements_found",
        "implementation_started",
    ),
    timeouts={
        "prd_transferred_to_ide": 30_000,
        "claude_md_created": 10_000,
        "claude_code_launched": 15_000,
        "requirements_found": 20_000,
        "implementation_started": 45_000,
    },
    critical_steps=frozenset({"claude_md_created", "requirements_found"}),
    markers={
        "claude_code_launched": (r"welcome to claude code", r"claude code v?\d"),
        "requirements_found": (
            r"(found|reading|read) .*(requirements|claude\.md)",
            r"according to (the )?(requirements|claude\.md)",
        ),
        "implementation_started": (
            r"(let me|i'll|i will) (start|begin) (implementing|building|creating)",
            r"creating (file|directory)",
        ),
    },
)


@dataclass
class FailureRecord:
    step: str
    error: str
    severity: FailureSeverity
    timestamp: float
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class Workflow:
    """One tracked instance of a workflow definition."""

    id: str
    definition: WorkflowDefinition
    session_id: str
    started_at: float
    metadata: dict[str, Any] = field(default_factory=dict)
    completed_steps: list[str] = field(default_factory=list)
    failures: list[FailureRecord] = field(default_factory=list)
    interventions: list[str] = field(default_factory=list)
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    last_progress: float = 0.0
    ended_at: float | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def type(self) -> str:
        return self.definition.name

    @property
    def steps(self) -> tuple[str, ...]:
        return self.definition.steps

    @property
    def current_step(self) -> str | None:
        """First step not yet completed, or None when all are done."""
        done = set(self.completed_steps)
        return next((s for s in self.steps if s not in done), None)

    @property
    def progress(self) -> float:
        return len(self.completed_steps) / len(self.steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "sessionId": self.session_id,
            "status": self.status.value,
            "steps": list(self.steps),
            "completedSteps": list(self.completed_steps),
            "currentStep": self.current_step,
            "progress": round(self.progress, 3),
            "failures": [
                {
                    "step": f.step,
                    "error": f.error,
                    "severity": f.severity.value,
                    "timestamp": f.timestamp,
                }
                for f in self.failures
            ],
            "interventions": list(self.interventions),
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "metadata": dict(self.metadata),
        }


class WorkflowTracker:
    """Tracks workflow instances and raises events when they need help.

    Transitions on one workflow are serialized with that workflow's lock.
    Events are published after the lock is released.
    """

    def __init__(
        self,
        wire: Wire | None = None,
        definitions: list[WorkflowDefinition] | None = None,
        clock: Callable[[], float] = time.time,
        history_limit: int = 500,
    ) -> None:
        self._wire = wire
        self._clock = clock
        self._history_limit = history_limit
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._workflows: dict[str, Workflow] = {}
        self._failure_patterns: dict[str, deque[str]] = {}
        for definition in definitions if definitions is not None else [PRD_TO_CLAUDE]:
            self.register_type(definition)

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def register_type(self, definition: WorkflowDefinition) -> None:
        if definition.name in self._definitions:
            logger.info("Replacing workflow type %s", definition.name)
        self._definitions[definition.name] = definition

    def load_definitions(self, path: str | Path) -> list[str]:
        """Register workflow types from a YAML file.

        Format::

            workflows:
              deploy:
                steps: [build, test, release]
                timeouts: {build: 120000}
                critical_steps: [test]
                markers: {release: "released v\\\\d+"}
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping with a 'workflows' key")
        names = []
        for name, spec in (data.get("workflows") or {}).items():
            self.register_type(WorkflowDefinition.from_dict(name, spec))
            names.append(name)
        logger.info("Loaded %d workflow type(s) from %s", len(names), path)
        return names

    @property
    def types(self) -> list[str]:
        return list(self._definitions)

    def definition(self, workflow_type: str) -> WorkflowDefinition:
        definition = self._definitions.get(workflow_type)
        if definition is None:
            raise UnknownWorkflowType(workflow_type)
        return definition

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_workflow(
        self,
        workflow_type: str,
        session_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        definition = self._definitions.get(workflow_type)
        if definition is None:
            raise UnknownWorkflowType(workflow_type)

        now = self._clock()
        workflow_id = f"{workflow_type}-{session_id}-{int(now * 1000)}"
        suffix = 1
        while workflow_id in self._workflows:
            suffix += 1
            workflow_id = f"{workflow_type}-{session_id}-{int(now * 1000)}-{suffix}"

        self._workflows[workflow_id] = Workflow(
            id=workflow_id,
            definition=definition,
            session_id=session_id,
            started_at=now,
            metadata=dict(metadata or {}),
            last_progress=now,
        )
        self._prune()
        logger.info("Started %s workflow %s", workflow_type, workflow_id)
        self._emit(EventType.WORKFLOW_STARTED, self._workflows[workflow_id])
        return workflow_id

    def get(self, workflow_id: str) -> Workflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    def complete_step(
        self, workflow_id: str, step: str, data: dict[str, Any] | None = None
    ) -> bool:
        """Mark a step complete.

        Returns False if the step is unknown to the workflow's type or was
        already completed.
        """
        workflow = self.get(workflow_id)
        with workflow._lock:
            if step not in workflow.steps:
                logger.warning("Unknown step %s for workflow type %s", step, workflow.type)
                return False
            if step in workflow.completed_steps:
                return False
            workflow.completed_steps.append(step)
            workflow.last_progress = self._clock()
            finished = len(workflow.completed_steps) == len(workflow.steps)
            if finished:
                workflow.status = WorkflowStatus.COMPLETED
                workflow.ended_at = workflow.last_progress
            else:
                workflow.status = WorkflowStatus.ACTIVE

        logger.info("Step completed: %s (%s)", step, workflow_id)
        self._emit(EventType.STEP_COMPLETED, workflow, step=step, data=data or {})
        if finished:
            logger.info(
                "Workflow %s completed in %.1fs",
                workflow_id,
                workflow.ended_at - workflow.started_at,
            )
            self._emit(EventType.WORKFLOW_COMPLETED, workflow)
        return True

    def report_failure(
        self,
        workflow_id: str,
        step: str,
        error: str,
        context: dict[str, Any] | None = None,
    ) -> FailureRecord:
        """Record a step failure and escalate it if it is worth intervening.

        Critical-step failures and recoverable error patterns publish
        INTERVENTION_NEEDED with a recommendation; everything else is only
        recorded.
        """
        workflow = self.get(workflow_id)
        severity = assess_failure(step, error, workflow.definition.critical_steps)
        record = FailureRecord(
            step=step,
            error=error,
            severity=severity,
            timestamp=self._clock(),
            context=dict(context or {}),
        )
        with workflow._lock:
            workflow.failures.append(record)
            if workflow.status != WorkflowStatus.COMPLETED:
                workflow.status = WorkflowStatus.FAILED

        pattern = f"{workflow.type}:{step}"
        self._failure_patterns.setdefault(
            pattern, deque(maxlen=FAILURE_PATTERN_LIMIT)
        ).append(error.lower())

        logger.warning("Step failed: %s (%s): %s [%s]", step, workflow_id, error, severity.value)
        self._emit(
            EventType.STEP_FAILED, workflow, step=step, error=error, severity=severity.value
        )
        if severity.needs_intervention:
            recommendation = recommend_for_failure(step, error)
            self._emit(
                EventType.INTERVENTION_NEEDED,
                workflow,
                step=step,
                error=error,
                severity=severity.value,
                recommended_action=recommendation.type,
                intervention_type=recommendation.intervention_type,
                automated=recommendation.automated,
            )
        return record

    def check_stuck(
        self,
        workflow_id: str,
        current_step: str | None = None,
        elapsed_ms: float | None = None,
    ) -> bool:
        """Flag the workflow STUCK if the step has run past its timeout.

        ``current_step`` defaults to the first incomplete step and
        ``elapsed_ms`` to the time since the last progress. Only a strictly
        greater elapsed time counts.
        """
        workflow = self.get(workflow_id)
        if workflow.status == WorkflowStatus.COMPLETED:
            return False
        step = current_step or workflow.current_step
        if step is None:
            return False
        if elapsed_ms is None:
            elapsed_ms = self.elapsed_since_progress(workflow_id)
        max_time = workflow.definition.timeout_for(step)
        if elapsed_ms <= max_time:
            return False

        with workflow._lock:
            workflow.status = WorkflowStatus.STUCK
        logger.warning(
            "Workflow %s stuck on %s (%dms > %dms)", workflow_id, step, elapsed_ms, max_time
        )
        self._emit(
            EventType.WORKFLOW_STUCK,
            workflow,
            step=step,
            elapsed_ms=elapsed_ms,
            max_time=max_time,
            critical=step in workflow.definition.critical_steps,
        )
        return True

    def report_confusion_signal(
        self,
        workflow_id: str,
        signal: str,
        context: dict[str, Any] | None = None,
    ) -> ConfusionCategory:
        workflow = self.get(workflow_id)
        category = classify_confusion(signal)
        logger.info("Confusion in %s (%s): %s", workflow_id, category.value, signal)
        self._emit(
            EventType.CONFUSION_DETECTED,
            workflow,
            step=workflow.current_step,
            signal=signal,
            category=category.value,
            recommended_action=category.recommended_action,
            intervention_type=category.intervention_type,
            context=dict(context or {}),
        )
        return category

    def observe_output(self, workflow_id: str, text: str) -> list[str]:
        """Complete any pending steps whose output markers appear in ``text``."""
        workflow = self.get(workflow_id)
        completed = []
        for step, patterns in workflow.definition.markers.items():
            if step in workflow.completed_steps:
                continue
            if any(re.search(p, text, re.IGNORECASE) for p in patterns):
                if self.complete_step(workflow_id, step, {"marker": True}):
                    completed.append(step)
        return completed

    def record_intervention(self, workflow_id: str, intervention_id: str) -> None:
        workflow = self.get(workflow_id)
        with workflow._lock:
            workflow.interventions.append(intervention_id)

    def elapsed_since_progress(self, workflow_id: str) -> float:
        """Milliseconds since the workflow last made progress."""
        return (self._clock() - self.get(workflow_id).last_progress) * 1000

    def active_workflows(self, session_id: str | None = None) -> list[Workflow]:
        """Workflows not yet completed, optionally for one session."""
        return [
            w
            for w in self._workflows.values()
            if w.status != WorkflowStatus.COMPLETED
            and (session_id is None or w.session_id == session_id)
        ]

    def workflows(self) -> list[Workflow]:
        return list(self._workflows.values())

    def _prune(self) -> None:
        finished = [
            wid for wid, w in self._workflows.items() if w.status == WorkflowStatus.COMPLETED
        ]
        excess = len(self._workflows) - self._history_limit
        for wid in finished[: max(0, excess)]:
            del self._workflows[wid]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        counts = Counter(w.status for w in self._workflows.values())
        total = len(self._workflows)
        completed = [w for w in self._workflows.values() if w.status == WorkflowStatus.COMPLETED]
        completed_interventions = sum(len(w.interventions) for w in completed)
        failure_counts = sorted(
            ((pattern, len(errors)) for pattern, errors in self._failure_patterns.items()),
            key=lambda item: item[1],
            reverse=True,
        )
        return {
            "total": total,
            **{status.value: counts.get(status, 0) for status in WorkflowStatus},
            "successRate": len(completed) / total if total else 0.0,
            "totalInterventions": sum(len(w.interventions) for w in self._workflows.values()),
            "interventionsPerCompleted": (
                completed_interventions / len(completed) if completed else 0.0
            ),
            "commonFailures": [
                {"pattern": pattern, "count": count} for pattern, count in failure_counts[:5]
            ],
        }

    def _emit(
        self,
        event_type: EventType,
        workflow: Workflow,
        step: str | None = None,
        **data: Any,
    ) -> None:
        if self._wire is None:
            return
        self._wire.send_workflow(
            event_type, workflow.id, workflow.type, workflow.session_id, step=step, **data
        )
