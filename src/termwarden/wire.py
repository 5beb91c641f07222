"""Wire protocol — decouples the bridge and trackers from their listeners.

Events flow from the terminal bridge, the workflow tracker and the
intervention manager to any number of subscribers (the supervision
engine, the web server, tests). Each event category is its own frozen
dataclass so listeners can dispatch on the variant instead of poking at
free-form dicts.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Union


class EventType(enum.Enum):
    # Session
    SESSION_CREATED = "session_created"
    SESSION_OUTPUT = "session_output"
    SESSION_EXIT = "session_exit"
    SESSION_TERMINATED = "session_terminated"
    # Workflow
    WORKFLOW_STARTED = "workflow_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_STUCK = "workflow_stuck"
    CONFUSION_DETECTED = "confusion_detected"
    INTERVENTION_NEEDED = "intervention_needed"
    # Intervention
    INTERVENTION_READY = "intervention_ready"
    PERMISSION_REQUESTED = "permission_requested"
    PERMISSION_RESOLVED = "permission_resolved"


@dataclass(frozen=True)
class SessionEvent:
    """Something happened to a terminal session."""

    type: EventType
    session_id: str
    data: str = ""
    exit_code: int | None = None


@dataclass(frozen=True)
class WorkflowEvent:
    """A workflow changed state or needs attention."""

    type: EventType
    workflow_id: str
    workflow_type: str
    session_id: str
    step: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InterventionEvent:
    """An intervention was produced or a permission decision is pending."""

    type: EventType
    intervention_type: str
    session_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


WireEvent = Union[SessionEvent, WorkflowEvent, InterventionEvent]


class Wire:
    """Async message bus: producers -> subscribers.

    Multi-producer, multi-consumer broadcast. All producers run on the
    event loop thread.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_session(
        self,
        type: EventType,
        session_id: str,
        data: str = "",
        exit_code: int | None = None,
    ) -> None:
        self.send(SessionEvent(type, session_id, data=data, exit_code=exit_code))

    def send_workflow(
        self,
        type: EventType,
        workflow_id: str,
        workflow_type: str,
        session_id: str,
        step: str | None = None,
        **data: Any,
    ) -> None:
        self.send(
            WorkflowEvent(
                type,
                workflow_id,
                workflow_type,
                session_id,
                step=step,
                data=data,
            )
        )

    def send_intervention(
        self,
        type: EventType,
        intervention_type: str,
        session_id: str | None = None,
        **data: Any,
    ) -> None:
        self.send(
            InterventionEvent(type, intervention_type, session_id=session_id, data=data)
        )

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
