"""Tests for termwarden.wire (Wire, event variants, EventType)."""

from __future__ import annotations

import asyncio

import pytest

from termwarden.wire import (
    EventType,
    InterventionEvent,
    SessionEvent,
    Wire,
    WireEvent,
    WorkflowEvent,
)


# ---------------------------------------------------------------------------
# EventType
# ---------------------------------------------------------------------------


class TestEventType:
    def test_all_variants_exist(self) -> None:
        expected = {
            "SESSION_CREATED",
            "SESSION_OUTPUT",
            "SESSION_EXIT",
            "SESSION_TERMINATED",
            "WORKFLOW_STARTED",
            "STEP_COMPLETED",
            "STEP_FAILED",
            "WORKFLOW_COMPLETED",
            "WORKFLOW_STUCK",
            "CONFUSION_DETECTED",
            "INTERVENTION_NEEDED",
            "INTERVENTION_READY",
            "PERMISSION_REQUESTED",
            "PERMISSION_RESOLVED",
        }
        actual = {e.name for e in EventType}
        assert actual == expected

    def test_values_are_lowercase(self) -> None:
        for e in EventType:
            assert e.value == e.name.lower()


# ---------------------------------------------------------------------------
# Event variants
# ---------------------------------------------------------------------------


class TestEvents:
    def test_session_event_defaults(self) -> None:
        event = SessionEvent(EventType.SESSION_CREATED, "s1")
        assert event.data == ""
        assert event.exit_code is None

    def test_workflow_event_defaults(self) -> None:
        event = WorkflowEvent(EventType.WORKFLOW_STARTED, "w1", "deploy", "s1")
        assert event.step is None
        assert event.data == {}

    def test_events_are_frozen(self) -> None:
        event = InterventionEvent(EventType.INTERVENTION_READY, "error_recovery")
        with pytest.raises(AttributeError):
            event.session_id = "s2"  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Wire: basic send/subscribe
# ---------------------------------------------------------------------------


class TestWire:
    def test_send_to_subscriber(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send(SessionEvent(EventType.SESSION_OUTPUT, "s1", data="hi"))
        event = q.get_nowait()
        assert isinstance(event, SessionEvent)
        assert event.data == "hi"

    def test_send_to_multiple_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.send(SessionEvent(EventType.SESSION_CREATED, "s1"))
        e1 = q1.get_nowait()
        e2 = q2.get_nowait()
        assert e1 is not None and e2 is not None
        assert e1.type == e2.type == EventType.SESSION_CREATED

    def test_unsubscribe(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.unsubscribe(q)
        wire.send(SessionEvent(EventType.SESSION_CREATED, "s1"))
        assert q.empty()

    def test_unsubscribe_nonexistent_is_safe(self) -> None:
        wire = Wire()
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        wire.unsubscribe(q)  # Should not raise


# ---------------------------------------------------------------------------
# Wire: closed-state guard
# ---------------------------------------------------------------------------


class TestWireClosedGuard:
    def test_close_sends_sentinel_to_all_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.close()
        assert wire.closed
        assert q1.get_nowait() is None
        assert q2.get_nowait() is None

    def test_send_after_close_is_dropped(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        q.get_nowait()  # drain sentinel
        wire.send_session(EventType.SESSION_OUTPUT, "s1", data="too late")
        wire.send_workflow(EventType.STEP_COMPLETED, "w1", "t", "s1", step="a")
        wire.send_intervention(EventType.INTERVENTION_READY, "error_recovery")
        assert q.empty()


# ---------------------------------------------------------------------------
# Wire: convenience methods
# ---------------------------------------------------------------------------


class TestWireConvenience:
    def test_send_session(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_session(EventType.SESSION_EXIT, "s1", exit_code=3)
        event = q.get_nowait()
        assert isinstance(event, SessionEvent)
        assert event.session_id == "s1"
        assert event.exit_code == 3

    def test_send_workflow(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_workflow(
            EventType.STEP_FAILED, "w1", "deploy", "s1", step="build", error="boom"
        )
        event = q.get_nowait()
        assert isinstance(event, WorkflowEvent)
        assert event.workflow_type == "deploy"
        assert event.step == "build"
        assert event.data == {"error": "boom"}

    def test_send_intervention(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_intervention(
            EventType.PERMISSION_REQUESTED, "permission_request", session_id="s1", files=["a.py"]
        )
        event = q.get_nowait()
        assert isinstance(event, InterventionEvent)
        assert event.intervention_type == "permission_request"
        assert event.session_id == "s1"
        assert event.data["files"] == ["a.py"]
