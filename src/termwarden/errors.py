"""Exception hierarchy for termwarden."""

from __future__ import annotations


class TermwardenError(Exception):
    """Base exception for all termwarden errors."""


class SessionNotFound(TermwardenError):
    """Raised when a session id is not in the registry."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionCreateError(TermwardenError):
    """Raised when no shell could be spawned for a new session."""

    def __init__(self, message: str, attempts: list[str] | None = None) -> None:
        self.attempts = attempts or []
        super().__init__(message)


class WorkflowNotFound(TermwardenError):
    """Raised when a workflow id is unknown to the tracker."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class UnknownWorkflowType(TermwardenError, ValueError):
    """Raised when starting a workflow of an unregistered type."""

    def __init__(self, workflow_type: str) -> None:
        self.workflow_type = workflow_type
        super().__init__(f"Unknown workflow type: {workflow_type}")
