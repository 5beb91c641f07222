"""Supervision: keeps an AI agent in a terminal session on track.

Workflow tracking, a cached picture of the project, intervention
synthesis and the engine that ties them to terminal output.
"""

from termwarden.supervision.commands import SupervisionCommands
from termwarden.supervision.context import ContextPayload, ProjectContextCache, ProjectSnapshot
from termwarden.supervision.engine import SupervisionEngine
from termwarden.supervision.intervention import (
    InterventionManager,
    InterventionRequest,
    InterventionResponse,
    PermissionRequest,
    PermissionStatus,
)
from termwarden.supervision.workflow import (
    PRD_TO_CLAUDE,
    Workflow,
    WorkflowDefinition,
    WorkflowStatus,
    WorkflowTracker,
)

__all__ = [
    "SupervisionCommands",
    "ContextPayload",
    "ProjectContextCache",
    "ProjectSnapshot",
    "SupervisionEngine",
    "InterventionManager",
    "InterventionRequest",
    "InterventionResponse",
    "PermissionRequest",
    "PermissionStatus",
    "PRD_TO_CLAUDE",
    "Workflow",
    "WorkflowDefinition",
    "WorkflowStatus",
    "WorkflowTracker",
]
