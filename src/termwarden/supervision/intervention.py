"""Turns a detected problem into a response.

Each request type maps to a strategy (priority, delivery method,
response template). The generated response carries the text to type into
the agent's terminal plus a list of side-effect actions that were taken
(instruction file written) or are pending (human approval).

``process()`` never raises: if building a response fails for any
reason, a fixed fallback response is returned so the supervised session
always gets an answer.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable

from termwarden.supervision.context import ProjectContextCache, ProjectSnapshot
from termwarden.supervision.signals import extract_quoted_files
from termwarden.wire import EventType, Wire

logger = logging.getLogger(__name__)

PRIORITY_RANK = {"immediate": 0, "high": 1, "medium": 2, "low": 3}

FALLBACK_CONTENT = (
    "I understand you need assistance. Please continue with the implementation "
    "based on the requirements provided, and I'll help guide you through any "
    "specific issues."
)


@dataclass(frozen=True)
class Strategy:
    priority: str
    method: str
    template: str


@dataclass(frozen=True)
class ResponseTemplate:
    intro: str
    include_context: bool = True


STRATEGIES: dict[str, Strategy] = {
    "clarification_needed": Strategy("immediate", "direct_response", "provide_specific_guidance"),
    "requirements_missing": Strategy("immediate", "context_injection", "inject_requirements"),
    "claude_md_missing": Strategy("immediate", "file_creation", "create_instruction_file"),
    "file_not_found": Strategy("high", "path_guidance", "provide_file_structure"),
    "path_error": Strategy("high", "path_guidance", "provide_file_structure"),
    "permission_request": Strategy("immediate", "user_approval", "request_permission"),
    "general_confusion": Strategy("medium", "comprehensive_guidance", "explain_context"),
    "error_recovery": Strategy("high", "error_resolution", "fix_error"),
    "question_response": Strategy("high", "direct_response", "answer_question"),
}
DEFAULT_STRATEGY = "general_confusion"

TEMPLATES: dict[str, ResponseTemplate] = {
    "provide_specific_guidance": ResponseTemplate(
        "I understand you need clarification. Let me provide specific guidance:"
    ),
    "inject_requirements": ResponseTemplate("Here are the project requirements you need:"),
    "create_instruction_file": ResponseTemplate(
        "I'll create the {instruction_file} file with the necessary requirements:"
    ),
    "provide_file_structure": ResponseTemplate(
        "Here's the current project structure to help you navigate:"
    ),
    "request_permission": ResponseTemplate(
        "A permission decision is needed before continuing:", include_context=False
    ),
    "explain_context": ResponseTemplate(
        "Let me explain the full context of what we're building:"
    ),
    "fix_error": ResponseTemplate("Let's work through this error:", include_context=False),
    "answer_question": ResponseTemplate("Here's the answer to your question:"),
}


@dataclass
class InterventionRequest:
    """A detected problem that may warrant an intervention.

    ``line`` is the output line that triggered the request, if any.
    """

    type: str
    session_id: str | None = None
    workflow_id: str | None = None
    line: str = ""
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class InterventionResponse:
    id: str
    type: str
    priority: str
    method: str
    content: str
    actions: list[dict[str, Any]] = field(default_factory=list)
    context: dict[str, Any] | None = None
    fallback: bool = False

    @property
    def requires_approval(self) -> bool:
        return self.method == "user_approval"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "priority": self.priority,
            "method": self.method,
            "content": self.content,
            "actions": list(self.actions),
            "context": self.context,
            "fallback": self.fallback,
        }


@dataclass
class InterventionRecord:
    id: str
    type: str
    strategy: str
    response: InterventionResponse
    duration_ms: float
    outcome: str  # "completed" or "failed"
    timestamp: float
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "strategy": self.strategy,
            "durationMs": round(self.duration_ms, 2),
            "outcome": self.outcome,
            "timestamp": self.timestamp,
            "sessionId": self.session_id,
            "response": self.response.to_dict(),
        }


class PermissionStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"  # replaced by a newer prompt or evicted


@dataclass
class PermissionRequest:
    id: str
    action: str
    files: list[str]
    session_id: str | None = None
    line: str = ""
    intervention_id: str | None = None
    created_at: float = field(default_factory=time.time)
    status: PermissionStatus = PermissionStatus.PENDING
    decided_at: float | None = None
    _decision: asyncio.Future | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "files": list(self.files),
            "sessionId": self.session_id,
            "line": self.line,
            "interventionId": self.intervention_id,
            "status": self.status.value,
            "createdAt": self.created_at,
            "decidedAt": self.decided_at,
        }


def build_instruction_content(snapshot: ProjectSnapshot) -> str:
    """Markdown body for a freshly created sidecar instruction file."""
    lines = ["# Project Requirements", ""]
    if snapshot.requirements:
        lines += ["## Requirements List", ""]
        lines += [f"{i}. {req}" for i, req in enumerate(snapshot.requirements, 1)]
    else:
        lines += [
            "## General Requirements",
            "",
            "1. Build a functional application",
            "2. Follow best practices",
            "3. Include error handling",
            "4. Write clean, maintainable code",
        ]
    if snapshot.user_stories:
        lines += ["", "## User Stories", ""] + [f"- {s}" for s in snapshot.user_stories]
    if snapshot.acceptance_criteria:
        lines += ["", "## Acceptance Criteria", ""]
        lines += [f"- {c}" for c in snapshot.acceptance_criteria]
    lines += [
        "",
        "## Implementation Guidelines",
        "",
        "- Start with the core functionality",
        "- Test each feature as you build",
        "- Use modular code structure",
        "- Add comments for complex logic",
    ]
    return "\n".join(lines) + "\n"


def analyze_error(line: str) -> tuple[str, list[str]]:
    """(error label, suggested solutions) for an error line."""
    text = line.lower()
    if "command not found" in text:
        return "Command not found", [
            "Check if the command is installed",
            "Use the correct command syntax",
            "Try an alternative command",
        ]
    if "permission denied" in text:
        return "Permission denied", [
            "Check file permissions",
            "Run with appropriate permissions",
            "Use a different location",
        ]
    if "file not found" in text or "no such file" in text:
        return "File not found", [
            "Create the missing file",
            "Check the file path",
            "Use an existing file",
        ]
    return "General error", [
        "Review the error message carefully",
        "Check for typos or syntax errors",
        "Try a different approach",
    ]


def analyze_question(line: str) -> tuple[str, str, str | None]:
    """(question type, answer, additional guidance) for a question line."""
    text = line.lower()
    if "which file" in text or "what file" in text:
        return (
            "file_selection",
            "Create files in the `src/` directory for source code, or in the root for configuration files.",
            "Follow the standard project structure for the framework you're using.",
        )
    if "where" in text:
        return (
            "location",
            "Place new files in appropriate directories based on their purpose.",
            None,
        )
    if "how should i" in text or "how do i" in text:
        return (
            "implementation",
            "Implement the feature following best practices and the requirements provided.",
            "Start simple and iterate. Test as you build.",
        )
    if "next" in text:
        return (
            "next_step",
            "Continue with the next requirement in the list, or complete the current feature first.",
            None,
        )
    return (
        "general_question",
        "Based on the requirements, proceed with implementing the core functionality "
        "first, then add features incrementally.",
        None,
    )


def describe_permission(line: str) -> str:
    text = line.lower()
    if "delete" in text or "remove" in text:
        return "Delete files"
    if any(word in text for word in ("modify", "update", "edit", "change")):
        return "Modify files"
    if any(word in text for word in ("create", "add", "write")):
        return "Create files"
    return "Proceed with the current step"


class InterventionManager:
    """Selects a strategy, synthesizes a response and keeps statistics."""

    def __init__(
        self,
        context: ProjectContextCache,
        wire: Wire | None = None,
        history_limit: int = 100,
    ) -> None:
        self._context = context
        self._wire = wire
        self._history: deque[InterventionRecord] = deque(maxlen=history_limit)
        self._permissions: dict[str, PermissionRequest] = {}
        self._permission_limit = history_limit
        self._resolved: deque[PermissionRequest] = deque(maxlen=history_limit)
        self._stats: dict[str, Any] = {
            "totalInterventions": 0,
            "successfulInterventions": 0,
            "failedInterventions": 0,
            "averageResponseTime": 0.0,
            "interventionTypes": {},
        }
        self._total_duration = 0.0

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, request: InterventionRequest) -> InterventionResponse:
        """Build a response for ``request``; falls back instead of raising."""
        started = time.monotonic()
        intervention_id = f"int-{uuid.uuid4().hex[:12]}"
        strategy_name = request.type if request.type in STRATEGIES else DEFAULT_STRATEGY
        strategy = STRATEGIES[strategy_name]

        try:
            response = await self._generate(intervention_id, request, strategy)
            outcome = "completed"
        except Exception:
            logger.exception("Intervention %s (%s) failed, using fallback", intervention_id, request.type)
            response = self._fallback(intervention_id, request)
            outcome = "failed"

        duration_ms = (time.monotonic() - started) * 1000
        self._record(
            InterventionRecord(
                id=intervention_id,
                type=request.type,
                strategy=strategy_name,
                response=response,
                duration_ms=duration_ms,
                outcome=outcome,
                timestamp=time.time(),
                session_id=request.session_id,
            )
        )
        logger.info(
            "Intervention %s ready: type=%s method=%s (%.1fms)",
            intervention_id,
            request.type,
            response.method,
            duration_ms,
        )
        if self._wire:
            self._wire.send_intervention(
                EventType.INTERVENTION_READY,
                request.type,
                session_id=request.session_id,
                intervention_id=intervention_id,
                workflow_id=request.workflow_id,
                priority=response.priority,
                method=response.method,
                fallback=response.fallback,
            )
        return response

    async def _generate(
        self, intervention_id: str, request: InterventionRequest, strategy: Strategy
    ) -> InterventionResponse:
        template = TEMPLATES[strategy.template]
        intro = template.intro.format(instruction_file=self._context.instruction_file)
        response = InterventionResponse(
            id=intervention_id,
            type=request.type,
            priority=strategy.priority,
            method=strategy.method,
            content=intro + "\n\n",
        )

        if request.type in ("requirements_missing", "clarification_needed"):
            await self._requirements_response(response, request)
        elif request.type == "claude_md_missing":
            await self._instruction_file_response(response, request)
        elif request.type in ("file_not_found", "path_error"):
            await self._file_guidance_response(response, request)
        elif request.type == "permission_request":
            self._permission_response(response, request)
        elif request.type == "error_recovery":
            self._error_recovery_response(response, request)
        elif request.type == "question_response":
            self._question_response(response, request)
        else:
            await self._general_guidance_response(response, request)

        snapshot = self._context.snapshot
        if template.include_context and snapshot.requirements:
            response.context = {
                "requirements": list(snapshot.requirements),
                "projectType": snapshot.project_type,
                "snapshotVersion": snapshot.version,
            }
        return response

    async def _requirements_response(
        self, response: InterventionResponse, request: InterventionRequest
    ) -> None:
        payload = await self._context.get_context_for("requirements_missing", request.context)
        requirements = payload.fields.get("requirements", ())
        response.content += "## Project Requirements\n\n"
        if requirements:
            response.content += "".join(f"{i}. {r}\n" for i, r in enumerate(requirements, 1))
            response.content += (
                "\n## What to do next:\n"
                "1. Start by creating the main application file\n"
                "2. Implement each requirement one by one\n"
                "3. Test as you build\n"
                "4. Ask for help if you need clarification on any requirement\n"
            )
            response.actions.append({"type": "provide_requirements", "status": "completed"})
        else:
            response.content += (
                "I need to provide you with the project requirements. Please implement "
                "a basic application structure and I'll guide you through the specific "
                "requirements.\n\n" + payload.message
            )
            response.actions.append({"type": "fetch_requirements", "status": "pending"})

    async def _instruction_file_response(
        self, response: InterventionResponse, request: InterventionRequest
    ) -> None:
        name = self._context.instruction_file
        snapshot = self._context.snapshot
        if self._context.is_stale():
            snapshot = await self._context.refresh()
        content = build_instruction_content(snapshot)
        response.content += f"## Creating {name}\n\n"
        try:
            await self._context.write_instruction_file(content)
        except OSError as e:
            logger.warning("Could not write %s: %s", name, e)
            response.content += (
                f"I tried to create {name} but encountered an issue.\n"
                "Here's the content you need:\n\n```markdown\n" + content + "```\n"
            )
            response.actions.append({"type": "provide_content", "status": "completed"})
            return
        response.content += (
            f"{name} has been created with the project requirements.\n\n"
            "The file contains:\n"
            "- Project overview\n"
            "- Complete requirements list\n"
            "- Implementation guidelines\n\n"
            "You can now proceed with the implementation based on these requirements.\n"
        )
        response.actions.append({"type": "create_file", "path": name, "status": "completed"})

    async def _file_guidance_response(
        self, response: InterventionResponse, request: InterventionRequest
    ) -> None:
        payload = await self._context.get_context_for("file_confusion", request.context)
        structure = payload.formatted["structure"]
        response.content += "## Project Structure Guidance\n\n"
        if structure:
            response.content += (
                "Here's the current project structure:\n\n```\n"
                + "\n".join(structure)
                + "\n```\n\n"
                "## Recommended file locations:\n"
                "- Main application: `src/` or the project root\n"
                "- Components and modules: `src/components/`, `src/<package>/`\n"
                "- Routes/APIs: `src/routes/`\n"
                "- Utilities: `src/utils/`\n"
                "- Tests: `tests/`\n"
            )
            if payload.formatted["entryPoints"]:
                response.content += "\nEntry points: " + ", ".join(payload.formatted["entryPoints"]) + "\n"
            response.actions.append({"type": "provide_structure", "status": "completed"})
        else:
            response.content += (
                "The project is currently empty. Start by creating:\n"
                "1. A main application file\n"
                "2. A manifest for dependencies (e.g. `package.json` or `pyproject.toml`)\n"
                "3. Source directories as needed (`src/`, `tests/`, etc.)\n"
            )
            response.actions.append({"type": "provide_structure", "status": "empty_project"})

    def _permission_response(
        self, response: InterventionResponse, request: InterventionRequest
    ) -> None:
        action = request.context.get("action") or describe_permission(request.line)
        files = list(request.context.get("files") or extract_quoted_files(request.line))
        permission = PermissionRequest(
            id=f"perm-{uuid.uuid4().hex[:12]}",
            action=action,
            files=files,
            session_id=request.session_id,
            line=request.line,
            intervention_id=response.id,
            _decision=asyncio.get_running_loop().create_future(),
        )
        self._retire_pending(request.session_id)
        self._permissions[permission.id] = permission

        response.content += "## Permission Request\n\n"
        response.content += f"The agent is requesting permission to: **{action}**\n\n"
        if files:
            response.content += "Files affected:\n" + "".join(f"- {f}\n" for f in files) + "\n"
        response.content += "Waiting for approval before continuing.\n"
        response.actions.append(
            {
                "type": "permission_request",
                "permissionId": permission.id,
                "action": action,
                "files": files,
                "status": "pending_approval",
            }
        )
        logger.info("Permission %s requested: %s %s", permission.id, action, files)
        if self._wire:
            self._wire.send_intervention(
                EventType.PERMISSION_REQUESTED,
                "permission_request",
                session_id=request.session_id,
                permission_id=permission.id,
                action=action,
                files=files,
                line=request.line,
                recommendation="approve",
            )

    def _error_recovery_response(
        self, response: InterventionResponse, request: InterventionRequest
    ) -> None:
        label, solutions = analyze_error(request.line)
        response.content += "## Error Recovery Assistance\n\n"
        response.content += f"I see you've encountered an error: {label}\n\n"
        response.content += "## Suggested solutions:\n"
        response.content += "".join(f"{i}. {s}\n" for i, s in enumerate(solutions, 1))
        response.content += (
            "\n## Alternative approach:\n"
            "Try a different implementation approach for this requirement.\n"
        )
        response.actions.append(
            {"type": "error_recovery", "errorType": label, "status": "guidance_provided"}
        )

    def _question_response(
        self, response: InterventionResponse, request: InterventionRequest
    ) -> None:
        kind, answer, guidance = analyze_question(request.line)
        response.content += "## Answer to Your Question\n\n" + answer + "\n"
        if guidance:
            response.content += "\n## Additional guidance:\n" + guidance + "\n"
        response.actions.append(
            {"type": "question_answered", "questionType": kind, "status": "completed"}
        )

    async def _general_guidance_response(
        self, response: InterventionResponse, request: InterventionRequest
    ) -> None:
        scenario = request.context.get("scenario", "general_confusion")
        payload = await self._context.get_context_for(scenario, request.context)
        activity = request.context.get("current_activity")
        response.content += "## General Guidance\n\n"
        response.content += "I understand you need help. Here's what I recommend:\n\n"
        response.content += "1. **Current Focus**: " + (
            f"Continue with {activity}\n" if activity else "Start with the main application structure\n"
        )
        response.content += (
            "2. **Next Steps**:\n"
            f"   - Review the requirements in {self._context.instruction_file}\n"
            "   - Implement one feature at a time\n"
            "   - Test each feature as you build\n"
            "   - Ask specific questions when you need help\n\n"
        )
        response.content += payload.message
        response.actions.append({"type": "general_guidance", "status": "completed"})

    def _fallback(
        self, intervention_id: str, request: InterventionRequest
    ) -> InterventionResponse:
        return InterventionResponse(
            id=intervention_id,
            type=request.type,
            priority="high",
            method="fallback",
            content=FALLBACK_CONTENT,
            actions=[{"type": "fallback_guidance", "status": "completed"}],
            fallback=True,
        )

    def _record(self, record: InterventionRecord) -> None:
        self._history.append(record)
        stats = self._stats
        stats["totalInterventions"] += 1
        if record.outcome == "completed":
            stats["successfulInterventions"] += 1
        else:
            stats["failedInterventions"] += 1
        types = stats["interventionTypes"]
        types[record.type] = types.get(record.type, 0) + 1
        self._total_duration += record.duration_ms
        stats["averageResponseTime"] = self._total_duration / stats["totalInterventions"]

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def pending_permissions(self, session_id: str | None = None) -> list[PermissionRequest]:
        return [
            p
            for p in self._permissions.values()
            if session_id is None or p.session_id == session_id
        ]

    def get_permission(self, permission_id: str) -> PermissionRequest | None:
        permission = self._permissions.get(permission_id)
        if permission is not None:
            return permission
        return next((p for p in self._resolved if p.id == permission_id), None)

    def approve(self, permission_ids: Iterable[str]) -> list[PermissionRequest]:
        """Approve pending requests. Unknown or already-decided ids are skipped."""
        return self._resolve(permission_ids, PermissionStatus.APPROVED)

    def reject(self, permission_ids: Iterable[str]) -> list[PermissionRequest]:
        return self._resolve(permission_ids, PermissionStatus.REJECTED)

    def _resolve(
        self, permission_ids: Iterable[str], status: PermissionStatus
    ) -> list[PermissionRequest]:
        resolved = []
        for permission_id in permission_ids:
            permission = self._permissions.pop(permission_id, None)
            if permission is None:
                logger.warning("No pending permission %s", permission_id)
                continue
            permission.status = status
            permission.decided_at = time.time()
            if permission._decision is not None and not permission._decision.done():
                permission._decision.set_result(status)
            self._resolved.append(permission)
            resolved.append(permission)
            logger.info("Permission %s %s", permission_id, status.value)
            if self._wire:
                self._wire.send_intervention(
                    EventType.PERMISSION_RESOLVED,
                    "permission_request",
                    session_id=permission.session_id,
                    permission_id=permission.id,
                    approved=status == PermissionStatus.APPROVED,
                )
        return resolved

    def _retire_pending(self, session_id: str | None) -> None:
        """Make room for a new request.

        A session waits on at most one prompt, so its older pending
        requests are superseded; the map is also capped at the history
        limit, oldest first. No keystrokes are sent for retired requests.
        """
        stale = [
            p.id
            for p in self._permissions.values()
            if session_id is not None and p.session_id == session_id
        ]
        overflow = len(self._permissions) - len(stale) - self._permission_limit + 1
        if overflow > 0:
            stale += [pid for pid in self._permissions if pid not in stale][:overflow]
        for permission_id in stale:
            permission = self._permissions.pop(permission_id)
            permission.status = PermissionStatus.SUPERSEDED
            permission.decided_at = time.time()
            if permission._decision is not None and not permission._decision.done():
                permission._decision.set_result(PermissionStatus.SUPERSEDED)
            self._resolved.append(permission)
            logger.info("Permission %s superseded", permission_id)

    async def wait_for_decision(
        self, permission_id: str, timeout: float | None = None
    ) -> PermissionStatus:
        """Wait until a permission is approved or rejected.

        Returns PENDING if ``timeout`` expires first.
        """
        permission = self.get_permission(permission_id)
        if permission is None:
            raise KeyError(permission_id)
        if permission.status != PermissionStatus.PENDING or permission._decision is None:
            return permission.status
        try:
            return await asyncio.wait_for(asyncio.shield(permission._decision), timeout)
        except asyncio.TimeoutError:
            return PermissionStatus.PENDING

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def history(self, limit: int | None = None) -> list[InterventionRecord]:
        records = list(self._history)
        return records[-limit:] if limit else records

    def stats(self) -> dict[str, Any]:
        total = self._stats["totalInterventions"]
        return {
            **self._stats,
            "interventionTypes": dict(self._stats["interventionTypes"]),
            "historySize": len(self._history),
            "pendingPermissions": len(self._permissions),
            "successRate": self._stats["successfulInterventions"] / total if total else 0.0,
        }

    def reset(self) -> None:
        self._history.clear()
        self._total_duration = 0.0
        self._stats.update(
            totalInterventions=0,
            successfulInterventions=0,
            failedInterventions=0,
            averageResponseTime=0.0,
            interventionTypes={},
        )
