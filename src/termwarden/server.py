"""HTTP and WebSocket surface for terminal sessions and supervision.

Every handler is a coroutine so that the bridge, the tracker and the
wire are only touched from the event loop thread.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from termwarden import __version__
from termwarden.config import TermwardenConfig
from termwarden.errors import (
    SessionCreateError,
    SessionNotFound,
    UnknownWorkflowType,
    WorkflowNotFound,
)
from termwarden.runtime import Runtime, build_runtime
from termwarden.supervision.context import SCENARIOS
from termwarden.supervision.intervention import InterventionRequest

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateSessionRequest(_Body):
    cols: int = Field(default=80, ge=1)
    rows: int = Field(default=24, ge=1)
    working_dir: str | None = Field(default=None, alias="workingDir")


class InjectRequest(_Body):
    text: str
    submit: bool = True
    bracketed: bool = False


class StartWorkflowRequest(_Body):
    type: str = "prd-to-claude"
    session_id: str = Field(alias="sessionId")
    metadata: dict[str, Any] = Field(default_factory=dict)


class CompleteStepRequest(_Body):
    data: dict[str, Any] = Field(default_factory=dict)


class FailureRequest(_Body):
    step: str
    error: str
    context: dict[str, Any] = Field(default_factory=dict)


class ConfusionRequest(_Body):
    signal: str
    context: dict[str, Any] = Field(default_factory=dict)


class CheckStuckRequest(_Body):
    current_step: str | None = Field(default=None, alias="currentStep")
    elapsed_ms: float | None = Field(default=None, alias="elapsedMs")


class RequirementsRequest(_Body):
    content: str


class ProcessInterventionRequest(_Body):
    type: str
    session_id: str | None = Field(default=None, alias="sessionId")
    workflow_id: str | None = Field(default=None, alias="workflowId")
    line: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
    deliver: bool = Field(
        default=False, description="Route through the engine (cooldown and mode apply)"
    )


class PermissionDecisionRequest(_Body):
    ids: list[str]


class ModeRequest(_Body):
    mode: str


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def create_app(
    runtime: Runtime | None = None, config: TermwardenConfig | None = None
) -> FastAPI:
    """Build the FastAPI app around a runtime (built from ``config`` if absent)."""
    runtime = runtime or build_runtime(config)
    bridge = runtime.bridge
    tracker = runtime.tracker
    context = runtime.context
    interventions = runtime.interventions
    engine = runtime.engine

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await runtime.start()
        try:
            yield
        finally:
            await runtime.shutdown()

    app = FastAPI(title="termwarden", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(SessionNotFound)
    async def _session_not_found(request: Request, exc: SessionNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(WorkflowNotFound)
    async def _workflow_not_found(request: Request, exc: WorkflowNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(UnknownWorkflowType)
    async def _unknown_type(request: Request, exc: UnknownWorkflowType) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(SessionCreateError)
    async def _create_failed(request: Request, exc: SessionCreateError) -> JSONResponse:
        return JSONResponse(
            status_code=500, content={"detail": str(exc), "attempts": exc.attempts}
        )

    # -- Terminal sessions ------------------------------------------------

    @app.post("/api/terminal/sessions")
    async def create_session(body: CreateSessionRequest) -> dict[str, Any]:
        session_id = await bridge.create_session(body.cols, body.rows, body.working_dir)
        info = bridge.describe(session_id).to_dict()
        return {
            key: info[key] for key in ("sessionId", "processId", "shellName", "workingDir")
        }

    @app.get("/api/terminal/sessions")
    async def list_sessions() -> dict[str, Any]:
        return {"sessions": [info.to_dict() for info in bridge.list_sessions()]}

    @app.get("/api/terminal/sessions/{session_id}")
    async def get_session(session_id: str) -> dict[str, Any]:
        return bridge.describe(session_id).to_dict()

    @app.get("/api/terminal/sessions/{session_id}/history")
    async def session_history(session_id: str) -> dict[str, Any]:
        return {"sessionId": session_id, "chunks": bridge.history(session_id)}

    @app.post("/api/terminal/sessions/{session_id}/inject")
    async def inject(session_id: str, body: InjectRequest) -> dict[str, Any]:
        await bridge.inject(session_id, body.text, submit=body.submit, bracketed=body.bracketed)
        return {"sessionId": session_id, "injected": len(body.text)}

    @app.delete("/api/terminal/sessions/{session_id}")
    async def terminate_session(session_id: str) -> dict[str, Any]:
        existed = session_id in bridge
        await bridge.terminate(session_id)
        return {"sessionId": session_id, "terminated": existed}

    @app.websocket("/api/terminal/sessions/{session_id}/ws")
    async def terminal_ws(websocket: WebSocket, session_id: str) -> None:
        if session_id not in bridge:
            await websocket.close(code=4404)
            return

        await websocket.accept()
        try:
            # Replays buffered output before any live chunk
            bridge.attach(session_id, websocket)
        except SessionNotFound:
            await websocket.close(code=4404)
            return

        try:
            while True:
                message = await websocket.receive_text()
                try:
                    payload: Any = json.loads(message)
                except json.JSONDecodeError:
                    await bridge.submit_input(session_id, message)
                    continue

                if isinstance(payload, dict):
                    message_type = str(payload.get("type") or "")
                    if message_type == "input":
                        await bridge.submit_input(session_id, str(payload.get("data") or ""))
                        continue
                    if message_type == "resize":
                        cols = int(payload.get("cols") or 0)
                        rows = int(payload.get("rows") or 0)
                        if cols < 1 or rows < 1:
                            bridge.send_error(session_id, f"Invalid size: {cols}x{rows}")
                        else:
                            bridge.resize(session_id, cols, rows)
                        continue
                    bridge.send_error(session_id, f"Unknown message type: {message_type!r}")
                    continue

                await bridge.submit_input(session_id, message)
        except WebSocketDisconnect:
            pass
        except SessionNotFound:
            logger.debug("Session %s ended while a transport was attached", session_id)
        except RuntimeError as e:
            # Raised by receive after the bridge has closed the socket
            logger.debug("WebSocket for session %s closed: %s", session_id, e)
        finally:
            bridge.detach(session_id, websocket)

    # -- Workflows --------------------------------------------------------

    @app.get("/api/workflows")
    async def list_workflows() -> dict[str, Any]:
        return {
            "types": tracker.types,
            "workflows": [w.to_dict() for w in tracker.workflows()],
        }

    @app.get("/api/workflows/stats")
    async def workflow_stats() -> dict[str, Any]:
        return tracker.stats()

    @app.post("/api/workflows")
    async def start_workflow(body: StartWorkflowRequest) -> dict[str, Any]:
        workflow_id = tracker.start_workflow(body.type, body.session_id, body.metadata)
        return tracker.get(workflow_id).to_dict()

    @app.get("/api/workflows/{workflow_id}")
    async def get_workflow(workflow_id: str) -> dict[str, Any]:
        return tracker.get(workflow_id).to_dict()

    @app.post("/api/workflows/{workflow_id}/steps/{step}/complete")
    async def complete_step(
        workflow_id: str, step: str, body: CompleteStepRequest | None = None
    ) -> dict[str, Any]:
        completed = tracker.complete_step(workflow_id, step, body.data if body else None)
        return {"completed": completed, "workflow": tracker.get(workflow_id).to_dict()}

    @app.post("/api/workflows/{workflow_id}/failures")
    async def report_failure(workflow_id: str, body: FailureRequest) -> dict[str, Any]:
        record = tracker.report_failure(workflow_id, body.step, body.error, body.context)
        return {
            "severity": record.severity.value,
            "escalated": record.severity.needs_intervention,
            "workflow": tracker.get(workflow_id).to_dict(),
        }

    @app.post("/api/workflows/{workflow_id}/confusion")
    async def report_confusion(workflow_id: str, body: ConfusionRequest) -> dict[str, Any]:
        category = tracker.report_confusion_signal(workflow_id, body.signal, body.context)
        return {
            "category": category.value,
            "recommendedAction": category.recommended_action,
            "interventionType": category.intervention_type,
        }

    @app.post("/api/workflows/{workflow_id}/check-stuck")
    async def check_stuck(
        workflow_id: str, body: CheckStuckRequest | None = None
    ) -> dict[str, Any]:
        body = body or CheckStuckRequest()
        stuck = tracker.check_stuck(workflow_id, body.current_step, body.elapsed_ms)
        return {"stuck": stuck, "workflow": tracker.get(workflow_id).to_dict()}

    # -- Project context --------------------------------------------------

    @app.get("/api/context")
    async def context_summary() -> dict[str, Any]:
        return {**context.summary(), "stats": context.stats()}

    @app.post("/api/context/refresh")
    async def refresh_context() -> dict[str, Any]:
        await context.refresh()
        return context.summary()

    @app.put("/api/context/requirements")
    async def set_requirements(body: RequirementsRequest) -> dict[str, Any]:
        await context.set_requirements_document(body.content)
        return context.summary()

    @app.get("/api/context/{scenario}")
    async def context_for(scenario: str) -> dict[str, Any]:
        payload = await context.get_context_for(scenario)
        return {
            "scenario": payload.scenario,
            "known": scenario in SCENARIOS,
            "format": payload.format,
            "formatted": payload.formatted,
            "message": payload.message,
            "snapshotVersion": payload.snapshot_version,
            "refreshedAt": payload.refreshed_at,
        }

    # -- Interventions ----------------------------------------------------

    @app.get("/api/interventions")
    async def intervention_history(limit: int | None = None) -> dict[str, Any]:
        return {"history": [r.to_dict() for r in interventions.history(limit)]}

    @app.get("/api/interventions/stats")
    async def intervention_stats() -> dict[str, Any]:
        return interventions.stats()

    @app.post("/api/interventions")
    async def process_intervention(body: ProcessInterventionRequest) -> dict[str, Any]:
        request = InterventionRequest(
            body.type,
            session_id=body.session_id,
            workflow_id=body.workflow_id,
            line=body.line,
            context=body.context,
        )
        if body.deliver:
            response = await engine.intervene(request)
            if response is None:
                return {"suppressed": True}
        else:
            response = await interventions.process(request)
        return response.to_dict()

    @app.get("/api/interventions/held")
    async def held_interventions(session_id: str | None = None) -> dict[str, Any]:
        return {"held": [h.to_dict() for h in engine.held(session_id)]}

    @app.get("/api/interventions/permissions")
    async def pending_permissions() -> dict[str, Any]:
        return {"pending": [p.to_dict() for p in interventions.pending_permissions()]}

    @app.post("/api/interventions/permissions/approve")
    async def approve_permissions(body: PermissionDecisionRequest) -> dict[str, Any]:
        return {"resolved": [p.to_dict() for p in interventions.approve(body.ids)]}

    @app.post("/api/interventions/permissions/reject")
    async def reject_permissions(body: PermissionDecisionRequest) -> dict[str, Any]:
        return {"resolved": [p.to_dict() for p in interventions.reject(body.ids)]}

    # -- Supervision ------------------------------------------------------

    @app.get("/api/supervision")
    async def supervision_status() -> dict[str, Any]:
        return engine.stats()

    @app.put("/api/supervision/mode")
    async def set_mode(body: ModeRequest) -> dict[str, Any]:
        try:
            engine.set_mode(body.mode)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"mode": engine.mode}

    @app.post("/api/supervision/check-stalled")
    async def check_stalled() -> dict[str, Any]:
        return {"stuck": engine.check_stalled()}

    return app
