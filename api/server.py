"""
Onboarding Saga — API Server

FastAPI application serving:
  POST /v1/workflows                          — start a saga
  GET  /v1/workflows/{id}                     — saga status
  POST /v1/workflows/{id}/signals/{event}     — deliver a signal
  GET  /v1/workflows/{id}/events              — audit event log + chain check
  POST /v1/workflows/{id}/feedback            — record a human decision
  POST /v1/workflows/{id}/kill                — manual kill switch
  POST /v1/tick                               — timer sweep
  GET  /health                                — liveness
  GET  /ready                                 — readiness

Error mapping:
  ValidationError   422
  WorkflowNotFound  404
  TerminatedError   409
  IllegalTransition 409

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

Requires: pip install fastapi uvicorn
"""

import logging
import os
import time
from typing import Any

logger = logging.getLogger("saga.api")


def create_app(
    db_path: str = "onboarding.db",
    config: dict[str, Any] | None = None,
    orchestrator: Any = None,
) -> Any:
    """
    Create and configure the FastAPI application.

    Returns the app instance. Separated from module-level creation
    so tests can create fresh instances.
    """
    from fastapi import FastAPI, HTTPException, Request
    from fastapi.responses import JSONResponse

    from api.models import (
        AuditChainStatus, FeedbackRequest, KillRequest,
        WorkflowStart, WorkflowStarted,
    )
    from onboarding.runtime import SagaOrchestrator
    from saga.errors import (
        IllegalTransition, TerminatedError, ValidationError, WorkflowNotFound,
    )

    app = FastAPI(
        title="Onboarding Saga API",
        version="0.1.0",
        description="Durable SOP onboarding saga",
    )

    # ── State ────────────────────────────────────────────────

    _orchestrator: SagaOrchestrator | None = orchestrator

    def get_orchestrator() -> SagaOrchestrator:
        nonlocal _orchestrator
        if _orchestrator is None:
            _orchestrator = SagaOrchestrator(db_path=db_path, config=config)
        return _orchestrator

    # ── Error mapping ─────────────────────────────────────────

    @app.exception_handler(ValidationError)
    async def on_validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={
            "event": exc.event_name, "errors": exc.errors,
        })

    @app.exception_handler(WorkflowNotFound)
    async def on_not_found(request: Request, exc: WorkflowNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(TerminatedError)
    async def on_terminated(request: Request, exc: TerminatedError):
        return JSONResponse(status_code=409, content={
            "detail": str(exc), "workflow_id": exc.workflow_id, "reason": exc.reason,
        })

    @app.exception_handler(IllegalTransition)
    async def on_illegal(request: Request, exc: IllegalTransition):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    async def _json_body(request: Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")
        return body

    # ── Lifecycle ─────────────────────────────────────────────

    @app.post("/v1/workflows", response_model=None)
    async def start_workflow(request: Request):
        body = await _json_body(request)
        req = WorkflowStart(
            applicant_id=body.get("applicant_id", ""),
            applicant=body.get("applicant", {}),
        )
        errors = req.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        orch = get_orchestrator()
        wf_id = orch.start_workflow(req.applicant_id, req.applicant or None)
        status = orch.get_status(wf_id)
        response = WorkflowStarted(
            workflow_id=wf_id,
            applicant_id=req.applicant_id,
            status=status["status"],
            stage=status["stage"],
        )
        return JSONResponse(status_code=201, content=response.to_dict())

    @app.get("/v1/workflows/{workflow_id}")
    async def get_workflow(workflow_id: str):
        return JSONResponse(content=get_orchestrator().get_status(workflow_id))

    @app.post("/v1/workflows/{workflow_id}/signals/{event_name:path}")
    async def send_signal(workflow_id: str, event_name: str, request: Request):
        body = await _json_body(request)
        return JSONResponse(content=get_orchestrator().signal(workflow_id, event_name, body))

    @app.get("/v1/workflows/{workflow_id}/events")
    async def get_events(workflow_id: str, event_type: str | None = None):
        orch = get_orchestrator()
        events = orch.get_events(workflow_id, event_type)
        chain = orch.verify_audit_chain(workflow_id)
        response = AuditChainStatus(
            workflow_id=workflow_id,
            valid=chain["valid"],
            message=chain["message"],
            events=events,
        )
        return JSONResponse(content=response.to_dict())

    @app.post("/v1/workflows/{workflow_id}/feedback")
    async def record_feedback(workflow_id: str, request: Request):
        body = await _json_body(request)
        req = FeedbackRequest(
            human_outcome=body.get("human_outcome", ""),
            override_category=body.get("override_category", ""),
            decided_by=body.get("decided_by", ""),
            override_subcategory=body.get("override_subcategory"),
            override_details=body.get("override_details"),
            decision_ref=body.get("decision_ref"),
        )
        errors = req.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        result = get_orchestrator().record_feedback(
            workflow_id,
            human_outcome=req.human_outcome,
            override_category=req.override_category,
            decided_by=req.decided_by,
            override_subcategory=req.override_subcategory,
            override_details=req.override_details,
            decision_ref=req.decision_ref,
        )
        return JSONResponse(status_code=201, content=result)

    @app.post("/v1/workflows/{workflow_id}/kill")
    async def kill_workflow(workflow_id: str, request: Request):
        body = await _json_body(request)
        req = KillRequest(
            decided_by=body.get("decided_by", ""),
            reason=body.get("reason", KillRequest.reason),
            notes=body.get("notes", ""),
        )
        errors = req.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        record = get_orchestrator().kill(workflow_id, req.reason, req.decided_by, req.notes)
        return JSONResponse(content=record)

    @app.post("/v1/tick")
    async def tick():
        due = get_orchestrator().tick()
        return JSONResponse(content={"driven": due, "count": len(due)})

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    @app.get("/ready")
    async def ready():
        try:
            stats = get_orchestrator().store.stats()
            return JSONResponse(content={"status": "ok", "store": stats})
        except Exception as e:
            return JSONResponse(
                status_code=503,
                content={"status": "fail", "error": str(e)[:200]},
            )

    return app


# ── Module-level app for uvicorn ──────────────────────────────

try:
    app = create_app(db_path=os.environ.get("SAGA_DB_PATH", "onboarding.db"))
except ImportError:
    # FastAPI not installed; app creation deferred
    app = None
