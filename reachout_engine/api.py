"""
FastAPI application for the ReachOut workflow engine.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .db.base import get_db, init_database
from .db.services import (
    EnrollmentService,
    ExecutionLogService,
    ExecutionService,
    WorkflowService,
)
from .deps import get_dispatcher
from .engine.dispatch import MessageDispatcher
from .engine.enrollment import enroll_contacts
from .engine.scheduler import Scheduler, authorize_trigger
from .errors import (
    AuthorizationError,
    EngineError,
    GraphError,
    NotFoundError,
    ProviderError,
    SignatureError,
    ValidationError,
)
from .logging_config import configure_logging
from .schemas.api import EnrollRequest, ResumeExecutionRequest, SendMessageRequest
from .schemas.workflow import WorkflowCreate, WorkflowUpdate
from .webhooks.routes import router as webhooks_router

logger = structlog.get_logger()

ERROR_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    AuthorizationError: 401,
    SignatureError: 401,
    GraphError: 422,
    ProviderError: 502,
}


def _version() -> str:
    try:
        return importlib.metadata.version("reachout-engine")
    except importlib.metadata.PackageNotFoundError:
        return "0.0.0+unknown"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    logger.info("Starting ReachOut Engine", environment=settings.environment)

    try:
        init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Failed to start application: {e}")
        raise

    if settings.insecure_skip_webhook_signatures:
        logger.warning("webhook_signature_checks_disabled", environment=settings.environment)

    yield

    logger.info("Shutdown complete")


app = FastAPI(
    title="ReachOut Engine",
    description="Workflow execution engine for multi-step SMS and email outreach",
    version=_version(),
    lifespan=lifespan,
)

app.include_router(webhooks_router)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    status_code = 500
    for error_cls, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_cls):
            status_code = code
            break
    if status_code == 401:
        logger.warning("request_rejected", path=request.url.path, error=exc.code)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.get("/health", tags=["system"])
def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version", tags=["system"])
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {"version": _version()}


# =============================================================================
# Scheduler
# =============================================================================


def require_trusted_caller(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Reject untrusted callers before any database work."""
    authorize_trigger(authorization, settings)


@app.post(
    "/scheduler/executions/run",
    tags=["scheduler"],
    dependencies=[Depends(require_trusted_caller)],
)
def run_due_executions(
    batch_size: Optional[int] = Query(default=None),
    settings: Settings = Depends(get_settings),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    """Process one batch of due executions."""
    summary = Scheduler(dispatcher.db, settings, dispatcher).run_executions(batch_size)
    return summary.to_dict()


@app.post(
    "/scheduler/messages/run",
    tags=["scheduler"],
    dependencies=[Depends(require_trusted_caller)],
)
def run_scheduled_messages(
    batch_size: Optional[int] = Query(default=None),
    settings: Settings = Depends(get_settings),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    """Send one batch of due scheduled messages."""
    return Scheduler(dispatcher.db, settings, dispatcher).run_message_sweep(batch_size)


# =============================================================================
# Workflows and enrollment
# =============================================================================


@app.post("/workflows", status_code=201, tags=["workflows"])
def create_workflow(
    payload: WorkflowCreate, db: Session = Depends(get_db)
) -> Dict[str, Any]:
    """Create a workflow. The graph is validated before it is stored."""
    workflow = WorkflowService(db).create_workflow(payload)
    logger.info("workflow_created", workflow_id=workflow.id, enabled=workflow.is_enabled)
    return workflow.to_dict()


@app.get("/workflows/{workflow_id}", tags=["workflows"])
def get_workflow(workflow_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    workflow = WorkflowService(db).get_workflow(workflow_id)
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow.to_dict()


@app.patch("/workflows/{workflow_id}", tags=["workflows"])
def update_workflow(
    workflow_id: str, payload: WorkflowUpdate, db: Session = Depends(get_db)
) -> Dict[str, Any]:
    """Enable/disable a workflow or replace its graph.

    Executions in flight read the graph live on every tick, so a replaced
    graph applies to them from their next run.
    """
    workflow = WorkflowService(db).update_workflow(workflow_id, payload)
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found")
    logger.info("workflow_updated", workflow_id=workflow.id, enabled=workflow.is_enabled)
    return workflow.to_dict()


@app.post("/workflows/{workflow_id}/enroll", tags=["workflows"])
def enroll(
    workflow_id: str,
    payload: EnrollRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """Enroll a batch of contacts."""
    summary = enroll_contacts(
        db,
        workflow_id,
        payload.contact_ids,
        skip_duplicates=payload.skip_duplicates,
        settings=settings,
    )
    data = summary.to_dict()
    data["success"] = True
    data["message"] = (
        f"Enrolled {summary.enrolled} contacts, skipped {summary.skipped}, "
        f"failed {summary.failed}"
    )
    return data


@app.get("/workflows/{workflow_id}/enroll", tags=["workflows"])
def enrollment_status(
    workflow_id: str,
    contact_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Per-status counts, or one contact's latest enrollment."""
    service = EnrollmentService(db)
    if contact_id:
        enrollment = service.get_for_contact(workflow_id, contact_id)
        return {
            "enrolled": enrollment is not None,
            "enrollment": enrollment.to_dict() if enrollment else None,
        }
    return {"workflow_id": workflow_id, "counts": service.count_by_status(workflow_id)}


# =============================================================================
# Executions
# =============================================================================


@app.get("/executions/{execution_id}", tags=["executions"])
def get_execution(execution_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """An execution with its per-node log."""
    execution = ExecutionService(db).get_execution(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Execution not found")
    data = execution.to_dict()
    data["logs"] = [entry.to_dict() for entry in ExecutionLogService(db).get_logs(execution_id)]
    return data


@app.post("/executions/{execution_id}/resume", tags=["executions"])
def resume_execution(
    execution_id: str,
    payload: ResumeExecutionRequest,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Operator action: re-run an execution from ``node_id`` on the next poll."""
    service = ExecutionService(db)
    execution = service.get_execution(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Execution not found")
    if execution.status == "active":
        raise HTTPException(status_code=409, detail="Execution is being processed")
    if execution.enrollment is None:
        raise HTTPException(status_code=404, detail="Enrollment not found")
    workflow = WorkflowService(db).get_workflow(execution.enrollment.workflow_id)
    if not workflow:
        raise NotFoundError("Workflow", execution.enrollment.workflow_id)
    node_ids = {node.get("id") for node in (workflow.graph or {}).get("nodes", [])}
    if payload.node_id not in node_ids:
        raise ValidationError(f"Node '{payload.node_id}' is not in the workflow")
    try:
        resumed = service.reschedule(execution, payload.node_id)
    except IntegrityError:
        raise HTTPException(
            status_code=409, detail="Contact already has an active enrollment in this workflow"
        )
    if resumed is None:
        raise HTTPException(status_code=409, detail="Execution is being processed")
    execution = resumed
    logger.info("execution_resumed", execution_id=execution.id, node_id=payload.node_id)
    return execution.to_dict()


# =============================================================================
# Messages
# =============================================================================


@app.post("/messages/send", tags=["messages"])
def send_message(
    payload: SendMessageRequest,
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    """Send now, or schedule when ``scheduled_at`` is in the future."""
    message = dispatcher.send(
        contact_id=payload.contact_id,
        channel=payload.channel,
        body=payload.body,
        subject=payload.subject,
        scheduled_at=payload.scheduled_at,
        template_id=payload.template_id,
        from_identity_id=payload.from_identity_id,
        source=payload.source,
    )
    return {
        "success": message.status != "failed",
        "scheduled": message.status == "scheduled",
        "error": message.provider_error,
        "message": message.to_dict(),
    }
