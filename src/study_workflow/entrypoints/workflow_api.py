"""
Study Workflow API - Thin API with command dispatch.

Every route resolves the calling actor from the session gateway's headers,
calls one WorkflowService operation and serializes the result. Domain errors
are mapped to HTTP status codes in a single exception handler.
"""
import logging
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from study_workflow import bootstrap
from study_workflow.domain.exceptions import ErrorKind, ValidationError, WorkflowError
from study_workflow.domain.model import Actor, AssignmentRequest, Role
from study_workflow.domain.status import WorkflowStatus, parse_status
from study_workflow.service_layer.bulk import BulkOperation, BulkReport
from study_workflow.service_layer.workflow_service import WorkflowService

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Study Workflow API",
    description="Status tracking, doctor assignment and turnaround times for radiology studies",
    version="1.0.0"
)

HTTP_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.REPORT_NOT_AVAILABLE: 409,
    ErrorKind.EXTERNAL_COLLABORATOR_TIMEOUT: 504,
    ErrorKind.VALIDATION_ERROR: 422,
    ErrorKind.EXTERNAL_COLLABORATOR_ERROR: 502,
}


@lru_cache(maxsize=None)
def get_service() -> WorkflowService:
    return bootstrap.bootstrap()


def get_actor(
    x_actor_id: str = Header(...),
    x_actor_role: str = Header(...),
    x_actor_location: Optional[str] = Header(None),
) -> Actor:
    """The session gateway authenticates callers and forwards who they are."""
    try:
        role = Role.parse(x_actor_role)
    except ValueError:
        raise ValidationError(f"Unknown role {x_actor_role}") from None
    return Actor(user_id=x_actor_id, role=role, location_id=x_actor_location)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    return JSONResponse(
        status_code=HTTP_STATUS.get(exc.kind, 500),
        content={"error": exc.kind.value, "detail": str(exc)},
    )


class StudyNotification(BaseModel):
    """Study stored by the archive"""
    study_id: str
    accession_number: Optional[str] = None
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    modality: Optional[str] = None
    location_id: Optional[str] = None
    study_date: Optional[datetime] = None
    priority: Optional[str] = None
    uploaded_at: Optional[datetime] = None


class AssignBody(BaseModel):
    doctor_id: str
    note: Optional[str] = None
    priority_override: Optional[str] = None


class BulkAssignBody(AssignBody):
    study_ids: List[str]


class ReportBody(BaseModel):
    doctor_id: str


class DownloadBody(BaseModel):
    final: bool = False


class AvailabilityBody(BaseModel):
    available: bool = True


class ArchiveBody(BaseModel):
    note: Optional[str] = None


class BulkBody(BaseModel):
    study_ids: List[str]
    reason: Optional[str] = None
    confirmed: bool = False


class SubscribeBody(BaseModel):
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))


def _report(report: BulkReport) -> Dict[str, Any]:
    return {
        "operation": report.operation.value,
        "succeeded": report.succeeded,
        "failed": report.failed,
        "cancelled": report.cancelled,
        "archive_id": report.archive_id,
        "results": [
            {
                "study_id": r.study_id,
                "success": r.success,
                "error": r.error.value if r.error else None,
                "detail": r.detail,
                "payload": _payload(r.payload),
            }
            for r in report.results
        ],
    }


def _payload(payload):
    if hasattr(payload, "doctor_id"):
        return {"doctor_id": payload.doctor_id, "status": payload.status.value, "action": payload.action}
    if isinstance(payload, WorkflowStatus):
        return payload.value
    return payload


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "study-workflow-api",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.post("/api/v1/studies")
def ingest_study(
    notification: StudyNotification,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_service),
):
    metadata = notification.model_dump(exclude={"study_id"})
    created = service.create_or_touch_study(notification.study_id, metadata, actor)
    logger.info(f"Study {notification.study_id} notification processed, created={created}")
    return {"study_id": notification.study_id, "created": created}


@app.get("/api/v1/studies/{study_id}")
def get_study(study_id: str, actor: Actor = Depends(get_actor), service: WorkflowService = Depends(get_service)):
    return service.get_study(study_id, actor)


@app.post("/api/v1/studies/{study_id}/assignment")
def assign_study(
    study_id: str,
    body: AssignBody,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_service),
):
    result = service.assign(study_id, body.doctor_id, actor, body.note, body.priority_override)
    return {
        "study_id": result.study_id,
        "doctor_id": result.doctor_id,
        "requested_doctor_id": result.requested_doctor_id,
        "status": result.status.value,
        "action": result.action,
    }


@app.post("/api/v1/studies/{study_id}/report/start")
def start_report(
    study_id: str,
    body: ReportBody,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_service),
):
    return {"study_id": study_id, "status": service.start_report(study_id, body.doctor_id, actor).value}


@app.post("/api/v1/studies/{study_id}/report/finalize")
def finalize_report(
    study_id: str,
    body: ReportBody,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_service),
):
    return {"study_id": study_id, "status": service.finalize(study_id, body.doctor_id, actor).value}


@app.post("/api/v1/studies/{study_id}/report/download")
def record_download(
    study_id: str,
    body: DownloadBody,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_service),
):
    return {"study_id": study_id, "status": service.record_download(study_id, actor, body.final).value}


@app.put("/api/v1/studies/{study_id}/report/availability")
def set_report_available(
    study_id: str,
    body: AvailabilityBody,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_service),
):
    available = service.set_report_available(study_id, actor, body.available)
    return {"study_id": study_id, "report_available": available}


@app.post("/api/v1/studies/{study_id}/queue")
def queue_for_assignment(
    study_id: str, actor: Actor = Depends(get_actor), service: WorkflowService = Depends(get_service)
):
    return {"study_id": study_id, "status": service.queue_for_assignment(study_id, actor).value}


@app.post("/api/v1/studies/{study_id}/archive")
def archive_study(
    study_id: str,
    body: ArchiveBody,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_service),
):
    return {"study_id": study_id, "status": service.archive(study_id, actor, body.note).value}


@app.post("/api/v1/bulk/assign")
def bulk_assign(
    body: BulkAssignBody, actor: Actor = Depends(get_actor), service: WorkflowService = Depends(get_service)
):
    request = AssignmentRequest(
        study_ids=body.study_ids,
        doctor_id=body.doctor_id,
        actor=actor,
        priority_override=body.priority_override,
        note=body.note,
    )
    return _report(service.assign_many(request))


@app.post("/api/v1/bulk/{operation}")
def bulk_operation(
    operation: BulkOperation,
    body: BulkBody,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_service),
):
    """Mark unauthorized, dispatch reports, export rows or build a zip."""
    if operation == BulkOperation.ASSIGN:
        raise ValidationError("Use /api/v1/bulk/assign to assign studies")
    report = service.bulk(
        operation, body.study_ids, actor, reason=body.reason, confirmed=body.confirmed
    )
    return _report(report)


@app.get("/api/v1/dashboard/counts")
def dashboard_counts(actor: Actor = Depends(get_actor), service: WorkflowService = Depends(get_service)):
    return service.dashboard_counts(actor)


@app.get("/api/v1/reports/tat")
def tat_report(
    location_id: Optional[str] = None,
    status: Optional[str] = None,
    date_type: str = "uploadDate",
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_service),
):
    return service.tat_report(
        actor,
        location_id=location_id,
        status=parse_status(status) if status else None,
        date_type=date_type,
        from_date=from_date,
        to_date=to_date,
        limit=limit,
        offset=offset,
    )


@app.get("/api/v1/reports/tat/analytics")
def tat_analytics(
    location_id: Optional[str] = None,
    period: str = "30d",
    actor: Actor = Depends(get_actor),
    service: WorkflowService = Depends(get_service),
):
    return service.tat_analytics(actor, location_id=location_id, period=period)


@app.get("/api/v1/doctors/{doctor_id}/workload")
def doctor_workload(
    doctor_id: str, actor: Actor = Depends(get_actor), service: WorkflowService = Depends(get_service)
):
    return service.doctor_workload(doctor_id, actor)


@app.post("/api/v1/sessions")
def subscribe(
    body: SubscribeBody, actor: Actor = Depends(get_actor), service: WorkflowService = Depends(get_service)
):
    subscription = service.notifier.subscribe(body.session_id, actor.role, actor.user_id, actor.location_id)
    return {"session_id": subscription.session_id, "scope": subscription.scope}


def owned_session(
    session_id: str, actor: Actor = Depends(get_actor), service: WorkflowService = Depends(get_service)
) -> str:
    service.notifier.check_owner(session_id, actor)
    return session_id


@app.get("/api/v1/sessions/{session_id}/unseen")
def unseen_count(session_id: str = Depends(owned_session), service: WorkflowService = Depends(get_service)):
    return {"session_id": session_id, "unseen": service.notifier.unseen_count(session_id)}


@app.post("/api/v1/sessions/{session_id}/ack")
def acknowledge(session_id: str = Depends(owned_session), service: WorkflowService = Depends(get_service)):
    return {"session_id": session_id, "unseen": service.notifier.acknowledge(session_id)}


@app.post("/api/v1/sessions/{session_id}/disconnect")
def disconnect(session_id: str = Depends(owned_session), service: WorkflowService = Depends(get_service)):
    service.notifier.disconnect(session_id)
    return {"session_id": session_id, "connected": False}


@app.post("/api/v1/sessions/{session_id}/reconnect")
def reconnect(session_id: str = Depends(owned_session), service: WorkflowService = Depends(get_service)):
    service.notifier.reconnect(session_id)
    return {"session_id": session_id, "connected": True}


@app.delete("/api/v1/sessions/{session_id}")
def unsubscribe(session_id: str = Depends(owned_session), service: WorkflowService = Depends(get_service)):
    service.notifier.unsubscribe(session_id)
    return {"session_id": session_id, "subscribed": False}
