"""
Workflow service - the single entry point for every caller.

Checks what the actor's role is allowed to do, turns the call into a
command on a fresh message bus (one unit of work per call, so concurrent
callers never share a session) and fans bulk requests out through the
bulk operation coordinator.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from study_workflow import views
from study_workflow.domain import commands
from study_workflow.domain.exceptions import Unauthorized, ValidationError
from study_workflow.domain.model import Actor, AssignmentRequest, AssignmentResult, Role
from study_workflow.domain.status import WorkflowStatus
from study_workflow.service_layer.authorization import Capability, authorize
from study_workflow.service_layer.bulk import BulkOperation, BulkOperationCoordinator, BulkReport
from study_workflow.service_layer.messagebus import MessageBus
from study_workflow.service_layer.notifier import EventNotifier
from study_workflow.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


class WorkflowService:
    def __init__(
        self,
        uow_factory: Callable[[], AbstractUnitOfWork],
        command_handlers: Dict,
        event_handlers: Dict,
        notifier: EventNotifier,
        coordinator: BulkOperationCoordinator,
    ):
        self.uow_factory = uow_factory
        self.command_handlers = command_handlers
        self.event_handlers = event_handlers
        self.notifier = notifier
        self.coordinator = coordinator

    def _dispatch(self, command):
        bus = MessageBus(self.uow_factory(), self.event_handlers, self.command_handlers)
        return bus.handle(command)[0]

    # -- ingestion and collaborator callbacks --------------------------------

    def create_or_touch_study(self, study_id: str, metadata: Dict[str, Any], actor: Actor) -> bool:
        """Idempotent: returns False when the study was already known."""
        authorize(actor, Capability.INGEST)
        if not study_id:
            raise ValidationError("study_id is required")
        return self._dispatch(commands.CreateOrTouchStudy(study_id=study_id, actor=actor, **metadata))

    def set_report_available(self, study_id: str, actor: Actor, available: bool = True) -> bool:
        authorize(actor, Capability.SET_REPORT_AVAILABLE)
        return self._dispatch(commands.SetReportAvailable(study_id=study_id, actor=actor, available=available))

    # -- single-study operations ----------------------------------------------

    def assign(
        self,
        study_id: str,
        doctor_id: str,
        actor: Actor,
        note: Optional[str] = None,
        priority_override: Optional[str] = None,
    ) -> AssignmentResult:
        authorize(actor, Capability.ASSIGN)
        return self._assign(study_id, doctor_id, actor, note, priority_override)

    def _assign(self, study_id, doctor_id, actor, note=None, priority_override=None) -> AssignmentResult:
        return self._dispatch(
            commands.AssignStudy(
                study_id=study_id,
                doctor_id=doctor_id,
                actor=actor,
                note=note,
                priority_override=priority_override,
            )
        )

    def start_report(self, study_id: str, doctor_id: str, actor: Actor) -> WorkflowStatus:
        self._authorize_report_writer(actor, doctor_id)
        return self._dispatch(commands.StartReport(study_id=study_id, doctor_id=doctor_id, actor=actor))

    def finalize(self, study_id: str, doctor_id: str, actor: Actor) -> WorkflowStatus:
        self._authorize_report_writer(actor, doctor_id)
        return self._dispatch(commands.FinalizeReport(study_id=study_id, doctor_id=doctor_id, actor=actor))

    def record_download(self, study_id: str, actor: Actor, final: bool = False) -> WorkflowStatus:
        authorize(actor, Capability.DOWNLOAD_REPORT)
        return self._dispatch(commands.RecordDownload(study_id=study_id, actor=actor, final=final))

    def queue_for_assignment(self, study_id: str, actor: Actor) -> WorkflowStatus:
        authorize(actor, Capability.TRIAGE)
        return self._dispatch(commands.QueueForAssignment(study_id=study_id, actor=actor))

    def archive(self, study_id: str, actor: Actor, note: Optional[str] = None) -> WorkflowStatus:
        authorize(actor, Capability.ARCHIVE)
        return self._dispatch(commands.ArchiveStudy(study_id=study_id, actor=actor, note=note))

    def _authorize_report_writer(self, actor: Actor, doctor_id: str):
        authorize(actor, Capability.WRITE_REPORT)
        if actor.role == Role.DOCTOR and actor.user_id != doctor_id:
            raise Unauthorized(f"Doctor {actor.user_id} cannot act as doctor {doctor_id}")

    # -- bulk operations ---------------------------------------------------------

    def assign_many(self, request: AssignmentRequest, cancel: Optional[threading.Event] = None) -> BulkReport:
        authorize(request.actor, Capability.ASSIGN)
        if not request.doctor_id:
            raise ValidationError("doctor_id is required")
        ids = self.coordinator.validate(BulkOperation.ASSIGN, request.study_ids)
        return self.coordinator.run(
            BulkOperation.ASSIGN,
            ids,
            lambda study_id: self._assign(
                study_id, request.doctor_id, request.actor, request.note, request.priority_override
            ),
            cancel,
        )

    def mark_unauthorized(
        self,
        study_ids: List[str],
        reason: str,
        actor: Actor,
        cancel: Optional[threading.Event] = None,
    ) -> BulkReport:
        authorize(actor, Capability.MARK_UNAUTHORIZED)
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to mark studies unauthorized")
        ids = self.coordinator.validate(BulkOperation.MARK_UNAUTHORIZED, study_ids)
        return self.coordinator.run(
            BulkOperation.MARK_UNAUTHORIZED,
            ids,
            lambda study_id: self._dispatch(
                commands.MarkUnauthorized(study_id=study_id, actor=actor, reason=reason)
            ),
            cancel,
        )

    def dispatch_reports(
        self, study_ids: List[str], actor: Actor, cancel: Optional[threading.Event] = None
    ) -> BulkReport:
        authorize(actor, Capability.DISPATCH_REPORT)
        ids = self.coordinator.validate(BulkOperation.DISPATCH_REPORT, study_ids)
        return self.coordinator.run(
            BulkOperation.DISPATCH_REPORT,
            ids,
            lambda study_id: self._dispatch(commands.DispatchReport(study_id=study_id, actor=actor)),
            cancel,
        )

    def export_rows(
        self,
        study_ids: List[str],
        actor: Actor,
        confirmed: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> BulkReport:
        authorize(actor, Capability.EXPORT)
        ids = self.coordinator.validate(BulkOperation.EXPORT_ROW, study_ids, confirmed=confirmed)

        def export(study_id):
            row = views.export_row(study_id, self.uow_factory())
            if actor.role == Role.LAB_STAFF and row["Location"] != actor.location_id:
                raise Unauthorized(f"Study {study_id} does not belong to location {actor.location_id}")
            return row

        return self.coordinator.run(BulkOperation.EXPORT_ROW, ids, export, cancel)

    def zip_studies(
        self,
        study_ids: List[str],
        actor: Actor,
        confirmed: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> BulkReport:
        authorize(actor, Capability.ZIP)
        ids = self.coordinator.validate(BulkOperation.INCLUDE_IN_ZIP, study_ids, confirmed=confirmed)
        archive_id = str(uuid4())
        report = self.coordinator.run(
            BulkOperation.INCLUDE_IN_ZIP,
            ids,
            lambda study_id: self._dispatch(
                commands.IncludeInZip(study_id=study_id, archive_id=archive_id, actor=actor)
            ),
            cancel,
        )
        report.archive_id = archive_id
        return report

    def bulk(
        self,
        operation: BulkOperation,
        study_ids: List[str],
        actor: Actor,
        doctor_id: Optional[str] = None,
        reason: Optional[str] = None,
        note: Optional[str] = None,
        priority_override: Optional[str] = None,
        confirmed: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> BulkReport:
        """Run a bulk operation by its tag, as the worklist footer buttons do."""
        operation = BulkOperation(operation)
        if operation == BulkOperation.ASSIGN:
            return self.assign_many(
                AssignmentRequest(
                    study_ids=study_ids,
                    doctor_id=doctor_id,
                    actor=actor,
                    priority_override=priority_override,
                    note=note,
                ),
                cancel,
            )
        if operation == BulkOperation.MARK_UNAUTHORIZED:
            return self.mark_unauthorized(study_ids, reason, actor, cancel)
        if operation == BulkOperation.DISPATCH_REPORT:
            return self.dispatch_reports(study_ids, actor, cancel)
        if operation == BulkOperation.EXPORT_ROW:
            return self.export_rows(study_ids, actor, confirmed, cancel)
        return self.zip_studies(study_ids, actor, confirmed, cancel)

    # -- reads ------------------------------------------------------------------

    def get_study(self, study_id: str, actor: Actor) -> Dict[str, Any]:
        authorize(actor, Capability.VIEW)
        study = views.get_study(study_id, self.uow_factory())
        if actor.role == Role.LAB_STAFF and study["location_id"] != actor.location_id:
            raise Unauthorized(f"Study {study_id} does not belong to location {actor.location_id}")
        if actor.role == Role.DOCTOR and study["assigned_doctor_id"] != actor.user_id:
            raise Unauthorized(f"Study {study_id} is not assigned to doctor {actor.user_id}")
        return study

    def dashboard_counts(self, actor: Actor) -> Dict[str, Any]:
        authorize(actor, Capability.VIEW)
        return views.get_dashboard_counts(self.uow_factory(), actor)

    def _scope_tat_filters(self, actor: Actor, filters: Dict[str, Any]) -> Dict[str, Any]:
        authorize(actor, Capability.VIEW)
        if actor.role == Role.LAB_STAFF:
            filters["location_id"] = actor.location_id
        elif actor.role != Role.ADMIN:
            raise Unauthorized(f"Role {actor.role.value} may not view TAT reports")
        return filters

    def tat_report(self, actor: Actor, **filters) -> Dict[str, Any]:
        return views.get_tat_report(self.uow_factory(), **self._scope_tat_filters(actor, filters))

    def tat_analytics(self, actor: Actor, **filters) -> Dict[str, Any]:
        """Period analytics; lab staff always get their own location."""
        return views.get_tat_analytics(self.uow_factory(), **self._scope_tat_filters(actor, filters))

    def doctor_workload(self, doctor_id: str, actor: Actor) -> Dict[str, Any]:
        authorize(actor, Capability.VIEW)
        if actor.role != Role.ADMIN and not (actor.role == Role.DOCTOR and actor.user_id == doctor_id):
            raise Unauthorized(f"{actor.user_id} may not view workload of doctor {doctor_id}")
        return views.get_doctor_workload(doctor_id, self.uow_factory())
