"""
Study workflow domain model.

A ``Study`` is the workflow record of one imaging study (never its pixel
data). It is the aggregate root: every status change and every doctor
assignment goes through its methods, which enforce the status model and
append domain events for the message bus to pick up.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from study_workflow.domain import status as status_model
from study_workflow.domain.events import StudyAssigned, StudyReceived, StudyStatusChanged
from study_workflow.domain.exceptions import InvalidTransition, Unauthorized, ValidationError
from study_workflow.domain.status import Priority, WorkflowStatus

logger = logging.getLogger(__name__)

# Milestone timestamps, in the order they must occur
MILESTONES = (
    "uploaded_at",
    "assigned_at",
    "report_started_at",
    "report_finalized_at",
    "downloaded_at",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Databases without timezone support hand back naive datetimes; they are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Role(str, Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    LAB_STAFF = "lab_staff"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: str) -> "Role":
        # the session service still issues 'doctor_account' tokens
        if value == "doctor_account":
            return cls.DOCTOR
        return cls(value)


@dataclass(frozen=True)
class Actor:
    """Who is asking. Supplied by the session collaborator and trusted as-is."""
    user_id: str
    role: Role
    location_id: Optional[str] = None


@dataclass
class Doctor:
    doctor_id: str
    full_name: str = ""
    specialization: Optional[str] = None
    is_active: bool = True
    is_logged_in: bool = False


@dataclass(eq=False)
class AssignmentRecord:
    doctor_id: str
    assigned_at: datetime
    assigned_by: Optional[str] = None
    note: Optional[str] = None
    action: str = "assign"


@dataclass(eq=False)
class StatusEvent:
    """
    One recorded transition. Written once, never updated.

    Not ``frozen``: the imperative mapper instruments and populates the
    attributes. Nothing in the domain assigns to an existing entry;
    ``Study`` only ever appends to ``status_history``.
    """
    study_id: str
    previous_status: WorkflowStatus
    new_status: WorkflowStatus
    at: datetime
    actor: Optional[str] = None
    note: Optional[str] = None


@dataclass
class AssignmentRequest:
    """Assign several studies to one doctor in one go. Never persisted."""
    study_ids: List[str]
    doctor_id: str
    actor: Actor
    priority_override: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class AssignmentResult:
    """
    Outcome of one assignment request. ``doctor_id`` is the doctor the study
    ended up with, which differs from ``requested_doctor_id`` when an
    overlapping request for the same study committed later.
    """
    study_id: str
    doctor_id: str
    requested_doctor_id: str
    status: WorkflowStatus
    action: str


@dataclass(eq=False)
class Study:
    study_id: str
    status: WorkflowStatus = WorkflowStatus.NEW_STUDY_RECEIVED
    priority: Priority = Priority.ROUTINE
    accession_number: Optional[str] = None
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    modality: Optional[str] = None
    location_id: Optional[str] = None
    study_date: Optional[datetime] = None
    assigned_doctor_id: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    report_started_at: Optional[datetime] = None
    report_finalized_at: Optional[datetime] = None
    downloaded_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    report_available: bool = False
    unauthorized_reason: Optional[str] = None
    version_number: int = 0
    assignment_history: List[AssignmentRecord] = field(default_factory=list)
    status_history: List[StatusEvent] = field(default_factory=list)
    events: List = field(default_factory=list)

    def __hash__(self):
        return hash(self.study_id)

    def __eq__(self, other):
        if not isinstance(other, Study):
            return False
        return other.study_id == self.study_id

    @classmethod
    def receive(
        cls,
        study_id: str,
        priority: Optional[str] = None,
        uploaded_at: Optional[datetime] = None,
        **metadata,
    ) -> "Study":
        """Create the workflow record for a study the archive just stored."""
        study = cls(
            study_id=study_id,
            priority=status_model.parse_priority(priority),
            uploaded_at=as_utc(uploaded_at) or utcnow(),
            **metadata,
        )
        study.events.append(
            StudyReceived(
                study_id=study.study_id,
                location_id=study.location_id,
                priority=study.priority.value,
                accession_number=study.accession_number,
                at=study.uploaded_at,
            )
        )
        return study

    @property
    def category(self) -> status_model.Category:
        return status_model.category_of(self.status)

    @property
    def is_actively_owned(self) -> bool:
        return self.status in status_model.ACTIVE_OWNERSHIP

    def assign(
        self,
        doctor: Doctor,
        actor: Actor,
        note: Optional[str] = None,
        priority_override: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Bind ``doctor`` to this study. Returns 'assign' or 'reassign'."""
        now = now or utcnow()
        if status_model.rank(self.status) >= status_model.rank(WorkflowStatus.REPORT_FINALIZED):
            raise InvalidTransition(
                f"Study {self.study_id} is {self.status.value}; finalized studies cannot be reassigned"
            )
        if not doctor.is_active:
            raise ValidationError(f"Cannot assign study to inactive doctor {doctor.doctor_id}")
        priority = status_model.parse_priority(priority_override) if priority_override else None

        previous_doctor_id = self.assigned_doctor_id
        action = "reassign" if previous_doctor_id is not None else "assign"

        self.assignment_history.append(
            AssignmentRecord(
                doctor_id=doctor.doctor_id,
                assigned_at=now,
                assigned_by=actor.user_id,
                note=note,
                action=action,
            )
        )
        self.assigned_doctor_id = doctor.doctor_id
        if priority is not None:
            self.priority = priority
        self._stamp("assigned_at", now)

        if self.status in (
            WorkflowStatus.NEW_STUDY_RECEIVED,
            WorkflowStatus.PENDING_ASSIGNMENT,
            WorkflowStatus.ASSIGNED_TO_DOCTOR,
        ):
            self._transition(
                WorkflowStatus.ASSIGNED_TO_DOCTOR,
                actor,
                now,
                note=note or f"{action} to {doctor.doctor_id}",
                record_noop=True,
            )
        # a study already in report_in_progress keeps its status on reassignment

        self.events.append(
            StudyAssigned(
                study_id=self.study_id,
                doctor_id=doctor.doctor_id,
                previous_doctor_id=previous_doctor_id,
                action=action,
                assigned_by=actor.user_id,
                at=now,
                status=self.status.value,
                location_id=self.location_id,
            )
        )
        self.version_number += 1
        return action

    def start_report(self, doctor_id: str, actor: Actor, now: Optional[datetime] = None):
        now = now or utcnow()
        self._require_assignee(doctor_id)
        status_model.ensure_transition(self.status, WorkflowStatus.REPORT_IN_PROGRESS)
        self._stamp("report_started_at", now)
        self._transition(WorkflowStatus.REPORT_IN_PROGRESS, actor, now)

    def finalize(self, doctor_id: str, actor: Actor, now: Optional[datetime] = None):
        now = now or utcnow()
        self._require_assignee(doctor_id)
        status_model.ensure_transition(self.status, WorkflowStatus.REPORT_FINALIZED)
        self._stamp("report_started_at", now)
        self._stamp("report_finalized_at", now)
        self._transition(WorkflowStatus.REPORT_FINALIZED, actor, now)

    def record_download(self, actor: Actor, final: bool = False, now: Optional[datetime] = None) -> WorkflowStatus:
        """
        Record a report download.

        Doctors land on the radiologist branch; lab staff and admins on the
        lab/admin branch. A download that would lower the rank (e.g. the
        radiologist fetching a copy after the final download) is accepted
        but leaves the status as it is.
        """
        now = now or utcnow()
        if status_model.is_terminal(self.status):
            raise InvalidTransition(f"Study {self.study_id} is archived")
        if status_model.rank(self.status) < status_model.rank(WorkflowStatus.REPORT_FINALIZED):
            raise InvalidTransition(f"Study {self.study_id} has no finalized report yet")

        if actor.role == Role.DOCTOR:
            target = WorkflowStatus.REPORT_DOWNLOADED_RADIOLOGIST
        else:
            target = WorkflowStatus.FINAL_REPORT_DOWNLOADED if final else WorkflowStatus.REPORT_DOWNLOADED
            self._stamp("downloaded_at", now)

        if status_model.rank(target) < status_model.rank(self.status):
            logger.info(
                f"Download of study {self.study_id} by {actor.role.value} recorded, "
                f"status stays {self.status.value}"
            )
            self.version_number += 1
            return self.status

        self._transition(target, actor, now)
        return self.status

    def queue_for_assignment(self, actor: Actor, now: Optional[datetime] = None):
        now = now or utcnow()
        status_model.ensure_transition(self.status, WorkflowStatus.PENDING_ASSIGNMENT)
        self._transition(WorkflowStatus.PENDING_ASSIGNMENT, actor, now)

    def archive(self, actor: Actor, note: Optional[str] = None, now: Optional[datetime] = None):
        now = now or utcnow()
        if self.archived_at is None:
            self.archived_at = now
        self._transition(WorkflowStatus.ARCHIVED, actor, now, note=note)

    def mark_unauthorized(self, actor: Actor, reason: str, now: Optional[datetime] = None):
        """Irreversibly archive the study as unauthorized, whatever its rank."""
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to mark a study unauthorized")
        if self.unauthorized_reason is None:
            self.unauthorized_reason = reason.strip()
        self.archive(actor, note=f"unauthorized: {reason.strip()}", now=now)

    def set_report_available(self, available: bool = True):
        if self.report_available != available:
            self.report_available = available
            self.version_number += 1

    def _require_assignee(self, doctor_id: str):
        if self.assigned_doctor_id is None or doctor_id != self.assigned_doctor_id:
            raise Unauthorized(
                f"Doctor {doctor_id} is not the assigned doctor of study {self.study_id}"
            )

    def _stamp(self, milestone: str, now: datetime) -> datetime:
        """Set a milestone once, never earlier than any milestone before it."""
        existing = getattr(self, milestone)
        if existing is not None:
            return existing
        earlier = [
            as_utc(getattr(self, name))
            for name in MILESTONES[:MILESTONES.index(milestone)]
            if getattr(self, name) is not None
        ]
        value = max([as_utc(now)] + earlier)
        setattr(self, milestone, value)
        return value

    def _transition(
        self,
        target: WorkflowStatus,
        actor: Actor,
        now: datetime,
        note: Optional[str] = None,
        record_noop: bool = False,
    ) -> bool:
        status_model.ensure_transition(self.status, target)
        if target == self.status and not record_noop:
            return False

        previous = self.status
        self.status = target
        self.status_history.append(
            StatusEvent(
                study_id=self.study_id,
                previous_status=previous,
                new_status=target,
                at=now,
                actor=actor.user_id,
                note=note,
            )
        )
        self.events.append(
            StudyStatusChanged(
                study_id=self.study_id,
                previous_status=previous.value,
                new_status=target.value,
                at=now,
                actor_id=actor.user_id,
                note=note,
                assigned_doctor_id=self.assigned_doctor_id,
                location_id=self.location_id,
            )
        )
        self.version_number += 1
        return True
