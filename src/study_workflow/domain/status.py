"""
Workflow status model: legal statuses, their rank and derived categories.

Rank only ever grows for a study. The two sanctioned exceptions are
reassignment (same status, new owner) and the administrative jump to
``archived``, which is reachable from every status and terminal afterwards.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional

from study_workflow.domain.exceptions import InvalidTransition, ValidationError


class WorkflowStatus(str, Enum):
    NEW_STUDY_RECEIVED = "new_study_received"
    PENDING_ASSIGNMENT = "pending_assignment"
    ASSIGNED_TO_DOCTOR = "assigned_to_doctor"
    REPORT_IN_PROGRESS = "report_in_progress"
    REPORT_FINALIZED = "report_finalized"
    REPORT_DOWNLOADED_RADIOLOGIST = "report_downloaded_radiologist"
    REPORT_DOWNLOADED = "report_downloaded"
    FINAL_REPORT_DOWNLOADED = "final_report_downloaded"
    ARCHIVED = "archived"


class Category(str, Enum):
    """Dashboard grouping of statuses. Derived, never persisted."""
    PENDING = "pending"
    IN_PROGRESS = "inprogress"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Priority(str, Enum):
    """Presentation ranking and SLA target. Never gates a transition."""
    ROUTINE = "ROUTINE"
    URGENT = "URGENT"
    STAT = "STAT"
    EMERGENCY = "EMERGENCY"


STATUS_RANK: Dict[WorkflowStatus, int] = {
    WorkflowStatus.NEW_STUDY_RECEIVED: 0,
    WorkflowStatus.PENDING_ASSIGNMENT: 1,
    WorkflowStatus.ASSIGNED_TO_DOCTOR: 2,
    WorkflowStatus.REPORT_IN_PROGRESS: 3,
    WorkflowStatus.REPORT_FINALIZED: 4,
    # radiologist and lab/admin downloads are parallel branches
    WorkflowStatus.REPORT_DOWNLOADED_RADIOLOGIST: 5,
    WorkflowStatus.REPORT_DOWNLOADED: 5,
    WorkflowStatus.FINAL_REPORT_DOWNLOADED: 6,
    WorkflowStatus.ARCHIVED: 7,
}

CATEGORY_MEMBERS: Dict[Category, FrozenSet[WorkflowStatus]] = {
    Category.PENDING: frozenset({
        WorkflowStatus.NEW_STUDY_RECEIVED,
        WorkflowStatus.PENDING_ASSIGNMENT,
    }),
    Category.IN_PROGRESS: frozenset({
        WorkflowStatus.ASSIGNED_TO_DOCTOR,
        WorkflowStatus.REPORT_IN_PROGRESS,
    }),
    Category.COMPLETED: frozenset({
        WorkflowStatus.REPORT_FINALIZED,
        WorkflowStatus.REPORT_DOWNLOADED,
        WorkflowStatus.FINAL_REPORT_DOWNLOADED,
        WorkflowStatus.REPORT_DOWNLOADED_RADIOLOGIST,
    }),
    Category.ARCHIVED: frozenset({WorkflowStatus.ARCHIVED}),
}

# Statuses in which the assignee is the active owner of the study
ACTIVE_OWNERSHIP = CATEGORY_MEMBERS[Category.IN_PROGRESS]

# Spellings that drifted across the old worklist tables and lab edit screens
LEGACY_STATUS_NAMES: Dict[str, WorkflowStatus] = {
    "NEW": WorkflowStatus.NEW_STUDY_RECEIVED,
    "new": WorkflowStatus.NEW_STUDY_RECEIVED,
    "PENDING": WorkflowStatus.PENDING_ASSIGNMENT,
    "pending": WorkflowStatus.PENDING_ASSIGNMENT,
    "ASSIGNED": WorkflowStatus.ASSIGNED_TO_DOCTOR,
    "assigned": WorkflowStatus.ASSIGNED_TO_DOCTOR,
    "IN_PROGRESS": WorkflowStatus.REPORT_IN_PROGRESS,
    "doctor_opened_report": WorkflowStatus.REPORT_IN_PROGRESS,
    "report_drafted": WorkflowStatus.REPORT_IN_PROGRESS,
    "COMPLETED": WorkflowStatus.REPORT_FINALIZED,
    "report_uploaded": WorkflowStatus.REPORT_FINALIZED,
    "DOWNLOADED": WorkflowStatus.REPORT_DOWNLOADED,
}


def parse_status(value) -> WorkflowStatus:
    """Resolve a canonical or legacy status name to a ``WorkflowStatus``."""
    if isinstance(value, WorkflowStatus):
        return value
    try:
        return WorkflowStatus(value)
    except ValueError:
        if value in LEGACY_STATUS_NAMES:
            return LEGACY_STATUS_NAMES[value]
        raise ValidationError(f"Unknown status {value}") from None


def parse_priority(value: Optional[str]) -> Priority:
    """Priorities arrive in both upper and lower case from the archive."""
    if isinstance(value, Priority):
        return value
    if not value:
        return Priority.ROUTINE
    try:
        return Priority(value.upper())
    except ValueError:
        raise ValidationError(f"Unknown priority {value}") from None


def rank(status: WorkflowStatus) -> int:
    return STATUS_RANK[status]


def category_of(status: WorkflowStatus) -> Category:
    for category, members in CATEGORY_MEMBERS.items():
        if status in members:
            return category
    raise ValueError(f"Status {status} has no category")


def is_terminal(status: WorkflowStatus) -> bool:
    return status == WorkflowStatus.ARCHIVED


def is_reassignment(current: WorkflowStatus, target: WorkflowStatus) -> bool:
    return current == target == WorkflowStatus.ASSIGNED_TO_DOCTOR


def can_transition(current: WorkflowStatus, target: WorkflowStatus) -> bool:
    """Definitive transition check."""
    if target == WorkflowStatus.ARCHIVED:
        return True
    if is_terminal(current):
        return False
    if is_reassignment(current, target):
        return True
    return rank(target) >= rank(current)


def ensure_transition(current: WorkflowStatus, target: WorkflowStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot move study from {current.value} to {target.value}"
        )
