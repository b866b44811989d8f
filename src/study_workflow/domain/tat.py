"""
Turnaround time (TAT) accounting.

All metrics are whole minutes between two recorded timestamps, or ``None``
when either end is missing. Formatting for display is left to callers via
``format_minutes`` so the same integers feed both the UI and SLA checks.

The study-to-report anchor is the acquisition date (``study_date``). The
billed-on date some lab screens show is not used for TAT.
"""
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from study_workflow.domain.model import Study, as_utc, utcnow
from study_workflow.domain.status import Priority, WorkflowStatus

# Upload-to-report targets per priority, in minutes
SLA_TARGET_MINUTES: Dict[Priority, int] = {
    Priority.EMERGENCY: 30,
    Priority.STAT: 60,
    Priority.URGENT: 4 * 60,
    Priority.ROUTINE: 24 * 60,
}


@dataclass(frozen=True)
class TurnaroundTimes:
    study_to_report: Optional[int]
    upload_to_report: Optional[int]
    assignment_to_report: Optional[int]
    upload_to_assignment: Optional[int]
    report_to_download: Optional[int]
    total: Optional[int]

    def as_dict(self) -> Dict[str, Optional[int]]:
        return asdict(self)


def minutes_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    if start is None or end is None:
        return None
    elapsed = as_utc(end) - as_utc(start)
    return max(0, int(elapsed.total_seconds() // 60))


def compute(study: Study) -> TurnaroundTimes:
    return TurnaroundTimes(
        study_to_report=minutes_between(study.study_date, study.report_finalized_at),
        upload_to_report=minutes_between(study.uploaded_at, study.report_finalized_at),
        assignment_to_report=minutes_between(study.assigned_at, study.report_finalized_at),
        upload_to_assignment=minutes_between(study.uploaded_at, study.assigned_at),
        report_to_download=minutes_between(study.report_finalized_at, study.downloaded_at),
        total=minutes_between(study.uploaded_at, study.downloaded_at),
    )


def format_minutes(minutes: Optional[int]) -> str:
    if minutes is None:
        return "-"
    return f"{minutes} Min"


def deadline_for(priority: Priority, uploaded_at: Optional[datetime]) -> Optional[datetime]:
    if uploaded_at is None:
        return None
    return as_utc(uploaded_at) + timedelta(minutes=SLA_TARGET_MINUTES[priority])


def sla_deadline(study: Study) -> Optional[datetime]:
    return deadline_for(study.priority, study.uploaded_at)


def breached(
    priority: Priority,
    status: WorkflowStatus,
    uploaded_at: Optional[datetime],
    report_finalized_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> bool:
    """
    Whether a study missed (or is missing) its upload-to-report target.

    Open studies are judged against ``now``, so the answer changes with the
    clock even when the study itself does not. Read models must call this at
    query time rather than store its result.
    """
    deadline = deadline_for(priority, uploaded_at)
    if deadline is None:
        return False
    if report_finalized_at is not None:
        return as_utc(report_finalized_at) > deadline
    if status == WorkflowStatus.ARCHIVED:
        return False
    return as_utc(now or utcnow()) > deadline


def sla_breached(study: Study, now: Optional[datetime] = None) -> bool:
    return breached(study.priority, study.status, study.uploaded_at, study.report_finalized_at, now)
