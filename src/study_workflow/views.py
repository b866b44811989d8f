"""
Views for read operations - separate from command/write path.
Following Cosmic Python CQRS pattern: views query tables directly and take
no study lock, so they may briefly trail a concurrent assignment.

Turnaround times come from the study_timings read model, which is kept
up-to-date by the event handler responding to status changes.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from sqlalchemy import and_, case, func, select

from study_workflow.adapters import orm
from study_workflow.domain import tat
from study_workflow.domain.exceptions import NotFound, ValidationError
from study_workflow.domain.model import Actor, Role, Study
from study_workflow.domain.status import CATEGORY_MEMBERS, Category, Priority, WorkflowStatus, category_of
from study_workflow.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

# Date columns a TAT report can be filtered on
TAT_DATE_FIELDS = {
    "studyDate": orm.studies.c.study_date,
    "uploadDate": orm.studies.c.uploaded_at,
    "assignedDate": orm.studies.c.assigned_at,
}

ANALYTICS_PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_study(study: Study) -> Dict[str, Any]:
    """Flatten a study for API responses. Call inside the session context."""
    times = tat.compute(study)
    return {
        "study_id": study.study_id,
        "accession_number": study.accession_number,
        "patient_id": study.patient_id,
        "patient_name": study.patient_name,
        "modality": study.modality,
        "location_id": study.location_id,
        "status": study.status.value,
        "category": category_of(study.status).value,
        "priority": study.priority.value,
        "assigned_doctor_id": study.assigned_doctor_id,
        "report_available": study.report_available,
        "unauthorized_reason": study.unauthorized_reason,
        "study_date": _iso(study.study_date),
        "uploaded_at": _iso(study.uploaded_at),
        "assigned_at": _iso(study.assigned_at),
        "report_started_at": _iso(study.report_started_at),
        "report_finalized_at": _iso(study.report_finalized_at),
        "downloaded_at": _iso(study.downloaded_at),
        "archived_at": _iso(study.archived_at),
        "tat": times.as_dict(),
        "sla_breached": tat.sla_breached(study),
        "assignment_history": [
            {
                "doctor_id": record.doctor_id,
                "assigned_at": _iso(record.assigned_at),
                "assigned_by": record.assigned_by,
                "note": record.note,
                "action": record.action,
            }
            for record in study.assignment_history
        ],
        "status_history": [
            {
                "previous_status": entry.previous_status.value,
                "new_status": entry.new_status.value,
                "at": _iso(entry.at),
                "actor": entry.actor,
                "note": entry.note,
            }
            for entry in study.status_history
        ],
    }


def get_study(study_id: str, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    with uow:
        study = uow.studies.get(study_id)
        if study is None:
            raise NotFound(f"Study {study_id} not found")
        return serialize_study(study)


def export_row(study_id: str, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    """One worklist spreadsheet row, TAT columns formatted for display."""
    with uow:
        study = uow.studies.get(study_id)
        if study is None:
            raise NotFound(f"Study {study_id} not found")
        times = tat.compute(study)
        return {
            "Study ID": study.study_id,
            "Accession No.": study.accession_number or "",
            "Patient ID": study.patient_id or "",
            "Patient Name": study.patient_name or "",
            "Modality": study.modality or "",
            "Location": study.location_id or "",
            "Priority": study.priority.value,
            "Status": study.status.value,
            "Assigned Doctor": study.assigned_doctor_id or "",
            "Study Date": _iso(study.study_date) or "",
            "Uploaded": _iso(study.uploaded_at) or "",
            "Finalized": _iso(study.report_finalized_at) or "",
            "S-R TAT": tat.format_minutes(times.study_to_report),
            "U-R TAT": tat.format_minutes(times.upload_to_report),
            "A-R TAT": tat.format_minutes(times.assignment_to_report),
        }


def _scope_filter(actor: Optional[Actor]):
    if actor is None or actor.role == Role.ADMIN:
        return None
    if actor.role == Role.DOCTOR:
        return orm.studies.c.assigned_doctor_id == actor.user_id
    if actor.role == Role.LAB_STAFF:
        return orm.studies.c.location_id == actor.location_id
    return orm.studies.c.study_id.is_(None)


def get_dashboard_counts(uow: AbstractUnitOfWork, actor: Optional[Actor] = None) -> Dict[str, Any]:
    """Study counts per category, limited to what the actor may see."""
    query = select(orm.studies.c.status, func.count()).group_by(orm.studies.c.status)
    condition = _scope_filter(actor)
    if condition is not None:
        query = query.where(condition)

    with uow:
        rows = uow.session.execute(query).all()

    per_status = {WorkflowStatus(status): count for status, count in rows}
    counts = {
        category.value: sum(per_status.get(s, 0) for s in CATEGORY_MEMBERS[category])
        for category in Category
    }
    counts["total"] = sum(per_status.values())
    counts["queried_at"] = datetime.now(timezone.utc).isoformat()
    return counts


def get_tat_report(
    uow: AbstractUnitOfWork,
    location_id: Optional[str] = None,
    status: Optional[WorkflowStatus] = None,
    date_type: str = "uploadDate",
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    TAT rows for the TAT report table, newest upload first.

    The SLA flag is evaluated against ``now`` on every query; an open study
    crosses its deadline without any status change to record it.
    """
    now = now or datetime.now(timezone.utc)
    if date_type not in TAT_DATE_FIELDS:
        raise ValidationError(f"Unknown date type {date_type}")
    date_column = TAT_DATE_FIELDS[date_type]

    s, t = orm.studies.c, orm.study_timings.c
    conditions = []
    if location_id:
        conditions.append(s.location_id == location_id)
    if status:
        conditions.append(s.status == status)
    if from_date:
        conditions.append(date_column >= from_date)
    if to_date:
        conditions.append(date_column <= to_date)

    query = (
        select(
            s.study_id, s.accession_number, s.patient_name, s.modality, s.location_id,
            s.status, s.priority, s.assigned_doctor_id, s.uploaded_at, s.report_finalized_at,
            t.study_to_report_minutes, t.upload_to_report_minutes,
            t.assignment_to_report_minutes,
        )
        .select_from(orm.studies.outerjoin(orm.study_timings, s.study_id == t.study_id))
        .order_by(s.uploaded_at.desc())
    )
    if conditions:
        query = query.where(and_(*conditions))

    with uow:
        total = uow.session.execute(
            select(func.count()).select_from(query.order_by(None).subquery())
        ).scalar()
        rows = uow.session.execute(query.limit(limit).offset(offset)).all()

    def _value(v):
        return v.value if hasattr(v, "value") else v

    return {
        "total": total or 0,
        "limit": limit,
        "offset": offset,
        "rows": [
            {
                "study_id": row.study_id,
                "accession_number": row.accession_number,
                "patient_name": row.patient_name,
                "modality": row.modality,
                "location_id": row.location_id,
                "status": _value(row.status),
                "priority": _value(row.priority),
                "assigned_doctor_id": row.assigned_doctor_id,
                "study_to_report_minutes": row.study_to_report_minutes,
                "upload_to_report_minutes": row.upload_to_report_minutes,
                "assignment_to_report_minutes": row.assignment_to_report_minutes,
                "study_to_report": tat.format_minutes(row.study_to_report_minutes),
                "upload_to_report": tat.format_minutes(row.upload_to_report_minutes),
                "assignment_to_report": tat.format_minutes(row.assignment_to_report_minutes),
                "sla_breached": tat.breached(
                    Priority(_value(row.priority)),
                    WorkflowStatus(_value(row.status)),
                    row.uploaded_at,
                    row.report_finalized_at,
                    now,
                ),
            }
            for row in rows
        ],
        "queried_at": now.isoformat(),
    }


def get_tat_analytics(
    uow: AbstractUnitOfWork,
    location_id: Optional[str] = None,
    period: str = "30d",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Aggregate TAT figures for studies uploaded within ``period`` (7d, 30d or
    90d) before ``now``, optionally limited to one location.
    """
    if period not in ANALYTICS_PERIOD_DAYS:
        raise ValidationError(f"Unknown analytics period {period}")
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=ANALYTICS_PERIOD_DAYS[period])

    s, t = orm.studies.c, orm.study_timings.c
    completed = list(CATEGORY_MEMBERS[Category.COMPLETED])
    urgent = [p for p in Priority if p != Priority.ROUTINE]
    query = (
        select(
            func.count(),
            func.sum(case((s.status.in_(completed), 1), else_=0)),
            func.sum(case((s.priority.in_(urgent), 1), else_=0)),
            func.avg(t.upload_to_report_minutes),
            func.avg(t.assignment_to_report_minutes),
        )
        .select_from(orm.studies.outerjoin(orm.study_timings, s.study_id == t.study_id))
        .where(s.uploaded_at >= since, s.uploaded_at <= now)
    )
    if location_id:
        query = query.where(s.location_id == location_id)

    with uow:
        total, completed_count, urgent_count, avg_upload, avg_assignment = uow.session.execute(query).one()

    total = total or 0
    completed_count = completed_count or 0
    return {
        "location_id": location_id,
        "period": period,
        "from": since.isoformat(),
        "to": now.isoformat(),
        "total_studies": total,
        "completed_studies": completed_count,
        "completion_rate": round(100.0 * completed_count / total, 1) if total else 0.0,
        "urgent_studies": urgent_count or 0,
        "average_upload_to_report_minutes": float(avg_upload) if avg_upload is not None else None,
        "average_assignment_to_report_minutes": float(avg_assignment) if avg_assignment is not None else None,
    }


def get_doctor_workload(doctor_id: str, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    """Active and completed assignments of a doctor, with average A-R TAT."""
    s, t = orm.studies.c, orm.study_timings.c
    active = list(CATEGORY_MEMBERS[Category.IN_PROGRESS])
    completed = list(CATEGORY_MEMBERS[Category.COMPLETED])

    with uow:
        doctor = uow.doctors.get(doctor_id)
        if doctor is None:
            raise NotFound(f"Doctor {doctor_id} not found")
        session = uow.session
        active_count = session.execute(
            select(func.count()).select_from(orm.studies)
            .where(s.assigned_doctor_id == doctor_id, s.status.in_(active))
        ).scalar()
        completed_count = session.execute(
            select(func.count()).select_from(orm.studies)
            .where(s.assigned_doctor_id == doctor_id, s.status.in_(completed))
        ).scalar()
        average_minutes = session.execute(
            select(func.avg(t.assignment_to_report_minutes))
            .where(t.assigned_doctor_id == doctor_id, t.assignment_to_report_minutes.is_not(None))
        ).scalar()
        result = {
            "doctor_id": doctor.doctor_id,
            "full_name": doctor.full_name,
            "is_active": doctor.is_active,
            "is_logged_in": doctor.is_logged_in,
        }

    result.update({
        "active_assignments": active_count or 0,
        "completed_assignments": completed_count or 0,
        "average_report_minutes": float(average_minutes) if average_minutes is not None else None,
    })
    return result
