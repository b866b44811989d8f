"""
Integration tests for views - following Cosmic Python pattern.

Tests verify that:
1. Status changes keep the study_timings read model up to date
2. Dashboard counts are scoped to what the actor may see
3. TAT report and doctor workload query the read model correctly
"""
import pytest
from sqlalchemy import select

from conftest import ADMIN, LAB_A, LAB_B, T0, doctor_actor, minutes
from study_workflow.adapters import orm
from study_workflow.domain.exceptions import NotFound, Unauthorized, ValidationError
from study_workflow.domain.model import Actor, Role
from study_workflow.domain.status import WorkflowStatus


@pytest.fixture
def worklist(service, ingest, doctors):
    """Five studies across two labs in different workflow stages."""
    ingest("S1", location_id="loc-a")
    ingest("S2", location_id="loc-a", priority="STAT")
    ingest("S3", location_id="loc-b")
    ingest("S4", location_id="loc-b")
    ingest("S5", location_id="loc-a")

    service.assign("S2", "doc-1", ADMIN)
    service.assign("S3", "doc-1", ADMIN)
    service.start_report("S3", "doc-1", doctor_actor("doc-1"))
    service.finalize("S3", "doc-1", doctor_actor("doc-1"))
    service.assign("S4", "doc-2", ADMIN)
    service.archive("S5", ADMIN)
    return service


def timing_row(uow_factory, study_id):
    uow = uow_factory()
    with uow:
        return uow.session.execute(
            select(orm.study_timings).where(orm.study_timings.c.study_id == study_id)
        ).first()


def test_timing_read_model_follows_status_changes(worklist, uow_factory):
    unreported = timing_row(uow_factory, "S2")
    reported = timing_row(uow_factory, "S3")

    assert unreported.status == "assigned_to_doctor"
    assert unreported.upload_to_report_minutes is None
    assert reported.status == "report_finalized"
    assert reported.assigned_doctor_id == "doc-1"
    assert reported.upload_to_report_minutes is not None
    assert reported.assignment_to_report_minutes is not None


def test_dashboard_counts_for_admin(worklist):
    counts = worklist.dashboard_counts(ADMIN)

    assert counts["pending"] == 1
    assert counts["inprogress"] == 2
    assert counts["completed"] == 1
    assert counts["archived"] == 1
    assert counts["total"] == 5
    assert "queried_at" in counts


def test_dashboard_counts_for_lab_and_doctor(worklist):
    lab_counts = worklist.dashboard_counts(LAB_A)
    doctor_counts = worklist.dashboard_counts(doctor_actor("doc-1"))

    assert lab_counts["total"] == 3
    assert lab_counts["pending"] == 1
    assert lab_counts["archived"] == 1
    assert doctor_counts["total"] == 2
    assert doctor_counts["inprogress"] == 1
    assert doctor_counts["completed"] == 1


def test_tat_report_filters(worklist):
    everything = worklist.tat_report(ADMIN)
    finalized = worklist.tat_report(ADMIN, status=WorkflowStatus.REPORT_FINALIZED)
    lab_b = worklist.tat_report(LAB_B)

    assert everything["total"] == 5
    assert [row["study_id"] for row in finalized["rows"]] == ["S3"]
    assert finalized["rows"][0]["upload_to_report"].endswith(" Min")
    assert {row["study_id"] for row in lab_b["rows"]} == {"S3", "S4"}


def test_tat_report_pagination(worklist):
    page = worklist.tat_report(ADMIN, limit=2, offset=0)

    assert page["total"] == 5
    assert len(page["rows"]) == 2


def test_tat_report_rejects_unknown_date_type(worklist):
    with pytest.raises(ValidationError):
        worklist.tat_report(ADMIN, date_type="billedDate")


def test_tat_report_is_not_for_doctors(worklist):
    with pytest.raises(Unauthorized):
        worklist.tat_report(doctor_actor("doc-1"))


def test_doctor_workload(worklist):
    workload = worklist.doctor_workload("doc-1", ADMIN)

    assert workload["active_assignments"] == 1
    assert workload["completed_assignments"] == 1
    assert workload["average_report_minutes"] is not None
    assert worklist.doctor_workload("doc-2", doctor_actor("doc-2"))["active_assignments"] == 1


def test_doctor_workload_access(worklist):
    with pytest.raises(Unauthorized):
        worklist.doctor_workload("doc-1", doctor_actor("doc-2"))
    with pytest.raises(NotFound):
        worklist.doctor_workload("doc-unknown", ADMIN)


def test_study_view_is_scoped(worklist):
    assert worklist.get_study("S1", LAB_A)["location_id"] == "loc-a"
    assert worklist.get_study("S3", doctor_actor("doc-1"))["status"] == "report_finalized"

    with pytest.raises(Unauthorized):
        worklist.get_study("S1", LAB_B)
    with pytest.raises(Unauthorized):
        worklist.get_study("S4", doctor_actor("doc-1"))
    with pytest.raises(NotFound):
        worklist.get_study("S404", ADMIN)


def test_system_actor_has_no_dashboard(worklist):
    with pytest.raises(Unauthorized):
        worklist.dashboard_counts(Actor(user_id="robot", role=Role.SYSTEM))


def test_tat_report_flags_sla_breach_as_time_passes(service, ingest, doctors):
    ingest("S1", priority="EMERGENCY")

    before = service.tat_report(ADMIN, now=T0 + minutes(29))
    after = service.tat_report(ADMIN, now=T0 + minutes(34))

    assert before["rows"][0]["sla_breached"] is False
    assert after["rows"][0]["sla_breached"] is True
    assert service.get_study("S1", ADMIN)["sla_breached"] is True


def test_tat_analytics(worklist):
    analytics = worklist.tat_analytics(ADMIN, period="7d", now=T0 + minutes(60))

    assert analytics["total_studies"] == 5
    assert analytics["completed_studies"] == 1
    assert analytics["completion_rate"] == 20.0
    assert analytics["urgent_studies"] == 1
    assert analytics["average_upload_to_report_minutes"] is not None
    assert analytics["average_assignment_to_report_minutes"] is not None


def test_tat_analytics_is_scoped_to_lab_and_period(worklist):
    lab_b = worklist.tat_analytics(LAB_B, location_id="loc-a", now=T0 + minutes(60))
    later = worklist.tat_analytics(ADMIN, period="7d", now=T0 + minutes(60 * 24 * 8))

    assert lab_b["location_id"] == "loc-b"
    assert lab_b["total_studies"] == 2
    assert later["total_studies"] == 0
    assert later["completion_rate"] == 0.0
    assert later["average_upload_to_report_minutes"] is None
    with pytest.raises(ValidationError):
        worklist.tat_analytics(ADMIN, period="1y")
    with pytest.raises(Unauthorized):
        worklist.tat_analytics(doctor_actor("doc-1"))
