"""Unit tests for the workflow status model: ranks, categories and legal transitions."""
import pytest

from study_workflow.domain import status
from study_workflow.domain.exceptions import InvalidTransition, ValidationError
from study_workflow.domain.status import Category, Priority, WorkflowStatus


def test_every_status_has_exactly_one_category():
    for s in WorkflowStatus:
        owners = [c for c, members in status.CATEGORY_MEMBERS.items() if s in members]
        assert len(owners) == 1, s


def test_download_branches_share_a_rank():
    assert status.rank(WorkflowStatus.REPORT_DOWNLOADED) == status.rank(
        WorkflowStatus.REPORT_DOWNLOADED_RADIOLOGIST
    )
    assert status.rank(WorkflowStatus.FINAL_REPORT_DOWNLOADED) > status.rank(WorkflowStatus.REPORT_DOWNLOADED)


def test_categories():
    assert status.category_of(WorkflowStatus.NEW_STUDY_RECEIVED) == Category.PENDING
    assert status.category_of(WorkflowStatus.PENDING_ASSIGNMENT) == Category.PENDING
    assert status.category_of(WorkflowStatus.ASSIGNED_TO_DOCTOR) == Category.IN_PROGRESS
    assert status.category_of(WorkflowStatus.REPORT_IN_PROGRESS) == Category.IN_PROGRESS
    assert status.category_of(WorkflowStatus.REPORT_DOWNLOADED_RADIOLOGIST) == Category.COMPLETED
    assert status.category_of(WorkflowStatus.ARCHIVED) == Category.ARCHIVED


@pytest.mark.parametrize("current,target", [
    (WorkflowStatus.NEW_STUDY_RECEIVED, WorkflowStatus.ASSIGNED_TO_DOCTOR),
    (WorkflowStatus.NEW_STUDY_RECEIVED, WorkflowStatus.REPORT_FINALIZED),
    (WorkflowStatus.ASSIGNED_TO_DOCTOR, WorkflowStatus.ASSIGNED_TO_DOCTOR),
    (WorkflowStatus.REPORT_IN_PROGRESS, WorkflowStatus.REPORT_IN_PROGRESS),
    (WorkflowStatus.REPORT_DOWNLOADED, WorkflowStatus.REPORT_DOWNLOADED_RADIOLOGIST),
    (WorkflowStatus.REPORT_FINALIZED, WorkflowStatus.ARCHIVED),
    (WorkflowStatus.NEW_STUDY_RECEIVED, WorkflowStatus.ARCHIVED),
])
def test_legal_transitions(current, target):
    assert status.can_transition(current, target)


@pytest.mark.parametrize("current,target", [
    (WorkflowStatus.REPORT_FINALIZED, WorkflowStatus.REPORT_IN_PROGRESS),
    (WorkflowStatus.ASSIGNED_TO_DOCTOR, WorkflowStatus.PENDING_ASSIGNMENT),
    (WorkflowStatus.FINAL_REPORT_DOWNLOADED, WorkflowStatus.REPORT_DOWNLOADED),
    (WorkflowStatus.ARCHIVED, WorkflowStatus.NEW_STUDY_RECEIVED),
    (WorkflowStatus.ARCHIVED, WorkflowStatus.REPORT_FINALIZED),
])
def test_rank_never_decreases(current, target):
    assert not status.can_transition(current, target)
    with pytest.raises(InvalidTransition):
        status.ensure_transition(current, target)


def test_archived_is_terminal():
    assert status.is_terminal(WorkflowStatus.ARCHIVED)
    assert not status.is_terminal(WorkflowStatus.FINAL_REPORT_DOWNLOADED)


def test_legacy_status_names_resolve_to_canonical_statuses():
    assert status.parse_status("report_drafted") == WorkflowStatus.REPORT_IN_PROGRESS
    assert status.parse_status("COMPLETED") == WorkflowStatus.REPORT_FINALIZED
    assert status.parse_status("assigned_to_doctor") == WorkflowStatus.ASSIGNED_TO_DOCTOR


def test_unknown_status_is_a_validation_error():
    with pytest.raises(ValidationError):
        status.parse_status("half_done")


def test_priority_parsing():
    assert status.parse_priority(None) == Priority.ROUTINE
    assert status.parse_priority("stat") == Priority.STAT
    assert status.parse_priority(Priority.EMERGENCY) == Priority.EMERGENCY
    with pytest.raises(ValidationError):
        status.parse_priority("whenever")
