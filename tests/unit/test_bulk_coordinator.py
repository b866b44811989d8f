"""Unit tests for the bulk operation coordinator."""
import threading
import time

import pytest

from study_workflow.domain.exceptions import (
    ErrorKind,
    ExternalCollaboratorTimeout,
    NotFound,
    ValidationError,
)
from study_workflow.service_layer.bulk import (
    BulkOperation,
    BulkOperationCoordinator,
    normalize_study_ids,
)


@pytest.fixture
def coordinator():
    return BulkOperationCoordinator(max_workers=4, confirmation_threshold=3)


def test_normalize_keeps_first_seen_order():
    assert normalize_study_ids(["S2", "S1", "S2", "S3", "S1"]) == ["S2", "S1", "S3"]


@pytest.mark.parametrize("ids", [None, [], ["S1", ""], ["  "]])
def test_normalize_rejects_malformed_lists(ids):
    with pytest.raises(ValidationError):
        normalize_study_ids(ids)


def test_confirmation_required_above_threshold_for_exports(coordinator):
    ids = ["S1", "S2", "S3", "S4"]

    with pytest.raises(ValidationError):
        coordinator.validate(BulkOperation.EXPORT_ROW, ids)
    with pytest.raises(ValidationError):
        coordinator.validate(BulkOperation.INCLUDE_IN_ZIP, ids)

    assert coordinator.validate(BulkOperation.EXPORT_ROW, ids, confirmed=True) == ids
    assert coordinator.validate(BulkOperation.ASSIGN, ids) == ids


def test_results_keep_input_order_and_isolate_failures(coordinator):
    def item(study_id):
        if study_id == "S2":
            raise NotFound("Study S2 not found")
        time.sleep(0.01 if study_id == "S1" else 0)
        return study_id.lower()

    report = coordinator.run(BulkOperation.ASSIGN, ["S1", "S2", "S3"], item)

    assert [r.study_id for r in report.results] == ["S1", "S2", "S3"]
    assert [r.success for r in report.results] == [True, False, True]
    assert report.results[0].payload == "s1"
    assert report.results[1].error == ErrorKind.NOT_FOUND
    assert report.succeeded == 2
    assert report.failed_ids() == ["S2"]


def test_unexpected_errors_become_internal_errors(coordinator):
    def item(study_id):
        raise RuntimeError("boom")

    report = coordinator.run(BulkOperation.DISPATCH_REPORT, ["S1"], item)

    assert report.results[0].error == ErrorKind.INTERNAL_ERROR
    assert report.results[0].detail == "boom"


def test_timeout_is_retried_once(coordinator):
    calls = []

    def item(study_id):
        calls.append(study_id)
        if len(calls) == 1:
            raise ExternalCollaboratorTimeout("slow")
        return "ok"

    report = coordinator.run(BulkOperation.DISPATCH_REPORT, ["S1"], item)

    assert report.results[0].success
    assert calls == ["S1", "S1"]


def test_second_timeout_is_reported(coordinator):
    def item(study_id):
        raise ExternalCollaboratorTimeout("slow")

    report = coordinator.run(BulkOperation.DISPATCH_REPORT, ["S1"], item)

    assert report.results[0].error == ErrorKind.EXTERNAL_COLLABORATOR_TIMEOUT


def test_cancel_marks_unstarted_items_cancelled():
    coordinator = BulkOperationCoordinator(max_workers=1, confirmation_threshold=20)
    cancel = threading.Event()
    processed = []

    def item(study_id):
        processed.append(study_id)
        if study_id == "S2":
            cancel.set()
        return study_id

    report = coordinator.run(BulkOperation.MARK_UNAUTHORIZED, ["S1", "S2", "S3", "S4"], item, cancel)

    assert processed == ["S1", "S2"]
    assert [r.success for r in report.results] == [True, True, False, False]
    assert report.cancelled == 2
    assert report.results[3].error == ErrorKind.CANCELLED


def test_work_is_spread_over_workers(coordinator):
    active = []
    peak = []
    guard = threading.Lock()

    def item(study_id):
        with guard:
            active.append(study_id)
            peak.append(len(active))
        time.sleep(0.05)
        with guard:
            active.remove(study_id)
        return study_id

    coordinator.run(BulkOperation.ASSIGN, ["S1", "S2", "S3", "S4", "S5", "S6"], item)

    assert 1 < max(peak) <= 4
