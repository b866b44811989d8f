"""
Bulk operation coordinator.

Applies one single-study operation to a list of study ids. Every item runs
on its own and yields its own ``BulkOperationResult``; nothing is rolled
back when some items fail. Only a malformed request (empty list, missing
confirmation, ...) fails the whole call, and it does so before any item
runs.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional

from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt

import config
from study_workflow.domain.exceptions import ErrorKind, ExternalCollaboratorTimeout, ValidationError, WorkflowError

logger = logging.getLogger(__name__)


class BulkOperation(str, Enum):
    ASSIGN = "assign"
    MARK_UNAUTHORIZED = "mark_unauthorized"
    DISPATCH_REPORT = "dispatch_report"
    EXPORT_ROW = "export_row"
    INCLUDE_IN_ZIP = "include_in_zip"


# Operations that need an explicit confirmation above the soft batch limit
CONFIRMATION_REQUIRED = frozenset({BulkOperation.EXPORT_ROW, BulkOperation.INCLUDE_IN_ZIP})


@dataclass
class BulkOperationResult:
    study_id: str
    success: bool
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None
    payload: Any = None


@dataclass
class BulkReport:
    operation: BulkOperation
    results: List[BulkOperationResult] = field(default_factory=list)
    archive_id: Optional[str] = None

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def cancelled(self) -> int:
        return sum(1 for r in self.results if r.error == ErrorKind.CANCELLED)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded

    def failed_ids(self) -> List[str]:
        return [r.study_id for r in self.results if not r.success]


def normalize_study_ids(study_ids: Iterable[str]) -> List[str]:
    """Deduplicate ids keeping first-seen order."""
    if study_ids is None:
        raise ValidationError("A bulk operation needs a list of study ids")
    seen = set()
    ordered = []
    for study_id in study_ids:
        if not study_id or not str(study_id).strip():
            raise ValidationError("Study ids must be non-empty")
        if study_id not in seen:
            seen.add(study_id)
            ordered.append(study_id)
    if not ordered:
        raise ValidationError("A bulk operation needs at least one study id")
    return ordered


_retry_once_on_timeout = retry(
    retry=retry_if_exception_type(ExternalCollaboratorTimeout),
    stop=stop_after_attempt(2),
    reraise=True,
    before_sleep=before_sleep_log(logger, logging.WARNING),
)


class BulkOperationCoordinator:
    def __init__(self, max_workers: Optional[int] = None, confirmation_threshold: Optional[int] = None):
        self.max_workers = max_workers or config.get_bulk_max_workers()
        self.confirmation_threshold = (
            confirmation_threshold if confirmation_threshold is not None
            else config.get_bulk_confirmation_threshold()
        )

    def validate(self, operation: BulkOperation, study_ids: Iterable[str], confirmed: bool = False) -> List[str]:
        ids = normalize_study_ids(study_ids)
        if (
            operation in CONFIRMATION_REQUIRED
            and len(ids) > self.confirmation_threshold
            and not confirmed
        ):
            raise ValidationError(
                f"{operation.value} of {len(ids)} studies exceeds {self.confirmation_threshold}; "
                f"confirmation required"
            )
        return ids

    def run(
        self,
        operation: BulkOperation,
        study_ids: List[str],
        item: Callable[[str], Any],
        cancel: Optional[threading.Event] = None,
    ) -> BulkReport:
        """
        Run ``item`` for each id on a bounded pool and collect ordered results.

        ``cancel`` is checked before each item starts; items already running
        are allowed to finish.
        """
        logger.info(f"Starting bulk {operation.value} over {len(study_ids)} studies")
        attempt = _retry_once_on_timeout(item)
        workers = max(1, min(self.max_workers, len(study_ids)))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"bulk-{operation.value}") as pool:
            futures = [
                pool.submit(self._run_item, operation, study_id, attempt, cancel)
                for study_id in study_ids
            ]
            report = BulkReport(operation=operation, results=[f.result() for f in futures])

        logger.info(
            f"Bulk {operation.value} done: {report.succeeded} succeeded, "
            f"{report.failed} failed ({report.cancelled} cancelled)"
        )
        return report

    def _run_item(self, operation, study_id, attempt, cancel) -> BulkOperationResult:
        if cancel is not None and cancel.is_set():
            return BulkOperationResult(
                study_id=study_id,
                success=False,
                error=ErrorKind.CANCELLED,
                detail="Bulk operation cancelled before this study was processed",
            )
        try:
            payload = attempt(study_id)
            return BulkOperationResult(study_id=study_id, success=True, payload=payload)
        except WorkflowError as e:
            logger.info(f"Bulk {operation.value} failed for study {study_id}: {e.kind.value}: {e}")
            return BulkOperationResult(study_id=study_id, success=False, error=e.kind, detail=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in bulk {operation.value} for study {study_id}")
            return BulkOperationResult(
                study_id=study_id, success=False, error=ErrorKind.INTERNAL_ERROR, detail=str(e)
            )
