"""
Per-study mutual exclusion for the write path.

Every command that mutates a study's status or assignee runs inside
``StudyLocks.exclusive(study_id)``. Locks are keyed by study id and created
on demand, so work on different studies never contends; a slot is dropped
again once nobody holds or waits for it.

Assignments additionally *settle*: when several assignment requests for the
same study overlap, each of them waits until the last one has committed and
then reports that final doctor. Callers never see a doctor that was already
overwritten by a concurrent request.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Optional

import config

logger = logging.getLogger(__name__)


class StudySlot:
    """Lock state of one study."""

    def __init__(self):
        self.mutex = threading.Lock()
        self.settled = threading.Condition()
        self.users = 0       # threads holding or waiting for this slot
        self.in_flight = 0   # settling writers not yet committed
        self.outcome: Any = None


class StudyLocks:
    def __init__(self, settle_timeout: Optional[float] = None):
        self.settle_timeout = (
            settle_timeout if settle_timeout is not None
            else config.get_assignment_settle_timeout_seconds()
        )
        self._registry_guard = threading.Lock()
        self._slots: Dict[str, StudySlot] = {}

    def _checkout(self, study_id: str) -> StudySlot:
        with self._registry_guard:
            slot = self._slots.get(study_id)
            if slot is None:
                slot = self._slots[study_id] = StudySlot()
            slot.users += 1
            return slot

    def _checkin(self, study_id: str, slot: StudySlot):
        with self._registry_guard:
            slot.users -= 1
            if slot.users == 0:
                self._slots.pop(study_id, None)

    @contextmanager
    def exclusive(self, study_id: str, settle: bool = False):
        """
        Hold the write lock of one study.

        With ``settle=True`` the context only exits once no other settling
        writer for the same study is still pending, and ``slot.outcome`` then
        holds whatever the last committed writer stored there.
        """
        slot = self._checkout(study_id)
        try:
            if settle:
                with slot.settled:
                    slot.in_flight += 1
            try:
                with slot.mutex:
                    yield slot
            finally:
                if settle:
                    with slot.settled:
                        slot.in_flight -= 1
                        slot.settled.notify_all()
            if settle:
                with slot.settled:
                    if not slot.settled.wait_for(lambda: slot.in_flight == 0, self.settle_timeout):
                        logger.warning(
                            f"Study {study_id} still has pending assignments after "
                            f"{self.settle_timeout}s, reporting latest committed outcome"
                        )
        finally:
            self._checkin(study_id, slot)

    def active_slots(self) -> int:
        with self._registry_guard:
            return len(self._slots)
