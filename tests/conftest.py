# pylint: disable=redefined-outer-name
import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import clear_mappers, sessionmaker

from study_workflow import bootstrap
from study_workflow.adapters import orm
from study_workflow.adapters.document_store import AbstractDocumentStore
from study_workflow.domain.exceptions import ExternalCollaboratorTimeout
from study_workflow.domain.model import Actor, Doctor, Role
from study_workflow.service_layer.bulk import BulkOperationCoordinator
from study_workflow.service_layer.locks import StudyLocks
from study_workflow.service_layer.notifier import AbstractTransport, EventNotifier
from study_workflow.service_layer.unit_of_work import SqlAlchemyUnitOfWork

ADMIN = Actor(user_id="admin-1", role=Role.ADMIN)
INGESTION = Actor(user_id="pacs-ingestion", role=Role.SYSTEM)
LAB_A = Actor(user_id="lab-user-a", role=Role.LAB_STAFF, location_id="loc-a")
LAB_B = Actor(user_id="lab-user-b", role=Role.LAB_STAFF, location_id="loc-b")

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def doctor_actor(doctor_id):
    return Actor(user_id=doctor_id, role=Role.DOCTOR)


def minutes(n):
    return timedelta(minutes=n)


class FakeDocumentStore(AbstractDocumentStore):
    """Records calls; can time out a given number of times per study."""

    def __init__(self, timeouts=None):
        self.timeouts = dict(timeouts or {})
        self.dispatched = []
        self.zipped = []
        self._lock = threading.Lock()

    def _maybe_time_out(self, study_id):
        with self._lock:
            remaining = self.timeouts.get(study_id, 0)
            if remaining:
                self.timeouts[study_id] = remaining - 1
                raise ExternalCollaboratorTimeout(f"document store timed out for {study_id}")

    def dispatch_report(self, study_id):
        self._maybe_time_out(study_id)
        with self._lock:
            self.dispatched.append(study_id)
        return {"study_id": study_id, "dispatched": True}

    def add_to_zip(self, archive_id, study_id):
        self._maybe_time_out(study_id)
        with self._lock:
            self.zipped.append((archive_id, study_id))
        return {"archive_id": archive_id, "study_id": study_id}


class FakeTransport(AbstractTransport):
    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def send(self, scope, event):
        with self._lock:
            self.sent.append((scope, event))

    def scopes_for_type(self, event_type):
        return [scope for scope, event in self.sent if isinstance(event, event_type)]


@pytest.fixture
def sqlite_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'workflow.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    orm.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def mappers():
    orm.start_mappers()
    yield
    clear_mappers()


@pytest.fixture
def document_store():
    return FakeDocumentStore()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def uow_factory(sqlite_session_factory, document_store):
    return lambda: SqlAlchemyUnitOfWork(sqlite_session_factory, document_store_impl=document_store)


@pytest.fixture
def service(mappers, uow_factory, transport):
    return bootstrap.bootstrap(
        start_orm=False,
        uow_factory=uow_factory,
        notifier=EventNotifier(transport),
        locks=StudyLocks(settle_timeout=5),
        coordinator=BulkOperationCoordinator(max_workers=4, confirmation_threshold=20),
    )


@pytest.fixture
def doctors(mappers, uow_factory):
    """Seed the doctor directory."""
    uow = uow_factory()
    with uow:
        uow.doctors.add(Doctor(doctor_id="doc-1", full_name="Dr. One"))
        uow.doctors.add(Doctor(doctor_id="doc-2", full_name="Dr. Two"))
        uow.doctors.add(Doctor(doctor_id="doc-3", full_name="Dr. Three"))
        uow.doctors.add(Doctor(doctor_id="doc-retired", full_name="Dr. Gone", is_active=False))
        uow.commit()
    return ["doc-1", "doc-2", "doc-3"]


@pytest.fixture
def ingest(service):
    """Register a study the way the archive notification does."""

    def _ingest(study_id, location_id="loc-a", priority="ROUTINE", uploaded_at=T0, study_date=None):
        return service.create_or_touch_study(
            study_id,
            {
                "accession_number": f"ACC-{study_id}",
                "patient_id": f"PAT-{study_id}",
                "patient_name": "Doe^Jane",
                "modality": "CT",
                "location_id": location_id,
                "study_date": study_date or uploaded_at - minutes(30),
                "priority": priority,
                "uploaded_at": uploaded_at,
            },
            INGESTION,
        )

    return _ingest
