import logging
from sqlalchemy import (
    Table,
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Text,
    event,
    inspect,
)
from sqlalchemy.orm import registry, relationship
from study_workflow.domain import model
from study_workflow.domain.status import Priority, WorkflowStatus

logger = logging.getLogger(__name__)

# SQLAlchemy 2.0 pattern: use registry
mapper_registry = registry()
metadata = mapper_registry.metadata


def _enum_column(enum_cls):
    # store the enum values ('report_finalized'), not member names
    return Enum(
        enum_cls,
        native_enum=False,
        length=40,
        values_callable=lambda members: [m.value for m in members],
    )


studies = Table(
    "studies",
    metadata,
    Column("study_id", String(255), primary_key=True),
    Column("accession_number", String(255), index=True),
    Column("patient_id", String(255)),
    Column("patient_name", String(255)),
    Column("modality", String(16)),
    Column("location_id", String(255), index=True),
    Column("study_date", DateTime(timezone=True)),
    Column("status", _enum_column(WorkflowStatus), nullable=False, index=True),
    Column("priority", _enum_column(Priority), nullable=False),
    Column("assigned_doctor_id", String(255), index=True),
    Column("uploaded_at", DateTime(timezone=True)),
    Column("assigned_at", DateTime(timezone=True)),
    Column("report_started_at", DateTime(timezone=True)),
    Column("report_finalized_at", DateTime(timezone=True)),
    Column("downloaded_at", DateTime(timezone=True)),
    Column("archived_at", DateTime(timezone=True)),
    Column("report_available", Boolean, nullable=False, default=False),
    Column("unauthorized_reason", Text),
    Column("version_number", Integer, nullable=False, default=0),
)

assignment_records = Table(
    "assignment_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("study_id", String(255), ForeignKey("studies.study_id"), nullable=False, index=True),
    Column("doctor_id", String(255), nullable=False),
    Column("assigned_at", DateTime(timezone=True), nullable=False),
    Column("assigned_by", String(255)),
    Column("note", Text),
    Column("action", String(16), nullable=False),
)

status_events = Table(
    "status_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("study_id", String(255), ForeignKey("studies.study_id"), nullable=False, index=True),
    Column("previous_status", _enum_column(WorkflowStatus), nullable=False),
    Column("new_status", _enum_column(WorkflowStatus), nullable=False),
    Column("at", DateTime(timezone=True), nullable=False),
    Column("actor", String(255)),
    Column("note", Text),
)

doctors = Table(
    "doctors",
    metadata,
    Column("doctor_id", String(255), primary_key=True),
    Column("full_name", String(255)),
    Column("specialization", String(255)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("is_logged_in", Boolean, nullable=False, default=False),
)

# Read model kept up to date by the TAT event handler; queried by views.py
study_timings = Table(
    "study_timings",
    metadata,
    Column("study_id", String(255), primary_key=True),
    Column("location_id", String(255), index=True),
    Column("assigned_doctor_id", String(255), index=True),
    Column("status", String(40)),
    Column("priority", String(16)),
    Column("study_to_report_minutes", Integer),
    Column("upload_to_report_minutes", Integer),
    Column("assignment_to_report_minutes", Integer),
    Column("upload_to_assignment_minutes", Integer),
    Column("report_to_download_minutes", Integer),
    Column("total_minutes", Integer),
    Column("updated_at", DateTime(timezone=True)),
)


def start_mappers():
    if inspect(model.Study, raiseerr=False) is not None:
        logger.debug("Mappers already started")
        return

    logger.info("Starting mappers")
    mapper_registry.map_imperatively(model.Doctor, doctors)
    assignment_mapper = mapper_registry.map_imperatively(model.AssignmentRecord, assignment_records)
    status_event_mapper = mapper_registry.map_imperatively(model.StatusEvent, status_events)
    mapper_registry.map_imperatively(
        model.Study,
        studies,
        properties={
            "assignment_history": relationship(
                assignment_mapper,
                order_by=assignment_records.c.id,
                cascade="all, delete-orphan",
            ),
            "status_history": relationship(
                status_event_mapper,
                order_by=status_events.c.id,
                cascade="all, delete-orphan",
            ),
        },
    )
    event.listen(model.Study, "load", receive_load)


def receive_load(study, _):
    study.events = []
