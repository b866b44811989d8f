"""Commands for the study workflow service."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from study_workflow.domain.model import Actor


@dataclass
class Command:
    """Base class for all commands."""


@dataclass
class CreateOrTouchStudy(Command):
    """Command sent by the ingestion boundary whenever the archive stores a study."""
    study_id: str
    actor: Actor
    accession_number: Optional[str] = None
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    modality: Optional[str] = None
    location_id: Optional[str] = None
    study_date: Optional[datetime] = None  # acquisition date/time from the archive
    priority: Optional[str] = None
    uploaded_at: Optional[datetime] = None


@dataclass
class AssignStudy(Command):
    study_id: str
    doctor_id: str
    actor: Actor
    note: Optional[str] = None
    priority_override: Optional[str] = None


@dataclass
class StartReport(Command):
    study_id: str
    doctor_id: str
    actor: Actor


@dataclass
class FinalizeReport(Command):
    study_id: str
    doctor_id: str
    actor: Actor


@dataclass
class RecordDownload(Command):
    study_id: str
    actor: Actor
    final: bool = False


@dataclass
class QueueForAssignment(Command):
    study_id: str
    actor: Actor


@dataclass
class ArchiveStudy(Command):
    study_id: str
    actor: Actor
    note: Optional[str] = None


@dataclass
class MarkUnauthorized(Command):
    study_id: str
    actor: Actor
    reason: str


@dataclass
class SetReportAvailable(Command):
    """Command sent by the document store when a report upload lands or is withdrawn."""
    study_id: str
    actor: Actor
    available: bool = True


@dataclass
class DispatchReport(Command):
    study_id: str
    actor: Actor


@dataclass
class IncludeInZip(Command):
    study_id: str
    archive_id: str
    actor: Actor
