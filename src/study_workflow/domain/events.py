"""Domain events for the study workflow service."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class Event:
    """Base class for all domain events."""


@dataclass
class StudyReceived(Event):
    """Event raised when the archive reports a study we have not seen before."""
    study_id: str
    location_id: Optional[str]
    priority: str
    accession_number: Optional[str]
    at: datetime


@dataclass
class StudyStatusChanged(Event):
    """Event raised on every status transition of a study."""
    study_id: str
    previous_status: str
    new_status: str
    at: datetime
    actor_id: Optional[str]
    note: Optional[str] = None
    # routing hints for the notifier
    assigned_doctor_id: Optional[str] = None
    location_id: Optional[str] = None


@dataclass
class StudyAssigned(Event):
    """Event raised when a doctor is bound to a study (assign or reassign)."""
    study_id: str
    doctor_id: str
    previous_doctor_id: Optional[str]
    action: str  # 'assign' | 'reassign'
    assigned_by: Optional[str]
    at: datetime
    status: str
    location_id: Optional[str] = None
