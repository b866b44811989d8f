"""Role capability checks, applied once at the service boundary."""
import logging
from enum import Enum
from typing import Dict, FrozenSet

from study_workflow.domain.exceptions import Unauthorized
from study_workflow.domain.model import Actor, Role, Study

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    INGEST = "ingest"
    ASSIGN = "assign"
    TRIAGE = "triage"
    ARCHIVE = "archive"
    MARK_UNAUTHORIZED = "mark_unauthorized"
    WRITE_REPORT = "write_report"
    DOWNLOAD_REPORT = "download_report"
    SET_REPORT_AVAILABLE = "set_report_available"
    DISPATCH_REPORT = "dispatch_report"
    EXPORT = "export"
    ZIP = "zip"
    VIEW = "view"


# Ingestion and report availability belong to the archive and document store
COLLABORATOR_CAPABILITIES = frozenset({Capability.INGEST, Capability.SET_REPORT_AVAILABLE})

ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.ADMIN: frozenset(Capability) - COLLABORATOR_CAPABILITIES,
    Role.DOCTOR: frozenset({
        Capability.WRITE_REPORT,
        Capability.DOWNLOAD_REPORT,
        Capability.VIEW,
    }),
    Role.LAB_STAFF: frozenset({
        Capability.DOWNLOAD_REPORT,
        Capability.EXPORT,
        Capability.ZIP,
        Capability.VIEW,
    }),
    Role.SYSTEM: COLLABORATOR_CAPABILITIES,
}


def authorize(actor: Actor, capability: Capability) -> None:
    if capability not in ROLE_CAPABILITIES.get(actor.role, frozenset()):
        logger.warning(f"{actor.role.value} {actor.user_id} denied {capability.value}")
        raise Unauthorized(f"Role {actor.role.value} may not {capability.value}")


def authorize_study(actor: Actor, study: Study) -> None:
    """Narrow a role-level grant to the studies the actor may touch."""
    if actor.role == Role.LAB_STAFF and study.location_id != actor.location_id:
        raise Unauthorized(
            f"Study {study.study_id} does not belong to location {actor.location_id}"
        )
    if actor.role == Role.DOCTOR and study.assigned_doctor_id != actor.user_id:
        raise Unauthorized(f"Study {study.study_id} is not assigned to doctor {actor.user_id}")
