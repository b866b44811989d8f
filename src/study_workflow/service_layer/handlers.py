import logging
from datetime import datetime, timezone
from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError

from study_workflow.adapters import orm
from study_workflow.domain import commands, tat
from study_workflow.domain.exceptions import InvalidTransition, NotFound, ReportNotAvailable
from study_workflow.domain.model import AssignmentResult, Study
from study_workflow.domain.status import WorkflowStatus
from study_workflow.service_layer.authorization import authorize_study
from study_workflow.service_layer.locks import StudyLocks
from study_workflow.service_layer.notifier import EventNotifier
from study_workflow.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def _get_study(uow: AbstractUnitOfWork, study_id: str) -> Study:
    study = uow.studies.get(study_id)
    if study is None:
        raise NotFound(f"Study {study_id} not found")
    return study


def create_or_touch_study(
    command: commands.CreateOrTouchStudy,
    uow: AbstractUnitOfWork,
    locks: StudyLocks,
) -> bool:
    """
    Register a study the archive has stored.

    Idempotent: a repeated notification for a known study id leaves status
    and assignment untouched.

    Returns:
        True if a new workflow record was created
    """
    logger.info(f"Processing CreateOrTouchStudy command for study {command.study_id}")

    with locks.exclusive(command.study_id):
        with uow:
            if uow.studies.get(command.study_id) is not None:
                logger.info(f"Study {command.study_id} already stored, nothing to do")
                return False

            study = Study.receive(
                study_id=command.study_id,
                priority=command.priority,
                uploaded_at=command.uploaded_at,
                accession_number=command.accession_number,
                patient_id=command.patient_id,
                patient_name=command.patient_name,
                modality=command.modality,
                location_id=command.location_id,
                study_date=command.study_date,
            )
            uow.studies.add(study)
            try:
                uow.commit()
            except IntegrityError:
                # another replica stored the same study first
                logger.info(f"Study {command.study_id} was stored concurrently, nothing to do")
                study.events.clear()
                return False

    logger.info(f"Created workflow record for study {command.study_id}")
    return True


def assign_study(
    command: commands.AssignStudy,
    uow: AbstractUnitOfWork,
    locks: StudyLocks,
) -> AssignmentResult:
    """
    Assign (or reassign) a study to a doctor.

    Overlapping requests for the same study are serialized; each of them
    reports the doctor the study ended up with once all have committed.
    """
    logger.info(f"Processing AssignStudy command: study {command.study_id} -> doctor {command.doctor_id}")

    with locks.exclusive(command.study_id, settle=True) as slot:
        with uow:
            study = _get_study(uow, command.study_id)
            doctor = uow.doctors.get(command.doctor_id)
            if doctor is None:
                raise NotFound(f"Doctor {command.doctor_id} not found")

            action = study.assign(
                doctor,
                command.actor,
                note=command.note,
                priority_override=command.priority_override,
            )
            uow.commit()
            slot.outcome = (study.assigned_doctor_id, study.status)
            logger.info(f"Committed {action} of study {command.study_id} to doctor {command.doctor_id}")

    final_doctor_id, final_status = slot.outcome
    if final_doctor_id != command.doctor_id:
        logger.info(
            f"Study {command.study_id} settled on doctor {final_doctor_id} "
            f"(requested {command.doctor_id})"
        )
    return AssignmentResult(
        study_id=command.study_id,
        doctor_id=final_doctor_id,
        requested_doctor_id=command.doctor_id,
        status=final_status,
        action=action,
    )


def start_report(command: commands.StartReport, uow: AbstractUnitOfWork, locks: StudyLocks) -> WorkflowStatus:
    with locks.exclusive(command.study_id):
        with uow:
            study = _get_study(uow, command.study_id)
            study.start_report(command.doctor_id, command.actor)
            uow.commit()
            return study.status


def finalize_report(command: commands.FinalizeReport, uow: AbstractUnitOfWork, locks: StudyLocks) -> WorkflowStatus:
    with locks.exclusive(command.study_id):
        with uow:
            study = _get_study(uow, command.study_id)
            study.finalize(command.doctor_id, command.actor)
            uow.commit()
            logger.info(f"Report for study {command.study_id} finalized by doctor {command.doctor_id}")
            return study.status


def record_download(command: commands.RecordDownload, uow: AbstractUnitOfWork, locks: StudyLocks) -> WorkflowStatus:
    with locks.exclusive(command.study_id):
        with uow:
            study = _get_study(uow, command.study_id)
            authorize_study(command.actor, study)
            new_status = study.record_download(command.actor, final=command.final)
            uow.commit()
            return new_status


def queue_for_assignment(
    command: commands.QueueForAssignment, uow: AbstractUnitOfWork, locks: StudyLocks
) -> WorkflowStatus:
    with locks.exclusive(command.study_id):
        with uow:
            study = _get_study(uow, command.study_id)
            study.queue_for_assignment(command.actor)
            uow.commit()
            return study.status


def archive_study(command: commands.ArchiveStudy, uow: AbstractUnitOfWork, locks: StudyLocks) -> WorkflowStatus:
    with locks.exclusive(command.study_id):
        with uow:
            study = _get_study(uow, command.study_id)
            study.archive(command.actor, note=command.note)
            uow.commit()
            return study.status


def mark_unauthorized(
    command: commands.MarkUnauthorized, uow: AbstractUnitOfWork, locks: StudyLocks
) -> WorkflowStatus:
    logger.info(f"Marking study {command.study_id} unauthorized: {command.reason}")
    with locks.exclusive(command.study_id):
        with uow:
            study = _get_study(uow, command.study_id)
            study.mark_unauthorized(command.actor, command.reason)
            uow.commit()
            return study.status


def set_report_available(
    command: commands.SetReportAvailable, uow: AbstractUnitOfWork, locks: StudyLocks
) -> bool:
    with locks.exclusive(command.study_id):
        with uow:
            study = _get_study(uow, command.study_id)
            study.set_report_available(command.available)
            uow.commit()
            return study.report_available


def dispatch_report(command: commands.DispatchReport, uow: AbstractUnitOfWork) -> dict:
    """
    Send a study's report to its lab through the document store.

    Studies without an available report are rejected before the store is
    called, so no half-formed notification ever goes out.
    """
    with uow:
        study = _get_study(uow, command.study_id)
        if not study.report_available:
            raise ReportNotAvailable(f"Study {command.study_id} has no report to dispatch")
        if study.unauthorized_reason is not None:
            raise InvalidTransition(f"Study {command.study_id} was marked unauthorized")

    receipt = uow.document_store.dispatch_report(command.study_id)
    logger.info(f"Dispatched report for study {command.study_id}")
    return receipt


def include_in_zip(command: commands.IncludeInZip, uow: AbstractUnitOfWork) -> dict:
    with uow:
        study = _get_study(uow, command.study_id)
        authorize_study(command.actor, study)

    return uow.document_store.add_to_zip(command.archive_id, command.study_id)


def update_timing_read_model(event, uow: AbstractUnitOfWork, locks: StudyLocks):
    """
    Recompute the turnaround times of a study into the study_timings read model.

    Following Cosmic Python pattern: event handler writes a denormalized
    row; aggregations are done in views.py.
    """
    logger.debug(f"Updating timing read model for study {event.study_id}")

    with locks.exclusive(event.study_id), uow:
        study = uow.studies.get(event.study_id)
        if study is None:
            logger.warning(f"Study {event.study_id} vanished before its timings were computed")
            return
        times = tat.compute(study)
        uow.session.execute(delete(orm.study_timings).where(orm.study_timings.c.study_id == study.study_id))
        uow.session.execute(
            insert(orm.study_timings).values(
                study_id=study.study_id,
                location_id=study.location_id,
                assigned_doctor_id=study.assigned_doctor_id,
                status=study.status.value,
                priority=study.priority.value,
                study_to_report_minutes=times.study_to_report,
                upload_to_report_minutes=times.upload_to_report,
                assignment_to_report_minutes=times.assignment_to_report,
                upload_to_assignment_minutes=times.upload_to_assignment,
                report_to_download_minutes=times.report_to_download,
                total_minutes=times.total,
                updated_at=datetime.now(timezone.utc),
            )
        )
        uow.commit()


def publish_event(event, uow: AbstractUnitOfWork, notifier: EventNotifier):
    """Hand a domain event to the notifier. Delivery failures never break the flow."""
    notifier.publish(event)
