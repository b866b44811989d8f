# pylint: disable=broad-except
"""Message bus for the study workflow service following Cosmic Python pattern."""

from __future__ import annotations
import logging
from typing import Callable, Dict, List, Type, Union, TYPE_CHECKING

from study_workflow.domain.commands import Command
from study_workflow.domain.events import Event
from study_workflow.domain import commands, events
from study_workflow.domain.exceptions import WorkflowError
from study_workflow.service_layer import handlers

if TYPE_CHECKING:
    from study_workflow.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

Message = Union[Command, Event]


class MessageBus:
    """Routes one command (and the events it raises) to handlers."""

    def __init__(
        self,
        uow: AbstractUnitOfWork,
        event_handlers: Dict[Type[Event], List[Callable]],
        command_handlers: Dict[Type[Command], Callable],
    ):
        self.uow = uow
        self.event_handlers = event_handlers
        self.command_handlers = command_handlers

    def handle(self, message: Message):
        """Handle message (command or event) with the appropriate handler."""
        results = []
        self.queue = [message]

        while self.queue:
            message = self.queue.pop(0)

            if isinstance(message, Event):
                self.handle_event(message)
            elif isinstance(message, Command):
                cmd_result = self.handle_command(message)
                results.append(cmd_result)
            else:
                raise Exception(f"{message} was not an Event or Command")

        return results

    def handle_event(self, event: Event):
        """Handle event by calling all registered event handlers."""
        for handler in self.event_handlers.get(type(event), []):
            try:
                logger.debug(f"handling event {event} with handler {handler}")
                handler(event, uow=self.uow)
                self.queue.extend(self.uow.collect_new_events())
            except Exception:
                logger.exception("Exception handling event %s", event)
                continue

    def handle_command(self, command: Command):
        """Handle command by calling the registered command handler."""
        logger.debug(f"handling command {command}")
        try:
            handler = self.command_handlers[type(command)]
        except KeyError:
            raise ValueError(f"No handler registered for command {type(command).__name__}") from None

        try:
            result = handler(command, uow=self.uow)
            self.queue.extend(self.uow.collect_new_events())
            return result
        except WorkflowError as e:
            logger.warning(f"{type(command).__name__} rejected: {e.kind.value}: {e}")
            raise
        except Exception:
            logger.exception("Exception handling command %s", command)
            raise


# Event handlers - multiple handlers can respond to same event
EVENT_HANDLERS = {
    events.StudyReceived: [
        handlers.update_timing_read_model,
        handlers.publish_event,
    ],
    events.StudyStatusChanged: [
        handlers.update_timing_read_model,
        handlers.publish_event,
    ],
    events.StudyAssigned: [
        handlers.publish_event,
    ],
}  # type: Dict[Type[Event], List[Callable]]

# Command handlers - single handler per command type
COMMAND_HANDLERS = {
    commands.CreateOrTouchStudy: handlers.create_or_touch_study,
    commands.AssignStudy: handlers.assign_study,
    commands.StartReport: handlers.start_report,
    commands.FinalizeReport: handlers.finalize_report,
    commands.RecordDownload: handlers.record_download,
    commands.QueueForAssignment: handlers.queue_for_assignment,
    commands.ArchiveStudy: handlers.archive_study,
    commands.MarkUnauthorized: handlers.mark_unauthorized,
    commands.SetReportAvailable: handlers.set_report_available,
    commands.DispatchReport: handlers.dispatch_report,
    commands.IncludeInZip: handlers.include_in_zip,
}  # type: Dict[Type[Command], Callable]