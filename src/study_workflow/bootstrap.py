"""
Wire the workflow service together.

Handlers declare what they need (``locks``, ``notifier``) as parameters;
bootstrap binds those with functools.partial so the message bus only ever
passes the message and the unit of work.
"""
import inspect
import logging
from functools import partial
from typing import Callable, Optional

from study_workflow.adapters import orm
from study_workflow.adapters.redis_adapter import RedisTransport
from study_workflow.service_layer import messagebus
from study_workflow.service_layer.bulk import BulkOperationCoordinator
from study_workflow.service_layer.locks import StudyLocks
from study_workflow.service_layer.notifier import AbstractTransport, EventNotifier
from study_workflow.service_layer.unit_of_work import AbstractUnitOfWork, SqlAlchemyUnitOfWork
from study_workflow.service_layer.workflow_service import WorkflowService

logger = logging.getLogger(__name__)


def bootstrap(
    start_orm: bool = True,
    uow_factory: Optional[Callable[[], AbstractUnitOfWork]] = None,
    transport: Optional[AbstractTransport] = None,
    notifier: Optional[EventNotifier] = None,
    locks: Optional[StudyLocks] = None,
    coordinator: Optional[BulkOperationCoordinator] = None,
) -> WorkflowService:
    if start_orm:
        orm.start_mappers()

    if uow_factory is None:
        uow_factory = SqlAlchemyUnitOfWork
    if notifier is None:
        notifier = EventNotifier(transport or RedisTransport())

    dependencies = {
        "locks": locks or StudyLocks(),
        "notifier": notifier,
    }
    injected_event_handlers = {
        event_type: [inject_dependencies(handler, dependencies) for handler in handlers]
        for event_type, handlers in messagebus.EVENT_HANDLERS.items()
    }
    injected_command_handlers = {
        command_type: inject_dependencies(handler, dependencies)
        for command_type, handler in messagebus.COMMAND_HANDLERS.items()
    }
    logger.info(
        f"Workflow service ready: {len(injected_command_handlers)} command handlers, "
        f"{sum(len(h) for h in injected_event_handlers.values())} event handlers"
    )

    return WorkflowService(
        uow_factory=uow_factory,
        command_handlers=injected_command_handlers,
        event_handlers=injected_event_handlers,
        notifier=notifier,
        coordinator=coordinator or BulkOperationCoordinator(),
    )


def inject_dependencies(handler, dependencies):
    params = inspect.signature(handler).parameters
    deps = {
        name: dependency
        for name, dependency in dependencies.items()
        if name in params
    }
    return partial(handler, **deps)
