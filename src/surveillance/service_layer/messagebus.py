# pylint: disable=broad-except
"""Message bus for the surveillance sync core following Cosmic Python pattern."""

from __future__ import annotations
import logging
from typing import List, Dict, Callable, Type, Union, TYPE_CHECKING

from shared.domain.commands import Command, Event
from surveillance.domain import commands, events
from surveillance.service_layer import handlers

if TYPE_CHECKING:
    from surveillance.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

Message = Union[Command, Event]


def handle(
    message: Message,
    uow: AbstractUnitOfWork,
):
    """Handle message (command or event) with the appropriate handler."""
    results = []
    queue = [message]

    while queue:
        message = queue.pop(0)

        if isinstance(message, Event):
            handle_event(message, queue, uow)
        elif isinstance(message, Command):
            cmd_result = handle_command(message, queue, uow)
            results.append(cmd_result)
        else:
            raise Exception(f"{message} was not an Event or Command")

    return results


def handle_event(
    event: Event,
    queue: List[Message],
    uow: AbstractUnitOfWork,
):
    """Handle event by calling all registered event handlers."""
    for handler in EVENT_HANDLERS[type(event)]:
        try:
            logger.debug(f"handling event {event} with handler {handler}")
            handler(event, uow=uow)
            queue.extend(uow.collect_new_events())
        except Exception:
            logger.exception("Exception handling event %s", event)
            continue


def handle_command(
    command: Command,
    queue: List[Message],
    uow: AbstractUnitOfWork,
):
    """Handle command by calling the registered command handler."""
    logger.debug(f"handling command {command}")
    try:
        handler = COMMAND_HANDLERS[type(command)]
        result = handler(command, uow=uow)
        queue.extend(uow.collect_new_events())
        return result
    except Exception:
        logger.exception("Exception handling command %s", command)
        # a job failed on the way out still gets audited and published
        for event in list(uow.collect_new_events()):
            handle_event(event, queue, uow)
        raise


# Event handlers - multiple handlers can respond to same event
EVENT_HANDLERS = {
    events.CasePromoted: [handlers.publish_case_event],
    events.CaseWithdrawn: [handlers.publish_case_event],
    events.CaseStatusChanged: [
        handlers.record_case_retry_audit,
        handlers.publish_case_event,
    ],
    events.SyncCompleted: [
        handlers.record_sync_audit,
        handlers.publish_sync_event,
    ],
    events.SyncFailed: [
        handlers.record_sync_audit,
        handlers.publish_sync_event,
    ],
    events.ReportGenerated: [
        handlers.record_report_audit,
        handlers.publish_report_event,
    ],
}  # type: Dict[Type[Event], List[Callable]]

# Command handlers - single handler per command type
COMMAND_HANDLERS = {
    commands.RunPull: handlers.run_pull,
    commands.RunPush: handlers.run_push,
    commands.AcknowledgeSubmissions: handlers.acknowledge_submissions,
    commands.RetryCase: handlers.retry_case,
    commands.RetryVectorRecord: handlers.retry_vector_record,
    commands.CancelSync: handlers.cancel_sync,
    commands.CheckSourceConnection: handlers.check_source_connection,
    commands.IngestVectorRecords: handlers.ingest_vector_records,
    commands.GenerateReport: handlers.generate_report,
}  # type: Dict[Type[Command], Callable]
