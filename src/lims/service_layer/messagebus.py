# pylint: disable=broad-except
"""Message bus for the LIMS lifecycle service following Cosmic Python pattern."""

from __future__ import annotations
import logging
from typing import List, Dict, Callable, Type, Union, TYPE_CHECKING

from shared.domain.commands import Command, Event
from lims.domain import commands, events
from lims.service_layer import handlers

if TYPE_CHECKING:
    from lims.service_layer.unit_of_work import AbstractUnitOfWork

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
            logger.debug(f"handling event {event} with handler {handler.__name__}")
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
        raise


# Event handlers - multiple handlers can respond to same event
EVENT_HANDLERS = {
    events.OrderCreated: [handlers.publish_order_event],
    events.OrderStatusChanged: [handlers.publish_order_event],
    events.SpecimenAccessioned: [handlers.publish_order_event],
    events.SpecimenRejected: [handlers.publish_order_event],
    events.SpecimenHeld: [handlers.publish_order_event],
    events.ResultFinalized: [
        handlers.complete_line_item,
        handlers.publish_result_event,
    ],
    events.ResultAmended: [handlers.publish_result_event],
    events.CriticalValuesDetected: [handlers.flag_critical_values],
}  # type: Dict[Type[Event], List[Callable]]

# Command handlers - single handler per command type
COMMAND_HANDLERS = {
    commands.CreateOrder: handlers.create_order,
    commands.UpdateLineItemStatus: handlers.update_line_item_status,
    commands.CancelOrder: handlers.cancel_order,
    commands.ReceiveSpecimen: handlers.receive_specimen,
    commands.AccessionSpecimen: handlers.accession_specimen,
    commands.RejectSpecimen: handlers.reject_specimen,
    commands.HoldSpecimen: handlers.hold_specimen,
    commands.ReleaseSpecimenHold: handlers.release_specimen_hold,
    commands.RecordCustodyEvent: handlers.record_custody_event,
    commands.StoreSpecimen: handlers.store_specimen,
    commands.CreateAliquot: handlers.create_aliquot,
    commands.ConsumeSpecimen: handlers.consume_specimen,
    commands.CreateResult: handlers.create_result,
    commands.ReviewResult: handlers.review_result,
    commands.ApproveResult: handlers.approve_result,
    commands.FinalizeResult: handlers.finalize_result,
    commands.AmendResult: handlers.amend_result,
    commands.CancelResult: handlers.cancel_result,
    commands.NextIdentifier: handlers.next_identifier,
}  # type: Dict[Type[Command], Callable]
