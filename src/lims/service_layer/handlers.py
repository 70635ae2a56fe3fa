import logging
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

import config
from lims.adapters import codecs, redis_adapter
from lims.domain import commands, events
from lims.domain.identifiers import IdentifierKind
from lims.domain.order import (
    LineItemStatus,
    Order,
    Priority,
    RejectionReason,
    SpecimenCondition,
    SpecimenType,
    TestLineItem,
)
from lims.domain.result import Result
from lims.domain.specimen import CustodyAction, SpecimenAccession, StorageTemperature
from lims.service_layer.unit_of_work import AbstractUnitOfWork
from shared.domain.exceptions import (
    ConcurrentModification,
    InvalidTransition,
    OrderNotFound,
    PatientNotFound,
    ResultNotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)

COMPLETION_ATTEMPTS = 3


def _now() -> datetime:
    return datetime.now(timezone.utc)


def lab_day(moment: datetime) -> date:
    """Calendar day of ``moment`` in the lab's timezone."""
    tz_name = config.get_lab_timezone()
    tz = timezone.utc if tz_name.upper() == "UTC" else ZoneInfo(tz_name)
    return moment.astimezone(tz).date()


def _choice(enum_cls, value, field):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{field} must be one of: {allowed}", field=field) from None


def _get_order(uow: AbstractUnitOfWork, order_number: str) -> Order:
    order = uow.orders.get(order_number)
    if order is None:
        raise OrderNotFound(order_number)
    return order


def _get_result(uow: AbstractUnitOfWork, result_number: str) -> Result:
    result = uow.results.get(result_number)
    if result is None:
        raise ResultNotFound(result_number)
    return result


def _specimen_for(uow: AbstractUnitOfWork, order: Order) -> SpecimenAccession:
    """The order's specimen record, opened on first use."""
    record = uow.specimens.get(order.order_number)
    if record is None:
        record = SpecimenAccession(
            order.order_number,
            specimen_type=order.specimen_type,
            barcode=order.specimen_barcode,
        )
        uow.specimens.add(record)
    return record


# -- orders ----------------------------------------------------------------


def create_order(cmd: commands.CreateOrder, uow: AbstractUnitOfWork) -> str:
    """
    Place an order.

    Flow:
    1. Check the patient exists
    2. Resolve every requested test (all-or-nothing) against both catalogs
    3. Mint the order number in the same transaction
    4. Persist the order with denormalised test names and prices

    Returns:
        order_number of the new order

    Raises:
        PatientNotFound, InvalidTestReference, ValidationError
    """
    logger.info(f"Processing CreateOrder for patient {cmd.patient_id} ({len(cmd.tests)} tests)")
    now = _now()
    if not cmd.tests:
        raise ValidationError("an order needs at least one test", field="tests", entity="order")
    priority = _choice(Priority, cmd.priority or Priority.ROUTINE.value, "priority")
    specimen_type = _choice(SpecimenType, cmd.specimen_type, "specimen_type") if cmd.specimen_type else None
    physician = codecs.parse_physician(cmd.physician)

    with uow:
        if uow.patients.get(cmd.patient_id) is None:
            raise PatientNotFound(cmd.patient_id)

        resolved = uow.catalog.resolve_all([t.test_id for t in cmd.tests])
        line_items = [
            TestLineItem(
                test_id=requested.test_id,
                catalog_kind=resolved[requested.test_id].kind,
                test_name=resolved[requested.test_id].name,
                price=resolved[requested.test_id].price,
                priority=_choice(Priority, requested.priority, "priority") if requested.priority else priority,
                turnaround_hours=resolved[requested.test_id].turnaround_hours,
                notes=requested.notes,
            )
            for requested in cmd.tests
        ]

        order_number = uow.sequences.next_identifier(IdentifierKind.ORDER, lab_day(now))
        order = Order(
            order_number=order_number,
            patient_id=cmd.patient_id,
            physician=physician,
            line_items=line_items,
            priority=priority,
            medical_office_id=cmd.medical_office_id,
            clinical_info=cmd.clinical_info,
            specimen_type=specimen_type,
            specimen_barcode=cmd.specimen_barcode,
            scheduled_date=cmd.scheduled_date,
            collection_date=cmd.collection_date,
            created_by=cmd.actor_id,
            created_at=now,
        )
        order.create()
        uow.orders.add(order)
        logger.info(f"Created order {order_number} total {order.total_amount}")
        uow.commit()

    return order_number


def update_line_item_status(cmd: commands.UpdateLineItemStatus, uow: AbstractUnitOfWork) -> str:
    new_status = _choice(LineItemStatus, cmd.status, "status")
    with uow:
        order = _get_order(uow, cmd.order_number)
        order.update_line_item_status(cmd.test_id, new_status, cmd.actor_id, _now(), cmd.notes)
        uow.commit()
    logger.info(f"Order {cmd.order_number} test {cmd.test_id} -> {new_status.value}")
    return cmd.order_number


def cancel_order(cmd: commands.CancelOrder, uow: AbstractUnitOfWork) -> str:
    with uow:
        order = _get_order(uow, cmd.order_number)
        order.cancel(cmd.actor_id, _now(), cmd.reason)
        uow.commit()
    logger.info(f"Cancelled order {cmd.order_number}")
    return cmd.order_number


# -- specimens -------------------------------------------------------------


def receive_specimen(cmd: commands.ReceiveSpecimen, uow: AbstractUnitOfWork) -> str:
    now = _now()
    with uow:
        order = _get_order(uow, cmd.order_number)
        record = _specimen_for(uow, order)
        order.receive(cmd.actor_id, now)
        record.receive(cmd.actor_id, now, cmd.location, cmd.notes)
        uow.commit()
    logger.info(f"Received specimen for order {cmd.order_number}")
    return cmd.order_number


def accession_specimen(cmd: commands.AccessionSpecimen, uow: AbstractUnitOfWork) -> str:
    """
    Accession the specimen of an order.

    The accession number is minted inside the transaction; a refused
    accession rolls the counter back with everything else.

    Returns:
        the new accession number
    """
    logger.info(f"Processing AccessionSpecimen for order {cmd.order_number}")
    condition = _choice(SpecimenCondition, cmd.condition or SpecimenCondition.GOOD.value, "condition")
    now = _now()
    with uow:
        order = _get_order(uow, cmd.order_number)
        record = _specimen_for(uow, order)
        accession_number = uow.sequences.next_identifier(IdentifierKind.ACCESSION, lab_day(now))
        order.accession(accession_number, cmd.actor_id, now, condition, cmd.notes)
        record.accession(accession_number, cmd.actor_id, now, condition, cmd.location, cmd.notes)
        uow.commit()
    if condition != SpecimenCondition.GOOD:
        logger.warning(f"Order {cmd.order_number} accessioned with specimen condition {condition.value}")
    logger.info(f"Accessioned order {cmd.order_number} as {accession_number}")
    return accession_number


def reject_specimen(cmd: commands.RejectSpecimen, uow: AbstractUnitOfWork) -> str:
    reason = _choice(RejectionReason, cmd.reason, "reason")
    now = _now()
    with uow:
        order = _get_order(uow, cmd.order_number)
        record = _specimen_for(uow, order)
        order.reject(reason, cmd.actor_id, now, cmd.comments)
        record.reject(reason, cmd.actor_id, now, cmd.comments)
        uow.commit()
    logger.info(f"Rejected specimen of order {cmd.order_number}: {reason.value}")
    return cmd.order_number


def hold_specimen(cmd: commands.HoldSpecimen, uow: AbstractUnitOfWork) -> str:
    now = _now()
    with uow:
        order = _get_order(uow, cmd.order_number)
        record = _specimen_for(uow, order)
        order.place_on_hold(cmd.reason, cmd.actor_id, now, cmd.notes)
        record.hold(cmd.reason, cmd.actor_id, now, cmd.notes)
        uow.commit()
    logger.info(f"Specimen of order {cmd.order_number} on hold: {cmd.reason}")
    return cmd.order_number


def release_specimen_hold(cmd: commands.ReleaseSpecimenHold, uow: AbstractUnitOfWork) -> str:
    now = _now()
    with uow:
        order = _get_order(uow, cmd.order_number)
        record = _specimen_for(uow, order)
        released = {r.test_id: r.result_number for r in uow.results.for_order(cmd.order_number) if r.is_released}
        order.release_hold(cmd.actor_id, now, released)
        record.release_hold(cmd.actor_id, now, cmd.notes)
        uow.commit()
    logger.info(f"Released hold on order {cmd.order_number}")
    return cmd.order_number


def record_custody_event(cmd: commands.RecordCustodyEvent, uow: AbstractUnitOfWork) -> str:
    action = _choice(CustodyAction, cmd.action, "action")
    with uow:
        order = _get_order(uow, cmd.order_number)
        record = _specimen_for(uow, order)
        record.record_custody(action, cmd.actor_id, _now(), cmd.location, cmd.notes)
        uow.commit()
    return cmd.order_number


def store_specimen(cmd: commands.StoreSpecimen, uow: AbstractUnitOfWork) -> str:
    temperature = _choice(StorageTemperature, cmd.temperature, "temperature")
    with uow:
        order = _get_order(uow, cmd.order_number)
        record = _specimen_for(uow, order)
        record.store(cmd.location, temperature, cmd.actor_id, _now(), cmd.notes)
        uow.commit()
    logger.info(f"Stored specimen of order {cmd.order_number} at {cmd.location} ({temperature.value})")
    return cmd.order_number


def create_aliquot(cmd: commands.CreateAliquot, uow: AbstractUnitOfWork) -> str:
    with uow:
        order = _get_order(uow, cmd.order_number)
        record = _specimen_for(uow, order)
        aliquot = record.create_aliquot(cmd.volume, cmd.unit, cmd.actor_id, _now(), cmd.location)
        uow.commit()
    logger.info(f"Created aliquot {aliquot.aliquot_id}")
    return aliquot.aliquot_id


def consume_specimen(cmd: commands.ConsumeSpecimen, uow: AbstractUnitOfWork) -> str:
    with uow:
        order = _get_order(uow, cmd.order_number)
        record = _specimen_for(uow, order)
        record.consume(cmd.actor_id, _now(), cmd.notes)
        uow.commit()
    logger.info(f"Specimen of order {cmd.order_number} consumed")
    return cmd.order_number


# -- results ---------------------------------------------------------------


def create_result(cmd: commands.CreateResult, uow: AbstractUnitOfWork) -> str:
    """
    Record the technical result of one line item.

    The result kind follows the catalog the line item was resolved in. A
    pending or collected line item moves to processing.

    Returns:
        result_number of the new preliminary result
    """
    logger.info(f"Processing CreateResult for order {cmd.order_number} test {cmd.test_id}")
    fields = codecs.parse_result_fields({
        "parameters": cmd.parameters,
        "target_results": cmd.target_results,
        "resistance_results": cmd.resistance_results,
        "susceptibility_results": cmd.susceptibility_results,
        "quality_control": cmd.quality_control,
        "treatment_suggestions": cmd.treatment_suggestions,
        "interpretation": cmd.interpretation,
        "recommendations": cmd.recommendations,
        "comments": cmd.comments,
        "overall_override": cmd.overall_result,
    })
    now = _now()

    with uow:
        order = _get_order(uow, cmd.order_number)
        line = order.line_item(cmd.test_id)
        if order.is_rejected or line.status == LineItemStatus.CANCELLED:
            raise InvalidTransition(
                f"test {cmd.test_id} of order {cmd.order_number} is not being processed",
                entity="order",
                entity_id=cmd.order_number,
                test=cmd.test_id,
            )
        existing = uow.results.active_for_test(cmd.order_number, cmd.test_id)
        if existing is not None:
            raise InvalidTransition(
                f"test {cmd.test_id} of order {cmd.order_number} already has result {existing.result_number}",
                entity="result",
                entity_id=existing.result_number,
            )

        result_number = uow.sequences.next_identifier(IdentifierKind.RESULT, lab_day(now))
        result = Result(
            result_number=result_number,
            order_number=order.order_number,
            patient_id=order.patient_id,
            test_id=line.test_id,
            kind=line.catalog_kind,
            performed_by=cmd.actor_id,
            performed_at=now,
            test_name=line.test_name,
            **fields,
        )
        if line.status in (LineItemStatus.PENDING, LineItemStatus.COLLECTED):
            order.update_line_item_status(line.test_id, LineItemStatus.PROCESSING, cmd.actor_id, now)
        uow.results.add(result)
        logger.info(f"Created {result.kind.value} result {result_number}: {result.overall_result}")
        uow.commit()

    return result_number


def review_result(cmd: commands.ReviewResult, uow: AbstractUnitOfWork) -> str:
    with uow:
        result = _get_result(uow, cmd.result_number)
        result.review(cmd.actor_id, _now(), cmd.notes)
        uow.commit()
    logger.info(f"Result {cmd.result_number} reviewed by {cmd.actor_id}")
    return cmd.result_number


def approve_result(cmd: commands.ApproveResult, uow: AbstractUnitOfWork) -> str:
    with uow:
        result = _get_result(uow, cmd.result_number)
        result.approve(cmd.actor_id, _now())
        uow.commit()
    logger.info(f"Result {cmd.result_number} approved by {cmd.actor_id}")
    return cmd.result_number


def finalize_result(cmd: commands.FinalizeResult, uow: AbstractUnitOfWork) -> str:
    with uow:
        result = _get_result(uow, cmd.result_number)
        result.finalize(cmd.actor_id, _now())
        uow.commit()
    logger.info(f"Result {cmd.result_number} finalized by {cmd.actor_id}")
    return cmd.result_number


def amend_result(cmd: commands.AmendResult, uow: AbstractUnitOfWork) -> str:
    changes = codecs.parse_result_fields(cmd.changes or {})
    with uow:
        result = _get_result(uow, cmd.result_number)
        result.amend(cmd.reason, changes, cmd.actor_id, _now())
        uow.commit()
    logger.info(f"Result {cmd.result_number} amended: {sorted(changes)}")
    return cmd.result_number


def cancel_result(cmd: commands.CancelResult, uow: AbstractUnitOfWork) -> str:
    with uow:
        result = _get_result(uow, cmd.result_number)
        result.cancel(cmd.actor_id, _now(), cmd.reason)
        uow.commit()
    logger.info(f"Result {cmd.result_number} cancelled")
    return cmd.result_number


def next_identifier(cmd: commands.NextIdentifier, uow: AbstractUnitOfWork) -> str:
    kind = _choice(IdentifierKind, cmd.kind, "kind")
    with uow:
        identifier = uow.sequences.next_identifier(kind, cmd.day or lab_day(_now()))
        uow.commit()
    return identifier


# -- event handlers --------------------------------------------------------


def complete_line_item(event: events.ResultFinalized, uow: AbstractUnitOfWork):
    """
    Complete the line item of a finalized result.

    The order rollup reacts to the line-item change inside the aggregate.
    A lost race on the order is retried against a fresh read. An order on
    hold keeps the line open until the hold is released.
    """
    for attempt in Retrying(
        stop=stop_after_attempt(COMPLETION_ATTEMPTS),
        retry=retry_if_exception_type(ConcurrentModification),
        reraise=True,
    ):
        with attempt:
            _complete_line_item(event, uow)


def _complete_line_item(event: events.ResultFinalized, uow: AbstractUnitOfWork):
    with uow:
        order = _get_order(uow, event.order_number)
        line = order.line_item(event.test_id)
        if line.status == LineItemStatus.COMPLETED:
            return
        try:
            order.update_line_item_status(event.test_id, LineItemStatus.COMPLETED, event.finalized_by, event.finalized_at)
        except InvalidTransition as e:
            logger.warning(f"Result {event.result_number} finalized but line item stays {line.status.value}: {e}")
            return
        uow.commit()
    logger.info(f"Order {event.order_number} test {event.test_id} completed by result {event.result_number}")


def publish_order_event(event, uow: AbstractUnitOfWork):
    _publish(redis_adapter.ORDERS_CHANNEL, event)


def publish_result_event(event, uow: AbstractUnitOfWork):
    _publish(redis_adapter.RESULTS_CHANNEL, event)


def flag_critical_values(event: events.CriticalValuesDetected, uow: AbstractUnitOfWork):
    """Flag that a clinician notification is owed. Delivery happens elsewhere."""
    logger.warning(
        f"Critical values on result {event.result_number} (order {event.order_number}): {event.values}"
    )
    _publish(redis_adapter.CRITICAL_VALUES_CHANNEL, event)


def _publish(channel: str, event):
    try:
        redis_adapter.publish(channel, event)
    except Exception as e:
        logger.error(f"Failed to publish {type(event).__name__} to {channel}: {e}")
        # Don't re-raise - external failures shouldn't break the flow
