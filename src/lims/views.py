"""
Views for read operations - separate from command/write path.

Aggregates are serialised to plain dicts inside the unit of work so callers
never touch detached ORM instances.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select

from lims.adapters import orm
from lims.domain.order import Order, OrderStatus
from lims.domain.result import Result, ResultStatus, to_primitive
from lims.domain.specimen import SpecimenAccession
from lims.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _value(member) -> Optional[str]:
    return member.value if member is not None else None


def serialize_order(order: Order, now: datetime = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    return {
        "order_number": order.order_number,
        "patient_id": order.patient_id,
        "physician": to_primitive(order.physician),
        "medical_office_id": order.medical_office_id,
        "priority": _value(order.priority),
        "clinical_info": order.clinical_info,
        "status": _value(order.status),
        "payment_status": _value(order.payment_status),
        "total_amount": str(order.total_amount),
        "specimen": {
            "type": _value(order.specimen_type),
            "barcode": order.specimen_barcode,
            "condition": _value(order.specimen_condition),
            "acceptable": order.is_specimen_acceptable,
            "age_hours": order.specimen_age_hours(now),
            "expired": order.is_specimen_expired(now),
        },
        "accession_number": order.accession_number,
        "accession_date": _iso(order.accession_date),
        "accessioned_by": order.accessioned_by,
        "rejection": to_primitive(order.rejection),
        "hold": to_primitive(order.hold),
        "scheduled_date": _iso(order.scheduled_date),
        "collection_date": _iso(order.collection_date),
        "received_at": _iso(order.received_at),
        "expected_completion": _iso(order.expected_completion),
        "actual_completion": _iso(order.actual_completion),
        "turnaround_hours": order.turnaround_hours,
        "cancelled_at": _iso(order.cancelled_at),
        "cancellation_reason": order.cancellation_reason,
        "tests": [
            {
                "test_id": line.test_id,
                "catalog_kind": _value(line.catalog_kind),
                "test_name": line.test_name,
                "price": str(line.price),
                "status": _value(line.status),
                "priority": _value(line.priority),
                "turnaround_hours": line.turnaround_hours,
                "collected_at": _iso(line.collected_at),
                "collected_by": line.collected_by,
                "processing_started_at": _iso(line.processing_started_at),
                "processing_completed_at": _iso(line.processing_completed_at),
                "notes": line.notes,
            }
            for line in order.line_items
        ],
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
        "version_number": order.version_number,
    }


def serialize_specimen(record: SpecimenAccession) -> Dict[str, Any]:
    return {
        "order_number": record.order_number,
        "state": _value(record.state),
        "specimen_type": _value(record.specimen_type),
        "barcode": record.barcode,
        "accession_number": record.accession_number,
        "accessioned_by": record.accessioned_by,
        "accessioned_at": _iso(record.accessioned_at),
        "received_at": _iso(record.received_at),
        "condition": _value(record.condition),
        "rejection_reason": _value(record.rejection_reason),
        "rejection_comments": record.rejection_comments,
        "hold_reason": record.hold_reason,
        "storage_location": record.storage_location,
        "storage_temperature": _value(record.storage_temperature),
        "chain_of_custody": to_primitive(record.chain_of_custody),
        "aliquots": to_primitive(record.aliquots),
        "version_number": record.version_number,
    }


def serialize_result(result: Result) -> Dict[str, Any]:
    return {
        "result_number": result.result_number,
        "order_number": result.order_number,
        "patient_id": result.patient_id,
        "test_id": result.test_id,
        "test_name": result.test_name,
        "kind": _value(result.kind),
        "status": _value(result.status),
        "overall_result": result.overall_result,
        "parameters": to_primitive(result.parameters),
        "target_results": to_primitive(result.target_results),
        "resistance_results": to_primitive(result.resistance_results),
        "susceptibility_results": to_primitive(result.susceptibility_results),
        "quality_control": to_primitive(result.quality_control),
        "treatment_suggestions": to_primitive(result.treatment_suggestions),
        "pathogens_detected": list(result.pathogens_detected),
        "resistance_detected": list(result.resistance_detected),
        "critical_values": to_primitive(result.critical_values),
        "interpretation": result.interpretation,
        "recommendations": result.recommendations,
        "comments": result.comments,
        "performed_by": result.performed_by,
        "performed_at": _iso(result.performed_at),
        "reviewed_by": result.reviewed_by,
        "reviewed_at": _iso(result.reviewed_at),
        "approved_by": result.approved_by,
        "approved_at": _iso(result.approved_at),
        "finalized_by": result.finalized_by,
        "reported_at": _iso(result.reported_at),
        "amendments": to_primitive(result.amendments),
        "version_number": result.version_number,
    }


def get_order(order_number: str, uow: AbstractUnitOfWork) -> Optional[Dict[str, Any]]:
    with uow:
        order = uow.orders.get(order_number)
        return serialize_order(order) if order else None


def get_order_by_accession(accession_number: str, uow: AbstractUnitOfWork) -> Optional[Dict[str, Any]]:
    with uow:
        order = uow.orders.get_by_accession(accession_number)
        return serialize_order(order) if order else None


def find_specimen(term: str, uow: AbstractUnitOfWork) -> Optional[Dict[str, Any]]:
    """Order whose order number, accession number or specimen barcode is ``term``."""
    with uow:
        order = uow.session.execute(
            select(Order)
            .where(
                or_(
                    orm.orders.c.order_number == term,
                    orm.orders.c.accession_number == term,
                    orm.orders.c.specimen_barcode == term,
                )
            )
            .order_by(orm.orders.c.order_number)
            .limit(1)
        ).scalars().first()
        return serialize_order(order) if order else None


def list_orders(
    uow: AbstractUnitOfWork,
    status: str = None,
    patient_id: str = None,
) -> List[Dict[str, Any]]:
    with uow:
        orders = uow.orders.list(
            status=OrderStatus(status) if status else None,
            patient_id=patient_id,
        )
        return [serialize_order(o) for o in orders]


def orders_awaiting_accession(uow: AbstractUnitOfWork) -> List[Dict[str, Any]]:
    """Pending orders with no accession number, oldest first."""
    with uow:
        rows = uow.session.execute(
            select(
                orm.orders.c.order_number,
                orm.orders.c.patient_id,
                orm.orders.c.priority,
                orm.orders.c.created_at,
                orm.orders.c.collection_date,
            )
            .where(
                orm.orders.c.status == OrderStatus.PENDING,
                orm.orders.c.accession_number.is_(None),
            )
            .order_by(orm.orders.c.created_at)
        ).all()
        return [
            {
                "order_number": row.order_number,
                "patient_id": row.patient_id,
                "priority": _value(row.priority),
                "created_at": _iso(row.created_at),
                "collection_date": _iso(row.collection_date),
            }
            for row in rows
        ]


def get_specimen(order_number: str, uow: AbstractUnitOfWork) -> Optional[Dict[str, Any]]:
    with uow:
        record = uow.specimens.get(order_number)
        return serialize_specimen(record) if record else None


def get_result(result_number: str, uow: AbstractUnitOfWork) -> Optional[Dict[str, Any]]:
    with uow:
        result = uow.results.get(result_number)
        return serialize_result(result) if result else None


def results_for_order(order_number: str, uow: AbstractUnitOfWork) -> List[Dict[str, Any]]:
    with uow:
        return [serialize_result(r) for r in uow.results.for_order(order_number)]


def results_for_patient(patient_id: str, uow: AbstractUnitOfWork) -> List[Dict[str, Any]]:
    with uow:
        return [serialize_result(r) for r in uow.results.for_patient(patient_id)]


def critical_results(uow: AbstractUnitOfWork) -> List[Dict[str, Any]]:
    """Non-cancelled results carrying at least one critical value."""
    with uow:
        results = uow.session.execute(
            select(Result)
            .where(
                orm.results.c.status != ResultStatus.CANCELLED,
                func.json_array_length(orm.results.c.critical_values) > 0,
            )
            .order_by(orm.results.c.result_number)
        ).scalars()
        return [serialize_result(r) for r in results]
