"""
Order aggregate: one clinician request for one or more tests on one patient.

The aggregate status is never assigned by callers. It is derived from the
line-item statuses plus the accession, rejection and hold flags by
``derive_order_status`` after every mutation.
"""
import enum
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from lims.domain.catalog import CatalogKind, DEFAULT_TURNAROUND_HOURS
from lims.domain.events import (
    OrderCreated,
    OrderStatusChanged,
    SpecimenAccessioned,
    SpecimenHeld,
    SpecimenRejected,
)
from shared.domain.exceptions import (
    AlreadyAccessioned,
    InvalidTransition,
    TestNotInOrder,
    ValidationError,
)

logger = logging.getLogger(__name__)


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    ACCESSIONED = "accessioned"
    PARTIAL = "partial"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    HOLD = "hold"


class LineItemStatus(str, enum.Enum):
    PENDING = "pending"
    COLLECTED = "collected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Priority(str, enum.Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    STAT = "stat"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    REFUNDED = "refunded"


class SpecimenType(str, enum.Enum):
    BLOOD = "blood"
    SERUM = "serum"
    PLASMA = "plasma"
    URINE = "urine"
    STOOL = "stool"
    SWAB = "swab"
    TISSUE = "tissue"
    SPUTUM = "sputum"
    NAIL_CLIPPING = "nail_clipping"
    NASOPHARYNGEAL_SWAB = "nasopharyngeal_swab"
    WOUND_SWAB = "wound_swab"
    OTHER = "other"


class SpecimenCondition(str, enum.Enum):
    GOOD = "good"
    HEMOLYZED = "hemolyzed"
    CLOTTED = "clotted"
    INSUFFICIENT = "insufficient"
    CONTAMINATED = "contaminated"
    OTHER = "other"


class RejectionReason(str, enum.Enum):
    HEMOLYZED = "hemolyzed"
    CLOTTED = "clotted"
    INSUFFICIENT = "insufficient"
    WRONG_TUBE = "wrong_tube"
    UNLABELED = "unlabeled"
    MISLABELED = "mislabeled"
    CONTAMINATED = "contaminated"
    EXPIRED = "expired"
    TEMPERATURE = "temperature"
    OTHER = "other"


UNACCEPTABLE_CONDITIONS = frozenset({
    SpecimenCondition.HEMOLYZED,
    SpecimenCondition.CLOTTED,
    SpecimenCondition.INSUFFICIENT,
    SpecimenCondition.CONTAMINATED,
})

SPECIMEN_EXPIRY_HOURS = 72

_LINE_ITEM_RANK = {
    LineItemStatus.PENDING: 0,
    LineItemStatus.COLLECTED: 1,
    LineItemStatus.PROCESSING: 2,
    LineItemStatus.COMPLETED: 3,
}

TERMINAL_LINE_ITEM_STATUSES = frozenset({LineItemStatus.COMPLETED, LineItemStatus.CANCELLED})


def derive_order_status(
    line_statuses: Iterable[LineItemStatus],
    *,
    has_accession: bool,
    rejected: bool = False,
    on_hold: bool = False,
) -> OrderStatus:
    """
    Aggregate order status from line-item statuses and specimen flags.

    Precedence: rejected, hold, all completed, any completed, all cancelled,
    accession number present, pending.
    """
    if rejected:
        return OrderStatus.REJECTED
    if on_hold:
        return OrderStatus.HOLD

    statuses = [LineItemStatus(s) for s in line_statuses]
    if statuses and all(s == LineItemStatus.COMPLETED for s in statuses):
        return OrderStatus.COMPLETED
    if any(s == LineItemStatus.COMPLETED for s in statuses):
        return OrderStatus.PARTIAL
    if statuses and all(s == LineItemStatus.CANCELLED for s in statuses):
        return OrderStatus.CANCELLED
    if has_accession:
        return OrderStatus.ACCESSIONED
    return OrderStatus.PENDING


@dataclass(frozen=True)
class PhysicianSnapshot:
    """Ordering physician as recorded when the order was placed."""
    name: str
    license_number: Optional[str] = None
    phone: Optional[str] = None
    doctor_id: Optional[str] = None


@dataclass(frozen=True)
class RejectionRecord:
    reason: RejectionReason
    rejected_by: str
    rejected_at: datetime
    comments: Optional[str] = None


@dataclass(frozen=True)
class HoldRecord:
    reason: str
    held_by: str
    held_at: datetime
    notes: Optional[str] = None
    released_by: Optional[str] = None
    released_at: Optional[datetime] = None


@dataclass(eq=False)
class TestLineItem:
    __test__ = False

    test_id: str
    catalog_kind: CatalogKind
    test_name: str
    price: Decimal
    status: LineItemStatus = LineItemStatus.PENDING
    priority: Priority = Priority.ROUTINE
    turnaround_hours: int = DEFAULT_TURNAROUND_HOURS
    collected_at: Optional[datetime] = None
    collected_by: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LINE_ITEM_STATUSES

    def transition(self, new_status: LineItemStatus, actor_id: str, now: datetime, notes: str = None):
        """Move forward through pending, collected, processing, completed, or cancel."""
        new_status = LineItemStatus(new_status)
        if self.is_terminal:
            raise InvalidTransition(
                f"test {self.test_id} is already {self.status.value}",
                entity="test",
                entity_id=self.test_id,
                field="status",
            )
        if new_status != LineItemStatus.CANCELLED and _LINE_ITEM_RANK[new_status] <= _LINE_ITEM_RANK[self.status]:
            raise InvalidTransition(
                f"test {self.test_id} cannot move from {self.status.value} to {new_status.value}",
                entity="test",
                entity_id=self.test_id,
                field="status",
            )

        self.status = new_status
        if new_status == LineItemStatus.COLLECTED and self.collected_at is None:
            self.collected_at = now
            self.collected_by = actor_id
        elif new_status == LineItemStatus.PROCESSING and self.processing_started_at is None:
            self.processing_started_at = now
        elif new_status == LineItemStatus.COMPLETED and self.processing_completed_at is None:
            self.processing_completed_at = now
        if notes:
            self.notes = notes


class Order:
    def __init__(
        self,
        order_number: str,
        patient_id: str,
        physician: PhysicianSnapshot,
        line_items: List[TestLineItem],
        priority: Priority = Priority.ROUTINE,
        medical_office_id: str = None,
        clinical_info: str = None,
        specimen_type: SpecimenType = None,
        specimen_barcode: str = None,
        scheduled_date: datetime = None,
        collection_date: datetime = None,
        created_by: str = None,
        created_at: datetime = None,
    ):
        if not line_items:
            raise ValidationError("an order needs at least one test", field="tests", entity="order")
        test_ids = [line.test_id for line in line_items]
        if len(set(test_ids)) != len(test_ids):
            raise ValidationError("a test can only be ordered once per order", field="tests", entity="order")

        self.order_number = order_number
        self.patient_id = patient_id
        self.physician = physician
        self.line_items = list(line_items)
        self.priority = Priority(priority)
        self.medical_office_id = medical_office_id
        self.clinical_info = clinical_info
        self.specimen_type = SpecimenType(specimen_type) if specimen_type else None
        self.specimen_barcode = specimen_barcode
        self.specimen_condition = SpecimenCondition.GOOD
        self.scheduled_date = scheduled_date
        self.collection_date = collection_date
        self.received_at = None  # type: Optional[datetime]
        self.received_by = None  # type: Optional[str]
        self.accession_number = None  # type: Optional[str]
        self.accession_date = None  # type: Optional[datetime]
        self.accessioned_by = None  # type: Optional[str]
        self.accession_notes = None  # type: Optional[str]
        self.rejection = None  # type: Optional[RejectionRecord]
        self.hold = None  # type: Optional[HoldRecord]
        self.cancelled_by = None  # type: Optional[str]
        self.cancelled_at = None  # type: Optional[datetime]
        self.cancellation_reason = None  # type: Optional[str]
        self.status = OrderStatus.PENDING
        self.payment_status = PaymentStatus.PENDING
        self.total_amount = sum((line.price for line in self.line_items), Decimal("0"))
        self.expected_completion = None  # type: Optional[datetime]
        self.actual_completion = None  # type: Optional[datetime]
        self.created_by = created_by
        self.created_at = created_at
        self.updated_at = created_at
        self.events = []  # type: List

    def __repr__(self):
        return f"<Order {self.order_number} {self.status.value}>"

    def __eq__(self, other):
        if not isinstance(other, Order):
            return False
        return other.order_number == self.order_number

    def __hash__(self):
        return hash(self.order_number)

    # -- derived values -------------------------------------------------

    @property
    def on_hold(self) -> bool:
        return self.hold is not None and self.hold.released_at is None

    @property
    def is_rejected(self) -> bool:
        return self.rejection is not None

    @property
    def turnaround_hours(self) -> Optional[int]:
        """Whole hours from accession to completion, absent until both exist."""
        if self.accession_date is None or self.actual_completion is None:
            return None
        elapsed = self.actual_completion - self.accession_date
        return math.floor(elapsed.total_seconds() / 3600)

    @property
    def is_specimen_acceptable(self) -> bool:
        return self.specimen_condition not in UNACCEPTABLE_CONDITIONS

    def specimen_age_hours(self, now: datetime) -> Optional[int]:
        """Whole hours since collection, rounded down."""
        if self.collection_date is None:
            return None
        return math.floor((now - self.collection_date).total_seconds() / 3600)

    def is_specimen_expired(self, now: datetime) -> bool:
        age = self.specimen_age_hours(now)
        return age is not None and age > SPECIMEN_EXPIRY_HOURS

    def line_item(self, test_id: str) -> TestLineItem:
        for line in self.line_items:
            if line.test_id == test_id:
                return line
        raise TestNotInOrder(test_id, self.order_number)

    # -- transitions ----------------------------------------------------

    def create(self) -> None:
        """Mark the order as placed and raise OrderCreated."""
        self.events.append(
            OrderCreated(
                order_number=self.order_number,
                patient_id=self.patient_id,
                priority=self.priority.value,
                total_amount=str(self.total_amount),
                test_ids=[line.test_id for line in self.line_items],
                created_at=self.created_at,
            )
        )

    def receive(self, actor_id: str, now: datetime) -> None:
        self._ensure_open("receive the specimen of")
        if self.received_at is None:
            self.received_at = now
            self.received_by = actor_id
        self.updated_at = now

    def accession(
        self,
        accession_number: str,
        actor_id: str,
        now: datetime,
        condition: SpecimenCondition = SpecimenCondition.GOOD,
        notes: str = None,
    ) -> None:
        if self.accession_number is not None:
            raise AlreadyAccessioned(
                f"order {self.order_number} already carries accession number {self.accession_number}",
                entity="order",
                entity_id=self.order_number,
                field="accession_number",
            )
        self._ensure_open("accession")
        if self.on_hold:
            raise InvalidTransition(
                f"order {self.order_number} is on hold",
                entity="order",
                entity_id=self.order_number,
            )

        self.accession_number = accession_number
        self.accession_date = now
        self.accessioned_by = actor_id
        self.accession_notes = notes
        self.specimen_condition = SpecimenCondition(condition or SpecimenCondition.GOOD)
        if self.received_at is None:
            self.received_at = now
            self.received_by = actor_id

        for line in self.line_items:
            if line.status == LineItemStatus.PENDING:
                line.transition(LineItemStatus.COLLECTED, actor_id, now)

        if self.expected_completion is None:
            longest = max(line.turnaround_hours for line in self.line_items)
            self.expected_completion = now + timedelta(hours=longest)

        self.events.append(
            SpecimenAccessioned(
                order_number=self.order_number,
                accession_number=accession_number,
                condition=self.specimen_condition.value,
                accessioned_by=actor_id,
                accessioned_at=now,
            )
        )
        self._touch(now)

    def reject(self, reason: RejectionReason, actor_id: str, now: datetime, comments: str = None) -> None:
        self._ensure_open("reject")
        if self.status in (OrderStatus.COMPLETED, OrderStatus.PARTIAL):
            raise InvalidTransition(
                f"order {self.order_number} already has completed tests",
                entity="order",
                entity_id=self.order_number,
            )
        reason = RejectionReason(reason)
        self.rejection = RejectionRecord(
            reason=reason,
            rejected_by=actor_id,
            rejected_at=now,
            comments=comments,
        )
        self.events.append(
            SpecimenRejected(
                order_number=self.order_number,
                reason=reason.value,
                rejected_by=actor_id,
                rejected_at=now,
            )
        )
        self._touch(now)

    def place_on_hold(self, reason: str, actor_id: str, now: datetime, notes: str = None) -> None:
        self._ensure_open("hold")
        if self.on_hold:
            raise InvalidTransition(
                f"order {self.order_number} is already on hold",
                entity="order",
                entity_id=self.order_number,
            )
        if not reason:
            raise ValidationError("a hold needs a reason", field="reason", entity="order", entity_id=self.order_number)
        self.hold = HoldRecord(reason=reason, held_by=actor_id, held_at=now, notes=notes)
        self.events.append(
            SpecimenHeld(order_number=self.order_number, reason=reason, held_by=actor_id, held_at=now)
        )
        self._touch(now)

    def release_hold(self, actor_id: str, now: datetime, released_results: Dict[str, str] = None) -> None:
        """
        Clear the hold and re-derive the status.

        ``released_results`` maps test ids to the number of a result that was
        finalized while the hold blocked completion; those lines complete now.
        """
        if not self.on_hold:
            raise InvalidTransition(
                f"order {self.order_number} is not on hold",
                entity="order",
                entity_id=self.order_number,
            )
        self.hold = HoldRecord(
            reason=self.hold.reason,
            held_by=self.hold.held_by,
            held_at=self.hold.held_at,
            notes=self.hold.notes,
            released_by=actor_id,
            released_at=now,
        )
        for test_id, result_number in (released_results or {}).items():
            line = self.line_item(test_id)
            if not line.is_terminal:
                line.transition(LineItemStatus.COMPLETED, actor_id, now, f"result {result_number} released")
                logger.info(f"Order {self.order_number} test {test_id} completed on hold release")
        self._touch(now)

    def update_line_item_status(
        self,
        test_id: str,
        new_status: LineItemStatus,
        actor_id: str,
        now: datetime,
        notes: str = None,
    ) -> TestLineItem:
        if self.is_rejected:
            raise InvalidTransition(
                f"order {self.order_number} was rejected",
                entity="order",
                entity_id=self.order_number,
            )
        line = self.line_item(test_id)
        new_status = LineItemStatus(new_status)
        if self.on_hold and new_status != LineItemStatus.CANCELLED:
            raise InvalidTransition(
                f"order {self.order_number} is on hold, only cancellation is allowed",
                entity="order",
                entity_id=self.order_number,
                test=test_id,
            )
        line.transition(new_status, actor_id, now, notes)
        self._touch(now)
        return line

    def cancel(self, actor_id: str, now: datetime, reason: str = None) -> None:
        self._ensure_open("cancel")
        if self.status == OrderStatus.COMPLETED:
            raise InvalidTransition(
                f"order {self.order_number} is already completed",
                entity="order",
                entity_id=self.order_number,
            )
        if self.on_hold:
            self.release_hold(actor_id, now)
        for line in self.line_items:
            if not line.is_terminal:
                line.transition(LineItemStatus.CANCELLED, actor_id, now)
        self.cancelled_by = actor_id
        self.cancelled_at = now
        self.cancellation_reason = reason
        self._touch(now)

    # -- internals ------------------------------------------------------

    def _ensure_open(self, action: str):
        if self.is_rejected or self.status == OrderStatus.CANCELLED:
            raise InvalidTransition(
                f"cannot {action} order {self.order_number} in status {self.status.value}",
                entity="order",
                entity_id=self.order_number,
                status=self.status.value,
            )

    def _touch(self, now: datetime):
        self.updated_at = now
        self.recompute_status(now)

    def recompute_status(self, now: datetime) -> OrderStatus:
        previous = self.status
        self.status = derive_order_status(
            (line.status for line in self.line_items),
            has_accession=self.accession_number is not None,
            rejected=self.is_rejected,
            on_hold=self.on_hold,
        )
        if self.status == OrderStatus.COMPLETED and self.actual_completion is None:
            self.actual_completion = now
        if self.status != previous:
            logger.info(f"Order {self.order_number} status {previous.value} -> {self.status.value}")
            self.events.append(
                OrderStatusChanged(
                    order_number=self.order_number,
                    previous_status=previous.value,
                    status=self.status.value,
                    changed_at=now,
                )
            )
        return self.status
