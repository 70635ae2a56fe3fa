"""
Specimen accession record: the physical sample behind an order.

States::

    pending -> received -> accessioned -> consumed
    pending/received -> hold -> (back to pending/received)
    pending/received/hold -> rejected

Chain-of-custody entries and aliquots are tuples of frozen records that only
ever grow.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from lims.domain.order import RejectionReason, SpecimenCondition, SpecimenType
from shared.domain.exceptions import AlreadyAccessioned, InvalidTransition, ValidationError

logger = logging.getLogger(__name__)


class SpecimenState(str, enum.Enum):
    PENDING = "pending"
    RECEIVED = "received"
    ACCESSIONED = "accessioned"
    REJECTED = "rejected"
    HOLD = "hold"
    CONSUMED = "consumed"


class CustodyAction(str, enum.Enum):
    RECEIVED = "received"
    ACCESSIONED = "accessioned"
    TRANSFERRED = "transferred"
    PROCESSED = "processed"
    STORED = "stored"
    DISCARDED = "discarded"
    REJECTED = "rejected"
    HELD = "held"
    RELEASED = "released"


# actions an operator may log directly; the rest are side effects of transitions
MANUAL_CUSTODY_ACTIONS = frozenset({
    CustodyAction.TRANSFERRED,
    CustodyAction.PROCESSED,
    CustodyAction.STORED,
})


class StorageTemperature(str, enum.Enum):
    ROOM = "room"
    REFRIGERATED = "refrigerated"
    FROZEN = "frozen"
    ULTRA_LOW = "-80"


@dataclass(frozen=True)
class CustodyEntry:
    action: CustodyAction
    actor: str
    timestamp: datetime
    location: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Aliquot:
    aliquot_id: str
    volume: float
    unit: str
    created_by: str
    created_at: datetime
    location: Optional[str] = None


class SpecimenAccession:
    def __init__(
        self,
        order_number: str,
        specimen_type: SpecimenType = None,
        barcode: str = None,
    ):
        self.order_number = order_number
        self.specimen_type = specimen_type
        self.barcode = barcode
        self.state = SpecimenState.PENDING
        self.accession_number = None  # type: Optional[str]
        self.accessioned_by = None  # type: Optional[str]
        self.accessioned_at = None  # type: Optional[datetime]
        self.received_by = None  # type: Optional[str]
        self.received_at = None  # type: Optional[datetime]
        self.condition = None  # type: Optional[SpecimenCondition]
        self.rejection_reason = None  # type: Optional[RejectionReason]
        self.rejection_comments = None  # type: Optional[str]
        self.hold_reason = None  # type: Optional[str]
        self.storage_location = None  # type: Optional[str]
        self.storage_temperature = None  # type: Optional[StorageTemperature]
        self.chain_of_custody = ()  # type: Tuple[CustodyEntry, ...]
        self.aliquots = ()  # type: Tuple[Aliquot, ...]
        self.updated_at = None  # type: Optional[datetime]
        self.events = []  # type: List

    def __repr__(self):
        return f"<SpecimenAccession {self.order_number} {self.state.value}>"

    def __eq__(self, other):
        if not isinstance(other, SpecimenAccession):
            return False
        return other.order_number == self.order_number

    def __hash__(self):
        return hash(self.order_number)

    def receive(self, actor_id: str, now: datetime, location: str = None, notes: str = None):
        self._require(SpecimenState.PENDING, action="receive")
        self.state = SpecimenState.RECEIVED
        self.received_by = actor_id
        self.received_at = now
        self._append_custody(CustodyAction.RECEIVED, actor_id, now, location, notes)

    def accession(
        self,
        accession_number: str,
        actor_id: str,
        now: datetime,
        condition: SpecimenCondition = SpecimenCondition.GOOD,
        location: str = None,
        notes: str = None,
    ):
        if self.accession_number is not None:
            raise AlreadyAccessioned(
                f"specimen of order {self.order_number} is already accessioned as {self.accession_number}",
                entity="specimen",
                entity_id=self.order_number,
                field="accession_number",
            )
        self._require(SpecimenState.PENDING, SpecimenState.RECEIVED, action="accession")
        if self.received_at is None:
            self.received_by = actor_id
            self.received_at = now
        self.state = SpecimenState.ACCESSIONED
        self.accession_number = accession_number
        self.accessioned_by = actor_id
        self.accessioned_at = now
        self.condition = SpecimenCondition(condition or SpecimenCondition.GOOD)
        self._append_custody(CustodyAction.ACCESSIONED, actor_id, now, location, notes)

    def reject(self, reason: RejectionReason, actor_id: str, now: datetime, comments: str = None):
        self._require(SpecimenState.PENDING, SpecimenState.RECEIVED, SpecimenState.HOLD, action="reject")
        self.state = SpecimenState.REJECTED
        self.rejection_reason = RejectionReason(reason)
        self.rejection_comments = comments
        self._append_custody(CustodyAction.REJECTED, actor_id, now, notes=comments)

    def hold(self, reason: str, actor_id: str, now: datetime, notes: str = None):
        self._require(SpecimenState.PENDING, SpecimenState.RECEIVED, action="hold")
        self.state = SpecimenState.HOLD
        self.hold_reason = reason
        self._append_custody(CustodyAction.HELD, actor_id, now, notes=notes or reason)

    def release_hold(self, actor_id: str, now: datetime, notes: str = None):
        self._require(SpecimenState.HOLD, action="release")
        self.state = SpecimenState.RECEIVED if self.received_at else SpecimenState.PENDING
        self.hold_reason = None
        self._append_custody(CustodyAction.RELEASED, actor_id, now, notes=notes)

    def record_custody(
        self,
        action: CustodyAction,
        actor_id: str,
        now: datetime,
        location: str = None,
        notes: str = None,
    ):
        action = CustodyAction(action)
        if action not in MANUAL_CUSTODY_ACTIONS:
            raise ValidationError(
                f"custody action {action.value} is recorded by its own transition",
                field="action",
                entity="specimen",
                entity_id=self.order_number,
            )
        self._require(
            SpecimenState.RECEIVED,
            SpecimenState.ACCESSIONED,
            SpecimenState.HOLD,
            action=f"record {action.value} for",
        )
        self._append_custody(action, actor_id, now, location, notes)

    def store(self, location: str, temperature: StorageTemperature, actor_id: str, now: datetime, notes: str = None):
        self._require(SpecimenState.RECEIVED, SpecimenState.ACCESSIONED, SpecimenState.HOLD, action="store")
        if not location:
            raise ValidationError("storage needs a location", field="location", entity="specimen", entity_id=self.order_number)
        self.storage_location = location
        self.storage_temperature = StorageTemperature(temperature)
        self._append_custody(CustodyAction.STORED, actor_id, now, location, notes)

    def create_aliquot(self, volume: float, unit: str, actor_id: str, now: datetime, location: str = None) -> Aliquot:
        self._require(SpecimenState.ACCESSIONED, action="aliquot")
        if volume is None or volume <= 0:
            raise ValidationError("aliquot volume must be positive", field="volume", entity="specimen", entity_id=self.order_number)
        aliquot = Aliquot(
            aliquot_id=f"{self.accession_number}-{len(self.aliquots) + 1}",
            volume=volume,
            unit=unit,
            created_by=actor_id,
            created_at=now,
            location=location,
        )
        self.aliquots = self.aliquots + (aliquot,)
        self.updated_at = now
        return aliquot

    def consume(self, actor_id: str, now: datetime, notes: str = None):
        self._require(SpecimenState.ACCESSIONED, action="consume")
        self.state = SpecimenState.CONSUMED
        self._append_custody(CustodyAction.DISCARDED, actor_id, now, self.storage_location, notes)

    def _require(self, *states: SpecimenState, action: str):
        if self.state not in states:
            raise InvalidTransition(
                f"cannot {action} specimen of order {self.order_number} in state {self.state.value}",
                entity="specimen",
                entity_id=self.order_number,
                state=self.state.value,
            )

    def _append_custody(self, action, actor_id, now, location=None, notes=None):
        if self.chain_of_custody and now < self.chain_of_custody[-1].timestamp:
            raise ValidationError(
                "chain-of-custody entries must be time ordered",
                field="timestamp",
                entity="specimen",
                entity_id=self.order_number,
            )
        entry = CustodyEntry(action=action, actor=actor_id, timestamp=now, location=location, notes=notes)
        self.chain_of_custody = self.chain_of_custody + (entry,)
        self.updated_at = now
        logger.info(f"Specimen {self.order_number}: custody {action.value} by {actor_id}")
