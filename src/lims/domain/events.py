"""Domain events raised by the order, specimen and result aggregates."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List

from shared.domain.commands import Event


@dataclass
class OrderCreated(Event):
    """Raised once an order has been numbered, priced and persisted."""
    order_number: str
    patient_id: str
    priority: str
    total_amount: str
    test_ids: List[str]
    created_at: datetime


@dataclass
class OrderStatusChanged(Event):
    order_number: str
    previous_status: str
    status: str
    changed_at: datetime


@dataclass
class SpecimenAccessioned(Event):
    order_number: str
    accession_number: str
    condition: str
    accessioned_by: str
    accessioned_at: datetime


@dataclass
class SpecimenRejected(Event):
    order_number: str
    reason: str
    rejected_by: str
    rejected_at: datetime


@dataclass
class SpecimenHeld(Event):
    order_number: str
    reason: str
    held_by: str
    held_at: datetime


@dataclass
class ResultFinalized(Event):
    """Raised when a result is clinically released; completes its line item."""
    result_number: str
    order_number: str
    test_id: str
    finalized_by: str
    finalized_at: datetime


@dataclass
class ResultAmended(Event):
    result_number: str
    order_number: str
    reason: str
    amended_by: str
    amended_at: datetime
    fields: List[str] = field(default_factory=list)


@dataclass
class CriticalValuesDetected(Event):
    """A notification is owed to the ordering clinician. Delivery is not ours."""
    result_number: str
    order_number: str
    patient_id: str
    values: List[str]
    detected_at: datetime
