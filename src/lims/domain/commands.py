"""Commands accepted by the lifecycle engine."""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from shared.domain.commands import Command


@dataclass
class RequestedTest:
    test_id: str
    priority: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class CreateOrder(Command):
    patient_id: str
    tests: List[RequestedTest]
    physician: Dict[str, Any]
    actor_id: str
    priority: str = "routine"
    medical_office_id: Optional[str] = None
    clinical_info: Optional[str] = None
    specimen_type: Optional[str] = None
    specimen_barcode: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    collection_date: Optional[datetime] = None


@dataclass
class ReceiveSpecimen(Command):
    order_number: str
    actor_id: str
    location: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class AccessionSpecimen(Command):
    order_number: str
    actor_id: str
    condition: str = "good"
    notes: Optional[str] = None
    location: Optional[str] = None


@dataclass
class RejectSpecimen(Command):
    order_number: str
    reason: str
    actor_id: str
    comments: Optional[str] = None


@dataclass
class HoldSpecimen(Command):
    order_number: str
    reason: str
    actor_id: str
    notes: Optional[str] = None


@dataclass
class ReleaseSpecimenHold(Command):
    order_number: str
    actor_id: str
    notes: Optional[str] = None


@dataclass
class RecordCustodyEvent(Command):
    order_number: str
    action: str
    actor_id: str
    location: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class StoreSpecimen(Command):
    order_number: str
    location: str
    temperature: str
    actor_id: str
    notes: Optional[str] = None


@dataclass
class CreateAliquot(Command):
    order_number: str
    volume: float
    unit: str
    actor_id: str
    location: Optional[str] = None


@dataclass
class ConsumeSpecimen(Command):
    order_number: str
    actor_id: str
    notes: Optional[str] = None


@dataclass
class UpdateLineItemStatus(Command):
    order_number: str
    test_id: str
    status: str
    actor_id: str
    notes: Optional[str] = None


@dataclass
class CancelOrder(Command):
    order_number: str
    actor_id: str
    reason: Optional[str] = None


@dataclass
class CreateResult(Command):
    """Raw result payload; nested values are validated by the handler."""
    order_number: str
    test_id: str
    actor_id: str
    parameters: List[Dict[str, Any]] = field(default_factory=list)
    target_results: List[Dict[str, Any]] = field(default_factory=list)
    resistance_results: List[Dict[str, Any]] = field(default_factory=list)
    susceptibility_results: List[Dict[str, Any]] = field(default_factory=list)
    quality_control: Optional[Dict[str, Any]] = None
    treatment_suggestions: Optional[Dict[str, Any]] = None
    interpretation: Optional[str] = None
    recommendations: Optional[str] = None
    comments: Optional[str] = None
    overall_result: Optional[str] = None


@dataclass
class ReviewResult(Command):
    result_number: str
    actor_id: str
    notes: Optional[str] = None


@dataclass
class ApproveResult(Command):
    result_number: str
    actor_id: str


@dataclass
class FinalizeResult(Command):
    result_number: str
    actor_id: str


@dataclass
class AmendResult(Command):
    result_number: str
    reason: str
    changes: Dict[str, Any]
    actor_id: str


@dataclass
class CancelResult(Command):
    result_number: str
    actor_id: str
    reason: Optional[str] = None


@dataclass
class NextIdentifier(Command):
    kind: str
    day: Optional[date] = None
