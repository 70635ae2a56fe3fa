import enum
import logging
from dataclasses import asdict, dataclass, field, is_dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from lims.domain import interpretation as rules
from lims.domain.catalog import CatalogKind
from lims.domain.events import CriticalValuesDetected, ResultAmended, ResultFinalized
from lims.domain.interpretation import (
    ConventionalOverall,
    CriticalValue,
    MolecularOverall,
    TargetInterpretation,
    TargetResult,
)
from shared.domain.exceptions import InvalidTransition, NotApproved, NotReviewed, ValidationError

logger = logging.getLogger(__name__)


class ResultStatus(str, enum.Enum):
    PRELIMINARY = "preliminary"
    FINAL = "final"
    AMENDED = "amended"
    CANCELLED = "cancelled"


class Susceptibility(str, enum.Enum):
    SUSCEPTIBLE = "Susceptible"
    INTERMEDIATE = "Intermediate"
    RESISTANT = "Resistant"
    NOT_TESTED = "Not Tested"


class ControlResult(str, enum.Enum):
    PASS = "Pass"
    FAIL = "Fail"
    INVALID = "Invalid"


@dataclass(frozen=True)
class SusceptibilityResult:
    antibiotic: str
    interpretation: Susceptibility
    mic_value: Optional[float] = None
    mic_unit: Optional[str] = None


@dataclass(frozen=True)
class QualityControl:
    internal_control_result: Optional[ControlResult] = None
    internal_control_ct: Optional[float] = None
    controls_passed: bool = True
    instrument_id: Optional[str] = None
    run_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class TreatmentSuggestions:
    """Operator-entered antibiotic guidance. Never computed."""
    preferred: Tuple[str, ...] = ()
    alternative: Tuple[str, ...] = ()
    avoid: Tuple[str, ...] = ()
    notes: Optional[str] = None


@dataclass(frozen=True)
class Amendment:
    reason: str
    actor: str
    timestamp: datetime
    previous_values: Dict[str, Any] = field(default_factory=dict)
    new_values: Dict[str, Any] = field(default_factory=dict)


AMENDABLE_FIELDS = frozenset({
    "parameters",
    "target_results",
    "resistance_results",
    "susceptibility_results",
    "quality_control",
    "treatment_suggestions",
    "interpretation",
    "recommendations",
    "comments",
    "overall_override",
})

AUDITED_STATUSES = frozenset({ResultStatus.FINAL, ResultStatus.AMENDED})


def to_primitive(value):
    """Plain JSON-compatible snapshot of a result field value."""
    if is_dataclass(value):
        return to_primitive(asdict(value))
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_primitive(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_primitive(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class Result:
    """
    Clinical output for one test-line-item.

    A result is either conventional (named parameters flagged against
    reference ranges) or molecular (per-target detections, resistance markers,
    susceptibilities and a QC block). Released results only change through
    ``amend``, which appends to ``amendments``.
    """

    def __init__(
        self,
        result_number: str,
        order_number: str,
        patient_id: str,
        test_id: str,
        kind: CatalogKind,
        performed_by: str,
        performed_at: datetime,
        test_name: str = None,
        parameters=(),
        target_results=(),
        resistance_results=(),
        susceptibility_results=(),
        quality_control: QualityControl = None,
        treatment_suggestions: TreatmentSuggestions = None,
        interpretation: str = None,
        recommendations: str = None,
        comments: str = None,
        overall_override: ConventionalOverall = None,
    ):
        self.result_number = result_number
        self.order_number = order_number
        self.patient_id = patient_id
        self.test_id = test_id
        self.test_name = test_name
        self.kind = CatalogKind(kind)
        self.status = ResultStatus.PRELIMINARY
        self.parameters = tuple(parameters)
        self.target_results = tuple(target_results)
        self.resistance_results = tuple(resistance_results)
        self.susceptibility_results = tuple(susceptibility_results)
        self.quality_control = quality_control
        self.treatment_suggestions = treatment_suggestions
        self.interpretation = interpretation
        self.recommendations = recommendations
        self.comments = comments
        self.overall_override = ConventionalOverall(overall_override) if overall_override else None
        self.conventional_overall = None  # type: Optional[ConventionalOverall]
        self.molecular_overall = None  # type: Optional[MolecularOverall]
        self.pathogens_detected = ()  # type: Tuple[str, ...]
        self.resistance_detected = ()  # type: Tuple[str, ...]
        self.critical_values = ()  # type: Tuple[CriticalValue, ...]
        self.amendments = ()  # type: Tuple[Amendment, ...]
        self.performed_by = performed_by
        self.performed_at = performed_at
        self.reviewed_by = None  # type: Optional[str]
        self.reviewed_at = None  # type: Optional[datetime]
        self.review_notes = None  # type: Optional[str]
        self.approved_by = None  # type: Optional[str]
        self.approved_at = None  # type: Optional[datetime]
        self.finalized_by = None  # type: Optional[str]
        self.reported_at = None  # type: Optional[datetime]
        self.cancelled_by = None  # type: Optional[str]
        self.cancelled_at = None  # type: Optional[datetime]
        self.cancellation_reason = None  # type: Optional[str]
        self.created_at = performed_at
        self.updated_at = performed_at
        self.events = []  # type: List

        self._check_shape()
        self._interpret(performed_at)

    def __repr__(self):
        return f"<Result {self.result_number} {self.status.value}>"

    def __eq__(self, other):
        if not isinstance(other, Result):
            return False
        return other.result_number == self.result_number

    def __hash__(self):
        return hash(self.result_number)

    @property
    def overall_result(self) -> Optional[str]:
        if self.kind == CatalogKind.MOLECULAR:
            return self.molecular_overall.value if self.molecular_overall else None
        return self.conventional_overall.value if self.conventional_overall else None

    @property
    def is_released(self) -> bool:
        return self.status in AUDITED_STATUSES

    # -- workflow -------------------------------------------------------

    def review(self, actor_id: str, now: datetime, notes: str = None):
        self._require_preliminary("review")
        if self.approved_by is not None:
            raise InvalidTransition(
                f"result {self.result_number} is already approved",
                entity="result",
                entity_id=self.result_number,
            )
        self.reviewed_by = actor_id
        self.reviewed_at = now
        self.review_notes = notes
        self.updated_at = now

    def approve(self, actor_id: str, now: datetime):
        self._require_preliminary("approve")
        if self.reviewed_by is None:
            raise NotReviewed(
                f"result {self.result_number} has not been reviewed",
                entity="result",
                entity_id=self.result_number,
                field="reviewed_by",
            )
        if self.approved_by is not None:
            raise InvalidTransition(
                f"result {self.result_number} is already approved",
                entity="result",
                entity_id=self.result_number,
            )
        self.approved_by = actor_id
        self.approved_at = now
        self.updated_at = now

    def finalize(self, actor_id: str, now: datetime):
        self._require_preliminary("finalize")
        if self.approved_by is None:
            raise NotApproved(
                f"result {self.result_number} has not been approved",
                entity="result",
                entity_id=self.result_number,
                field="approved_by",
            )
        self.status = ResultStatus.FINAL
        self.finalized_by = actor_id
        self.reported_at = now
        self.updated_at = now
        self.events.append(
            ResultFinalized(
                result_number=self.result_number,
                order_number=self.order_number,
                test_id=self.test_id,
                finalized_by=actor_id,
                finalized_at=now,
            )
        )

    def cancel(self, actor_id: str, now: datetime, reason: str = None):
        self._require_preliminary("cancel")
        self.status = ResultStatus.CANCELLED
        self.cancelled_by = actor_id
        self.cancelled_at = now
        self.cancellation_reason = reason
        self.updated_at = now

    def amend(self, reason: str, changes: Dict[str, Any], actor_id: str, now: datetime):
        """
        Apply ``changes`` (field name -> new value).

        Released results get an audit entry holding the previous and new
        values of exactly the changed fields and move to ``amended``.
        Preliminary results are rewritten in place.
        """
        if self.status == ResultStatus.CANCELLED:
            raise InvalidTransition(
                f"result {self.result_number} is cancelled",
                entity="result",
                entity_id=self.result_number,
            )
        if not changes:
            raise ValidationError("nothing to amend", field="changes", entity="result", entity_id=self.result_number)
        unknown = sorted(set(changes) - AMENDABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"fields cannot be amended: {', '.join(unknown)}",
                field=unknown[0],
                entity="result",
                entity_id=self.result_number,
            )
        audited = self.is_released
        if audited and not (reason and reason.strip()):
            raise ValidationError("an amendment needs a reason", field="reason", entity="result", entity_id=self.result_number)

        previous = {name: to_primitive(getattr(self, name)) for name in changes}
        for name, value in changes.items():
            if isinstance(value, list):
                value = tuple(value)
            setattr(self, name, value)
        self._check_shape()
        self._interpret(now)
        self.updated_at = now

        if not audited:
            logger.info(f"Result {self.result_number} rewritten before release: {sorted(changes)}")
            return

        amendment = Amendment(
            reason=reason,
            actor=actor_id,
            timestamp=now,
            previous_values=previous,
            new_values={name: to_primitive(getattr(self, name)) for name in changes},
        )
        self.amendments = self.amendments + (amendment,)
        self.status = ResultStatus.AMENDED
        self.events.append(
            ResultAmended(
                result_number=self.result_number,
                order_number=self.order_number,
                reason=reason,
                amended_by=actor_id,
                amended_at=now,
                fields=sorted(changes),
            )
        )

    # -- internals ------------------------------------------------------

    def _require_preliminary(self, action: str):
        if self.status != ResultStatus.PRELIMINARY:
            raise InvalidTransition(
                f"cannot {action} result {self.result_number} in status {self.status.value}",
                entity="result",
                entity_id=self.result_number,
                status=self.status.value,
            )

    def _check_shape(self):
        if self.kind == CatalogKind.MOLECULAR:
            if not self.target_results:
                raise ValidationError(
                    "a molecular result needs at least one target result",
                    field="target_results",
                    entity="result",
                    entity_id=self.result_number,
                )
            if self.parameters:
                raise ValidationError(
                    "a molecular result does not take parameters",
                    field="parameters",
                    entity="result",
                    entity_id=self.result_number,
                )
            low, high = rules.CT_VALUE_RANGE
            for target in self.target_results:
                if target.ct_value is not None and not low <= target.ct_value <= high:
                    raise ValidationError(
                        f"ct value of {target.target_name} outside {low}-{high}",
                        field="target_results",
                        entity="result",
                        entity_id=self.result_number,
                    )
        else:
            if not self.parameters:
                raise ValidationError(
                    "a conventional result needs at least one parameter",
                    field="parameters",
                    entity="result",
                    entity_id=self.result_number,
                )
            if self.target_results or self.resistance_results:
                raise ValidationError(
                    "a conventional result does not take target or resistance results",
                    field="target_results",
                    entity="result",
                    entity_id=self.result_number,
                )

    def _interpret(self, now: datetime):
        previous_critical = {cv.name for cv in self.critical_values}

        if self.kind == CatalogKind.MOLECULAR:
            self.target_results = tuple(_with_interpretation(t) for t in self.target_results)
            self.molecular_overall = rules.determine_overall_status(self.target_results)
            self.pathogens_detected = tuple(rules.detected_pathogens(self.target_results))
            self.resistance_detected = tuple(rules.resistance_profile(self.resistance_results))
            self.critical_values = rules.find_critical_values(targets=self.target_results)
        else:
            try:
                self.parameters = rules.flag_parameters(self.parameters)
            except ValidationError as e:
                e.detail.update(entity="result", id=self.result_number)
                raise
            self.conventional_overall = self.overall_override or rules.conventional_overall(self.parameters)
            self.critical_values = rules.find_critical_values(parameters=self.parameters)

        new_critical = [cv.name for cv in self.critical_values if cv.name not in previous_critical]
        if new_critical:
            logger.warning(f"Result {self.result_number}: critical values {new_critical}")
            self.events.append(
                CriticalValuesDetected(
                    result_number=self.result_number,
                    order_number=self.order_number,
                    patient_id=self.patient_id,
                    values=new_critical,
                    detected_at=now,
                )
            )


def _with_interpretation(target: TargetResult) -> TargetResult:
    if target.interpretation is not None:
        return target
    return replace(
        target,
        interpretation=TargetInterpretation.DETECTED if target.detected else TargetInterpretation.NOT_DETECTED,
    )
