"""
Result interpretation.

Conventional results are flagged against their reference ranges. Molecular
panels are classified from their per-target detections:

1. any target interpreted ``Invalid``            -> Invalid
2. detected and undetected targets both present  -> Partially Positive
3. every target detected                         -> Positive
4. any target interpreted ``Indeterminate``      -> Indeterminate
5. otherwise                                     -> Negative

Critical values are detected targets whose name contains an entry of the
watch-list (case-insensitive), and conventional parameters flagged beyond
their critical limits.
"""
import enum
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from shared.domain.exceptions import ValidationError


class ParameterFlag(str, enum.Enum):
    NORMAL = "normal"
    HIGH = "high"
    LOW = "low"
    CRITICAL_HIGH = "critical_high"
    CRITICAL_LOW = "critical_low"
    ABNORMAL = "abnormal"


DIRECTIONAL_FLAGS = frozenset({
    ParameterFlag.HIGH,
    ParameterFlag.LOW,
    ParameterFlag.CRITICAL_HIGH,
    ParameterFlag.CRITICAL_LOW,
})
CRITICAL_FLAGS = frozenset({ParameterFlag.CRITICAL_HIGH, ParameterFlag.CRITICAL_LOW})


class ConventionalOverall(str, enum.Enum):
    NORMAL = "normal"
    ABNORMAL = "abnormal"
    INCONCLUSIVE = "inconclusive"
    CRITICAL = "critical"


class MolecularOverall(str, enum.Enum):
    POSITIVE = "Positive"
    NEGATIVE = "Negative"
    INDETERMINATE = "Indeterminate"
    INVALID = "Invalid"
    PARTIALLY_POSITIVE = "Partially Positive"


class TargetInterpretation(str, enum.Enum):
    DETECTED = "Detected"
    NOT_DETECTED = "Not Detected"
    INDETERMINATE = "Indeterminate"
    INVALID = "Invalid"
    INHIBITED = "Inhibited"


class TargetCategory(str, enum.Enum):
    BACTERIA = "bacteria"
    VIRUS = "virus"
    FUNGUS = "fungus"
    PARASITE = "parasite"
    OTHER = "other"


CRITICAL_WATCH_LIST = (
    "MRSA",
    "VRE",
    "CRE",
    "Carbapenem-resistant",
    "ESBL",
    "KPC",
    "NDM",
    "Clostridioides difficile",
)

CT_VALUE_RANGE = (0, 50)


@dataclass(frozen=True)
class ReferenceRange:
    min: Optional[float] = None
    max: Optional[float] = None
    text: Optional[str] = None
    critical_low: Optional[float] = None
    critical_high: Optional[float] = None

    @property
    def has_bounds(self) -> bool:
        return self.min is not None and self.max is not None

    @property
    def is_empty(self) -> bool:
        return all(
            limit is None
            for limit in (self.min, self.max, self.critical_low, self.critical_high)
        )


@dataclass(frozen=True)
class Parameter:
    name: str
    value: Union[float, str, None] = None
    unit: Optional[str] = None
    reference_range: Optional[ReferenceRange] = None
    flag: ParameterFlag = ParameterFlag.NORMAL
    notes: Optional[str] = None


@dataclass(frozen=True)
class TargetResult:
    target_name: str
    detected: bool
    interpretation: Optional[TargetInterpretation] = None
    target_category: Optional[TargetCategory] = None
    ct_value: Optional[float] = None
    clinical_significance: Optional[str] = None


@dataclass(frozen=True)
class ResistanceResult:
    marker_name: str
    detected: bool
    gene: Optional[str] = None
    interpretation: Optional[TargetInterpretation] = None
    implication: Optional[str] = None
    affected_antibiotics: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CriticalValue:
    """A finding that requires urgent clinician notification."""
    name: str
    value: Optional[str] = None
    flag: Optional[str] = None
    requires_notification: bool = True


def numeric_value(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def flag_parameter(parameter: Parameter) -> Parameter:
    """Return the parameter with its flag recomputed from its reference range."""
    flag = ParameterFlag(parameter.flag) if parameter.flag else ParameterFlag.NORMAL
    rr = parameter.reference_range

    if rr is None or rr.is_empty:
        if flag in DIRECTIONAL_FLAGS:
            raise ValidationError(
                f"parameter {parameter.name} is flagged {flag.value} without a reference range",
                field="reference_range",
            )
        return replace(parameter, flag=flag)

    if rr.has_bounds and rr.min > rr.max:
        raise ValidationError(
            f"reference range of {parameter.name} has min above max",
            field="reference_range",
        )

    value = numeric_value(parameter.value)
    if value is None:
        return replace(parameter, flag=flag)

    if rr.critical_low is not None and value < rr.critical_low:
        flag = ParameterFlag.CRITICAL_LOW
    elif rr.critical_high is not None and value > rr.critical_high:
        flag = ParameterFlag.CRITICAL_HIGH
    elif rr.has_bounds:
        if value < rr.min:
            flag = ParameterFlag.LOW
        elif value > rr.max:
            flag = ParameterFlag.HIGH
        else:
            flag = ParameterFlag.NORMAL
    return replace(parameter, flag=flag)


def flag_parameters(parameters: Iterable[Parameter]) -> Tuple[Parameter, ...]:
    return tuple(flag_parameter(p) for p in parameters)


def conventional_overall(parameters: Sequence[Parameter]) -> ConventionalOverall:
    flags = {p.flag for p in parameters}
    if flags & CRITICAL_FLAGS:
        return ConventionalOverall.CRITICAL
    if flags - {ParameterFlag.NORMAL}:
        return ConventionalOverall.ABNORMAL
    return ConventionalOverall.NORMAL


def determine_overall_status(targets: Sequence[TargetResult]) -> MolecularOverall:
    if any(t.interpretation == TargetInterpretation.INVALID for t in targets):
        return MolecularOverall.INVALID
    detected = any(t.detected for t in targets)
    if detected and any(not t.detected for t in targets):
        return MolecularOverall.PARTIALLY_POSITIVE
    if detected:
        return MolecularOverall.POSITIVE
    if any(t.interpretation == TargetInterpretation.INDETERMINATE for t in targets):
        return MolecularOverall.INDETERMINATE
    return MolecularOverall.NEGATIVE


def detected_pathogens(targets: Iterable[TargetResult]) -> List[str]:
    return [t.target_name for t in targets if t.detected]


def resistance_profile(markers: Iterable[ResistanceResult]) -> List[str]:
    return [m.marker_name for m in markers if m.detected]


def is_critical_pathogen(name: str) -> bool:
    lowered = name.lower()
    return any(entry.lower() in lowered for entry in CRITICAL_WATCH_LIST)


def find_critical_values(
    targets: Iterable[TargetResult] = (),
    parameters: Iterable[Parameter] = (),
) -> Tuple[CriticalValue, ...]:
    critical = [
        CriticalValue(name=t.target_name, value=TargetInterpretation.DETECTED.value, flag="watch_list")
        for t in targets
        if t.detected and is_critical_pathogen(t.target_name)
    ]
    critical.extend(
        CriticalValue(
            name=p.name,
            value=None if p.value is None else str(p.value),
            flag=ParameterFlag(p.flag).value,
        )
        for p in parameters
        if p.flag in CRITICAL_FLAGS
    )
    return tuple(critical)
