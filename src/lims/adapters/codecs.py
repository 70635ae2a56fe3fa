"""
pydantic type adapters for the value objects embedded in aggregates.

Used two ways: by the ORM to store tuples of frozen dataclasses as JSON
columns, and by handlers to validate raw command payloads into the same
value objects.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from lims.domain.interpretation import (
    ConventionalOverall,
    CriticalValue,
    Parameter,
    ResistanceResult,
    TargetResult,
)
from lims.domain.order import PhysicianSnapshot
from lims.domain.result import (
    Amendment,
    QualityControl,
    SusceptibilityResult,
    TreatmentSuggestions,
)
from lims.domain.specimen import Aliquot, CustodyEntry
from shared.domain.exceptions import ValidationError

logger = logging.getLogger(__name__)

PARAMETERS = Tuple[Parameter, ...]
TARGET_RESULTS = Tuple[TargetResult, ...]
RESISTANCE_RESULTS = Tuple[ResistanceResult, ...]
SUSCEPTIBILITY_RESULTS = Tuple[SusceptibilityResult, ...]
CRITICAL_VALUES = Tuple[CriticalValue, ...]
AMENDMENTS = Tuple[Amendment, ...]
CHAIN_OF_CUSTODY = Tuple[CustodyEntry, ...]
ALIQUOTS = Tuple[Aliquot, ...]
NAMES = Tuple[str, ...]

# result fields that can be supplied on creation or amendment
RESULT_FIELD_TYPES = {
    "parameters": PARAMETERS,
    "target_results": TARGET_RESULTS,
    "resistance_results": RESISTANCE_RESULTS,
    "susceptibility_results": SUSCEPTIBILITY_RESULTS,
    "quality_control": Optional[QualityControl],
    "treatment_suggestions": Optional[TreatmentSuggestions],
    "interpretation": Optional[str],
    "recommendations": Optional[str],
    "comments": Optional[str],
    "overall_override": Optional[ConventionalOverall],
}

_adapters = {}  # type: Dict[Any, TypeAdapter]


def adapter_for(type_) -> TypeAdapter:
    if type_ not in _adapters:
        _adapters[type_] = TypeAdapter(type_)
    return _adapters[type_]


def parse(type_, raw, field: str = None):
    """Validate ``raw`` into ``type_``, raising the engine's ValidationError."""
    try:
        return adapter_for(type_).validate_python(raw)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        where = f"{field}.{location}" if field and location else (field or location)
        logger.warning(f"Rejected payload for {where}: {first['msg']}")
        raise ValidationError(f"invalid {where}: {first['msg']}", field=where) from e


def dump(type_, value):
    return adapter_for(type_).dump_python(value, mode="json")


def parse_physician(raw) -> PhysicianSnapshot:
    return parse(PhysicianSnapshot, raw, field="physician")


def parse_result_fields(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate known result fields. Unknown names pass through untouched so the
    aggregate can report them.
    """
    parsed = {}
    for name, value in raw.items():
        if name in RESULT_FIELD_TYPES:
            parsed[name] = parse(RESULT_FIELD_TYPES[name], value, field=name)
        else:
            parsed[name] = value
    return parsed
