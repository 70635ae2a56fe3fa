"""Catalog test metadata as seen by the lifecycle engine."""
import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Tuple


class CatalogKind(str, enum.Enum):
    """Which catalog a test reference resolved in. Stored on every line item."""
    MOLECULAR = "molecular"
    CONVENTIONAL = "conventional"


DEFAULT_TURNAROUND_HOURS = 24


@dataclass(frozen=True)
class CatalogTest:
    test_id: str
    kind: CatalogKind
    code: str
    name: str
    price: Decimal
    turnaround_hours: int = DEFAULT_TURNAROUND_HOURS
    targets: Tuple[str, ...] = field(default_factory=tuple)
    resistance_markers: Tuple[str, ...] = field(default_factory=tuple)
