"""
Day-scoped business identifiers.

All kinds share one scheme: ``<prefix><YYMMDD><sequence>`` with the sequence
zero-padded to four digits (ORD2410190001, ACC2410190001, RES2410190001).
Sequences past 9999 widen instead of wrapping.
"""
import enum
import logging
from datetime import date

logger = logging.getLogger(__name__)

SEQUENCE_WIDTH = 4


class IdentifierKind(str, enum.Enum):
    ORDER = "order"
    ACCESSION = "accession"
    RESULT = "result"

    @property
    def prefix(self) -> str:
        return _PREFIXES[self]


_PREFIXES = {
    IdentifierKind.ORDER: "ORD",
    IdentifierKind.ACCESSION: "ACC",
    IdentifierKind.RESULT: "RES",
}


def day_prefix(kind: IdentifierKind, day: date) -> str:
    return f"{kind.prefix}{day.strftime('%y%m%d')}"


def format_identifier(kind: IdentifierKind, day: date, sequence: int) -> str:
    if sequence < 1:
        raise ValueError(f"sequence must be positive, got {sequence}")
    return f"{day_prefix(kind, day)}{sequence:0{SEQUENCE_WIDTH}d}"


def parse_sequence(identifier: str, prefix: str) -> int:
    """
    Numeric suffix of an identifier sharing ``prefix``.

    Corrupt data yields 0 so minting can always proceed.
    """
    suffix = (identifier or "")[len(prefix):]
    if not identifier or not identifier.startswith(prefix) or not suffix.isdigit():
        logger.warning(f"Unparseable identifier {identifier!r} for prefix {prefix}, treating as 0")
        return 0
    return int(suffix)
