"""
Atomic per-day sequence counters backing business identifiers.

One row per (kind, day). Minting is a single ``UPDATE ... RETURNING`` or, for
the first number of a day, an ``INSERT ... ON CONFLICT DO UPDATE ...
RETURNING``, so concurrent callers never observe the same value. The row is
seeded from the highest identifier already stored for that day, which keeps
numbering continuous with data written before the counter existed.
"""
import abc
import logging
from datetime import date

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite

from lims.adapters import orm
from lims.domain.identifiers import IdentifierKind, day_prefix, format_identifier, parse_sequence

logger = logging.getLogger(__name__)

_IDENTIFIER_COLUMNS = {
    IdentifierKind.ORDER: orm.orders.c.order_number,
    IdentifierKind.ACCESSION: orm.orders.c.accession_number,
    IdentifierKind.RESULT: orm.results.c.result_number,
}

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class AbstractSequenceCounter(abc.ABC):
    def next_identifier(self, kind: IdentifierKind, day: date) -> str:
        kind = IdentifierKind(kind)
        value = self._increment(kind, day)
        identifier = format_identifier(kind, day, value)
        logger.info(f"Minted {kind.value} identifier {identifier}")
        return identifier

    @abc.abstractmethod
    def _increment(self, kind: IdentifierKind, day: date) -> int:
        raise NotImplementedError


class SqlAlchemySequenceCounter(AbstractSequenceCounter):
    """Counter living in the caller's transaction; rolled back with it."""

    def __init__(self, session):
        self.session = session

    def _increment(self, kind, day):
        counters = orm.sequence_counters
        value = self.session.execute(
            update(counters)
            .where(counters.c.kind == kind.value, counters.c.day == day)
            .values(value=counters.c.value + 1)
            .returning(counters.c.value)
        ).scalar()
        if value is not None:
            return value

        seed = self._highest_existing(kind, day)
        insert = self._insert_for_dialect()
        stmt = insert(counters).values(kind=kind.value, day=day, value=seed + 1)
        stmt = stmt.on_conflict_do_update(
            index_elements=[counters.c.kind, counters.c.day],
            set_={"value": counters.c.value + 1},
        ).returning(counters.c.value)
        return self.session.execute(stmt).scalar_one()

    def _highest_existing(self, kind, day) -> int:
        column = _IDENTIFIER_COLUMNS[kind]
        prefix = day_prefix(kind, day)
        # longest first: sequences widen past 9999
        highest = self.session.execute(
            select(column)
            .where(column.like(f"{prefix}%"))
            .order_by(func.length(column).desc(), column.desc())
            .limit(1)
        ).scalar()
        if highest is None:
            return 0
        return parse_sequence(highest, prefix)

    def _insert_for_dialect(self):
        dialect = self.session.get_bind().dialect.name
        try:
            return _INSERTS[dialect]
        except KeyError:
            raise NotImplementedError(f"no atomic upsert for dialect {dialect}") from None
