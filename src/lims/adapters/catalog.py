import abc
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select

from lims.adapters import orm
from lims.domain.catalog import CatalogKind, CatalogTest
from shared.domain.exceptions import InvalidTestReference, TestNotFound

logger = logging.getLogger(__name__)


class AbstractCatalog(abc.ABC):
    """Read-only lookup against one test catalog."""

    kind: CatalogKind

    @abc.abstractmethod
    def find(self, test_id: str) -> Optional[CatalogTest]:
        raise NotImplementedError


class SqlAlchemyCatalog(AbstractCatalog):
    def __init__(self, session, kind: CatalogKind):
        self.session = session
        self.kind = kind
        self.table = orm.pcr_tests if kind == CatalogKind.MOLECULAR else orm.tests

    def find(self, test_id):
        row = self.session.execute(
            select(self.table).where(
                self.table.c.test_id == test_id,
                self.table.c.active.is_(True),
            )
        ).mappings().first()
        if row is None:
            return None
        return CatalogTest(
            test_id=row["test_id"],
            kind=self.kind,
            code=row["code"],
            name=row["name"],
            price=Decimal(row["price"]),
            turnaround_hours=row["turnaround_hours"],
            targets=tuple(row.get("targets") or ()),
            resistance_markers=tuple(row.get("resistance_markers") or ()),
        )


class TestReferenceResolver:
    """
    Resolves a test id against the molecular catalog first, then the
    conventional one. The hit is tagged with the catalog it came from.
    """

    __test__ = False

    def __init__(self, molecular: AbstractCatalog, conventional: AbstractCatalog):
        self.catalogs = (molecular, conventional)

    def resolve(self, test_id: str) -> CatalogTest:
        for catalog in self.catalogs:
            test = catalog.find(test_id)
            if test is not None:
                logger.debug(f"Resolved test {test_id} in {catalog.kind.value} catalog")
                return test
        raise TestNotFound(test_id)

    def resolve_all(self, test_ids: Iterable[str]) -> Dict[str, CatalogTest]:
        """Resolve every id or fail listing all ids that resolve nowhere."""
        resolved = {}
        unknown = []  # type: List[str]
        for test_id in test_ids:
            try:
                resolved[test_id] = self.resolve(test_id)
            except TestNotFound:
                unknown.append(test_id)
        if unknown:
            logger.warning(f"Unknown test references: {unknown}")
            raise InvalidTestReference(unknown)
        return resolved
