# pylint: disable=attribute-defined-outside-init
from __future__ import annotations
import abc
import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.orm.session import Session

import config
from lims.adapters import repository
from lims.adapters.catalog import SqlAlchemyCatalog, TestReferenceResolver
from lims.adapters.sequence import AbstractSequenceCounter, SqlAlchemySequenceCounter
from lims.domain.catalog import CatalogKind
from shared.domain.exceptions import ConcurrentModification, StoreUnavailable

logger = logging.getLogger(__name__)


class AbstractUnitOfWork(abc.ABC):
    orders: repository.AbstractOrderRepository
    specimens: repository.AbstractRepository
    results: repository.AbstractResultRepository
    patients: repository.SqlAlchemyPatientRepository
    catalog: TestReferenceResolver
    sequences: AbstractSequenceCounter

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args):
        self.rollback()

    def commit(self):
        self._commit()

    def collect_new_events(self):
        for repo in (self.orders, self.specimens, self.results):
            for aggregate in repo.seen:
                while aggregate.events:
                    yield aggregate.events.pop(0)

    @abc.abstractmethod
    def _commit(self):
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self):
        raise NotImplementedError


# serialization_failure, deadlock_detected
SERIALIZATION_FAILURES = frozenset({"40001", "40P01"})


def translate_store_error(error: Exception):
    """Map SQLAlchemy failures onto the engine's typed failures, or None."""
    if isinstance(error, StaleDataError):
        return ConcurrentModification(
            "record was modified by another transaction",
            detail={"reason": str(error)},
        )
    if isinstance(error, IntegrityError):
        return ConcurrentModification(
            "a concurrent write claimed the same key",
            detail={"reason": str(error.orig)},
        )
    if isinstance(error, DBAPIError) and getattr(error.orig, "pgcode", None) in SERIALIZATION_FAILURES:
        return ConcurrentModification(
            "transaction lost a race with a concurrent writer",
            detail={"reason": str(error.orig), "sqlstate": error.orig.pgcode},
        )
    if isinstance(error, (OperationalError, InterfaceError)) or (
        isinstance(error, DBAPIError) and error.connection_invalidated
    ):
        return StoreUnavailable(
            "persistent store is unavailable",
            detail={"reason": str(error.orig)},
        )
    return None


# Counter UPDATEs wait on the row lock and re-read the committed value.
# Aggregate writes are checked through version_id_col.
DEFAULT_SESSION_FACTORY = sessionmaker(
    bind=create_engine(
        config.get_postgres_uri(),
        isolation_level="READ COMMITTED",
    )
)


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    def __init__(self, session_factory=DEFAULT_SESSION_FACTORY):
        self.session_factory = session_factory

    def __enter__(self):
        self.session = self.session_factory()  # type: Session
        self.orders = repository.SqlAlchemyOrderRepository(self.session)
        self.specimens = repository.SqlAlchemySpecimenRepository(self.session)
        self.results = repository.SqlAlchemyResultRepository(self.session)
        self.patients = repository.SqlAlchemyPatientRepository(self.session)
        self.catalog = TestReferenceResolver(
            molecular=SqlAlchemyCatalog(self.session, CatalogKind.MOLECULAR),
            conventional=SqlAlchemyCatalog(self.session, CatalogKind.CONVENTIONAL),
        )
        self.sequences = SqlAlchemySequenceCounter(self.session)
        return super().__enter__()

    def __exit__(self, exc_type, exc, tb):
        super().__exit__(exc_type, exc, tb)
        self.session.close()
        translated = translate_store_error(exc) if exc is not None else None
        if translated is not None:
            logger.error(f"Transaction failed: {translated.message} ({exc_type.__name__})")
            raise translated from exc

    def _commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()
