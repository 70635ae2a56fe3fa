import abc
from typing import List, Optional, Set

from sqlalchemy import select

from lims.domain.order import Order, OrderStatus
from lims.domain.patient import Patient
from lims.domain.result import Result, ResultStatus
from lims.domain.specimen import SpecimenAccession


class AbstractRepository(abc.ABC):
    """Tracks every aggregate it hands out so the unit of work can collect events."""

    def __init__(self):
        self.seen = set()  # type: Set

    def add(self, aggregate):
        self._add(aggregate)
        self.seen.add(aggregate)

    def get(self, key):
        aggregate = self._get(key)
        if aggregate:
            self.seen.add(aggregate)
        return aggregate

    def _track(self, aggregates: List) -> List:
        for aggregate in aggregates:
            self.seen.add(aggregate)
        return aggregates

    @abc.abstractmethod
    def _add(self, aggregate):
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, key):
        raise NotImplementedError


class AbstractOrderRepository(AbstractRepository):
    def list(self, status: OrderStatus = None, patient_id: str = None) -> List[Order]:
        return self._track(self._list(status=status, patient_id=patient_id))

    def get_by_accession(self, accession_number: str) -> Optional[Order]:
        order = self._get_by_accession(accession_number)
        if order:
            self.seen.add(order)
        return order

    @abc.abstractmethod
    def _list(self, status, patient_id) -> List[Order]:
        raise NotImplementedError

    @abc.abstractmethod
    def _get_by_accession(self, accession_number) -> Optional[Order]:
        raise NotImplementedError


class AbstractResultRepository(AbstractRepository):
    def for_order(self, order_number: str) -> List[Result]:
        return self._track(self._list(order_number=order_number))

    def for_patient(self, patient_id: str) -> List[Result]:
        return self._track(self._list(patient_id=patient_id))

    def active_for_test(self, order_number: str, test_id: str) -> Optional[Result]:
        for result in self.for_order(order_number):
            if result.test_id == test_id and result.status != ResultStatus.CANCELLED:
                return result
        return None

    @abc.abstractmethod
    def _list(self, order_number=None, patient_id=None) -> List[Result]:
        raise NotImplementedError


class SqlAlchemyOrderRepository(AbstractOrderRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, order):
        self.session.add(order)

    def _get(self, order_number):
        return self.session.execute(
            select(Order).filter_by(order_number=order_number)
        ).scalar_one_or_none()

    def _get_by_accession(self, accession_number):
        return self.session.execute(
            select(Order).filter_by(accession_number=accession_number)
        ).scalar_one_or_none()

    def _list(self, status=None, patient_id=None):
        query = select(Order)
        if status is not None:
            query = query.filter_by(status=status)
        if patient_id is not None:
            query = query.filter_by(patient_id=patient_id)
        return list(self.session.execute(query.order_by(Order.order_number)).scalars())


class SqlAlchemySpecimenRepository(AbstractRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, record):
        self.session.add(record)

    def _get(self, order_number):
        return self.session.execute(
            select(SpecimenAccession).filter_by(order_number=order_number)
        ).scalar_one_or_none()


class SqlAlchemyResultRepository(AbstractResultRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, result):
        self.session.add(result)

    def _get(self, result_number):
        return self.session.execute(
            select(Result).filter_by(result_number=result_number)
        ).scalar_one_or_none()

    def _list(self, order_number=None, patient_id=None):
        query = select(Result)
        if order_number is not None:
            query = query.filter_by(order_number=order_number)
        if patient_id is not None:
            query = query.filter_by(patient_id=patient_id)
        return list(self.session.execute(query.order_by(Result.result_number)).scalars())


class SqlAlchemyPatientRepository:
    """Patients are owned elsewhere; the engine only checks they exist."""

    def __init__(self, session):
        self.session = session

    def get(self, patient_id) -> Optional[Patient]:
        return self.session.get(Patient, patient_id)
