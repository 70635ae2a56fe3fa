# pylint: disable=redefined-outer-name
from decimal import Decimal

import fakeredis
import pytest
from sqlalchemy import create_engine, insert
from sqlalchemy.orm import clear_mappers, sessionmaker
from sqlalchemy.pool import StaticPool

from lims.adapters import orm, redis_adapter

MOLECULAR_TESTS = [
    {
        "test_id": "PCR-UTI",
        "code": "UTI-PCR",
        "name": "Urinary Tract Infection PCR Panel",
        "price": Decimal("120.00"),
        "turnaround_hours": 48,
        "targets": ["Escherichia coli", "MRSA", "Enterococcus faecalis"],
        "resistance_markers": ["mecA", "vanA"],
        "active": True,
    },
    {
        "test_id": "PCR-RESP",
        "code": "RESP-PCR",
        "name": "Respiratory Pathogen Panel",
        "price": Decimal("95.50"),
        "turnaround_hours": 24,
        "targets": ["Influenza A", "RSV"],
        "resistance_markers": [],
        "active": True,
    },
]

CONVENTIONAL_TESTS = [
    {
        "test_id": "CBC",
        "code": "CBC",
        "name": "Complete Blood Count",
        "price": Decimal("25.00"),
        "turnaround_hours": 4,
        "active": True,
    },
    {
        "test_id": "GLU",
        "code": "GLU",
        "name": "Glucose",
        "price": Decimal("10.00"),
        "turnaround_hours": 2,
        "active": True,
    },
    {
        "test_id": "RETIRED",
        "code": "OLD",
        "name": "Retired Assay",
        "price": Decimal("5.00"),
        "turnaround_hours": 24,
        "active": False,
    },
]

PATIENTS = [
    {"patient_id": "P-001", "family_name": "Muster", "given_name": "Anna", "birthdate": "1980-04-12", "gender": "female"},
    {"patient_id": "P-002", "family_name": "Keller", "given_name": "Jonas", "birthdate": "1975-09-30", "gender": "male"},
]


def seed_reference_data(engine):
    with engine.begin() as conn:
        conn.execute(insert(orm.patients), PATIENTS)
        conn.execute(insert(orm.pcr_tests), MOLECULAR_TESTS)
        conn.execute(insert(orm.tests), CONVENTIONAL_TESTS)


@pytest.fixture
def in_memory_db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    orm.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def mappers():
    orm.start_mappers()
    yield
    clear_mappers()


@pytest.fixture
def sqlite_session_factory(in_memory_db, mappers):
    seed_reference_data(in_memory_db)
    yield sessionmaker(bind=in_memory_db)


@pytest.fixture
def file_session_factory(tmp_path, mappers):
    """File backed SQLite shared by several threads."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'lims.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    orm.metadata.create_all(engine)
    seed_reference_data(engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture
def session(sqlite_session_factory):
    session = sqlite_session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    client = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr(redis_adapter, "r", client)
    return client
