"""Unit tests for mapping database failures onto engine errors"""
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from lims.service_layer.unit_of_work import translate_store_error
from shared.domain.exceptions import ConcurrentModification, StoreUnavailable


class FakeDriverError(Exception):
    def __init__(self, message, pgcode=None):
        super().__init__(message)
        self.pgcode = pgcode


@pytest.mark.parametrize("pgcode", ["40001", "40P01"])
def test_serialization_failures_are_concurrent_modifications(pgcode):
    error = OperationalError(
        "UPDATE sequence_counters SET value=value + 1",
        {},
        FakeDriverError("could not serialize access due to concurrent update", pgcode),
    )

    translated = translate_store_error(error)

    assert isinstance(translated, ConcurrentModification)
    assert translated.http_status == 409
    assert translated.detail["sqlstate"] == pgcode


def test_connection_failure_is_store_unavailable():
    error = OperationalError("SELECT 1", {}, FakeDriverError("connection refused", "08006"))

    translated = translate_store_error(error)

    assert isinstance(translated, StoreUnavailable)
    assert translated.http_status == 503


def test_lost_version_check_and_duplicate_key_are_concurrent_modifications():
    assert isinstance(translate_store_error(StaleDataError("0 rows matched")), ConcurrentModification)
    duplicate = IntegrityError("INSERT INTO results", {}, FakeDriverError("duplicate key", "23505"))
    assert isinstance(translate_store_error(duplicate), ConcurrentModification)


def test_other_errors_are_left_alone():
    assert translate_store_error(ValueError("boom")) is None
