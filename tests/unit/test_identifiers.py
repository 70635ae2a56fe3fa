"""Unit tests for day-scoped business identifiers"""
from datetime import date

import pytest

from lims.domain.identifiers import IdentifierKind, day_prefix, format_identifier, parse_sequence

DAY = date(2024, 10, 19)


@pytest.mark.parametrize(
    "kind, expected",
    [
        (IdentifierKind.ORDER, "ORD2410190001"),
        (IdentifierKind.ACCESSION, "ACC2410190001"),
        (IdentifierKind.RESULT, "RES2410190001"),
    ],
)
def test_format_identifier(kind, expected):
    assert format_identifier(kind, DAY, 1) == expected


def test_sequence_widens_past_four_digits():
    assert format_identifier(IdentifierKind.ORDER, DAY, 9999) == "ORD2410199999"
    assert format_identifier(IdentifierKind.ORDER, DAY, 10000) == "ORD24101910000"


def test_sequence_must_be_positive():
    with pytest.raises(ValueError):
        format_identifier(IdentifierKind.RESULT, DAY, 0)


def test_kind_accepts_plain_values():
    assert IdentifierKind("accession").prefix == "ACC"
    assert day_prefix(IdentifierKind.RESULT, DAY) == "RES241019"


def test_parse_sequence():
    assert parse_sequence("ORD2410190042", "ORD241019") == 42
    assert parse_sequence("ORD24101910000", "ORD241019") == 10000


@pytest.mark.parametrize("identifier", [None, "", "ORD241019", "ORD241019XYZ", "ACC2410190042"])
def test_corrupt_identifiers_parse_as_zero(identifier):
    assert parse_sequence(identifier, "ORD241019") == 0
