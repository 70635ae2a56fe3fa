"""Unit tests for payload validation into domain value objects"""
from datetime import datetime, timezone

import pytest

from lims.adapters import codecs
from lims.domain.interpretation import ConventionalOverall, Parameter, ParameterFlag, TargetResult
from lims.domain.order import PhysicianSnapshot
from lims.domain.specimen import CustodyAction, CustodyEntry
from shared.domain.exceptions import ValidationError


def test_parse_result_fields_builds_value_objects():
    fields = codecs.parse_result_fields({
        "parameters": [{"name": "Glucose", "value": 95, "unit": "mg/dL", "reference_range": {"min": 70, "max": 100}}],
        "overall_override": "inconclusive",
        "comments": "fasting",
    })

    [parameter] = fields["parameters"]
    assert isinstance(parameter, Parameter)
    assert parameter.reference_range.max == 100
    assert parameter.flag == ParameterFlag.NORMAL
    assert fields["overall_override"] == ConventionalOverall.INCONCLUSIVE
    assert fields["comments"] == "fasting"


def test_unknown_result_fields_pass_through():
    assert codecs.parse_result_fields({"status": "final"}) == {"status": "final"}


def test_invalid_payload_names_the_field():
    with pytest.raises(ValidationError) as exc_info:
        codecs.parse_result_fields({"target_results": [{"target_name": "RSV"}]})

    assert exc_info.value.field.startswith("target_results")


def test_parse_physician_requires_name():
    assert codecs.parse_physician({"name": "Dr. Grey"}) == PhysicianSnapshot(name="Dr. Grey")
    with pytest.raises(ValidationError):
        codecs.parse_physician({"phone": "555-0100"})


def test_dump_and_load_custody_chain():
    chain = (
        CustodyEntry(
            action=CustodyAction.RECEIVED,
            actor="courier-1",
            timestamp=datetime(2024, 10, 19, 8, 0, tzinfo=timezone.utc),
            location="front desk",
        ),
    )

    dumped = codecs.dump(codecs.CHAIN_OF_CUSTODY, chain)
    assert dumped[0]["action"] == "received"
    assert codecs.adapter_for(codecs.CHAIN_OF_CUSTODY).validate_python(dumped) == chain


def test_target_results_accept_plain_dicts():
    [target] = codecs.parse(codecs.TARGET_RESULTS, [{"target_name": "MRSA", "detected": True, "ct_value": 21.5}])

    assert target == TargetResult(target_name="MRSA", detected=True, ct_value=21.5)
