"""Unit tests for the result aggregate: workflow, interpretation and amendments"""
from datetime import datetime, timedelta, timezone

import pytest

from lims.domain.catalog import CatalogKind
from lims.domain.events import CriticalValuesDetected, ResultAmended, ResultFinalized
from lims.domain.interpretation import (
    ConventionalOverall,
    MolecularOverall,
    Parameter,
    ParameterFlag,
    ReferenceRange,
    TargetInterpretation,
    TargetResult,
)
from lims.domain.result import Result, ResultStatus
from shared.domain.exceptions import InvalidTransition, NotApproved, NotReviewed, ValidationError

NOW = datetime(2024, 10, 19, 12, 0, tzinfo=timezone.utc)


def conventional_result(*parameters, **kwargs):
    return Result(
        result_number="RES2410190001",
        order_number="ORD2410190001",
        patient_id="P-001",
        test_id="GLU",
        kind=CatalogKind.CONVENTIONAL,
        performed_by="tech-1",
        performed_at=NOW,
        parameters=parameters or (
            Parameter(name="Glucose", value=90, unit="mg/dL", reference_range=ReferenceRange(min=70, max=100)),
        ),
        **kwargs,
    )


def molecular_result(*targets):
    return Result(
        result_number="RES2410190002",
        order_number="ORD2410190001",
        patient_id="P-001",
        test_id="PCR-UTI",
        kind=CatalogKind.MOLECULAR,
        performed_by="tech-1",
        performed_at=NOW,
        target_results=targets or (TargetResult(target_name="Escherichia coli", detected=False),),
    )


def released(result):
    result.review("reviewer-1", NOW)
    result.approve("pathologist-1", NOW)
    result.finalize("pathologist-1", NOW)
    result.events.clear()
    return result


# -- interpretation on creation ------------------------------------------


def test_conventional_result_is_flagged_on_creation():
    result = conventional_result(
        Parameter(name="Glucose", value=130, reference_range=ReferenceRange(min=70, max=100)),
    )

    assert result.status == ResultStatus.PRELIMINARY
    assert result.parameters[0].flag == ParameterFlag.HIGH
    assert result.overall_result == ConventionalOverall.ABNORMAL.value
    assert result.critical_values == ()


def test_conventional_overall_override_wins():
    result = conventional_result(overall_override=ConventionalOverall.INCONCLUSIVE)

    assert result.overall_result == "inconclusive"


def test_critical_parameter_raises_event():
    result = conventional_result(
        Parameter(name="Potassium", value=7.1, reference_range=ReferenceRange(min=3.5, max=5.1, critical_high=6.5)),
    )

    assert result.overall_result == "critical"
    [event] = result.events
    assert isinstance(event, CriticalValuesDetected)
    assert event.values == ["Potassium"]


def test_molecular_result_is_classified_and_interpreted():
    result = molecular_result(
        TargetResult(target_name="MRSA", detected=True, ct_value=22.4),
        TargetResult(target_name="Escherichia coli", detected=False),
    )

    assert result.overall_result == MolecularOverall.PARTIALLY_POSITIVE.value
    assert result.pathogens_detected == ("MRSA",)
    assert [t.interpretation for t in result.target_results] == [
        TargetInterpretation.DETECTED,
        TargetInterpretation.NOT_DETECTED,
    ]
    assert [cv.name for cv in result.critical_values] == ["MRSA"]
    assert any(isinstance(e, CriticalValuesDetected) for e in result.events)


def test_molecular_result_needs_targets():
    with pytest.raises(ValidationError):
        Result(
            result_number="RES2410190002",
            order_number="ORD2410190001",
            patient_id="P-001",
            test_id="PCR-UTI",
            kind=CatalogKind.MOLECULAR,
            performed_by="tech-1",
            performed_at=NOW,
        )


def test_ct_value_out_of_range_is_rejected():
    with pytest.raises(ValidationError):
        molecular_result(TargetResult(target_name="RSV", detected=True, ct_value=55))


def test_conventional_result_refuses_targets():
    with pytest.raises(ValidationError):
        conventional_result(target_results=(TargetResult(target_name="RSV", detected=True),))


# -- workflow -------------------------------------------------------------


def test_approve_requires_review():
    result = conventional_result()

    with pytest.raises(NotReviewed):
        result.approve("pathologist-1", NOW)


def test_finalize_requires_approval():
    result = conventional_result()
    result.review("reviewer-1", NOW)

    with pytest.raises(NotApproved):
        result.finalize("pathologist-1", NOW)
    assert result.status == ResultStatus.PRELIMINARY


def test_finalize_releases_result():
    result = conventional_result()
    result.review("reviewer-1", NOW, notes="looks fine")
    result.approve("pathologist-1", NOW + timedelta(minutes=1))
    result.finalize("pathologist-1", NOW + timedelta(minutes=2))

    assert result.status == ResultStatus.FINAL
    assert result.reported_at == NOW + timedelta(minutes=2)
    assert result.finalized_by == "pathologist-1"
    [event] = result.events
    assert isinstance(event, ResultFinalized)
    assert event.test_id == "GLU"


def test_released_result_cannot_be_reviewed_or_finalized_again():
    result = released(conventional_result())

    with pytest.raises(InvalidTransition):
        result.review("reviewer-1", NOW)
    with pytest.raises(InvalidTransition):
        result.finalize("pathologist-1", NOW)


def test_cancel_only_preliminary():
    result = conventional_result()
    result.cancel("tech-1", NOW, reason="wrong sample")
    assert result.status == ResultStatus.CANCELLED

    with pytest.raises(InvalidTransition):
        released(conventional_result()).cancel("tech-1", NOW)


# -- amendments -----------------------------------------------------------


def test_amending_released_result_records_audit_entry():
    result = released(conventional_result())
    later = NOW + timedelta(hours=1)

    result.amend("transcription error", {"comments": "repeat in 3 months"}, "pathologist-2", later)

    assert result.status == ResultStatus.AMENDED
    assert result.comments == "repeat in 3 months"
    [amendment] = result.amendments
    assert amendment.reason == "transcription error"
    assert amendment.actor == "pathologist-2"
    assert amendment.timestamp == later
    assert amendment.previous_values == {"comments": None}
    assert amendment.new_values == {"comments": "repeat in 3 months"}
    [event] = result.events
    assert isinstance(event, ResultAmended)
    assert event.fields == ["comments"]


def test_amending_parameters_reflags_and_records_previous_values():
    result = released(conventional_result())
    changed = (Parameter(name="Glucose", value=45, reference_range=ReferenceRange(min=70, max=100, critical_low=50)),)

    result.amend("analyzer recalibrated", {"parameters": changed}, "pathologist-2", NOW)

    assert result.parameters[0].flag == ParameterFlag.CRITICAL_LOW
    assert result.overall_result == "critical"
    [amendment] = result.amendments
    assert amendment.previous_values["parameters"][0]["value"] == 90
    assert amendment.new_values["parameters"][0]["flag"] == "critical_low"
    assert any(isinstance(e, CriticalValuesDetected) for e in result.events)


def test_each_amendment_appends():
    result = released(conventional_result())
    result.amend("first", {"comments": "a"}, "p-1", NOW)
    result.amend("second", {"comments": "b"}, "p-1", NOW + timedelta(minutes=1))

    assert [a.reason for a in result.amendments] == ["first", "second"]
    assert result.amendments[1].previous_values == {"comments": "a"}


def test_amending_released_result_needs_reason():
    result = released(conventional_result())

    with pytest.raises(ValidationError):
        result.amend("  ", {"comments": "x"}, "p-1", NOW)
    assert result.amendments == ()


def test_preliminary_result_is_rewritten_without_audit():
    result = conventional_result()
    result.amend(None, {"interpretation": "within normal limits"}, "tech-1", NOW)

    assert result.status == ResultStatus.PRELIMINARY
    assert result.interpretation == "within normal limits"
    assert result.amendments == ()


def test_unknown_fields_cannot_be_amended():
    result = released(conventional_result())

    with pytest.raises(ValidationError) as exc_info:
        result.amend("fix", {"patient_id": "P-002"}, "p-1", NOW)
    assert exc_info.value.field == "patient_id"
    assert result.patient_id == "P-001"


def test_cancelled_result_cannot_be_amended():
    result = conventional_result()
    result.cancel("tech-1", NOW)

    with pytest.raises(InvalidTransition):
        result.amend("fix", {"comments": "x"}, "p-1", NOW)
