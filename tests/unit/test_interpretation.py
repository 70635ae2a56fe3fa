"""Unit tests for reference-range flagging and molecular classification"""
import pytest

from lims.domain.interpretation import (
    ConventionalOverall,
    MolecularOverall,
    Parameter,
    ParameterFlag,
    ReferenceRange,
    ResistanceResult,
    TargetInterpretation,
    TargetResult,
    conventional_overall,
    determine_overall_status,
    detected_pathogens,
    find_critical_values,
    flag_parameter,
    is_critical_pathogen,
    numeric_value,
    resistance_profile,
)
from shared.domain.exceptions import ValidationError

GLUCOSE_RANGE = ReferenceRange(min=70, max=100, critical_low=40, critical_high=400)


@pytest.mark.parametrize(
    "value, expected",
    [
        (85, ParameterFlag.NORMAL),
        (70, ParameterFlag.NORMAL),
        (100, ParameterFlag.NORMAL),
        (65, ParameterFlag.LOW),
        (130, ParameterFlag.HIGH),
        (35, ParameterFlag.CRITICAL_LOW),
        (450, ParameterFlag.CRITICAL_HIGH),
        ("130", ParameterFlag.HIGH),
    ],
)
def test_flag_parameter_against_range(value, expected):
    parameter = Parameter(name="Glucose", value=value, unit="mg/dL", reference_range=GLUCOSE_RANGE)

    assert flag_parameter(parameter).flag == expected


def test_non_numeric_value_keeps_submitted_flag():
    parameter = Parameter(
        name="Appearance",
        value="turbid",
        reference_range=ReferenceRange(min=0, max=1, text="clear"),
        flag=ParameterFlag.ABNORMAL,
    )

    assert flag_parameter(parameter).flag == ParameterFlag.ABNORMAL


def test_directional_flag_without_range_is_rejected():
    with pytest.raises(ValidationError) as exc_info:
        flag_parameter(Parameter(name="Glucose", value=130, flag=ParameterFlag.HIGH))
    assert exc_info.value.field == "reference_range"


def test_free_text_flag_without_range_is_kept():
    parameter = flag_parameter(Parameter(name="Colour", value="amber", flag=ParameterFlag.ABNORMAL))

    assert parameter.flag == ParameterFlag.ABNORMAL


def test_inverted_range_is_rejected():
    with pytest.raises(ValidationError):
        flag_parameter(Parameter(name="Glucose", value=90, reference_range=ReferenceRange(min=100, max=70)))


def test_numeric_value():
    assert numeric_value(" 4.5 ") == 4.5
    assert numeric_value("positive") is None
    assert numeric_value(True) is None
    assert numeric_value(None) is None


def test_conventional_overall():
    normal = Parameter(name="A", flag=ParameterFlag.NORMAL)
    high = Parameter(name="B", flag=ParameterFlag.HIGH)
    critical = Parameter(name="C", flag=ParameterFlag.CRITICAL_LOW)

    assert conventional_overall([normal]) == ConventionalOverall.NORMAL
    assert conventional_overall([normal, high]) == ConventionalOverall.ABNORMAL
    assert conventional_overall([high, critical]) == ConventionalOverall.CRITICAL


def target(name, detected, interpretation=None):
    return TargetResult(target_name=name, detected=detected, interpretation=interpretation)


@pytest.mark.parametrize(
    "targets, expected",
    [
        ([target("E. coli", True), target("RSV", True)], MolecularOverall.POSITIVE),
        ([target("E. coli", True), target("RSV", False)], MolecularOverall.PARTIALLY_POSITIVE),
        ([target("E. coli", False), target("RSV", False)], MolecularOverall.NEGATIVE),
        (
            [target("E. coli", False), target("RSV", False, TargetInterpretation.INDETERMINATE)],
            MolecularOverall.INDETERMINATE,
        ),
        (
            [target("E. coli", True), target("RSV", False, TargetInterpretation.INVALID)],
            MolecularOverall.INVALID,
        ),
    ],
)
def test_determine_overall_status(targets, expected):
    assert determine_overall_status(targets) == expected


def test_detected_pathogens_and_resistance_profile():
    targets = [target("E. coli", True), target("RSV", False), target("MRSA", True)]
    markers = [
        ResistanceResult(marker_name="mecA", detected=True, affected_antibiotics=("oxacillin",)),
        ResistanceResult(marker_name="vanA", detected=False),
    ]

    assert detected_pathogens(targets) == ["E. coli", "MRSA"]
    assert resistance_profile(markers) == ["mecA"]


@pytest.mark.parametrize(
    "name, expected",
    [
        ("MRSA", True),
        ("Methicillin-resistant S. aureus (mrsa)", True),
        ("Clostridioides difficile toxin B", True),
        ("Klebsiella pneumoniae KPC", True),
        ("Escherichia coli", False),
    ],
)
def test_is_critical_pathogen(name, expected):
    assert is_critical_pathogen(name) is expected


def test_find_critical_values_only_reports_detected_targets_and_critical_flags():
    targets = [target("MRSA", True), target("VRE", False), target("E. coli", True)]
    parameters = [
        Parameter(name="Potassium", value=6.9, flag=ParameterFlag.CRITICAL_HIGH),
        Parameter(name="Sodium", value=150, flag=ParameterFlag.HIGH),
    ]

    critical = find_critical_values(targets=targets, parameters=parameters)

    assert [cv.name for cv in critical] == ["MRSA", "Potassium"]
    assert critical[1].value == "6.9"
    assert critical[1].flag == "critical_high"
    assert all(cv.requires_notification for cv in critical)


@pytest.mark.parametrize("value, expected", [(5, ParameterFlag.LOW), (15, ParameterFlag.NORMAL), (25, ParameterFlag.HIGH)])
def test_flagging_without_critical_limits(value, expected):
    parameter = Parameter(name="Iron", value=value, reference_range=ReferenceRange(min=10, max=20))

    assert flag_parameter(parameter).flag == expected


def test_watch_list_matches_detected_targets_by_substring():
    critical = find_critical_values(targets=[target("MRSA screen", True), target("Influenza A", True)])

    assert [cv.name for cv in critical] == ["MRSA screen"]
