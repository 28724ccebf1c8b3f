import pytest

from incidents.classify import (
    classify_institution_type,
    classify_severity,
    grade_span,
    institution_type_label,
    parse_grade,
    severity_label,
)


@pytest.mark.parametrize(
    "casualties,killed,injured",
    [(0, 1, 0), (1, 1, 0), (50, 3, 47), (0, 2, 0), (12, 1, 11)],
)
def test_any_death_is_critical(casualties, killed, injured):
    assert classify_severity(casualties, killed, injured) == "critical"


@pytest.mark.parametrize(
    "casualties,injured,expected",
    [
        (10, 0, "high"),
        (0, 10, "high"),
        (25, 25, "high"),
        (9, 9, "medium"),
        (3, 0, "medium"),
        (0, 3, "medium"),
        (2, 2, "low"),
        (0, 0, "low"),
        (1, 1, "low"),
    ],
)
def test_severity_thresholds_without_deaths(casualties, injured, expected):
    assert classify_severity(casualties, 0, injured) == expected


def test_casualties_and_injuries_are_not_reconciled():
    # casualties says 10 even though nobody was killed or injured
    assert classify_severity(10, 0, 0) == "high"


def test_university_label_overrides_grades():
    assert classify_institution_type("University of X", "K", "5") == "university"
    assert classify_institution_type("Community COLLEGE", "9", "12") == "university"


@pytest.mark.parametrize(
    "high_grade,expected",
    [("5", "elementary"), ("05", "elementary"), ("6", "middle"), ("8", "middle"), ("9", "high"), ("12", "high")],
)
def test_high_grade_decides_level(high_grade, expected):
    assert classify_institution_type("public", "K", high_grade) == expected


@pytest.mark.parametrize("high_grade", [None, "", "PK", "Ungraded"])
def test_missing_high_grade_defaults_to_high(high_grade):
    assert classify_institution_type("public", None, high_grade) == "high"


def test_low_grade_never_changes_result():
    assert classify_institution_type("public", "K", "5") == classify_institution_type("public", "4", "5")


def test_classification_is_stable():
    args = ("Middle", "6", "8")
    assert classify_institution_type(*args) == classify_institution_type(*args) == "middle"


def test_parse_grade_takes_first_digit_run():
    assert parse_grade("Grade 10-12", 0) == 10
    assert parse_grade("K", 0) == 0
    assert parse_grade(None, 12) == 12


def test_grade_span():
    assert grade_span("K", "5") == "0-5"
    assert grade_span(None, None) == "0-12"


def test_labels():
    assert severity_label("critical") == "Critical"
    assert institution_type_label("high") == "High School"
    assert institution_type_label("other") == "other"
