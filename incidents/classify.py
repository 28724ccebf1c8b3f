from __future__ import annotations

import re
from typing import Dict, Literal, Optional

Severity = Literal["low", "medium", "high", "critical"]
InstitutionType = Literal["elementary", "middle", "high", "university"]

SEVERITY_LEVELS = ("critical", "high", "medium", "low")
INSTITUTION_TYPES = ("elementary", "middle", "high", "university")

SEVERITY_LABELS: Dict[str, str] = {
    "low": "Low",
    "medium": "Medium",
    "high": "High",
    "critical": "Critical",
}

INSTITUTION_TYPE_LABELS: Dict[str, str] = {
    "elementary": "Elementary School",
    "middle": "Middle School",
    "high": "High School",
    "university": "University",
}

DEFAULT_HIGH_GRADE = 12

_DIGITS = re.compile(r"\d+")


def classify_severity(casualties: int, killed: int, injured: int) -> Severity:
    """Map casualty counts to a severity level; the first matching rule wins."""
    if killed > 0:
        return "critical"
    if casualties >= 10 or injured >= 10:
        return "high"
    if casualties >= 3 or injured >= 3:
        return "medium"
    return "low"


def parse_grade(value: object, default: int) -> int:
    """First run of digits in a grade label ("K" -> default, "12" -> 12)."""
    if value is None:
        return default
    match = _DIGITS.search(str(value))
    if not match:
        return default
    return int(match.group(0))


def classify_institution_type(
    school_type: Optional[str],
    low_grade: Optional[str],
    high_grade: Optional[str],
) -> InstitutionType:
    """Classify a school from its type label and grade span.

    Only the high grade decides between elementary/middle/high. The low grade is
    part of the grade span (see `grade_span`) but never changes the result.
    """
    label = (school_type or "").lower()
    if "university" in label or "college" in label:
        return "university"

    high = parse_grade(high_grade, DEFAULT_HIGH_GRADE)
    if high <= 5:
        return "elementary"
    if high <= 8:
        return "middle"
    return "high"


def grade_span(low_grade: Optional[str], high_grade: Optional[str]) -> str:
    """Display form of a grade range, e.g. "K-5" -> "0-5"."""
    return f"{parse_grade(low_grade, 0)}-{parse_grade(high_grade, DEFAULT_HIGH_GRADE)}"


def severity_label(value: str) -> str:
    return SEVERITY_LABELS.get(value, value)


def institution_type_label(value: str) -> str:
    return INSTITUTION_TYPE_LABELS.get(value, value)
