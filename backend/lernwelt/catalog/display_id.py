"""
Human-readable display IDs: ``<GradeCode>_<SubjectCode>_<Sequence>``.

    >>> build_prefix("Klasse 2", "Mathematik")
    'K2_MAT'
"""

import re
from typing import Iterable, Optional

SUBJECT_CODES = {
    "mathematik": "MAT",
    "mathe": "MAT",
    "deutsch": "DEU",
    "sachunterricht": "SAC",
    "englisch": "ENG",
    "vietnamesisch": "VIE",
    "kunst": "KUN",
    "musik": "MUS",
    "sport": "SPO",
    "religion": "REL",
    "ethik": "ETH",
}
GENERIC_SUBJECT = "GEN"
UNKNOWN_GRADE = "KX"

_DIGITS = re.compile(r"\d+")


def grade_code(grade: Optional[str]) -> str:
    """``K`` + first integer in the grade, ``KX`` if there is none."""
    match = _DIGITS.search(grade or "")
    if not match:
        return UNKNOWN_GRADE
    return f"K{int(match.group())}"


def subject_code(subject: Optional[str]) -> str:
    return SUBJECT_CODES.get((subject or "").strip().lower(), GENERIC_SUBJECT)


def build_prefix(grade: Optional[str], subject: Optional[str]) -> str:
    return f"{grade_code(grade)}_{subject_code(subject)}"


def next_display_id(
    grade: Optional[str],
    subject: Optional[str],
    existing: Iterable[Optional[str]],
) -> str:
    """
    Smallest unused positive sequence for this prefix.

    Gaps left by deleted tasks are reused.
    """
    prefix = build_prefix(grade, subject)
    pattern = re.compile(rf"^{re.escape(prefix)}_(\d+)$")
    used = set()
    for display_id in existing:
        match = pattern.match(display_id or "")
        if match:
            used.add(int(match.group(1)))

    sequence = 1
    while sequence in used:
        sequence += 1
    return f"{prefix}_{sequence}"
