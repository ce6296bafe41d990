"""
Registrar - GPA Calculation

Credit-weighted grade point average over a student's graded records.

Only letter grades count. Pass/fail, incomplete, withdrawn and audit
grades are filtered out before weighting. "No GPA" (nothing countable)
is reported as None, which is distinct from a 0.000 GPA.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional

from domain.entities import EnrollmentRecord, Grade


GPA_PRECISION = Decimal("0.001")

GRADE_POINTS: Dict[Grade, Decimal] = {
    Grade.A: Decimal("4.0"),
    Grade.A_MINUS: Decimal("3.7"),
    Grade.B_PLUS: Decimal("3.3"),
    Grade.B: Decimal("3.0"),
    Grade.B_MINUS: Decimal("2.7"),
    Grade.C_PLUS: Decimal("2.3"),
    Grade.C: Decimal("2.0"),
    Grade.C_MINUS: Decimal("1.7"),
    Grade.D_PLUS: Decimal("1.3"),
    Grade.D: Decimal("1.0"),
    Grade.F: Decimal("0.0"),
}


def grade_points(grade: Grade) -> Optional[Decimal]:
    """Points for a grade on the 4.0 scale, or None if it does not count."""
    return GRADE_POINTS.get(grade)


def counts_toward_gpa(record: EnrollmentRecord) -> bool:
    return record.grade is not None and record.grade in GRADE_POINTS


def countable_records(records: Iterable[EnrollmentRecord]) -> List[EnrollmentRecord]:
    return [r for r in records if counts_toward_gpa(r)]


def compute_cumulative_gpa(records: Iterable[EnrollmentRecord]) -> Optional[Decimal]:
    """
    Compute the credit-weighted GPA of a sequence of records.

    Args:
        records: Graded enrollment records, in any order

    Returns:
        GPA rounded half away from zero to 3 decimal places, or None when
        no record counts (or the countable records carry no credit hours)
    """
    counted = countable_records(records)
    if not counted:
        return None

    total_credits = sum(r.credit_hours for r in counted)
    if total_credits <= 0:
        return None

    weighted = sum(
        (GRADE_POINTS[r.grade] * r.credit_hours for r in counted),
        Decimal("0"),
    )
    gpa = weighted / Decimal(total_credits)
    return gpa.quantize(GPA_PRECISION, rounding=ROUND_HALF_UP)


def compute_term_gpa(records: Iterable[EnrollmentRecord], term: str) -> Optional[Decimal]:
    """GPA restricted to the records of one term."""
    return compute_cumulative_gpa(r for r in records if r.term == term)


def attempted_credit_hours(records: Iterable[EnrollmentRecord]) -> int:
    """Credit hours of the records that count toward GPA."""
    return sum(r.credit_hours for r in countable_records(records))
