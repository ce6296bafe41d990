"""
Custom Hypothesis Strategies for Registrar Data

Provides domain-specific strategies for terms, grades and academic records.
"""
from hypothesis import strategies as st

from core.validation import TERM_SEASON_ORDER
from domain.entities import EnrollmentRecord, EnrollmentStatus, Grade
from domain.gpa import GRADE_POINTS


# =============================================================================
# TERM STRATEGIES
# =============================================================================

SEASONS = sorted(TERM_SEASON_ORDER, key=TERM_SEASON_ORDER.get)


def term_strategy(min_year: int = 2000, max_year: int = 2030):
    """Generate valid term codes such as FALL2024."""
    return st.builds(
        lambda season, year: f"{season}{year}",
        st.sampled_from(SEASONS),
        st.integers(min_value=min_year, max_value=max_year),
    )


# =============================================================================
# GRADE STRATEGIES
# =============================================================================

def grade_strategy(letter_only: bool = False):
    """Generate grades; letter_only restricts to grades counted in GPA."""
    if letter_only:
        return st.sampled_from(sorted(GRADE_POINTS, key=lambda g: g.value))
    return st.sampled_from(list(Grade))


def credit_hours_strategy():
    return st.integers(min_value=1, max_value=6)


# =============================================================================
# ACADEMIC RECORD STRATEGIES
# =============================================================================

@st.composite
def enrollment_record_strategy(draw, letter_only: bool = False):
    """Generate one graded enrollment record."""
    index = draw(st.integers(min_value=0, max_value=10_000))
    return EnrollmentRecord(
        enrollment_id=f"E{index}",
        course_id=f"C{index}",
        term=draw(term_strategy()),
        credit_hours=draw(credit_hours_strategy()),
        grade=draw(grade_strategy(letter_only=letter_only)),
        status=EnrollmentStatus.COMPLETED,
    )


def academic_record_strategy(min_size: int = 0, max_size: int = 20, letter_only: bool = False):
    """Generate a list of graded enrollment records."""
    return st.lists(
        enrollment_record_strategy(letter_only=letter_only),
        min_size=min_size,
        max_size=max_size,
    )


def course_load_strategy(max_courses: int = 12):
    """Credit hours of the courses a student attempts in one term."""
    return st.lists(credit_hours_strategy(), min_size=1, max_size=max_courses)
