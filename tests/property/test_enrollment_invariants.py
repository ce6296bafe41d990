"""
Property-Based Tests for Enrollment Invariants

Tests the credit ceiling, seat accounting, GPA bounds and rounding,
term ordering and page windows.
"""
from decimal import ROUND_HALF_UP, Decimal

import pytest
from hypothesis import given, settings, strategies as st
from hypothesis.stateful import RuleBasedStateMachine, invariant, precondition, rule

from core.errors import RegistrarError, RuleViolationError
from core.validation import parse_term, term_sort_key
from db.interfaces import Page
from domain.entities import Course, Student
from domain.gpa import GRADE_POINTS, compute_cumulative_gpa
from tests.property.strategies import (
    academic_record_strategy,
    course_load_strategy,
    term_strategy,
)


pytestmark = pytest.mark.property

TERM = "FALL2024"


def make_course(index: int, credit_hours: int, capacity: int = 100):
    course = Course.create(f"C{index}", f"C{index}", f"Course {index}", credit_hours)
    offering = course.schedule_offering(f"C{index}-{TERM}", TERM, capacity)
    return course, offering


class TestCreditCeilingInvariants:
    """Property-based tests for the per-term credit ceiling."""

    @given(course_load_strategy(), st.integers(min_value=1, max_value=24))
    @settings(max_examples=200)
    def test_load_never_exceeds_ceiling(self, loads, ceiling):
        """Accepted enrollments stay within the ceiling; rejections would have crossed it."""
        student = Student.register("S1", credit_ceiling=ceiling)

        for index, hours in enumerate(loads):
            course, offering = make_course(index, hours)
            before = student.credit_hours_in_term(TERM)
            try:
                student.enroll_in_course(course, offering, TERM)
            except RuleViolationError as e:
                assert e.message == "credit limit exceeded"
                assert before + hours > ceiling
            else:
                assert before + hours <= ceiling

        assert student.credit_hours_in_term(TERM) <= ceiling


class TestGpaInvariants:
    """Property-based tests for GPA calculation."""

    @given(academic_record_strategy())
    @settings(max_examples=200)
    def test_gpa_bounds_and_precision(self, records):
        gpa = compute_cumulative_gpa(records)

        if not any(r.grade in GRADE_POINTS for r in records):
            assert gpa is None
        else:
            assert Decimal("0.000") <= gpa <= Decimal("4.000")
            assert gpa.as_tuple().exponent == -3

    @given(academic_record_strategy(min_size=1, letter_only=True))
    @settings(max_examples=200)
    def test_gpa_matches_weighted_mean(self, records):
        points = sum(GRADE_POINTS[r.grade] * r.credit_hours for r in records)
        hours = sum(r.credit_hours for r in records)
        expected = (points / Decimal(hours)).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP)

        assert compute_cumulative_gpa(records) == expected

    @given(academic_record_strategy())
    def test_order_does_not_matter(self, records):
        assert compute_cumulative_gpa(records) == compute_cumulative_gpa(list(reversed(records)))


class TestTermInvariants:

    @given(term_strategy(), term_strategy())
    def test_sort_key_orders_by_year_then_season(self, first, second):
        (season_a, year_a), (season_b, year_b) = parse_term(first), parse_term(second)

        if year_a != year_b:
            assert (term_sort_key(first) < term_sort_key(second)) == (year_a < year_b)
        elif season_a == season_b:
            assert term_sort_key(first) == term_sort_key(second)


class TestPageInvariants:

    @given(st.integers(min_value=0, max_value=200), st.integers(min_value=1, max_value=50))
    @settings(max_examples=200)
    def test_pages_partition_items(self, total, page_size):
        items = list(range(total))
        first = Page.from_list(items, page=1, page_size=page_size)

        seen = []
        for page in range(1, max(first.total_pages, 1) + 1):
            seen.extend(Page.from_list(items, page=page, page_size=page_size).items)

        assert seen == items
        last = Page.from_list(items, page=max(first.total_pages, 1), page_size=page_size)
        assert not last.has_next


# =============================================================================
# STATEFUL TESTS
# =============================================================================


COURSE_HOURS = [1, 2, 3, 4, 5]
CEILING = 9


class EnrollmentMachine(RuleBasedStateMachine):
    """Random enroll/withdraw sequences against one student and single-seat offerings."""

    def __init__(self) -> None:
        super().__init__()
        self.student = Student.register("S1", credit_ceiling=CEILING)
        self.courses = {}
        for index, hours in enumerate(COURSE_HOURS):
            course, offering = make_course(index, hours, capacity=1)
            self.courses[course.id] = (course, offering)
        self.active = {}

    @rule(index=st.integers(min_value=0, max_value=len(COURSE_HOURS) - 1))
    def enroll(self, index):
        course, offering = self.courses[f"C{index}"]
        try:
            enrollment_id = self.student.enroll_in_course(course, offering, TERM)
        except RegistrarError:
            return
        self.active[course.id] = enrollment_id

    @precondition(lambda self: self.active)
    @rule(data=st.data())
    def withdraw(self, data):
        course_id = data.draw(st.sampled_from(sorted(self.active)))
        _, offering = self.courses[course_id]
        self.student.withdraw(self.active.pop(course_id), offering)

    @invariant()
    def load_within_ceiling(self):
        assert self.student.credit_hours_in_term(TERM) <= CEILING

    @invariant()
    def load_matches_active_enrollments(self):
        expected = sum(self.courses[c][0].credit_hours for c in self.active)
        assert self.student.credit_hours_in_term(TERM) == expected

    @invariant()
    def seats_match_enrollments(self):
        for course_id, (_, offering) in self.courses.items():
            assert offering.enrolled_count == (1 if course_id in self.active else 0)


TestEnrollmentMachine = EnrollmentMachine.TestCase
TestEnrollmentMachine.settings = settings(max_examples=50, stateful_step_count=30)
