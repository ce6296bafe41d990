"""
Registrar - Read-Side Specifications

Composable filters over EnrollmentView rows, built from the equality and
range criteria of GetEnrollmentsQuery.

Usage:
    from domain.specifications import EnrollmentSpecBuilder

    spec = (EnrollmentSpecBuilder()
        .for_student("S1")
        .in_term("FALL2024")
        .build())

    page = await read_store.find_page(spec, page_request, sort)
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from db.interfaces import ISpecification, TrueSpecification
from db.projections import EnrollmentView


# =============================================================================
# ENROLLMENT VIEW SPECIFICATIONS
# =============================================================================


@dataclass
class EnrollmentByStudentSpec(ISpecification[EnrollmentView]):
    """Enrollments of one student."""
    student_id: str

    def is_satisfied_by(self, entity: EnrollmentView) -> bool:
        return entity.student_id == self.student_id

    def to_query_params(self) -> Dict[str, Any]:
        return {"student_id": self.student_id}


@dataclass
class EnrollmentByCourseSpec(ISpecification[EnrollmentView]):
    """Enrollments in one course, across offerings."""
    course_id: str

    def is_satisfied_by(self, entity: EnrollmentView) -> bool:
        return entity.course_id == self.course_id

    def to_query_params(self) -> Dict[str, Any]:
        return {"course_id": self.course_id}


@dataclass
class EnrollmentByTermSpec(ISpecification[EnrollmentView]):
    term: str

    def is_satisfied_by(self, entity: EnrollmentView) -> bool:
        return entity.term == self.term

    def to_query_params(self) -> Dict[str, Any]:
        return {"term": self.term}


@dataclass
class EnrollmentByStatusSpec(ISpecification[EnrollmentView]):
    status: str

    def is_satisfied_by(self, entity: EnrollmentView) -> bool:
        return entity.status == self.status

    def to_query_params(self) -> Dict[str, Any]:
        return {"status": self.status}


@dataclass
class EnrolledBetweenSpec(ISpecification[EnrollmentView]):
    """
    Enrollment date within [start, end].

    Either bound may be omitted; both bounds are inclusive.
    """
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def is_satisfied_by(self, entity: EnrollmentView) -> bool:
        if self.start is not None and entity.enrolled_at < self.start:
            return False
        if self.end is not None and entity.enrolled_at > self.end:
            return False
        return True

    def to_query_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if self.start is not None:
            params["enrolled_at__gte"] = self.start.isoformat()
        if self.end is not None:
            params["enrolled_at__lte"] = self.end.isoformat()
        return params


@dataclass
class GradedEnrollmentSpec(ISpecification[EnrollmentView]):
    """Rows carrying a grade."""

    def is_satisfied_by(self, entity: EnrollmentView) -> bool:
        return entity.is_graded

    def to_query_params(self) -> Dict[str, Any]:
        return {"grade__isnull": False}


# =============================================================================
# COMPOSITE SPECIFICATION BUILDER
# =============================================================================


class EnrollmentSpecBuilder:
    """
    Fluent builder for composing enrollment specifications.

    Criteria passed as None are skipped, so query fields can be fed in
    directly.
    """

    def __init__(self) -> None:
        self._specs: List[ISpecification[EnrollmentView]] = []

    def for_student(self, student_id: Optional[str]) -> "EnrollmentSpecBuilder":
        if student_id is not None:
            self._specs.append(EnrollmentByStudentSpec(student_id))
        return self

    def for_course(self, course_id: Optional[str]) -> "EnrollmentSpecBuilder":
        if course_id is not None:
            self._specs.append(EnrollmentByCourseSpec(course_id))
        return self

    def in_term(self, term: Optional[str]) -> "EnrollmentSpecBuilder":
        if term is not None:
            self._specs.append(EnrollmentByTermSpec(term))
        return self

    def with_status(self, status: Optional[str]) -> "EnrollmentSpecBuilder":
        if status is not None:
            self._specs.append(EnrollmentByStatusSpec(status))
        return self

    def enrolled_between(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> "EnrollmentSpecBuilder":
        if start is not None or end is not None:
            self._specs.append(EnrolledBetweenSpec(start, end))
        return self

    def graded(self) -> "EnrollmentSpecBuilder":
        self._specs.append(GradedEnrollmentSpec())
        return self

    def build(self) -> ISpecification[EnrollmentView]:
        """Build the composite specification."""
        if not self._specs:
            return TrueSpecification()

        result = self._specs[0]
        for spec in self._specs[1:]:
            result = result.and_(spec)
        return result
