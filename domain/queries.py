"""
Registrar - Queries and Query Handlers

Read-side requests. Handlers only touch the enrollment read store; they
never load aggregates, never mutate state and never raise domain events.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Type

from config import PolicySnapshot
from core.errors import FieldError
from core.validation import (
    normalize_term,
    optional_identifier,
    optional_term,
    require_choice,
    require_identifier,
)
from db.interfaces import IReadStore, Page, PageRequest, SortOrder
from db.projections import EnrollmentView
from domain.entities import EnrollmentStatus
from domain.gpa import attempted_credit_hours, compute_cumulative_gpa, compute_term_gpa
from domain.mediator import IQueryHandler, Query, Validator
from domain.specifications import EnrollmentSpecBuilder


# Public sort names mapped to EnrollmentView attributes
SORTABLE_FIELDS: Dict[str, str] = {
    "enrolled_at": "enrolled_at",
    "term": "term_order",
    "course_id": "course_id",
    "credit_hours": "credit_hours",
    "status": "status",
}

DEFAULT_SORT_FIELD = "enrolled_at"


# =============================================================================
# QUERIES
# =============================================================================


@dataclass(frozen=True)
class GetEnrollmentsQuery(Query[Page[EnrollmentView]]):
    """
    Filtered, sorted, paginated enrollment listing.

    All filters are optional and combine with AND. page and page_size are
    clamped into range instead of being rejected.
    """
    student_id: Optional[str] = None
    course_id: Optional[str] = None
    term: Optional[str] = None
    status: Optional[str] = None
    enrolled_from: Optional[datetime] = None
    enrolled_to: Optional[datetime] = None
    sort_by: str = DEFAULT_SORT_FIELD
    descending: bool = True
    page: int = 1
    page_size: Optional[int] = None


@dataclass(frozen=True)
class GetCumulativeGpaQuery(Query["GpaSummary"]):
    """GPA of one student, cumulative or restricted to a term."""
    student_id: str
    term: Optional[str] = None


@dataclass(frozen=True)
class GpaSummary:
    student_id: str
    gpa: Optional[Decimal]
    attempted_credit_hours: int
    graded_count: int
    term: Optional[str] = None


# =============================================================================
# VALIDATORS
# =============================================================================


def validate_get_enrollments(query: GetEnrollmentsQuery) -> List[FieldError]:
    errors = (
        optional_identifier("student_id", query.student_id)
        + optional_identifier("course_id", query.course_id)
        + optional_term("term", query.term)
        + require_choice("sort_by", query.sort_by, SORTABLE_FIELDS)
    )
    if query.status is not None:
        errors += require_choice("status", query.status, [s.value for s in EnrollmentStatus])
    if (
        query.enrolled_from is not None
        and query.enrolled_to is not None
        and query.enrolled_from > query.enrolled_to
    ):
        errors.append(FieldError("enrolled_from", "must not be after enrolled_to"))
    return errors


def validate_get_cumulative_gpa(query: GetCumulativeGpaQuery) -> List[FieldError]:
    return require_identifier("student_id", query.student_id) + optional_term("term", query.term)


QUERY_VALIDATORS: Dict[Type, List[Validator]] = {
    GetEnrollmentsQuery: [validate_get_enrollments],
    GetCumulativeGpaQuery: [validate_get_cumulative_gpa],
}


def _canonical(term: Optional[str]) -> Optional[str]:
    return normalize_term(term) if term is not None else None


# =============================================================================
# HANDLERS
# =============================================================================


class GetEnrollmentsHandler(IQueryHandler[GetEnrollmentsQuery, Page[EnrollmentView]]):
    """
    Applies filters, then a stable sort on the requested field with the
    enrollment id as tie-break, then the page window.
    """

    def __init__(
        self,
        store: IReadStore[EnrollmentView],
        policy: Callable[[], PolicySnapshot],
    ) -> None:
        self._store = store
        self._policy = policy

    async def handle(self, query: GetEnrollmentsQuery) -> Page[EnrollmentView]:
        policy = self._policy()
        spec = (
            EnrollmentSpecBuilder()
            .for_student(query.student_id)
            .for_course(query.course_id)
            .in_term(_canonical(query.term))
            .with_status(query.status)
            .enrolled_between(query.enrolled_from, query.enrolled_to)
            .build()
        )
        page_request = PageRequest.clamped(
            query.page,
            query.page_size,
            default_page_size=policy.default_page_size,
            max_page_size=policy.max_page_size,
        )
        sort = SortOrder(field=SORTABLE_FIELDS[query.sort_by], descending=query.descending)
        return await self._store.find_page(spec, page_request, sort)


class GetCumulativeGpaHandler(IQueryHandler[GetCumulativeGpaQuery, GpaSummary]):

    def __init__(self, store: IReadStore[EnrollmentView]) -> None:
        self._store = store

    async def handle(self, query: GetCumulativeGpaQuery) -> GpaSummary:
        spec = (
            EnrollmentSpecBuilder()
            .for_student(query.student_id)
            .in_term(_canonical(query.term))
            .graded()
            .build()
        )
        records = [row.to_record() for row in await self._store.find(spec)]

        if query.term is not None:
            gpa = compute_term_gpa(records, _canonical(query.term))
        else:
            gpa = compute_cumulative_gpa(records)

        return GpaSummary(
            student_id=query.student_id,
            gpa=gpa,
            attempted_credit_hours=attempted_credit_hours(records),
            graded_count=len(records),
            term=_canonical(query.term),
        )
