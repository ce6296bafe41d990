"""
Registrar - Read Model Projections

Projections build denormalized read models from domain events so that
queries never touch aggregates.

EnrollmentProjection keeps one EnrollmentView row per enrollment. Rows
remember the aggregate version of the last event applied to them; an
event that is not newer is a duplicate (or stale) delivery and is
ignored, which makes the projection safe under at-least-once dispatch.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Tuple

from core.validation import term_sort_key
from db.interfaces import IReadStore
from domain.dispatcher import DomainEventDispatcher, IEventHandler
from domain.entities import (
    DomainEvent,
    EnrollmentRecord,
    EnrollmentStatus,
    EnrollmentWithdrawn,
    Grade,
    GradeAssigned,
    StudentEnrolled,
)


logger = logging.getLogger("registrar.projections")


@dataclass(frozen=True)
class EnrollmentView:
    """Query-optimized row for one enrollment."""
    id: str
    student_id: str
    course_id: str
    offering_id: str
    term: str
    credit_hours: int
    status: str
    enrolled_at: datetime
    updated_at: datetime
    grade: Optional[str] = None
    version: int = 0

    @property
    def term_order(self) -> Tuple[int, int]:
        """Chronological ordering key for the term."""
        return term_sort_key(self.term)

    @property
    def is_graded(self) -> bool:
        return self.grade is not None

    def to_record(self) -> EnrollmentRecord:
        return EnrollmentRecord(
            enrollment_id=self.id,
            course_id=self.course_id,
            term=self.term,
            credit_hours=self.credit_hours,
            grade=Grade(self.grade) if self.grade else None,
            status=EnrollmentStatus(self.status),
        )


class EnrollmentProjection(IEventHandler):
    """
    Projection maintaining EnrollmentView rows.

    Handles StudentEnrolled, GradeAssigned and EnrollmentWithdrawn.
    """

    def __init__(self, store: IReadStore[EnrollmentView]) -> None:
        self._store = store

    def register(self, dispatcher: DomainEventDispatcher) -> None:
        """Subscribe to the events this projection consumes."""
        for event_type in (StudentEnrolled, GradeAssigned, EnrollmentWithdrawn):
            dispatcher.register(event_type, self)

    async def handle(self, event: DomainEvent) -> None:
        if isinstance(event, StudentEnrolled):
            await self._on_enrolled(event)
        elif isinstance(event, GradeAssigned):
            await self._on_graded(event)
        elif isinstance(event, EnrollmentWithdrawn):
            await self._on_withdrawn(event)

    async def _current(self, enrollment_id: str, event: DomainEvent) -> Optional[EnrollmentView]:
        """The row to update, or None when the event should be skipped."""
        view = await self._store.get(enrollment_id)
        if view is None:
            logger.warning(
                f"{event.event_type} for unknown enrollment {enrollment_id}, skipping"
            )
            return None
        if view.version >= event.aggregate_version:
            logger.debug(
                f"Ignoring {event.event_type} v{event.aggregate_version} "
                f"for {enrollment_id} at v{view.version}"
            )
            return None
        return view

    async def _on_enrolled(self, event: StudentEnrolled) -> None:
        existing = await self._store.get(event.enrollment_id)
        if existing is not None and existing.version >= event.aggregate_version:
            logger.debug(f"Duplicate StudentEnrolled for {event.enrollment_id}")
            return

        await self._store.upsert(EnrollmentView(
            id=event.enrollment_id,
            student_id=event.student_id,
            course_id=event.course_id,
            offering_id=event.offering_id,
            term=event.term,
            credit_hours=event.credit_hours,
            status=EnrollmentStatus.ACTIVE.value,
            enrolled_at=event.occurred_at,
            updated_at=event.occurred_at,
            version=event.aggregate_version,
        ))

    async def _on_graded(self, event: GradeAssigned) -> None:
        view = await self._current(event.enrollment_id, event)
        if view is None:
            return
        await self._store.upsert(replace(
            view,
            status=EnrollmentStatus.COMPLETED.value,
            grade=event.grade,
            updated_at=event.occurred_at,
            version=event.aggregate_version,
        ))

    async def _on_withdrawn(self, event: EnrollmentWithdrawn) -> None:
        view = await self._current(event.enrollment_id, event)
        if view is None:
            return
        await self._store.upsert(replace(
            view,
            status=EnrollmentStatus.WITHDRAWN.value,
            updated_at=event.occurred_at,
            version=event.aggregate_version,
        ))
