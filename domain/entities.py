"""
Registrar - Domain Entities

Rich domain model implementing aggregate roots, entities, value objects,
and domain events for student enrollment.

Aggregates:
    - Student: owns its Enrollments; enforces the credit-hour ceiling,
      duplicate enrollment, prerequisite and capacity rules
    - Course: owns its CourseOfferings; enforces capacity and
      non-overlapping schedules per term

Design Principles:
    - Aggregates are consistency boundaries
    - Cross-aggregate references are by identity only
    - Value objects are immutable and self-validating
    - Domain events capture all significant state changes
    - Business rules are encoded in the domain, not services
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
)
from uuid import UUID, uuid4

from core.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    RuleViolationError,
)
from core.validation import normalize_term


MAX_CREDIT_HOURS_PER_TERM = 21


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# VALUE OBJECTS - Immutable, self-validating domain primitives
# =============================================================================


class StudentStatus(str, Enum):
    """Lifecycle status of a student."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    GRADUATED = "graduated"


# Allowed status transitions; GRADUATED is terminal
STUDENT_STATUS_TRANSITIONS: Dict[StudentStatus, frozenset] = {
    StudentStatus.ACTIVE: frozenset({
        StudentStatus.INACTIVE,
        StudentStatus.SUSPENDED,
        StudentStatus.GRADUATED,
    }),
    StudentStatus.INACTIVE: frozenset({StudentStatus.ACTIVE}),
    StudentStatus.SUSPENDED: frozenset({StudentStatus.ACTIVE}),
    StudentStatus.GRADUATED: frozenset(),
}


class EnrollmentStatus(str, Enum):
    """Status of a single enrollment."""
    ACTIVE = "active"
    WITHDRAWN = "withdrawn"
    COMPLETED = "completed"


class CourseStatus(str, Enum):
    """Catalog status of a course."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class Grade(str, Enum):
    """
    Final grades.

    Letter grades A through F sit on the 11-point scale and count toward
    GPA. P/NP (pass/fail), I (incomplete), W (withdrawn) and AU (audit)
    are recorded but excluded from GPA.
    """
    A = "A"
    A_MINUS = "A-"
    B_PLUS = "B+"
    B = "B"
    B_MINUS = "B-"
    C_PLUS = "C+"
    C = "C"
    C_MINUS = "C-"
    D_PLUS = "D+"
    D = "D"
    F = "F"
    PASS = "P"
    NO_PASS = "NP"
    INCOMPLETE = "I"
    WITHDRAWN = "W"
    AUDIT = "AU"

    @property
    def is_letter(self) -> bool:
        """Letter grades are the ones on the grade-point scale."""
        return self in _LETTER_GRADES

    @property
    def satisfies_prerequisite(self) -> bool:
        """A completed course counts as a prerequisite unless failed."""
        return (self.is_letter and self is not Grade.F) or self is Grade.PASS

    @classmethod
    def parse(cls, value: str) -> "Grade":
        """Parse a grade string, case-insensitively."""
        try:
            return cls(value.strip().upper())
        except (ValueError, AttributeError):
            raise ValueError(f"Unknown grade: {value!r}") from None


_LETTER_GRADES = frozenset({
    Grade.A, Grade.A_MINUS,
    Grade.B_PLUS, Grade.B, Grade.B_MINUS,
    Grade.C_PLUS, Grade.C, Grade.C_MINUS,
    Grade.D_PLUS, Grade.D,
    Grade.F,
})


@dataclass(frozen=True, slots=True)
class MeetingSlot:
    """
    A weekly meeting slot.

    Attributes:
        weekday: 0 = Monday ... 6 = Sunday
        start: Start time (inclusive)
        end: End time (exclusive)
    """
    weekday: int
    start: time
    end: time

    def __post_init__(self) -> None:
        if not 0 <= self.weekday <= 6:
            raise ValueError(f"Weekday must be 0-6: {self.weekday}")
        if self.start >= self.end:
            raise ValueError(f"Slot must end after it starts: {self.start}-{self.end}")

    def overlaps(self, other: "MeetingSlot") -> bool:
        return (
            self.weekday == other.weekday
            and self.start < other.end
            and other.start < self.end
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weekday": self.weekday,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MeetingSlot":
        return cls(
            weekday=int(data["weekday"]),
            start=time.fromisoformat(data["start"]),
            end=time.fromisoformat(data["end"]),
        )


@dataclass(frozen=True, slots=True)
class Schedule:
    """The set of weekly meeting slots of an offering."""
    slots: Tuple[MeetingSlot, ...] = ()

    @classmethod
    def of(cls, *slots: MeetingSlot) -> "Schedule":
        return cls(slots=tuple(slots))

    def overlaps(self, other: "Schedule") -> bool:
        return any(a.overlaps(b) for a in self.slots for b in other.slots)

    def to_list(self) -> List[Dict[str, Any]]:
        return [slot.to_dict() for slot in self.slots]

    @classmethod
    def from_list(cls, data: Iterable[Dict[str, Any]]) -> "Schedule":
        return cls(slots=tuple(MeetingSlot.from_dict(d) for d in data))


@dataclass(frozen=True, slots=True)
class EnrollmentRecord:
    """
    One line of a student's academic record.

    The AcademicRecord is not stored on its own; it is the sequence of
    these records derived from enrollment history.
    """
    enrollment_id: str
    course_id: str
    term: str
    credit_hours: int
    grade: Optional[Grade]
    status: EnrollmentStatus = EnrollmentStatus.COMPLETED


# =============================================================================
# DOMAIN EVENTS - Signals of significant state changes
# =============================================================================


@dataclass(frozen=True)
class DomainEvent:
    """
    Base class for domain events.

    Domain events are immutable records of significant occurrences in
    the domain. aggregate_version is the version the emitting aggregate
    reaches when the change is committed, which lets read models discard
    stale or duplicate deliveries.
    """
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=_utcnow)
    aggregate_id: Optional[str] = None
    aggregate_version: int = 0

    @property
    def event_type(self) -> str:
        """Return the event type name."""
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "occurred_at": self.occurred_at.isoformat(),
            "aggregate_id": self.aggregate_id,
            "aggregate_version": self.aggregate_version,
            "data": self._event_data(),
        }

    def _event_data(self) -> Dict[str, Any]:
        """Override in subclasses to provide event-specific data."""
        return {}


# Student Events
@dataclass(frozen=True)
class StudentRegistered(DomainEvent):
    """A new student was registered."""
    student_id: str = ""

    def _event_data(self) -> Dict[str, Any]:
        return {"student_id": self.student_id}


@dataclass(frozen=True)
class StudentStatusChanged(DomainEvent):
    """A student's lifecycle status changed."""
    student_id: str = ""
    previous_status: str = ""
    new_status: str = ""
    reason: Optional[str] = None

    def _event_data(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class StudentEnrolled(DomainEvent):
    """A student enrolled in a course offering for a term."""
    student_id: str = ""
    enrollment_id: str = ""
    course_id: str = ""
    offering_id: str = ""
    term: str = ""
    credit_hours: int = 0

    def _event_data(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "enrollment_id": self.enrollment_id,
            "course_id": self.course_id,
            "offering_id": self.offering_id,
            "term": self.term,
            "credit_hours": self.credit_hours,
        }


@dataclass(frozen=True)
class GradeAssigned(DomainEvent):
    """A grade was assigned (or overwritten) on an enrollment."""
    student_id: str = ""
    enrollment_id: str = ""
    course_id: str = ""
    term: str = ""
    grade: str = ""
    previous_grade: Optional[str] = None
    grader_id: str = ""

    def _event_data(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "enrollment_id": self.enrollment_id,
            "course_id": self.course_id,
            "term": self.term,
            "grade": self.grade,
            "previous_grade": self.previous_grade,
            "grader_id": self.grader_id,
        }


@dataclass(frozen=True)
class EnrollmentWithdrawn(DomainEvent):
    """A student withdrew from an enrollment."""
    student_id: str = ""
    enrollment_id: str = ""
    course_id: str = ""
    offering_id: str = ""
    term: str = ""
    credit_hours: int = 0

    def _event_data(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "enrollment_id": self.enrollment_id,
            "course_id": self.course_id,
            "offering_id": self.offering_id,
            "term": self.term,
            "credit_hours": self.credit_hours,
        }


# Course Events
@dataclass(frozen=True)
class CourseCreated(DomainEvent):
    """A course was added to the catalog."""
    course_id: str = ""
    code: str = ""
    credit_hours: int = 0

    def _event_data(self) -> Dict[str, Any]:
        return {
            "course_id": self.course_id,
            "code": self.code,
            "credit_hours": self.credit_hours,
        }


@dataclass(frozen=True)
class CourseOfferingScheduled(DomainEvent):
    """A course was offered in a term."""
    course_id: str = ""
    offering_id: str = ""
    term: str = ""
    capacity: int = 0

    def _event_data(self) -> Dict[str, Any]:
        return {
            "course_id": self.course_id,
            "offering_id": self.offering_id,
            "term": self.term,
            "capacity": self.capacity,
        }


@dataclass(frozen=True)
class CourseDeactivated(DomainEvent):
    """A course was withdrawn from the catalog."""
    course_id: str = ""

    def _event_data(self) -> Dict[str, Any]:
        return {"course_id": self.course_id}


# =============================================================================
# BASE CLASSES - Entity and AggregateRoot
# =============================================================================


class Entity(ABC):
    """
    Base class for domain entities.

    Entities have identity that persists over time, distinguishing them
    from value objects which are defined solely by their attributes.
    """

    @property
    @abstractmethod
    def id(self) -> str:
        """Unique identifier for this entity."""
        pass

    @property
    def entity_type(self) -> str:
        """Return the type name of this entity."""
        return self.__class__.__name__

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return False
        return type(self) is type(other) and self.id == other.id

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.id))

    def __repr__(self) -> str:
        return f"{self.entity_type}(id={self.id!r})"


class AggregateRoot(Entity, ABC):
    """
    Base class for aggregate roots.

    Aggregate roots are the entry point to a cluster of domain objects.
    They maintain invariants across the aggregate boundary and collect
    domain events when significant state changes occur.

    Versioning:
        version is the persisted version the aggregate was loaded at.
        Mutators never change it; the repository checks it on save and
        advances it once the new state is committed.
    """

    def __init__(self, version: int = 0) -> None:
        self._domain_events: List[DomainEvent] = []
        self._version: int = version
        self._invariant_violations: List[str] = []

    @property
    def version(self) -> int:
        """Current version for optimistic concurrency."""
        return self._version

    @property
    def pending_version(self) -> int:
        """The version this aggregate reaches when its changes commit."""
        return self._version + 1

    @property
    def domain_events(self) -> List[DomainEvent]:
        """Pending domain events to be dispatched."""
        return list(self._domain_events)

    @property
    def has_pending_events(self) -> bool:
        """Check if there are events waiting to be dispatched."""
        return len(self._domain_events) > 0

    def add_domain_event(self, event: DomainEvent) -> None:
        """Add a domain event to be dispatched after commit."""
        self._domain_events.append(event)

    def clear_domain_events(self) -> List[DomainEvent]:
        """Clear and return all pending domain events."""
        events = self._domain_events
        self._domain_events = []
        return events

    def increment_version(self) -> None:
        """Advance the version after a successful save."""
        self._version += 1

    @property
    def is_healthy(self) -> bool:
        """Check if the aggregate is in a consistent state."""
        self._validate_invariants()
        return len(self._invariant_violations) == 0

    @property
    def invariant_violations(self) -> List[str]:
        """Any invariants that are currently violated."""
        self._validate_invariants()
        return list(self._invariant_violations)

    def _validate_invariants(self) -> None:
        """
        Validate all invariants and populate violations list.

        Override in subclasses to add domain-specific invariant checks.
        """
        self._invariant_violations = []

    def _add_invariant_violation(self, violation: str) -> None:
        """Record an invariant violation."""
        if violation not in self._invariant_violations:
            self._invariant_violations.append(violation)

    @property
    def aggregate_type(self) -> str:
        """The type of this aggregate in the domain model."""
        return self.__class__.__name__

    def to_snapshot(self) -> Dict[str, Any]:
        """
        Capture the aggregate's current state.

        Override in subclasses to capture domain-specific state.
        """
        return {
            "aggregate_type": self.aggregate_type,
            "id": self.id,
            "version": self._version,
        }

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "AggregateRoot":
        """Restore an aggregate from a snapshot."""
        raise NotImplementedError(
            f"{cls.__name__} must implement from_snapshot to support snapshots"
        )


# =============================================================================
# CHILD ENTITIES
# =============================================================================


class Enrollment(Entity):
    """
    A student's enrollment in one course offering for one term.

    Owned by the Student aggregate. credit_hours is a snapshot of the
    course's credit hours at enrollment time. Enrollments are never
    deleted, only status-transitioned, so the collection is an audit
    history.
    """

    def __init__(
        self,
        id: str,
        student_id: str,
        course_id: str,
        offering_id: str,
        term: str,
        credit_hours: int,
        status: EnrollmentStatus = EnrollmentStatus.ACTIVE,
        grade: Optional[Grade] = None,
        enrolled_at: Optional[datetime] = None,
        withdrawn_at: Optional[datetime] = None,
        graded_at: Optional[datetime] = None,
        graded_by: Optional[str] = None,
    ) -> None:
        self._id = id
        self._student_id = student_id
        self._course_id = course_id
        self._offering_id = offering_id
        self._term = term
        self._credit_hours = credit_hours
        self._status = status
        self._grade = grade
        self._enrolled_at = enrolled_at or _utcnow()
        self._withdrawn_at = withdrawn_at
        self._graded_at = graded_at
        self._graded_by = graded_by

    @property
    def id(self) -> str:
        return self._id

    @property
    def student_id(self) -> str:
        return self._student_id

    @property
    def course_id(self) -> str:
        return self._course_id

    @property
    def offering_id(self) -> str:
        return self._offering_id

    @property
    def term(self) -> str:
        return self._term

    @property
    def credit_hours(self) -> int:
        return self._credit_hours

    @property
    def status(self) -> EnrollmentStatus:
        return self._status

    @property
    def grade(self) -> Optional[Grade]:
        return self._grade

    @property
    def enrolled_at(self) -> datetime:
        return self._enrolled_at

    @property
    def withdrawn_at(self) -> Optional[datetime]:
        return self._withdrawn_at

    @property
    def graded_at(self) -> Optional[datetime]:
        return self._graded_at

    @property
    def graded_by(self) -> Optional[str]:
        return self._graded_by

    @property
    def is_withdrawn(self) -> bool:
        return self._status is EnrollmentStatus.WITHDRAWN

    @property
    def counts_toward_load(self) -> bool:
        """Withdrawn enrollments free their credit hours."""
        return not self.is_withdrawn

    @property
    def satisfies_prerequisite(self) -> bool:
        return (
            self._status is EnrollmentStatus.COMPLETED
            and self._grade is not None
            and self._grade.satisfies_prerequisite
        )

    def _complete(self, grade: Grade, grader_id: str, at: datetime) -> None:
        self._grade = grade
        self._status = EnrollmentStatus.COMPLETED
        self._graded_at = at
        self._graded_by = grader_id

    def _withdraw(self, at: datetime) -> None:
        self._status = EnrollmentStatus.WITHDRAWN
        self._withdrawn_at = at

    def to_record(self) -> EnrollmentRecord:
        return EnrollmentRecord(
            enrollment_id=self._id,
            course_id=self._course_id,
            term=self._term,
            credit_hours=self._credit_hours,
            grade=self._grade,
            status=self._status,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self._id,
            "student_id": self._student_id,
            "course_id": self._course_id,
            "offering_id": self._offering_id,
            "term": self._term,
            "credit_hours": self._credit_hours,
            "status": self._status.value,
            "grade": self._grade.value if self._grade else None,
            "enrolled_at": self._enrolled_at.isoformat(),
            "withdrawn_at": self._withdrawn_at.isoformat() if self._withdrawn_at else None,
            "graded_at": self._graded_at.isoformat() if self._graded_at else None,
            "graded_by": self._graded_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Enrollment":
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=data["id"],
            student_id=data["student_id"],
            course_id=data["course_id"],
            offering_id=data["offering_id"],
            term=data["term"],
            credit_hours=int(data["credit_hours"]),
            status=EnrollmentStatus(data["status"]),
            grade=Grade(data["grade"]) if data.get("grade") else None,
            enrolled_at=_dt(data.get("enrolled_at")),
            withdrawn_at=_dt(data.get("withdrawn_at")),
            graded_at=_dt(data.get("graded_at")),
            graded_by=data.get("graded_by"),
        )


class CourseOffering(Entity):
    """
    A section of a course in a given term.

    Owned by the Course aggregate. enrolled_count never exceeds capacity.
    """

    def __init__(
        self,
        id: str,
        course_id: str,
        term: str,
        capacity: int,
        instructor_id: Optional[str] = None,
        schedule: Optional[Schedule] = None,
        enrolled_count: int = 0,
    ) -> None:
        if capacity < 0:
            raise ValueError(f"Capacity must be >= 0: {capacity}")
        if not 0 <= enrolled_count <= capacity:
            raise ValueError(
                f"Enrolled count must be within 0..{capacity}: {enrolled_count}"
            )
        self._id = id
        self._course_id = course_id
        self._term = term
        self._capacity = capacity
        self._instructor_id = instructor_id
        self._schedule = schedule or Schedule()
        self._enrolled_count = enrolled_count

    @property
    def id(self) -> str:
        return self._id

    @property
    def course_id(self) -> str:
        return self._course_id

    @property
    def term(self) -> str:
        return self._term

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def instructor_id(self) -> Optional[str]:
        return self._instructor_id

    @property
    def schedule(self) -> Schedule:
        return self._schedule

    @property
    def enrolled_count(self) -> int:
        return self._enrolled_count

    @property
    def has_capacity(self) -> bool:
        return self._enrolled_count < self._capacity

    @property
    def seats_remaining(self) -> int:
        return self._capacity - self._enrolled_count

    def reserve_seat(self) -> None:
        """Take one seat; fails when the offering is full."""
        if not self.has_capacity:
            raise RuleViolationError("capacity exceeded")
        self._enrolled_count += 1

    def release_seat(self) -> None:
        """Give back one seat."""
        if self._enrolled_count <= 0:
            raise InvalidStateError(f"offering {self._id} has no seats to release")
        self._enrolled_count -= 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self._id,
            "course_id": self._course_id,
            "term": self._term,
            "capacity": self._capacity,
            "instructor_id": self._instructor_id,
            "schedule": self._schedule.to_list(),
            "enrolled_count": self._enrolled_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CourseOffering":
        return cls(
            id=data["id"],
            course_id=data["course_id"],
            term=data["term"],
            capacity=int(data["capacity"]),
            instructor_id=data.get("instructor_id"),
            schedule=Schedule.from_list(data.get("schedule", [])),
            enrolled_count=int(data.get("enrolled_count", 0)),
        )


# =============================================================================
# AGGREGATE ROOTS
# =============================================================================


class Student(AggregateRoot):
    """
    Aggregate root for students.

    The student owns its enrollment history. enroll_in_course is the
    single entry point that adds to that history.

    Invariants:
        - Non-withdrawn credit hours per term never exceed the ceiling
        - At most one non-withdrawn enrollment per (course, term)
    """

    def __init__(
        self,
        id: str,
        status: StudentStatus = StudentStatus.ACTIVE,
        enrollments: Iterable[Enrollment] = (),
        credit_ceiling: int = MAX_CREDIT_HOURS_PER_TERM,
        version: int = 0,
    ) -> None:
        super().__init__(version=version)
        self._id = id
        self._status = status
        self._enrollments: List[Enrollment] = list(enrollments)
        self._credit_ceiling = credit_ceiling

    @property
    def id(self) -> str:
        return self._id

    @property
    def status(self) -> StudentStatus:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._status is StudentStatus.ACTIVE

    @property
    def credit_ceiling(self) -> int:
        return self._credit_ceiling

    @property
    def enrollments(self) -> Tuple[Enrollment, ...]:
        """Enrollments in chronological (insertion) order."""
        return tuple(self._enrollments)

    @classmethod
    def register(
        cls,
        student_id: str,
        at: Optional[datetime] = None,
        credit_ceiling: int = MAX_CREDIT_HOURS_PER_TERM,
    ) -> "Student":
        """Factory method to create a new, active student."""
        student = cls(id=student_id, credit_ceiling=credit_ceiling)
        student.add_domain_event(StudentRegistered(
            occurred_at=at or _utcnow(),
            aggregate_id=student_id,
            aggregate_version=student.pending_version,
            student_id=student_id,
        ))
        return student

    @classmethod
    def restore(
        cls,
        student_id: str,
        status: StudentStatus = StudentStatus.ACTIVE,
        enrollments: Iterable[Enrollment] = (),
        version: int = 0,
        credit_ceiling: int = MAX_CREDIT_HOURS_PER_TERM,
    ) -> "Student":
        """
        Rebuild a student in an explicit state, without raising events.

        Used by repositories to rehydrate snapshots and by test fixtures
        that need a student in a particular state.
        """
        return cls(
            id=student_id,
            status=status,
            enrollments=enrollments,
            credit_ceiling=credit_ceiling,
            version=version,
        )

    def with_credit_ceiling(self, credit_ceiling: int) -> "Student":
        """Apply the ceiling from the policy in force for this command."""
        self._credit_ceiling = credit_ceiling
        return self

    # -------------------------------------------------------------------------
    # Queries over the aggregate
    # -------------------------------------------------------------------------

    def enrollment(self, enrollment_id: str) -> Enrollment:
        """Look up an enrollment owned by this student."""
        for enrollment in self._enrollments:
            if enrollment.id == enrollment_id:
                return enrollment
        raise NotFoundError("Enrollment", enrollment_id)

    def credit_hours_in_term(self, term: str) -> int:
        """Credit hours held in a term, excluding withdrawn enrollments."""
        return sum(
            e.credit_hours
            for e in self._enrollments
            if e.term == term and e.counts_toward_load
        )

    def is_enrolled(self, course_id: str, term: str) -> bool:
        """True if a non-withdrawn enrollment exists for (course, term)."""
        return any(
            e.course_id == course_id and e.term == term and not e.is_withdrawn
            for e in self._enrollments
        )

    def has_completed(self, course_id: str) -> bool:
        """True if the course was completed with a prerequisite-satisfying grade."""
        return any(
            e.course_id == course_id and e.satisfies_prerequisite
            for e in self._enrollments
        )

    def missing_prerequisites(self, course: "Course") -> List[str]:
        return [p for p in course.prerequisites if not self.has_completed(p)]

    def academic_record(self) -> List[EnrollmentRecord]:
        """Graded enrollments in chronological order."""
        return [e.to_record() for e in self._enrollments if e.grade is not None]

    def cumulative_gpa(self) -> Optional[Decimal]:
        from domain.gpa import compute_cumulative_gpa

        return compute_cumulative_gpa(self.academic_record())

    # -------------------------------------------------------------------------
    # Mutators
    # -------------------------------------------------------------------------

    def enroll_in_course(
        self,
        course: "Course",
        offering: CourseOffering,
        term: str,
        enrollment_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> str:
        """
        Enroll this student in a course offering for a term.

        The offering must belong to the course and be scheduled for the
        term. Preconditions are then checked in a fixed order and the
        first failure wins:
            1. student is active
            2. no non-withdrawn enrollment for (course, term)
            3. term credit hours plus the course stay within the ceiling
            4. every prerequisite was completed with a passing grade
            5. the offering has a free seat

        Returns:
            The new enrollment's id

        Raises:
            InvalidStateError, ConflictError, RuleViolationError
        """
        term = normalize_term(term)
        if offering.course_id != course.id:
            raise InvalidStateError("offering does not belong to course")
        if offering.term != term:
            raise InvalidStateError("offering not scheduled for term")

        if not self.is_active:
            raise InvalidStateError("student not active")

        if self.is_enrolled(course.id, term):
            raise ConflictError("already enrolled")

        if self.credit_hours_in_term(term) + course.credit_hours > self._credit_ceiling:
            raise RuleViolationError("credit limit exceeded")

        if self.missing_prerequisites(course):
            raise RuleViolationError("prerequisite not met")

        if not offering.has_capacity:
            raise RuleViolationError("capacity exceeded")

        at = at or _utcnow()
        enrollment = Enrollment(
            id=enrollment_id or str(uuid4()),
            student_id=self._id,
            course_id=course.id,
            offering_id=offering.id,
            term=term,
            credit_hours=course.credit_hours,
            enrolled_at=at,
        )
        offering.reserve_seat()
        self._enrollments.append(enrollment)

        self.add_domain_event(StudentEnrolled(
            occurred_at=at,
            aggregate_id=self._id,
            aggregate_version=self.pending_version,
            student_id=self._id,
            enrollment_id=enrollment.id,
            course_id=course.id,
            offering_id=offering.id,
            term=term,
            credit_hours=enrollment.credit_hours,
        ))
        return enrollment.id

    def assign_grade(
        self,
        enrollment_id: str,
        grade: Grade,
        grader_id: str,
        at: Optional[datetime] = None,
    ) -> None:
        """
        Record a final grade and complete the enrollment.

        A second assignment overwrites the first (last write wins);
        duplicate suppression belongs to the command pipeline.
        """
        enrollment = self.enrollment(enrollment_id)
        if enrollment.is_withdrawn:
            raise InvalidStateError("enrollment withdrawn")

        at = at or _utcnow()
        previous = enrollment.grade
        enrollment._complete(grade, grader_id, at)

        self.add_domain_event(GradeAssigned(
            occurred_at=at,
            aggregate_id=self._id,
            aggregate_version=self.pending_version,
            student_id=self._id,
            enrollment_id=enrollment.id,
            course_id=enrollment.course_id,
            term=enrollment.term,
            grade=grade.value,
            previous_grade=previous.value if previous else None,
            grader_id=grader_id,
        ))

    def withdraw(
        self,
        enrollment_id: str,
        offering: CourseOffering,
        at: Optional[datetime] = None,
    ) -> None:
        """
        Withdraw from an active enrollment, freeing its seat and credit hours.

        Raises:
            NotFoundError: enrollment not on this student
            InvalidStateError: already withdrawn or completed
        """
        enrollment = self.enrollment(enrollment_id)
        if enrollment.status is EnrollmentStatus.WITHDRAWN:
            raise InvalidStateError("enrollment already withdrawn")
        if enrollment.status is EnrollmentStatus.COMPLETED:
            raise InvalidStateError("enrollment already completed")
        if offering.id != enrollment.offering_id:
            raise InvalidStateError("offering does not match enrollment")

        at = at or _utcnow()
        offering.release_seat()
        enrollment._withdraw(at)

        self.add_domain_event(EnrollmentWithdrawn(
            occurred_at=at,
            aggregate_id=self._id,
            aggregate_version=self.pending_version,
            student_id=self._id,
            enrollment_id=enrollment.id,
            course_id=enrollment.course_id,
            offering_id=enrollment.offering_id,
            term=enrollment.term,
            credit_hours=enrollment.credit_hours,
        ))

    def change_status(
        self,
        new_status: StudentStatus,
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        """Transition the student's lifecycle status."""
        if new_status is self._status:
            raise InvalidStateError(f"student already {new_status.value}")
        if new_status not in STUDENT_STATUS_TRANSITIONS[self._status]:
            raise InvalidStateError(
                f"cannot change status from {self._status.value} to {new_status.value}"
            )

        previous = self._status
        self._status = new_status
        self.add_domain_event(StudentStatusChanged(
            occurred_at=at or _utcnow(),
            aggregate_id=self._id,
            aggregate_version=self.pending_version,
            student_id=self._id,
            previous_status=previous.value,
            new_status=new_status.value,
            reason=reason,
        ))

    # -------------------------------------------------------------------------
    # Invariants and snapshots
    # -------------------------------------------------------------------------

    def _validate_invariants(self) -> None:
        self._invariant_violations = []

        terms = {e.term for e in self._enrollments}
        for term in sorted(terms):
            load = self.credit_hours_in_term(term)
            if load > self._credit_ceiling:
                self._add_invariant_violation(
                    f"{term}: {load} credit hours exceeds ceiling {self._credit_ceiling}"
                )

        seen = set()
        for e in self._enrollments:
            if e.is_withdrawn:
                continue
            key = (e.course_id, e.term)
            if key in seen:
                self._add_invariant_violation(
                    f"duplicate enrollment for {e.course_id} in {e.term}"
                )
            seen.add(key)

    def to_snapshot(self) -> Dict[str, Any]:
        snapshot = super().to_snapshot()
        snapshot.update({
            "status": self._status.value,
            "credit_ceiling": self._credit_ceiling,
            "enrollments": [e.to_dict() for e in self._enrollments],
        })
        return snapshot

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "Student":
        return cls.restore(
            student_id=snapshot["id"],
            status=StudentStatus(snapshot["status"]),
            enrollments=[Enrollment.from_dict(e) for e in snapshot.get("enrollments", [])],
            version=int(snapshot.get("version", 0)),
            credit_ceiling=int(snapshot.get("credit_ceiling", MAX_CREDIT_HOURS_PER_TERM)),
        )


class Course(AggregateRoot):
    """
    Aggregate root for catalog courses.

    Invariants:
        - credit_hours > 0
        - Every offering has capacity >= 0 and enrolled_count <= capacity
        - No two offerings in the same term have overlapping schedules
    """

    def __init__(
        self,
        id: str,
        code: str,
        title: str,
        credit_hours: int,
        prerequisites: Iterable[str] = (),
        status: CourseStatus = CourseStatus.ACTIVE,
        offerings: Iterable[CourseOffering] = (),
        version: int = 0,
    ) -> None:
        super().__init__(version=version)
        if credit_hours <= 0:
            raise ValueError(f"Credit hours must be positive: {credit_hours}")
        self._id = id
        self._code = code
        self._title = title
        self._credit_hours = credit_hours
        # Ordered set: keep first occurrence
        self._prerequisites: Tuple[str, ...] = tuple(dict.fromkeys(prerequisites))
        if id in self._prerequisites:
            raise ValueError(f"Course {id} cannot be its own prerequisite")
        self._status = status
        self._offerings: Dict[str, CourseOffering] = {o.id: o for o in offerings}

    @property
    def id(self) -> str:
        return self._id

    @property
    def code(self) -> str:
        return self._code

    @property
    def title(self) -> str:
        return self._title

    @property
    def credit_hours(self) -> int:
        return self._credit_hours

    @property
    def prerequisites(self) -> Tuple[str, ...]:
        return self._prerequisites

    @property
    def status(self) -> CourseStatus:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._status is CourseStatus.ACTIVE

    @property
    def offerings(self) -> Tuple[CourseOffering, ...]:
        return tuple(self._offerings.values())

    @classmethod
    def create(
        cls,
        course_id: str,
        code: str,
        title: str,
        credit_hours: int,
        prerequisites: Iterable[str] = (),
        at: Optional[datetime] = None,
    ) -> "Course":
        """Factory method to add a new course to the catalog."""
        course = cls(
            id=course_id,
            code=code,
            title=title,
            credit_hours=credit_hours,
            prerequisites=prerequisites,
        )
        course.add_domain_event(CourseCreated(
            occurred_at=at or _utcnow(),
            aggregate_id=course_id,
            aggregate_version=course.pending_version,
            course_id=course_id,
            code=code,
            credit_hours=credit_hours,
        ))
        return course

    @classmethod
    def restore(
        cls,
        course_id: str,
        code: str,
        title: str,
        credit_hours: int,
        prerequisites: Iterable[str] = (),
        status: CourseStatus = CourseStatus.ACTIVE,
        offerings: Iterable[CourseOffering] = (),
        version: int = 0,
    ) -> "Course":
        """Rebuild a course in an explicit state, without raising events."""
        return cls(
            id=course_id,
            code=code,
            title=title,
            credit_hours=credit_hours,
            prerequisites=prerequisites,
            status=status,
            offerings=offerings,
            version=version,
        )

    def offering(self, offering_id: str) -> CourseOffering:
        """Look up one of this course's offerings."""
        offering = self._offerings.get(offering_id)
        if offering is None:
            raise NotFoundError("CourseOffering", offering_id)
        return offering

    def offerings_in_term(self, term: str) -> List[CourseOffering]:
        return [o for o in self._offerings.values() if o.term == term]

    def schedule_offering(
        self,
        offering_id: str,
        term: str,
        capacity: int,
        instructor_id: Optional[str] = None,
        schedule: Optional[Schedule] = None,
        at: Optional[datetime] = None,
    ) -> CourseOffering:
        """
        Offer this course in a term.

        Raises:
            RuleViolationError: negative capacity
            ConflictError: duplicate offering id, or a same-term offering
                whose schedule overlaps
        """
        term = normalize_term(term)
        if capacity < 0:
            raise RuleViolationError("capacity must be >= 0")
        if offering_id in self._offerings:
            raise ConflictError(f"offering {offering_id} already exists")

        schedule = schedule or Schedule()
        for existing in self.offerings_in_term(term):
            if existing.schedule.overlaps(schedule):
                raise ConflictError("overlapping offering")

        offering = CourseOffering(
            id=offering_id,
            course_id=self._id,
            term=term,
            capacity=capacity,
            instructor_id=instructor_id,
            schedule=schedule,
        )
        self._offerings[offering_id] = offering
        self.add_domain_event(CourseOfferingScheduled(
            occurred_at=at or _utcnow(),
            aggregate_id=self._id,
            aggregate_version=self.pending_version,
            course_id=self._id,
            offering_id=offering_id,
            term=term,
            capacity=capacity,
        ))
        return offering

    def deactivate(self, at: Optional[datetime] = None) -> None:
        """Withdraw the course from the catalog."""
        if not self.is_active:
            raise InvalidStateError("course not active")
        self._status = CourseStatus.INACTIVE
        self.add_domain_event(CourseDeactivated(
            occurred_at=at or _utcnow(),
            aggregate_id=self._id,
            aggregate_version=self.pending_version,
            course_id=self._id,
        ))

    def _validate_invariants(self) -> None:
        self._invariant_violations = []

        for offering in self._offerings.values():
            if offering.capacity < 0:
                self._add_invariant_violation(f"{offering.id}: negative capacity")
            if offering.enrolled_count > offering.capacity:
                self._add_invariant_violation(
                    f"{offering.id}: {offering.enrolled_count} enrolled exceeds "
                    f"capacity {offering.capacity}"
                )

        offerings = list(self._offerings.values())
        for i, a in enumerate(offerings):
            for b in offerings[i + 1:]:
                if a.term == b.term and a.schedule.overlaps(b.schedule):
                    self._add_invariant_violation(
                        f"{a.id} and {b.id} overlap in {a.term}"
                    )

    def to_snapshot(self) -> Dict[str, Any]:
        snapshot = super().to_snapshot()
        snapshot.update({
            "code": self._code,
            "title": self._title,
            "credit_hours": self._credit_hours,
            "prerequisites": list(self._prerequisites),
            "status": self._status.value,
            "offerings": [o.to_dict() for o in self._offerings.values()],
        })
        return snapshot

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "Course":
        return cls.restore(
            course_id=snapshot["id"],
            code=snapshot["code"],
            title=snapshot["title"],
            credit_hours=int(snapshot["credit_hours"]),
            prerequisites=snapshot.get("prerequisites", []),
            status=CourseStatus(snapshot["status"]),
            offerings=[CourseOffering.from_dict(o) for o in snapshot.get("offerings", [])],
            version=int(snapshot.get("version", 0)),
        )
