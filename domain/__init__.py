"""
Registrar - Domain Layer

Aggregates, value objects, domain events and the GPA engine. The command
and query pipeline (mediator, commands, queries, dispatcher) lives in
submodules that are imported explicitly.

Usage:
    from domain import Student, Course, Grade
    from domain.commands import EnrollInCourseCommand
"""
from domain.entities import (
    MAX_CREDIT_HOURS_PER_TERM,
    AggregateRoot,
    Course,
    CourseCreated,
    CourseDeactivated,
    CourseOffering,
    CourseOfferingScheduled,
    CourseStatus,
    DomainEvent,
    Enrollment,
    EnrollmentRecord,
    EnrollmentStatus,
    EnrollmentWithdrawn,
    Entity,
    Grade,
    GradeAssigned,
    MeetingSlot,
    Schedule,
    Student,
    StudentEnrolled,
    StudentRegistered,
    StudentStatus,
    StudentStatusChanged,
)
from domain.gpa import (
    GPA_PRECISION,
    GRADE_POINTS,
    attempted_credit_hours,
    compute_cumulative_gpa,
    compute_term_gpa,
    grade_points,
)

__all__ = [
    # Aggregates and entities
    "Entity",
    "AggregateRoot",
    "Student",
    "Course",
    "Enrollment",
    "CourseOffering",
    # Value objects
    "StudentStatus",
    "EnrollmentStatus",
    "CourseStatus",
    "Grade",
    "MeetingSlot",
    "Schedule",
    "EnrollmentRecord",
    "MAX_CREDIT_HOURS_PER_TERM",
    # Events
    "DomainEvent",
    "StudentRegistered",
    "StudentStatusChanged",
    "StudentEnrolled",
    "GradeAssigned",
    "EnrollmentWithdrawn",
    "CourseCreated",
    "CourseOfferingScheduled",
    "CourseDeactivated",
    # GPA
    "GPA_PRECISION",
    "GRADE_POINTS",
    "grade_points",
    "compute_cumulative_gpa",
    "compute_term_gpa",
    "attempted_credit_hours",
]
