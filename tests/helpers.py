"""
Registrar - Test Helpers

Catalog and roster setup through the public facade.
"""
from typing import Iterable

from registrar import Registrar


TERM = "FALL2024"


async def add_course(
    registrar: Registrar,
    course_id: str,
    credit_hours: int = 3,
    capacity: int = 30,
    term: str = TERM,
    prerequisites: Iterable[str] = (),
) -> str:
    """Create a course with one offering in term; returns the offering id."""
    created = await registrar.create_course(
        course_id,
        code=course_id,
        title=f"Course {course_id}",
        credit_hours=credit_hours,
        prerequisites=prerequisites,
    )
    assert created.is_success, created.error
    offering_id = f"{course_id}-{term}"
    scheduled = await registrar.schedule_offering(course_id, offering_id, term, capacity)
    assert scheduled.is_success, scheduled.error
    return offering_id


async def add_student(registrar: Registrar, student_id: str) -> str:
    result = await registrar.register_student(student_id)
    assert result.is_success, result.error
    return student_id
