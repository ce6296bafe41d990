"""
Registrar - Commands and Command Handlers

Write-side requests and the pipeline that executes them.

Every command handler follows the same template (AggregateCommandHandler):

    1. Take one policy snapshot for the whole execution
    2. If the command carries an idempotency key, reserve it; a stored
       result is returned as-is without touching any aggregate
    3. Under per-aggregate locks, load the aggregates (NotFound and
       load-stage state checks happen here, still cancellable)
    4. Apply the business operation, commit the unit of work, store
       the idempotency result and dispatch the committed domain events;
       this section runs to completion once started, and handler
       failures are logged without undoing the commit
    5. On a repository version conflict, reload and reapply a bounded
       number of times, then fail with Conflict

Static validation of the command shape runs earlier, in the mediator's
ValidationBehavior, using COMMAND_VALIDATORS.
"""
from __future__ import annotations

import time
from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Tuple,
    Type,
    TypeVar,
)

from config import PolicySnapshot
from core.async_utils import run_to_completion
from core.clock import Clock
from core.errors import (
    ConflictError,
    FieldError,
    InvalidStateError,
    RegistrarError,
    UnexpectedError,
)
from core.locks import KeyedLock, lock_keys
from core.validation import (
    normalize_term,
    optional_identifier,
    positive_int,
    require_choice,
    require_identifier,
    require_term,
    validate_idempotency_key,
)
from db.idempotency import IdempotencyKeyInFlight
from db.interfaces import (
    ConcurrencyException,
    IIdempotencyStore,
    IUnitOfWork,
    Reservation,
    StoredResult,
)
from domain.dispatcher import DomainEventDispatcher
from domain.entities import (
    Course,
    DomainEvent,
    Grade,
    MeetingSlot,
    Schedule,
    Student,
    StudentStatus,
)
from domain.mediator import Command, CommandResult, ICommandHandler, Validator
from observability.logging import CommandLogger, LogContext


TCommand = TypeVar("TCommand", bound=Command)
TResult = TypeVar("TResult")


# =============================================================================
# COMMANDS
# =============================================================================


@dataclass(frozen=True)
class RegisterStudentCommand(Command[str]):
    """Register a new, active student. Returns the student id."""
    student_id: str
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class ChangeStudentStatusCommand(Command[None]):
    """Move a student through its lifecycle."""
    student_id: str
    status: str
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class CreateCourseCommand(Command[str]):
    """Add a course to the catalog. Returns the course id."""
    course_id: str
    code: str
    title: str
    credit_hours: int
    prerequisites: Tuple[str, ...] = ()
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class ScheduleOfferingCommand(Command[str]):
    """Offer a course in a term. Returns the offering id."""
    course_id: str
    offering_id: str
    term: str
    capacity: int
    instructor_id: Optional[str] = None
    slots: Tuple[MeetingSlot, ...] = ()
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class DeactivateCourseCommand(Command[None]):
    course_id: str
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class EnrollInCourseCommand(Command[str]):
    """Enroll a student in an offering. Returns the enrollment id."""
    student_id: str
    course_id: str
    offering_id: str
    term: str
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class AssignGradeCommand(Command[None]):
    """Record a final grade on one of a student's enrollments."""
    student_id: str
    enrollment_id: str
    grade: str
    grader_id: str
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class WithdrawFromCourseCommand(Command[None]):
    """Withdraw a student from an active enrollment."""
    student_id: str
    enrollment_id: str
    idempotency_key: Optional[str] = None


# =============================================================================
# VALIDATORS
# =============================================================================


def _key(command: Command) -> List[FieldError]:
    return validate_idempotency_key("idempotency_key", command.idempotency_key)


def validate_register_student(command: RegisterStudentCommand) -> List[FieldError]:
    return require_identifier("student_id", command.student_id) + _key(command)


def validate_change_student_status(command: ChangeStudentStatusCommand) -> List[FieldError]:
    return (
        require_identifier("student_id", command.student_id)
        + require_choice("status", command.status, [s.value for s in StudentStatus])
        + _key(command)
    )


def validate_create_course(command: CreateCourseCommand) -> List[FieldError]:
    errors = require_identifier("course_id", command.course_id)
    if not command.code or not command.code.strip():
        errors.append(FieldError("code", "is required"))
    if not command.title or not command.title.strip():
        errors.append(FieldError("title", "is required"))
    errors += positive_int("credit_hours", command.credit_hours)
    for prerequisite in command.prerequisites:
        errors += require_identifier("prerequisites", prerequisite)
    if command.course_id in command.prerequisites:
        errors.append(FieldError("prerequisites", "course cannot be its own prerequisite"))
    return errors + _key(command)


def validate_schedule_offering(command: ScheduleOfferingCommand) -> List[FieldError]:
    return (
        require_identifier("course_id", command.course_id)
        + require_identifier("offering_id", command.offering_id)
        + require_term("term", command.term)
        + positive_int("capacity", command.capacity, allow_zero=True)
        + optional_identifier("instructor_id", command.instructor_id)
        + _key(command)
    )


def validate_deactivate_course(command: DeactivateCourseCommand) -> List[FieldError]:
    return require_identifier("course_id", command.course_id) + _key(command)


def validate_enroll(command: EnrollInCourseCommand) -> List[FieldError]:
    return (
        require_identifier("student_id", command.student_id)
        + require_identifier("course_id", command.course_id)
        + require_identifier("offering_id", command.offering_id)
        + require_term("term", command.term)
        + _key(command)
    )


def validate_assign_grade(command: AssignGradeCommand) -> List[FieldError]:
    errors = (
        require_identifier("student_id", command.student_id)
        + require_identifier("enrollment_id", command.enrollment_id)
        + require_identifier("grader_id", command.grader_id)
    )
    try:
        Grade.parse(command.grade)
    except ValueError:
        errors.append(FieldError("grade", f"must be one of: {', '.join(g.value for g in Grade)}"))
    return errors + _key(command)


def validate_withdraw(command: WithdrawFromCourseCommand) -> List[FieldError]:
    return (
        require_identifier("student_id", command.student_id)
        + require_identifier("enrollment_id", command.enrollment_id)
        + _key(command)
    )


COMMAND_VALIDATORS: Dict[Type, List[Validator]] = {
    RegisterStudentCommand: [validate_register_student],
    ChangeStudentStatusCommand: [validate_change_student_status],
    CreateCourseCommand: [validate_create_course],
    ScheduleOfferingCommand: [validate_schedule_offering],
    DeactivateCourseCommand: [validate_deactivate_course],
    EnrollInCourseCommand: [validate_enroll],
    AssignGradeCommand: [validate_assign_grade],
    WithdrawFromCourseCommand: [validate_withdraw],
}


# =============================================================================
# HANDLER TEMPLATE
# =============================================================================


@dataclass
class CommandDependencies:
    """Collaborators shared by every command handler."""
    uow_factory: Callable[[], IUnitOfWork]
    idempotency: IIdempotencyStore
    dispatcher: DomainEventDispatcher
    locks: KeyedLock
    clock: Clock
    policy: Callable[[], PolicySnapshot]
    log: CommandLogger


class _Execution:
    """Mutable state of one command execution."""

    __slots__ = ("committed", "completion_error")

    def __init__(self) -> None:
        self.committed = False
        self.completion_error: Optional[RegistrarError] = None


class AggregateCommandHandler(ICommandHandler[TCommand, TResult], Generic[TCommand, TResult]):
    """
    Base handler running the load-apply-commit pipeline.

    Subclasses provide lock_keys, load (which tracks the aggregates it
    will mutate) and apply.
    """

    def __init__(self, deps: CommandDependencies) -> None:
        self._deps = deps

    @abstractmethod
    def lock_keys(self, command: TCommand) -> List[str]:
        """Aggregate keys to hold for the whole load-mutate-persist section."""
        pass

    @abstractmethod
    async def load(self, uow: IUnitOfWork, command: TCommand, policy: PolicySnapshot) -> Any:
        """Load and track aggregates; raise NotFound or InvalidState here."""
        pass

    @abstractmethod
    def apply(self, loaded: Any, command: TCommand, policy: PolicySnapshot, now: datetime) -> TResult:
        """Invoke the single aggregate method embodying the operation."""
        pass

    async def resolve_lock_keys(self, command: TCommand) -> List[str]:
        return self.lock_keys(command)

    def idempotency_scope(self, command: TCommand) -> str:
        return f"{type(command).__name__}:{command.idempotency_key}"

    async def handle(self, command: TCommand) -> TResult:
        policy = self._deps.policy()
        name = type(command).__name__

        async with LogContext(
            command=name,
            request_id=str(command.request_id),
            idempotency_key=command.idempotency_key,
            policy_version=policy.version,
        ):
            start = time.perf_counter()
            reservation: Optional[Reservation] = None

            if command.idempotency_key is not None:
                outcome = await self._reserve(command, policy)
                if isinstance(outcome, StoredResult):
                    return self._replay(name, command, outcome)
                reservation = outcome

            execution = _Execution()
            try:
                value, events = await self._execute_with_retries(
                    command, policy, reservation, execution
                )
            except BaseException:
                if reservation is not None and not execution.committed:
                    await run_to_completion(self._deps.idempotency.release(reservation))
                raise

            if execution.completion_error is not None:
                raise execution.completion_error

            self._deps.log.succeeded(name, (time.perf_counter() - start) * 1000, len(events))
            return value

    async def _reserve(self, command: TCommand, policy: PolicySnapshot):
        try:
            return await self._deps.idempotency.reserve(
                self.idempotency_scope(command), policy.idempotency_ttl
            )
        except IdempotencyKeyInFlight as e:
            raise ConflictError("request with this idempotency key is in progress", cause=e) from e

    def _replay(self, name: str, command: TCommand, stored: StoredResult) -> TResult:
        if stored.is_in_doubt or stored.payload is None:
            raise ConflictError("outcome of original request is unknown")
        self._deps.log.replayed(name, command.idempotency_key)
        return CommandResult.from_payload(stored.payload).value

    async def _execute_with_retries(
        self,
        command: TCommand,
        policy: PolicySnapshot,
        reservation: Optional[Reservation],
        execution: _Execution,
    ) -> Tuple[TResult, List[DomainEvent]]:
        attempts = policy.max_concurrency_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._execute_once(command, policy, reservation, execution)
            except ConcurrencyException as e:
                if attempt >= attempts:
                    raise ConflictError(
                        "concurrent modification, retries exhausted", cause=e
                    ) from e
                self._deps.log.concurrency_retry(type(command).__name__, attempt, str(e))
        raise AssertionError("unreachable")

    async def _execute_once(
        self,
        command: TCommand,
        policy: PolicySnapshot,
        reservation: Optional[Reservation],
        execution: _Execution,
    ) -> Tuple[TResult, List[DomainEvent]]:
        keys = await self.resolve_lock_keys(command)
        async with self._deps.locks.acquire(*keys):
            async with self._deps.uow_factory() as uow:
                loaded = await self.load(uow, command, policy)
                return await run_to_completion(
                    self._apply_and_commit(uow, loaded, command, policy, reservation, execution)
                )

    async def _apply_and_commit(
        self,
        uow: IUnitOfWork,
        loaded: Any,
        command: TCommand,
        policy: PolicySnapshot,
        reservation: Optional[Reservation],
        execution: _Execution,
    ) -> Tuple[TResult, List[DomainEvent]]:
        value = self.apply(loaded, command, policy, self._deps.clock.now())
        events = await uow.commit()
        execution.committed = True

        if reservation is not None:
            try:
                await self._deps.idempotency.complete(
                    reservation, CommandResult.success(value).to_payload()
                )
            except Exception as e:
                execution.completion_error = UnexpectedError(
                    "state committed but idempotency result could not be stored",
                    cause=e,
                )
                await self._mark_in_doubt(reservation)

        await self._deps.dispatcher.dispatch(events)
        return value, events

    async def _mark_in_doubt(self, reservation: Reservation) -> None:
        try:
            await self._deps.idempotency.mark_in_doubt(reservation)
        except Exception as e:
            self._deps.log.failed(f"mark_in_doubt:{reservation.key}", e)


# =============================================================================
# STUDENT HANDLERS
# =============================================================================


class RegisterStudentHandler(AggregateCommandHandler[RegisterStudentCommand, str]):

    def lock_keys(self, command: RegisterStudentCommand) -> List[str]:
        return lock_keys("student", [command.student_id])

    async def load(self, uow, command, policy) -> IUnitOfWork:
        if await uow.students.exists(command.student_id):
            raise ConflictError(f"student {command.student_id} already exists")
        return uow

    def apply(self, loaded, command, policy, now) -> str:
        student = Student.register(
            command.student_id, at=now, credit_ceiling=policy.credit_hour_ceiling
        )
        loaded.track(student)
        return student.id


class ChangeStudentStatusHandler(AggregateCommandHandler[ChangeStudentStatusCommand, None]):

    def lock_keys(self, command: ChangeStudentStatusCommand) -> List[str]:
        return lock_keys("student", [command.student_id])

    async def load(self, uow, command, policy) -> Student:
        student = await uow.students.load(command.student_id)
        uow.track(student)
        return student

    def apply(self, loaded: Student, command, policy, now) -> None:
        loaded.change_status(StudentStatus(command.status), reason=command.reason, at=now)


class EnrollInCourseHandler(AggregateCommandHandler[EnrollInCourseCommand, str]):
    """
    Enrollment touches two aggregates: the Student (credit load, duplicate
    and prerequisite rules) and the Course that owns the offering's seat
    count. Both are locked and committed together.
    """

    def lock_keys(self, command: EnrollInCourseCommand) -> List[str]:
        return lock_keys("student", [command.student_id]) + lock_keys("course", [command.course_id])

    async def load(self, uow, command, policy):
        student = await uow.students.load(command.student_id)
        course = await uow.courses.load(command.course_id)
        if not course.is_active:
            raise InvalidStateError("course not active")
        offering = course.offering(command.offering_id)
        if offering.term != normalize_term(command.term):
            raise InvalidStateError("offering not scheduled for term")

        student.with_credit_ceiling(policy.credit_hour_ceiling)
        uow.track(student)
        uow.track(course)
        return student, course, offering

    def apply(self, loaded, command, policy, now) -> str:
        student, course, offering = loaded
        return student.enroll_in_course(course, offering, command.term, at=now)


class AssignGradeHandler(AggregateCommandHandler[AssignGradeCommand, None]):

    def lock_keys(self, command: AssignGradeCommand) -> List[str]:
        return lock_keys("student", [command.student_id])

    async def load(self, uow, command, policy) -> Student:
        student = await uow.students.load(command.student_id)
        uow.track(student)
        return student

    def apply(self, loaded: Student, command, policy, now) -> None:
        loaded.assign_grade(
            command.enrollment_id,
            Grade.parse(command.grade),
            command.grader_id,
            at=now,
        )


class WithdrawFromCourseHandler(AggregateCommandHandler[WithdrawFromCourseCommand, None]):
    """
    The course to lock is only known from the enrollment, so the student
    is read once outside the locks to find it; the locked load re-reads
    both aggregates.
    """

    def lock_keys(self, command: WithdrawFromCourseCommand) -> List[str]:
        return lock_keys("student", [command.student_id])

    async def resolve_lock_keys(self, command: WithdrawFromCourseCommand) -> List[str]:
        async with self._deps.uow_factory() as uow:
            student = await uow.students.load(command.student_id)
            course_id = student.enrollment(command.enrollment_id).course_id
        return self.lock_keys(command) + lock_keys("course", [course_id])

    async def load(self, uow, command, policy):
        student = await uow.students.load(command.student_id)
        enrollment = student.enrollment(command.enrollment_id)
        course = await uow.courses.load(enrollment.course_id)
        offering = course.offering(enrollment.offering_id)
        uow.track(student)
        uow.track(course)
        return student, offering

    def apply(self, loaded, command, policy, now) -> None:
        student, offering = loaded
        student.withdraw(command.enrollment_id, offering, at=now)


# =============================================================================
# COURSE HANDLERS
# =============================================================================


class CreateCourseHandler(AggregateCommandHandler[CreateCourseCommand, str]):

    def lock_keys(self, command: CreateCourseCommand) -> List[str]:
        return lock_keys("course", [command.course_id])

    async def load(self, uow, command, policy) -> IUnitOfWork:
        if await uow.courses.exists(command.course_id):
            raise ConflictError(f"course {command.course_id} already exists")
        return uow

    def apply(self, loaded, command, policy, now) -> str:
        course = Course.create(
            command.course_id,
            code=command.code,
            title=command.title,
            credit_hours=command.credit_hours,
            prerequisites=command.prerequisites,
            at=now,
        )
        loaded.track(course)
        return course.id


class ScheduleOfferingHandler(AggregateCommandHandler[ScheduleOfferingCommand, str]):

    def lock_keys(self, command: ScheduleOfferingCommand) -> List[str]:
        return lock_keys("course", [command.course_id])

    async def load(self, uow, command, policy) -> Course:
        course = await uow.courses.load(command.course_id)
        if not course.is_active:
            raise InvalidStateError("course not active")
        uow.track(course)
        return course

    def apply(self, loaded: Course, command, policy, now) -> str:
        offering = loaded.schedule_offering(
            command.offering_id,
            term=command.term,
            capacity=command.capacity,
            instructor_id=command.instructor_id,
            schedule=Schedule(slots=tuple(command.slots)),
            at=now,
        )
        return offering.id


class DeactivateCourseHandler(AggregateCommandHandler[DeactivateCourseCommand, None]):

    def lock_keys(self, command: DeactivateCourseCommand) -> List[str]:
        return lock_keys("course", [command.course_id])

    async def load(self, uow, command, policy) -> Course:
        course = await uow.courses.load(command.course_id)
        uow.track(course)
        return course

    def apply(self, loaded: Course, command, policy, now) -> None:
        loaded.deactivate(at=now)


def build_command_handlers(deps: CommandDependencies) -> Dict[Type, AggregateCommandHandler]:
    """One handler per command type, sharing the same dependencies."""
    return {
        RegisterStudentCommand: RegisterStudentHandler(deps),
        ChangeStudentStatusCommand: ChangeStudentStatusHandler(deps),
        CreateCourseCommand: CreateCourseHandler(deps),
        ScheduleOfferingCommand: ScheduleOfferingHandler(deps),
        DeactivateCourseCommand: DeactivateCourseHandler(deps),
        EnrollInCourseCommand: EnrollInCourseHandler(deps),
        AssignGradeCommand: AssignGradeHandler(deps),
        WithdrawFromCourseCommand: WithdrawFromCourseHandler(deps),
    }
