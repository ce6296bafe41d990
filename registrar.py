"""
Registrar - Enrollment Service Facade

Composition root for the enrollment core. Registrar wires the aggregates'
repositories, the idempotency store, the event dispatcher, the read
model and the mediator, and exposes one coroutine per command and per
query.

Commands never raise for business outcomes: each returns a
CommandResult carrying either the value or the error kind and message.
Queries return their result directly and raise ValidationError for
malformed input.

Usage:
    from registrar import create_registrar

    async with create_registrar() as registrar:
        await registrar.register_student("S1")
        result = await registrar.enroll(
            "S1", "CS101", "CS101-F24", "FALL2024", idempotency_key="req-1"
        )
        if result.is_success:
            enrollment_id = result.value

        page = await registrar.get_enrollments(student_id="S1", page_size=10)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Iterable, Optional, Union

from config import (
    IdempotencyBackend,
    PolicySnapshot,
    RegistrarConfig,
    current_policy,
    get_config,
)
from core.clock import Clock, SystemClock
from core.errors import ErrorKind, RegistrarError
from core.locks import KeyedLock
from db.idempotency import InMemoryIdempotencyStore, RedisIdempotencyStore
from db.interfaces import IEventTransport, IIdempotencyStore, Page
from db.memory import InMemoryDatabase, InMemoryEnrollmentReadStore, InMemoryEventTransport
from db.projections import EnrollmentProjection, EnrollmentView
from domain.commands import (
    COMMAND_VALIDATORS,
    AssignGradeCommand,
    ChangeStudentStatusCommand,
    CommandDependencies,
    CreateCourseCommand,
    DeactivateCourseCommand,
    EnrollInCourseCommand,
    RegisterStudentCommand,
    ScheduleOfferingCommand,
    WithdrawFromCourseCommand,
    build_command_handlers,
)
from domain.dispatcher import DomainEventDispatcher, TransportForwarder
from domain.entities import DomainEvent, Grade, MeetingSlot, StudentStatus
from domain.mediator import Command, CommandResult, Mediator, MediatorBuilder
from domain.queries import (
    QUERY_VALIDATORS,
    GetCumulativeGpaHandler,
    GetCumulativeGpaQuery,
    GetEnrollmentsHandler,
    GetEnrollmentsQuery,
    GpaSummary,
)
from observability.logging import CommandLogger
from observability.logging import LoggingConfig as ObservabilityLoggingConfig
from observability.logging import setup_logging


UNEXPECTED_MESSAGE = "an unexpected error occurred"


class Registrar:
    """
    The enrollment command/query service.

    Use Registrar.create() rather than the constructor; the constructor
    takes already-wired collaborators.

    Example:
        registrar = await Registrar.create(clock=FrozenClock())
        result = await registrar.register_student("S1")
        assert result.is_success
    """

    _logger = logging.getLogger("registrar.service")

    def __init__(
        self,
        *,
        config: RegistrarConfig,
        clock: Clock,
        database: InMemoryDatabase,
        read_store: InMemoryEnrollmentReadStore,
        idempotency: IIdempotencyStore,
        dispatcher: DomainEventDispatcher,
        transport: IEventTransport,
        mediator: Mediator,
    ) -> None:
        self._config = config
        self._clock = clock
        self._database = database
        self._read_store = read_store
        self._idempotency = idempotency
        self._dispatcher = dispatcher
        self._transport = transport
        self._mediator = mediator
        self._command_log = CommandLogger()

    # ========================================================================
    # Factory
    # ========================================================================

    @classmethod
    async def create(
        cls,
        config: Optional[RegistrarConfig] = None,
        *,
        clock: Optional[Clock] = None,
        policy: Optional[Callable[[], PolicySnapshot]] = None,
        database: Optional[InMemoryDatabase] = None,
        idempotency: Optional[IIdempotencyStore] = None,
        transport: Optional[IEventTransport] = None,
    ) -> "Registrar":
        """
        Wire a Registrar.

        Args:
            config: Configuration; the process-wide one when omitted, in
                which case policy follows reload_config()
            clock: Time source for event timestamps and idempotency TTLs
            policy: Snapshot provider overriding the one derived from config
            database: Aggregate storage
            idempotency: Idempotency store; built from config when omitted
            transport: External event bus stand-in
        """
        if config is None:
            config = get_config()
            policy = policy or current_policy
        policy = policy or config.snapshot

        setup_logging(ObservabilityLoggingConfig(
            level=config.logging.level,
            json_format=config.logging.json_format,
            environment=config.env.value,
        ))

        clock = clock or SystemClock()
        database = database or InMemoryDatabase()
        transport = transport or InMemoryEventTransport()
        idempotency = idempotency or cls._build_idempotency_store(config, clock)

        read_store = InMemoryEnrollmentReadStore()
        dispatcher = DomainEventDispatcher(max_attempts=config.pipeline.dispatch_max_attempts)
        EnrollmentProjection(read_store).register(dispatcher)
        dispatcher.register(DomainEvent, TransportForwarder(transport))

        deps = CommandDependencies(
            uow_factory=database.unit_of_work,
            idempotency=idempotency,
            dispatcher=dispatcher,
            locks=KeyedLock(),
            clock=clock,
            policy=policy,
            log=CommandLogger(),
        )

        builder = (
            MediatorBuilder()
            .with_logging()
            .with_validation({**COMMAND_VALIDATORS, **QUERY_VALIDATORS})
        )
        for command_type, handler in build_command_handlers(deps).items():
            builder.register_handler(command_type, handler)
        builder.register_handler(GetEnrollmentsQuery, GetEnrollmentsHandler(read_store, policy))
        builder.register_handler(GetCumulativeGpaQuery, GetCumulativeGpaHandler(read_store))

        cls._logger.info(
            f"Registrar ready (env={config.env.value}, "
            f"idempotency={type(idempotency).__name__})"
        )
        return cls(
            config=config,
            clock=clock,
            database=database,
            read_store=read_store,
            idempotency=idempotency,
            dispatcher=dispatcher,
            transport=transport,
            mediator=builder.build(),
        )

    @staticmethod
    def _build_idempotency_store(config: RegistrarConfig, clock: Clock) -> IIdempotencyStore:
        if config.idempotency.backend is IdempotencyBackend.REDIS:
            return RedisIdempotencyStore.from_url(
                config.idempotency.redis_url,
                clock=clock,
                key_prefix=config.idempotency.key_prefix,
            )
        return InMemoryIdempotencyStore(clock=clock)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def __aenter__(self) -> "Registrar":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Release external connections."""
        if isinstance(self._idempotency, RedisIdempotencyStore):
            await self._idempotency.close()

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def config(self) -> RegistrarConfig:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def database(self) -> InMemoryDatabase:
        return self._database

    @property
    def read_store(self) -> InMemoryEnrollmentReadStore:
        return self._read_store

    @property
    def idempotency(self) -> IIdempotencyStore:
        return self._idempotency

    @property
    def dispatcher(self) -> DomainEventDispatcher:
        return self._dispatcher

    @property
    def transport(self) -> IEventTransport:
        return self._transport

    @property
    def mediator(self) -> Mediator:
        return self._mediator

    # ========================================================================
    # Commands
    # ========================================================================

    async def execute(self, command: Command) -> CommandResult:
        """
        Run a command through the mediator and fold the outcome into a
        CommandResult.

        Unexpected failures are logged with their detail and surfaced to
        callers only as UNEXPECTED_MESSAGE.
        """
        name = type(command).__name__
        try:
            value = await self._mediator.send(command)
        except RegistrarError as e:
            if e.is_expected:
                self._command_log.rejected(name, e.kind.value, e.message)
                return CommandResult.from_error(e)
            self._command_log.failed(name, e)
            return CommandResult.failure(ErrorKind.UNEXPECTED, UNEXPECTED_MESSAGE)
        except Exception as e:
            self._command_log.failed(name, e)
            return CommandResult.failure(ErrorKind.UNEXPECTED, UNEXPECTED_MESSAGE)
        return CommandResult.success(value)

    async def register_student(
        self,
        student_id: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> CommandResult:
        return await self.execute(RegisterStudentCommand(
            student_id=student_id,
            idempotency_key=idempotency_key,
        ))

    async def change_student_status(
        self,
        student_id: str,
        status: Union[StudentStatus, str],
        reason: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> CommandResult:
        return await self.execute(ChangeStudentStatusCommand(
            student_id=student_id,
            status=_enum_value(status),
            reason=reason,
            idempotency_key=idempotency_key,
        ))

    async def create_course(
        self,
        course_id: str,
        code: str,
        title: str,
        credit_hours: int,
        prerequisites: Iterable[str] = (),
        *,
        idempotency_key: Optional[str] = None,
    ) -> CommandResult:
        return await self.execute(CreateCourseCommand(
            course_id=course_id,
            code=code,
            title=title,
            credit_hours=credit_hours,
            prerequisites=tuple(prerequisites),
            idempotency_key=idempotency_key,
        ))

    async def schedule_offering(
        self,
        course_id: str,
        offering_id: str,
        term: str,
        capacity: int,
        *,
        instructor_id: Optional[str] = None,
        slots: Iterable[MeetingSlot] = (),
        idempotency_key: Optional[str] = None,
    ) -> CommandResult:
        return await self.execute(ScheduleOfferingCommand(
            course_id=course_id,
            offering_id=offering_id,
            term=term,
            capacity=capacity,
            instructor_id=instructor_id,
            slots=tuple(slots),
            idempotency_key=idempotency_key,
        ))

    async def deactivate_course(
        self,
        course_id: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> CommandResult:
        return await self.execute(DeactivateCourseCommand(
            course_id=course_id,
            idempotency_key=idempotency_key,
        ))

    async def enroll(
        self,
        student_id: str,
        course_id: str,
        offering_id: str,
        term: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> CommandResult:
        """Enroll a student; the result value is the new enrollment id."""
        return await self.execute(EnrollInCourseCommand(
            student_id=student_id,
            course_id=course_id,
            offering_id=offering_id,
            term=term,
            idempotency_key=idempotency_key,
        ))

    async def assign_grade(
        self,
        student_id: str,
        enrollment_id: str,
        grade: Union[Grade, str],
        grader_id: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> CommandResult:
        return await self.execute(AssignGradeCommand(
            student_id=student_id,
            enrollment_id=enrollment_id,
            grade=_enum_value(grade),
            grader_id=grader_id,
            idempotency_key=idempotency_key,
        ))

    async def withdraw(
        self,
        student_id: str,
        enrollment_id: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> CommandResult:
        return await self.execute(WithdrawFromCourseCommand(
            student_id=student_id,
            enrollment_id=enrollment_id,
            idempotency_key=idempotency_key,
        ))

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_enrollments(
        self,
        *,
        student_id: Optional[str] = None,
        course_id: Optional[str] = None,
        term: Optional[str] = None,
        status: Optional[str] = None,
        enrolled_from: Optional[datetime] = None,
        enrolled_to: Optional[datetime] = None,
        sort_by: str = "enrolled_at",
        descending: bool = True,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page[EnrollmentView]:
        return await self._mediator.send(GetEnrollmentsQuery(
            student_id=student_id,
            course_id=course_id,
            term=term,
            status=status,
            enrolled_from=enrolled_from,
            enrolled_to=enrolled_to,
            sort_by=sort_by,
            descending=descending,
            page=page,
            page_size=page_size,
        ))

    async def get_cumulative_gpa(
        self,
        student_id: str,
        term: Optional[str] = None,
    ) -> GpaSummary:
        return await self._mediator.send(GetCumulativeGpaQuery(student_id=student_id, term=term))


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


@asynccontextmanager
async def create_registrar(
    config: Optional[RegistrarConfig] = None,
    **kwargs: Any,
) -> AsyncIterator[Registrar]:
    """
    Context manager for creating and using a Registrar.

    Example:
        async with create_registrar(clock=FrozenClock()) as registrar:
            await registrar.register_student("S1")
    """
    registrar = await Registrar.create(config, **kwargs)
    try:
        yield registrar
    finally:
        await registrar.close()
