"""
Registrar - Mediator Pattern Implementation

The mediator routes commands and queries through a pipeline of behaviors
that provide cross-cutting concerns like validation and logging.

Architecture:
    - Commands: Write operations that change state (emit domain events)
    - Queries: Read operations that return data (no side effects)
    - Pipeline Behaviors: Middleware that wraps handler execution

Usage:
    from domain.mediator import Command, ICommandHandler, MediatorBuilder

    @dataclass
    class EnrollInCourseCommand(Command[str]):
        student_id: str
        ...

    mediator = (MediatorBuilder()
        .with_logging()
        .with_validation(validators)
        .register_handler(EnrollInCourseCommand, EnrollInCourseHandler(...))
        .build())

    enrollment_id = await mediator.send(EnrollInCourseCommand(...))
"""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Tuple,
    Type,
    TypeVar,
)
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict

from core.errors import ErrorKind, FieldError, RegistrarError, ValidationError


logger = logging.getLogger("registrar.mediator")


# =============================================================================
# BASE TYPES FOR CQRS
# =============================================================================


TResult = TypeVar("TResult")
TRequest = TypeVar("TRequest", bound="IRequest")
TCommand = TypeVar("TCommand", bound="Command")
TQuery = TypeVar("TQuery", bound="Query")


class IRequest(ABC, Generic[TResult]):
    """
    Base interface for all requests (commands and queries).

    Subclasses are dataclasses; request_id and timestamp are assigned
    lazily on first access.
    """

    @property
    def request_id(self) -> UUID:
        """Unique identifier for this request."""
        if not hasattr(self, "_request_id"):
            object.__setattr__(self, "_request_id", uuid4())
        return self._request_id  # type: ignore

    @property
    def timestamp(self) -> datetime:
        """When this request was first observed."""
        if not hasattr(self, "_timestamp"):
            object.__setattr__(self, "_timestamp", datetime.now(timezone.utc))
        return self._timestamp  # type: ignore


class Command(IRequest[TResult], Generic[TResult]):
    """
    Base class for commands.

    Commands represent intent to change system state. They:
    - Are validated before execution
    - Emit domain events on success
    - Carry an optional idempotency key making retries effect-once
    """

    idempotency_key: Optional[str] = None


class Query(IRequest[TResult], Generic[TResult]):
    """
    Base class for queries.

    Queries have no side effects and never raise domain events.
    """
    pass


# =============================================================================
# RESULTS
# =============================================================================


class ErrorInfo(BaseModel):
    """Machine-readable kind plus human-readable message."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    field_errors: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def from_error(cls, error: RegistrarError) -> "ErrorInfo":
        field_errors = getattr(error, "field_errors", ())
        return cls(
            kind=error.kind,
            message=error.message,
            field_errors=tuple((e.field, e.message) for e in field_errors),
        )


class CommandResult(BaseModel):
    """
    Outcome of a command as returned to callers.

    Successful results are what the idempotency store keeps; a replay
    decodes to a value equal to the original.
    """

    model_config = ConfigDict(frozen=True)

    value: Any = None
    error: Optional[ErrorInfo] = None

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    @classmethod
    def success(cls, value: Any = None) -> "CommandResult":
        return cls(value=value)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        field_errors: Tuple[FieldError, ...] = (),
    ) -> "CommandResult":
        return cls(error=ErrorInfo(
            kind=kind,
            message=message,
            field_errors=tuple((e.field, e.message) for e in field_errors),
        ))

    @classmethod
    def from_error(cls, error: RegistrarError) -> "CommandResult":
        return cls(error=ErrorInfo.from_error(error))

    def to_payload(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_payload(cls, payload: str) -> "CommandResult":
        return cls.model_validate_json(payload)


# =============================================================================
# HANDLER INTERFACES
# =============================================================================


class IRequestHandler(ABC, Generic[TRequest, TResult]):
    """
    Base interface for request handlers.

    Each request type has exactly one handler.
    """

    @abstractmethod
    async def handle(self, request: TRequest) -> TResult:
        """Handle the request and return a result."""
        pass


class ICommandHandler(IRequestHandler[TCommand, TResult], Generic[TCommand, TResult]):
    """Handler for commands."""
    pass


class IQueryHandler(IRequestHandler[TQuery, TResult], Generic[TQuery, TResult]):
    """Handler for queries."""
    pass


# =============================================================================
# PIPELINE BEHAVIORS
# =============================================================================


# Type for the next delegate in the pipeline
RequestHandlerDelegate = Callable[[], Awaitable[TResult]]


class IPipelineBehavior(ABC, Generic[TRequest, TResult]):
    """
    Pipeline behavior for cross-cutting concerns.

    Behaviors wrap around handler execution, forming a middleware pipeline:
        Behavior1 -> Behavior2 -> Handler -> Behavior2 -> Behavior1
    """

    @abstractmethod
    async def handle(
        self,
        request: TRequest,
        next: RequestHandlerDelegate[TResult]
    ) -> TResult:
        """
        Handle the request in the pipeline.

        Args:
            request: The request being processed
            next: Delegate to call the next behavior or handler

        Returns:
            The result from the handler or modified result
        """
        pass


class LoggingBehavior(IPipelineBehavior[TRequest, TResult], Generic[TRequest, TResult]):
    """
    Pipeline behavior that logs request handling.

    Expected outcomes are logged at INFO; anything else at ERROR.
    """

    def __init__(self, log_level: int = logging.DEBUG) -> None:
        self._log_level = log_level

    async def handle(
        self,
        request: TRequest,
        next: RequestHandlerDelegate[TResult]
    ) -> TResult:
        request_type = type(request).__name__
        request_id = request.request_id

        logger.log(self._log_level, f"[{request_id}] Starting {request_type}")
        start_time = time.perf_counter()

        try:
            result = await next()
        except RegistrarError as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            level = logging.INFO if e.is_expected else logging.ERROR
            logger.log(
                level,
                f"[{request_id}] {request_type} ended with {e.kind.value} "
                f"after {duration_ms:.2f}ms: {e.message}"
            )
            raise
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                f"[{request_id}] Failed {request_type} after {duration_ms:.2f}ms: {e}"
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.log(
            self._log_level,
            f"[{request_id}] Completed {request_type} in {duration_ms:.2f}ms"
        )
        return result


Validator = Callable[[Any], List[FieldError]]


class ValidationBehavior(IPipelineBehavior[TRequest, TResult], Generic[TRequest, TResult]):
    """
    Pipeline behavior that validates requests before handling.

    Runs every validator registered for the request type and collects
    their field errors; any error short-circuits with ValidationError
    before the handler (and so the idempotency store) is reached.
    """

    def __init__(self, validators: Optional[Dict[Type, List[Validator]]] = None) -> None:
        self._validators: Dict[Type, List[Validator]] = {
            k: list(v) for k, v in (validators or {}).items()
        }

    def register(self, request_type: Type, validator: Validator) -> None:
        self._validators.setdefault(request_type, []).append(validator)

    def validators_for(self, request_type: Type) -> List[Validator]:
        return list(self._validators.get(request_type, ()))

    async def handle(
        self,
        request: TRequest,
        next: RequestHandlerDelegate[TResult]
    ) -> TResult:
        errors: List[FieldError] = []
        for validator in self.validators_for(type(request)):
            errors.extend(validator(request))

        if errors:
            raise ValidationError(errors)

        return await next()


# =============================================================================
# MEDIATOR IMPLEMENTATION
# =============================================================================


class Mediator:
    """
    Central mediator for routing requests to handlers.

    Usage:
        mediator = Mediator()
        mediator.register_handler(EnrollInCourseCommand, handler)
        mediator.add_behavior(LoggingBehavior())
        mediator.add_command_behavior(ValidationBehavior(validators))

        enrollment_id = await mediator.send(EnrollInCourseCommand(...))
    """

    def __init__(self) -> None:
        self._handlers: Dict[Type, IRequestHandler] = {}
        self._behaviors: List[IPipelineBehavior] = []
        self._command_behaviors: List[IPipelineBehavior] = []
        self._query_behaviors: List[IPipelineBehavior] = []

    def register_handler(
        self,
        request_type: Type[TRequest],
        handler: IRequestHandler[TRequest, Any]
    ) -> None:
        """Register a handler for a request type."""
        self._handlers[request_type] = handler
        logger.debug(f"Registered handler for {request_type.__name__}")

    def has_handler(self, request_type: Type) -> bool:
        return request_type in self._handlers

    def add_behavior(self, behavior: IPipelineBehavior) -> None:
        """Add a pipeline behavior that applies to all requests."""
        self._behaviors.append(behavior)

    def add_command_behavior(self, behavior: IPipelineBehavior) -> None:
        """Add a pipeline behavior that applies only to commands."""
        self._command_behaviors.append(behavior)

    def add_query_behavior(self, behavior: IPipelineBehavior) -> None:
        """Add a pipeline behavior that applies only to queries."""
        self._query_behaviors.append(behavior)

    async def send(self, request: IRequest[TResult]) -> TResult:
        """
        Send a request through the mediator.

        Args:
            request: Command or Query to process

        Returns:
            Result from the handler

        Raises:
            ValueError: If no handler is registered for the request type
        """
        request_type = type(request)
        handler = self._handlers.get(request_type)

        if handler is None:
            raise ValueError(f"No handler registered for {request_type.__name__}")

        behaviors = list(self._behaviors)
        if isinstance(request, Command):
            behaviors.extend(self._command_behaviors)
        elif isinstance(request, Query):
            behaviors.extend(self._query_behaviors)

        async def final_handler() -> TResult:
            return await handler.handle(request)

        pipeline = self._build_pipeline(request, behaviors, final_handler)
        return await pipeline()

    def _build_pipeline(
        self,
        request: Any,
        behaviors: List[IPipelineBehavior],
        handler: Callable[[], Awaitable[TResult]]
    ) -> Callable[[], Awaitable[TResult]]:
        """Build the pipeline of behaviors wrapping the handler."""
        current: Callable[[], Awaitable[Any]] = handler

        # Build from inside out (last behavior wraps handler first)
        for behavior in reversed(behaviors):
            current = (
                lambda b=behavior, n=current, r=request: b.handle(r, n)
            )  # type: ignore

        return current  # type: ignore


# =============================================================================
# MEDIATOR BUILDER
# =============================================================================


class MediatorBuilder:
    """
    Builder for constructing a configured Mediator.

    Usage:
        mediator = (MediatorBuilder()
            .with_logging()
            .with_validation(validators)
            .register_handler(EnrollInCourseCommand, handler)
            .build())
    """

    def __init__(self) -> None:
        self._mediator = Mediator()

    def with_logging(self, log_level: int = logging.DEBUG) -> "MediatorBuilder":
        """Add logging behavior."""
        self._mediator.add_behavior(LoggingBehavior(log_level))
        return self

    def with_validation(
        self,
        validators: Optional[Dict[Type, List[Validator]]] = None,
    ) -> "MediatorBuilder":
        """Add validation behavior for all requests."""
        self._mediator.add_behavior(ValidationBehavior(validators))
        return self

    def with_behavior(self, behavior: IPipelineBehavior) -> "MediatorBuilder":
        """Add a custom behavior."""
        self._mediator.add_behavior(behavior)
        return self

    def register_handler(
        self,
        request_type: Type[TRequest],
        handler: IRequestHandler[TRequest, Any]
    ) -> "MediatorBuilder":
        """Register a request handler."""
        self._mediator.register_handler(request_type, handler)
        return self

    def build(self) -> Mediator:
        """Build and return the configured mediator."""
        return self._mediator
