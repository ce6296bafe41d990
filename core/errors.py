"""
Registrar - Unified Error Handling

Provides the error taxonomy shared by aggregates, the command pipeline
and the service facade.

Taxonomy:
    - ValidationError: malformed input, caught before any state access
    - NotFoundError: referenced aggregate or entity absent
    - InvalidStateError: aggregate exists but forbids the operation
    - RuleViolationError: a business invariant would be broken
    - ConflictError: duplicate enrollment or concurrency version mismatch
    - UnexpectedError: anything else (I/O failure, programming error)

The first five are expected outcomes: they are returned to callers as
typed results, never retried automatically, and logged at INFO at most.
UnexpectedError is surfaced as a generic failure and logged with full
context.

Every error records itself on the current OpenTelemetry span when one
is recording.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
)

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode


class ErrorKind(str, Enum):
    """Stable, machine-readable failure kinds."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    RULE_VIOLATION = "rule_violation"
    CONFLICT = "conflict"
    UNEXPECTED = "unexpected"


class ErrorSeverity(Enum):
    """Error severity levels for prioritized handling."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class FieldError:
    """A single field-level validation failure."""

    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}


@dataclass
class ErrorContext:
    """Structured context for error debugging and tracing."""

    operation: str
    component: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    aggregate_id: Optional[str] = None
    command_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary for serialization."""
        return {
            "operation": self.operation,
            "component": self.component,
            "timestamp": self.timestamp.isoformat(),
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "aggregate_id": self.aggregate_id,
            "command_name": self.command_name,
            "metadata": self.metadata,
            "stack_trace": self.stack_trace,
        }

    @classmethod
    def from_current_span(
        cls,
        operation: str,
        component: str,
        **kwargs: Any
    ) -> "ErrorContext":
        """Create context from current OpenTelemetry span."""
        span = trace.get_current_span()
        trace_id = None
        span_id = None

        if span and span.is_recording():
            ctx = span.get_span_context()
            if ctx.is_valid:
                trace_id = format(ctx.trace_id, "032x")
                span_id = format(ctx.span_id, "016x")

        return cls(
            operation=operation,
            component=component,
            trace_id=trace_id,
            span_id=span_id,
            stack_trace=traceback.format_exc(),
            **kwargs
        )


class RegistrarError(Exception):
    """
    Base exception for all registrar errors.

    Provides:
    - A stable ErrorKind for callers
    - Structured error context
    - Severity level
    - Chained exception support
    - OpenTelemetry span recording
    """

    kind: ErrorKind = ErrorKind.UNEXPECTED
    default_severity: ErrorSeverity = ErrorSeverity.ERROR

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        severity: Optional[ErrorSeverity] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context
        self.severity = severity or self.default_severity
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        self._record_to_span()

    @property
    def is_expected(self) -> bool:
        """Expected outcomes are returned to callers, not treated as faults."""
        return self.kind is not ErrorKind.UNEXPECTED

    def _record_to_span(self) -> None:
        """Record exception to current OpenTelemetry span."""
        span = trace.get_current_span()
        if span and span.is_recording():
            if not self.is_expected:
                span.set_status(Status(StatusCode.ERROR, self.message))
                span.record_exception(self)
            span.set_attribute("error.kind", self.kind.value)
            span.set_attribute("error.severity", self.severity.value)
            if self.context:
                span.set_attribute("error.component", self.context.component)
                span.set_attribute("error.operation", self.context.operation)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context.to_dict() if self.context else None,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        parts = [f"[{self.kind.value}] {self.message}"]
        if self.context:
            parts.append(f" (component: {self.context.component})")
        if self.cause:
            parts.append(f" [caused by: {self.cause}]")
        return "".join(parts)

    def with_context(self, **kwargs: Any) -> "RegistrarError":
        """Add additional context to the error."""
        if self.context:
            self.context.metadata.update(kwargs)
        else:
            self.context = ErrorContext(
                operation="unknown",
                component="unknown",
                metadata=kwargs
            )
        return self


class ValidationError(RegistrarError):
    """Malformed input, aggregated across all failing fields."""

    kind = ErrorKind.VALIDATION
    default_severity = ErrorSeverity.INFO

    def __init__(
        self,
        field_errors: Iterable[FieldError],
        message: Optional[str] = None,
        **kwargs: Any,
    ):
        self.field_errors: Tuple[FieldError, ...] = tuple(field_errors)
        if message is None:
            joined = "; ".join(f"{e.field}: {e.message}" for e in self.field_errors)
            message = f"validation failed: {joined}" if joined else "validation failed"
        super().__init__(message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["field_errors"] = [e.to_dict() for e in self.field_errors]
        return data


class NotFoundError(RegistrarError):
    """A referenced aggregate or child entity does not exist."""

    kind = ErrorKind.NOT_FOUND
    default_severity = ErrorSeverity.INFO

    def __init__(self, entity_type: str, entity_id: Any, **kwargs: Any):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}", **kwargs)


class InvalidStateError(RegistrarError):
    """The aggregate exists but its state forbids the operation."""

    kind = ErrorKind.INVALID_STATE
    default_severity = ErrorSeverity.INFO


class RuleViolationError(RegistrarError):
    """Applying the operation would break a business invariant."""

    kind = ErrorKind.RULE_VIOLATION
    default_severity = ErrorSeverity.INFO


class ConflictError(RegistrarError):
    """Duplicate operation or concurrent modification."""

    kind = ErrorKind.CONFLICT
    default_severity = ErrorSeverity.INFO


class UnexpectedError(RegistrarError):
    """Anything outside the taxonomy, e.g. repository I/O failure."""

    kind = ErrorKind.UNEXPECTED
    default_severity = ErrorSeverity.ERROR


def field_errors_of(error: BaseException) -> List[FieldError]:
    """Return field errors carried by an exception, if any."""
    if isinstance(error, ValidationError):
        return list(error.field_errors)
    return []


def classify_error(error: BaseException) -> RegistrarError:
    """Classify an arbitrary exception into the registrar taxonomy."""
    if isinstance(error, RegistrarError):
        return error
    return UnexpectedError(
        message=str(error) or type(error).__name__,
        cause=error,
    )
