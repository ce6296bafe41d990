"""
Registrar - Core Module

Foundational pieces shared by every other package, with no dependency
on any of them:
- Error taxonomy (ErrorKind, RegistrarError and its subclasses)
- Injected clocks
- Per-aggregate asyncio locks
- Field-level validators
- Cancellation helpers

Usage:
    from core import NotFoundError, FrozenClock, KeyedLock

    clock = FrozenClock()
    locks = KeyedLock()
    async with locks.acquire("student:S1"):
        ...
"""
from core.async_utils import run_to_completion
from core.clock import Clock, FrozenClock, SystemClock
from core.errors import (
    ConflictError,
    ErrorContext,
    ErrorKind,
    ErrorSeverity,
    FieldError,
    InvalidStateError,
    NotFoundError,
    RegistrarError,
    RuleViolationError,
    UnexpectedError,
    ValidationError,
    classify_error,
    field_errors_of,
)
from core.locks import KeyedLock, lock_keys

__all__ = [
    # Errors
    "ErrorKind",
    "ErrorSeverity",
    "ErrorContext",
    "FieldError",
    "RegistrarError",
    "ValidationError",
    "NotFoundError",
    "InvalidStateError",
    "RuleViolationError",
    "ConflictError",
    "UnexpectedError",
    "classify_error",
    "field_errors_of",
    # Clocks
    "Clock",
    "SystemClock",
    "FrozenClock",
    # Concurrency
    "KeyedLock",
    "lock_keys",
    "run_to_completion",
]
