"""
Registrar - Input Validation Utilities

Field-level validators for command and query shapes. Each validator
returns a list of FieldError rather than raising, so a command's
validators can be run together and their failures aggregated.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Iterable, List, Optional, Tuple

from core.errors import FieldError


# Opaque identifiers: letters, digits, dash, underscore, dot, colon
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:\-]{0,63}$")

# Term codes such as FALL2024, SPRING2025, SUMMER2025, WINTER2026
TERM_PATTERN = re.compile(r"^(FALL|SPRING|SUMMER|WINTER)(\d{4})$")

TERM_SEASON_ORDER = {"WINTER": 0, "SPRING": 1, "SUMMER": 2, "FALL": 3}

MAX_IDEMPOTENCY_KEY_LENGTH = 128


class TermValidationError(ValueError):
    """Exception raised for an invalid term code."""

    def __init__(self, term: str, reason: str):
        self.term = term
        self.reason = reason
        super().__init__(f"Invalid term '{term}': {reason}")


@lru_cache(maxsize=1024)
def parse_term(term: str) -> Tuple[str, int]:
    """
    Parse a term code into (season, year).

    Args:
        term: Term code, e.g. "FALL2024"

    Returns:
        Tuple of (season, year)

    Raises:
        TermValidationError: If the code is malformed
    """
    if not term:
        raise TermValidationError(term, "empty term code")
    match = TERM_PATTERN.match(term.upper())
    if not match:
        raise TermValidationError(term, "expected SEASONYYYY, e.g. FALL2024")
    season, year = match.group(1), int(match.group(2))
    if year < 1900 or year > 2999:
        raise TermValidationError(term, f"year out of range: {year}")
    return season, year


def normalize_term(term: str) -> str:
    """
    Canonical form of a term code, so "fall2024" and "FALL2024" compare equal.

    Raises:
        TermValidationError: If the code is malformed
    """
    season, year = parse_term(term)
    return f"{season}{year}"


def term_sort_key(term: str) -> Tuple[int, int]:
    """Chronological sort key for a term code; malformed codes sort first."""
    try:
        season, year = parse_term(term)
    except TermValidationError:
        return (0, -1)
    return (year, TERM_SEASON_ORDER[season])


def require_identifier(field_name: str, value: Any) -> List[FieldError]:
    """Validate a required opaque identifier."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return [FieldError(field_name, "is required")]
    if not isinstance(value, str):
        return [FieldError(field_name, "must be a string")]
    if not IDENTIFIER_PATTERN.match(value):
        return [FieldError(field_name, "has an invalid format")]
    return []


def optional_identifier(field_name: str, value: Any) -> List[FieldError]:
    """Validate an identifier that may be omitted."""
    if value is None:
        return []
    return require_identifier(field_name, value)


def require_term(field_name: str, value: Any) -> List[FieldError]:
    """Validate a required term code."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return [FieldError(field_name, "is required")]
    if not isinstance(value, str):
        return [FieldError(field_name, "must be a string")]
    try:
        parse_term(value)
    except TermValidationError as e:
        return [FieldError(field_name, e.reason)]
    return []


def optional_term(field_name: str, value: Any) -> List[FieldError]:
    if value is None:
        return []
    return require_term(field_name, value)


def require_choice(
    field_name: str,
    value: Any,
    choices: Iterable[str],
) -> List[FieldError]:
    """Validate that value is one of the allowed string choices."""
    allowed = list(choices)
    if value is None or value == "":
        return [FieldError(field_name, "is required")]
    if value not in allowed:
        return [FieldError(field_name, f"must be one of: {', '.join(allowed)}")]
    return []


def validate_idempotency_key(
    field_name: str,
    value: Optional[str],
) -> List[FieldError]:
    """Idempotency keys are optional, but when present must be usable."""
    if value is None:
        return []
    if not isinstance(value, str) or not value.strip():
        return [FieldError(field_name, "must be a non-empty string")]
    if len(value) > MAX_IDEMPOTENCY_KEY_LENGTH:
        return [
            FieldError(
                field_name,
                f"must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
            )
        ]
    return []


def positive_int(field_name: str, value: Any, *, allow_zero: bool = False) -> List[FieldError]:
    """Validate an integer that must be positive (or non-negative)."""
    if isinstance(value, bool) or not isinstance(value, int):
        return [FieldError(field_name, "must be an integer")]
    if allow_zero and value < 0:
        return [FieldError(field_name, "must be >= 0")]
    if not allow_zero and value <= 0:
        return [FieldError(field_name, "must be > 0")]
    return []
