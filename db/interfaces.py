"""
Registrar - Persistence Abstraction Interfaces

Ports the enrollment core consumes without implementing:
- Specification Pattern for composable read-side filters
- Aggregate Repository with optimistic concurrency (load / save)
- Unit of Work that commits several aggregates all-or-nothing
- Read Store for the enrollment projection (filter, sort, paginate)
- Event Transport for publishing to an external bus
- Idempotency Store with atomic reserve-or-return-existing

Architecture Principles:
    - Dependency Inversion: the pipeline depends on these abstractions,
      adapters in db.memory and db.idempotency implement them
    - Interface Segregation: the read side never sees the repositories
    - Type Safety: generic over aggregate and view types

Usage:
    from db.interfaces import IUnitOfWork, ISpecification, Page, PageRequest

    async with uow_factory() as uow:
        student = await uow.students.load("S1")
        ...
        uow.track(student)
        await uow.commit()
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from pydantic import BaseModel, ConfigDict


# =============================================================================
# TYPE VARIABLES
# =============================================================================

# Entity type variable - matched by specifications and read models
T = TypeVar("T")

# Aggregate type variable
TAggregate = TypeVar("TAggregate", bound="IAggregateRoot")

# Unbound type variable for pagination (allows mapping to any type)
U = TypeVar("U")
PageItemT = TypeVar("PageItemT")


# =============================================================================
# DOMAIN PRIMITIVES - BASE INTERFACES
# =============================================================================


class IDomainEvent(Protocol):
    """Protocol for domain events as seen by persistence and transport."""

    @property
    def event_type(self) -> str:
        ...

    @property
    def occurred_at(self) -> datetime:
        ...

    @property
    def aggregate_id(self) -> Optional[str]:
        ...

    def to_dict(self) -> Dict[str, Any]:
        ...


class IAggregateRoot(Protocol):
    """
    Protocol for aggregate roots in DDD.

    Aggregate roots carry a version for optimistic concurrency and
    collect domain events until commit.
    """

    @property
    def id(self) -> str:
        ...

    @property
    def version(self) -> int:
        ...

    @property
    def aggregate_type(self) -> str:
        ...

    def increment_version(self) -> None:
        ...

    def clear_domain_events(self) -> List[Any]:
        ...

    def to_snapshot(self) -> Dict[str, Any]:
        ...


# =============================================================================
# PAGINATION
# =============================================================================


@dataclass(frozen=True, slots=True)
class Page(Generic[PageItemT]):
    """
    Immutable pagination result wrapper.

    total is the size of the whole filtered result, independent of the
    page window.
    """
    items: Tuple[PageItemT, ...]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        """Calculate total number of pages."""
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size

    @property
    def has_next(self) -> bool:
        """Check if there is a next page."""
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        """Check if there is a previous page."""
        return self.page > 1

    @property
    def is_empty(self) -> bool:
        return len(self.items) == 0

    def map(self, func: Callable[[PageItemT], U]) -> "Page[U]":
        """Transform items in the page to a different type."""
        return Page(
            items=tuple(func(item) for item in self.items),
            total=self.total,
            page=self.page,
            page_size=self.page_size
        )

    @classmethod
    def empty(cls, page: int = 1, page_size: int = 20) -> "Page[PageItemT]":
        return cls(items=(), total=0, page=page, page_size=page_size)

    @classmethod
    def from_list(
        cls, all_items: Sequence[PageItemT], page: int = 1, page_size: int = 20
    ) -> "Page[PageItemT]":
        """Create a page by slicing from a full, already ordered list."""
        total = len(all_items)
        offset = (page - 1) * page_size
        items = tuple(all_items[offset:offset + page_size])
        return cls(items=items, total=total, page=page, page_size=page_size)


@dataclass(frozen=True, slots=True)
class PageRequest:
    """Request parameters for pagination."""
    page: int = 1
    page_size: int = 20

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValueError(f"Page must be >= 1: {self.page}")
        if self.page_size < 1:
            raise ValueError(f"Page size must be >= 1: {self.page_size}")

    @classmethod
    def clamped(
        cls,
        page: Optional[int],
        page_size: Optional[int],
        default_page_size: int,
        max_page_size: int,
    ) -> "PageRequest":
        """
        Build a request from caller input, clamping rather than rejecting.

        page < 1 becomes 1; page_size defaults when omitted and is
        clamped to [1, max_page_size].
        """
        size = default_page_size if page_size is None else page_size
        size = max(1, min(size, max_page_size))
        return cls(page=max(1, page or 1), page_size=size)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @property
    def limit(self) -> int:
        return self.page_size


@dataclass(frozen=True, slots=True)
class SortOrder:
    """
    Primary sort field plus direction.

    Stores always break ties on the item id (ascending) so that pages
    neither duplicate nor skip rows.
    """
    field: str
    descending: bool = True


# =============================================================================
# SPECIFICATION PATTERN
# =============================================================================


class ISpecification(ABC, Generic[T]):
    """
    Specification pattern for composable, type-safe filters.

    Usage:
        spec = EnrollmentByStudentSpec("S1").and_(EnrollmentByTermSpec("FALL2024"))
        page = await read_store.find_page(spec, PageRequest(1, 10), SortOrder("enrolled_at"))
    """

    @abstractmethod
    def is_satisfied_by(self, entity: T) -> bool:
        """
        Check if an entity satisfies this specification.

        Used for in-memory filtering.
        """
        pass

    @abstractmethod
    def to_query_params(self) -> Dict[str, Any]:
        """
        Convert specification to query parameters.

        Returns a dictionary that stores can use to build native queries.
        """
        pass

    def and_(self, other: "ISpecification[T]") -> "ISpecification[T]":
        """Combine with AND logic."""
        return AndSpecification(self, other)

    def or_(self, other: "ISpecification[T]") -> "ISpecification[T]":
        """Combine with OR logic."""
        return OrSpecification(self, other)

    def not_(self) -> "ISpecification[T]":
        """Negate this specification."""
        return NotSpecification(self)

    def __and__(self, other: "ISpecification[T]") -> "ISpecification[T]":
        return self.and_(other)

    def __or__(self, other: "ISpecification[T]") -> "ISpecification[T]":
        return self.or_(other)

    def __invert__(self) -> "ISpecification[T]":
        return self.not_()


class AndSpecification(ISpecification[T]):
    """Specification that combines two specs with AND logic."""

    def __init__(self, left: ISpecification[T], right: ISpecification[T]) -> None:
        self._left = left
        self._right = right

    def is_satisfied_by(self, entity: T) -> bool:
        return self._left.is_satisfied_by(entity) and self._right.is_satisfied_by(entity)

    def to_query_params(self) -> Dict[str, Any]:
        return {
            "$and": [
                self._left.to_query_params(),
                self._right.to_query_params()
            ]
        }


class OrSpecification(ISpecification[T]):
    """Specification that combines two specs with OR logic."""

    def __init__(self, left: ISpecification[T], right: ISpecification[T]) -> None:
        self._left = left
        self._right = right

    def is_satisfied_by(self, entity: T) -> bool:
        return self._left.is_satisfied_by(entity) or self._right.is_satisfied_by(entity)

    def to_query_params(self) -> Dict[str, Any]:
        return {
            "$or": [
                self._left.to_query_params(),
                self._right.to_query_params()
            ]
        }


class NotSpecification(ISpecification[T]):
    """Specification that negates another spec."""

    def __init__(self, spec: ISpecification[T]) -> None:
        self._spec = spec

    def is_satisfied_by(self, entity: T) -> bool:
        return not self._spec.is_satisfied_by(entity)

    def to_query_params(self) -> Dict[str, Any]:
        return {"$not": self._spec.to_query_params()}


class TrueSpecification(ISpecification[T]):
    """Specification that always matches (useful as base for building)."""

    def is_satisfied_by(self, entity: T) -> bool:
        del entity  # Unused but required by interface
        return True

    def to_query_params(self) -> Dict[str, Any]:
        return {}


# =============================================================================
# AGGREGATE REPOSITORY
# =============================================================================


class IAggregateRepository(ABC, Generic[TAggregate]):
    """
    Repository for one aggregate type.

    load returns a fresh, unaliased instance carrying the stored
    version. save is a compare-and-swap on that version.
    """

    @abstractmethod
    async def load(self, id: str) -> TAggregate:
        """
        Load an aggregate by id.

        Raises:
            NotFoundError: if no aggregate is stored under id
        """
        pass

    @abstractmethod
    async def exists(self, id: str) -> bool:
        pass

    @abstractmethod
    async def save(self, aggregate: TAggregate, expected_version: int) -> None:
        """
        Persist the aggregate if the stored version equals expected_version.

        A new aggregate is saved with expected_version 0. On success the
        stored version becomes expected_version + 1.

        Raises:
            ConcurrencyException: on version mismatch
        """
        pass


# =============================================================================
# UNIT OF WORK
# =============================================================================


class IUnitOfWork(ABC):
    """
    Unit of Work committing every tracked aggregate as one unit.

    Usage:
        async with uow:
            student = await uow.students.load(student_id)
            course = await uow.courses.load(course_id)
            student.enroll_in_course(course, offering, term)
            uow.track(student)
            uow.track(course)
            events = await uow.commit()
    """

    @property
    @abstractmethod
    def students(self) -> IAggregateRepository:
        pass

    @property
    @abstractmethod
    def courses(self) -> IAggregateRepository:
        pass

    @abstractmethod
    async def __aenter__(self) -> "IUnitOfWork":
        pass

    @abstractmethod
    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any]
    ) -> None:
        """Roll back anything not committed."""
        pass

    @abstractmethod
    def track(self, aggregate: IAggregateRoot) -> None:
        """Track an aggregate whose state should be written on commit."""
        pass

    @abstractmethod
    async def commit(self) -> List[Any]:
        """
        Write all tracked aggregates atomically.

        Every expected version is verified before anything is written;
        on mismatch nothing is written.

        Returns:
            Domain events collected from the committed aggregates, in
            tracking order

        Raises:
            ConcurrencyException: if any tracked aggregate is stale
        """
        pass

    @abstractmethod
    async def rollback(self) -> None:
        """Discard tracked aggregates and their pending events."""
        pass


# =============================================================================
# READ STORE AND EVENT TRANSPORT
# =============================================================================


class IReadStore(ABC, Generic[T]):
    """Query-able projection source."""

    @abstractmethod
    async def get(self, id: str) -> Optional[T]:
        pass

    @abstractmethod
    async def upsert(self, item: T) -> None:
        pass

    @abstractmethod
    async def find(self, spec: ISpecification[T]) -> List[T]:
        """All matching items, unordered."""
        pass

    @abstractmethod
    async def find_page(
        self,
        spec: ISpecification[T],
        page_request: PageRequest,
        sort: SortOrder,
    ) -> Page[T]:
        """Filter, stable-sort (ties broken by id) and paginate."""
        pass

    @abstractmethod
    async def count(self, spec: Optional[ISpecification[T]] = None) -> int:
        pass


class IEventTransport(ABC):
    """Fire-and-forget delivery to an external bus (at-least-once)."""

    @abstractmethod
    async def publish(self, event: IDomainEvent) -> None:
        pass


# =============================================================================
# IDEMPOTENCY STORE
# =============================================================================


class IdempotencyStatus(str, Enum):
    """State of an idempotency entry."""
    PENDING = "pending"
    COMPLETED = "completed"
    IN_DOUBT = "in_doubt"


class StoredResult(BaseModel):
    """
    An idempotency entry as persisted.

    payload is the opaque serialized result of the first successful
    execution; the store never interprets it.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    status: IdempotencyStatus = IdempotencyStatus.COMPLETED
    payload: Optional[str] = None
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def is_in_doubt(self) -> bool:
        return self.status is IdempotencyStatus.IN_DOUBT


@dataclass(frozen=True, slots=True)
class Reservation:
    """Proof of ownership of an idempotency key while executing."""
    key: str
    token: str
    ttl_seconds: float
    reserved_at: datetime


ReserveOutcome = Union[Reservation, StoredResult]


class IIdempotencyStore(ABC):
    """
    Key-value cache of command results with expiry.

    reserve is the atomic reserve-or-return-existing primitive: exactly
    one concurrent caller wins a Reservation for an absent key, the
    others receive the winner's StoredResult once it completes.
    """

    @abstractmethod
    async def get_result(self, key: str) -> Optional[StoredResult]:
        """Return the completed (or in-doubt) entry, or None if absent or expired."""
        pass

    @abstractmethod
    async def store_result(self, key: str, payload: str, ttl_seconds: float) -> StoredResult:
        """Store (or overwrite) a completed result."""
        pass

    @abstractmethod
    async def reserve(self, key: str, ttl_seconds: float) -> ReserveOutcome:
        pass

    @abstractmethod
    async def complete(self, reservation: Reservation, payload: str) -> StoredResult:
        """Replace the reservation with the successful result."""
        pass

    @abstractmethod
    async def release(self, reservation: Reservation) -> None:
        """Drop the reservation so a retry executes afresh."""
        pass

    @abstractmethod
    async def mark_in_doubt(self, reservation: Reservation) -> None:
        """Record that state committed but the result could not be stored."""
        pass


# =============================================================================
# CONCURRENCY CONTROL
# =============================================================================


class ConcurrencyException(Exception):
    """Raised when optimistic concurrency check fails."""

    def __init__(
        self,
        entity_type: str,
        entity_id: Any,
        expected_version: int,
        actual_version: int
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrency conflict: {entity_type} {entity_id} "
            f"expected version {expected_version}, actual {actual_version}"
        )


class IdempotencyStoreError(Exception):
    """Raised when the idempotency backend cannot be read or written."""


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "IDomainEvent",
    "IAggregateRoot",
    "Page",
    "PageRequest",
    "SortOrder",
    "ISpecification",
    "AndSpecification",
    "OrSpecification",
    "NotSpecification",
    "TrueSpecification",
    "IAggregateRepository",
    "IUnitOfWork",
    "IReadStore",
    "IEventTransport",
    "IdempotencyStatus",
    "StoredResult",
    "Reservation",
    "ReserveOutcome",
    "IIdempotencyStore",
    "ConcurrencyException",
    "IdempotencyStoreError",
]
