"""
Registrar - In-Memory Adapters

Reference implementations of the persistence ports, used by the test
suite and for local runs:

- InMemoryAggregateRepository: snapshot storage with optimistic versions
- InMemoryUnitOfWork: all-or-nothing commit across aggregates
- InMemoryReadStore: filter / stable sort / paginate over projection rows
- InMemoryEnrollmentReadStore: the read store for EnrollmentView rows
- InMemoryEventTransport: records published events

Repositories store snapshots, never live objects, so a loaded aggregate
never aliases stored state and a failed command leaves nothing behind.
"""
from __future__ import annotations

import asyncio
import copy
import logging
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

from core.errors import NotFoundError
from db.interfaces import (
    ConcurrencyException,
    IAggregateRepository,
    IDomainEvent,
    IEventTransport,
    IReadStore,
    ISpecification,
    IUnitOfWork,
    Page,
    PageRequest,
    SortOrder,
    TrueSpecification,
)
from db.projections import EnrollmentView
from domain.entities import AggregateRoot, Course, Student


logger = logging.getLogger("registrar.db.memory")

TAggregate = TypeVar("TAggregate", bound=AggregateRoot)
T = TypeVar("T")


# =============================================================================
# AGGREGATE REPOSITORY
# =============================================================================


class InMemoryAggregateRepository(IAggregateRepository[TAggregate], Generic[TAggregate]):
    """
    Snapshot store for one aggregate type.

    Every load and save yields to the event loop once, standing in for
    the I/O suspension point of a real store.
    """

    def __init__(
        self,
        aggregate_cls: Type[TAggregate],
        lock: Optional[asyncio.Lock] = None,
    ) -> None:
        self._cls = aggregate_cls
        self._lock = lock or asyncio.Lock()
        self._rows: Dict[str, Dict[str, Any]] = {}

    @property
    def entity_type(self) -> str:
        return self._cls.__name__

    async def load(self, id: str) -> TAggregate:
        await asyncio.sleep(0)
        row = self._rows.get(id)
        if row is None:
            raise NotFoundError(self.entity_type, id)
        return self._cls.from_snapshot(copy.deepcopy(row))

    async def exists(self, id: str) -> bool:
        return id in self._rows

    def stored_version(self, id: str) -> int:
        row = self._rows.get(id)
        return int(row["version"]) if row else 0

    def check_version(self, aggregate: TAggregate, expected_version: int) -> None:
        actual = self.stored_version(aggregate.id)
        if actual != expected_version:
            raise ConcurrencyException(
                self.entity_type, aggregate.id, expected_version, actual
            )

    def write(self, aggregate: TAggregate, expected_version: int) -> None:
        """Store a snapshot at expected_version + 1; caller holds the lock."""
        snapshot = copy.deepcopy(aggregate.to_snapshot())
        snapshot["version"] = expected_version + 1
        self._rows[aggregate.id] = snapshot

    async def save(self, aggregate: TAggregate, expected_version: int) -> None:
        await asyncio.sleep(0)
        async with self._lock:
            self.check_version(aggregate, expected_version)
            self.write(aggregate, expected_version)
        aggregate.increment_version()

    def __len__(self) -> int:
        return len(self._rows)


# =============================================================================
# DATABASE AND UNIT OF WORK
# =============================================================================


class InMemoryDatabase:
    """
    The student and course repositories behind one commit lock.

    Usage:
        db = InMemoryDatabase()
        async with db.unit_of_work() as uow:
            ...
    """

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.students: InMemoryAggregateRepository[Student] = InMemoryAggregateRepository(
            Student, self.lock
        )
        self.courses: InMemoryAggregateRepository[Course] = InMemoryAggregateRepository(
            Course, self.lock
        )

    def repository_for(self, aggregate: AggregateRoot) -> InMemoryAggregateRepository:
        if isinstance(aggregate, Student):
            return self.students
        if isinstance(aggregate, Course):
            return self.courses
        raise TypeError(f"No repository for {aggregate.aggregate_type}")

    def unit_of_work(self) -> "InMemoryUnitOfWork":
        return InMemoryUnitOfWork(self)


class InMemoryUnitOfWork(IUnitOfWork):
    """
    Unit of work over an InMemoryDatabase.

    commit verifies every tracked aggregate's version under the database
    lock before writing any of them, so a stale aggregate aborts the
    whole unit with nothing written.
    """

    def __init__(self, database: InMemoryDatabase) -> None:
        self._db = database
        self._tracked: Dict[Tuple[str, str], AggregateRoot] = {}
        self._committed = False

    @property
    def students(self) -> InMemoryAggregateRepository[Student]:
        return self._db.students

    @property
    def courses(self) -> InMemoryAggregateRepository[Course]:
        return self._db.courses

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if not self._committed:
            await self.rollback()

    def track(self, aggregate: AggregateRoot) -> None:
        self._tracked[(aggregate.aggregate_type, aggregate.id)] = aggregate

    async def commit(self) -> List[IDomainEvent]:
        await asyncio.sleep(0)
        aggregates = list(self._tracked.values())

        async with self._db.lock:
            for aggregate in aggregates:
                self._db.repository_for(aggregate).check_version(aggregate, aggregate.version)
            for aggregate in aggregates:
                self._db.repository_for(aggregate).write(aggregate, aggregate.version)

        events: List[IDomainEvent] = []
        for aggregate in aggregates:
            aggregate.increment_version()
            events.extend(aggregate.clear_domain_events())

        self._tracked.clear()
        self._committed = True
        logger.debug(f"Committed {len(aggregates)} aggregate(s), {len(events)} event(s)")
        return events

    async def rollback(self) -> None:
        for aggregate in self._tracked.values():
            aggregate.clear_domain_events()
        self._tracked.clear()


# =============================================================================
# READ STORE
# =============================================================================


class InMemoryReadStore(IReadStore[T], Generic[T]):
    """
    Projection rows held in a dict keyed by id.

    find_page filters with the specification, sorts stably on the
    requested field with id as the tie-break, then slices.
    """

    def __init__(self, id_of: Callable[[T], str] = lambda item: item.id) -> None:
        self._id_of = id_of
        self._rows: Dict[str, T] = {}

    async def get(self, id: str) -> Optional[T]:
        return self._rows.get(id)

    async def upsert(self, item: T) -> None:
        self._rows[self._id_of(item)] = item

    async def find(self, spec: ISpecification[T]) -> List[T]:
        return [row for row in self._rows.values() if spec.is_satisfied_by(row)]

    def _ordered(self, rows: List[T], sort: SortOrder) -> List[T]:
        # Two stable passes: id ascending, then the primary field
        rows = sorted(rows, key=self._id_of)
        return sorted(rows, key=lambda row: getattr(row, sort.field), reverse=sort.descending)

    async def find_page(
        self,
        spec: ISpecification[T],
        page_request: PageRequest,
        sort: SortOrder,
    ) -> Page[T]:
        matched = await self.find(spec)
        ordered = self._ordered(matched, sort)
        return Page.from_list(ordered, page=page_request.page, page_size=page_request.page_size)

    async def count(self, spec: Optional[ISpecification[T]] = None) -> int:
        return len(await self.find(spec or TrueSpecification()))

    def __len__(self) -> int:
        return len(self._rows)


class InMemoryEnrollmentReadStore(InMemoryReadStore[EnrollmentView]):
    """Enrollment view rows keyed by enrollment id."""

    def __init__(self) -> None:
        super().__init__(id_of=lambda view: view.id)

    def rows(self) -> List[EnrollmentView]:
        return list(self._rows.values())


# =============================================================================
# EVENT TRANSPORT
# =============================================================================


class InMemoryEventTransport(IEventTransport):
    """Stand-in for an external bus; keeps everything published."""

    def __init__(self) -> None:
        self.published: List[IDomainEvent] = []

    async def publish(self, event: IDomainEvent) -> None:
        self.published.append(event)

    def of_type(self, event_type: str) -> List[IDomainEvent]:
        return [e for e in self.published if e.event_type == event_type]

    def clear(self) -> None:
        self.published.clear()
