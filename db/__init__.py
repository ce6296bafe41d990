"""
Registrar - Persistence Ports

Interfaces the domain and the command pipeline depend on. Adapters live
in submodules:
- db.memory: in-memory repositories, unit of work, read store, transport
- db.idempotency: in-memory and Redis idempotency stores
- db.projections: the enrollment read model

Usage:
    from db import Page, PageRequest, ConcurrencyException
    from db.memory import InMemoryDatabase
"""
from db.interfaces import (
    AndSpecification,
    ConcurrencyException,
    IAggregateRepository,
    IAggregateRoot,
    IDomainEvent,
    IEventTransport,
    IIdempotencyStore,
    IReadStore,
    ISpecification,
    IUnitOfWork,
    IdempotencyStatus,
    IdempotencyStoreError,
    NotSpecification,
    OrSpecification,
    Page,
    PageRequest,
    Reservation,
    ReserveOutcome,
    SortOrder,
    StoredResult,
    TrueSpecification,
)

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
