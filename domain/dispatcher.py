"""
Registrar - Domain Event Dispatcher

Fans committed domain events out to every handler registered for the
event's runtime type (or any of its base classes).

Each handler runs in isolation: a failure is caught, logged and recorded
in that handler's DispatchOutcome, and the remaining handlers still run.
Delivery is at-least-once; with dispatch_max_attempts > 1 a failing
handler is re-invoked, so handlers must tolerate duplicates.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import (
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Type,
    Union,
)
from uuid import UUID

from db.interfaces import IEventTransport
from domain.entities import DomainEvent
from observability.logging import get_logger


class IEventHandler(ABC):
    """Reaction to a domain event."""

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def handle(self, event: DomainEvent) -> None:
        pass


EventCallback = Callable[[DomainEvent], Awaitable[None]]


class CallbackEventHandler(IEventHandler):
    """Adapts a coroutine function to IEventHandler."""

    def __init__(self, callback: EventCallback, name: Optional[str] = None) -> None:
        self._callback = callback
        self._name = name or getattr(callback, "__qualname__", repr(callback))

    @property
    def name(self) -> str:
        return self._name

    async def handle(self, event: DomainEvent) -> None:
        await self._callback(event)


class TransportForwarder(IEventHandler):
    """Publishes every event it receives to the external event transport."""

    def __init__(self, transport: IEventTransport) -> None:
        self._transport = transport

    async def handle(self, event: DomainEvent) -> None:
        await self._transport.publish(event)


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of delivering one event to one handler."""
    event_id: UUID
    event_type: str
    handler: str
    succeeded: bool
    attempts: int
    error: Optional[str] = None


class DomainEventDispatcher:
    """
    Routes events to handlers by type.

    Usage:
        dispatcher = DomainEventDispatcher(max_attempts=2)
        dispatcher.register(StudentEnrolled, projection)
        dispatcher.register(DomainEvent, TransportForwarder(transport))

        outcomes = await dispatcher.dispatch(events)
    """

    def __init__(
        self,
        max_attempts: int = 1,
        retry_delay_seconds: float = 0.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1: {max_attempts}")
        self._handlers: Dict[Type[DomainEvent], List[IEventHandler]] = {}
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay_seconds
        self._logger = get_logger("registrar.dispatcher")

    def register(
        self,
        event_type: Type[DomainEvent],
        handler: Union[IEventHandler, EventCallback],
    ) -> IEventHandler:
        """Register a handler for an event type and its subclasses."""
        if not isinstance(handler, IEventHandler):
            handler = CallbackEventHandler(handler)
        self._handlers.setdefault(event_type, []).append(handler)
        self._logger.debug(
            "Registered event handler",
            event_type=event_type.__name__,
            handler=handler.name,
        )
        return handler

    def handlers_for(self, event: DomainEvent) -> List[IEventHandler]:
        """Handlers for the event's class, most specific type first."""
        handlers: List[IEventHandler] = []
        for cls in type(event).__mro__:
            for handler in self._handlers.get(cls, ()):
                if handler not in handlers:
                    handlers.append(handler)
        return handlers

    async def dispatch(self, events: Sequence[DomainEvent]) -> List[DispatchOutcome]:
        """
        Deliver events in order, each to all of its handlers.

        Never raises for handler failures; inspect the outcomes instead.
        """
        outcomes: List[DispatchOutcome] = []
        for event in events:
            for handler in self.handlers_for(event):
                outcomes.append(await self._deliver(event, handler))
        return outcomes

    async def _deliver(self, event: DomainEvent, handler: IEventHandler) -> DispatchOutcome:
        last_error: Optional[Exception] = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                await handler.handle(event)
                return DispatchOutcome(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    handler=handler.name,
                    succeeded=True,
                    attempts=attempt,
                )
            except Exception as e:
                last_error = e
                self._logger.warning(
                    "Event handler failed",
                    event_type=event.event_type,
                    event_id=str(event.event_id),
                    handler=handler.name,
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    error=str(e),
                )
                if attempt < self._max_attempts and self._retry_delay > 0:
                    await asyncio.sleep(self._retry_delay * attempt)

        self._logger.error(
            "Event handler gave up",
            event_type=event.event_type,
            event_id=str(event.event_id),
            handler=handler.name,
            attempts=self._max_attempts,
            error=str(last_error),
        )
        return DispatchOutcome(
            event_id=event.event_id,
            event_type=event.event_type,
            handler=handler.name,
            succeeded=False,
            attempts=self._max_attempts,
            error=f"{type(last_error).__name__}: {last_error}",
        )
