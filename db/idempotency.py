"""
Registrar - Idempotency Stores

Key-value caches mapping an idempotency key to the serialized result of
the first successful execution of a command.

Both stores implement the atomic reserve-or-return-existing primitive:
for an absent key exactly one caller wins a Reservation, concurrent
duplicates wait for the owner and then either receive its StoredResult
or contend again if the owner released the key.

Backends:
    - InMemoryIdempotencyStore: asyncio lock plus one wake-up event per
      in-flight key
    - RedisIdempotencyStore: SET NX PX pending marker, overwritten with
      the result on completion; waiters poll
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional
from uuid import uuid4

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from core.clock import Clock, SystemClock
from db.interfaces import (
    IdempotencyStatus,
    IdempotencyStoreError,
    IIdempotencyStore,
    Reservation,
    ReserveOutcome,
    StoredResult,
)


logger = logging.getLogger("registrar.idempotency")


class IdempotencyKeyInFlight(IdempotencyStoreError):
    """A duplicate waited too long for the key's owner to finish."""

    def __init__(self, key: str, waited_seconds: float):
        self.key = key
        self.waited_seconds = waited_seconds
        super().__init__(
            f"Idempotency key {key!r} still in flight after {waited_seconds:.1f}s"
        )


# =============================================================================
# IN-MEMORY STORE
# =============================================================================


@dataclass
class _InFlight:
    token: str
    expires_at: datetime
    done: asyncio.Event = field(default_factory=asyncio.Event)


class InMemoryIdempotencyStore(IIdempotencyStore):
    """
    Process-local idempotency store.

    Expired entries are filtered at read time and evicted lazily.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SystemClock()
        self._lock = asyncio.Lock()
        self._entries: Dict[str, StoredResult] = {}
        self._in_flight: Dict[str, _InFlight] = {}

    def _live_entry(self, key: str, now: datetime) -> Optional[StoredResult]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(now):
            del self._entries[key]
            return None
        return entry

    def _make_result(
        self,
        key: str,
        payload: Optional[str],
        ttl_seconds: float,
        status: IdempotencyStatus = IdempotencyStatus.COMPLETED,
    ) -> StoredResult:
        now = self._clock.now()
        return StoredResult(
            key=key,
            status=status,
            payload=payload,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def _finish(self, reservation: Reservation) -> bool:
        """Drop the in-flight marker and wake waiters; False if not owned."""
        in_flight = self._in_flight.get(reservation.key)
        if in_flight is None or in_flight.token != reservation.token:
            return False
        del self._in_flight[reservation.key]
        in_flight.done.set()
        return True

    async def get_result(self, key: str) -> Optional[StoredResult]:
        async with self._lock:
            return self._live_entry(key, self._clock.now())

    async def store_result(self, key: str, payload: str, ttl_seconds: float) -> StoredResult:
        async with self._lock:
            result = self._make_result(key, payload, ttl_seconds)
            self._entries[key] = result
            return result

    async def reserve(self, key: str, ttl_seconds: float) -> ReserveOutcome:
        while True:
            async with self._lock:
                now = self._clock.now()
                existing = self._live_entry(key, now)
                if existing is not None:
                    return existing

                in_flight = self._in_flight.get(key)
                if in_flight is not None and now >= in_flight.expires_at:
                    logger.warning(f"Reclaiming expired reservation for {key!r}")
                    in_flight.done.set()
                    del self._in_flight[key]
                    in_flight = None

                if in_flight is None:
                    token = uuid4().hex
                    self._in_flight[key] = _InFlight(
                        token=token,
                        expires_at=now + timedelta(seconds=ttl_seconds),
                    )
                    return Reservation(
                        key=key,
                        token=token,
                        ttl_seconds=ttl_seconds,
                        reserved_at=now,
                    )
                waiter = in_flight.done

            await waiter.wait()

    async def complete(self, reservation: Reservation, payload: str) -> StoredResult:
        async with self._lock:
            result = self._make_result(reservation.key, payload, reservation.ttl_seconds)
            self._entries[reservation.key] = result
            if not self._finish(reservation):
                logger.warning(
                    f"Completed {reservation.key!r} after its reservation was lost"
                )
            return result

    async def release(self, reservation: Reservation) -> None:
        async with self._lock:
            self._finish(reservation)

    async def mark_in_doubt(self, reservation: Reservation) -> None:
        async with self._lock:
            self._entries[reservation.key] = self._make_result(
                reservation.key,
                None,
                reservation.ttl_seconds,
                status=IdempotencyStatus.IN_DOUBT,
            )
            self._finish(reservation)

    def __len__(self) -> int:
        return len(self._entries)


# =============================================================================
# REDIS STORE
# =============================================================================


PENDING_PREFIX = "pending:"


class RedisIdempotencyStore(IIdempotencyStore):
    """
    Redis-backed idempotency store shared across processes.

    Keys hold either a pending marker ("pending:<token>") while the owner
    executes, or the StoredResult as JSON. Both carry a PX expiry, so
    abandoned reservations and old results age out on the server.

    Usage:
        store = RedisIdempotencyStore.from_url("redis://localhost:6379/0")
        outcome = await store.reserve("req-123", ttl_seconds=86400)
    """

    def __init__(
        self,
        client: Redis,
        clock: Optional[Clock] = None,
        key_prefix: str = "registrar:idempotency:",
        poll_interval_seconds: float = 0.05,
        wait_timeout_seconds: float = 30.0,
    ) -> None:
        self._redis = client
        self._clock = clock or SystemClock()
        self._prefix = key_prefix
        self._poll_interval = poll_interval_seconds
        self._wait_timeout = wait_timeout_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisIdempotencyStore":
        client = aioredis.from_url(url, decode_responses=True)
        return cls(client, **kwargs)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _result(
        self,
        key: str,
        payload: Optional[str],
        ttl_seconds: float,
        status: IdempotencyStatus = IdempotencyStatus.COMPLETED,
    ) -> StoredResult:
        now = self._clock.now()
        return StoredResult(
            key=key,
            status=status,
            payload=payload,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    @staticmethod
    def _ttl_ms(ttl_seconds: float) -> int:
        return max(1, int(ttl_seconds * 1000))

    async def get_result(self, key: str) -> Optional[StoredResult]:
        try:
            raw = await self._redis.get(self._key(key))
        except RedisError as e:
            raise IdempotencyStoreError(f"Failed to read {key!r}: {e}") from e
        if raw is None or raw.startswith(PENDING_PREFIX):
            return None
        return StoredResult.model_validate_json(raw)

    async def store_result(self, key: str, payload: str, ttl_seconds: float) -> StoredResult:
        result = self._result(key, payload, ttl_seconds)
        try:
            await self._redis.set(
                self._key(key), result.model_dump_json(), px=self._ttl_ms(ttl_seconds)
            )
        except RedisError as e:
            raise IdempotencyStoreError(f"Failed to store {key!r}: {e}") from e
        return result

    async def reserve(self, key: str, ttl_seconds: float) -> ReserveOutcome:
        redis_key = self._key(key)
        token = uuid4().hex
        loop = asyncio.get_running_loop()
        started = loop.time()

        while True:
            try:
                acquired = await self._redis.set(
                    redis_key,
                    f"{PENDING_PREFIX}{token}",
                    nx=True,
                    px=self._ttl_ms(ttl_seconds),
                )
                if acquired:
                    return Reservation(
                        key=key,
                        token=token,
                        ttl_seconds=ttl_seconds,
                        reserved_at=self._clock.now(),
                    )
                raw = await self._redis.get(redis_key)
            except RedisError as e:
                raise IdempotencyStoreError(f"Failed to reserve {key!r}: {e}") from e

            if raw is not None and not raw.startswith(PENDING_PREFIX):
                return StoredResult.model_validate_json(raw)

            waited = loop.time() - started
            if waited >= self._wait_timeout:
                raise IdempotencyKeyInFlight(key, waited)
            if raw is not None:
                await asyncio.sleep(self._poll_interval)

    async def _replace_if_owned(
        self,
        reservation: Reservation,
        value: Optional[str],
    ) -> bool:
        """
        Atomically swap our pending marker for value (or delete it).

        Returns False if the key no longer holds our marker.
        """
        redis_key = self._key(reservation.key)
        marker = f"{PENDING_PREFIX}{reservation.token}"
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(redis_key)
                current = await pipe.get(redis_key)
                if current != marker:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                if value is None:
                    pipe.delete(redis_key)
                else:
                    pipe.set(redis_key, value, px=self._ttl_ms(reservation.ttl_seconds))
                await pipe.execute()
                return True
        except WatchError:
            return False
        except RedisError as e:
            raise IdempotencyStoreError(
                f"Failed to update reservation {reservation.key!r}: {e}"
            ) from e

    async def complete(self, reservation: Reservation, payload: str) -> StoredResult:
        result = self._result(reservation.key, payload, reservation.ttl_seconds)
        if not await self._replace_if_owned(reservation, result.model_dump_json()):
            raise IdempotencyStoreError(
                f"Reservation for {reservation.key!r} was lost before completion"
            )
        return result

    async def release(self, reservation: Reservation) -> None:
        await self._replace_if_owned(reservation, None)

    async def mark_in_doubt(self, reservation: Reservation) -> None:
        result = self._result(
            reservation.key,
            None,
            reservation.ttl_seconds,
            status=IdempotencyStatus.IN_DOUBT,
        )
        try:
            await self._redis.set(
                self._key(reservation.key),
                result.model_dump_json(),
                px=self._ttl_ms(reservation.ttl_seconds),
            )
        except RedisError as e:
            raise IdempotencyStoreError(
                f"Failed to mark {reservation.key!r} in doubt: {e}"
            ) from e

    async def close(self) -> None:
        await self._redis.aclose()
