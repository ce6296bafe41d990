"""
Tests for db/idempotency.py - Idempotency stores.

Covers:
- Reserve-or-return-existing for the in-memory store
- Duplicates waiting on an in-flight owner, then replaying or re-contending
- Expiry of results and abandoned reservations
- In-doubt entries
- The Redis store against a dict-backed fake client, and its error mapping
"""
import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisError, WatchError

from core.clock import FrozenClock
from db.idempotency import (
    IdempotencyKeyInFlight,
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
)
from db.interfaces import IdempotencyStatus, IdempotencyStoreError, Reservation, StoredResult


# =============================================================================
# FAKE REDIS
# =============================================================================


class FakeRedis:
    """The slice of redis.asyncio.Redis the store uses, backed by a dict."""

    def __init__(self) -> None:
        self.data = {}
        self.px = {}
        self.versions = {}
        self.before_execute = None
        self.closed = False

    def write(self, key, value, px=None):
        self.data[key] = value
        self.px[key] = px
        self.versions[key] = self.versions.get(key, 0) + 1

    def remove(self, key):
        self.data.pop(key, None)
        self.px.pop(key, None)
        self.versions[key] = self.versions.get(key, 0) + 1

    async def set(self, key, value, nx=False, px=None):
        if nx and key in self.data:
            return None
        self.write(key, value, px)
        return True

    async def get(self, key):
        return self.data.get(key)

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


class FakePipeline:

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._watched = {}
        self._ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self._watched.clear()
        self._ops.clear()

    async def watch(self, *keys):
        for key in keys:
            self._watched[key] = self._redis.versions.get(key, 0)

    async def unwatch(self):
        self._watched.clear()

    async def get(self, key):
        return await self._redis.get(key)

    def multi(self):
        pass

    def set(self, key, value, px=None):
        self._ops.append(("set", key, value, px))

    def delete(self, key):
        self._ops.append(("delete", key))

    async def execute(self):
        if self._redis.before_execute is not None:
            self._redis.before_execute()
        for key, version in self._watched.items():
            if self._redis.versions.get(key, 0) != version:
                raise WatchError("Watched variable changed.")
        for op in self._ops:
            if op[0] == "set":
                self._redis.write(op[1], op[2], op[3])
            else:
                self._redis.remove(op[1])
        return [True] * len(self._ops)


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def memory_store(clock):
    return InMemoryIdempotencyStore(clock)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_store(fake_redis, clock):
    return RedisIdempotencyStore(
        fake_redis,
        clock=clock,
        poll_interval_seconds=0.001,
        wait_timeout_seconds=5.0,
    )


# =============================================================================
# IN-MEMORY STORE TESTS
# =============================================================================


class TestInMemoryReserve:
    """Tests for InMemoryIdempotencyStore.reserve and friends."""

    @pytest.mark.asyncio
    async def test_first_caller_wins_reservation(self, memory_store):
        outcome = await memory_store.reserve("k1", 60)

        assert isinstance(outcome, Reservation)
        assert outcome.key == "k1"
        assert await memory_store.get_result("k1") is None

    @pytest.mark.asyncio
    async def test_completed_key_returns_stored_result(self, memory_store):
        reservation = await memory_store.reserve("k1", 60)
        await memory_store.complete(reservation, '{"ok": true}')

        outcome = await memory_store.reserve("k1", 60)

        assert isinstance(outcome, StoredResult)
        assert outcome.payload == '{"ok": true}'
        assert outcome.status is IdempotencyStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_duplicate_waits_for_owner(self, memory_store):
        owner = await memory_store.reserve("k1", 60)
        duplicate = asyncio.create_task(memory_store.reserve("k1", 60))
        await asyncio.sleep(0)
        assert not duplicate.done()

        await memory_store.complete(owner, "payload")
        outcome = await duplicate

        assert isinstance(outcome, StoredResult)
        assert outcome.payload == "payload"

    @pytest.mark.asyncio
    async def test_release_lets_duplicate_contend(self, memory_store):
        owner = await memory_store.reserve("k1", 60)
        duplicate = asyncio.create_task(memory_store.reserve("k1", 60))
        await asyncio.sleep(0)

        await memory_store.release(owner)
        outcome = await duplicate

        assert isinstance(outcome, Reservation)
        assert outcome.token != owner.token
        assert len(memory_store) == 0

    @pytest.mark.asyncio
    async def test_many_duplicates_one_winner(self, memory_store):
        tasks = [asyncio.create_task(memory_store.reserve("k1", 60)) for _ in range(5)]
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        finished = [t for t in tasks if t.done()]
        assert len(finished) == 1
        await memory_store.complete(finished[0].result(), "payload")

        outcomes = await asyncio.gather(*tasks)
        assert sum(isinstance(o, Reservation) for o in outcomes) == 1
        assert sum(isinstance(o, StoredResult) for o in outcomes) == 4

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, memory_store):
        first = await memory_store.reserve("k1", 60)
        second = await memory_store.reserve("k2", 60)

        assert isinstance(first, Reservation)
        assert isinstance(second, Reservation)


class TestInMemoryExpiry:
    """Expiry is evaluated against the injected clock."""

    @pytest.mark.asyncio
    async def test_result_expires(self, memory_store, clock):
        await memory_store.store_result("k1", "payload", ttl_seconds=60)

        clock.advance(seconds=59)
        assert (await memory_store.get_result("k1")).payload == "payload"

        clock.advance(seconds=1)
        assert await memory_store.get_result("k1") is None
        assert isinstance(await memory_store.reserve("k1", 60), Reservation)

    @pytest.mark.asyncio
    async def test_abandoned_reservation_is_reclaimed(self, memory_store, clock):
        stale = await memory_store.reserve("k1", 10)
        clock.advance(seconds=11)

        fresh = await memory_store.reserve("k1", 10)

        assert isinstance(fresh, Reservation)
        assert fresh.token != stale.token

    @pytest.mark.asyncio
    async def test_stale_release_does_not_drop_new_owner(self, memory_store, clock):
        stale = await memory_store.reserve("k1", 10)
        clock.advance(seconds=11)
        fresh = await memory_store.reserve("k1", 10)

        await memory_store.release(stale)
        duplicate = asyncio.create_task(memory_store.reserve("k1", 10))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert not duplicate.done()

        await memory_store.complete(fresh, "payload")
        assert (await duplicate).payload == "payload"


class TestInMemoryInDoubt:
    """Tests for mark_in_doubt."""

    @pytest.mark.asyncio
    async def test_in_doubt_entry_is_returned(self, memory_store):
        reservation = await memory_store.reserve("k1", 60)

        await memory_store.mark_in_doubt(reservation)
        outcome = await memory_store.reserve("k1", 60)

        assert isinstance(outcome, StoredResult)
        assert outcome.is_in_doubt
        assert outcome.payload is None


# =============================================================================
# REDIS STORE TESTS
# =============================================================================


class TestRedisStore:
    """Tests for RedisIdempotencyStore against FakeRedis."""

    @pytest.mark.asyncio
    async def test_reserve_writes_pending_marker(self, redis_store, fake_redis):
        reservation = await redis_store.reserve("k1", 60)

        raw = fake_redis.data["registrar:idempotency:k1"]
        assert raw == f"pending:{reservation.token}"
        assert fake_redis.px["registrar:idempotency:k1"] == 60000
        assert await redis_store.get_result("k1") is None

    @pytest.mark.asyncio
    async def test_complete_then_replay(self, redis_store):
        reservation = await redis_store.reserve("k1", 60)
        await redis_store.complete(reservation, "payload")

        outcome = await redis_store.reserve("k1", 60)

        assert isinstance(outcome, StoredResult)
        assert outcome.payload == "payload"
        assert (await redis_store.get_result("k1")).payload == "payload"

    @pytest.mark.asyncio
    async def test_duplicate_polls_until_complete(self, redis_store):
        owner = await redis_store.reserve("k1", 60)
        duplicate = asyncio.create_task(redis_store.reserve("k1", 60))
        await asyncio.sleep(0.01)
        assert not duplicate.done()

        await redis_store.complete(owner, "payload")

        outcome = await asyncio.wait_for(duplicate, timeout=2)
        assert outcome.payload == "payload"

    @pytest.mark.asyncio
    async def test_release_deletes_marker(self, redis_store, fake_redis):
        reservation = await redis_store.reserve("k1", 60)

        await redis_store.release(reservation)

        assert "registrar:idempotency:k1" not in fake_redis.data
        assert isinstance(await redis_store.reserve("k1", 60), Reservation)

    @pytest.mark.asyncio
    async def test_release_ignores_foreign_marker(self, redis_store, fake_redis):
        reservation = await redis_store.reserve("k1", 60)
        fake_redis.data["registrar:idempotency:k1"] = "pending:someone-else"

        await redis_store.release(reservation)

        assert fake_redis.data["registrar:idempotency:k1"] == "pending:someone-else"

    @pytest.mark.asyncio
    async def test_complete_after_lost_reservation_fails(self, redis_store, fake_redis):
        reservation = await redis_store.reserve("k1", 60)
        fake_redis.remove("registrar:idempotency:k1")

        with pytest.raises(IdempotencyStoreError):
            await redis_store.complete(reservation, "payload")

    @pytest.mark.asyncio
    async def test_concurrent_write_during_complete_is_detected(self, redis_store, fake_redis):
        reservation = await redis_store.reserve("k1", 60)
        fake_redis.before_execute = lambda: fake_redis.write(
            "registrar:idempotency:k1", "pending:intruder"
        )

        with pytest.raises(IdempotencyStoreError):
            await redis_store.complete(reservation, "payload")

        assert fake_redis.data["registrar:idempotency:k1"] == "pending:intruder"

    @pytest.mark.asyncio
    async def test_mark_in_doubt(self, redis_store):
        reservation = await redis_store.reserve("k1", 60)

        await redis_store.mark_in_doubt(reservation)
        outcome = await redis_store.reserve("k1", 60)

        assert outcome.is_in_doubt

    @pytest.mark.asyncio
    async def test_wait_timeout(self, fake_redis, clock):
        store = RedisIdempotencyStore(fake_redis, clock=clock, wait_timeout_seconds=0.0)
        await store.reserve("k1", 60)

        with pytest.raises(IdempotencyKeyInFlight):
            await store.reserve("k1", 60)

    @pytest.mark.asyncio
    async def test_close(self, redis_store, fake_redis):
        await redis_store.close()

        assert fake_redis.closed


class TestRedisErrors:
    """Backend failures surface as IdempotencyStoreError."""

    @pytest.fixture
    def broken_redis(self):
        mock = AsyncMock()
        mock.set = AsyncMock(side_effect=RedisError("connection refused"))
        mock.get = AsyncMock(side_effect=RedisError("connection refused"))
        return mock

    @pytest.mark.asyncio
    async def test_reserve(self, broken_redis, clock):
        store = RedisIdempotencyStore(broken_redis, clock=clock)

        with pytest.raises(IdempotencyStoreError, match="connection refused"):
            await store.reserve("k1", 60)

    @pytest.mark.asyncio
    async def test_get_result(self, broken_redis, clock):
        store = RedisIdempotencyStore(broken_redis, clock=clock)

        with pytest.raises(IdempotencyStoreError):
            await store.get_result("k1")
