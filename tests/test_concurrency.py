"""
Concurrency safety tests.

Demonstrates:
1. Keyed locks serialise same-entity work and time out as conflicts.
2. Two riders racing for the last seat: exactly one wins.
3. Double cancel releases capacity exactly once.
4. Only lock and serialization failures are reported as retryable.
5. Distributed lock prevents simultaneous acquire.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from ridepool.domain.entities import Coordinate, NewRideRequest
from ridepool.domain.enums import PoolStatus, RideStatus
from ridepool.errors import ConcurrencyConflict
from ridepool.infrastructure.cache import pool_key, ride_key
from ridepool.infrastructure.locks import DistributedLock, KeyedLocks
from ridepool.infrastructure.models import RidePoolModel
from ridepool.services.coordinator import CancelResult, MatchOutcome, _is_conflict

AIRPORT = (19.0896, 72.8656)
ANDHERI = (19.1176, 72.8490)


def _new(user_id, passengers=1, lng_offset=0.0):
    return NewRideRequest(
        user_id=user_id,
        pickup=Coordinate(AIRPORT[0], AIRPORT[1] + lng_offset),
        dropoff=Coordinate(*ANDHERI),
        passenger_count=passengers,
    )


async def _wait_for_contenders(locks: KeyedLocks, key: str, count: int) -> None:
    for _ in range(500):
        if locks.contenders(key) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{key} never reached {count} contenders")


class TestKeyedLocks:
    @pytest.mark.asyncio
    async def test_same_key_is_serialised(self):
        locks = KeyedLocks(timeout_seconds=1.0)
        order: list[str] = []

        async def worker(name: str):
            async with locks.hold("pool:1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )
        assert locks.contenders("pool:1") == 0
        assert not locks.is_locked("pool:1")

    @pytest.mark.asyncio
    async def test_distinct_keys_do_not_block(self):
        locks = KeyedLocks(timeout_seconds=0.1)
        async with locks.hold("ride:1"):
            async with locks.hold("ride:2"):
                assert locks.is_locked("ride:1")
                assert locks.is_locked("ride:2")

    @pytest.mark.asyncio
    async def test_timeout_is_a_conflict(self):
        locks = KeyedLocks(timeout_seconds=0.05)
        async with locks.hold("pool:9"):
            with pytest.raises(ConcurrencyConflict):
                async with locks.hold("pool:9"):
                    pass
            assert locks.contenders("pool:9") == 1

    @pytest.mark.asyncio
    async def test_repeated_key_taken_once(self):
        locks = KeyedLocks(timeout_seconds=0.05)
        async with locks.hold("ride:1", "ride:1"):
            assert locks.contenders("ride:1") == 1


class TestLastSeatRace:
    @pytest.mark.asyncio
    async def test_only_one_rider_gets_the_last_seat(
        self, coordinator, session_factory, user_ids
    ):
        seeded = await coordinator.submit(_new(user_ids[0], passengers=3))
        pool_id = seeded.pool.id
        first = await coordinator.create_request(_new(user_ids[1], lng_offset=0.0004))
        second = await coordinator.create_request(_new(user_ids[2], lng_offset=0.0008))

        key = pool_key(pool_id)
        async with coordinator.locks.hold(key):
            tasks = [
                asyncio.create_task(coordinator.match_request(first.id)),
                asyncio.create_task(coordinator.match_request(second.id)),
            ]
            await _wait_for_contenders(coordinator.locks, key, 3)
        results = await asyncio.gather(*tasks, return_exceptions=True)

        winners = [r for r in results if not isinstance(r, BaseException)]
        losers = [r for r in results if isinstance(r, BaseException)]
        assert len(winners) == 1
        assert winners[0].outcome is MatchOutcome.MATCHED_TO_POOL
        assert len(losers) == 1
        assert isinstance(losers[0], ConcurrencyConflict)
        assert losers[0].retryable

        async with session_factory() as session:
            stored = await session.get(RidePoolModel, pool_id)
            assert stored.current_passenger_count == 4

        # the loser is still pending and opens its own pool on retry
        loser_id = second.id if winners[0].request.id == first.id else first.id
        retried = await coordinator.match_request(loser_id)
        assert retried.outcome is MatchOutcome.NEW_POOL_CREATED
        assert retried.pool.id != pool_id


class TestCancelRaces:
    @pytest.mark.asyncio
    async def test_double_cancel_releases_capacity_once(
        self, coordinator, session_factory, user_ids
    ):
        first = await coordinator.submit(_new(user_ids[0], passengers=2))
        second = await coordinator.submit(_new(user_ids[1], lng_offset=0.0004))
        pool_id = first.pool.id
        assert second.pool.id == pool_id

        results = await asyncio.gather(
            coordinator.cancel(first.request.id), coordinator.cancel(first.request.id)
        )

        assert {r.outcome for r in results} == {
            CancelResult.CANCELLED,
            CancelResult.ALREADY_TERMINAL,
        }
        async with session_factory() as session:
            stored = await session.get(RidePoolModel, pool_id)
            assert stored.current_passenger_count == 1
            assert PoolStatus(stored.status) is PoolStatus.FORMING

    @pytest.mark.asyncio
    async def test_match_and_cancel_end_consistent(
        self, coordinator, session_factory, user_ids
    ):
        seeded = await coordinator.submit(_new(user_ids[0]))
        pending = await coordinator.create_request(_new(user_ids[1], lng_offset=0.0004))

        await asyncio.gather(
            coordinator.match_request(pending.id),
            coordinator.cancel(pending.id),
            return_exceptions=True,
        )

        ride = await coordinator.get_request(pending.id)
        assert ride.status is RideStatus.CANCELLED
        snapshot = await coordinator.pool_snapshot(seeded.pool.id)
        assert pending.id not in {r.id for r in snapshot.requests}
        async with session_factory() as session:
            stored = await session.get(RidePoolModel, seeded.pool.id)
            assert stored.current_passenger_count == sum(
                r.passenger_count for r in snapshot.requests
            )
        assert coordinator.locks.contenders(ride_key(pending.id)) == 0


class _DriverError(Exception):
    def __init__(self, message, sqlstate=None):
        super().__init__(message)
        self.sqlstate = sqlstate


class TestConflictClassification:
    @pytest.mark.parametrize(
        "exc",
        [
            DBAPIError("UPDATE", {}, _DriverError("could not serialize", "40001")),
            DBAPIError("UPDATE", {}, _DriverError("deadlock detected", "40P01")),
            OperationalError("SELECT", {}, _DriverError("lock timeout", "55P03")),
            IntegrityError(
                "INSERT",
                {},
                _DriverError("UNIQUE constraint failed: ride_requests.idempotency_key"),
            ),
            OperationalError("UPDATE", {}, _DriverError("database is locked")),
        ],
    )
    def test_retryable(self, exc):
        assert _is_conflict(exc)

    @pytest.mark.parametrize(
        "exc",
        [
            IntegrityError("INSERT", {}, _DriverError("foreign key violation", "23503")),
            IntegrityError("INSERT", {}, _DriverError("NOT NULL constraint failed", "23502")),
            OperationalError("SELECT", {}, _DriverError("connection was closed")),
        ],
    )
    def test_not_retryable(self, exc):
        assert not _is_conflict(exc)


class TestDistributedLock:
    """Tests the Redis distributed lock logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        lock = DistributedLock(mock_redis, "backfill", ttl_seconds=10)
        assert await lock.acquire() is True
        mock_redis.set.assert_awaited_once_with(
            "lock:backfill", lock.token, nx=True, ex=10
        )

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=None)

        lock = DistributedLock(mock_redis, "backfill", ttl_seconds=10)
        assert await lock.acquire() is False

    @pytest.mark.asyncio
    async def test_release_calls_eval(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        lock = DistributedLock(mock_redis, "backfill", ttl_seconds=10)
        await lock.acquire()
        assert await lock.release() is True

        mock_redis.eval.assert_awaited_once()
        assert mock_redis.eval.await_args.args[1:] == (1, "lock:backfill", lock.token)

    @pytest.mark.asyncio
    async def test_context_manager_acquire_fail_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "backfill", ttl_seconds=10)
        with pytest.raises(ConcurrencyConflict, match="Could not acquire lock"):
            async with lock:
                pass
        mock_redis.eval.assert_not_awaited()
