"""
Pool Coordinator
================

Owns every mutation of requests, pools and memberships.

Protocol for one matching attempt
---------------------------------
1. **Snapshot**  -- one short read session loads open, under-capacity pools
   with their members.  The session is closed before matching starts, so
   the O(pools x k²) scan holds no locks.
2. **Decide**    -- ``MatchingEngine.find_best_evaluation`` picks a pool or
   says "open a new one".
3. **Intent**    -- take the in-process keyed locks (request, then pool),
   then open a transaction and ``SELECT ... FOR UPDATE`` the same rows.
4. **Re-check**  -- the request must still be pending and unassigned, the
   pool still open, and the pool's *current* membership must still accept
   the request.  Otherwise the attempt is a no-op or a
   ``ConcurrencyConflict``.
5. **Commit**    -- insert the membership, re-sequence the whole route,
   recompute counters from membership, price the rider, append pricing
   history.  Cached views are invalidated after the commit.

Counters are never incremented in place; they are always the sum over the
pool's members as read inside the writing transaction.

The coordinator never retries.  Lock waits past ``lock_timeout_seconds``,
database lock / serialization failures and stale ``version`` columns all
surface as ``ConcurrencyConflict``.
"""

from __future__ import annotations

import enum
import logging
import math
import secrets
import string
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Iterable, Optional, Sequence

from pydantic import TypeAdapter
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from ridepool.domain.entities import (
    Coordinate,
    NewRideRequest,
    PoolCandidate,
    PriceBreakdown,
    RidePool,
    RideRequest,
)
from ridepool.domain.enums import (
    OPEN_POOL_STATUSES,
    TERMINAL_RIDE_STATUSES,
    PoolStatus,
    RideStatus,
)
from ridepool.domain.matching import MatchingEngine, ride_h3_cell
from ridepool.domain.pricing import PricingEngine
from ridepool.domain.routing import plan_route
from ridepool.errors import (
    CapacityExceeded,
    ConcurrencyConflict,
    InvalidState,
    NotFound,
)
from ridepool.infrastructure.cache import NullCache, pool_key, ride_key
from ridepool.infrastructure.locks import KeyedLocks
from ridepool.infrastructure.models import (
    PoolMemberModel,
    RidePoolModel,
    RideRequestModel,
)
from ridepool.infrastructure.repositories import (
    PoolMemberRepository,
    PricingHistoryRepository,
    RidePoolRepository,
    RideRequestRepository,
    UserRepository,
)
from ridepool.services.demand import DemandMonitor

logger = logging.getLogger(__name__)

MemberRows = list[tuple[PoolMemberModel, RideRequestModel]]

# lock_not_available, serialization_failure, deadlock_detected
_CONFLICT_SQLSTATES = {"55P03", "40001", "40P01"}

_CODE_ALPHABET = string.ascii_uppercase + string.digits

# order in which a pool member moves forward with its pool
_RIDE_PROGRESS = [
    RideStatus.MATCHED,
    RideStatus.CONFIRMED,
    RideStatus.IN_PROGRESS,
    RideStatus.COMPLETED,
]

_POOL_TO_RIDE_STATUS = {
    PoolStatus.CONFIRMED: RideStatus.CONFIRMED,
    PoolStatus.IN_PROGRESS: RideStatus.IN_PROGRESS,
    PoolStatus.COMPLETED: RideStatus.COMPLETED,
}

_RIDE_ADAPTER = TypeAdapter(RideRequest)
_POOL_ADAPTER = TypeAdapter(PoolCandidate)


class MatchOutcome(str, enum.Enum):
    MATCHED_TO_POOL = "matched_to_pool"
    NEW_POOL_CREATED = "new_pool_created"
    ALREADY_RESOLVED = "already_resolved"


class CancelResult(str, enum.Enum):
    CANCELLED = "cancelled"
    ALREADY_TERMINAL = "already_terminal"


@dataclass(frozen=True)
class SubmitOutcome:
    outcome: MatchOutcome
    request: RideRequest
    pool: Optional[RidePool] = None
    price: Optional[PriceBreakdown] = None


@dataclass(frozen=True)
class CancelOutcome:
    outcome: CancelResult
    request: RideRequest
    pool: Optional[RidePool] = None


def _new_pool_code() -> str:
    return "POOL" + "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))


def _is_conflict(exc: DBAPIError) -> bool:
    code = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if code in _CONFLICT_SQLSTATES:
        return True
    message = str(exc.orig)
    if isinstance(exc, IntegrityError):
        # two submissions racing on the same idempotency key
        return "idempotency_key" in message
    # SQLite reports lock contention without a SQLSTATE
    return isinstance(exc, OperationalError) and "database is locked" in message


def _candidate(pool: RidePoolModel, rows: MemberRows) -> PoolCandidate:
    """Detached view of a pool whose counters come from *rows*."""
    entity = pool.to_entity()
    requests = [ride.to_entity() for _, ride in rows]
    entity.current_passenger_count = sum(r.passenger_count for r in requests)
    entity.current_luggage_count = sum(r.luggage_count for r in requests)
    return PoolCandidate(entity, [m.to_entity() for m, _ in rows], requests)


def _set_ride_status(ride: RideRequestModel, status: RideStatus) -> None:
    entity = ride.to_entity()
    entity.transition_to(status)
    ride.status = entity.status


def _advance_ride(ride: RideRequestModel, target: RideStatus) -> None:
    """Step *ride* forward until it reaches *target*; rides already past it stay."""
    goal = _RIDE_PROGRESS.index(target)
    while (position := _RIDE_PROGRESS.index(RideStatus(ride.status))) < goal:
        _set_ride_status(ride, _RIDE_PROGRESS[position + 1])


def _set_pool_status(pool: RidePoolModel, status: PoolStatus) -> None:
    entity = pool.to_entity()
    entity.transition_to(status)
    pool.status = entity.status


class PoolCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        matching: MatchingEngine,
        pricing: PricingEngine,
        demand: DemandMonitor,
        cache: Optional[NullCache] = None,
        locks: Optional[KeyedLocks] = None,
        *,
        max_passengers: int = 4,
        max_luggage: int = 8,
        default_max_detour_km: float = 5.0,
        open_pool_scan_limit: int = 50,
        average_speed_kmh: float = 30.0,
        h3_resolution: int = 7,
        lock_timeout_seconds: float = 5.0,
        cache_ttl_seconds: int = 300,
        backfill_min_age_seconds: int = 30,
    ):
        self._session_factory = session_factory
        self.matching = matching
        self.pricing = pricing
        self.demand = demand
        self.cache = cache or NullCache()
        self.locks = locks or KeyedLocks(lock_timeout_seconds)
        self.max_passengers = max_passengers
        self.max_luggage = max_luggage
        self.default_max_detour_km = default_max_detour_km
        self.open_pool_scan_limit = open_pool_scan_limit
        self.average_speed_kmh = average_speed_kmh
        self.h3_resolution = h3_resolution
        self.lock_timeout_seconds = lock_timeout_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self.backfill_min_age_seconds = backfill_min_age_seconds
        # bumped by every invalidation; a cache fill that raced a write is dropped
        self._write_epoch = 0

    # ── Transaction plumbing ──────────────────────────────────────────

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """One write transaction; database conflicts become ``ConcurrencyConflict``."""
        try:
            async with self._session_factory() as session, session.begin():
                if session.bind.dialect.name == "postgresql":
                    timeout_ms = int(self.lock_timeout_seconds * 1000)
                    await session.execute(
                        text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'")
                    )
                yield session
        except StaleDataError as exc:
            raise ConcurrencyConflict(f"Concurrent update detected: {exc}") from exc
        except DBAPIError as exc:
            if _is_conflict(exc):
                raise ConcurrencyConflict(f"Database conflict: {exc.orig}") from exc
            raise

    async def _invalidate(
        self, ride_ids: Iterable[int] = (), pool_ids: Iterable[int] = ()
    ) -> None:
        keys = [ride_key(i) for i in ride_ids] + [pool_key(i) for i in pool_ids]
        self._write_epoch += 1
        await self.cache.delete(*keys)

    def _check_party(self, passengers: int, luggage: int) -> None:
        if passengers < 1 or luggage < 0:
            raise ValueError("passengers must be >= 1 and luggage >= 0")
        if passengers > self.max_passengers or luggage > self.max_luggage:
            raise CapacityExceeded(
                f"Party of {passengers} with {luggage} bags exceeds pool maxima "
                f"({self.max_passengers} / {self.max_luggage})"
            )

    # ── Reads ─────────────────────────────────────────────────────────

    async def _read_request(self, request_id: int) -> RideRequest:
        async with self._session_factory() as session:
            ride = await RideRequestRepository(session).get_by_id(request_id)
            if ride is None:
                raise NotFound(f"Ride request {request_id} not found")
            return ride.to_entity()

    async def _load_open_candidates(self) -> list[PoolCandidate]:
        async with self._session_factory() as session:
            pools = await RidePoolRepository(session).get_open_pools(
                self.open_pool_scan_limit
            )
            grouped = await PoolMemberRepository(
                session
            ).get_with_requests_for_pools([p.id for p in pools])
            return [_candidate(p, grouped.get(p.id, [])) for p in pools]

    async def get_request(self, request_id: int) -> RideRequest:
        cached = await self.cache.get_json(ride_key(request_id), _RIDE_ADAPTER)
        if cached is not None and cached.id == request_id:
            return cached
        epoch = self._write_epoch
        request = await self._read_request(request_id)
        if epoch == self._write_epoch:
            await self.cache.set_json(
                ride_key(request_id), request, _RIDE_ADAPTER, self.cache_ttl_seconds
            )
        return request

    async def list_user_requests(
        self, user_id: int, limit: int = 50
    ) -> list[RideRequest]:
        async with self._session_factory() as session:
            rows = await RideRequestRepository(session).get_by_user(user_id, limit)
            return [r.to_entity() for r in rows]

    async def list_pending_requests(self) -> list[RideRequest]:
        async with self._session_factory() as session:
            rows = await RideRequestRepository(session).get_pending()
            return [r.to_entity() for r in rows]

    async def latest_price(self, request_id: int) -> Optional[PriceBreakdown]:
        async with self._session_factory() as session:
            row = await PricingHistoryRepository(session).get_latest(request_id)
            return row.to_entity() if row else None

    async def list_active_pools(
        self, limit: int = 100, cell: Optional[str] = None
    ) -> list[RidePool]:
        async with self._session_factory() as session:
            pools = await RidePoolRepository(session).get_active_pools(limit, cell)
            return [p.to_entity() for p in pools]

    async def pool_snapshot(self, pool_id: int) -> PoolCandidate:
        """Read-only projection of a pool and its members."""
        cached = await self.cache.get_json(pool_key(pool_id), _POOL_ADAPTER)
        if cached is not None and cached.pool.id == pool_id:
            return cached
        epoch = self._write_epoch
        async with self._session_factory() as session:
            pool = await RidePoolRepository(session).get_by_id(pool_id)
            if pool is None:
                raise NotFound(f"Pool {pool_id} not found")
            rows = await PoolMemberRepository(session).get_with_requests(pool_id)
            snapshot = _candidate(pool, rows)
        if epoch == self._write_epoch:
            await self.cache.set_json(
                pool_key(pool_id), snapshot, _POOL_ADAPTER, self.cache_ttl_seconds
            )
        return snapshot

    # ── Quotes ────────────────────────────────────────────────────────

    async def quote(
        self,
        pickup: Coordinate,
        dropoff: Coordinate,
        passengers: int = 1,
        luggage: int = 0,
    ) -> PriceBreakdown:
        """Solo price preview.  Nothing is persisted."""
        self._check_party(passengers, luggage)
        demand = await self.demand.current()
        return self.pricing.price_trip(pickup, dropoff, demand)

    async def quote_pooled(
        self,
        pickup: Coordinate,
        dropoff: Coordinate,
        pool_size: int = 2,
        passengers: int = 1,
        luggage: int = 0,
    ) -> PriceBreakdown:
        self._check_party(passengers, luggage)
        if not 2 <= pool_size <= self.max_passengers:
            raise ValueError(f"pool_size must be between 2 and {self.max_passengers}")
        demand = await self.demand.current()
        return self.pricing.price_trip(
            pickup, dropoff, demand, is_pooled=True, pool_size=pool_size
        )

    # ── Requests ──────────────────────────────────────────────────────

    async def create_request(self, new_request: NewRideRequest) -> RideRequest:
        """Persist a pending request; a repeated idempotency key returns the original."""
        self._check_party(new_request.passenger_count, new_request.luggage_count)
        max_detour = (
            new_request.max_detour_km
            if new_request.max_detour_km is not None
            else self.default_max_detour_km
        )
        async with self._transaction() as session:
            rides = RideRequestRepository(session)
            if new_request.idempotency_key:
                existing = await rides.get_by_idempotency_key(
                    new_request.idempotency_key
                )
                if existing:
                    logger.info(
                        "Idempotent replay of %s -> ride %s",
                        new_request.idempotency_key,
                        existing.id,
                    )
                    return existing.to_entity()
            if await UserRepository(session).get_by_id(new_request.user_id) is None:
                raise NotFound(f"User {new_request.user_id} not found")
            ride = await rides.create(new_request, max_detour)

        logger.info("Ride request %s created for user %s", ride.id, ride.user_id)
        return ride.to_entity()

    async def submit(self, new_request: NewRideRequest) -> SubmitOutcome:
        """Create a request and run one matching attempt for it."""
        request = await self.create_request(new_request)
        return await self.match_request(request.id)

    async def match_request(self, request_id: int) -> SubmitOutcome:
        request = await self._read_request(request_id)
        if request.status is not RideStatus.PENDING:
            return SubmitOutcome(MatchOutcome.ALREADY_RESOLVED, request)

        candidates = await self._load_open_candidates()
        demand = await self.demand.current()
        best = self.matching.find_best_evaluation(request, candidates)
        if best is not None:
            return await self._join(request_id, best.candidate, demand)

        opened = await self._open_pool([request_id], demand)
        if opened is None:
            return SubmitOutcome(
                MatchOutcome.ALREADY_RESOLVED, await self._read_request(request_id)
            )
        snapshot, prices = opened
        return SubmitOutcome(
            MatchOutcome.NEW_POOL_CREATED,
            snapshot.requests[0],
            snapshot.pool,
            prices[request_id],
        )

    async def transition_request(
        self, request_id: int, status: RideStatus
    ) -> RideRequest:
        if status is RideStatus.CANCELLED:
            return (await self.cancel(request_id)).request
        if status in (RideStatus.PENDING, RideStatus.MATCHED):
            raise InvalidState(
                f"Requests become {status.value} only through pool membership"
            )
        async with self.locks.hold(ride_key(request_id)):
            async with self._transaction() as session:
                ride = await RideRequestRepository(session).get_for_update(request_id)
                if ride is None:
                    raise NotFound(f"Ride request {request_id} not found")
                _set_ride_status(ride, status)
                member = await PoolMemberRepository(session).get_for_request(request_id)
            # the pool snapshot embeds its members' requests
            await self._invalidate(
                [request_id], [member.pool_id] if member is not None else []
            )

        logger.info("Ride request %s -> %s", request_id, status.value)
        return ride.to_entity()

    async def cancel(self, request_id: int) -> CancelOutcome:
        async with AsyncExitStack() as stack:
            await stack.enter_async_context(self.locks.hold(ride_key(request_id)))
            pool_id = await self._peek_pool_id(request_id)
            if pool_id is not None:
                await stack.enter_async_context(self.locks.hold(pool_key(pool_id)))

            pool: Optional[RidePoolModel] = None
            async with self._transaction() as session:
                ride = await RideRequestRepository(session).get_for_update(request_id)
                if ride is None:
                    raise NotFound(f"Ride request {request_id} not found")
                if RideStatus(ride.status) in TERMINAL_RIDE_STATUSES:
                    return CancelOutcome(CancelResult.ALREADY_TERMINAL, ride.to_entity())

                member = await PoolMemberRepository(session).get_for_request(request_id)
                if member is not None:
                    if member.pool_id != pool_id:
                        raise ConcurrencyConflict(
                            f"Membership of ride {request_id} changed while cancelling"
                        )
                    pool = await RidePoolRepository(session).get_for_update(pool_id)
                    await self._detach(session, pool, member)
                _set_ride_status(ride, RideStatus.CANCELLED)

            await self._invalidate([request_id], [pool_id] if pool_id else [])

        logger.info(
            "Ride request %s cancelled%s",
            request_id,
            f" (left pool {pool.pool_code})" if pool is not None else "",
        )
        return CancelOutcome(
            CancelResult.CANCELLED,
            ride.to_entity(),
            pool.to_entity() if pool is not None else None,
        )

    async def _peek_pool_id(self, request_id: int) -> Optional[int]:
        async with self._session_factory() as session:
            member = await PoolMemberRepository(session).get_for_request(request_id)
            return member.pool_id if member else None

    # ── Pools ─────────────────────────────────────────────────────────

    async def create_pool(
        self, request_ids: Sequence[int]
    ) -> Optional[PoolCandidate]:
        """Open a pool holding every given request that is still pending."""
        demand = await self.demand.current()
        opened = await self._open_pool(request_ids, demand)
        return opened[0] if opened else None

    async def add_member(self, pool_id: int, request_id: int) -> SubmitOutcome:
        """Manual placement.  Capacity is enforced, detour limits are not."""
        demand = await self.demand.current()
        async with self.locks.hold(ride_key(request_id), pool_key(pool_id)):
            async with self._transaction() as session:
                ride = await RideRequestRepository(session).get_for_update(request_id)
                if ride is None:
                    raise NotFound(f"Ride request {request_id} not found")
                pool = await RidePoolRepository(session).get_for_update(pool_id)
                if pool is None:
                    raise NotFound(f"Pool {pool_id} not found")

                members = PoolMemberRepository(session)
                if RideStatus(ride.status) is not RideStatus.PENDING:
                    raise InvalidState(
                        f"Ride request {request_id} is {RideStatus(ride.status).value}"
                    )
                if await members.get_for_request(request_id) is not None:
                    raise InvalidState(f"Ride request {request_id} is already in a pool")
                if PoolStatus(pool.status) not in OPEN_POOL_STATUSES:
                    raise InvalidState(
                        f"Pool {pool.pool_code} is {PoolStatus(pool.status).value}"
                    )

                current = _candidate(pool, await members.get_with_requests(pool_id))
                if not current.pool.can_accommodate(
                    ride.passenger_count, ride.luggage_count
                ):
                    raise CapacityExceeded(
                        f"Pool {pool.pool_code} cannot take {ride.passenger_count} "
                        f"passenger(s) with {ride.luggage_count} bag(s)"
                    )
                breakdown = await self._attach(session, pool, ride, demand)

            await self._invalidate([request_id], [pool_id])

        logger.info("Ride request %s added to pool %s", request_id, pool.pool_code)
        return SubmitOutcome(
            MatchOutcome.MATCHED_TO_POOL, ride.to_entity(), pool.to_entity(), breakdown
        )

    async def remove_member(self, pool_id: int, request_id: int) -> PoolCandidate:
        """Take a request out of its pool and put it back to pending."""
        async with self.locks.hold(ride_key(request_id), pool_key(pool_id)):
            async with self._transaction() as session:
                ride = await RideRequestRepository(session).get_for_update(request_id)
                if ride is None:
                    raise NotFound(f"Ride request {request_id} not found")
                member = await PoolMemberRepository(session).get_for_request(request_id)
                if member is None or member.pool_id != pool_id:
                    raise NotFound(
                        f"Ride request {request_id} is not a member of pool {pool_id}"
                    )
                pool = await RidePoolRepository(session).get_for_update(pool_id)
                _set_ride_status(ride, RideStatus.PENDING)
                rows = await self._detach(session, pool, member)
                snapshot = _candidate(pool, rows)

            await self._invalidate([request_id], [pool_id])

        logger.info("Ride request %s removed from pool %s", request_id, pool.pool_code)
        return snapshot

    async def transition_pool(
        self, pool_id: int, status: PoolStatus
    ) -> PoolCandidate:
        """Validated pool transition; rides follow their pool."""
        if status is PoolStatus.CANCELLED:
            return await self._cancel_pool(pool_id)
        ride_status = _POOL_TO_RIDE_STATUS.get(status)

        async with self.locks.hold(pool_key(pool_id)):
            async with self._transaction() as session:
                pool = await RidePoolRepository(session).get_for_update(pool_id)
                if pool is None:
                    raise NotFound(f"Pool {pool_id} not found")
                rows = await PoolMemberRepository(session).get_with_requests(pool_id)
                _set_pool_status(pool, status)
                if not rows:
                    raise InvalidState(f"Pool {pool.pool_code} has no members")

                rides = RideRequestRepository(session)
                for _, member_ride in rows:
                    ride = await rides.get_for_update(member_ride.id)
                    _advance_ride(ride, ride_status)
                snapshot = _candidate(pool, rows)

            await self._invalidate([r.id for _, r in rows], [pool_id])

        logger.info("Pool %s -> %s", pool.pool_code, status.value)
        return snapshot

    async def _cancel_pool(self, pool_id: int) -> PoolCandidate:
        async with self.locks.hold(pool_key(pool_id)):
            async with self._transaction() as session:
                pool = await RidePoolRepository(session).get_for_update(pool_id)
                if pool is None:
                    raise NotFound(f"Pool {pool_id} not found")
                _set_pool_status(pool, PoolStatus.CANCELLED)

                members = PoolMemberRepository(session)
                rides = RideRequestRepository(session)
                rows = await members.get_with_requests(pool_id)
                for member, member_ride in rows:
                    ride = await rides.get_for_update(member_ride.id)
                    if RideStatus(ride.status) not in TERMINAL_RIDE_STATUSES:
                        _set_ride_status(ride, RideStatus.PENDING)
                    await members.remove(member)
                self._resequence(pool, [])
                snapshot = _candidate(pool, [])

            await self._invalidate([r.id for _, r in rows], [pool_id])

        logger.info(
            "Pool %s cancelled, %d request(s) back to pending", pool.pool_code, len(rows)
        )
        return snapshot

    async def backfill_pending(
        self, min_age_seconds: Optional[int] = None
    ) -> list[PoolCandidate]:
        """Group stale, unassigned pending requests into fresh pools."""
        age = self.backfill_min_age_seconds if min_age_seconds is None else min_age_seconds
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=age)
        async with self._session_factory() as session:
            rows = await RideRequestRepository(session).get_pending_unassigned(cutoff)
            requests = [r.to_entity() for r in rows]
        if not requests:
            return []

        demand = await self.demand.current()
        created: list[PoolCandidate] = []
        for proposal in self.matching.generate_optimal_pools(requests):
            try:
                opened = await self._open_pool([r.id for r in proposal.requests], demand)
            except ConcurrencyConflict:
                logger.warning("Skipping backfill proposal after conflict", exc_info=True)
                continue
            if opened is not None:
                created.append(opened[0])
        return created

    # ── Commit steps ──────────────────────────────────────────────────

    async def _join(
        self, request_id: int, chosen: PoolCandidate, demand: float
    ) -> SubmitOutcome:
        pool_id = chosen.pool.id
        async with self.locks.hold(ride_key(request_id), pool_key(pool_id)):
            async with self._transaction() as session:
                ride = await RideRequestRepository(session).get_for_update(request_id)
                if ride is None:
                    raise NotFound(f"Ride request {request_id} not found")
                members = PoolMemberRepository(session)
                if (
                    RideStatus(ride.status) is not RideStatus.PENDING
                    or await members.get_for_request(request_id) is not None
                ):
                    return SubmitOutcome(MatchOutcome.ALREADY_RESOLVED, ride.to_entity())

                pool = await RidePoolRepository(session).get_for_update(pool_id)
                if pool is None or PoolStatus(pool.status) not in OPEN_POOL_STATUSES:
                    raise ConcurrencyConflict(f"Pool {pool_id} is no longer open")

                current = _candidate(pool, await members.get_with_requests(pool_id))
                if self.matching.evaluate(ride.to_entity(), current) is None:
                    raise ConcurrencyConflict(
                        f"Pool {pool.pool_code} no longer fits ride {request_id}"
                    )
                breakdown = await self._attach(session, pool, ride, demand)

            await self._invalidate([request_id], [pool_id])

        logger.info(
            "Ride request %s joined pool %s (%d/%d passengers)",
            request_id,
            pool.pool_code,
            pool.current_passenger_count,
            pool.max_passengers,
        )
        return SubmitOutcome(
            MatchOutcome.MATCHED_TO_POOL, ride.to_entity(), pool.to_entity(), breakdown
        )

    async def _open_pool(
        self, request_ids: Sequence[int], demand: float
    ) -> Optional[tuple[PoolCandidate, dict[int, PriceBreakdown]]]:
        ordered = list(dict.fromkeys(request_ids))
        lock_order = sorted(ordered)
        async with self.locks.hold(*(ride_key(i) for i in lock_order)):
            async with self._transaction() as session:
                rides = RideRequestRepository(session)
                members = PoolMemberRepository(session)

                locked: dict[int, RideRequestModel] = {}
                for rid in lock_order:
                    ride = await rides.get_for_update(rid)
                    if ride is None:
                        raise NotFound(f"Ride request {rid} not found")
                    locked[rid] = ride

                eligible: list[RideRequestModel] = []
                for rid in ordered:
                    ride = locked[rid]
                    if (
                        RideStatus(ride.status) is not RideStatus.PENDING
                        or await members.get_for_request(rid) is not None
                    ):
                        logger.debug("Ride request %s no longer pending, skipped", rid)
                        continue
                    eligible.append(ride)
                if not eligible:
                    return None

                passengers = sum(r.passenger_count for r in eligible)
                luggage = sum(r.luggage_count for r in eligible)
                if passengers > self.max_passengers or luggage > self.max_luggage:
                    raise CapacityExceeded(
                        f"{passengers} passengers / {luggage} bags exceed pool maxima"
                    )

                first = eligible[0]
                pool = await RidePoolRepository(session).create(
                    RidePoolModel(
                        pool_code=_new_pool_code(),
                        status=PoolStatus.FORMING,
                        current_passenger_count=0,
                        current_luggage_count=0,
                        max_passengers=self.max_passengers,
                        max_luggage=self.max_luggage,
                        h3_cell=ride_h3_cell(
                            first.pickup_lat, first.pickup_lng, self.h3_resolution
                        ),
                    )
                )
                prices: dict[int, PriceBreakdown] = {}
                for ride in eligible:
                    prices[ride.id] = await self._attach(session, pool, ride, demand)
                snapshot = _candidate(pool, await members.get_with_requests(pool.id))

            await self._invalidate([r.id for r in eligible], [pool.id])

        logger.info(
            "Pool %s created with %d member(s) in cell %s",
            pool.pool_code,
            len(eligible),
            pool.h3_cell,
        )
        return snapshot, prices

    async def _attach(
        self,
        session: AsyncSession,
        pool: RidePoolModel,
        ride: RideRequestModel,
        demand: float,
    ) -> PriceBreakdown:
        """Insert the membership, price the rider and re-sequence the pool."""
        members = PoolMemberRepository(session)
        pool_size = len(await members.get_with_requests(pool.id)) + 1
        is_pooled = pool_size > 1
        entity = ride.to_entity()
        breakdown = self.pricing.price_trip(
            entity.pickup, entity.dropoff, demand, is_pooled, pool_size
        )

        await members.add(
            PoolMemberModel(
                pool_id=pool.id,
                ride_request_id=ride.id,
                pickup_sequence=0,
                dropoff_sequence=0,
                detour_distance_km=0.0,
                price=breakdown.final_price,
            )
        )
        _set_ride_status(ride, RideStatus.MATCHED)
        await PricingHistoryRepository(session).append(
            ride.id, breakdown, is_pooled=is_pooled, pool_size=pool_size
        )
        self._resequence(pool, await members.get_with_requests(pool.id))
        await session.flush()
        return breakdown

    async def _detach(
        self, session: AsyncSession, pool: RidePoolModel, member: PoolMemberModel
    ) -> MemberRows:
        """Drop one membership.

        A pool left empty is closed: an open pool is cancelled, a pool
        already under way is completed.
        """
        members = PoolMemberRepository(session)
        await members.remove(member)
        rows = await members.get_with_requests(pool.id)
        self._resequence(pool, rows)
        if not rows:
            current = PoolStatus(pool.status)
            if current in OPEN_POOL_STATUSES:
                _set_pool_status(pool, PoolStatus.CANCELLED)
                logger.info("Pool %s cancelled: no members left", pool.pool_code)
            elif current is PoolStatus.IN_PROGRESS:
                _set_pool_status(pool, PoolStatus.COMPLETED)
                logger.info("Pool %s completed: no riders left", pool.pool_code)
        await session.flush()
        return rows

    def _resequence(self, pool: RidePoolModel, rows: MemberRows) -> None:
        """Recompute counters and the route summary from *rows*."""
        requests = [ride.to_entity() for _, ride in rows]
        pool.current_passenger_count = sum(r.passenger_count for r in requests)
        pool.current_luggage_count = sum(r.luggage_count for r in requests)
        if not requests:
            pool.route_distance_km = None
            pool.estimated_duration_minutes = None
            return

        plan = plan_route(requests)
        for member, ride in rows:
            member.pickup_sequence = plan.pickup_index[ride.id]
            member.dropoff_sequence = plan.dropoff_index[ride.id]
            member.detour_distance_km = round(plan.clamped_detour(ride.id), 3)
        pool.route_distance_km = round(plan.total_km, 3)
        pool.estimated_duration_minutes = math.ceil(
            plan.total_km / self.average_speed_kmh * 60
        )
