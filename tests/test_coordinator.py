"""
Integration tests for the pool coordinator.

Runs against a per-test SQLite file database; the demand factor is pinned
to an off-peak hour (0.75, surge 1.375).
"""

from __future__ import annotations

import pytest

from ridepool.domain.entities import Coordinate, InvalidStateTransition, NewRideRequest
from ridepool.domain.enums import PoolStatus, RideStatus
from ridepool.domain.matching import ride_h3_cell
from ridepool.errors import CapacityExceeded, InvalidState, NotFound
from ridepool.infrastructure.models import RidePoolModel
from ridepool.services.coordinator import CancelResult, MatchOutcome

AIRPORT = (19.0896, 72.8656)
ANDHERI = (19.1176, 72.8490)
NEAR_AIRPORT = (19.0900, 72.8660)
NEAR_ANDHERI = (19.1180, 72.8500)
COLABA = (18.9220, 72.8347)


def _new(user_id, pickup=AIRPORT, dropoff=ANDHERI, passengers=1, luggage=0, key=None):
    return NewRideRequest(
        user_id=user_id,
        pickup=Coordinate(*pickup),
        dropoff=Coordinate(*dropoff),
        passenger_count=passengers,
        luggage_count=luggage,
        idempotency_key=key,
    )


async def _stored_pool(session_factory, pool_id) -> RidePoolModel:
    async with session_factory() as session:
        return await session.get(RidePoolModel, pool_id)


async def _assert_counters_match_members(coordinator, session_factory, pool_id):
    snapshot = await coordinator.pool_snapshot(pool_id)
    stored = await _stored_pool(session_factory, pool_id)
    assert stored.current_passenger_count == sum(r.passenger_count for r in snapshot.requests)
    assert stored.current_luggage_count == sum(r.luggage_count for r in snapshot.requests)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_first_request_opens_pool(self, coordinator, user_ids):
        outcome = await coordinator.submit(_new(user_ids[0], luggage=1))

        assert outcome.outcome is MatchOutcome.NEW_POOL_CREATED
        assert outcome.request.status is RideStatus.MATCHED
        assert outcome.pool.status is PoolStatus.FORMING
        assert outcome.pool.pool_code.startswith("POOL")
        assert len(outcome.pool.pool_code) == 10
        assert outcome.pool.current_passenger_count == 1
        assert outcome.pool.current_luggage_count == 1
        assert outcome.pool.h3_cell == ride_h3_cell(*AIRPORT, 7)
        assert outcome.price.pool_discount_percent == 0.0
        assert outcome.price.demand_factor == 0.75
        assert outcome.price.surge_multiplier == 1.375

    @pytest.mark.asyncio
    async def test_compatible_request_joins_pool(self, coordinator, user_ids):
        first = await coordinator.submit(_new(user_ids[0]))
        second = await coordinator.submit(_new(user_ids[1], NEAR_AIRPORT, NEAR_ANDHERI))

        assert second.outcome is MatchOutcome.MATCHED_TO_POOL
        assert second.pool.id == first.pool.id
        assert second.pool.current_passenger_count == 2
        assert second.price.pool_discount_percent == 20.0

        snapshot = await coordinator.pool_snapshot(first.pool.id)
        assert len(snapshot.members) == 2
        sequence = sorted(
            idx for m in snapshot.members for idx in (m.pickup_sequence, m.dropoff_sequence)
        )
        assert sequence == [0, 1, 2, 3]
        assert all(m.pickup_sequence < m.dropoff_sequence for m in snapshot.members)
        assert all(0.0 <= m.detour_distance_km <= 5.0 for m in snapshot.members)
        assert snapshot.pool.route_distance_km > 0
        assert snapshot.pool.estimated_duration_minutes >= 1

    @pytest.mark.asyncio
    async def test_incompatible_request_opens_second_pool(self, coordinator, user_ids):
        first = await coordinator.submit(_new(user_ids[0]))
        other = await coordinator.submit(_new(user_ids[1], dropoff=COLABA))

        assert other.outcome is MatchOutcome.NEW_POOL_CREATED
        assert other.pool.id != first.pool.id

    @pytest.mark.asyncio
    async def test_stored_counters_equal_member_sums(
        self, coordinator, session_factory, user_ids
    ):
        first = await coordinator.submit(_new(user_ids[0], luggage=2))
        await coordinator.submit(_new(user_ids[1], NEAR_AIRPORT, NEAR_ANDHERI, passengers=2, luggage=1))
        await coordinator.submit(_new(user_ids[2], passengers=1, luggage=3))

        stored = await _stored_pool(session_factory, first.pool.id)
        assert stored.current_passenger_count == 4
        assert stored.current_luggage_count == 6
        await _assert_counters_match_members(coordinator, session_factory, first.pool.id)

    @pytest.mark.asyncio
    async def test_full_pool_is_not_joined(self, coordinator, user_ids):
        full = await coordinator.submit(_new(user_ids[0], passengers=4))
        later = await coordinator.submit(_new(user_ids[1], NEAR_AIRPORT, NEAR_ANDHERI))

        assert later.outcome is MatchOutcome.NEW_POOL_CREATED
        assert later.pool.id != full.pool.id

    @pytest.mark.asyncio
    async def test_price_history_is_recorded(self, coordinator, user_ids):
        outcome = await coordinator.submit(_new(user_ids[0]))
        assert await coordinator.latest_price(outcome.request.id) == outcome.price


class TestRequests:
    @pytest.mark.asyncio
    async def test_idempotency_key_returns_original(self, coordinator, user_ids):
        first = await coordinator.create_request(_new(user_ids[0], key="abc-123"))
        again = await coordinator.create_request(_new(user_ids[0], key="abc-123"))

        assert again.id == first.id
        assert len(await coordinator.list_pending_requests()) == 1

    @pytest.mark.asyncio
    async def test_default_detour_limit_applied(self, coordinator, user_ids):
        ride = await coordinator.create_request(_new(user_ids[0]))
        assert ride.max_detour_km == 5.0
        assert ride.status is RideStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_user_rejected(self, coordinator, user_ids):
        with pytest.raises(NotFound):
            await coordinator.create_request(_new(9999))

    @pytest.mark.asyncio
    async def test_oversized_party_rejected(self, coordinator, user_ids):
        with pytest.raises(CapacityExceeded):
            await coordinator.create_request(_new(user_ids[0], passengers=5))

    @pytest.mark.asyncio
    async def test_match_of_resolved_request_is_a_no_op(self, coordinator, user_ids):
        outcome = await coordinator.submit(_new(user_ids[0]))
        again = await coordinator.match_request(outcome.request.id)
        assert again.outcome is MatchOutcome.ALREADY_RESOLVED
        assert again.request.status is RideStatus.MATCHED

    @pytest.mark.asyncio
    async def test_match_of_unknown_request(self, coordinator, user_ids):
        with pytest.raises(NotFound):
            await coordinator.match_request(424242)

    @pytest.mark.asyncio
    async def test_reads(self, coordinator, user_ids):
        first = await coordinator.create_request(_new(user_ids[0]))
        second = await coordinator.create_request(_new(user_ids[0], dropoff=COLABA))

        fetched = await coordinator.get_request(first.id)
        assert fetched.id == first.id
        assert fetched.pickup == Coordinate(*AIRPORT)

        mine = await coordinator.list_user_requests(user_ids[0])
        assert [r.id for r in mine] == [second.id, first.id]
        assert await coordinator.list_user_requests(user_ids[1]) == []
        assert await coordinator.latest_price(first.id) is None

    @pytest.mark.asyncio
    async def test_transition_request(self, coordinator, user_ids):
        outcome = await coordinator.submit(_new(user_ids[0]))
        rid = outcome.request.id

        confirmed = await coordinator.transition_request(rid, RideStatus.CONFIRMED)
        assert confirmed.status is RideStatus.CONFIRMED

        with pytest.raises(InvalidState):
            await coordinator.transition_request(rid, RideStatus.PENDING)
        with pytest.raises(InvalidStateTransition):
            await coordinator.transition_request(rid, RideStatus.COMPLETED)

        cancelled = await coordinator.transition_request(rid, RideStatus.CANCELLED)
        assert cancelled.status is RideStatus.CANCELLED


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancelling_sole_member_cancels_pool(
        self, coordinator, session_factory, user_ids
    ):
        outcome = await coordinator.submit(_new(user_ids[0]))
        result = await coordinator.cancel(outcome.request.id)

        assert result.outcome is CancelResult.CANCELLED
        assert result.request.status is RideStatus.CANCELLED
        assert result.pool.status is PoolStatus.CANCELLED

        stored = await _stored_pool(session_factory, outcome.pool.id)
        assert stored.current_passenger_count == 0
        assert stored.route_distance_km is None

    @pytest.mark.asyncio
    async def test_cancelling_one_member_keeps_pool(
        self, coordinator, session_factory, user_ids
    ):
        first = await coordinator.submit(_new(user_ids[0], passengers=2))
        second = await coordinator.submit(_new(user_ids[1], NEAR_AIRPORT, NEAR_ANDHERI))

        result = await coordinator.cancel(first.request.id)
        assert result.pool.status is PoolStatus.FORMING
        assert result.pool.current_passenger_count == 1

        snapshot = await coordinator.pool_snapshot(first.pool.id)
        assert [r.id for r in snapshot.requests] == [second.request.id]
        assert (snapshot.members[0].pickup_sequence, snapshot.members[0].dropoff_sequence) == (0, 1)
        await _assert_counters_match_members(coordinator, session_factory, first.pool.id)

    @pytest.mark.asyncio
    async def test_second_cancel_is_already_terminal(self, coordinator, user_ids):
        outcome = await coordinator.submit(_new(user_ids[0]))
        await coordinator.cancel(outcome.request.id)
        again = await coordinator.cancel(outcome.request.id)

        assert again.outcome is CancelResult.ALREADY_TERMINAL
        assert again.request.status is RideStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_pending_request(self, coordinator, user_ids):
        ride = await coordinator.create_request(_new(user_ids[0]))
        result = await coordinator.cancel(ride.id)
        assert result.outcome is CancelResult.CANCELLED
        assert result.pool is None

    @pytest.mark.asyncio
    async def test_last_rider_leaving_trip_completes_pool(
        self, coordinator, session_factory, user_ids
    ):
        outcome = await coordinator.submit(_new(user_ids[0]))
        pool_id = outcome.pool.id
        await coordinator.transition_pool(pool_id, PoolStatus.CONFIRMED)
        await coordinator.transition_pool(pool_id, PoolStatus.IN_PROGRESS)

        result = await coordinator.cancel(outcome.request.id)

        assert result.pool.status is PoolStatus.COMPLETED
        stored = await _stored_pool(session_factory, pool_id)
        assert PoolStatus(stored.status) is PoolStatus.COMPLETED
        assert stored.current_passenger_count == 0
        assert await coordinator.list_active_pools() == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_request(self, coordinator, user_ids):
        with pytest.raises(NotFound):
            await coordinator.cancel(31337)


class TestManualMembership:
    @pytest.mark.asyncio
    async def test_add_member_over_capacity(self, coordinator, user_ids):
        pooled = await coordinator.submit(_new(user_ids[0], passengers=3))
        pending = await coordinator.create_request(_new(user_ids[1], passengers=2))

        with pytest.raises(CapacityExceeded):
            await coordinator.add_member(pooled.pool.id, pending.id)
        assert (await coordinator.get_request(pending.id)).status is RideStatus.PENDING

    @pytest.mark.asyncio
    async def test_add_member_skips_detour_checks(self, coordinator, user_ids):
        pooled = await coordinator.submit(_new(user_ids[0]))
        far = await coordinator.create_request(_new(user_ids[1], dropoff=COLABA))

        outcome = await coordinator.add_member(pooled.pool.id, far.id)
        assert outcome.outcome is MatchOutcome.MATCHED_TO_POOL
        assert outcome.request.status is RideStatus.MATCHED
        assert outcome.pool.current_passenger_count == 2
        assert outcome.price.pool_discount_percent == 20.0

    @pytest.mark.asyncio
    async def test_add_member_already_in_pool(self, coordinator, user_ids):
        first = await coordinator.submit(_new(user_ids[0]))
        other = await coordinator.submit(_new(user_ids[1], dropoff=COLABA))

        with pytest.raises(InvalidState):
            await coordinator.add_member(other.pool.id, first.request.id)

    @pytest.mark.asyncio
    async def test_add_member_to_closed_pool(self, coordinator, user_ids):
        outcome = await coordinator.submit(_new(user_ids[0]))
        await coordinator.cancel(outcome.request.id)
        pending = await coordinator.create_request(_new(user_ids[1]))

        with pytest.raises(InvalidState):
            await coordinator.add_member(outcome.pool.id, pending.id)

    @pytest.mark.asyncio
    async def test_add_member_unknown_pool(self, coordinator, user_ids):
        pending = await coordinator.create_request(_new(user_ids[0]))
        with pytest.raises(NotFound):
            await coordinator.add_member(777, pending.id)

    @pytest.mark.asyncio
    async def test_remove_member_returns_request_to_pending(
        self, coordinator, session_factory, user_ids
    ):
        first = await coordinator.submit(_new(user_ids[0]))
        second = await coordinator.submit(_new(user_ids[1], NEAR_AIRPORT, NEAR_ANDHERI))

        snapshot = await coordinator.remove_member(first.pool.id, second.request.id)
        assert [r.id for r in snapshot.requests] == [first.request.id]
        assert snapshot.pool.status is PoolStatus.FORMING
        assert (await coordinator.get_request(second.request.id)).status is RideStatus.PENDING
        await _assert_counters_match_members(coordinator, session_factory, first.pool.id)

    @pytest.mark.asyncio
    async def test_removing_last_member_cancels_pool(self, coordinator, user_ids):
        outcome = await coordinator.submit(_new(user_ids[0]))
        snapshot = await coordinator.remove_member(outcome.pool.id, outcome.request.id)
        assert snapshot.pool.status is PoolStatus.CANCELLED
        assert snapshot.requests == []

    @pytest.mark.asyncio
    async def test_remove_non_member(self, coordinator, user_ids):
        outcome = await coordinator.submit(_new(user_ids[0]))
        pending = await coordinator.create_request(_new(user_ids[1]))
        with pytest.raises(NotFound):
            await coordinator.remove_member(outcome.pool.id, pending.id)


class TestPoolTransitions:
    @pytest.mark.asyncio
    async def test_lifecycle_cascades_to_riders(self, coordinator, user_ids):
        first = await coordinator.submit(_new(user_ids[0]))
        await coordinator.submit(_new(user_ids[1], NEAR_AIRPORT, NEAR_ANDHERI))
        pool_id = first.pool.id

        for pool_status, ride_status in [
            (PoolStatus.CONFIRMED, RideStatus.CONFIRMED),
            (PoolStatus.IN_PROGRESS, RideStatus.IN_PROGRESS),
            (PoolStatus.COMPLETED, RideStatus.COMPLETED),
        ]:
            snapshot = await coordinator.transition_pool(pool_id, pool_status)
            assert snapshot.pool.status is pool_status
            for ride in snapshot.requests:
                assert (await coordinator.get_request(ride.id)).status is ride_status

    @pytest.mark.asyncio
    async def test_late_joiner_follows_pool_forward(self, coordinator, user_ids):
        first = await coordinator.submit(_new(user_ids[0]))
        await coordinator.transition_pool(first.pool.id, PoolStatus.CONFIRMED)
        late = await coordinator.submit(_new(user_ids[1], NEAR_AIRPORT, NEAR_ANDHERI))
        assert late.outcome is MatchOutcome.MATCHED_TO_POOL
        assert late.request.status is RideStatus.MATCHED

        await coordinator.transition_pool(first.pool.id, PoolStatus.IN_PROGRESS)
        assert (await coordinator.get_request(late.request.id)).status is RideStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_cancelling_pool_releases_members(
        self, coordinator, session_factory, user_ids
    ):
        first = await coordinator.submit(_new(user_ids[0]))
        second = await coordinator.submit(_new(user_ids[1], NEAR_AIRPORT, NEAR_ANDHERI))

        snapshot = await coordinator.transition_pool(first.pool.id, PoolStatus.CANCELLED)
        assert snapshot.pool.status is PoolStatus.CANCELLED
        assert snapshot.members == []

        pending = {r.id for r in await coordinator.list_pending_requests()}
        assert pending == {first.request.id, second.request.id}
        stored = await _stored_pool(session_factory, first.pool.id)
        assert stored.current_passenger_count == 0

    @pytest.mark.asyncio
    async def test_illegal_pool_transition(self, coordinator, user_ids):
        outcome = await coordinator.submit(_new(user_ids[0]))
        with pytest.raises(InvalidStateTransition):
            await coordinator.transition_pool(outcome.pool.id, PoolStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_unknown_pool(self, coordinator, user_ids):
        with pytest.raises(NotFound):
            await coordinator.transition_pool(999, PoolStatus.CONFIRMED)
        with pytest.raises(NotFound):
            await coordinator.pool_snapshot(999)


class TestBackfill:
    @pytest.mark.asyncio
    async def test_groups_stale_pending_requests(self, coordinator, user_ids):
        rides = [
            await coordinator.create_request(
                _new(user_ids[n], (AIRPORT[0], AIRPORT[1] + n * 0.0005))
            )
            for n in range(5)
        ]

        created = await coordinator.backfill_pending(min_age_seconds=0)

        assert sorted(len(p.requests) for p in created) == [1, 4]
        assert await coordinator.list_pending_requests() == []
        pooled_ids = {r.id for p in created for r in p.requests}
        assert pooled_ids == {r.id for r in rides}

    @pytest.mark.asyncio
    async def test_fresh_requests_are_left_for_the_dispatcher(self, coordinator, user_ids):
        await coordinator.create_request(_new(user_ids[0]))
        assert await coordinator.backfill_pending(min_age_seconds=3600) == []

    @pytest.mark.asyncio
    async def test_create_pool_skips_resolved_requests(self, coordinator, user_ids):
        matched = await coordinator.submit(_new(user_ids[0]))
        pending = await coordinator.create_request(_new(user_ids[1]))

        snapshot = await coordinator.create_pool([matched.request.id, pending.id])
        assert [r.id for r in snapshot.requests] == [pending.id]
        assert await coordinator.create_pool([matched.request.id]) is None


class TestPoolListing:
    @pytest.mark.asyncio
    async def test_active_pools_by_cell(self, coordinator, user_ids):
        outcome = await coordinator.submit(_new(user_ids[0]))
        cell = outcome.pool.h3_cell

        assert [p.id for p in await coordinator.list_active_pools(cell=cell)] == [outcome.pool.id]
        assert await coordinator.list_active_pools(cell="870000000ffffff") == []

        await coordinator.cancel(outcome.request.id)
        assert await coordinator.list_active_pools() == []


class TestQuote:
    @pytest.mark.asyncio
    async def test_quote_is_pure(self, coordinator, user_ids):
        pickup, dropoff = Coordinate(*AIRPORT), Coordinate(*ANDHERI)
        assert await coordinator.quote(pickup, dropoff) == await coordinator.quote(pickup, dropoff)
        assert await coordinator.list_pending_requests() == []

    @pytest.mark.asyncio
    async def test_pooled_quote_is_cheaper(self, coordinator, user_ids):
        pickup, dropoff = Coordinate(*AIRPORT), Coordinate(*ANDHERI)
        solo = await coordinator.quote(pickup, dropoff)
        pooled = await coordinator.quote_pooled(pickup, dropoff, pool_size=2)
        assert pooled.pool_discount_percent == 20.0
        assert pooled.final_price < solo.final_price

    @pytest.mark.asyncio
    async def test_quote_for_oversized_party(self, coordinator, user_ids):
        with pytest.raises(CapacityExceeded):
            await coordinator.quote(Coordinate(*AIRPORT), Coordinate(*ANDHERI), passengers=6)
