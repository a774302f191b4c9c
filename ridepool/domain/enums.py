"""Domain enumerations and state-transition rules."""

import enum


class RideStatus(str, enum.Enum):
    PENDING = "pending"
    MATCHED = "matched"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PoolStatus(str, enum.Enum):
    FORMING = "forming"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StopKind(str, enum.Enum):
    PICKUP = "pickup"
    DROPOFF = "dropoff"


# State machine: maps current status -> set of valid next statuses
RIDE_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.PENDING: {RideStatus.MATCHED, RideStatus.CANCELLED},
    RideStatus.MATCHED: {
        RideStatus.CONFIRMED,
        RideStatus.PENDING,  # removed from its pool
        RideStatus.CANCELLED,
    },
    RideStatus.CONFIRMED: {
        RideStatus.IN_PROGRESS,
        RideStatus.PENDING,
        RideStatus.CANCELLED,
    },
    RideStatus.IN_PROGRESS: {RideStatus.COMPLETED, RideStatus.CANCELLED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
}

POOL_TRANSITIONS: dict[PoolStatus, set[PoolStatus]] = {
    PoolStatus.FORMING: {PoolStatus.CONFIRMED, PoolStatus.CANCELLED},
    PoolStatus.CONFIRMED: {PoolStatus.IN_PROGRESS, PoolStatus.CANCELLED},
    PoolStatus.IN_PROGRESS: {PoolStatus.COMPLETED},
    PoolStatus.COMPLETED: set(),
    PoolStatus.CANCELLED: set(),
}

TERMINAL_RIDE_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED})
OPEN_POOL_STATUSES = frozenset({PoolStatus.FORMING, PoolStatus.CONFIRMED})
ACTIVE_POOL_STATUSES = frozenset(
    {PoolStatus.FORMING, PoolStatus.CONFIRMED, PoolStatus.IN_PROGRESS}
)
