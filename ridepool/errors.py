"""
Error taxonomy shared by the core and the API layer.

Only ``ConcurrencyConflict`` is retryable: the caller may re-run
``submit`` / ``cancel`` against a fresh snapshot.  Matching filters that
reject a pool are *not* errors; they surface as "no match".
"""


class RidePoolError(Exception):
    """Base class for every error the core raises on purpose."""

    retryable = False


class NotFound(RidePoolError):
    """A referenced ride request or pool does not exist."""


class InvalidState(RidePoolError):
    """A precondition on the entity's current state was not met."""


class CapacityExceeded(RidePoolError):
    """A manual addition would push a pool past its maxima."""


class ConcurrencyConflict(RidePoolError):
    """Lock wait timed out, or a concurrent writer invalidated our view."""

    retryable = True
