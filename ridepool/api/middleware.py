"""Rate limiting via slowapi, keyed on the client address."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from ridepool.config import settings

RATE_LIMIT = settings.rate_limit

limiter = Limiter(key_func=get_remote_address)
