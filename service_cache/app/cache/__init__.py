"""
Cache core.

Values are stored with an explicit kind tag so reads return the type that
was written or nothing at all. Concurrent misses on one key are collapsed
into a single computation.
"""

from .api import Cache
from .models import NOT_FOUND, CacheEntry, Kind
from .single_flight import SingleFlight
from .storage import RedisStore

__all__ = ["Cache", "CacheEntry", "Kind", "NOT_FOUND", "RedisStore", "SingleFlight"]
