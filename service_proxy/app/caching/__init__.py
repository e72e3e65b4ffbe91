"""
Proxy caching package.

Records are keyed by a hash of the resolved upstream URL and stored one
file per key. Expiry is checked on every read; the optional sweeper only
reclaims space for records nobody asks for again.
"""

from .fetch_cache import CORS_HEADERS, CacheHit, CacheInvalid, CacheMiss, FetchCache, ProxyResponse
from .record import CacheRecord, decode, encode
from .store import FileCacheStore, cache_key
from .sweeper import CacheSweeper

__all__ = [
    "CORS_HEADERS",
    "CacheHit",
    "CacheInvalid",
    "CacheMiss",
    "CacheRecord",
    "CacheSweeper",
    "FetchCache",
    "FileCacheStore",
    "ProxyResponse",
    "cache_key",
    "decode",
    "encode",
]
