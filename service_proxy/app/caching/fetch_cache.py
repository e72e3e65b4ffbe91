"""
Read-through response cache in front of the upstream.

``FetchCache.fetch_with_cache`` looks a URL up in the store, serves fresh
records directly, and otherwise fetches from upstream, persists the result
and returns it. Cache-internal failures never abort a request: unreadable or
expired records are dropped and treated as misses, and write failures are
logged. Only upstream transport failures propagate.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Union

from shared.errors import CacheDecodeError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..adapters.upstream_client import UpstreamClient
from .record import CacheRecord, DEFAULT_CONTENT_TYPE, decode, encode
from .store import FileCacheStore, cache_key


DEFAULT_TTL_MS = 60 * 60 * 1000

CORS_HEADERS: Dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Access-Control-Allow-Headers, Authorization, X-Requested-With",
}

# Stored but never replayed: connection-level headers, and framing headers
# that no longer describe the re-encoded text body.
EXCLUDED_RESPONSE_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
    "content-encoding",
    "content-length",
    "content-type",
})

_CORS_NAMES = frozenset(name.lower() for name in CORS_HEADERS)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CacheHit:
    record: CacheRecord


@dataclass(frozen=True)
class CacheMiss:
    pass


@dataclass(frozen=True)
class CacheInvalid:
    reason: str
    detail: str = ""


CacheLookup = Union[CacheHit, CacheMiss, CacheInvalid]


@dataclass(frozen=True)
class ProxyResponse:
    status: int
    headers: Dict[str, str]
    body: str
    content_type: str
    from_cache: bool = False


def _is_latin1(text: str) -> bool:
    # Header bytes on the wire are latin-1
    try:
        text.encode("latin-1")
    except UnicodeEncodeError:
        return False
    return True


def build_response_headers(headers: Mapping[str, str], content_type: Optional[str]) -> Dict[str, str]:
    """Merge upstream headers with the CORS set; CORS and content-type win."""
    merged = {
        name: value
        for name, value in headers.items()
        if name.lower() not in EXCLUDED_RESPONSE_HEADERS
        and name.lower() not in _CORS_NAMES
        and _is_latin1(name)
        and _is_latin1(value)
    }
    merged.update(CORS_HEADERS)
    if not content_type or not _is_latin1(content_type):
        content_type = DEFAULT_CONTENT_TYPE
    merged["content-type"] = content_type
    return merged


class FetchCache:
    """Coordinates cache lookup with upstream fetch for a single URL."""

    def __init__(
        self,
        store: FileCacheStore,
        upstream: UpstreamClient,
        *,
        ttl_ms: int = DEFAULT_TTL_MS,
        clock: Callable[[], int] = now_ms,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.upstream = upstream
        self.ttl_ms = ttl_ms
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("proxy.fetch_cache")

    async def lookup(self, key: str, url: Optional[str] = None) -> CacheLookup:
        """Classify what the store holds for key.

        Decoding is checked before age, so an unreadable record is invalid
        whatever its timestamp.
        """
        try:
            data = await self.store.get(key)
        except OSError as exc:
            return CacheInvalid("unreadable", str(exc))
        if data is None:
            return CacheMiss()

        try:
            record = decode(data)
        except CacheDecodeError as exc:
            return CacheInvalid("corrupt", exc.message)

        if url is not None and record.url != url:
            return CacheInvalid("url_mismatch", record.url)

        now = self.clock()
        if record.is_expired(now, self.ttl_ms):
            return CacheInvalid("expired", f"age_ms={record.age_ms(now)}")

        return CacheHit(record)

    async def fetch_with_cache(self, url: str) -> ProxyResponse:
        key = cache_key(url)
        result = await self.lookup(key, url)

        if isinstance(result, CacheHit):
            self.logger.debug("Cache hit", url=url, key=key)
            self._count("cache_lookups_total", result="hit")
            return self._respond(result.record, from_cache=True)

        if isinstance(result, CacheInvalid):
            self.logger.info("Cache record invalid", url=url, key=key, reason=result.reason, detail=result.detail)
            self._count("cache_lookups_total", result="invalid")
            await self._invalidate(key)
        else:
            self.logger.debug("Cache miss", url=url, key=key)
            self._count("cache_lookups_total", result="miss")

        # Transport failures propagate to the caller
        upstream = await self.upstream.get(url)

        record = CacheRecord(
            url=url,
            status=upstream.status,
            headers=upstream.headers,
            body=upstream.text,
            content_type=upstream.content_type or DEFAULT_CONTENT_TYPE,
            created_at=self.clock(),
        )
        await self._persist(key, record)
        return self._respond(record, from_cache=False)

    async def _invalidate(self, key: str) -> None:
        if not await self.store.delete(key):
            self.logger.warning("Could not delete invalid cache record", key=key)

    async def _persist(self, key: str, record: CacheRecord) -> bool:
        try:
            data = encode(record)
        except ValueError as exc:
            self.logger.error("Cache record could not be encoded", url=record.url, key=key, error=str(exc))
            self._count("cache_writes_total", status="error")
            return False

        if not await self.store.put(key, data):
            self.logger.error("Cache write failed, serving fresh response uncached", url=record.url, key=key)
            self._count("cache_writes_total", status="error")
            return False

        self._count("cache_writes_total", status="ok")
        return True

    @staticmethod
    def _respond(record: CacheRecord, *, from_cache: bool) -> ProxyResponse:
        content_type = record.content_type or DEFAULT_CONTENT_TYPE
        return ProxyResponse(
            status=record.status,
            headers=build_response_headers(record.headers, content_type),
            body=record.body,
            content_type=content_type,
            from_cache=from_cache,
        )

    def _count(self, metric_name: str, **labels) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(metric_name, **labels)
