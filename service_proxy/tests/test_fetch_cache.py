"""
Unit tests for the FetchCache orchestrator.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from service_proxy.app.adapters.upstream_client import UpstreamResponse
from service_proxy.app.caching.fetch_cache import (
    CORS_HEADERS,
    CacheHit,
    CacheInvalid,
    CacheMiss,
    FetchCache,
    build_response_headers,
)
from service_proxy.app.caching.record import CacheRecord, decode, encode
from service_proxy.app.caching.store import FileCacheStore, cache_key
from shared.errors import UpstreamFetchError
from shared.metrics import MetricsCollector


URL = "https://upstream.test/api/blocks/tip"
TTL = 3_600_000
NOW = 1_700_000_000_000


class FakeClock:
    """Settable millisecond clock."""

    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakeUpstream:
    """Upstream stub recording every requested URL."""

    def __init__(self, response: UpstreamResponse = None, error: Exception = None):
        self.response = response or UpstreamResponse(
            status=200,
            headers={"content-type": "application/json", "x-upstream": "yes", "content-length": "17"},
            text='{"height": 1234}',
            content_type="application/json",
        )
        self.error = error
        self.calls = []

    async def get(self, url: str) -> UpstreamResponse:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return self.response


class TestFetchCache:
    """Test cases for FetchCache."""

    @pytest.fixture
    def store(self, tmp_path):
        return FileCacheStore(tmp_path / "cache")

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def upstream(self):
        return FakeUpstream()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("proxy")

    @pytest.fixture
    def fetch_cache(self, store, upstream, clock, metrics):
        return FetchCache(store, upstream, ttl_ms=TTL, clock=clock, metrics=metrics)

    async def _store_record(self, store, created_at: int, body: str = "cached") -> None:
        record = CacheRecord(
            url=URL,
            status=201,
            headers={"x-cached": "1"},
            body=body,
            content_type="text/plain",
            created_at=created_at,
        )
        await store.put(cache_key(URL), encode(record))

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, fetch_cache, store, upstream, metrics):
        """First fetch goes upstream and persists; second is served from disk."""
        first = await fetch_cache.fetch_with_cache(URL)

        assert upstream.calls == [URL]
        assert first.from_cache is False
        stored = decode(await store.get(cache_key(URL)))
        assert stored.created_at == NOW
        assert stored.body == '{"height": 1234}'

        second = await fetch_cache.fetch_with_cache(URL)

        assert upstream.calls == [URL]
        assert second.from_cache is True
        assert second.body == first.body
        assert second.status == first.status
        assert second.content_type == first.content_type
        assert second.headers == first.headers
        assert metrics.get_value("cache_lookups_total", result="miss") == 1
        assert metrics.get_value("cache_lookups_total", result="hit") == 1
        assert metrics.get_value("cache_writes_total", status="ok") == 1

    @pytest.mark.asyncio
    async def test_hit_uses_stored_values(self, fetch_cache, store, upstream):
        await self._store_record(store, created_at=NOW - 1000)

        response = await fetch_cache.fetch_with_cache(URL)

        assert upstream.calls == []
        assert response.status == 201
        assert response.body == "cached"
        assert response.content_type == "text/plain"
        assert response.headers["x-cached"] == "1"
        assert response.headers["content-type"] == "text/plain"

    @pytest.mark.asyncio
    async def test_record_just_inside_ttl_is_served(self, fetch_cache, store, upstream):
        await self._store_record(store, created_at=NOW - TTL + 1)

        response = await fetch_cache.fetch_with_cache(URL)

        assert upstream.calls == []
        assert response.from_cache is True

    @pytest.mark.asyncio
    async def test_record_just_past_ttl_is_refetched(self, fetch_cache, store, upstream, metrics):
        """Expiry forces one upstream call and a new creation time."""
        await self._store_record(store, created_at=NOW - TTL - 1)

        response = await fetch_cache.fetch_with_cache(URL)

        assert upstream.calls == [URL]
        assert response.from_cache is False
        assert response.body == '{"height": 1234}'
        assert decode(await store.get(cache_key(URL))).created_at == NOW
        assert metrics.get_value("cache_lookups_total", result="invalid") == 1

    @pytest.mark.asyncio
    async def test_expiry_after_clock_advance(self, fetch_cache, store, upstream, clock):
        await fetch_cache.fetch_with_cache(URL)
        clock.now += TTL
        await fetch_cache.fetch_with_cache(URL)
        assert len(upstream.calls) == 1

        clock.now += 1
        await fetch_cache.fetch_with_cache(URL)
        assert len(upstream.calls) == 2
        assert decode(await store.get(cache_key(URL))).created_at == NOW + TTL + 1

    @pytest.mark.asyncio
    async def test_corrupt_record_recovered(self, fetch_cache, store, upstream):
        """Garbage at a valid key leads to one fetch and a fresh write."""
        await store.put(cache_key(URL), b"\x00garbage{")

        response = await fetch_cache.fetch_with_cache(URL)

        assert upstream.calls == [URL]
        assert response.status == 200
        assert decode(await store.get(cache_key(URL))).url == URL

    @pytest.mark.asyncio
    async def test_upstream_error_propagates(self, fetch_cache, store):
        fetch_cache.upstream = FakeUpstream(error=UpstreamFetchError(URL, "connection refused"))

        with pytest.raises(UpstreamFetchError):
            await fetch_cache.fetch_with_cache(URL)

        assert await store.get(cache_key(URL)) is None

    @pytest.mark.asyncio
    async def test_write_failure_still_returns_response(self, fetch_cache, store, upstream, metrics):
        with patch.object(store, "put", new_callable=AsyncMock) as mock_put:
            mock_put.return_value = False

            response = await fetch_cache.fetch_with_cache(URL)

        assert response.status == 200
        assert response.body == '{"height": 1234}'
        mock_put.assert_called_once()
        assert metrics.get_value("cache_writes_total", status="error") == 1

    @pytest.mark.asyncio
    async def test_delete_failure_does_not_block_fetch(self, fetch_cache, store, upstream):
        await self._store_record(store, created_at=NOW - TTL - 10)

        with patch.object(store, "delete", new_callable=AsyncMock) as mock_delete:
            mock_delete.return_value = False

            response = await fetch_cache.fetch_with_cache(URL)

        mock_delete.assert_called_once_with(cache_key(URL))
        assert upstream.calls == [URL]
        assert response.from_cache is False
        assert decode(await store.get(cache_key(URL))).created_at == NOW

    @pytest.mark.asyncio
    async def test_unreadable_store_treated_as_invalid(self, fetch_cache, store, upstream):
        with patch.object(store, "get", new_callable=AsyncMock) as mock_get:
            mock_get.side_effect = PermissionError("denied")

            response = await fetch_cache.fetch_with_cache(URL)

        assert upstream.calls == [URL]
        assert response.status == 200

    @pytest.mark.asyncio
    async def test_missing_content_type_defaults_to_json(self, fetch_cache, store):
        fetch_cache.upstream = FakeUpstream(UpstreamResponse(status=200, headers={}, text="plain", content_type=None))

        response = await fetch_cache.fetch_with_cache(URL)

        assert response.content_type == "application/json"
        assert response.headers["content-type"] == "application/json"
        assert decode(await store.get(cache_key(URL))).content_type == "application/json"

    @pytest.mark.asyncio
    async def test_non_2xx_status_cached_as_is(self, fetch_cache, upstream):
        fetch_cache.upstream = FakeUpstream(UpstreamResponse(status=404, headers={}, text="nope", content_type="text/plain"))

        first = await fetch_cache.fetch_with_cache(URL)
        second = await fetch_cache.fetch_with_cache(URL)

        assert first.status == second.status == 404
        assert second.from_cache is True
        assert len(fetch_cache.upstream.calls) == 1


class TestCacheLookup:
    """Test cases for the tagged lookup result."""

    @pytest.fixture
    def store(self, tmp_path):
        return FileCacheStore(tmp_path / "cache")

    @pytest.fixture
    def fetch_cache(self, store):
        return FetchCache(store, FakeUpstream(), ttl_ms=TTL, clock=FakeClock())

    @pytest.mark.asyncio
    async def test_absent(self, fetch_cache):
        assert await fetch_cache.lookup(cache_key(URL)) == CacheMiss()

    @pytest.mark.asyncio
    async def test_hit(self, fetch_cache, store):
        record = CacheRecord(URL, 200, {}, "x", "text/plain", NOW)
        await store.put(cache_key(URL), encode(record))
        assert await fetch_cache.lookup(cache_key(URL), URL) == CacheHit(record)

    @pytest.mark.asyncio
    async def test_corrupt_checked_before_expiry(self, fetch_cache, store):
        """An undecodable record is corrupt regardless of its age."""
        document = json.loads(encode(CacheRecord(URL, 200, {}, "x", "text/plain", 0)))
        del document["url"]
        await store.put(cache_key(URL), json.dumps(document).encode())

        result = await fetch_cache.lookup(cache_key(URL))

        assert isinstance(result, CacheInvalid)
        assert result.reason == "corrupt"

    @pytest.mark.asyncio
    async def test_expired(self, fetch_cache, store):
        await store.put(cache_key(URL), encode(CacheRecord(URL, 200, {}, "x", "text/plain", NOW - TTL - 1)))

        result = await fetch_cache.lookup(cache_key(URL))

        assert isinstance(result, CacheInvalid)
        assert result.reason == "expired"

    @pytest.mark.asyncio
    async def test_url_mismatch(self, fetch_cache, store):
        other = CacheRecord("https://upstream.test/other", 200, {}, "x", "text/plain", NOW)
        await store.put(cache_key(URL), encode(other))

        result = await fetch_cache.lookup(cache_key(URL), URL)

        assert isinstance(result, CacheInvalid)
        assert result.reason == "url_mismatch"


class TestResponseHeaders:
    """Test cases for response header merging."""

    def test_cors_headers_always_present(self):
        headers = build_response_headers({}, None)
        for name, value in CORS_HEADERS.items():
            assert headers[name] == value
        assert headers["content-type"] == "application/json"

    def test_cors_wins_over_upstream(self):
        headers = build_response_headers(
            {"access-control-allow-origin": "https://only.example", "x-custom": "kept"},
            "text/html",
        )
        assert "access-control-allow-origin" not in headers
        assert headers["Access-Control-Allow-Origin"] == "*"
        assert headers["x-custom"] == "kept"
        assert headers["content-type"] == "text/html"

    def test_framing_headers_dropped(self):
        headers = build_response_headers(
            {
                "content-encoding": "gzip",
                "content-length": "42",
                "transfer-encoding": "chunked",
                "connection": "keep-alive",
                "Content-Type": "text/plain",
                "etag": '"abc"',
            },
            "application/xml",
        )
        assert set(headers) == set(CORS_HEADERS) | {"content-type", "etag"}
        assert headers["content-type"] == "application/xml"

    def test_unencodable_values_dropped(self):
        headers = build_response_headers(
            {"x-note": "price €5", "x-plain": "kept"},
            "text/plain; charset=€",
        )

        assert "x-note" not in headers
        assert headers["x-plain"] == "kept"
        assert headers["content-type"] == "application/json"
