"""Tests for sessionguard.version (VersionCache)."""

import httpx
import pytest

from sessionguard.types import VersionDescriptor
from sessionguard.version import (
    BUNDLED_VERSION,
    VERSION_CACHE_TTL,
    VersionCache,
    bundled_version,
    parse_version_document,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class CountingFetch:
    """Fetch stub that counts calls and returns a new descriptor each time."""

    def __init__(self, fail: bool = False) -> None:
        self.calls = 0
        self.fail = fail

    async def __call__(self) -> VersionDescriptor:
        self.calls += 1
        if self.fail:
            raise httpx.ConnectError("network down")
        return VersionDescriptor(version=(2, 3000, self.calls))


class CountingFallback:
    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self) -> VersionDescriptor:
        self.calls += 1
        return VersionDescriptor(version=(1, 0, self.calls), is_latest=False)


def _mock_client(handler):
    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Cache policy
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_hit_within_ttl_returns_same_object():
    """Two calls inside the TTL window share one fetch and one object."""
    fetch = CountingFetch()
    clock = FakeClock()
    cache = VersionCache(fetch=fetch, clock=clock)

    first = await cache.get_version()
    clock.now += VERSION_CACHE_TTL - 1
    second = await cache.get_version()

    assert first is second
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_expired_entry_triggers_one_new_fetch():
    """A call at or past the TTL refetches exactly once."""
    fetch = CountingFetch()
    clock = FakeClock()
    cache = VersionCache(fetch=fetch, clock=clock)

    first = await cache.get_version()
    clock.now += VERSION_CACHE_TTL
    second = await cache.get_version()
    third = await cache.get_version()

    assert fetch.calls == 2
    assert first.version == (2, 3000, 1)
    assert second.version == (2, 3000, 2)
    assert third is second
    assert cache.entry.fetched_at == clock.now


@pytest.mark.asyncio
async def test_failing_fetch_uses_fallback_once_per_miss():
    """When the fetch always raises, callers get the fallback result, cached like a fetch."""
    fetch = CountingFetch(fail=True)
    fallback = CountingFallback()
    clock = FakeClock()
    cache = VersionCache(fetch=fetch, fallback=fallback, clock=clock)

    first = await cache.get_version()
    again = await cache.get_version()
    assert first is again
    assert first.version == (1, 0, 1)
    assert fetch.calls == 1
    assert fallback.calls == 1

    clock.now += VERSION_CACHE_TTL
    later = await cache.get_version()
    assert later.version == (1, 0, 2)
    assert fetch.calls == 2
    assert fallback.calls == 2


@pytest.mark.asyncio
async def test_fallback_failure_propagates():
    """No third resolver: a failing fallback raises to the caller."""

    async def broken_fallback():
        raise RuntimeError("no fallback")

    cache = VersionCache(fetch=CountingFetch(fail=True), fallback=broken_fallback)
    with pytest.raises(RuntimeError, match="no fallback"):
        await cache.get_version()
    assert cache.entry is None


@pytest.mark.asyncio
async def test_invalidate_forces_refetch():
    """invalidate() drops the entry even inside the TTL."""
    fetch = CountingFetch()
    cache = VersionCache(fetch=fetch, clock=FakeClock())
    await cache.get_version()
    cache.invalidate()
    await cache.get_version()
    assert fetch.calls == 2


# ---------------------------------------------------------------------------
# Remote document over HTTP (httpx.MockTransport)
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_remote_fetch_parses_version_document():
    """Default fetch GETs the URL and reads the version list."""
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, json={"version": [2, 3000, 1020304050]})

    cache = VersionCache(
        "https://versions.example/baileys-version.json",
        client_factory=_mock_client(handler),
    )
    descriptor = await cache.get_version()

    assert descriptor == VersionDescriptor(version=(2, 3000, 1020304050))
    assert requested == ["https://versions.example/baileys-version.json"]


@pytest.mark.asyncio
async def test_malformed_document_falls_back_to_bundled_version():
    """A document without a version list falls back to the bundled version."""

    def handler(_request):
        return httpx.Response(200, json={"name": "no version here"})

    cache = VersionCache(client_factory=_mock_client(handler))
    descriptor = await cache.get_version()
    assert descriptor.version == BUNDLED_VERSION
    assert descriptor.is_latest is False


@pytest.mark.asyncio
async def test_http_error_status_falls_back():
    """Non-2xx responses count as fetch failures."""

    def handler(_request):
        return httpx.Response(503, text="unavailable")

    fallback = CountingFallback()
    cache = VersionCache(client_factory=_mock_client(handler), fallback=fallback)
    descriptor = await cache.get_version()
    assert descriptor.version == (1, 0, 1)
    assert fallback.calls == 1


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def test_parse_version_document_rejects_bad_shapes():
    """Only non-empty lists of integers are accepted."""
    assert parse_version_document({"version": [2, 1, 3]}).version == (2, 1, 3)
    for bad in (None, [], {"version": []}, {"version": "2.1.3"}, {"version": [2, True]}):
        with pytest.raises(ValueError):
            parse_version_document(bad)


@pytest.mark.asyncio
async def test_bundled_version_is_marked_not_latest():
    descriptor = await bundled_version()
    assert descriptor.version == BUNDLED_VERSION
    assert descriptor.is_latest is False
