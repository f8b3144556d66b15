"""
VersionCache: time-boxed cache of the protocol version used to open sessions.

On a miss the canonical version document is fetched over HTTP. Any fetch or
parse failure falls back to a resolver (by default the bundled latest-known
version). Concurrent misses are not de-duplicated; each one fetches.
"""

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from sessionguard.types import VersionDescriptor

logger = logging.getLogger(__name__)

VERSION_URL = (
    "https://raw.githubusercontent.com/WhiskeySockets/Baileys/refs/heads/master/"
    "src/Defaults/baileys-version.json"
)

# Seconds a cached descriptor stays valid.
VERSION_CACHE_TTL = 60 * 60

# Version shipped with this package; used when the remote document is unavailable.
BUNDLED_VERSION = (2, 3000, 1015901307)

Fetcher = Callable[[], Awaitable[VersionDescriptor]]
Fallback = Callable[[], Awaitable[VersionDescriptor]]


@dataclass(frozen=True)
class VersionCacheEntry:
    """Cached descriptor and the clock reading it was stored at."""

    version: VersionDescriptor
    fetched_at: float


def parse_version_document(data: object) -> VersionDescriptor:
    """Parse {"version": [major, minor, patch]} into a descriptor."""
    if not isinstance(data, dict):
        raise ValueError("version document must be an object")
    raw = data.get("version")
    if not isinstance(raw, (list, tuple)) or not raw:
        raise ValueError("version document has no version list")
    if not all(isinstance(part, int) and not isinstance(part, bool) for part in raw):
        raise ValueError(f"version parts must be integers: {raw!r}")
    return VersionDescriptor(version=tuple(raw))


async def bundled_version() -> VersionDescriptor:
    """Latest version known to this package, flagged as possibly outdated."""
    return VersionDescriptor(version=BUNDLED_VERSION, is_latest=False)


class VersionCache:
    """
    Single-entry cache for the protocol version.

    Build one per process and hand it to whoever opens sessions.
    """

    def __init__(
        self,
        url: str = VERSION_URL,
        ttl: float = VERSION_CACHE_TTL,
        *,
        fetch: Optional[Fetcher] = None,
        fallback: Optional[Fallback] = None,
        clock: Callable[[], float] = time.monotonic,
        timeout: float = 10.0,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> None:
        self.url = url
        self.ttl = ttl
        self._fetch = fetch or self._fetch_remote
        self._fallback = fallback or bundled_version
        self._clock = clock
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        )
        self._entry: Optional[VersionCacheEntry] = None

    @property
    def entry(self) -> Optional[VersionCacheEntry]:
        """Current cache entry, fresh or not."""
        return self._entry

    def invalidate(self) -> None:
        """Drop the cached descriptor; the next call fetches again."""
        self._entry = None

    async def get_version(self) -> VersionDescriptor:
        """Return a usable version descriptor, fetching it when stale."""
        now = self._clock()
        entry = self._entry
        if entry is not None and now - entry.fetched_at < self.ttl:
            return entry.version
        try:
            version = await self._fetch()
            logger.info("VersionCache: fetched version %s", _fmt(version))
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("VersionCache: fetch failed (%s), using fallback", e)
            version = await self._fallback()
            logger.info("VersionCache: fallback version %s", _fmt(version))
        self._entry = VersionCacheEntry(version=version, fetched_at=now)
        return version

    async def _fetch_remote(self) -> VersionDescriptor:
        async with self._client_factory() as client:
            response = await client.get(self.url)
            response.raise_for_status()
            return parse_version_document(response.json())


def _fmt(version: VersionDescriptor) -> str:
    return ".".join(str(part) for part in version.version)
