"""
Auth state: credentials and signal keys persisted between sessions.

The session engine reads credentials once per connection attempt and asks
for key material while it runs. Stores implement AuthStateStore; the key
material is reached through a KeyStore. MultiFileAuthStore keeps everything
as JSON files in one directory; CachedKeyStore puts an in-memory TTL cache
in front of any KeyStore.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Tuple

from sessionguard.types import Credentials

logger = logging.getLogger(__name__)

# category -> {key id -> value or None to delete}
KeyData = Dict[str, Dict[str, Any]]

CREDS_FILE = "creds.json"

# Seconds a key stays in CachedKeyStore.
KEY_CACHE_TTL = 5 * 60


class KeyStore(Protocol):
    """Protocol for signal key storage."""

    async def get(self, category: str, ids: Iterable[str]) -> Dict[str, Any]:
        """Return {id: value or None} for the requested ids of one category."""

    async def set(self, data: KeyData) -> None:
        """Write values; a None value deletes the key."""


@dataclass
class AuthState:
    """Credentials plus the key store they belong to."""

    credentials: Credentials
    keys: KeyStore


class AuthStateStore(Protocol):
    """Protocol for credential persistence (directory, PostgreSQL, ...)."""

    async def load(self) -> AuthState:
        """Load credentials and key store; fresh credentials if nothing is stored."""

    async def save(self, credentials: Credentials) -> None:
        """Persist the current credentials."""


def init_credentials() -> Credentials:
    """Credentials for a session that has never been paired."""
    return {"registered": False}


def fix_file_name(name: str) -> str:
    """Make a key id safe to use as a file name."""
    return name.replace("/", "__").replace(":", "-")


def _read_json(path: Path) -> Optional[Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None


def _write_json(path: Path, value: Any) -> None:
    path.write_text(json.dumps(value, ensure_ascii=False), encoding="utf-8")


def _remove(path: Path) -> None:
    path.unlink(missing_ok=True)


class FileKeyStore:
    """Key store writing one JSON file per key: <category>-<id>.json."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self._lock = asyncio.Lock()

    def _path(self, category: str, key_id: str) -> Path:
        return self.directory / fix_file_name(f"{category}-{key_id}.json")

    async def get(self, category: str, ids: Iterable[str]) -> Dict[str, Any]:
        """Return {id: value or None} for one category."""
        result: Dict[str, Any] = {}
        for key_id in ids:
            result[key_id] = await asyncio.to_thread(
                _read_json, self._path(category, key_id)
            )
        return result

    async def set(self, data: KeyData) -> None:
        """Write or delete key files."""
        async with self._lock:
            for category, values in data.items():
                for key_id, value in values.items():
                    path = self._path(category, key_id)
                    if value is None:
                        await asyncio.to_thread(_remove, path)
                    else:
                        await asyncio.to_thread(_write_json, path, value)


class MultiFileAuthStore:
    """
    Auth state kept in a directory: creds.json plus one file per key.

    The directory is created on load if it does not exist.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self._lock = asyncio.Lock()

    async def load(self) -> AuthState:
        """Read creds.json (or start fresh) and open the key store."""
        await asyncio.to_thread(self.directory.mkdir, parents=True, exist_ok=True)
        creds = await asyncio.to_thread(_read_json, self.directory / CREDS_FILE)
        if creds is None:
            logger.info("no credentials in %s, starting unpaired", self.directory)
            creds = init_credentials()
        return AuthState(credentials=creds, keys=FileKeyStore(self.directory))

    async def save(self, credentials: Credentials) -> None:
        """Overwrite creds.json."""
        async with self._lock:
            await asyncio.to_thread(
                _write_json, self.directory / CREDS_FILE, credentials
            )
        logger.debug("credentials saved to %s", self.directory)


class CachedKeyStore:
    """
    Read-through, write-through cache in front of a KeyStore.

    Entries expire ttl seconds after they were cached.
    """

    def __init__(
        self,
        store: KeyStore,
        ttl: float = KEY_CACHE_TTL,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self.ttl = ttl
        self._clock = clock
        # (category, id) -> (value, cached_at)
        self._cache: Dict[Tuple[str, str], Tuple[Any, float]] = {}

    def _lookup(self, key: Tuple[str, str], now: float) -> Tuple[bool, Any]:
        hit = self._cache.get(key)
        if hit is None:
            return False, None
        value, cached_at = hit
        if now - cached_at >= self.ttl:
            self._cache.pop(key, None)
            return False, None
        return True, value

    async def get(self, category: str, ids: Iterable[str]) -> Dict[str, Any]:
        """Serve cached ids; fetch and cache the rest."""
        now = self._clock()
        result: Dict[str, Any] = {}
        missing = []
        for key_id in ids:
            found, value = self._lookup((category, key_id), now)
            if found:
                result[key_id] = value
            else:
                missing.append(key_id)
        if missing:
            fetched = await self._store.get(category, missing)
            for key_id in missing:
                value = fetched.get(key_id)
                result[key_id] = value
                if value is not None:
                    self._cache[(category, key_id)] = (value, now)
        return result

    async def set(self, data: KeyData) -> None:
        """Write to the store, then refresh the cache."""
        await self._store.set(data)
        now = self._clock()
        for category, values in data.items():
            for key_id, value in values.items():
                if value is None:
                    self._cache.pop((category, key_id), None)
                else:
                    self._cache[(category, key_id)] = (value, now)

    def clear(self) -> None:
        """Forget every cached key."""
        self._cache.clear()


@dataclass
class MemoryAuthStore:
    """Auth state kept in process memory; nothing survives a restart."""

    credentials: Credentials = field(default_factory=init_credentials)
    keys: KeyData = field(default_factory=dict)
    saves: int = 0

    async def load(self) -> AuthState:
        """Return a copy of the stored credentials."""
        return AuthState(credentials=dict(self.credentials), keys=_MemoryKeyStore(self.keys))

    async def save(self, credentials: Credentials) -> None:
        """Replace the stored credentials."""
        self.credentials = dict(credentials)
        self.saves += 1


class _MemoryKeyStore:
    def __init__(self, data: KeyData) -> None:
        self._data = data

    async def get(self, category: str, ids: Iterable[str]) -> Dict[str, Any]:
        values = self._data.get(category, {})
        return {key_id: values.get(key_id) for key_id in ids}

    async def set(self, data: KeyData) -> None:
        for category, values in data.items():
            bucket = self._data.setdefault(category, {})
            for key_id, value in values.items():
                if value is None:
                    bucket.pop(key_id, None)
                else:
                    bucket[key_id] = value
