"""Tests for sessionguard.auth (directory store, cached key store)."""

import json

import pytest

from sessionguard.auth import (
    CachedKeyStore,
    FileKeyStore,
    MemoryAuthStore,
    MultiFileAuthStore,
    fix_file_name,
)

# ---------------------------------------------------------------------------
# MultiFileAuthStore
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_load_creates_directory_and_fresh_credentials(tmp_path):
    """First load on a missing directory creates it and starts unpaired."""
    auth_dir = tmp_path / "database" / "qr-code"
    store = MultiFileAuthStore(auth_dir)
    state = await store.load()

    assert auth_dir.is_dir()
    assert state.credentials == {"registered": False}
    assert isinstance(state.keys, FileKeyStore)
    assert not (auth_dir / "creds.json").exists()


@pytest.mark.asyncio
async def test_saved_credentials_are_loaded_by_a_new_store(tmp_path):
    """save() writes creds.json; a later load sees the same credentials."""
    store = MultiFileAuthStore(tmp_path)
    await store.load()
    await store.save({"registered": True, "me": {"id": "1@s.net"}})

    on_disk = json.loads((tmp_path / "creds.json").read_text(encoding="utf-8"))
    assert on_disk == {"registered": True, "me": {"id": "1@s.net"}}

    state = await MultiFileAuthStore(tmp_path).load()
    assert state.credentials["registered"] is True


@pytest.mark.asyncio
async def test_file_key_store_writes_one_file_per_key(tmp_path):
    """Keys live in <category>-<id>.json; None deletes the file."""
    keys = FileKeyStore(tmp_path)
    await keys.set(
        {
            "pre-key": {"1": {"public": "a"}},
            "sender-key": {"group@g.us/user:2": {"k": 1}},
        }
    )
    assert (tmp_path / "pre-key-1.json").exists()
    assert (tmp_path / "sender-key-group@g.us__user-2.json").exists()

    got = await keys.get("pre-key", ["1", "2"])
    assert got == {"1": {"public": "a"}, "2": None}

    await keys.set({"pre-key": {"1": None}})
    assert not (tmp_path / "pre-key-1.json").exists()
    assert await keys.get("pre-key", ["1"]) == {"1": None}


def test_fix_file_name():
    assert fix_file_name("a/b:c.json") == "a__b-c.json"


# ---------------------------------------------------------------------------
# CachedKeyStore
# ---------------------------------------------------------------------------


class CountingKeyStore:
    """In-memory key store that counts reads."""

    def __init__(self) -> None:
        self.data = {}
        self.reads = []

    async def get(self, category, ids):
        ids = list(ids)
        self.reads.append((category, ids))
        bucket = self.data.get(category, {})
        return {key_id: bucket.get(key_id) for key_id in ids}

    async def set(self, data):
        for category, values in data.items():
            bucket = self.data.setdefault(category, {})
            for key_id, value in values.items():
                if value is None:
                    bucket.pop(key_id, None)
                else:
                    bucket[key_id] = value


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_cached_key_store_reads_through_once():
    """Cached ids are served from memory; only misses reach the store."""
    inner = CountingKeyStore()
    inner.data = {"session": {"a": 1, "b": 2}}
    cached = CachedKeyStore(inner, ttl=300, clock=FakeClock())

    assert await cached.get("session", ["a"]) == {"a": 1}
    assert await cached.get("session", ["a", "b", "c"]) == {"a": 1, "b": 2, "c": None}
    assert inner.reads == [("session", ["a"]), ("session", ["b", "c"])]

    # "c" was missing, so it is not cached.
    await cached.get("session", ["a", "b", "c"])
    assert inner.reads[-1] == ("session", ["c"])


@pytest.mark.asyncio
async def test_cached_key_store_entries_expire():
    inner = CountingKeyStore()
    inner.data = {"session": {"a": 1}}
    clock = FakeClock()
    cached = CachedKeyStore(inner, ttl=300, clock=clock)

    await cached.get("session", ["a"])
    clock.now = 299
    await cached.get("session", ["a"])
    assert len(inner.reads) == 1
    clock.now = 300
    await cached.get("session", ["a"])
    assert len(inner.reads) == 2


@pytest.mark.asyncio
async def test_cached_key_store_writes_through():
    """set() updates the store and the cache; None removes from both."""
    inner = CountingKeyStore()
    cached = CachedKeyStore(inner, clock=FakeClock())

    await cached.set({"pre-key": {"1": "v1"}})
    assert inner.data == {"pre-key": {"1": "v1"}}
    assert await cached.get("pre-key", ["1"]) == {"1": "v1"}
    assert inner.reads == []

    await cached.set({"pre-key": {"1": None}})
    assert await cached.get("pre-key", ["1"]) == {"1": None}
    assert inner.reads == [("pre-key", ["1"])]

    await cached.set({"pre-key": {"2": "v2"}})
    cached.clear()
    await cached.get("pre-key", ["2"])
    assert inner.reads[-1] == ("pre-key", ["2"])


# ---------------------------------------------------------------------------
# MemoryAuthStore
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_memory_store_load_returns_copy():
    """Mutating loaded credentials does not change the store until save()."""
    store = MemoryAuthStore()
    state = await store.load()
    state.credentials["registered"] = True
    assert store.credentials == {"registered": False}

    await store.save(state.credentials)
    assert store.credentials == {"registered": True}
    assert store.saves == 1
