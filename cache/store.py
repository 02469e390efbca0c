"""
cache/store.py -- Short-lived key/value state cache.

Holds the OAuth state -> PKCE verifier binding (5 minutes) and the
per-user "refreshed recently" debounce markers (2 hours). Every entry
carries its own TTL; an entry past its deadline is never returned and is
deleted lazily on read or in bulk by purge_expired().

Implementations:
  MemoryCache  -- dict guarded by a lock. Single process only.
  SQLiteCache  -- one table in a local SQLite file. Survives restarts and is
                  shared by the workers of one host.
  RedisCache   -- cache/redis.py, for multi-host deployments.

All operations are coroutines so the Redis implementation can be swapped in
without touching callers. The two local implementations do no I/O worth
offloading.

Usage:
    cache = MemoryCache()
    await cache.store("auth:github:verifier:abc", payload, ttl=300)
    raw = await cache.load("auth:github:verifier:abc")   # bytes or None
    await cache.delete("auth:github:verifier:abc")
    cache.purge_expired()                                # call periodically

Layer rule: stdlib only.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

_DEFAULT_DB = Path(__file__).parent / "authmw_state.db"

_DDL = """
CREATE TABLE IF NOT EXISTS state_cache (
    key         TEXT PRIMARY KEY,
    value       BLOB NOT NULL,
    expires_at  REAL NOT NULL
);
"""


class StateCache(Protocol):
    async def load(self, key: str) -> bytes | None: ...

    async def store(self, key: str, value: str | bytes, ttl: float) -> None: ...

    async def delete(self, *keys: str) -> None: ...

    def purge_expired(self) -> int: ...

    async def close(self) -> None: ...


def _to_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


class MemoryCache:
    """In-process TTL cache.

    clock is injectable so tests can move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[bytes, float]] = {}

    async def load(self, key: str) -> bytes | None:
        """Return the value for key if it exists and hasn't expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    async def store(self, key: str, value: str | bytes, ttl: float) -> None:
        """Store value under key for ttl seconds, replacing any existing entry."""
        with self._lock:
            self._entries[key] = (_to_bytes(value), self._clock() + ttl)

    async def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of entries removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    # Alias kept for callers that reap on a timer.
    clean = purge_expired

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


class SQLiteCache:
    """TTL cache stored in a local SQLite database."""

    def __init__(self, db_path: Path | str = _DEFAULT_DB, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    async def load(self, key: str) -> bytes | None:
        """Return the value for key if it exists and hasn't expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value, expires_at FROM state_cache WHERE key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            value, expires_at = row
            if self._clock() >= expires_at:
                self._conn.execute("DELETE FROM state_cache WHERE key = ?", (key,))
                self._conn.commit()
                return None
            return bytes(value)

    async def store(self, key: str, value: str | bytes, ttl: float) -> None:
        """Store value under key for ttl seconds, replacing any existing entry."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO state_cache (key, value, expires_at) VALUES (?, ?, ?)",
                (key, _to_bytes(value), self._clock() + ttl),
            )
            self._conn.commit()

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        with self._lock:
            self._conn.executemany("DELETE FROM state_cache WHERE key = ?", [(k,) for k in keys])
            self._conn.commit()

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM state_cache WHERE expires_at <= ?", (self._clock(),))
            self._conn.commit()
        return cursor.rowcount

    async def close(self) -> None:
        self._conn.close()
