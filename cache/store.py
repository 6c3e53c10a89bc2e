"""
cache/store.py -- SQLite-backed TTL cache for report read paths.

Wraps the aggregation queries in registry/reports.py (risk matrix, top-N,
dashboard KPIs, safeguard program summary). Entries are keyed by query
signature -- see cache_key() -- and each entry carries its own TTL so one
cache instance can serve reports with different freshness needs.

The cache is an optimization only: every caller works identically with
cache=None, and every registry write calls invalidate() so a stale report
is never served after a change.

Usage:
    cache = ReportCache()                         # file-backed default
    cache = ReportCache(":memory:", ttl=60)       # tests
    data = cache.get(cache_key("top_risks", limit=10))   # dict or None
    cache.set(cache_key("top_risks", limit=10), data, ttl=300)
    cache.invalidate("top_risks")                 # drop one report family
    cache.purge_expired()
"""

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

_DEFAULT_DB = Path(__file__).parent / "sigrisk_cache.db"
_DEFAULT_TTL = 300  # 5 minutes in seconds

_DDL = """
CREATE TABLE IF NOT EXISTS report_cache (
    cache_key   TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    cached_at   REAL NOT NULL,
    ttl         REAL NOT NULL
);
"""


def cache_key(name: str, **params: Any) -> str:
    """Build a stable key from a report name and its query parameters.

    Parameters are sorted so keyword order does not matter:
    cache_key("top_risks", limit=10) -> "top_risks:limit=10"
    """
    if not params:
        return name
    parts = ",".join(f"{k}={params[k]}" for k in sorted(params))
    return f"{name}:{parts}"


class ReportCache:
    def __init__(
        self,
        db_path: Union[Path, str] = _DEFAULT_DB,
        ttl: int = _DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        # One connection shared across FastAPI threadpool workers.
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, key: str) -> Optional[Any]:
        """Return cached data for key if it exists and hasn't expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT data, cached_at, ttl FROM report_cache WHERE cache_key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            data, cached_at, ttl = row
            if self._clock() - cached_at > ttl:
                self._conn.execute("DELETE FROM report_cache WHERE cache_key = ?", (key,))
                self._conn.commit()
                return None
        return json.loads(data)

    def set(self, key: str, data: Any, ttl: Optional[int] = None) -> None:
        """Store JSON-serializable data under key, replacing any existing entry."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO report_cache (cache_key, data, cached_at, ttl) VALUES (?, ?, ?, ?)",
                (key, json.dumps(data), self._clock(), self.ttl if ttl is None else ttl),
            )
            self._conn.commit()

    def invalidate(self, prefix: Optional[str] = None) -> int:
        """Drop entries whose key starts with prefix (all entries when None).

        Returns number of rows removed.
        """
        with self._lock:
            if prefix is None:
                cursor = self._conn.execute("DELETE FROM report_cache")
            else:
                # substr() instead of LIKE so '_' and '%' in report names match literally.
                cursor = self._conn.execute(
                    "DELETE FROM report_cache WHERE substr(cache_key, 1, ?) = ?",
                    (len(prefix), prefix),
                )
            self._conn.commit()
            return cursor.rowcount

    def clear(self) -> None:
        self.invalidate()

    def purge_expired(self) -> int:
        """Delete all entries older than their TTL. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM report_cache WHERE cached_at + ttl < ?",
                (self._clock(),),
            )
            self._conn.commit()
            return cursor.rowcount

    def close(self) -> None:
        self._conn.close()
