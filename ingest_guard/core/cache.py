"""
Content-addressed result cache.

Keyed by normalized source key, so every input that normalizes to the
same key shares one entry. Entries are written once, after a fully
successful pipeline run, and removed only by an administrative
invalidation or, when a TTL is configured, by expiry.
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from ingest_guard.storage.db import get_connection, write_transaction
from ingest_guard.storage.models import CacheEntry


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    entries: int

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContentCache:
    """SQLite-backed cache of computed results.

    Args:
        db_path: Path to SQLite database file
        ttl_seconds: Optional age after which an entry is treated as a miss
        clock: Callable returning the current time
    """

    def __init__(
        self,
        db_path: str,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_path = db_path
        self.ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._clock = clock or _utcnow
        self.logger = logging.getLogger(__name__)

        # Statistics
        self._hits = 0
        self._misses = 0
        self._stats_lock = threading.Lock()

    def lookup(self, source_key: str) -> Optional[CacheEntry]:
        """Return the entry for a key, or None on a miss."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT source_key, result_payload, record_id, computed_at
                FROM content_cache WHERE source_key = ?
            """, (source_key,)).fetchone()
        finally:
            conn.close()

        entry = None
        if row is not None:
            entry = CacheEntry(
                source_key=row[0],
                result_payload=json.loads(row[1]),
                record_id=row[2],
                computed_at=datetime.fromisoformat(row[3]),
            )
            if self.ttl is not None and self._clock() - entry.computed_at > self.ttl:
                self.logger.debug("Cache expired: %s", source_key)
                entry = None

        with self._stats_lock:
            if entry is None:
                self._misses += 1
            else:
                self._hits += 1
        return entry

    def store(self, source_key: str, payload: Dict[str, Any], record_id: str) -> CacheEntry:
        """Write the result for a key, replacing an expired entry if present."""
        entry = CacheEntry(
            source_key=source_key,
            result_payload=payload,
            record_id=record_id,
            computed_at=self._clock(),
        )
        with write_transaction(self.db_path) as conn:
            conn.execute("""
                INSERT OR REPLACE INTO content_cache (source_key, result_payload, record_id, computed_at)
                VALUES (?, ?, ?, ?)
            """, (source_key, json.dumps(payload), record_id, entry.computed_at.isoformat()))
        self.logger.debug("Cached result for %s", source_key)
        return entry

    def invalidate(self, source_key: str) -> bool:
        """Remove one entry. Returns True if it existed."""
        with write_transaction(self.db_path) as conn:
            removed = conn.execute(
                "DELETE FROM content_cache WHERE source_key = ?", (source_key,)
            ).rowcount == 1
        if removed:
            self.logger.info("Invalidated cache entry %s", source_key)
        return removed

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        with write_transaction(self.db_path) as conn:
            count = conn.execute("DELETE FROM content_cache").rowcount
        self.logger.info("Cleared %d cache entries", count)
        return count

    def stats(self) -> CacheStats:
        conn = get_connection(self.db_path)
        try:
            entries = conn.execute("SELECT COUNT(*) FROM content_cache").fetchone()[0]
        finally:
            conn.close()
        with self._stats_lock:
            return CacheStats(hits=self._hits, misses=self._misses, entries=entries)
