"""
Unit tests for the content cache.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

from ingest_guard.core.cache import ContentCache
from ingest_guard.core.sources import normalize_source
from ingest_guard.storage.repository import initialize_schema

KEY = "youtube:dQw4w9WgXcQ"
PAYLOAD = {"summary": "Photosynthesis converts light to chemical energy", "key_points": ["chlorophyll"]}


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class TestContentCache:
    """Test cache lookup, storage and invalidation."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.cache = ContentCache(self.db_path)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_miss(self):
        assert self.cache.lookup(KEY) is None

    def test_store_then_lookup(self):
        self.cache.store(KEY, PAYLOAD, "rec-1")

        entry = self.cache.lookup(KEY)
        assert entry.result_payload == PAYLOAD
        assert entry.record_id == "rec-1"
        assert entry.source_key == KEY

    def test_equivalent_urls_share_entry(self):
        stored_under = normalize_source("https://www.youtube.com/watch?v=dQw4w9WgXcQ").key
        self.cache.store(stored_under, PAYLOAD, "rec-1")

        for ref in ("https://youtu.be/dQw4w9WgXcQ",
                    "https://m.youtube.com/watch?v=dQw4w9WgXcQ&t=42s",
                    "https://www.youtube.com/embed/dQw4w9WgXcQ",
                    "dQw4w9WgXcQ"):
            entry = self.cache.lookup(normalize_source(ref).key)
            assert entry is not None, ref
            assert entry.result_payload == PAYLOAD

    def test_invalidate(self):
        self.cache.store(KEY, PAYLOAD, "rec-1")

        assert self.cache.invalidate(KEY) is True
        assert self.cache.invalidate(KEY) is False
        assert self.cache.lookup(KEY) is None

    def test_clear(self):
        self.cache.store(KEY, PAYLOAD, "rec-1")
        self.cache.store("pdf:sha256:abc", PAYLOAD, "rec-2")

        assert self.cache.clear() == 2
        assert self.cache.stats().entries == 0

    def test_stats(self):
        self.cache.store(KEY, PAYLOAD, "rec-1")
        self.cache.lookup(KEY)
        self.cache.lookup(KEY)
        self.cache.lookup("youtube:aaaaaaaaaaa")

        stats = self.cache.stats()
        assert stats.hits == 2
        assert stats.misses == 1
        assert stats.entries == 1
        assert abs(stats.hit_ratio - 2 / 3) < 1e-9

    def test_hit_ratio_without_lookups(self):
        assert self.cache.stats().hit_ratio == 0.0

    def test_ttl_expiry(self):
        clock = FakeClock(datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc))
        cache = ContentCache(self.db_path, ttl_seconds=3600, clock=clock)
        cache.store(KEY, PAYLOAD, "rec-1")

        clock.now += timedelta(minutes=30)
        assert cache.lookup(KEY) is not None

        clock.now += timedelta(hours=1)
        assert cache.lookup(KEY) is None

        # Recomputed result replaces the expired entry
        cache.store(KEY, {"summary": "fresh"}, "rec-2")
        assert cache.lookup(KEY).record_id == "rec-2"

    def test_entries_persist_across_instances(self):
        self.cache.store(KEY, PAYLOAD, "rec-1")
        assert ContentCache(self.db_path).lookup(KEY).record_id == "rec-1"
