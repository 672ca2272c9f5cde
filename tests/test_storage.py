"""
Unit tests for storage layer.

Tests schema creation, record persistence, user plans and the error log.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timezone

import pytest

from ingest_guard.storage.db import get_connection, write_transaction
from ingest_guard.storage.models import ProcessedRecord
from ingest_guard.storage.repository import (
    RecordRepository,
    fetch_error_log,
    get_user_plan,
    initialize_schema,
    log_error,
    set_user_plan,
)


def make_record(record_id="rec-1", user_id="user-1", created_at=None):
    return ProcessedRecord(
        record_id=record_id,
        user_id=user_id,
        source_key="youtube:dQw4w9WgXcQ",
        source_ref="https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        kind="youtube",
        payload={"summary": "Intro to thermodynamics", "key_points": ["entropy", "enthalpy"]},
        created_at=created_at or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify every table is created."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
                tables = {row[0] for row in cursor.fetchall()}
            finally:
                conn.close()

            assert {
                "usage_counter",
                "user_profile",
                "processing_job",
                "content_cache",
                "processed_record",
                "error_log",
            } <= tables

    def test_usage_counter_columns(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                columns = [col[1] for col in conn.execute("PRAGMA table_info(usage_counter)").fetchall()]
            finally:
                conn.close()

            assert columns == ["user_id", "feature", "day", "count", "updated_at"]

    def test_schema_creation_is_idempotent(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)


class TestWriteTransaction:

    def test_rolls_back_on_error(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            with pytest.raises(RuntimeError):
                with write_transaction(db_path) as conn:
                    conn.execute(
                        "INSERT INTO user_profile (user_id, plan_type, updated_at) VALUES ('u', 'free', 'x')"
                    )
                    raise RuntimeError("boom")

            assert get_user_plan("u", db_path) is None


class TestRecordRepository:
    """Test processed record persistence."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = RecordRepository(self.db_path)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_save_and_get_record(self):
        record = make_record()
        self.repository.save_record(record)

        loaded = self.repository.get_record("rec-1")
        assert loaded == record
        assert loaded.payload["key_points"] == ["entropy", "enthalpy"]

    def test_get_missing_record(self):
        assert self.repository.get_record("nope") is None

    def test_duplicate_record_id_fails_loudly(self):
        self.repository.save_record(make_record())
        with pytest.raises(sqlite3.IntegrityError):
            self.repository.save_record(make_record())

    def test_delete_record(self):
        self.repository.save_record(make_record())

        assert self.repository.delete_record("rec-1") is True
        assert self.repository.delete_record("rec-1") is False
        assert self.repository.get_record("rec-1") is None

    def test_fetch_records_for_user_newest_first(self):
        self.repository.save_record(make_record("old", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc)))
        self.repository.save_record(make_record("new", created_at=datetime(2024, 1, 2, tzinfo=timezone.utc)))
        self.repository.save_record(make_record("other", user_id="user-2"))

        records = self.repository.fetch_records_for_user("user-1")
        assert [r.record_id for r in records] == ["new", "old"]


class TestUserPlans:

    def test_set_and_replace_plan(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            assert get_user_plan("user-1", db_path) is None
            set_user_plan("user-1", "premium", db_path)
            assert get_user_plan("user-1", db_path) == "premium"
            set_user_plan("user-1", "free", db_path)
            assert get_user_plan("user-1", db_path) == "free"


class TestErrorLog:

    def test_log_and_fetch_errors(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            log_error("EXTRACTION_FAILED", "yt-dlp failed", user_id="user-1",
                      details={"source_key": "youtube:dQw4w9WgXcQ"}, db_path=db_path)
            log_error("VALIDATION_ERROR", "bad url", user_id="user-2", db_path=db_path)

            entries = fetch_error_log(db_path=db_path)
            assert [e.code for e in entries] == ["VALIDATION_ERROR", "EXTRACTION_FAILED"]

            mine = fetch_error_log(user_id="user-1", db_path=db_path)
            assert len(mine) == 1
            assert mine[0].details == {"source_key": "youtube:dQw4w9WgXcQ"}
            assert mine[0].message == "yt-dlp failed"
