"""
Tests for the CLI interface.
"""
import os
import tempfile

from typer.testing import CliRunner

from ingest_guard.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from ingest_guard.config.loader import default_config
from ingest_guard.core.cache import ContentCache
from ingest_guard.core.locking import SqliteProcessingLock
from ingest_guard.core.quota import QuotaLedger
from ingest_guard.core.sources import normalize_source
from ingest_guard.storage.repository import get_user_plan, initialize_schema

runner = CliRunner()

VIDEO_KEY = "youtube:dQw4w9WgXcQ"


class TestCLI:
    """Test CLI commands."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def init_db(self):
        initialize_schema(self.db_path)

    def test_no_command_prints_hint(self):
        result = runner.invoke(app, [])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init_command(self):
        result = runner.invoke(app, ["init", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(self.db_path)

    def test_init_with_missing_config(self):
        result = runner.invoke(app, ["init", "--config", os.path.join(self.temp_dir, "nope.yaml")])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Config file not found" in result.output

    def test_init_with_invalid_config(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, "w") as f:
            f.write("budget:\n  daily: 10\n")

        result = runner.invoke(app, ["init", "--config", config_path, "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown configuration keys" in result.output

    def test_usage_command(self):
        self.init_db()
        QuotaLedger(self.db_path, default_config()).increment_if_allowed("user-1", "youtube_processing")

        result = runner.invoke(app, ["usage", "user-1", "--feature", "youtube_processing", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "youtube_processing" in result.output
        assert "Plan: free" in result.output

    def test_usage_unknown_feature(self):
        self.init_db()

        result = runner.invoke(app, ["usage", "user-1", "--feature", "teleportation", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown feature" in result.output

    def test_set_plan_command(self):
        self.init_db()

        result = runner.invoke(app, ["set-plan", "user-1", "premium", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert get_user_plan("user-1", self.db_path) == "premium"

        usage = runner.invoke(app, ["usage", "user-1", "--feature", "pdf_processing", "--db", self.db_path])
        assert "Plan: premium" in usage.output
        assert "unlimited" in usage.output

    def test_set_plan_unknown_plan(self):
        self.init_db()

        result = runner.invoke(app, ["set-plan", "user-1", "platinum", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "unknown plan" in result.output
        assert get_user_plan("user-1", self.db_path) is None

    def test_history_command(self):
        self.init_db()
        ledger = QuotaLedger(self.db_path, default_config())
        ledger.increment_if_allowed("user-1", "youtube_processing")
        ledger.increment_if_allowed("user-1", "youtube_processing")

        result = runner.invoke(app, ["history", "user-1", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "youtube_processing" in result.output
        assert "exceeded" in result.output

    def test_history_empty(self):
        self.init_db()

        result = runner.invoke(app, ["history", "user-1", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage recorded" in result.output

    def test_cache_invalidate_command(self):
        self.init_db()
        ContentCache(self.db_path).store(VIDEO_KEY, {"summary": "cached"}, "rec-1")

        result = runner.invoke(app, ["cache-invalidate", "https://youtu.be/dQw4w9WgXcQ", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Invalidated" in result.output
        assert ContentCache(self.db_path).lookup(VIDEO_KEY) is None

    def test_cache_invalidate_missing_entry(self):
        self.init_db()

        result = runner.invoke(app, ["cache-invalidate", "dQw4w9WgXcQ", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No cache entry" in result.output

    def test_cache_invalidate_by_key_after_file_removed(self):
        self.init_db()
        pdf_path = os.path.join(self.temp_dir, "lecture.pdf")
        with open(pdf_path, "wb") as f:
            f.write(b"%PDF-1.7\n1 0 obj\n<<>>\nendobj\n")
        key = normalize_source(pdf_path).key
        ContentCache(self.db_path).store(key, {"summary": "cached"}, "rec-1")
        os.remove(pdf_path)

        by_path = runner.invoke(app, ["cache-invalidate", pdf_path, "--db", self.db_path])
        assert by_path.exit_code == EXIT_CODE_FAIL

        result = runner.invoke(app, ["cache-invalidate", key, "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Invalidated" in result.output
        assert ContentCache(self.db_path).lookup(key) is None

    def test_cache_invalidate_by_youtube_key(self):
        self.init_db()
        ContentCache(self.db_path).store(VIDEO_KEY, {"summary": "cached"}, "rec-1")

        result = runner.invoke(app, ["cache-invalidate", VIDEO_KEY, "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert ContentCache(self.db_path).lookup(VIDEO_KEY) is None

    def test_cache_invalidate_invalid_source(self):
        self.init_db()

        result = runner.invoke(app, ["cache-invalidate", "https://vimeo.com/1", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_FAIL

    def test_locks_and_release_lock(self):
        self.init_db()
        SqliteProcessingLock(self.db_path).acquire(VIDEO_KEY, "crashed-worker")

        listing = runner.invoke(app, ["locks", "--db", self.db_path])
        assert listing.exit_code == EXIT_CODE_PASS
        assert "In-flight jobs" in listing.output

        released = runner.invoke(app, ["release-lock", VIDEO_KEY, "--db", self.db_path])
        assert released.exit_code == EXIT_CODE_PASS
        assert "Released" in released.output

        empty = runner.invoke(app, ["locks", "--db", self.db_path])
        assert "No jobs in flight" in empty.output

    def test_release_lock_missing(self):
        self.init_db()

        result = runner.invoke(app, ["release-lock", VIDEO_KEY, "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No job registered" in result.output
