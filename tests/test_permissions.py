"""
Unit tests for feature permission checks.

Tests upgrade messaging, premium detection and usage recording.
"""

import os
import tempfile

import pytest

from ingest_guard.config.loader import default_config
from ingest_guard.core.errors import QuotaExceededError, ValidationError
from ingest_guard.core.permissions import PermissionGate
from ingest_guard.core.quota import QuotaLedger
from ingest_guard.storage.repository import initialize_schema, set_user_plan


class TestPermissionGate:
    """Test allow/deny decisions."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.config = default_config()
        self.ledger = QuotaLedger(self.db_path, self.config)
        self.gate = PermissionGate(self.ledger, self.config)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_free_user_allowed(self):
        usage = self.gate.check_feature_usage("user-1", "youtube_processing")

        assert usage.allowed is True
        assert usage.remaining == 2
        assert usage.limit == 2
        assert usage.is_premium is False
        assert usage.plan_type == "free"
        assert usage.requires_upgrade is False
        assert usage.upgrade_message is None

    def test_feature_not_on_plan_requires_upgrade(self):
        usage = self.gate.check_feature_usage("user-1", "full_audio_summary")

        assert usage.allowed is False
        assert usage.requires_upgrade is True
        assert usage.upgrade_message == "Upgrade to Premium to unlock full audio summary."

    def test_used_up_requires_upgrade(self):
        self.gate.record_usage("user-1", "youtube_processing")
        self.gate.record_usage("user-1", "youtube_processing")

        usage = self.gate.check_feature_usage("user-1", "youtube_processing")

        assert usage.allowed is False
        assert usage.current == 2
        assert usage.remaining == 0
        assert usage.requires_upgrade is True
        assert "You've used all 2 youtube processing uses for today" in usage.upgrade_message

    def test_premium_user(self):
        set_user_plan("user-1", "enterprise", self.db_path)

        usage = self.gate.check_feature_usage("user-1", "full_audio_summary")

        assert usage.allowed is True
        assert usage.is_premium is True
        assert usage.limit == -1
        assert usage.remaining == -1
        assert usage.plan_type == "enterprise"

    def test_unknown_feature(self):
        with pytest.raises(ValidationError):
            self.gate.check_feature_usage("user-1", "teleportation")

    def test_ensure_allowed_raises_with_upgrade_message(self):
        with pytest.raises(QuotaExceededError) as exc_info:
            self.gate.ensure_allowed("user-1", "full_audio_summary")

        response = exc_info.value.to_response()
        assert response["success"] is False
        assert response["error"] == "QUOTA_EXCEEDED"
        assert response["upgrade_message"].startswith("Upgrade to Premium")
        assert response["details"] == {"feature": "full_audio_summary", "current": 0, "limit": 0}

    def test_record_usage_charges(self):
        admission = self.gate.record_usage("user-1", "ai_tutor_questions")

        assert admission.admitted is True
        assert admission.new_count == 1
        assert self.gate.check_feature_usage("user-1", "ai_tutor_questions").remaining == 9

    def test_record_usage_refused_at_limit(self):
        self.gate.record_usage("user-1", "mind_map_generation")
        self.gate.record_usage("user-1", "mind_map_generation")

        with pytest.raises(QuotaExceededError) as exc_info:
            self.gate.record_usage("user-1", "mind_map_generation")

        assert exc_info.value.current == 2
        assert exc_info.value.limit == 2
        assert self.ledger.current_count("user-1", "mind_map_generation") == 2
