"""
Feature permission checks and usage recording.

Translates a feature name into an allow/deny decision for a user using
the quota ledger and the user's plan.

Decision order:
1. Feature availability - A limit of 0 means the plan does not include it
2. Daily allowance - Used count must be below the plan's daily limit
3. Unlimited plans - A limit of -1 always allows

Checking never charges. Charges happen after the work succeeds, either in
the ingestion orchestrator or through ``record_usage`` for single-shot
features such as chat questions.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ingest_guard.config.loader import UNLIMITED, IngestConfig

from .errors import QuotaExceededError
from .quota import Admission, QuotaLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureUsage:
    """Permission decision and the numbers the UI shows next to it."""
    allowed: bool
    remaining: int
    limit: int
    is_premium: bool
    plan_type: str
    current: int = 0
    requires_upgrade: bool = False
    upgrade_message: Optional[str] = None


def _feature_label(feature: str) -> str:
    return feature.replace("_", " ")


class PermissionGate:
    """Single checkpoint for feature access decisions.

    Usage:
        gate = PermissionGate(ledger, config)
        usage = gate.check_feature_usage(user_id, "youtube_processing")
        if usage.allowed:
            ...
    """

    def __init__(self, ledger: QuotaLedger, config: IngestConfig):
        self.ledger = ledger
        self.config = config

    def check_feature_usage(self, user_id: str, feature: str) -> FeatureUsage:
        """Decide whether the user may start work for a feature. Never charges.

        Raises:
            ValidationError: If the feature is unknown
        """
        status = self.ledger.check(user_id, feature)
        is_premium = self.config.is_premium(status.plan_type)

        requires_upgrade = False
        upgrade_message = None
        if status.limit == 0:
            requires_upgrade = True
            upgrade_message = f"Upgrade to Premium to unlock {_feature_label(feature)}."
        elif not status.allowed and not is_premium:
            requires_upgrade = True
            upgrade_message = (
                f"You've used all {status.limit} {_feature_label(feature)} uses for today. "
                f"Upgrade to Premium for unlimited access."
            )

        return FeatureUsage(
            allowed=status.allowed,
            remaining=status.remaining,
            limit=status.limit,
            is_premium=is_premium or status.limit == UNLIMITED,
            plan_type=status.plan_type,
            current=status.current,
            requires_upgrade=requires_upgrade,
            upgrade_message=upgrade_message,
        )

    def ensure_allowed(self, user_id: str, feature: str) -> FeatureUsage:
        """Like ``check_feature_usage`` but raises when not allowed.

        Raises:
            QuotaExceededError: If the feature is unavailable or used up
        """
        usage = self.check_feature_usage(user_id, feature)
        if not usage.allowed:
            logger.info("Denied %s for %s (%d/%d)", feature, user_id, usage.current, usage.limit)
            raise QuotaExceededError(feature, usage.current, usage.limit, usage.upgrade_message)
        return usage

    def record_usage(self, user_id: str, feature: str) -> Admission:
        """Charge one use of a feature after the caller's work succeeded.

        Raises:
            QuotaExceededError: If a concurrent request took the last slot
        """
        admission = self.ledger.increment_if_allowed(user_id, feature)
        if not admission.admitted:
            usage = self.check_feature_usage(user_id, feature)
            raise QuotaExceededError(feature, usage.current, usage.limit, usage.upgrade_message)
        return admission
