"""
Per-user, per-feature, per-day usage ledger.

Counts are keyed by (user_id, feature, day) where day is the UTC calendar
date, so each day starts from a fresh row and no reset job exists. Stale
rows from earlier days are never read for admission and never deleted.

Admission is a single conditional upsert executed under the database
write lock: the row is incremented only if its count is still below the
limit, so concurrent callers cannot both take the last remaining slot.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional

from ingest_guard.config.loader import UNLIMITED, IngestConfig
from ingest_guard.storage.db import get_connection, write_transaction
from ingest_guard.storage.repository import get_user_plan

from .errors import ValidationError

logger = logging.getLogger(__name__)

# Share of the daily limit at which usage is reported as "warning"
WARNING_RATIO = 0.8


@dataclass(frozen=True)
class QuotaStatus:
    """Read-only view of a user's standing for one feature today."""
    allowed: bool
    current: int
    limit: int
    remaining: int
    plan_type: str

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED


@dataclass(frozen=True)
class Admission:
    """Outcome of an atomic check-and-increment."""
    admitted: bool
    new_count: int


@dataclass(frozen=True)
class UsageSummaryRow:
    day: str
    feature: str
    count: int
    limit: int
    status: str


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotaLedger:
    """Usage counters checked against plan limits.

    Args:
        db_path: Path to SQLite database file
        config: Engine configuration holding the plan limit table
        plans: Callable returning a user's stored plan, or None for the
            default plan. Defaults to the ``user_profile`` table.
        clock: Callable returning the current time, used for day keys
    """

    def __init__(
        self,
        db_path: str,
        config: IngestConfig,
        plans: Optional[Callable[[str], Optional[str]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_path = db_path
        self.config = config
        self._plans = plans or (lambda user_id: get_user_plan(user_id, db_path))
        self._clock = clock or utcnow

    def day_key(self, now: Optional[datetime] = None) -> str:
        """UTC calendar date used as the day component of counter keys."""
        moment = now or self._clock()
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc).date().isoformat()

    def plan_for(self, user_id: str) -> str:
        return self._plans(user_id) or self.config.quota.default_plan

    def limit_for(self, user_id: str, feature: str) -> int:
        """Daily limit for a user's plan.

        Raises:
            ValidationError: If the feature is not known to any plan
        """
        if feature not in self.config.features:
            raise ValidationError(f"Unknown feature: {feature}", details={"feature": feature})
        return self.config.get_limit(self.plan_for(user_id), feature)

    def current_count(self, user_id: str, feature: str, day: Optional[str] = None) -> int:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT count FROM usage_counter
                WHERE user_id = ? AND feature = ? AND day = ?
            """, (user_id, feature, day or self.day_key())).fetchone()
        finally:
            conn.close()
        return row[0] if row else 0

    def check(self, user_id: str, feature: str) -> QuotaStatus:
        """Report whether the user may use the feature today. Never mutates."""
        if not user_id:
            raise ValidationError("user_id is required")
        plan_type = self.plan_for(user_id)
        limit = self.limit_for(user_id, feature)
        current = self.current_count(user_id, feature)
        if limit == UNLIMITED:
            return QuotaStatus(allowed=True, current=current, limit=limit, remaining=UNLIMITED,
                               plan_type=plan_type)
        return QuotaStatus(
            allowed=current < limit,
            current=current,
            limit=limit,
            remaining=max(0, limit - current),
            plan_type=plan_type,
        )

    def increment_if_allowed(self, user_id: str, feature: str) -> Admission:
        """Atomically charge one use if the user is still below the limit.

        Unlimited plans are admitted without touching the counter. A limit
        of zero is denied without touching storage.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        limit = self.limit_for(user_id, feature)
        now = self._clock()
        day = self.day_key(now)

        if limit == UNLIMITED:
            return Admission(admitted=True, new_count=self.current_count(user_id, feature, day))
        if limit == 0:
            return Admission(admitted=False, new_count=0)

        with write_transaction(self.db_path) as conn:
            cursor = conn.execute("""
                INSERT INTO usage_counter (user_id, feature, day, count, updated_at)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(user_id, feature, day) DO UPDATE SET
                    count = usage_counter.count + 1,
                    updated_at = excluded.updated_at
                WHERE usage_counter.count < ?
            """, (user_id, feature, day, now.isoformat(), limit))
            admitted = cursor.rowcount == 1
            row = conn.execute("""
                SELECT count FROM usage_counter
                WHERE user_id = ? AND feature = ? AND day = ?
            """, (user_id, feature, day)).fetchone()

        new_count = row[0] if row else 0
        if admitted:
            logger.info("Charged %s for %s (%d/%d on %s)", user_id, feature, new_count, limit, day)
        else:
            logger.info("Refused %s for %s: limit %d reached on %s", user_id, feature, limit, day)
        return Admission(admitted=admitted, new_count=new_count)

    def usage_summary(self, user_id: str, days: int = 7) -> List[UsageSummaryRow]:
        """Per-day usage for the last ``days`` days, newest first.

        Limits are those of the user's current plan.
        """
        today = date.fromisoformat(self.day_key())
        cutoff = (today - timedelta(days=days - 1)).isoformat()
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT day, feature, count FROM usage_counter
                WHERE user_id = ? AND day >= ?
                ORDER BY day DESC, feature
            """, (user_id, cutoff)).fetchall()
        finally:
            conn.close()

        plan_type = self.plan_for(user_id)
        summary = []
        for day, feature, count in rows:
            limit = self.config.get_limit(plan_type, feature)
            summary.append(UsageSummaryRow(day=day, feature=feature, count=count, limit=limit,
                                           status=_usage_status(count, limit)))
        return summary


def _usage_status(count: int, limit: int) -> str:
    if limit == UNLIMITED:
        return "unlimited"
    if count >= limit:
        return "exceeded"
    if count >= limit * WARNING_RATIO:
        return "warning"
    return "normal"
