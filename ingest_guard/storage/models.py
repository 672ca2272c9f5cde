"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class UsageCounter:
    """Per-user, per-feature, per-day usage count.

    The day is part of the key, so a new day starts from a fresh row
    instead of needing a reset job.
    """
    user_id: str
    feature: str
    day: str
    count: int


@dataclass(frozen=True)
class ProcessingJob:
    """An in-flight job holding the lock for one source key."""
    source_key: str
    owner: str
    state: str
    started_at: datetime


@dataclass(frozen=True)
class CacheEntry:
    """Previously computed result for a normalized source key."""
    source_key: str
    result_payload: Dict[str, Any]
    record_id: str
    computed_at: datetime


@dataclass(frozen=True)
class ProcessedRecord:
    """Durable result of one successful ingestion."""
    record_id: str
    user_id: str
    source_key: str
    source_ref: str
    kind: str
    payload: Dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class ErrorLogEntry:
    """Audit entry for a failed request."""
    code: str
    message: str
    created_at: datetime
    user_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
