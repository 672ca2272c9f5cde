"""
Repository pattern for data access.

Handles schema creation, processed-record persistence, user plans
and the error log.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection, write_transaction
from .models import ErrorLogEntry, ProcessedRecord


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS usage_counter (
        user_id TEXT NOT NULL,
        feature TEXT NOT NULL,
        day TEXT NOT NULL,
        count INTEGER NOT NULL DEFAULT 0 CHECK (count >= 0),
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, feature, day)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_profile (
        user_id TEXT PRIMARY KEY,
        plan_type TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processing_job (
        source_key TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        state TEXT NOT NULL,
        started_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS content_cache (
        source_key TEXT PRIMARY KEY,
        result_payload TEXT NOT NULL,
        record_id TEXT NOT NULL,
        computed_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_record (
        record_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        source_key TEXT NOT NULL,
        source_ref TEXT NOT NULL,
        kind TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS error_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT,
        code TEXT NOT NULL,
        message TEXT NOT NULL,
        details TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_counter_day ON usage_counter(day)",
    "CREATE INDEX IF NOT EXISTS idx_processed_record_user ON processed_record(user_id, created_at)",
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    with write_transaction(db_path) as conn:
        for statement in SCHEMA:
            conn.execute(statement)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordRepository:
    """Repository for processed ingestion records.

    Records are what ``record_id`` in a processing result points to.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def save_record(self, record: ProcessedRecord) -> None:
        """Insert a processed record.

        Raises:
            sqlite3.Error: On any storage failure (including a duplicate id)
        """
        with write_transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO processed_record
                (record_id, user_id, source_key, source_ref, kind, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                record.record_id,
                record.user_id,
                record.source_key,
                record.source_ref,
                record.kind,
                json.dumps(record.payload),
                record.created_at.isoformat(),
            ))

    def get_record(self, record_id: str) -> Optional[ProcessedRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT record_id, user_id, source_key, source_ref, kind, payload, created_at
                FROM processed_record WHERE record_id = ?
            """, (record_id,)).fetchone()
        finally:
            conn.close()
        return _row_to_record(row) if row else None

    def delete_record(self, record_id: str) -> bool:
        """Remove a record. Returns True if a row was deleted."""
        with write_transaction(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM processed_record WHERE record_id = ?", (record_id,)
            )
            return cursor.rowcount == 1

    def fetch_records_for_user(self, user_id: str, limit: int = 50) -> List[ProcessedRecord]:
        """Most recent records for a user, newest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT record_id, user_id, source_key, source_ref, kind, payload, created_at
                FROM processed_record
                WHERE user_id = ?
                ORDER BY created_at DESC LIMIT ?
            """, (user_id, limit)).fetchall()
        finally:
            conn.close()
        return [_row_to_record(row) for row in rows]


def _row_to_record(row) -> ProcessedRecord:
    return ProcessedRecord(
        record_id=row[0],
        user_id=row[1],
        source_key=row[2],
        source_ref=row[3],
        kind=row[4],
        payload=json.loads(row[5]),
        created_at=datetime.fromisoformat(row[6]),
    )


def set_user_plan(user_id: str, plan_type: str, db_path: str = DEFAULT_DB_PATH) -> None:
    """Set (or replace) the plan a user is on."""
    with write_transaction(db_path) as conn:
        conn.execute("""
            INSERT INTO user_profile (user_id, plan_type, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                plan_type = excluded.plan_type,
                updated_at = excluded.updated_at
        """, (user_id, plan_type, _utcnow().isoformat()))


def get_user_plan(user_id: str, db_path: str = DEFAULT_DB_PATH) -> Optional[str]:
    """Return the stored plan for a user, or None if the user has no profile."""
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT plan_type FROM user_profile WHERE user_id = ?", (user_id,)
        ).fetchone()
    finally:
        conn.close()
    return row[0] if row else None


def log_error(
    code: str,
    message: str,
    user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    db_path: str = DEFAULT_DB_PATH,
) -> int:
    """Append an entry to the error log and return its id."""
    with write_transaction(db_path) as conn:
        cursor = conn.execute("""
            INSERT INTO error_log (user_id, code, message, details, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (
            user_id,
            code,
            message,
            json.dumps(details or {}, default=str),
            _utcnow().isoformat(),
        ))
        return cursor.lastrowid


def fetch_error_log(
    user_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[ErrorLogEntry]:
    """Fetch error log entries, newest first, optionally for one user."""
    conn = get_connection(db_path)
    try:
        query = "SELECT id, user_id, code, message, details, created_at FROM error_log"
        params: List[Any] = []
        if user_id:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()
    return [
        ErrorLogEntry(
            id=row[0],
            user_id=row[1],
            code=row[2],
            message=row[3],
            details=json.loads(row[4]) if row[4] else {},
            created_at=datetime.fromisoformat(row[5]),
        )
        for row in rows
    ]
