"""
At-most-one-job-per-source locking.

A lock is an explicit keyed registry of in-flight jobs. Acquisition is
fail-fast: a second request for a busy key is refused immediately instead
of queuing behind the first. Entries are removed, never merely marked, on
every terminal transition.

Two backends:
- InMemoryProcessingLock: one process, one registry dict.
- SqliteProcessingLock: several processes sharing one database, using the
  same write-lock primitive as the quota ledger.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional

from ingest_guard.config.loader import IngestConfig, LockBackend
from ingest_guard.storage.db import get_connection, write_transaction
from ingest_guard.storage.models import ProcessingJob

from .errors import AlreadyProcessingError

logger = logging.getLogger(__name__)

INITIAL_STATE = "lock_acquiring"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingLock(ABC):
    """Registry of in-flight jobs keyed by source key."""

    @abstractmethod
    def acquire(self, source_key: str, owner: str) -> bool:
        """Register a job for the key iff none exists. Never waits."""

    @abstractmethod
    def release(self, source_key: str, owner: Optional[str] = None) -> bool:
        """Remove the job for the key. Returns True if an entry was removed.

        With ``owner`` given, only that owner's entry is removed.
        """

    @abstractmethod
    def set_state(self, source_key: str, state: str) -> None:
        """Record the current pipeline state on the job, if it exists."""

    @abstractmethod
    def get(self, source_key: str) -> Optional[ProcessingJob]:
        ...

    @abstractmethod
    def jobs(self) -> List[ProcessingJob]:
        ...

    def is_locked(self, source_key: str) -> bool:
        return self.get(source_key) is not None

    @contextmanager
    def hold(self, source_key: str, owner: str) -> Iterator[None]:
        """Hold the lock for the block, releasing on every exit path.

        Raises:
            AlreadyProcessingError: If another job holds the key
        """
        if not self.acquire(source_key, owner):
            raise AlreadyProcessingError(source_key)
        try:
            yield
        finally:
            self.release(source_key, owner)


class InMemoryProcessingLock(ProcessingLock):
    """Thread-safe in-process job registry.

    Sufficient for a single backend instance. Use SqliteProcessingLock
    when more than one process serves requests.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._jobs: Dict[str, ProcessingJob] = {}
        self._lock = threading.Lock()
        self._clock = clock or _utcnow

    def acquire(self, source_key: str, owner: str) -> bool:
        with self._lock:
            if source_key in self._jobs:
                logger.info("Lock busy for %s (held by %s)", source_key, self._jobs[source_key].owner)
                return False
            self._jobs[source_key] = ProcessingJob(
                source_key=source_key, owner=owner, state=INITIAL_STATE, started_at=self._clock()
            )
        logger.debug("Lock acquired for %s by %s", source_key, owner)
        return True

    def release(self, source_key: str, owner: Optional[str] = None) -> bool:
        with self._lock:
            job = self._jobs.get(source_key)
            if job is None or (owner is not None and job.owner != owner):
                return False
            del self._jobs[source_key]
        logger.debug("Lock released for %s", source_key)
        return True

    def set_state(self, source_key: str, state: str) -> None:
        with self._lock:
            job = self._jobs.get(source_key)
            if job is not None:
                self._jobs[source_key] = ProcessingJob(
                    source_key=job.source_key, owner=job.owner, state=state, started_at=job.started_at
                )

    def get(self, source_key: str) -> Optional[ProcessingJob]:
        with self._lock:
            return self._jobs.get(source_key)

    def jobs(self) -> List[ProcessingJob]:
        with self._lock:
            return list(self._jobs.values())


class SqliteProcessingLock(ProcessingLock):
    """Job registry in the ``processing_job`` table.

    A job row older than ``stale_after_seconds`` belongs to a process that
    died without running its cleanup; ``acquire`` reclaims it in the same
    transaction that inserts the new row.
    """

    def __init__(
        self,
        db_path: str,
        stale_after_seconds: float = 900.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_path = db_path
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self._clock = clock or _utcnow

    def acquire(self, source_key: str, owner: str) -> bool:
        now = self._clock()
        with write_transaction(self.db_path) as conn:
            reclaimed = conn.execute("""
                DELETE FROM processing_job
                WHERE source_key = ? AND started_at < ?
            """, (source_key, (now - self.stale_after).isoformat())).rowcount
            cursor = conn.execute("""
                INSERT OR IGNORE INTO processing_job (source_key, owner, state, started_at)
                VALUES (?, ?, ?, ?)
            """, (source_key, owner, INITIAL_STATE, now.isoformat()))
            granted = cursor.rowcount == 1
        if reclaimed:
            logger.warning("Reclaimed stale lock for %s", source_key)
        if granted:
            logger.debug("Lock acquired for %s by %s", source_key, owner)
        else:
            logger.info("Lock busy for %s", source_key)
        return granted

    def release(self, source_key: str, owner: Optional[str] = None) -> bool:
        with write_transaction(self.db_path) as conn:
            if owner is None:
                cursor = conn.execute("DELETE FROM processing_job WHERE source_key = ?", (source_key,))
            else:
                cursor = conn.execute(
                    "DELETE FROM processing_job WHERE source_key = ? AND owner = ?", (source_key, owner)
                )
            removed = cursor.rowcount == 1
        if removed:
            logger.debug("Lock released for %s", source_key)
        return removed

    def set_state(self, source_key: str, state: str) -> None:
        with write_transaction(self.db_path) as conn:
            conn.execute("UPDATE processing_job SET state = ? WHERE source_key = ?", (state, source_key))

    def get(self, source_key: str) -> Optional[ProcessingJob]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT source_key, owner, state, started_at FROM processing_job
                WHERE source_key = ?
            """, (source_key,)).fetchone()
        finally:
            conn.close()
        return _row_to_job(row) if row else None

    def jobs(self) -> List[ProcessingJob]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT source_key, owner, state, started_at FROM processing_job
                ORDER BY started_at
            """).fetchall()
        finally:
            conn.close()
        return [_row_to_job(row) for row in rows]


def _row_to_job(row) -> ProcessingJob:
    return ProcessingJob(
        source_key=row[0],
        owner=row[1],
        state=row[2],
        started_at=datetime.fromisoformat(row[3]),
    )


def create_lock(config: IngestConfig, clock: Optional[Callable[[], datetime]] = None) -> ProcessingLock:
    """Build the lock backend named by ``processing.lock_backend``."""
    if config.processing.lock_backend is LockBackend.SQLITE:
        return SqliteProcessingLock(
            config.database.path,
            stale_after_seconds=config.processing.lock_stale_after_seconds,
            clock=clock,
        )
    return InMemoryProcessingLock(clock=clock)
