"""
Database connection management.

Provides SQLite connections for the ledger, lock, cache and record tables.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "ingest_guard.db"

# Seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode so callers control transactions
    explicitly with ``BEGIN IMMEDIATE`` (see :func:`write_transaction`).

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def write_transaction(db_path: str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Open a connection holding the database write lock for the block.

    ``BEGIN IMMEDIATE`` takes the reserved lock up front, so every statement
    inside the block is serialized against other writers, across threads and
    processes. Commits on success, rolls back on any exception.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()
