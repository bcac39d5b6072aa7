"""
Database connection management.

Opens the SQLite file behind the local backend. Every caller gets its own
short-lived connection; nothing is shared across threads.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "spend_reconciler.db"
BUSY_TIMEOUT_SECONDS = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open ``db_path``, creating its directory, with foreign keys enforced.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(db_path: str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Connection inside an explicit transaction.

    Commits when the block exits normally; rolls back and re-raises on
    sqlite3.Error. The connection is always closed.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        yield conn
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()
