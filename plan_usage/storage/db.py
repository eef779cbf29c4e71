"""
Database connection management.

Provides SQLite connections and write transactions for the quota and
usage tables.
"""

import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "plan_usage.db"

# Seconds a writer waits on a locked database before failing
BUSY_TIMEOUT = 10.0

sqlite3.register_adapter(Decimal, str)


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def write_transaction(db_path: str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Open a connection holding the database write lock until commit.

    ``BEGIN IMMEDIATE`` takes the reserved lock up front, so a
    read-then-write sequence inside the block cannot interleave with
    another writer.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
