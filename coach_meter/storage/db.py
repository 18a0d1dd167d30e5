"""
Database connection management.

Provides SQLite connection for data persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "coach_meter.db"
DEFAULT_TIMEOUT_SECONDS = 30.0

# Each operation opens its own connection, so a private in-memory database
# would vanish between calls
IN_MEMORY_PATHS = (":memory:", "")


def check_db_path(db_path: str) -> str:
    """Return db_path, rejecting paths that SQLite opens as in-memory databases.

    Raises:
        ValueError: If db_path is ":memory:" or empty
    """
    if str(db_path).strip() in IN_MEMORY_PATHS:
        raise ValueError(f"db_path must be a file path, got {db_path!r}")
    return db_path


def get_connection(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS
) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Concurrent writers wait on the database lock for up to ``timeout``
    seconds before failing with ``sqlite3.OperationalError``.

    Args:
        db_path: Path to SQLite database file
        timeout: Busy timeout in seconds

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
