"""
Database connection management.

Provides SQLite connections and the timestamp format used by every table.
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

DEFAULT_DB_PATH = "cloud_quota.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, the convention of all stored dates."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_db_timestamp(moment: Optional[datetime]) -> Optional[str]:
    """Format a datetime so that stored timestamps sort chronologically."""
    if moment is None:
        return None
    return moment.isoformat(sep=" ", timespec="milliseconds")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)
