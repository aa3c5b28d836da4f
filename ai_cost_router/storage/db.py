"""
Database connection management.

Provides SQLite connection for usage persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_cost_router.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    The connection runs in autocommit mode so callers open their own
    transactions with an explicit BEGIN.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), isolation_level=None, timeout=30)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
