"""Shared database connection factory.

Provides a configured SQLite connection with Row factory. All consumers
should use this instead of inline sqlite3.connect() calls.

Usage:
    with get_connection(path) as conn:
        conn.execute("SELECT ...")
    # Connection is automatically committed and closed.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Union


@contextmanager
def get_connection(db_path: Union[str, Path]):
    """Get a configured SQLite connection as a context manager.

    Yields:
        sqlite3.Connection with row_factory=sqlite3.Row.
        Commits on clean exit, rolls back on exception, always closes.
    """
    path = str(db_path)
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 30000")
    if path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
