"""
Database connection management.

Provides the SQLite connection behind the persistent key/value store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = ".llm-quota-guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.
    
    Parent directories are created on demand so a fresh install can point
    at e.g. ``~/.config/llm-quota-guard/state.db``.
    
    Args:
        db_path: Path to SQLite database file
        
    Returns:
        SQLite connection with a busy timeout for concurrent CLI invocations
    """
    path = Path(db_path).expanduser()
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=5.0)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
