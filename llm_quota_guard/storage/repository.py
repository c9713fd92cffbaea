"""
Key/value persistence.

The ledger and the user's quota policy are stored as JSON documents under
fixed keys. Stores expose only ``async get`` and ``async set``; the SQLite
store runs its blocking calls in a worker thread.
"""

import asyncio
import copy
import json
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from .db import DEFAULT_DB_PATH, get_connection


class KeyValueStore(Protocol):
    """Minimal async storage interface."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...


class MemoryKeyValueStore:
    """In-process store. Values are deep-copied in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def __contains__(self, key: str) -> bool:
        return key in self._data


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the kv_store table if it doesn't exist.
    
    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


def read_value(key: str, db_path: str = DEFAULT_DB_PATH) -> Optional[Any]:
    """Read and decode one JSON value, or None if the key is absent."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
        row = cursor.fetchone()
        return json.loads(row[0]) if row else None
    finally:
        conn.close()


def write_value(key: str, value: Any, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert or replace one JSON value in a single transaction.
    
    Args:
        key: Storage key
        value: JSON-serializable value
        db_path: Path to SQLite database file
    """
    payload = json.dumps(value)
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """, (key, payload, datetime.now().isoformat()))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


class SQLiteKeyValueStore:
    """Persistent store backed by one SQLite table."""
    
    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store and make sure its table exists.
        
        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        initialize_schema(db_path)
    
    async def get(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(read_value, key, self.db_path)
    
    async def set(self, key: str, value: Any) -> None:
        await asyncio.to_thread(write_value, key, value, self.db_path)
