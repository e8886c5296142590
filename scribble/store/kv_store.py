"""Durable SQLite key/value store for local state and sync bookkeeping."""

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SCHEMA = """
-- JSON-encoded values keyed by name
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT
);
"""

_MISSING = object()


class KeyValueStore:
    """SQLite-backed get/set-by-key store.

    Values are stored JSON-encoded. ``compare_and_set`` runs inside a
    single immediate transaction, so it is atomic across processes that
    share the same database file.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self._in_memory = str(db_path) == ":memory:"
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if self._in_memory:
            target = ":memory:"
        else:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(self.db_path)

        # Autocommit; transactions are opened explicitly where needed
        self._conn = sqlite3.connect(
            target, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)

        logger.debug(f"KeyValueStore connected to {target}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def _decode(self, key: str, raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring corrupt value stored under {key!r}")
            return _MISSING

    def get(self, key: str, default: Any = None) -> Any:
        """Get the decoded value for a key.

        Args:
            key: Key to look up.
            default: Returned when the key is absent or unreadable.
        """
        conn = self._ensure_connected()
        row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        value = self._decode(key, row["value"])
        return default if value is _MISSING else value

    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value under a key."""
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, json.dumps(value), datetime.now().isoformat()),
        )

    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        conn = self._ensure_connected()
        cursor = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def compare_and_set(self, key: str, expected: Any, value: Any) -> bool:
        """Atomically replace a value if it still equals ``expected``.

        Args:
            key: Key to update.
            expected: Value the caller last observed; None means absent.
            value: New value to store.

        Returns:
            True if the swap happened.
        """
        conn = self._ensure_connected()
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute(
                "SELECT value FROM kv WHERE key = ?", (key,)
            ).fetchone()
            current = None
            if row is not None:
                current = self._decode(key, row["value"])
                if current is _MISSING:
                    current = None

            if current != expected:
                conn.execute("ROLLBACK")
                return False

            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), datetime.now().isoformat()),
            )
            conn.execute("COMMIT")
            return True
        except Exception:
            conn.execute("ROLLBACK")
            raise

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        conn = self._ensure_connected()

        stats: dict[str, Any] = {
            "db_path": ":memory:" if self._in_memory else str(self.db_path),
            "key_count": conn.execute("SELECT COUNT(*) FROM kv").fetchone()[0],
        }

        if not self._in_memory and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
