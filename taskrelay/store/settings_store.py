"""
Settings Store — persistent key-value settings plus a bounded log list.

Behavioral Contract:
- Last write wins; no transactional guarantees beyond a single call
- Values are stored as JSON and returned as plain Python values
- The log list keeps only the newest `retention` entries
"""

import json
import sqlite3
from typing import Any, Dict, List, Optional


class SettingsStore:
    """
    SQLite-backed settings and log store.
    Defaults to an in-memory database.
    """

    def __init__(self, db_path: str = ":memory:", retention: int = 100):
        self.db_path = db_path
        self.retention = retention
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the tables if they don't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entry TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        self._conn.commit()

    # --- Settings ---

    def get(self, key: str, default: Any = None) -> Any:
        row = self._conn.execute(
            "SELECT value_json FROM settings WHERE key = ?", (key,)
        ).fetchone()
        return json.loads(row["value_json"]) if row else default

    def set(self, key: str, value: Any) -> None:
        self.update({key: value})

    def update(self, values: Dict[str, Any]) -> None:
        """Write several keys in one commit."""
        self._conn.executemany(
            """
            INSERT INTO settings (key, value_json) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value_json = excluded.value_json,
                updated_at = datetime('now')
            """,
            [(k, json.dumps(v, default=str)) for k, v in values.items()],
        )
        self._conn.commit()

    def all(self) -> Dict[str, Any]:
        rows = self._conn.execute(
            "SELECT key, value_json FROM settings ORDER BY key"
        ).fetchall()
        return {r["key"]: json.loads(r["value_json"]) for r in rows}

    # --- Logs ---

    def append_log(self, entry: str) -> None:
        """Append a log entry and evict the oldest beyond retention."""
        self._conn.execute("INSERT INTO logs (entry) VALUES (?)", (entry,))
        self._conn.execute(
            """
            DELETE FROM logs WHERE id NOT IN (
                SELECT id FROM logs ORDER BY id DESC LIMIT ?
            )
            """,
            (self.retention,),
        )
        self._conn.commit()

    def logs(self, limit: Optional[int] = None) -> List[str]:
        """Log entries, oldest first. `limit` keeps only the newest N."""
        if limit is None:
            limit = self.retention
        rows = self._conn.execute(
            "SELECT entry FROM logs ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [r["entry"] for r in reversed(rows)]

    def clear_logs(self) -> None:
        self._conn.execute("DELETE FROM logs")
        self._conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
