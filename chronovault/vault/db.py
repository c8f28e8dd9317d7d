"""
vault/db.py

Owner-keyed durable store (the only writer of durable state).

Semantics:
- get(owner, field) -> JSON value or None
- put(owner, field, value) is last-writer-wins per (owner, field)
- delete(owner, field) is idempotent
- No cross-field transactions. Callers tolerate partial updates.
- Any backend failure surfaces as PersistenceFailure (retryable).

Storage:
- SQLite at CHRONOVAULT_DB_PATH, table owner_fields (CREATE TABLE IF NOT EXISTS).
- MemoryOwnerStore keeps the same JSON round trip for tests and local runs.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable

from .errors import PersistenceFailure

logger = logging.getLogger(__name__)

# Field names used by the core
FIELD_ACTIVITIES = "activities"
FIELD_HEIRS = "heirs"
FIELD_RIDDLE = "riddle"
FIELD_LIVENESS = "liveness"
FIELD_POLICY = "policy"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@runtime_checkable
class OwnerStore(Protocol):
    """Persistence adapter interface, parameterized per owner key."""

    def get(self, owner: str, field: str) -> Optional[Any]:
        ...

    def put(self, owner: str, field: str, value: Any) -> None:
        ...

    def delete(self, owner: str, field: str) -> None:
        ...


# ----------------------------
# SQLite backend
# ----------------------------

def connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=5.0)
    conn.row_factory = sqlite3.Row
    ensure_schema(conn)
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create the owner field table if missing (non-destructive)."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS owner_fields (
            owner_key TEXT NOT NULL,
            field TEXT NOT NULL,
            value_json TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (owner_key, field)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_owner_fields_updated_at ON owner_fields (updated_at)")
    conn.commit()


class SqliteOwnerStore:
    """
    One short-lived connection per call; the write is committed before put() returns.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        # Fail fast on an unusable path
        self._run(lambda conn: None)

    def _run(self, fn: Any) -> Any:
        try:
            conn = connect(self.db_path)
        except sqlite3.Error as exc:
            logger.error("Owner store unavailable at %s: %s", self.db_path, exc)
            raise PersistenceFailure(f"Owner store unavailable: {exc}") from exc
        try:
            return fn(conn)
        except sqlite3.Error as exc:
            logger.error("Owner store operation failed: %s", exc)
            raise PersistenceFailure(f"Owner store operation failed: {exc}") from exc
        finally:
            conn.close()

    def get(self, owner: str, field: str) -> Optional[Any]:
        row = self._run(
            lambda conn: conn.execute(
                "SELECT value_json FROM owner_fields WHERE owner_key = ? AND field = ? LIMIT 1",
                (owner, field),
            ).fetchone()
        )
        if not row:
            return None
        try:
            return json.loads(row["value_json"])
        except json.JSONDecodeError as exc:
            raise PersistenceFailure(f"Stored value for {field!r} is not valid JSON") from exc

    def put(self, owner: str, field: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)

        def _write(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO owner_fields (owner_key, field, value_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (owner_key, field)
                DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at
                """,
                (owner, field, payload, utc_now_iso()),
            )
            conn.commit()

        self._run(_write)

    def delete(self, owner: str, field: str) -> None:
        def _delete(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM owner_fields WHERE owner_key = ? AND field = ?", (owner, field))
            conn.commit()

        self._run(_delete)


# ----------------------------
# In-memory backend
# ----------------------------

class MemoryOwnerStore:
    """
    Process-local store. Values are kept as JSON text so callers never share
    mutable objects with the store, the same as with SQLite.
    """

    def __init__(self) -> None:
        self._data: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def get(self, owner: str, field: str) -> Optional[Any]:
        with self._lock:
            raw = self._data.get((owner, field))
        return json.loads(raw) if raw is not None else None

    def put(self, owner: str, field: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        with self._lock:
            self._data[(owner, field)] = payload

    def delete(self, owner: str, field: str) -> None:
        with self._lock:
            self._data.pop((owner, field), None)
