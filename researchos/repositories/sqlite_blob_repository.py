# Rev 0.1.0

# researchos – SQLiteBlobRepository (Rev 0.1.0)
# Whole-document storage for demo mode: tree, today, notifications, dismissed.

from __future__ import annotations
import json
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Optional, Union

TREE = "tree"
TODAY = "today"
NOTIFICATIONS = "notifications"
DISMISSED = "dismissed"

BLOB_KEYS = (TREE, TODAY, NOTIFICATIONS, DISMISSED)


class SQLiteBlobRepository:
    """
    One JSON payload per (user_id, key). Every write replaces the whole
    document inside a single transaction, so readers never see half a blob.

    Pool workers share one connection; ``_lock`` keeps their transactions
    from interleaving.
    """

    def __init__(self, db_or_conn: Union[sqlite3.Connection, Any]):
        self._db_or_conn = db_or_conn
        self._lock = threading.Lock()

    def _conn(self) -> sqlite3.Connection:
        if isinstance(self._db_or_conn, sqlite3.Connection):
            return self._db_or_conn
        if hasattr(self._db_or_conn, "conn") and isinstance(self._db_or_conn.conn, sqlite3.Connection):
            return self._db_or_conn.conn
        raise RuntimeError(
            "SQLiteBlobRepository: could not obtain sqlite3.Connection "
            "(expected .conn on wrapper, or a raw Connection)."
        )

    def get(self, user_id: str, key: str) -> Optional[Any]:
        with self._lock:
            row = self._conn().execute(
                "SELECT payload FROM blobs WHERE user_id = ? AND key = ?",
                (user_id, key),
            ).fetchone()
        return json.loads(row[0]) if row else None

    def put(self, user_id: str, key: str, value: Any) -> None:
        if key not in BLOB_KEYS:
            raise ValueError(f"unknown blob key {key!r}")
        payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        with self._lock:
            con = self._conn()
            con.execute("BEGIN;")
            try:
                con.execute(
                    """
                    INSERT INTO blobs(user_id, key, payload, updated_at_utc)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id, key) DO UPDATE SET
                        payload = excluded.payload,
                        updated_at_utc = excluded.updated_at_utc
                    """,
                    (user_id, key, payload, datetime.now(timezone.utc).isoformat()),
                )
            except Exception:
                con.execute("ROLLBACK;")
                raise
            con.execute("COMMIT;")

    def delete(self, user_id: str, key: str) -> None:
        with self._lock:
            self._conn().execute("DELETE FROM blobs WHERE user_id = ? AND key = ?", (user_id, key))
