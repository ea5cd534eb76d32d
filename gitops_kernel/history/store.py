"""
Sync History Store — durable record of every SyncOperation.

Behavioral Contract:
- A SyncOperation is written when it starts and rewritten when it finishes
- A finished (terminal) operation is never modified again
- Queryable by environment, status and recency
"""

import logging
import sqlite3
import threading
from typing import List, Optional

from gitops_kernel.models.sync import SyncOperation, SyncStatus

logger = logging.getLogger(__name__)


class SyncHistoryStore:
    """
    SQLite-backed sync history. ``:memory:`` by default; pass a file path
    to keep history across restarts.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the history table if it doesn't exist."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_operations (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    environment TEXT NOT NULL,
                    revision TEXT NOT NULL,
                    policy TEXT NOT NULL,
                    sync_trigger TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    record_json TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_environment ON sync_operations(environment)
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_status ON sync_operations(status)
            """)
            self._conn.commit()

    def save(self, operation: SyncOperation) -> SyncOperation:
        """Insert a new operation or update a running one."""
        with self._lock:
            row = self._conn.execute(
                "SELECT status FROM sync_operations WHERE id = ?", (operation.id,)
            ).fetchone()
            values = (
                operation.environment,
                operation.revision,
                operation.policy.value,
                operation.trigger.value,
                operation.status.value,
                operation.started_at.isoformat(),
                operation.finished_at.isoformat() if operation.finished_at else None,
                operation.model_dump_json(),
            )
            if row is None:
                self._conn.execute(
                    """
                    INSERT INTO sync_operations (
                        environment, revision, policy, sync_trigger, status,
                        started_at, finished_at, record_json, id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values + (operation.id,),
                )
            elif row["status"] != SyncStatus.RUNNING.value:
                raise ValueError(f"Sync operation {operation.id} is already finalized")
            else:
                self._conn.execute(
                    """
                    UPDATE sync_operations SET
                        environment = ?, revision = ?, policy = ?, sync_trigger = ?,
                        status = ?, started_at = ?, finished_at = ?, record_json = ?
                    WHERE id = ?
                    """,
                    values + (operation.id,),
                )
            self._conn.commit()
        logger.debug("Saved %s (%s) for %s", operation.id, operation.status.value, operation.environment)
        return operation

    def _deserialize(self, row: sqlite3.Row) -> SyncOperation:
        return SyncOperation.model_validate_json(row["record_json"])

    def get(self, operation_id: str) -> Optional[SyncOperation]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM sync_operations WHERE id = ?", (operation_id,)
            ).fetchone()
        return self._deserialize(row) if row else None

    def query_by_environment(self, environment: str, limit: int = 50) -> List[SyncOperation]:
        """Most recent operations for one environment, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json FROM sync_operations WHERE environment = ? "
                "ORDER BY seq DESC LIMIT ?",
                (environment, limit),
            ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def query_by_status(self, status: SyncStatus) -> List[SyncOperation]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json FROM sync_operations WHERE status = ? ORDER BY seq",
                (status.value,),
            ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_recent(self, limit: int = 50) -> List[SyncOperation]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json FROM sync_operations ORDER BY seq DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def latest(self, environment: str) -> Optional[SyncOperation]:
        found = self.query_by_environment(environment, limit=1)
        return found[0] if found else None

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS cnt FROM sync_operations").fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
