"""
Persistent progress and cancellation signals keyed by processing id.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from ingest_engine.database.sqlite_connection import SQLiteManager

logger = logging.getLogger(__name__)


class ProcessTracker:
    """Cross-invocation progress/cancellation store with TTL-based sweeping."""

    def __init__(self, db: SQLiteManager, clock: Callable[[], float] = time.time):
        self.db = db
        self.clock = clock
        self._ensure_table()

    @classmethod
    def from_path(cls, db_path: str) -> 'ProcessTracker':
        return cls(SQLiteManager(db_path))

    def _ensure_table(self) -> None:
        self.db.execute_query(
            """
            CREATE TABLE IF NOT EXISTS process_state (
                process_id TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                updated_at REAL NOT NULL
            )
            """,
            fetch=False
        )

    def get(self, process_id: str) -> Optional[Dict[str, Any]]:
        rows = self.db.execute_query(
            "SELECT payload FROM process_state WHERE process_id = ?", (process_id,)
        )
        return json.loads(rows[0]['payload']) if rows else None

    def _put(self, process_id: str, payload: Dict[str, Any]) -> None:
        self.db.execute_query(
            "INSERT OR REPLACE INTO process_state (process_id, payload, updated_at) VALUES (?, ?, ?)",
            (process_id, json.dumps(payload, default=str), self.clock()),
            fetch=False
        )

    def start(self, process_id: str, total: int = 0, description: str = '') -> None:
        """Register a new process, clearing any stale cancellation flag."""
        self._put(process_id, {
            'status': 'RUNNING',
            'total': total,
            'processed': 0,
            'description': description,
            'cancel_requested': False,
            'started_at': self.clock(),
        })

    def update(self, process_id: str, **fields) -> None:
        """Merge progress fields into the stored payload."""
        payload = self.get(process_id) or {}
        payload.update(fields)
        self._put(process_id, payload)

    def request_cancel(self, process_id: str) -> None:
        payload = self.get(process_id) or {}
        payload['cancel_requested'] = True
        self._put(process_id, payload)
        logger.info(f"Cancellation requested for process {process_id}")

    def is_cancelled(self, process_id: str) -> bool:
        payload = self.get(process_id)
        return bool(payload and payload.get('cancel_requested'))

    def finish(self, process_id: str, status: str = 'COMPLETE') -> None:
        self.update(process_id, status=status, finished_at=self.clock())

    def sweep_expired(self, ttl_seconds: float) -> int:
        """Delete entries not touched within ``ttl_seconds``."""
        cutoff = self.clock() - ttl_seconds
        deleted = self.db.execute_query(
            "DELETE FROM process_state WHERE updated_at < ?", (cutoff,), fetch=False
        )
        if deleted:
            logger.info(f"Swept {deleted} expired process entries")
        return deleted
