"""
SQLite-backed workbooks: one database file per workbook resource.
"""

import os
import logging
import sqlite3
from typing import List, Dict, Any, Optional
from contextlib import contextmanager
from dotenv import load_dotenv

from ingest_engine.database.workbook import SQLDialect, SQLWorkbook
from ingest_engine.errors import SourceNotFound

load_dotenv()

logger = logging.getLogger(__name__)


class SQLiteManager:
    """SQLite database manager for a single database file."""

    def __init__(self, db_path: str = None, timeout: float = 30.0):
        self.db_path = db_path or os.getenv('SQLITE_DB_PATH', 'data/ingest.db')
        self.timeout = timeout
        self._ensure_db_directory()

    def _ensure_db_directory(self):
        """Ensure the database directory exists."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    @contextmanager
    def get_connection(self):
        """Get a database connection."""
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
            conn.row_factory = sqlite3.Row  # Enable dictionary-like access
            yield conn
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error(f"Database error on {self.db_path}: {e}")
            raise
        finally:
            if conn:
                conn.close()

    def execute_query(self, query: str, params: Optional[tuple] = None, fetch: bool = True) -> List[Dict[str, Any]]:
        """Execute a query and return results."""
        with self.get_connection() as conn:
            cursor = conn.cursor()

            if params:
                cursor.execute(query, params)
            else:
                cursor.execute(query)

            if fetch:
                rows = cursor.fetchall()
                return [dict(row) for row in rows]
            else:
                conn.commit()
                return cursor.rowcount

    def execute_many(self, query: str, data: List[tuple]) -> int:
        """Execute a query with multiple rows of data."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.executemany(query, data)
            conn.commit()
            return cursor.rowcount


class SQLiteWorkbookStore:
    """Maps resource ids to ``<directory>/<resource_id>.db`` workbooks."""

    def __init__(self, directory: str = None):
        self.directory = directory or os.getenv('WORKBOOK_DIR', 'data/workbooks')
        os.makedirs(self.directory, exist_ok=True)

    def _path(self, resource_id: str) -> str:
        return os.path.join(self.directory, f"{resource_id}.db")

    def exists(self, resource_id: str) -> bool:
        return os.path.exists(self._path(resource_id))

    def open(self, resource_id: str, create: bool = False) -> SQLWorkbook:
        """Open a workbook, creating the file only when ``create`` is set."""
        if not create and not self.exists(resource_id):
            raise SourceNotFound(f"Workbook not found: {resource_id}")

        manager = SQLiteManager(self._path(resource_id))
        return SQLWorkbook(manager, SQLDialect(), resource_id)
