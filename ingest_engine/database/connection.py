"""
Postgres-backed workbooks: one schema per workbook resource, sharing a pooled connection.
"""

import os
import logging
from typing import Optional, Sequence
from psycopg2 import pool
from psycopg2.extras import execute_values
from dotenv import load_dotenv

from ingest_engine.database.workbook import SQLDialect, SQLWorkbook, quote_identifier
from ingest_engine.errors import SourceNotFound
from ingest_engine.ingestion.hasher import normalize_cell

load_dotenv()

logger = logging.getLogger(__name__)

SCHEMA_PREFIX = 'wb_'


class DatabaseManager:
    """Manages database connections with connection pooling."""

    def __init__(self, database_url: str = None):
        self.connection_pool: Optional[pool.ThreadedConnectionPool] = None
        self.database_url = database_url or os.getenv('DATABASE_URL')
        if not self.database_url:
            raise ValueError("DATABASE_URL environment variable is required")

    def initialize_pool(self, min_connections: int = 1, max_connections: int = 10) -> None:
        """Initialize the connection pool."""
        try:
            self.connection_pool = pool.ThreadedConnectionPool(
                minconn=min_connections,
                maxconn=max_connections,
                dsn=self.database_url
            )
            logger.info(f"Database connection pool initialized: {min_connections}-{max_connections} connections")
        except Exception as e:
            logger.error(f"Failed to initialize database connection pool: {e}")
            raise

    def get_connection(self):
        """Get a connection from the pool."""
        if not self.connection_pool:
            self.initialize_pool()

        try:
            return self.connection_pool.getconn()
        except Exception as e:
            logger.error(f"Failed to get database connection: {e}")
            raise

    def return_connection(self, connection) -> None:
        """Return a connection to the pool."""
        if self.connection_pool and connection:
            try:
                self.connection_pool.putconn(connection)
            except Exception as e:
                logger.error(f"Failed to return connection to pool: {e}")

    def execute_query(self, query: str, params: Optional[tuple] = None, fetch: bool = True):
        """Execute a query with automatic connection management."""
        connection = None
        try:
            connection = self.get_connection()
            with connection.cursor() as cursor:
                cursor.execute(query, params)

                if fetch:
                    results = []
                    if cursor.description:
                        columns = [desc[0] for desc in cursor.description]
                        results = [dict(zip(columns, row)) for row in cursor.fetchall()]
                    connection.commit()
                    return results
                else:
                    connection.commit()
                    return cursor.rowcount

        except Exception as e:
            if connection:
                connection.rollback()
            logger.error(f"Database query failed: {e}")
            raise
        finally:
            if connection:
                self.return_connection(connection)

    def execute_many(self, query: str, data: list) -> int:
        """Execute a query with multiple rows of data."""
        connection = None
        try:
            connection = self.get_connection()
            with connection.cursor() as cursor:
                execute_values(cursor, query, data)
                connection.commit()
                return cursor.rowcount

        except Exception as e:
            if connection:
                connection.rollback()
            logger.error(f"Batch database operation failed: {e}")
            raise
        finally:
            if connection:
                self.return_connection(connection)


class PostgresDialect(SQLDialect):
    """Schema-qualified, text-typed columns with batched VALUES inserts."""

    placeholder = '%s'
    column_type = ' TEXT'

    def insert_many_sql(self, qualified: str, columns: Sequence[str]) -> str:
        column_sql = ', '.join(quote_identifier(c) for c in columns)
        return f"INSERT INTO {qualified} ({column_sql}) VALUES %s"

    def to_storage(self, value):
        if value is None:
            return None
        return normalize_cell(value)


class PostgresWorkbookStore:
    """Maps resource ids to ``wb_<resource_id>`` schemas in one database."""

    def __init__(self, db: DatabaseManager = None):
        self.db = db or DatabaseManager()

    def _schema(self, resource_id: str) -> str:
        return f"{SCHEMA_PREFIX}{resource_id}"

    def exists(self, resource_id: str) -> bool:
        rows = self.db.execute_query(
            "SELECT 1 AS found FROM information_schema.schemata WHERE schema_name = %s",
            (self._schema(resource_id),)
        )
        return bool(rows)

    def open(self, resource_id: str, create: bool = False) -> SQLWorkbook:
        """Open a workbook schema, creating it only when ``create`` is set."""
        schema = self._schema(resource_id)
        if not self.exists(resource_id):
            if not create:
                raise SourceNotFound(f"Workbook not found: {resource_id}")
            self.db.execute_query(
                f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(schema)}", fetch=False
            )
            logger.info(f"Created workbook schema {schema}")

        return SQLWorkbook(self.db, PostgresDialect(schema), resource_id)
