"""
Workbook and table resources backed by SQL tables.

A workbook is a container of named, ordered tables. Each table resource maps
to a physical SQL table with a row ordinal and positional data columns; the
name, position and column layout live in a per-workbook catalog so that
renames and repositioning never touch the data itself.
"""

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence

from ingest_engine.errors import ResourceSystemError
from ingest_engine.ingestion.hasher import normalize_cell

logger = logging.getLogger(__name__)

CATALOG_TABLE = '_workbook_tables'
ROW_COLUMN = '_row'


def quote_identifier(name: str) -> str:
    """Quote an SQL identifier for both SQLite and Postgres."""
    return '"' + name.replace('"', '""') + '"'


def data_column(index: int) -> str:
    return f"c{index}"


def column_label(index: int) -> str:
    """Spreadsheet-style column letter for a 0-based column index."""
    label = ''
    index += 1
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        label = chr(ord('A') + remainder) + label
    return label


class SQLDialect:
    """Backend-specific SQL fragments; SQLite flavoured by default."""

    placeholder = '?'
    column_type = ''

    def __init__(self, schema: Optional[str] = None):
        self.schema = schema

    def qualify(self, name: str) -> str:
        if self.schema:
            return f"{quote_identifier(self.schema)}.{quote_identifier(name)}"
        return quote_identifier(name)

    def insert_many_sql(self, qualified: str, columns: Sequence[str]) -> str:
        column_sql = ', '.join(quote_identifier(c) for c in columns)
        values_sql = ', '.join([self.placeholder] * len(columns))
        return f"INSERT INTO {qualified} ({column_sql}) VALUES ({values_sql})"

    def to_storage(self, value: Any) -> Any:
        if isinstance(value, (bool, datetime, date)):
            return normalize_cell(value)
        if value is None or isinstance(value, (str, int, float, bytes)):
            return value
        if isinstance(value, Decimal):
            return float(value)
        return str(value)


class WorkbookStore(Protocol):
    """Opens workbooks by canonical resource id."""

    def exists(self, resource_id: str) -> bool:
        ...

    def open(self, resource_id: str, create: bool = False) -> 'SQLWorkbook':
        ...


class SQLTable:
    """A row/column addressable grid inside a workbook."""

    def __init__(self, workbook: 'SQLWorkbook', name: str, physical: str):
        self.workbook = workbook
        self.name = name
        self.physical = physical

    def __repr__(self) -> str:
        return f"SQLTable({self.workbook.resource_id!r}, {self.name!r})"

    @property
    def _qualified(self) -> str:
        return self.workbook.dialect.qualify(self.physical)

    def _catalog_row(self) -> dict:
        row = self.workbook._catalog_entry(self.name)
        if row is None or row['physical'] != self.physical:
            raise ResourceSystemError(f"Table '{self.name}' no longer exists")
        return row

    @property
    def position(self) -> int:
        return self._catalog_row()['position']

    @property
    def column_count(self) -> int:
        return self._catalog_row()['column_count']

    @property
    def row_count(self) -> int:
        result = self.workbook.db.execute_query(
            f"SELECT COUNT(*) AS n FROM {self._qualified}"
        )
        return int(result[0]['n']) if result else 0

    def get_values(self) -> List[List[Any]]:
        """Read the full used range."""
        return self.read_rows(0, None)

    def read_rows(self, start: int, count: Optional[int]) -> List[List[Any]]:
        """Read ``count`` rows starting at ``start`` (all remaining if None)."""
        columns = self.column_count
        ph = self.workbook.dialect.placeholder
        query = f"SELECT * FROM {self._qualified} WHERE {quote_identifier(ROW_COLUMN)} >= {ph}"
        params: list = [start]
        if count is not None:
            query += f" AND {quote_identifier(ROW_COLUMN)} < {ph}"
            params.append(start + count)
        query += f" ORDER BY {quote_identifier(ROW_COLUMN)}"

        rows = self.workbook.db.execute_query(query, tuple(params))
        return [[row.get(data_column(i)) for i in range(columns)] for row in rows]

    def read_row(self, index: int) -> Optional[List[Any]]:
        rows = self.read_rows(index, 1)
        return rows[0] if rows else None

    def append_rows(self, rows: Sequence[Sequence[Any]]) -> int:
        """Append rows after the last used row, widening the table if needed."""
        if not rows:
            return 0

        width = max(len(row) for row in rows)
        self.ensure_columns(width)
        width = max(width, self.column_count)

        start = self.row_count
        columns = [ROW_COLUMN] + [data_column(i) for i in range(width)]
        to_storage = self.workbook.dialect.to_storage

        data = []
        for offset, row in enumerate(rows):
            padded = list(row) + [None] * (width - len(row))
            data.append(tuple([start + offset] + [to_storage(v) for v in padded]))

        query = self.workbook.dialect.insert_many_sql(self._qualified, columns)
        self.workbook.db.execute_many(query, data)
        return len(data)

    def ensure_columns(self, count: int) -> None:
        """Grow the table to at least ``count`` data columns."""
        current = self.column_count
        if count <= current:
            return

        for index in range(current, count):
            self.workbook.db.execute_query(
                f"ALTER TABLE {self._qualified} ADD COLUMN "
                f"{quote_identifier(data_column(index))}{self.workbook.dialect.column_type}",
                fetch=False
            )
        self.workbook._update_catalog(self.name, column_count=count)

    def update_cells(self, row_index: int, values: Dict[int, Any]) -> None:
        """Overwrite individual cells of an existing row, keyed by column index."""
        if not values:
            return

        self.ensure_columns(max(values) + 1)
        ph = self.workbook.dialect.placeholder
        to_storage = self.workbook.dialect.to_storage
        assignments = ', '.join(f"{quote_identifier(data_column(col))} = {ph}" for col in values)
        params = tuple(to_storage(v) for v in values.values()) + (row_index,)
        self.workbook.db.execute_query(
            f"UPDATE {self._qualified} SET {assignments} WHERE {quote_identifier(ROW_COLUMN)} = {ph}",
            params,
            fetch=False
        )

    def delete_rows(self, start: int, count: int) -> None:
        """Delete a block of rows and close the gap."""
        if count <= 0:
            return

        ph = self.workbook.dialect.placeholder
        row_col = quote_identifier(ROW_COLUMN)
        self.workbook.db.execute_query(
            f"DELETE FROM {self._qualified} WHERE {row_col} >= {ph} AND {row_col} < {ph}",
            (start, start + count),
            fetch=False
        )
        self.workbook.db.execute_query(
            f"UPDATE {self._qualified} SET {row_col} = {row_col} - {ph} WHERE {row_col} >= {ph}",
            (count, start + count),
            fetch=False
        )

    def clear(self) -> None:
        """Wipe all content and column layout, keeping name and position."""
        self.workbook.db.execute_query(f"DROP TABLE IF EXISTS {self._qualified}", fetch=False)
        self.workbook._create_physical(self.physical, 0)
        self.workbook._update_catalog(self.name, column_count=0)


class SQLWorkbook:
    """A container of ordered table resources sharing one database manager."""

    def __init__(self, db, dialect: SQLDialect, resource_id: str):
        self.db = db
        self.dialect = dialect
        self.resource_id = resource_id
        self._ensure_catalog()

    def __repr__(self) -> str:
        return f"SQLWorkbook({self.resource_id!r})"

    @property
    def _catalog(self) -> str:
        return self.dialect.qualify(CATALOG_TABLE)

    def _ensure_catalog(self) -> None:
        self.db.execute_query(
            f"""
            CREATE TABLE IF NOT EXISTS {self._catalog} (
                name TEXT PRIMARY KEY,
                physical TEXT NOT NULL,
                position INTEGER NOT NULL,
                column_count INTEGER NOT NULL DEFAULT 0
            )
            """,
            fetch=False
        )

    def _catalog_entry(self, name: str) -> Optional[dict]:
        ph = self.dialect.placeholder
        rows = self.db.execute_query(
            f"SELECT name, physical, position, column_count FROM {self._catalog} WHERE name = {ph}",
            (name,)
        )
        return rows[0] if rows else None

    def _update_catalog(self, name: str, column_count: int) -> None:
        ph = self.dialect.placeholder
        self.db.execute_query(
            f"UPDATE {self._catalog} SET column_count = {ph} WHERE name = {ph}",
            (column_count, name),
            fetch=False
        )

    def _create_physical(self, physical: str, column_count: int) -> None:
        columns = [f"{quote_identifier(ROW_COLUMN)} INTEGER NOT NULL"]
        columns += [
            f"{quote_identifier(data_column(i))}{self.dialect.column_type}"
            for i in range(column_count)
        ]
        self.db.execute_query(
            f"CREATE TABLE {self.dialect.qualify(physical)} ({', '.join(columns)})",
            fetch=False
        )

    def table_names(self) -> List[str]:
        """Table names in workbook order."""
        rows = self.db.execute_query(f"SELECT name FROM {self._catalog} ORDER BY position")
        return [row['name'] for row in rows]

    def has_table(self, name: str) -> bool:
        return self._catalog_entry(name) is not None

    def get_table(self, name: str) -> Optional[SQLTable]:
        entry = self._catalog_entry(name)
        if entry is None:
            return None
        return SQLTable(self, entry['name'], entry['physical'])

    def create_table(self, name: str, position: Optional[int] = None, column_count: int = 0) -> SQLTable:
        """Create an empty table, at the end of the workbook unless a position is given."""
        if self.has_table(name):
            raise ResourceSystemError(f"Table '{name}' already exists in {self.resource_id}")

        ph = self.dialect.placeholder
        if position is None:
            rows = self.db.execute_query(f"SELECT COUNT(*) AS n FROM {self._catalog}")
            position = int(rows[0]['n']) if rows else 0
        else:
            self.db.execute_query(
                f"UPDATE {self._catalog} SET position = position + 1 WHERE position >= {ph}",
                (position,),
                fetch=False
            )

        physical = f"t_{uuid.uuid4().hex}"
        self._create_physical(physical, column_count)
        self.db.execute_query(
            f"INSERT INTO {self._catalog} (name, physical, position, column_count) "
            f"VALUES ({ph}, {ph}, {ph}, {ph})",
            (name, physical, position, column_count),
            fetch=False
        )
        logger.info(f"Created table '{name}' in workbook {self.resource_id} at position {position}")
        return SQLTable(self, name, physical)

    def delete_table(self, name: str) -> None:
        entry = self._catalog_entry(name)
        if entry is None:
            raise ResourceSystemError(f"Table '{name}' does not exist in {self.resource_id}")

        ph = self.dialect.placeholder
        self.db.execute_query(
            f"DROP TABLE IF EXISTS {self.dialect.qualify(entry['physical'])}", fetch=False
        )
        self.db.execute_query(f"DELETE FROM {self._catalog} WHERE name = {ph}", (name,), fetch=False)
        self.db.execute_query(
            f"UPDATE {self._catalog} SET position = position - 1 WHERE position > {ph}",
            (entry['position'],),
            fetch=False
        )
        logger.info(f"Deleted table '{name}' from workbook {self.resource_id}")

    def rename_table(self, old_name: str, new_name: str) -> SQLTable:
        if not self.has_table(old_name):
            raise ResourceSystemError(f"Table '{old_name}' does not exist in {self.resource_id}")
        if self.has_table(new_name):
            raise ResourceSystemError(f"Table '{new_name}' already exists in {self.resource_id}")

        ph = self.dialect.placeholder
        self.db.execute_query(
            f"UPDATE {self._catalog} SET name = {ph} WHERE name = {ph}",
            (new_name, old_name),
            fetch=False
        )
        return self.get_table(new_name)

    def copy_table(self, name: str, new_name: str, position: Optional[int] = None) -> SQLTable:
        """Duplicate a table, rows and column layout included."""
        source = self.get_table(name)
        if source is None:
            raise ResourceSystemError(f"Table '{name}' does not exist in {self.resource_id}")

        width = source.column_count
        copy = self.create_table(new_name, position=position, column_count=width)
        columns = ', '.join(
            quote_identifier(c) for c in [ROW_COLUMN] + [data_column(i) for i in range(width)]
        )
        self.db.execute_query(
            f"INSERT INTO {copy._qualified} ({columns}) SELECT {columns} FROM {source._qualified}",
            fetch=False
        )
        return copy

    def import_table(self, source: SQLTable, new_name: str, position: Optional[int] = None) -> SQLTable:
        """Copy a table from any workbook (possibly another backend) into this one."""
        width = source.column_count
        values = source.get_values()
        copy = self.create_table(new_name, position=position, column_count=width)
        copy.append_rows(values)
        return copy
