"""
Rule table access: header-name column mapping, rule parsing and status write-back.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from ingest_engine.database.workbook import SQLWorkbook
from ingest_engine.errors import SourceNotFound, ValidationError
from ingest_engine.ingestion.models import IngestRule

logger = logging.getLogger(__name__)

RULE_COLUMNS = {
    'id': 'Rule ID',
    'active': 'Active',
    'method': 'Method',
    'query': 'Search Query',
    'attachment_pattern': 'Attachment Pattern',
    'source_id': 'Source ID',
    'source_table': 'Source Table',
    'dest_id': 'Destination ID',
    'dest_table': 'Destination Table',
    'mode': 'Write Mode',
    'recipients': 'Notify',
    'require_data': 'Require Data',
    'last_run': 'Last Run',
    'last_result': 'Last Result',
    'last_message': 'Last Message',
}

REQUIRED_RULE_FIELDS = ('id', 'active', 'method', 'dest_id', 'dest_table', 'mode')

STATUS_FIELDS = ('last_run', 'last_result', 'last_message')


def header_key(value: Any) -> str:
    return re.sub(r'\s+', ' ', str(value or '')).strip().lower()


class ColumnMap:
    """Field-name to column-index mapping resolved from a header row."""

    def __init__(self, positions: Dict[str, int]):
        self.positions = positions

    @classmethod
    def resolve(
        cls,
        header_row: Sequence[Any],
        schema: Dict[str, str],
        required: Iterable[str] = (),
    ) -> 'ColumnMap':
        """Match headers by name (case and spacing insensitive); reject missing required ones."""
        index_by_header = {}
        for index, header in enumerate(header_row):
            key = header_key(header)
            if key and key not in index_by_header:
                index_by_header[key] = index

        positions = {}
        for field, header in schema.items():
            index = index_by_header.get(header_key(header))
            if index is not None:
                positions[field] = index

        missing = [schema[field] for field in required if field not in positions]
        if missing:
            raise ValidationError(f"Missing required columns: {', '.join(missing)}")

        return cls(positions)

    def has(self, field: str) -> bool:
        return field in self.positions

    def index(self, field: str) -> int:
        return self.positions[field]

    def get(self, row: Sequence[Any], field: str, default: Any = None) -> Any:
        index = self.positions.get(field)
        if index is None or index >= len(row):
            return default
        return row[index]


class RuleRepository:
    """Reads rules from, and writes run status back to, the rules table."""

    def __init__(self, workbook: SQLWorkbook, table_name: str = 'Ingest Rules', message_limit: int = 500):
        self.workbook = workbook
        self.table_name = table_name
        self.message_limit = message_limit
        self.column_map: Optional[ColumnMap] = None

    def _table(self):
        table = self.workbook.get_table(self.table_name)
        if table is None:
            raise SourceNotFound(f"Rules table '{self.table_name}' not found in {self.workbook.resource_id}")
        return table

    def load(self) -> List[IngestRule]:
        """Read every rule row once; blank rows are ignored."""
        values = self._table().get_values()
        if not values:
            raise ValidationError(f"Rules table '{self.table_name}' has no header row")

        self.column_map = ColumnMap.resolve(values[0], RULE_COLUMNS, REQUIRED_RULE_FIELDS)

        rules = []
        for row_index, row in enumerate(values[1:], start=1):
            if not any(str(cell).strip() for cell in row if cell is not None):
                continue

            data = {field: self.column_map.get(row, field) for field in RULE_COLUMNS}
            data['raw_method'] = data.get('method')
            data['row_index'] = row_index
            for field in STATUS_FIELDS:
                if data[field] is not None:
                    data[field] = str(data[field])

            try:
                rules.append(IngestRule(**data))
            except (PydanticValidationError, TypeError, ValueError) as e:
                # kept as an invalid rule so the rest of the table still runs
                logger.warning(f"Rule on row {row_index + 1} could not be parsed: {e}")
                rules.append(IngestRule(
                    id=data.get('id'),
                    active=data.get('active'),
                    row_index=row_index,
                    parse_error=' '.join(str(e).split()) or type(e).__name__,
                ))

        logger.info(f"Loaded {len(rules)} rules from '{self.table_name}'")
        return rules

    def write_status(self, rule: IngestRule, result: str, message: str, timestamp: datetime) -> None:
        """Record the last-run timestamp, result and a truncated message on the rule's row."""
        if rule.row_index is None or self.column_map is None:
            return

        values = {}
        if self.column_map.has('last_run'):
            values[self.column_map.index('last_run')] = timestamp.strftime('%Y-%m-%d %H:%M:%S')
        if self.column_map.has('last_result'):
            values[self.column_map.index('last_result')] = result
        if self.column_map.has('last_message'):
            values[self.column_map.index('last_message')] = self.truncate(message)

        if values:
            self._table().update_cells(rule.row_index, values)

    def truncate(self, message: str) -> str:
        message = message or ''
        if len(message) <= self.message_limit:
            return message
        return message[:self.message_limit - 3] + '...'
