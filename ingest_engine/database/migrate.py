"""
Control-table setup: creates the rules and sink tables and repairs drifted headers.
"""

import logging
import sys
from typing import Any, List, Optional, Sequence

from ingest_engine.config import EngineSettings
from ingest_engine.database.workbook import SQLTable, SQLWorkbook
from ingest_engine.ingestion.lifecycle import LifecycleManager
from ingest_engine.ingestion.models import DiagnosticRecord, LogEntry, VerificationRecord
from ingest_engine.ingestion.rules import RULE_COLUMNS, header_key

logger = logging.getLogger(__name__)


def control_tables(settings: EngineSettings) -> List[tuple]:
    """(table name, expected header row) for every control table."""
    return [
        (settings.rules_table, tuple(RULE_COLUMNS.values())),
        (settings.log_table, LogEntry.HEADERS),
        (settings.verification_table, VerificationRecord.HEADERS),
        (settings.diagnostics_table, DiagnosticRecord.HEADERS),
    ]


def remap_rows(rows: Sequence[Sequence[Any]], old_headers: Sequence[Any],
               new_headers: Sequence[str]) -> List[List[Any]]:
    """Carry data rows to a new header layout by matching header names."""
    old_index = {}
    for index, header in enumerate(old_headers):
        key = header_key(header)
        if key and key not in old_index:
            old_index[key] = index

    remapped = []
    for row in rows:
        new_row = []
        for header in new_headers:
            index = old_index.get(header_key(header))
            new_row.append(row[index] if index is not None and index < len(row) else None)
        remapped.append(new_row)
    return remapped


def headers_match(actual: Sequence[Any], expected: Sequence[str]) -> bool:
    actual_keys = [header_key(h) for h in actual]
    while actual_keys and not actual_keys[-1]:
        actual_keys.pop()
    return actual_keys == [header_key(h) for h in expected]


class ControlTableMigrator:
    """Brings the control workbook's tables to their expected layout."""

    def __init__(self, workbook: SQLWorkbook, lifecycle: Optional[LifecycleManager] = None):
        self.workbook = workbook
        self.lifecycle = lifecycle or LifecycleManager()

    def ensure_table(self, name: str, headers: Sequence[str]) -> str:
        """Create, repair or leave ``name``; returns 'created', 'rebuilt' or 'ok'."""
        table = self.workbook.get_table(name)

        if table is None:
            table = self.workbook.create_table(name)
            table.append_rows([list(headers)])
            logger.info(f"Created control table '{name}'")
            return 'created'

        current = table.read_row(0)
        if current is None:
            table.append_rows([list(headers)])
            logger.info(f"Added header row to empty control table '{name}'")
            return 'created'

        if headers_match(current, headers):
            return 'ok'

        logger.warning(f"Header drift in '{name}', rebuilding with the current layout")

        def populate(temp: SQLTable, original: Optional[SQLTable]) -> None:
            temp.append_rows([list(headers)])
            if original is None:
                return
            values = original.get_values()
            rows = remap_rows(values[1:], values[0], headers)
            if rows:
                temp.append_rows(rows)

        self.lifecycle.safe_replace(self.workbook, name, populate)
        return 'rebuilt'

    def run_all(self, settings: EngineSettings) -> dict:
        results = {}
        for name, headers in control_tables(settings):
            results[name] = self.ensure_table(name, headers)
        logger.info(f"Control tables checked: {results}")
        return results


def ensure_control_tables(workbook: SQLWorkbook, settings: EngineSettings,
                          lifecycle: Optional[LifecycleManager] = None) -> dict:
    """Create missing control tables and rebuild any whose header row drifted."""
    return ControlTableMigrator(workbook, lifecycle).run_all(settings)


def main():
    """Main entry point for setting up the control workbook."""
    from ingest_engine.ingestion.worker import build_store
    from ingest_engine.monitoring.logger_config import IngestionLogger

    IngestionLogger.setup_logging()

    try:
        settings = EngineSettings.from_env()
        workbook = build_store(settings).open(settings.default_workbook_id, create=True)
        results = ensure_control_tables(workbook, settings, LifecycleManager(settings.max_backups))
        for name, result in results.items():
            print(f"{name}: {result}")

    except Exception as e:
        logger.error(f"Control table setup failed: {e}")
        print(f"Control table setup failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
