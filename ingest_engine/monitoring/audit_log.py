"""
Verification and diagnostic sinks: write-once records per rule execution.
"""

import logging
from typing import List, Optional

from ingest_engine.database.workbook import SQLWorkbook
from ingest_engine.ingestion.models import DiagnosticRecord, VerificationRecord
from ingest_engine.monitoring.session_log import ensure_sink_table, trim_table

logger = logging.getLogger(__name__)


class AuditLog:
    """Appends VerificationRecord and DiagnosticRecord rows to their tables."""

    def __init__(
        self,
        workbook: SQLWorkbook,
        verification_table: str = 'Verification Log',
        diagnostics_table: str = 'Verification Diagnostics',
        max_entries: int = 5000,
    ):
        self.workbook = workbook
        self.verification_table = verification_table
        self.diagnostics_table = diagnostics_table
        self.max_entries = max_entries

    def record_verification(self, record: VerificationRecord) -> None:
        table = ensure_sink_table(self.workbook, self.verification_table, VerificationRecord.HEADERS)
        table.append_rows([record.to_row()])
        logger.info(
            f"Verification for rule {record.rule_id}: {record.status} "
            f"(rows {record.rows_match.value}, columns {record.columns_match.value}, "
            f"samples {record.samples_match.value}, hash {record.content_hash})"
        )

    def record_diagnostic(self, record: DiagnosticRecord) -> None:
        table = ensure_sink_table(self.workbook, self.diagnostics_table, DiagnosticRecord.HEADERS)
        table.append_rows([record.to_row()])
        logger.warning(
            f"Sample mismatch at {record.position}, column {record.column}: "
            f"'{record.normalized_source}' != '{record.normalized_destination}'"
        )

    def verification_rows(self, session_id: Optional[str] = None) -> List[list]:
        """Raw verification rows (header excluded), optionally for one session."""
        table = self.workbook.get_table(self.verification_table)
        if table is None:
            return []
        rows = table.get_values()[1:]
        if session_id is None:
            return rows
        return [row for row in rows if row and row[0] == session_id]

    def diagnostic_rows(self, session_id: Optional[str] = None) -> List[list]:
        table = self.workbook.get_table(self.diagnostics_table)
        if table is None:
            return []
        rows = table.get_values()[1:]
        if session_id is None:
            return rows
        return [row for row in rows if row and row[0] == session_id]

    def trim(self) -> int:
        """Apply the retention limit to both sinks."""
        trimmed = 0
        for name in (self.verification_table, self.diagnostics_table):
            table = self.workbook.get_table(name)
            if table is not None:
                trimmed += trim_table(table, self.max_entries)
        return trimmed
