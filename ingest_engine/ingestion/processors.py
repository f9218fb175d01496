"""
Per-method rule processors: read the source, prepare the destination, write,
verify, and report a RuleOutcome.
"""

import logging
import re
import time
from datetime import datetime
from typing import Any, Callable, List, Optional

import pytz

from ingest_engine.database.workbook import SQLTable, WorkbookStore
from ingest_engine.errors import IngestError, SourceNotFound, ValidationError, VerificationFailure
from ingest_engine.ingestion.batch_writer import write_in_batches
from ingest_engine.ingestion.csv_processor import CSVProcessor
from ingest_engine.ingestion.hasher import content_hash, grid_dimensions
from ingest_engine.ingestion.imap_client import MessageStore
from ingest_engine.ingestion.lifecycle import LifecycleManager
from ingest_engine.ingestion.locator import resolve_resource_id
from ingest_engine.ingestion.models import (
    EventType,
    IngestMethod,
    IngestRule,
    RuleOutcome,
    RuleStatus,
    VerificationRecord,
    WriteMode,
)
from ingest_engine.ingestion.retry import RetryExecutor
from ingest_engine.ingestion.tracker import ProcessTracker
from ingest_engine.ingestion.verification import VerificationEngine
from ingest_engine.monitoring.audit_log import AuditLog
from ingest_engine.monitoring.session_log import SessionLog

logger = logging.getLogger(__name__)

MESSAGE_SEARCH_LIMIT = 50


class NoSourceData(IngestError):
    """The source had nothing to ingest; not a failure unless data is required."""


class SourceData:
    """A grid read from a source, plus the table it came from when there is one."""

    def __init__(self, grid: List[List[Any]], source_type: str, identifier: str,
                 table: Optional[SQLTable] = None):
        self.grid = grid
        self.source_type = source_type
        self.identifier = identifier
        self.table = table


class ProcessorServices:
    """Collaborators shared by all processors within a session."""

    def __init__(
        self,
        workbook_store: WorkbookStore,
        default_workbook_id: str,
        session_log: SessionLog,
        audit_log: AuditLog,
        lifecycle: Optional[LifecycleManager] = None,
        verifier: Optional[VerificationEngine] = None,
        retry: Optional[RetryExecutor] = None,
        tracker: Optional[ProcessTracker] = None,
        message_store: Optional[MessageStore] = None,
        csv_processor: Optional[CSVProcessor] = None,
        batch_size: int = 500,
        batch_pause_seconds: float = 0.0,
        tz=pytz.UTC,
    ):
        self.workbook_store = workbook_store
        self.default_workbook_id = default_workbook_id
        self.session_log = session_log
        self.audit_log = audit_log
        self.lifecycle = lifecycle or LifecycleManager()
        self.verifier = verifier or VerificationEngine()
        self.retry = retry or RetryExecutor()
        self.tracker = tracker
        self.message_store = message_store
        self.csv_processor = csv_processor or CSVProcessor()
        self.batch_size = batch_size
        self.batch_pause_seconds = batch_pause_seconds
        self.tz = tz


class BaseProcessor:
    """START -> source -> parse -> acquire -> write -> verify -> SUCCESS|ERROR."""

    source_type = ''

    def __init__(self, services: ProcessorServices):
        self.services = services

    def fetch_source(self, rule: IngestRule, session_id: str) -> SourceData:
        raise NotImplementedError

    def process(self, rule: IngestRule, session_id: str) -> RuleOutcome:
        services = self.services
        started = time.monotonic()
        services.session_log.log(
            session_id, EventType.START,
            f"Processing rule {rule.id} ({self.source_type} -> {rule.dest_table}, {rule.mode.value})",
            rule_id=rule.id,
        )

        try:
            source = self.fetch_source(rule, session_id)
        except NoSourceData as e:
            if rule.require_data:
                raise ValidationError(f"No data found and rule requires data: {e}") from e
            services.session_log.log(session_id, EventType.WARNING, f"No data: {e}", rule_id=rule.id)
            return RuleOutcome(
                rule_id=rule.id,
                status=RuleStatus.NO_DATA,
                message=str(e),
                duration_seconds=time.monotonic() - started,
            )

        rows, cols = grid_dimensions(source.grid)
        services.session_log.log(
            session_id, EventType.INFO,
            f"Read {rows} rows x {cols} columns from {source.identifier}",
            rule_id=rule.id,
        )

        dest_id = resolve_resource_id(rule.dest_id, services.default_workbook_id)
        if source.table is not None and source.table.workbook.resource_id == dest_id \
                and source.table.name == rule.dest_table:
            raise ValidationError("Source and destination are the same table")

        destination = services.retry.run(
            lambda: services.workbook_store.open(dest_id),
            description=f"open destination {dest_id}",
        )
        services.session_log.log(
            session_id, EventType.PROCESSING,
            f"Writing {rows} rows to '{rule.dest_table}' ({rule.mode.value})",
            rule_id=rule.id,
        )

        if rule.mode == WriteMode.COPY_FORMAT and source.table is not None:
            table = services.retry.run(
                lambda: services.lifecycle.copy_table(source.table, destination, rule.dest_table),
                description=f"copy to '{rule.dest_table}'",
            )
            mode, prior, header_skipped, written = WriteMode.COPY_FORMAT, 0, False, rows
        else:
            mode = rule.mode
            if mode == WriteMode.COPY_FORMAT:
                logger.warning(f"Rule {rule.id}: copy-format needs a table source, writing values instead")
                mode = WriteMode.CLEAR_AND_REUSE

            existing = destination.get_table(rule.dest_table)
            prior = existing.row_count if existing is not None and mode == WriteMode.APPEND else 0
            header_skipped = mode == WriteMode.APPEND and prior > 0 and rows > 1
            to_write = source.grid[1:] if header_skipped else source.grid

            table = services.retry.run(
                lambda: services.lifecycle.open(destination, rule.dest_table, mode),
                description=f"prepare '{rule.dest_table}'",
            )
            written = write_in_batches(
                table,
                to_write,
                batch_size=services.batch_size,
                retry=services.retry,
                tracker=services.tracker,
                process_id=session_id,
                on_progress=self._progress_callback(rule, session_id),
                pause_seconds=services.batch_pause_seconds,
            )

        verification = self._verify(rule, session_id, source, dest_id, table, mode, prior, header_skipped)

        duration = time.monotonic() - started
        message = f"Wrote {written} rows to '{rule.dest_table}'"
        if header_skipped:
            message += " (header skipped)"
        services.session_log.log(
            session_id, EventType.SUCCESS, message,
            rule_id=rule.id, rows_processed=written, duration_seconds=duration,
        )
        return RuleOutcome(
            rule_id=rule.id,
            status=RuleStatus.SUCCESS,
            message=message,
            rows_processed=written,
            duration_seconds=duration,
            verification=verification,
        )

    def _progress_callback(self, rule: IngestRule, session_id: str) -> Optional[Callable[[int, int], None]]:
        tracker = self.services.tracker
        if tracker is None:
            return None

        def on_progress(written: int, total: int) -> None:
            tracker.update(session_id, rule_id=rule.id, rows_written=written, rows_total=total)

        return on_progress

    def _verify(
        self,
        rule: IngestRule,
        session_id: str,
        source: SourceData,
        dest_id: str,
        table: SQLTable,
        mode: WriteMode,
        prior: int,
        header_skipped: bool,
    ) -> VerificationRecord:
        services = self.services
        result = services.retry.run(
            lambda: services.verifier.verify(
                source.grid, table, mode,
                prior_row_count=prior,
                header_skipped=header_skipped,
                session_id=session_id,
            ),
            description=f"verify '{rule.dest_table}'",
        )

        record = VerificationRecord(
            session_id=session_id,
            rule_id=rule.id,
            timestamp=datetime.now(services.tz),
            source_type=source.source_type,
            source_identifier=source.identifier,
            destination_identifier=f"{dest_id}/{rule.dest_table}",
            source_rows=result.source_rows,
            source_columns=result.source_columns,
            destination_rows=result.destination_rows,
            destination_columns=result.destination_columns,
            rows_match=result.rows_match,
            columns_match=result.columns_match,
            samples_match=result.samples_match,
            content_hash=content_hash(source.grid),
            status=result.status,
            details=result.details,
        )
        services.audit_log.record_verification(record)
        if result.diagnostic is not None:
            services.audit_log.record_diagnostic(result.diagnostic)

        if not result.passed:
            raise VerificationFailure(f"Verification failed: {result.details}", result=record)
        return record


class MessageProcessor(BaseProcessor):
    """Ingests the most recent matching attachment from a message search."""

    source_type = IngestMethod.MESSAGE.value

    def fetch_source(self, rule: IngestRule, session_id: str) -> SourceData:
        services = self.services
        if services.message_store is None:
            raise ValidationError("No message store is configured for message rules")

        messages = services.retry.run(
            lambda: services.message_store.search(rule.query, MESSAGE_SEARCH_LIMIT),
            description=f"message search '{rule.query}'",
        )
        pattern = re.compile(rule.attachment_pattern, re.IGNORECASE)

        for message in messages:
            matches = [a for a in message.attachments if pattern.search(a.filename)]
            if not matches:
                continue

            if len(matches) > 1:
                names = ', '.join(a.filename for a in matches)
                raise NoSourceData(
                    f"Ambiguous match in message '{message.subject}': {names}"
                )

            attachment = matches[0]
            digest = services.csv_processor.calculate_file_hash(attachment.content)
            logger.info(f"Using attachment {attachment.filename} (sha256 {digest[:16]}...)")

            grid = services.csv_processor.parse_grid(attachment.content, attachment.filename)
            is_valid, errors = services.csv_processor.validate_grid(grid)
            if not is_valid:
                if not grid:
                    raise NoSourceData(f"Attachment {attachment.filename} is empty")
                raise ValidationError(f"Attachment {attachment.filename} is invalid: {'; '.join(errors)}")

            return SourceData(grid, self.source_type, f"{message.subject} / {attachment.filename}")

        raise NoSourceData(
            f"No attachment matching '{rule.attachment_pattern}' in {len(messages)} messages "
            f"for query '{rule.query}'"
        )


class RemoteTableProcessor(BaseProcessor):
    """Transfers a table from another workbook."""

    source_type = IngestMethod.REMOTE_TABLE.value

    def source_workbook_id(self, rule: IngestRule) -> str:
        return resolve_resource_id(rule.source_id, self.services.default_workbook_id)

    def fetch_source(self, rule: IngestRule, session_id: str) -> SourceData:
        services = self.services
        source_id = self.source_workbook_id(rule)

        workbook = services.retry.run(
            lambda: services.workbook_store.open(source_id),
            description=f"open source {source_id}",
        )
        table = workbook.get_table(rule.source_table)
        if table is None:
            raise SourceNotFound(f"Source table '{rule.source_table}' not found in {source_id}")

        grid = services.retry.run(table.get_values, description=f"read '{rule.source_table}'")
        if not grid:
            raise NoSourceData(f"Source table '{rule.source_table}' is empty")

        return SourceData(grid, self.source_type, f"{source_id}/{rule.source_table}", table)


class PushProcessor(RemoteTableProcessor):
    """Pushes a table of the local (default) workbook to a destination."""

    source_type = IngestMethod.PUSH.value

    def source_workbook_id(self, rule: IngestRule) -> str:
        return self.services.default_workbook_id


PROCESSOR_CLASSES = {
    IngestMethod.MESSAGE: MessageProcessor,
    IngestMethod.REMOTE_TABLE: RemoteTableProcessor,
    IngestMethod.PUSH: PushProcessor,
}


def build_processors(services: ProcessorServices) -> dict:
    return {method: cls(services) for method, cls in PROCESSOR_CLASSES.items()}
