"""
Append-only, session-correlated event log stored in a workbook table.
"""

import logging
import secrets
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytz
from pydantic import BaseModel, Field

from ingest_engine.database.workbook import SQLTable, SQLWorkbook
from ingest_engine.ingestion.models import EventType, LogEntry
from ingest_engine.monitoring.logger_config import CorrelationLogger

logger = logging.getLogger(__name__)

SUMMARY_COUNT_KEYS = ('SUCCESS', 'ERROR', 'WARNING', 'INFO')


def generate_session_id(now: Optional[datetime] = None) -> str:
    """Opaque session id: UTC timestamp prefix plus a random suffix."""
    now = now or datetime.now(pytz.UTC)
    return f"{now.strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4)}"


def format_duration(duration_ms: float) -> str:
    """Render a duration as ``45s``, ``2m 5s`` or ``1h 2m 3s``."""
    seconds = int(duration_ms // 1000)
    if seconds < 60:
        return f"{seconds}s"

    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"

    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m {seconds}s"


def ensure_sink_table(workbook: SQLWorkbook, name: str, headers: Sequence[str]) -> SQLTable:
    """Get a sink table, creating it with its header row when missing."""
    table = workbook.get_table(name)
    if table is None:
        table = workbook.create_table(name)
        table.append_rows([list(headers)])
    return table


def trim_table(table: SQLTable, max_entries: int) -> int:
    """Drop the oldest data rows (below the header) beyond ``max_entries``."""
    data_rows = max(table.row_count - 1, 0)
    excess = data_rows - max_entries
    if excess <= 0:
        return 0

    table.delete_rows(1, excess)
    logger.info(f"Trimmed {excess} oldest entries from '{table.name}'")
    return excess


class SessionSummary(BaseModel):
    """Aggregated view of one session's log entries."""

    session_id: str
    timestamp: datetime
    description: str
    status: str
    duration_ms: float
    counts: Dict[str, int]
    events: List[LogEntry] = Field(default_factory=list)

    @property
    def duration_text(self) -> str:
        return format_duration(self.duration_ms)


class SessionLog:
    """Writes LogEntry rows and mirrors them to the structured logger."""

    def __init__(
        self,
        workbook: SQLWorkbook,
        table_name: str = 'Ingest Logs',
        max_entries: int = 5000,
        tz=pytz.UTC,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.workbook = workbook
        self.table_name = table_name
        self.max_entries = max_entries
        self.tz = tz
        self.clock = clock or (lambda: datetime.now(self.tz))

    def _table(self) -> SQLTable:
        return ensure_sink_table(self.workbook, self.table_name, LogEntry.HEADERS)

    def log(
        self,
        session_id: str,
        event_type: EventType,
        message: str,
        rule_id: str = '',
        rows_processed: Optional[int] = None,
        duration_seconds: Optional[float] = None,
    ) -> LogEntry:
        """Append one entry."""
        entry = LogEntry(
            session_id=session_id,
            timestamp=self.clock(),
            rule_id=rule_id or '',
            event_type=event_type,
            message=message,
            rows_processed=rows_processed,
            duration_seconds=round(duration_seconds, 3) if duration_seconds is not None else None,
        )
        self._table().append_rows([entry.to_row()])
        self._mirror(entry)
        return entry

    def _mirror(self, entry: LogEntry) -> None:
        log = CorrelationLogger(entry.session_id)
        context: Dict[str, Any] = {'event_type': entry.event_type.value}
        if entry.rule_id:
            context['rule_id'] = entry.rule_id
        if entry.rows_processed is not None:
            context['rows_processed'] = entry.rows_processed
        if entry.duration_seconds is not None:
            context['duration_seconds'] = entry.duration_seconds

        if entry.event_type == EventType.ERROR:
            log.error(entry.message, **context)
        elif entry.event_type in (EventType.WARNING, EventType.CANCELLED):
            log.warning(entry.message, **context)
        else:
            log.info(entry.message, **context)

    def entries(self, session_id: Optional[str] = None) -> List[LogEntry]:
        """All entries in write order, optionally for one session."""
        table = self.workbook.get_table(self.table_name)
        if table is None:
            return []

        entries = []
        for row in table.get_values()[1:]:
            try:
                entry = LogEntry.from_row(row)
            except ValueError as e:
                logger.warning(f"Skipping unreadable log row {row!r}: {e}")
                continue
            if session_id is None or entry.session_id == session_id:
                entries.append(entry)
        return entries

    def trim(self, max_entries: Optional[int] = None) -> int:
        """Enforce retention, oldest entries first."""
        table = self.workbook.get_table(self.table_name)
        if table is None:
            return 0
        return trim_table(table, self.max_entries if max_entries is None else max_entries)

    def session_summaries(self) -> List[SessionSummary]:
        """Per-session counts, status, duration and description, newest first."""
        sessions: 'OrderedDict[str, List[LogEntry]]' = OrderedDict()
        for entry in self.entries():
            sessions.setdefault(entry.session_id, []).append(entry)

        summaries = [self._summarize(sid, events) for sid, events in sessions.items()]
        summaries.sort(key=lambda s: s.timestamp, reverse=True)
        return summaries

    @staticmethod
    def _summarize(session_id: str, events: List[LogEntry]) -> SessionSummary:
        counts = {key: 0 for key in SUMMARY_COUNT_KEYS}
        for event in events:
            kind = event.event_type.value
            if kind == 'COMPLETE':
                counts['SUCCESS'] += 1
            elif kind in counts:
                counts[kind] += 1
            else:
                counts['INFO'] += 1

        if counts['ERROR'] > 0:
            status = 'ERROR'
        elif counts['WARNING'] > 0:
            status = 'COMPLETE WITH WARNINGS'
        else:
            status = 'COMPLETE'

        if events[-1].event_type == EventType.PROCESSING:
            status = 'IN PROGRESS'

        duration_ms = 0.0
        if len(events) > 1:
            duration_ms = (events[-1].timestamp - events[0].timestamp).total_seconds() * 1000

        start = next((e for e in events if e.event_type == EventType.START), None)
        description = start.message if start else 'Session started'

        return SessionSummary(
            session_id=session_id,
            timestamp=events[0].timestamp,
            description=description,
            status=status,
            duration_ms=duration_ms,
            counts=counts,
            events=events,
        )
