"""
Pydantic models for rules, session log entries and verification records.
"""

import logging
import re
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ingest_engine.errors import ValidationError
from ingest_engine.ingestion.locator import resolve_resource_id

logger = logging.getLogger(__name__)


class IngestMethod(str, Enum):
    MESSAGE = 'message'
    REMOTE_TABLE = 'remote-table'
    PUSH = 'push'


class WriteMode(str, Enum):
    CLEAR_AND_REUSE = 'clear-and-reuse'
    APPEND = 'append'
    RECREATE = 'recreate'
    COPY_FORMAT = 'copy-format'


class EventType(str, Enum):
    START = 'START'
    INFO = 'INFO'
    PROCESSING = 'PROCESSING'
    SUCCESS = 'SUCCESS'
    WARNING = 'WARNING'
    ERROR = 'ERROR'
    CANCELLED = 'CANCELLED'
    COMPLETE = 'COMPLETE'


class MatchFlag(str, Enum):
    YES = 'YES'
    NO = 'NO'
    NA = 'N/A'


class RuleStatus(str, Enum):
    SUCCESS = 'SUCCESS'
    ERROR = 'ERROR'
    NO_DATA = 'NO DATA'
    SKIPPED = 'SKIPPED'
    CANCELLED = 'CANCELLED'


METHOD_ALIASES = {
    'message': IngestMethod.MESSAGE,
    'email': IngestMethod.MESSAGE,
    'gmail': IngestMethod.MESSAGE,
    'attachment': IngestMethod.MESSAGE,
    'remote-table': IngestMethod.REMOTE_TABLE,
    'remote': IngestMethod.REMOTE_TABLE,
    'sheet': IngestMethod.REMOTE_TABLE,
    'import': IngestMethod.REMOTE_TABLE,
    'push': IngestMethod.PUSH,
    'local': IngestMethod.PUSH,
    'export': IngestMethod.PUSH,
}

MODE_ALIASES = {
    'clear-and-reuse': WriteMode.CLEAR_AND_REUSE,
    'clear': WriteMode.CLEAR_AND_REUSE,
    'replace': WriteMode.CLEAR_AND_REUSE,
    'overwrite': WriteMode.CLEAR_AND_REUSE,
    'append': WriteMode.APPEND,
    'add': WriteMode.APPEND,
    'recreate': WriteMode.RECREATE,
    'delete': WriteMode.RECREATE,
    'new': WriteMode.RECREATE,
    'copy-format': WriteMode.COPY_FORMAT,
    'copy': WriteMode.COPY_FORMAT,
}

TRUE_VALUES = ('Y', 'YES', 'TRUE', '1', 'ON', 'ACTIVE')


def _alias_key(value: Any) -> str:
    return re.sub(r'[\s_]+', '-', str(value).strip().lower())


def parse_method(value: Any) -> Optional[IngestMethod]:
    """Map a method name or alias to an IngestMethod, None if unknown."""
    if isinstance(value, IngestMethod):
        return value
    return METHOD_ALIASES.get(_alias_key(value or ''))


def parse_write_mode(value: Any) -> Optional[WriteMode]:
    """Map a write mode name or alias to a WriteMode, None if unknown."""
    if isinstance(value, WriteMode):
        return value
    return MODE_ALIASES.get(_alias_key(value or ''))


def parse_flag(value: Any) -> bool:
    """Parse a checkbox-like cell (TRUE/FALSE, Y/N, 1/0)."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().upper() in TRUE_VALUES


class IngestRule(BaseModel):
    """A user-defined ingestion rule read from the rules table."""

    id: str
    active: bool = False
    method: Optional[IngestMethod] = None
    raw_method: str = ''
    query: str = ''
    attachment_pattern: str = ''
    source_id: str = ''
    source_table: str = ''
    dest_id: str = ''
    dest_table: str = ''
    mode: WriteMode = WriteMode.CLEAR_AND_REUSE
    recipients: List[str] = Field(default_factory=list)
    require_data: bool = False
    last_run: Optional[str] = None
    last_result: Optional[str] = None
    last_message: Optional[str] = None
    row_index: Optional[int] = None
    parse_error: str = ''

    @field_validator('id', 'query', 'attachment_pattern', 'source_id', 'source_table',
                     'dest_id', 'dest_table', 'raw_method', mode='before')
    @classmethod
    def strip_text(cls, v):
        if v is None:
            return ''
        return str(v).strip()

    @field_validator('active', 'require_data', mode='before')
    @classmethod
    def parse_checkbox(cls, v):
        return parse_flag(v)

    @field_validator('method', mode='before')
    @classmethod
    def parse_method_alias(cls, v):
        return parse_method(v)

    @field_validator('mode', mode='before')
    @classmethod
    def parse_mode_alias(cls, v):
        mode = parse_write_mode(v)
        if mode is None:
            if v not in (None, ''):
                logger.warning(f"Unknown write mode '{v}', defaulting to clear-and-reuse")
            return WriteMode.CLEAR_AND_REUSE
        return mode

    @field_validator('recipients', mode='before')
    @classmethod
    def split_recipients(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [r.strip() for r in re.split(r'[,;\s]+', v) if r.strip()]
        if isinstance(v, (list, tuple, set)):
            return [str(r).strip() for r in v if str(r).strip()]
        return [str(v)]

    def validate_config(self, default_resource_id: str) -> List[str]:
        """Check method-specific fields; returns a list of problems (empty if valid)."""
        errors = []

        if self.parse_error:
            return [f"Row could not be parsed: {self.parse_error}"]

        if not self.id:
            errors.append("Rule ID is required")

        if self.method is None:
            errors.append(f"Unknown ingest method '{self.raw_method}'")

        if not self.dest_table:
            errors.append("Destination table is required")

        try:
            resolve_resource_id(self.dest_id, default_resource_id)
        except ValidationError as e:
            errors.append(f"Destination: {e}")

        if self.method == IngestMethod.MESSAGE:
            if not self.query:
                errors.append("Search query is required for message rules")
            if not self.attachment_pattern:
                errors.append("Attachment pattern is required for message rules")
            else:
                try:
                    re.compile(self.attachment_pattern)
                except re.error as e:
                    errors.append(f"Invalid attachment pattern '{self.attachment_pattern}': {e}")

        elif self.method == IngestMethod.REMOTE_TABLE:
            if not self.source_id:
                errors.append("Source ID is required for remote-table rules")
            else:
                try:
                    resolve_resource_id(self.source_id, default_resource_id)
                except ValidationError as e:
                    errors.append(f"Source: {e}")
            if not self.source_table:
                errors.append("Source table is required for remote-table rules")

        elif self.method == IngestMethod.PUSH:
            if not self.source_table:
                errors.append("Source table is required for push rules")

        return errors

    def ensure_valid(self, default_resource_id: str) -> None:
        """Raise ValidationError when the rule is not runnable."""
        errors = self.validate_config(default_resource_id)
        if errors:
            raise ValidationError(f"Rule '{self.id}' is invalid: {'; '.join(errors)}")


class LogEntry(BaseModel):
    """One append-only event in the session log."""

    session_id: str
    timestamp: datetime
    rule_id: str = ''
    event_type: EventType
    message: str = ''
    rows_processed: Optional[int] = None
    duration_seconds: Optional[float] = None

    HEADERS: ClassVar[Tuple[str, ...]] = ('Session ID', 'Timestamp', 'Rule ID', 'Event Type', 'Message',
               'Rows Processed', 'Duration (s)')

    def to_row(self) -> List[Any]:
        return [
            self.session_id,
            self.timestamp.isoformat(),
            self.rule_id,
            self.event_type.value,
            self.message,
            self.rows_processed,
            self.duration_seconds,
        ]

    @classmethod
    def from_row(cls, row: List[Any]) -> 'LogEntry':
        padded = list(row) + [None] * (len(cls.HEADERS) - len(row))
        event = str(padded[3] or 'INFO')
        return cls(
            session_id=str(padded[0] or ''),
            timestamp=datetime.fromisoformat(str(padded[1])),
            rule_id=str(padded[2] or ''),
            event_type=EventType(event) if event in EventType.__members__ else EventType.INFO,
            message=str(padded[4] or ''),
            rows_processed=int(float(padded[5])) if padded[5] not in (None, '') else None,
            duration_seconds=float(padded[6]) if padded[6] not in (None, '') else None,
        )


class DiagnosticRecord(BaseModel):
    """Cell-level detail for the first sample mismatch of a verification."""

    model_config = ConfigDict(frozen=True)

    session_id: str = ''
    position: str
    column: str
    source_value: Any = None
    destination_value: Any = None
    normalized_source: str = ''
    normalized_destination: str = ''
    details: str = ''

    HEADERS: ClassVar[Tuple[str, ...]] = ('Session ID', 'Position', 'Column', 'Source Value', 'Destination Value',
               'Normalized Source', 'Normalized Destination', 'Details')

    def to_row(self) -> List[Any]:
        return [
            self.session_id,
            self.position,
            self.column,
            repr(self.source_value),
            repr(self.destination_value),
            self.normalized_source,
            self.normalized_destination,
            self.details,
        ]


class VerificationRecord(BaseModel):
    """Outcome of post-write verification for one rule execution."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    rule_id: str
    timestamp: datetime
    source_type: str
    source_identifier: str
    destination_identifier: str
    source_rows: int
    source_columns: int
    destination_rows: int
    destination_columns: int
    rows_match: MatchFlag
    columns_match: MatchFlag
    samples_match: MatchFlag
    content_hash: str
    status: str
    details: str = ''

    HEADERS: ClassVar[Tuple[str, ...]] = ('Session ID', 'Timestamp', 'Rule ID', 'Source Type', 'Source',
               'Destination', 'Source Rows', 'Source Columns', 'Destination Rows',
               'Destination Columns', 'Rows Match', 'Columns Match', 'Samples Match',
               'Content Hash', 'Status', 'Details')

    def to_row(self) -> List[Any]:
        return [
            self.session_id,
            self.timestamp.isoformat(),
            self.rule_id,
            self.source_type,
            self.source_identifier,
            self.destination_identifier,
            self.source_rows,
            self.source_columns,
            self.destination_rows,
            self.destination_columns,
            self.rows_match.value,
            self.columns_match.value,
            self.samples_match.value,
            self.content_hash,
            self.status,
            self.details,
        ]


class RuleOutcome(BaseModel):
    """Result of running one rule inside a session."""

    rule_id: str
    status: RuleStatus
    message: str = ''
    rows_processed: int = 0
    duration_seconds: float = 0.0
    verification: Optional[VerificationRecord] = None


class Session(BaseModel):
    """One end-to-end run over all active rules; frozen once complete."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    outcomes: Tuple[RuleOutcome, ...] = ()

    def summary(self) -> Dict[str, int]:
        """Counts of outcomes by status."""
        counts = {status.value: 0 for status in RuleStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        return counts
