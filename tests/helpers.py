"""Builders shared by the test modules."""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytz

from ingest_engine.database.workbook import SQLWorkbook
from ingest_engine.ingestion.imap_client import Attachment, Message
from ingest_engine.ingestion.rules import RULE_COLUMNS

BASE_TIME = datetime(2024, 3, 1, 9, 0, 0, tzinfo=pytz.UTC)


def make_id(name: str) -> str:
    """A well-formed 44 character resource id derived from ``name``."""
    return name.ljust(44, '0')[:44]


def make_message(subject: str, attachments: Dict[str, bytes], minutes_ago: int = 0) -> Message:
    return Message(
        message_id=f"<{subject.replace(' ', '-')}@example.test>",
        subject=subject,
        from_email='reports@example.test',
        received_at=BASE_TIME - timedelta(minutes=minutes_ago),
        attachments=tuple(
            Attachment(filename=name, content=content, content_type='text/csv')
            for name, content in attachments.items()
        ),
    )


class FakeMessageStore:
    """In-memory MessageStore; returns its messages newest-first."""

    def __init__(self, messages: Optional[List[Message]] = None):
        self.messages = list(messages or [])
        self.queries: List[str] = []

    def search(self, query: str, limit: int = 50) -> List[Message]:
        self.queries.append(query)
        ordered = sorted(self.messages, key=lambda m: m.received_at, reverse=True)
        return ordered[:limit]


def write_table(workbook: SQLWorkbook, name: str, grid: List[list]):
    """Create (or replace) ``name`` holding ``grid``."""
    if workbook.has_table(name):
        workbook.delete_table(name)
    table = workbook.create_table(name)
    table.append_rows(grid)
    return table


def add_rule(workbook: SQLWorkbook, table_name: str = 'Ingest Rules', **fields) -> None:
    """Append one rule row to the rules table, laid out by its header row."""
    table = workbook.get_table(table_name)
    header = table.read_row(0)
    field_by_header = {header_text: field for field, header_text in RULE_COLUMNS.items()}
    defaults = {'active': 'TRUE', 'mode': 'clear-and-reuse'}
    values = {**defaults, **fields}

    row = []
    for header_text in header:
        field = field_by_header.get(header_text)
        row.append(values.get(field, '') if field else '')
    table.append_rows([row])
