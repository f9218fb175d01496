"""Tests for the session log sink, retention and session summaries."""

import re
from datetime import datetime, timedelta

import pytest
import pytz

from ingest_engine.ingestion.models import EventType
from ingest_engine.monitoring.session_log import (
    SessionLog,
    format_duration,
    generate_session_id,
)


class StepClock:
    def __init__(self, start=datetime(2024, 2, 1, 12, 0, 0, tzinfo=pytz.UTC), step=timedelta(seconds=5)):
        self.now = start
        self.step = step

    def __call__(self):
        current = self.now
        self.now += self.step
        return current


@pytest.fixture
def session_log(workbook):
    return SessionLog(workbook, 'Ingest Logs', max_entries=100, clock=StepClock())


class TestSessionLog:
    def test_entries_round_trip(self, session_log):
        session_log.log('s1', EventType.START, 'Session started')
        session_log.log('s1', EventType.SUCCESS, 'Wrote rows', rule_id='r1', rows_processed=3, duration_seconds=1.23456)

        entries = session_log.entries('s1')

        assert [e.event_type for e in entries] == [EventType.START, EventType.SUCCESS]
        assert entries[1].rule_id == 'r1'
        assert entries[1].rows_processed == 3
        assert entries[1].duration_seconds == 1.235
        assert entries[1].timestamp == datetime(2024, 2, 1, 12, 0, 5, tzinfo=pytz.UTC)

    def test_table_gets_header_row(self, session_log, workbook):
        session_log.log('s1', EventType.INFO, 'hello')

        assert workbook.get_table('Ingest Logs').read_row(0)[0] == 'Session ID'

    def test_entries_filter_by_session(self, session_log):
        session_log.log('s1', EventType.INFO, 'one')
        session_log.log('s2', EventType.INFO, 'two')

        assert [e.message for e in session_log.entries('s2')] == ['two']
        assert len(session_log.entries()) == 2

    def test_trim_drops_oldest_entries(self, session_log, workbook):
        for i in range(7):
            session_log.log('s1', EventType.INFO, f"entry {i}")

        trimmed = session_log.trim(max_entries=3)

        assert trimmed == 4
        assert [e.message for e in session_log.entries()] == ['entry 4', 'entry 5', 'entry 6']
        assert workbook.get_table('Ingest Logs').read_row(0)[0] == 'Session ID'

    def test_trim_under_limit_is_a_no_op(self, session_log):
        session_log.log('s1', EventType.INFO, 'only')
        assert session_log.trim() == 0


class TestSessionSummaries:
    def test_counts_status_and_description(self, session_log):
        session_log.log('s1', EventType.START, 'Session started: 2 active rules')
        session_log.log('s1', EventType.SUCCESS, 'ok', rule_id='r1')
        session_log.log('s1', EventType.WARNING, 'No data', rule_id='r2')
        session_log.log('s1', EventType.COMPLETE, 'done')

        summary = session_log.session_summaries()[0]

        assert summary.description == 'Session started: 2 active rules'
        assert summary.counts == {'SUCCESS': 2, 'ERROR': 0, 'WARNING': 1, 'INFO': 1}
        assert summary.status == 'COMPLETE WITH WARNINGS'
        assert summary.duration_ms == 15000
        assert summary.duration_text == '15s'

    def test_error_outranks_warning_and_newest_comes_first(self, session_log):
        session_log.log('old', EventType.START, 'first')
        session_log.log('old', EventType.WARNING, 'hmm')
        session_log.log('old', EventType.ERROR, 'broken')
        session_log.log('new', EventType.START, 'second')
        session_log.log('new', EventType.PROCESSING, 'running')

        summaries = session_log.session_summaries()

        assert [s.session_id for s in summaries] == ['new', 'old']
        assert summaries[0].status == 'IN PROGRESS'
        assert summaries[1].status == 'ERROR'


class TestHelpers:
    @pytest.mark.parametrize('ms, text', [
        (0, '0s'),
        (45000, '45s'),
        (125000, '2m 5s'),
        (3723000, '1h 2m 3s'),
    ])
    def test_format_duration(self, ms, text):
        assert format_duration(ms) == text

    def test_session_ids_are_time_prefixed_and_unique(self):
        now = datetime(2024, 7, 8, 9, 10, 11, tzinfo=pytz.UTC)

        first = generate_session_id(now)
        second = generate_session_id(now)

        assert re.match(r'^20240708091011-[0-9a-f]{8}$', first)
        assert first != second
