"""End-to-end tests for the rule execution engine over SQLite workbooks."""

from unittest.mock import MagicMock

import pytest

from ingest_engine.errors import SourceNotFound
from ingest_engine.ingestion import processors as processors_module
from ingest_engine.ingestion import rules as rules_module
from ingest_engine.ingestion.models import EventType, IngestRule, RuleStatus
from ingest_engine.ingestion.rules import RULE_COLUMNS, RuleRepository
from ingest_engine.ingestion.worker import RuleEngine, main as worker_main
from ingest_engine.monitoring.audit_log import AuditLog
from ingest_engine.monitoring.session_log import SessionLog
from tests.helpers import add_rule, make_id, make_message, write_table

DEST_ID = make_id('destination')
REMOTE_ID = make_id('remote')

LOCAL_GRID = [['id', 'name'], [1, 'alpha'], [2, 'beta']]


def rule_status(control, rule_id):
    table = control.get_table('Ingest Rules')
    values = table.get_values()
    header = values[0]
    for row in values[1:]:
        record = dict(zip(header, row))
        if record[RULE_COLUMNS['id']] == rule_id:
            return record[RULE_COLUMNS['last_result']], record[RULE_COLUMNS['last_message']]
    raise KeyError(rule_id)


def session_events(control, session_id):
    return SessionLog(control).entries(session_id)


@pytest.fixture
def destination(store):
    return store.open(DEST_ID, create=True)


@pytest.fixture
def local_table(control):
    return write_table(control, 'Local', LOCAL_GRID)


class TestRuleSelection:
    def test_inactive_rules_are_never_read(self, engine, control, message_store):
        add_rule(control, id='r1', active='FALSE', method='message', query='sales',
                 attachment_pattern='.*', dest_table='Out')

        outcomes = engine.run_all('session-1')

        assert outcomes == []
        assert message_store.queries == []
        assert rule_status(control, 'r1') == ('', '')

    def test_invalid_rule_fails_and_the_rest_still_run(self, engine, control, local_table, destination):
        add_rule(control, id='bad', method='carrier pigeon', dest_table='Out')
        add_rule(control, id='good', method='push', source_table='Local', dest_id=DEST_ID, dest_table='Out')

        outcomes = engine.run_all('session-1')

        assert [(o.rule_id, o.status) for o in outcomes] == [
            ('bad', RuleStatus.ERROR), ('good', RuleStatus.SUCCESS)
        ]
        assert rule_status(control, 'bad')[0] == 'ERROR'
        assert "Unknown ingest method 'carrier pigeon'" in rule_status(control, 'bad')[1]
        assert rule_status(control, 'good')[0] == 'SUCCESS'

    def test_missing_rules_table_fails_the_session(self, engine, control):
        control.delete_table('Ingest Rules')

        with pytest.raises(SourceNotFound):
            engine.run_all('session-1')

        events = session_events(control, 'session-1')
        assert events[-1].event_type == EventType.ERROR

    def test_numeric_notify_cell_does_not_stop_the_session(self, engine, control, local_table, destination):
        add_rule(control, id='bad', method='push', source_table='Local', dest_id=DEST_ID,
                 dest_table='Out', recipients=12345)
        add_rule(control, id='good', method='push', source_table='Local', dest_id=DEST_ID, dest_table='Out2')

        outcomes = engine.run_all('session-1')

        assert [(o.rule_id, o.status) for o in outcomes] == [
            ('bad', RuleStatus.SUCCESS), ('good', RuleStatus.SUCCESS)
        ]

    def test_unparseable_row_fails_only_that_rule(self, engine, control, local_table, destination, monkeypatch):
        add_rule(control, id='bad', method='push', source_table='Local', dest_id=DEST_ID, dest_table='Out')
        add_rule(control, id='good', method='push', source_table='Local', dest_id=DEST_ID, dest_table='Out2')

        def build_rule(**data):
            if data.get('id') == 'bad' and 'parse_error' not in data:
                raise TypeError("'int' object is not iterable")
            return IngestRule(**data)

        monkeypatch.setattr(rules_module, 'IngestRule', build_rule)

        outcomes = engine.run_all('session-1')

        assert [(o.rule_id, o.status) for o in outcomes] == [
            ('bad', RuleStatus.ERROR), ('good', RuleStatus.SUCCESS)
        ]
        assert rule_status(control, 'bad')[0] == 'ERROR'
        assert 'could not be parsed' in rule_status(control, 'bad')[1]
        assert destination.get_table('Out2').get_values() == LOCAL_GRID

    def test_unexpected_error_still_closes_the_session(self, engine, control, tracker, monkeypatch):
        def failing_load(self):
            raise RuntimeError('disk on fire')

        monkeypatch.setattr(RuleRepository, 'load', failing_load)

        with pytest.raises(RuntimeError):
            engine.run_all('session-1')

        events = session_events(control, 'session-1')
        assert events[-1].event_type == EventType.ERROR
        assert 'disk on fire' in events[-1].message
        assert tracker.get('session-1')['status'] == 'ERROR'
        assert engine.last_session.session_id == 'session-1'


class TestPushAndRemote:
    def test_append_to_empty_then_existing_skips_header(self, engine, control, local_table, destination):
        add_rule(control, id='r1', method='push', source_table='Local', dest_id=DEST_ID,
                 dest_table='Out', mode='append')

        first = engine.run_all('session-1')
        assert first[0].status == RuleStatus.SUCCESS
        assert first[0].rows_processed == 3
        assert destination.get_table('Out').row_count == 3

        second = engine.run_all('session-2')
        assert second[0].rows_processed == 2
        assert 'header skipped' in second[0].message
        assert destination.get_table('Out').get_values() == LOCAL_GRID + LOCAL_GRID[1:]
        assert second[0].verification.rows_match.value == 'YES'

    def test_clear_and_reuse_replaces_content(self, engine, control, local_table, destination):
        write_table(destination, 'Out', [['stale', 'data', 'wider'], ['x', 'y', 'z'], ['x', 'y', 'z'], ['q', 'r', 's']])
        add_rule(control, id='r1', method='push', source_table='Local', dest_id=DEST_ID, dest_table='Out')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.SUCCESS
        assert destination.get_table('Out').get_values() == LOCAL_GRID

    def test_recreate_keeps_destination_position(self, engine, control, local_table, destination):
        destination.create_table('First')
        write_table(destination, 'Out', [['old']])
        destination.create_table('Last')
        add_rule(control, id='r1', method='push', source_table='Local', dest_id=DEST_ID,
                 dest_table='Out', mode='recreate')

        engine.run_all('session-1')

        assert destination.table_names() == ['First', 'Out', 'Last']
        assert destination.get_table('Out').get_values() == LOCAL_GRID

    def test_remote_table_into_control_workbook(self, engine, control, store):
        remote = store.open(REMOTE_ID, create=True)
        write_table(remote, 'Data', [['k', 'v'], ['a', 1], ['b', 2], ['c', 3], ['d', 4], ['e', 5]])
        add_rule(control, id='r1', method='sheet',
                 source_id=f"https://docs.example.com/spreadsheets/d/{REMOTE_ID}/edit",
                 source_table='Data', dest_table='Imported')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.SUCCESS
        assert control.get_table('Imported').row_count == 6
        record = outcomes[0].verification
        assert record.source_type == 'remote-table'
        assert record.content_hash.startswith('R6C2-')
        assert AuditLog(control).verification_rows('session-1')[0][14] == 'COMPLETE'

    def test_disabled_checks_still_record_verification(self, engine, control, local_table, destination):
        engine.verifier.check_rows = False
        engine.verifier.check_columns = False
        engine.verifier.check_samples = False
        add_rule(control, id='r1', method='push', source_table='Local', dest_id=DEST_ID, dest_table='Out')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.SUCCESS
        row = AuditLog(control).verification_rows('session-1')[0]
        assert row[10:13] == ['N/A', 'N/A', 'N/A']
        assert row[13].startswith('R3C2-')
        assert row[14] == 'COMPLETE'

    def test_copy_format_copies_the_table(self, engine, control, store):
        remote = store.open(REMOTE_ID, create=True)
        write_table(remote, 'Data', [['k', 'v', 'w'], ['a', 1, None]])
        add_rule(control, id='r1', method='remote-table', source_id=REMOTE_ID, source_table='Data',
                 dest_table='Copy', mode='copy')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.SUCCESS
        assert control.get_table('Copy').get_values() == [['k', 'v', 'w'], ['a', 1, None]]
        assert outcomes[0].verification.samples_match.value == 'N/A'

    def test_missing_source_table_is_an_error(self, engine, control, store):
        store.open(REMOTE_ID, create=True)
        add_rule(control, id='r1', method='remote-table', source_id=REMOTE_ID, source_table='Nope',
                 dest_table='Out')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.ERROR
        assert "'Nope' not found" in outcomes[0].message

    def test_empty_source_is_no_data(self, engine, control):
        control.create_table('Empty')
        add_rule(control, id='r1', method='push', source_table='Empty', dest_table='Out')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.NO_DATA
        assert not control.has_table('Out')

    def test_source_and_destination_must_differ(self, engine, control, local_table):
        add_rule(control, id='r1', method='push', source_table='Local', dest_table='Local')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.ERROR
        assert control.get_table('Local').get_values() == LOCAL_GRID

    def test_verification_failure_is_reported_and_loop_continues(self, engine, control, destination,
                                                                 local_table, monkeypatch):
        wide = [[f"h{c}" for c in range(10)]] + [[r * 10 + c for c in range(10)] for r in range(3)]
        write_table(control, 'Wide', wide)
        add_rule(control, id='wide', method='push', source_table='Wide', dest_id=DEST_ID, dest_table='W')
        add_rule(control, id='next', method='push', source_table='Local', dest_id=DEST_ID, dest_table='N')

        real_write = processors_module.write_in_batches

        def drop_last_columns(table, rows, **kwargs):
            if table.name == 'W':
                rows = [row[:8] for row in rows]
            return real_write(table, rows, **kwargs)

        monkeypatch.setattr(processors_module, 'write_in_batches', drop_last_columns)

        outcomes = engine.run_all('session-1')

        assert [o.status for o in outcomes] == [RuleStatus.ERROR, RuleStatus.SUCCESS]
        failed = outcomes[0]
        assert failed.message.startswith('Verification failed')
        assert failed.verification.columns_match.value == 'NO'
        assert failed.verification.status == 'ERROR'

        audit = AuditLog(control)
        assert [row[14] for row in audit.verification_rows('session-1')] == ['ERROR', 'COMPLETE']
        assert len(audit.diagnostic_rows('session-1')) == 1


class TestMessageRules:
    def test_newest_matching_attachment_is_ingested(self, engine, control, message_store):
        message_store.messages = [
            make_message('Sales old', {'sales_old.csv': b'id,amount\n9,99\n'}, minutes_ago=60),
            make_message('Sales new', {'sales_new.csv': b'id;amount\n1;10.5\n2;20\n', 'notes.txt': b'hi'}),
        ]
        add_rule(control, id='r1', method='email', query='sales', attachment_pattern=r'sales_.*\.csv$',
                 dest_table='Sales')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.SUCCESS
        assert control.get_table('Sales').get_values() == [['id', 'amount'], ['1', '10.5'], ['2', '20']]
        assert message_store.queries == ['sales']
        assert outcomes[0].verification.source_identifier == 'Sales new / sales_new.csv'

    def test_no_match_is_no_data(self, engine, control, message_store):
        message_store.messages = [make_message('Other', {'other.pdf': b'%PDF'})]
        add_rule(control, id='r1', method='message', query='sales', attachment_pattern=r'\.csv$',
                 dest_table='Sales')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.NO_DATA
        assert rule_status(control, 'r1')[0] == 'NO DATA'
        events = session_events(control, 'session-1')
        assert any(e.event_type == EventType.WARNING and e.rule_id == 'r1' for e in events)

    def test_ambiguous_match_is_no_data(self, engine, control, message_store):
        message_store.messages = [make_message('Two', {'a.csv': b'x\n1\n', 'b.csv': b'x\n2\n'})]
        add_rule(control, id='r1', method='message', query='two', attachment_pattern=r'\.csv$',
                 dest_table='Out')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.NO_DATA
        assert 'Ambiguous' in outcomes[0].message

    def test_required_data_turns_no_data_into_error(self, engine, control, message_store):
        add_rule(control, id='r1', method='message', query='sales', attachment_pattern=r'\.csv$',
                 dest_table='Sales', require_data='TRUE')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.ERROR
        assert 'requires data' in outcomes[0].message

    def test_copy_format_on_message_rule_writes_values(self, engine, control, message_store):
        message_store.messages = [make_message('Report', {'r.csv': b'a,b\n1,2\n'})]
        write_table(control, 'Out', [['old', 'old', 'old']])
        add_rule(control, id='r1', method='message', query='report', attachment_pattern=r'\.csv$',
                 dest_table='Out', mode='copy-format')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.SUCCESS
        assert control.get_table('Out').get_values() == [['a', 'b'], ['1', '2']]

    def test_no_message_store_configured(self, engine, control):
        engine.message_store = None
        add_rule(control, id='r1', method='message', query='x', attachment_pattern='y', dest_table='Out')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.ERROR


class TestSessionBehaviour:
    def test_session_log_and_summary(self, engine, control, local_table, destination):
        add_rule(control, id='r1', method='push', source_table='Local', dest_id=DEST_ID, dest_table='Out')
        add_rule(control, id='r2', method='push', source_table='Missing', dest_id=DEST_ID, dest_table='Out2')

        engine.run_all('session-1')

        events = session_events(control, 'session-1')
        assert events[0].event_type == EventType.START
        assert events[-1].event_type == EventType.COMPLETE
        assert '1 success' in events[-1].message and '1 error' in events[-1].message
        assert [e.event_type for e in events if e.rule_id == 'r1'] == [
            EventType.START, EventType.INFO, EventType.PROCESSING, EventType.SUCCESS
        ]

        session = engine.last_session
        assert session.session_id == 'session-1'
        assert session.summary()['SUCCESS'] == 1
        assert session.summary()['ERROR'] == 1
        with pytest.raises(Exception):
            session.session_id = 'changed'

    def test_generated_session_id(self, engine, control):
        engine.run_all()
        assert engine.last_session.session_id

    def test_cancellation_stops_the_session(self, engine, control, local_table, destination, tracker, monkeypatch):
        add_rule(control, id='r1', method='push', source_table='Local', dest_id=DEST_ID, dest_table='A')
        add_rule(control, id='r2', method='push', source_table='Local', dest_id=DEST_ID, dest_table='B')
        monkeypatch.setattr(tracker, 'is_cancelled', lambda process_id: True)

        outcomes = engine.run_all('session-1')

        assert [o.status for o in outcomes] == [RuleStatus.CANCELLED, RuleStatus.SKIPPED]
        assert tracker.get('session-1')['status'] == 'CANCELLED'
        assert rule_status(control, 'r2')[0] == 'SKIPPED'
        events = session_events(control, 'session-1')
        assert any(e.event_type == EventType.CANCELLED for e in events)

    def test_progress_is_tracked(self, engine, control, local_table, destination, tracker):
        add_rule(control, id='r1', method='push', source_table='Local', dest_id=DEST_ID, dest_table='Out')

        engine.run_all('session-1')

        state = tracker.get('session-1')
        assert state['status'] == 'COMPLETE'
        assert state['processed'] == 1
        assert state['rows_written'] == 3

    def test_running_session_is_reported_in_progress(self, engine, control, local_table, destination,
                                                     monkeypatch):
        statuses = []
        write_in_batches = processors_module.write_in_batches

        def observing_write(table, rows, **kwargs):
            statuses.append(SessionLog(control).session_summaries()[0].status)
            return write_in_batches(table, rows, **kwargs)

        monkeypatch.setattr(processors_module, 'write_in_batches', observing_write)
        add_rule(control, id='r1', method='push', source_table='Local', dest_id=DEST_ID, dest_table='Out')

        engine.run_all('session-1')

        assert statuses == ['IN PROGRESS']
        assert SessionLog(control).session_summaries()[0].status == 'COMPLETE'

    def test_log_retention_is_applied(self, engine, control, local_table, destination):
        engine.settings = engine.settings.model_copy(update={'log_max_entries': 4})
        add_rule(control, id='r1', method='push', source_table='Local', dest_id=DEST_ID, dest_table='Out')

        engine.run_all('session-1')
        engine.run_all('session-2')

        assert len(SessionLog(control).entries()) == 4

    def test_notifier_receives_rule_entries(self, engine, control, local_table, destination):
        notifier = MagicMock()
        engine.notifier = notifier
        add_rule(control, id='r1', method='push', source_table='Local', dest_id=DEST_ID, dest_table='Out',
                 recipients='ops@example.test')
        add_rule(control, id='r2', method='push', source_table='Local', dest_id=DEST_ID, dest_table='Out2')

        engine.run_all('session-1')

        notifier.notify.assert_called_once()
        recipients, rule, outcome, entries = notifier.notify.call_args.args
        assert recipients == ['ops@example.test']
        assert rule.id == 'r1'
        assert outcome.status == RuleStatus.SUCCESS
        assert {e.rule_id for e in entries} == {'r1'}

    def test_notifier_failure_does_not_fail_the_rule(self, engine, control, local_table, destination):
        engine.notifier = MagicMock()
        engine.notifier.notify.side_effect = RuntimeError('smtp down')
        add_rule(control, id='r1', method='push', source_table='Local', dest_id=DEST_ID, dest_table='Out',
                 recipients='ops@example.test')

        outcomes = engine.run_all('session-1')

        assert outcomes[0].status == RuleStatus.SUCCESS


class TestValidate:
    def test_reports_problems_for_active_rules_only(self, engine, control):
        add_rule(control, id='r1', method='remote-table', dest_table='Out')
        add_rule(control, id='r2', active='FALSE', method='unknown', dest_table='Out')
        add_rule(control, id='r3', method='push', source_table='Local', dest_table='Out')

        problems = engine.validate()

        assert problems
        assert all(p.startswith('r1:') for p in problems)

    def test_rules_table_problems_are_reported(self, engine, control):
        control.delete_table('Ingest Rules')

        assert 'not found' in engine.validate()[0]


class TestMain:
    @pytest.fixture
    def imap_store(self, settings, monkeypatch):
        store = MagicMock()
        monkeypatch.setattr('sys.argv', ['ingest-engine'])
        monkeypatch.setattr('ingest_engine.ingestion.imap_client.IMAPMessageStore', lambda: store)
        monkeypatch.setattr(
            'ingest_engine.monitoring.logger_config.IngestionLogger.setup_logging', lambda *a, **kw: None
        )
        monkeypatch.setattr(
            'ingest_engine.ingestion.worker.EngineSettings', MagicMock(from_env=MagicMock(return_value=settings))
        )
        return store

    def test_message_store_is_disconnected_after_the_run(self, imap_store, monkeypatch):
        engine = MagicMock()
        engine.run_all.return_value = []
        monkeypatch.setattr(RuleEngine, 'from_settings', classmethod(lambda cls, *a, **kw: engine))

        with pytest.raises(SystemExit) as exc_info:
            worker_main()

        assert exc_info.value.code == 0
        imap_store.disconnect.assert_called_once_with()

    def test_message_store_is_disconnected_when_the_run_fails(self, imap_store, monkeypatch):
        engine = MagicMock()
        engine.run_all.side_effect = RuntimeError('boom')
        monkeypatch.setattr(RuleEngine, 'from_settings', classmethod(lambda cls, *a, **kw: engine))

        with pytest.raises(RuntimeError):
            worker_main()

        imap_store.disconnect.assert_called_once_with()
