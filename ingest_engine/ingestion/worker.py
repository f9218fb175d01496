"""
Rule execution engine that orchestrates a full ingestion session.
"""

import logging
import random
import sys
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

from ingest_engine.config import EngineSettings
from ingest_engine.database.workbook import SQLWorkbook, WorkbookStore
from ingest_engine.errors import IngestCancelled, IngestError, VerificationFailure
from ingest_engine.ingestion.csv_processor import CSVProcessor
from ingest_engine.ingestion.imap_client import MessageStore
from ingest_engine.ingestion.lifecycle import LifecycleManager
from ingest_engine.ingestion.models import (
    EventType,
    IngestMethod,
    IngestRule,
    LogEntry,
    RuleOutcome,
    RuleStatus,
    Session,
)
from ingest_engine.ingestion.processors import ProcessorServices, build_processors
from ingest_engine.ingestion.retry import RetryExecutor
from ingest_engine.ingestion.rules import RuleRepository
from ingest_engine.ingestion.tracker import ProcessTracker
from ingest_engine.ingestion.verification import VerificationEngine
from ingest_engine.monitoring.audit_log import AuditLog
from ingest_engine.monitoring.logger_config import (
    CorrelationLogger,
    OperationLogger,
    bind_session,
    clear_session,
)
from ingest_engine.monitoring.session_log import SessionLog, generate_session_id

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers a per-rule report to the rule's recipients."""

    def notify(self, recipients: List[str], rule: IngestRule, outcome: RuleOutcome,
               entries: List[LogEntry]) -> None:
        ...


def build_store(settings: EngineSettings) -> WorkbookStore:
    """Workbook store for the configured storage backend."""
    if settings.storage_backend == 'postgres':
        from ingest_engine.database.connection import DatabaseManager, PostgresWorkbookStore
        return PostgresWorkbookStore(DatabaseManager(settings.database_url))

    from ingest_engine.database.sqlite_connection import SQLiteWorkbookStore
    return SQLiteWorkbookStore(settings.workbook_dir)


class RuleEngine:
    """Runs every active rule of the control workbook once per session."""

    def __init__(
        self,
        settings: EngineSettings,
        store: WorkbookStore,
        message_store: Optional[MessageStore] = None,
        tracker: Optional[ProcessTracker] = None,
        notifier: Optional[Notifier] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.store = store
        self.message_store = message_store
        self.tracker = tracker
        self.notifier = notifier
        self.sleep = sleep
        self.rng = rng

        self.retry = RetryExecutor.from_settings(settings, sleep=sleep, rng=rng)
        self.lifecycle = LifecycleManager(max_backups=settings.max_backups)
        self.verifier = VerificationEngine.from_settings(settings)
        if rng is not None:
            self.verifier.rng = rng
        self.csv_processor = CSVProcessor()
        self.last_session: Optional[Session] = None

        logger.info(f"Rule engine initialized ({settings.storage_backend} storage)")

    @classmethod
    def from_settings(cls, settings: Optional[EngineSettings] = None, **kwargs) -> 'RuleEngine':
        """Build an engine with the configured store and process tracker."""
        settings = settings or EngineSettings.from_env()
        kwargs.setdefault('tracker', ProcessTracker.from_path(settings.process_state_db))
        return cls(settings, build_store(settings), **kwargs)

    def control_workbook(self) -> SQLWorkbook:
        return self.store.open(self.settings.default_workbook_id, create=True)

    def validate(self) -> List[str]:
        """Check every active rule without running it; returns one line per problem."""
        workbook = self.control_workbook()
        repository = RuleRepository(workbook, self.settings.rules_table, self.settings.status_message_limit)

        try:
            rules = repository.load()
        except IngestError as e:
            return [str(e)]

        problems = []
        for rule in rules:
            if not rule.active:
                continue
            for error in rule.validate_config(self.settings.default_workbook_id):
                problems.append(f"{rule.id or f'row {rule.row_index + 1}'}: {error}")

        logger.info(f"Validated {len(rules)} rules, {len(problems)} problems found")
        return problems

    def run_all(self, session_id: Optional[str] = None) -> List[RuleOutcome]:
        """Run all active rules in table order; one rule's failure never stops the rest."""
        settings = self.settings
        session_id = session_id or generate_session_id()
        start_time = datetime.now(settings.tz)
        started = time.monotonic()

        workbook = self.control_workbook()
        session_log = SessionLog(workbook, settings.log_table, settings.log_max_entries, settings.tz)
        audit_log = AuditLog(
            workbook, settings.verification_table, settings.diagnostics_table, settings.log_max_entries
        )
        repository = RuleRepository(workbook, settings.rules_table, settings.status_message_limit)

        services = ProcessorServices(
            workbook_store=self.store,
            default_workbook_id=settings.default_workbook_id,
            session_log=session_log,
            audit_log=audit_log,
            lifecycle=self.lifecycle,
            verifier=self.verifier,
            retry=self.retry,
            tracker=self.tracker,
            message_store=self.message_store,
            csv_processor=self.csv_processor,
            batch_size=settings.batch_size,
            batch_pause_seconds=settings.batch_pause_seconds,
            tz=settings.tz,
        )
        processors = build_processors(services)

        bind_session(session_id)
        log = CorrelationLogger(session_id)
        outcomes: List[RuleOutcome] = []

        try:
            if self.tracker is not None:
                self.tracker.sweep_expired(settings.process_ttl_seconds)

            rules = self.retry.run(repository.load, description='load rules')
            active = [rule for rule in rules if rule.active]

            if self.tracker is not None:
                self.tracker.start(session_id, total=len(active), description='Rule execution')

            session_log.log(session_id, EventType.START, f"Session started: {len(active)} active rules")
            log.info("Session started", active_rules=len(active), total_rules=len(rules))

            cancelled = False
            for index, rule in enumerate(active):
                if cancelled:
                    skipped = RuleOutcome(rule_id=rule.id, status=RuleStatus.SKIPPED, message='Session cancelled')
                    self._write_status(repository, rule, skipped)
                    outcomes.append(skipped)
                    continue

                outcome = self._run_rule(rule, processors, session_log, repository, session_id)
                outcomes.append(outcome)
                cancelled = outcome.status == RuleStatus.CANCELLED

                if self.tracker is not None:
                    self.tracker.update(session_id, processed=index + 1)

            summary = self._summary_text(outcomes)
            session_log.log(
                session_id, EventType.COMPLETE, f"Session complete: {summary}",
                rows_processed=sum(o.rows_processed for o in outcomes),
                duration_seconds=time.monotonic() - started,
            )
            log.info("Session complete", summary=summary)

            session_log.trim()
            audit_log.trim()

            if self.tracker is not None:
                self.tracker.finish(session_id, 'CANCELLED' if cancelled else 'COMPLETE')

        except Exception as e:
            # session-level failure; rule failures are contained in _run_rule
            session_log.log(session_id, EventType.ERROR, f"Session failed: {e}")
            if self.tracker is not None:
                self.tracker.finish(session_id, 'ERROR')
            raise
        finally:
            self.last_session = Session(
                session_id=session_id,
                start_time=start_time,
                end_time=datetime.now(settings.tz),
                outcomes=tuple(outcomes),
            )
            clear_session()

        return outcomes

    def _run_rule(
        self,
        rule: IngestRule,
        processors: Dict[IngestMethod, object],
        session_log: SessionLog,
        repository: RuleRepository,
        session_id: str,
    ) -> RuleOutcome:
        started = time.monotonic()

        try:
            with OperationLogger('rule', session_id, rule_id=rule.id):
                rule.ensure_valid(self.settings.default_workbook_id)
                outcome = processors[rule.method].process(rule, session_id)

        except IngestCancelled as e:
            session_log.log(
                session_id, EventType.CANCELLED, f"Cancelled: {e}",
                rule_id=rule.id, duration_seconds=time.monotonic() - started,
            )
            outcome = RuleOutcome(
                rule_id=rule.id,
                status=RuleStatus.CANCELLED,
                message=str(e),
                duration_seconds=time.monotonic() - started,
            )

        except Exception as e:
            message = f"{type(e).__name__}: {e}" if not isinstance(e, IngestError) else str(e)
            session_log.log(
                session_id, EventType.ERROR, message,
                rule_id=rule.id, duration_seconds=time.monotonic() - started,
            )
            outcome = RuleOutcome(
                rule_id=rule.id,
                status=RuleStatus.ERROR,
                message=message,
                duration_seconds=time.monotonic() - started,
                verification=e.result if isinstance(e, VerificationFailure) else None,
            )

        self._write_status(repository, rule, outcome)
        self._notify(rule, outcome, session_log, session_id)
        return outcome

    def _write_status(self, repository: RuleRepository, rule: IngestRule, outcome: RuleOutcome) -> None:
        try:
            repository.write_status(rule, outcome.status.value, outcome.message, datetime.now(self.settings.tz))
        except Exception as e:
            logger.error(f"Failed to write status for rule {rule.id}: {e}")

    def _notify(self, rule: IngestRule, outcome: RuleOutcome, session_log: SessionLog, session_id: str) -> None:
        if self.notifier is None or not rule.recipients:
            return
        try:
            entries = [e for e in session_log.entries(session_id) if e.rule_id == rule.id]
            self.notifier.notify(rule.recipients, rule, outcome, entries)
        except Exception as e:
            logger.error(f"Notification for rule {rule.id} failed: {e}")

    @staticmethod
    def _summary_text(outcomes: List[RuleOutcome]) -> str:
        counts = {status: 0 for status in RuleStatus}
        for outcome in outcomes:
            counts[outcome.status] += 1
        return ', '.join(f"{count} {status.value.lower()}" for status, count in counts.items())


def main():
    """Main entry point for the rule engine."""
    import argparse

    from ingest_engine.ingestion.imap_client import IMAPMessageStore
    from ingest_engine.monitoring.logger_config import IngestionLogger

    parser = argparse.ArgumentParser(description='Run the rule execution engine')
    parser.add_argument('--validate', action='store_true', help='Validate rules and exit')
    parser.add_argument('--setup', action='store_true', help='Create or repair control tables and exit')
    parser.add_argument('--session-id', help='Use this session id instead of generating one')
    parser.add_argument('--cancel', metavar='SESSION_ID', help='Request cancellation of a running session')
    parser.add_argument('--summaries', action='store_true', help='Print recent session summaries')
    parser.add_argument('--no-messages', action='store_true', help='Run without an IMAP message store')

    args = parser.parse_args()

    IngestionLogger.setup_logging()
    settings = EngineSettings.from_env()

    if args.cancel:
        ProcessTracker.from_path(settings.process_state_db).request_cancel(args.cancel)
        print(f"Cancellation requested for session {args.cancel}")
        return

    message_store = None
    if not (args.no_messages or args.validate or args.setup or args.summaries):
        try:
            message_store = IMAPMessageStore()
        except ValueError as e:
            logger.warning(f"Message rules disabled: {e}")

    try:
        _dispatch(args, settings, RuleEngine.from_settings(settings, message_store=message_store))
    finally:
        if message_store is not None:
            message_store.disconnect()


def _dispatch(args, settings: EngineSettings, engine: RuleEngine) -> None:
    from ingest_engine.database.migrate import ensure_control_tables

    if args.setup:
        ensure_control_tables(engine.control_workbook(), settings, engine.lifecycle)
        print("Control tables are ready")
    elif args.validate:
        problems = engine.validate()
        for problem in problems:
            print(f"- {problem}")
        print("All active rules are valid" if not problems else f"{len(problems)} problems found")
        sys.exit(1 if problems else 0)
    elif args.summaries:
        session_log = SessionLog(engine.control_workbook(), settings.log_table, tz=settings.tz)
        for summary in session_log.session_summaries()[:20]:
            print(f"{summary.session_id}  {summary.status:<24} {summary.duration_text:>10}  {summary.description}")
    else:
        try:
            outcomes = engine.run_all(args.session_id)
        except IngestError as e:
            print(f"Session failed: {e}")
            sys.exit(1)
        failed = [o for o in outcomes if o.status == RuleStatus.ERROR]
        print(f"Processed {len(outcomes)} rules, {len(failed)} failed")
        sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
