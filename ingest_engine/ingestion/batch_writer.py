"""
Batched, cancellable writes of grid rows into a destination table.
"""

import logging
import time
from typing import Any, Callable, Optional, Sequence

from ingest_engine.database.workbook import SQLTable
from ingest_engine.errors import IngestCancelled
from ingest_engine.ingestion.retry import RetryExecutor
from ingest_engine.ingestion.tracker import ProcessTracker

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


def write_in_batches(
    table: SQLTable,
    rows: Sequence[Sequence[Any]],
    batch_size: int = 500,
    retry: Optional[RetryExecutor] = None,
    tracker: Optional[ProcessTracker] = None,
    process_id: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
    pause_seconds: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Append ``rows`` to ``table`` in batches and return the number written.

    The cancellation flag for ``process_id`` is polled before every batch;
    a cancelled write stops between batches and raises IngestCancelled.
    Each batch is retried on its own, so an append is never replayed twice.
    """
    total = len(rows)
    written = 0

    for start in range(0, total, batch_size):
        if tracker is not None and process_id and tracker.is_cancelled(process_id):
            logger.warning(f"Write to '{table.name}' cancelled after {written}/{total} rows")
            raise IngestCancelled(f"Cancelled after writing {written} of {total} rows")

        batch = rows[start:start + batch_size]
        if retry is not None:
            retry.run(lambda: table.append_rows(batch), description=f"write batch to '{table.name}'")
        else:
            table.append_rows(batch)
        written += len(batch)

        logger.debug(f"Wrote batch {start // batch_size + 1} to '{table.name}' ({written}/{total})")
        if on_progress is not None:
            on_progress(written, total)

        if pause_seconds > 0 and written < total:
            sleep(pause_seconds)

    return written
