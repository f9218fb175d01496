"""
Post-write verification: dimension checks plus sampled cell comparison.
"""

import logging
import random
from typing import Any, List, Optional, Sequence, Union

from pydantic import BaseModel

from ingest_engine.database.workbook import SQLTable, column_label
from ingest_engine.ingestion.hasher import grid_dimensions, normalize_cell
from ingest_engine.ingestion.models import (
    DiagnosticRecord,
    MatchFlag,
    WriteMode,
    parse_write_mode,
)

logger = logging.getLogger(__name__)

STATUS_COMPLETE = 'COMPLETE'
STATUS_ERROR = 'ERROR'

MIN_ROWS_FOR_INTERIOR = 5


class VerificationResult(BaseModel):
    """Match flags and counts produced by one verification pass."""

    rows_match: MatchFlag
    columns_match: MatchFlag
    samples_match: MatchFlag
    status: str
    details: str = ''
    source_rows: int = 0
    source_columns: int = 0
    destination_rows: int = 0
    destination_columns: int = 0
    expected_rows: int = 0
    diagnostic: Optional[DiagnosticRecord] = None

    @property
    def passed(self) -> bool:
        return self.status == STATUS_COMPLETE


class VerificationEngine:
    """Compares a source grid with the destination table it was written to."""

    def __init__(
        self,
        check_rows: bool = True,
        check_columns: bool = True,
        check_samples: bool = True,
        interior_samples: int = 3,
        rng: Optional[random.Random] = None,
    ):
        self.check_rows = check_rows
        self.check_columns = check_columns
        self.check_samples = check_samples
        self.interior_samples = interior_samples
        self.rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings) -> 'VerificationEngine':
        return cls(
            check_rows=settings.verify_row_count,
            check_columns=settings.verify_column_count,
            check_samples=settings.verify_samples,
            interior_samples=settings.verify_sample_interior,
            rng=random.Random(settings.verify_seed),
        )

    @staticmethod
    def written_row_count(source_rows: int, header_skipped: bool) -> int:
        return max(source_rows - 1, 0) if header_skipped else source_rows

    @staticmethod
    def destination_row_for(index: int, mode: WriteMode, prior_row_count: int, header_skipped: bool) -> int:
        """Destination row that source row ``index`` was written to."""
        if header_skipped:
            return prior_row_count + index - 1
        base = prior_row_count if mode == WriteMode.APPEND else 0
        return base + index

    def sample_positions(self, row_count: int, header_skipped: bool = False) -> List[int]:
        """First data row, last row and a few random interior rows (source indices)."""
        if row_count == 0:
            return []

        first = 1 if row_count > 1 else 0
        last = row_count - 1
        positions = {first, last}

        if row_count >= MIN_ROWS_FOR_INTERIOR and self.interior_samples > 0:
            interior = list(range(first + 1, last))
            count = min(self.interior_samples, len(interior))
            positions.update(self.rng.sample(interior, count))

        if header_skipped:
            positions.discard(0)
        return sorted(positions)

    def verify(
        self,
        source_grid: Sequence[Sequence[Any]],
        destination: SQLTable,
        mode: Union[WriteMode, str],
        prior_row_count: int = 0,
        header_skipped: bool = False,
        session_id: str = '',
    ) -> VerificationResult:
        write_mode = parse_write_mode(mode) or WriteMode.CLEAR_AND_REUSE

        source_rows, source_columns = grid_dimensions(source_grid)
        destination_rows = destination.row_count
        destination_columns = destination.column_count

        written = self.written_row_count(source_rows, header_skipped)
        base = prior_row_count if write_mode == WriteMode.APPEND else 0
        expected_rows = base + written

        details = []
        diagnostic = None

        rows_match = MatchFlag.NA
        if self.check_rows:
            if written == 0 and write_mode != WriteMode.APPEND:
                ok = destination_rows <= 1
            else:
                ok = destination_rows == expected_rows
            rows_match = MatchFlag.YES if ok else MatchFlag.NO
            details.append(f"Rows: expected {expected_rows}, found {destination_rows}")

        columns_match = MatchFlag.NA
        if self.check_columns:
            ok = destination_columns >= source_columns
            columns_match = MatchFlag.YES if ok else MatchFlag.NO
            details.append(f"Columns: source {source_columns}, destination {destination_columns}")

        samples_match = MatchFlag.NA
        if self.check_samples and write_mode != WriteMode.COPY_FORMAT and written > 0:
            diagnostic = self._compare_samples(
                source_grid, destination, write_mode, prior_row_count, header_skipped, session_id
            )
            samples_match = MatchFlag.NO if diagnostic else MatchFlag.YES
            if diagnostic:
                details.append(f"Sample mismatch at {diagnostic.position}, column {diagnostic.column}")
            else:
                details.append("Samples: all sampled rows match")

        if not details:
            details.append("No checks enabled")

        failed = MatchFlag.NO in (rows_match, columns_match, samples_match)
        status = STATUS_ERROR if failed else STATUS_COMPLETE

        if failed:
            logger.warning(f"Verification of '{destination.name}' failed: {'; '.join(details)}")
        else:
            logger.info(f"Verification of '{destination.name}' passed")

        return VerificationResult(
            rows_match=rows_match,
            columns_match=columns_match,
            samples_match=samples_match,
            status=status,
            details='; '.join(details),
            source_rows=source_rows,
            source_columns=source_columns,
            destination_rows=destination_rows,
            destination_columns=destination_columns,
            expected_rows=expected_rows,
            diagnostic=diagnostic,
        )

    def _compare_samples(
        self,
        source_grid,
        destination: SQLTable,
        mode: WriteMode,
        prior_row_count: int,
        header_skipped: bool,
        session_id: str,
    ) -> Optional[DiagnosticRecord]:
        for index in self.sample_positions(len(source_grid), header_skipped):
            target = self.destination_row_for(index, mode, prior_row_count, header_skipped)
            position = f"source row {index + 1} -> destination row {target + 1}"
            source_row = list(source_grid[index])
            dest_row = destination.read_row(target)

            if dest_row is None:
                return DiagnosticRecord(
                    session_id=session_id,
                    position=position,
                    column='-',
                    details='Destination row is missing',
                )

            for col, source_value in enumerate(source_row):
                dest_value = dest_row[col] if col < len(dest_row) else None
                norm_source = normalize_cell(source_value)
                norm_dest = normalize_cell(dest_value)
                if norm_source != norm_dest:
                    return DiagnosticRecord(
                        session_id=session_id,
                        position=position,
                        column=column_label(col),
                        source_value=source_value,
                        destination_value=dest_value,
                        normalized_source=norm_source,
                        normalized_destination=norm_dest,
                        details=f"Expected '{norm_source}' but found '{norm_dest}'",
                    )
        return None
