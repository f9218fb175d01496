"""
Delimited-text parsing for message attachments.
"""

import csv
import hashlib
import logging
from io import StringIO
from typing import List, Optional, Tuple

from ingest_engine.errors import ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_DELIMITERS = ',;\t|'
SNIFF_SAMPLE_BYTES = 8192


class CSVProcessor:
    """Turns delimited-text attachments into rectangular grids."""

    def calculate_file_hash(self, content: bytes) -> str:
        """Calculate SHA256 hash of raw attachment content."""
        return hashlib.sha256(content).hexdigest()

    def decode(self, content: bytes) -> str:
        """Decode bytes as UTF-8 (BOM tolerated), falling back to latin-1."""
        try:
            return content.decode('utf-8-sig')
        except UnicodeDecodeError:
            logger.warning("Attachment is not valid UTF-8, decoding as latin-1")
            return content.decode('latin-1')

    def detect_delimiter(self, text: str, filename: Optional[str] = None) -> str:
        """Pick the delimiter from the file extension or by sniffing a sample."""
        if filename and filename.lower().endswith(('.tsv', '.tab')):
            return '\t'

        sample = text[:SNIFF_SAMPLE_BYTES]
        try:
            dialect = csv.Sniffer().sniff(sample, delimiters=SUPPORTED_DELIMITERS)
            return dialect.delimiter
        except csv.Error:
            return ','

    def parse_grid(self, content: bytes, filename: Optional[str] = None) -> List[List[str]]:
        """Parse delimited text into a grid padded to its widest row."""
        text = self.decode(content)
        delimiter = self.detect_delimiter(text, filename)

        try:
            rows = [row for row in csv.reader(StringIO(text), delimiter=delimiter)]
        except csv.Error as e:
            raise ValidationError(f"Cannot parse {filename or 'attachment'}: {e}") from e

        # drop trailing blank lines
        while rows and not any(cell.strip() for cell in rows[-1]):
            rows.pop()

        width = max((len(row) for row in rows), default=0)
        grid = [row + [''] * (width - len(row)) for row in rows]

        logger.info(
            f"Parsed {len(grid)} rows x {width} columns from {filename or 'attachment'} "
            f"(delimiter {delimiter!r})"
        )
        return grid

    def validate_grid(self, grid: List[List[str]]) -> Tuple[bool, List[str]]:
        """Basic structural checks on a parsed grid."""
        errors = []

        if not grid:
            errors.append("File has no rows")
            return False, errors

        header = grid[0]
        if not any(cell.strip() for cell in header):
            errors.append("Header row is empty")

        return len(errors) == 0, errors
