"""
Sampled, order-sensitive content fingerprint for tabular grids.

Not cryptographic: the hash only exists to spot drift between runs.
"""

import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Sequence

import pytz

HASH_SEED = 5381
HASH_MAX_CHARS = 10000
HASH_SAMPLE_THRESHOLD = 1000
HASH_SAMPLE_ROWS = 100

CELL_DELIMITER = '|'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
NUMBER_PRECISION = 10

Grid = Sequence[Sequence[Any]]


def normalize_cell(value: Any) -> str:
    """Canonical string form of a cell, shared by hashing and verification."""
    if value is None:
        return ''

    # bool is an int subclass, check it first
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(pytz.UTC)
        return value.strftime(DATE_FORMAT)

    if isinstance(value, date):
        return value.strftime(DATE_FORMAT)

    if isinstance(value, (int, float, Decimal)):
        return _normalize_number(value)

    return str(value).strip()


def _normalize_number(value) -> str:
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return str(value)

    text = f"{value:.{NUMBER_PRECISION}f}"
    if '.' in text:
        text = text.rstrip('0').rstrip('.')
    if text in ('-0', ''):
        text = '0'
    return text


def grid_dimensions(grid: Grid) -> tuple:
    """Row count and widest row length of a grid."""
    rows = len(grid)
    cols = max((len(row) for row in grid), default=0)
    return rows, cols


def sample_row_indices(row_count: int) -> List[int]:
    """Rows that take part in the hash; strided for large grids."""
    if row_count <= HASH_SAMPLE_THRESHOLD:
        return list(range(row_count))

    stride = math.ceil(row_count / HASH_SAMPLE_ROWS)
    indices = list(range(0, row_count, stride))
    if indices[-1] != row_count - 1:
        indices.append(row_count - 1)
    return indices


def djb2(text: str) -> int:
    """32-bit multiplicative rolling hash (h * 33 + c)."""
    h = HASH_SEED
    for char in text:
        h = (h * 33 + ord(char)) & 0xFFFFFFFF
    return h


def content_hash(grid: Grid) -> str:
    """Fingerprint a grid as ``R<rows>C<cols>-<8 hex digits>``."""
    rows, cols = grid_dimensions(grid)

    lines = []
    length = 0
    for index in sample_row_indices(rows):
        line = CELL_DELIMITER.join(normalize_cell(cell) for cell in grid[index])
        lines.append(line)
        length += len(line) + 1
        if length > HASH_MAX_CHARS:
            break

    text = '\n'.join(lines)[:HASH_MAX_CHARS]
    return f"R{rows}C{cols}-{djb2(text):08x}"
