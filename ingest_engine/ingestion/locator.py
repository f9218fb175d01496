"""
Resolves user-supplied workbook references into canonical resource ids.
"""

import re
from typing import Optional
from urllib.parse import urlparse, parse_qs

from ingest_engine.errors import ValidationError

RESOURCE_ID_LENGTH = 44

RESOURCE_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{%d}$' % RESOURCE_ID_LENGTH)

# .../d/<id>/edit and .../open?id=<id>
PATH_ID_PATTERN = re.compile(r'/d/([A-Za-z0-9_-]+)')


def is_resource_id(value: str) -> bool:
    """Check whether a string is a well-formed bare resource id."""
    return bool(RESOURCE_ID_PATTERN.match(value or ''))


def resolve_resource_id(value: Optional[str], default_id: str) -> str:
    """
    Resolve an empty string, bare id or URL into a canonical resource id.

    Empty input resolves to ``default_id``. URLs must carry the id either as a
    ``/d/<id>`` path segment or as an ``id`` query parameter.
    """
    reference = (value or '').strip()

    if not reference:
        return default_id

    if reference.lower().startswith(('http://', 'https://')):
        candidate = _extract_from_url(reference)
        if candidate is None:
            raise ValidationError(f"Unrecognized resource URL: {reference}")
    else:
        candidate = reference

    if not is_resource_id(candidate):
        raise ValidationError(
            f"Invalid resource id '{candidate}': expected {RESOURCE_ID_LENGTH} "
            f"letters, digits, '-' or '_'"
        )

    return candidate


def _extract_from_url(url: str) -> Optional[str]:
    parsed = urlparse(url)

    match = PATH_ID_PATTERN.search(parsed.path)
    if match:
        return match.group(1)

    ids = parse_qs(parsed.query).get('id')
    if ids:
        return ids[0]

    return None
