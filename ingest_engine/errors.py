"""
Error taxonomy for the ingestion engine.

A rule-level failure of any of these types is caught at the orchestrator
boundary; it never aborts the rest of the session.
"""


class IngestError(Exception):
    """Base class for all ingestion engine errors."""


class ValidationError(IngestError):
    """Bad rule configuration or malformed reference, raised before any write."""


class SourceNotFound(ValidationError):
    """A referenced source table or workbook does not exist."""


class TransientIOError(IngestError):
    """A remote read or write failed in a way that is worth retrying."""


class VerificationFailure(IngestError):
    """Post-write verification found a mismatch between source and destination."""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class ResourceSystemError(IngestError):
    """A destination resource could not be created, renamed or replaced."""


class IngestCancelled(IngestError):
    """A cooperative cancellation was requested while a rule was running."""
