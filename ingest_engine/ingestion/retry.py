"""
Bounded exponential-backoff retry around flaky remote reads and writes.
"""

import logging
import random
import re
import time
from typing import Any, Callable, Optional, TypeVar

from tenacity import Retrying, retry_if_exception, stop_after_attempt

from ingest_engine.errors import (
    IngestCancelled,
    TransientIOError,
    ValidationError,
    VerificationFailure,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

TRANSIENT_KEYWORDS = (
    'timeout',
    'timed out',
    'rate limit',
    'quota',
    'service unavailable',
    'temporarily unavailable',
    'connection reset',
    'connection refused',
    'try again',
    'too many requests',
    'internal error',
    'backend error',
    'database is locked',
)

TRANSIENT_STATUS_CODES = re.compile(r'\b(?:429|503)\b')


def is_transient_error(error: BaseException) -> bool:
    """Classify an error as transient (retryable) or fatal."""
    if isinstance(error, TransientIOError):
        return True
    if isinstance(error, (ValidationError, VerificationFailure, IngestCancelled)):
        return False
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    message = str(error).lower()
    if any(keyword in message for keyword in TRANSIENT_KEYWORDS):
        return True
    return bool(TRANSIENT_STATUS_CODES.search(message))


class RetryExecutor:
    """Runs an operation, retrying transient failures with jittered backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.sleep = sleep
        self.rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings, **kwargs) -> 'RetryExecutor':
        """Build an executor from EngineSettings."""
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
            **kwargs
        )

    def backoff_delay(self, attempt: int, base_delay: float) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        delay = base_delay * (2 ** (attempt - 1))
        if self.jitter > 0:
            delay += self.rng.uniform(0, self.jitter)
        return min(delay, self.max_delay)

    def run(
        self,
        operation: Callable[[], T],
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        description: str = 'operation',
    ) -> T:
        """
        Run ``operation`` and return its result.

        Fatal errors are re-raised immediately. Transient errors are retried
        until ``max_attempts`` is reached, after which the last error is
        re-raised.
        """
        attempts = max_attempts or self.max_attempts
        delay = self.base_delay if base_delay is None else base_delay

        retryer = Retrying(
            stop=stop_after_attempt(attempts),
            wait=lambda state: self.backoff_delay(state.attempt_number, delay),
            retry=retry_if_exception(is_transient_error),
            sleep=self.sleep,
            before_sleep=lambda state: self._log_retry(state, description, attempts),
            reraise=True,
        )
        return retryer(operation)

    def _log_retry(self, retry_state: Any, description: str, attempts: int) -> None:
        error = retry_state.outcome.exception()
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"Transient failure in {description} "
            f"(attempt {retry_state.attempt_number}/{attempts}): {error}; "
            f"retrying in {wait:.2f}s"
        )
