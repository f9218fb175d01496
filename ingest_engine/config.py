"""
Engine configuration loaded from the environment.
"""

import os
from typing import Optional

import pytz
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'y', 'on')


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value and value.strip() else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value and value.strip() else default


class EngineSettings(BaseModel):
    """Runtime settings for the rule execution engine."""

    storage_backend: str = 'sqlite'
    workbook_dir: str = 'data/workbooks'
    database_url: Optional[str] = None
    default_workbook_id: str = 'local-control-workbook-000000000000000000000'
    process_state_db: str = 'data/process_state.db'
    timezone: str = 'UTC'

    rules_table: str = 'Ingest Rules'
    log_table: str = 'Ingest Logs'
    verification_table: str = 'Verification Log'
    diagnostics_table: str = 'Verification Diagnostics'

    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_jitter: float = 1.0

    batch_size: int = 500
    batch_pause_seconds: float = 0.0

    verify_row_count: bool = True
    verify_column_count: bool = True
    verify_samples: bool = True
    verify_sample_interior: int = 3
    verify_seed: Optional[int] = None

    log_max_entries: int = 5000
    status_message_limit: int = 500
    max_backups: int = 3
    process_ttl_seconds: int = 6 * 60 * 60

    @field_validator('storage_backend')
    @classmethod
    def validate_backend(cls, v):
        v = v.strip().lower()
        if v not in ('sqlite', 'postgres'):
            raise ValueError(f"Unsupported storage backend: {v}")
        return v

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v):
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @field_validator('retry_max_attempts', 'batch_size')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError('Value must be at least 1')
        return v

    @property
    def tz(self):
        """Timezone used for log and status timestamps."""
        return pytz.timezone(self.timezone)

    @classmethod
    def from_env(cls) -> 'EngineSettings':
        """Build settings from environment variables (and a .env file)."""
        seed = os.getenv('VERIFY_SEED')
        return cls(
            storage_backend=os.getenv('STORAGE_BACKEND', 'sqlite'),
            workbook_dir=os.getenv('WORKBOOK_DIR', 'data/workbooks'),
            database_url=os.getenv('DATABASE_URL'),
            default_workbook_id=os.getenv(
                'DEFAULT_WORKBOOK_ID', 'local-control-workbook-000000000000000000000'
            ),
            process_state_db=os.getenv('PROCESS_STATE_DB', 'data/process_state.db'),
            timezone=os.getenv('TIMEZONE', 'UTC'),
            rules_table=os.getenv('RULES_TABLE', 'Ingest Rules'),
            log_table=os.getenv('LOG_TABLE', 'Ingest Logs'),
            verification_table=os.getenv('VERIFICATION_TABLE', 'Verification Log'),
            diagnostics_table=os.getenv('DIAGNOSTICS_TABLE', 'Verification Diagnostics'),
            retry_max_attempts=_env_int('RETRY_MAX_ATTEMPTS', 3),
            retry_base_delay=_env_float('RETRY_BASE_DELAY', 1.0),
            retry_max_delay=_env_float('RETRY_MAX_DELAY', 30.0),
            retry_jitter=_env_float('RETRY_JITTER', 1.0),
            batch_size=_env_int('BATCH_SIZE', 500),
            batch_pause_seconds=_env_float('BATCH_PAUSE_SECONDS', 0.0),
            verify_row_count=_env_bool('VERIFY_ROW_COUNT', True),
            verify_column_count=_env_bool('VERIFY_COLUMN_COUNT', True),
            verify_samples=_env_bool('VERIFY_SAMPLES', True),
            verify_sample_interior=_env_int('VERIFY_SAMPLE_INTERIOR', 3),
            verify_seed=int(seed) if seed and seed.strip() else None,
            log_max_entries=_env_int('LOG_MAX_ENTRIES', 5000),
            status_message_limit=_env_int('STATUS_MESSAGE_LIMIT', 500),
            max_backups=_env_int('MAX_BACKUPS', 3),
            process_ttl_seconds=_env_int('PROCESS_TTL_SECONDS', 6 * 60 * 60),
        )
