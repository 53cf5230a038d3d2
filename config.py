"""
config.py: Settings for share-link access control.

Everything the evaluator, attempt tracker and audit logger need is carried on
an AccessControlConfig instance that is passed in at construction time, so
tests can build one directly without touching the environment.
"""
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from dotenv import load_dotenv

load_dotenv()

# Stored hashes carry no iteration count, so this can never change for existing records
PBKDF2_ITERATIONS = 10000


def utcnow() -> datetime:
    """Naive UTC now. Every timestamp in the store is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass
class AccessControlConfig:
    max_attempts: int = 5
    lockout_minutes: int = 30
    attempt_retention_hours: int = 24
    default_log_limit: int = 50
    max_log_limit: int = 1000
    max_export_items: int = 10000
    log_retention_days: int = 90
    max_ip_rules: int = 100
    clock: Callable[[], datetime] = utcnow

    def now(self) -> datetime:
        return self.clock()


def load_config() -> AccessControlConfig:
    return AccessControlConfig(
        max_attempts=_env_int("MAX_ACCESS_ATTEMPTS", 5),
        lockout_minutes=_env_int("LOCKOUT_MINUTES", 30),
        attempt_retention_hours=_env_int("ATTEMPT_RETENTION_HOURS", 24),
        default_log_limit=_env_int("DEFAULT_LOG_LIMIT", 50),
        max_log_limit=_env_int("MAX_LOG_LIMIT", 1000),
        max_export_items=_env_int("MAX_EXPORT_ITEMS", 10000),
        log_retention_days=_env_int("ACCESS_LOG_RETENTION_DAYS", 90),
        max_ip_rules=_env_int("MAX_IP_RESTRICTIONS", 100),
    )


def as_naive_utc(dt: datetime) -> datetime:
    """Aware datetimes are converted to UTC and stripped; naive ones are assumed UTC."""
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt
