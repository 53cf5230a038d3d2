"""
attempts.py: Failed-password counting and time-boxed lockout per (group, requester IP).

Lock expiry is evaluated lazily: nothing sweeps the table, so a row can still
say is_locked=True after its lock_expiry. Always ask is_currently_locked()
instead of trusting the stored flag.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from config import AccessControlConfig
from store import AccessStore
import models

logger = logging.getLogger(__name__)


def is_currently_locked(attempt: Optional[models.AccessAttempt], now: datetime) -> bool:
    """Locked iff flagged and now is strictly before lock_expiry."""
    if attempt is None or not attempt.is_locked:
        return False
    if attempt.lock_expiry is None:
        return False
    return now < attempt.lock_expiry


def is_lock_lapsed(attempt: Optional[models.AccessAttempt], now: datetime) -> bool:
    return bool(attempt is not None and attempt.is_locked and not is_currently_locked(attempt, now))


class AttemptTracker:

    def __init__(self, store: AccessStore, config: AccessControlConfig):
        self.store = store
        self.config = config

    def get(self, group_id: str, ip_address: str) -> Optional[models.AccessAttempt]:
        """Current record, with lapsed locks and stale counters cleared."""
        attempt = self.store.get_attempt(group_id, ip_address)
        if attempt is None:
            return None
        now = self.config.now()
        if is_lock_lapsed(attempt, now):
            logger.info(f"Lock lapsed for group {group_id}; clearing attempt record")
            self.reset(group_id, ip_address)
            return None
        retention = timedelta(hours=self.config.attempt_retention_hours)
        if not attempt.is_locked and attempt.last_attempt and now - attempt.last_attempt > retention:
            self.reset(group_id, ip_address)
            return None
        return attempt

    def remaining(self, attempt: Optional[models.AccessAttempt]) -> int:
        if attempt is None:
            return self.config.max_attempts
        return max(0, self.config.max_attempts - attempt.attempt_count)

    def record_failure(self, group_id: str, ip_address: str) -> models.AccessAttempt:
        now = self.config.now()
        attempt = self.store.increment_attempt(group_id, ip_address, now)
        if attempt.attempt_count >= self.config.max_attempts and not attempt.is_locked:
            lock_expiry = now + timedelta(minutes=self.config.lockout_minutes)
            attempt = self.store.lock_attempt(
                group_id, ip_address, self.config.max_attempts, lock_expiry
            )
            logger.info(
                f"Group {group_id} locked for a requester after {attempt.attempt_count} "
                f"failed attempts, until {attempt.lock_expiry.isoformat()}"
            )
        return attempt

    def reset(self, group_id: str, ip_address: str):
        """Delete the record. Failure only affects future throttling, so it is logged and dropped."""
        try:
            self.store.delete_attempt(group_id, ip_address)
        except Exception as e:
            logger.error(f"Error resetting attempts for group {group_id}: {e}")
            self.store.rollback()
