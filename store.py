"""
store.py: Persistence for share access control.

AccessStore wraps one SQLAlchemy session and exposes keyed get/put/delete
operations per table. It does no policy work; attempts.py, audit.py and
access_control.py decide what to write.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ip_filter import canonical_address
import models


def attempt_key(group_id: str, ip_address: str) -> str:
    return f"{group_id}:{canonical_address(ip_address)}"


class AccessStore:

    def __init__(self, db: Session):
        self.db = db

    # ─── Groups / permissions ────────────────────────────────

    def get_group(self, group_id: str) -> Optional[models.FileGroup]:
        return self.db.get(models.FileGroup, group_id)

    def get_permission(self, permission_id: Optional[str]) -> Optional[models.AccessPermission]:
        if not permission_id:
            return None
        return self.db.get(models.AccessPermission, permission_id)

    def add_share(self, group: models.FileGroup, permission: models.AccessPermission,
                  restriction: Optional[models.IpRestriction] = None):
        self.db.add(group)
        self.db.add(permission)
        if restriction is not None:
            self.db.add(restriction)
        self.db.commit()

    def set_expiration(self, group: models.FileGroup, expiration_date: datetime):
        group.expiration_date = expiration_date
        permission = self.get_permission(group.access_permission_id)
        if permission is not None:
            permission.expiration_date = expiration_date
        self.db.commit()

    def set_password_hash(self, permission_id: str, password_hash: str, password_salt: str):
        self.db.execute(
            update(models.AccessPermission)
            .where(models.AccessPermission.permission_id == permission_id)
            .values(password_hash=password_hash, password_salt=password_salt)
        )
        self.db.commit()

    # ─── IP restrictions ─────────────────────────────────────

    def get_ip_restriction(self, permission_id: Optional[str]) -> Optional[models.IpRestriction]:
        if not permission_id:
            return None
        return self.db.get(models.IpRestriction, permission_id)

    def put_ip_restriction(self, permission_id: str, enabled: bool, allowed_ips: List[str],
                           updated_at: datetime) -> models.IpRestriction:
        restriction = self.get_ip_restriction(permission_id)
        if restriction is None:
            restriction = models.IpRestriction(permission_id=permission_id)
            self.db.add(restriction)
        restriction.enabled = enabled
        restriction.allowed_ips = list(allowed_ips)
        restriction.updated_at = updated_at
        self.db.commit()
        return restriction

    # ─── Attempts ────────────────────────────────────────────

    def get_attempt(self, group_id: str, ip_address: str) -> Optional[models.AccessAttempt]:
        return self.db.get(models.AccessAttempt, attempt_key(group_id, ip_address))

    def increment_attempt(self, group_id: str, ip_address: str, now: datetime) -> models.AccessAttempt:
        """Atomically add one failure, creating the row on first use."""
        key = attempt_key(group_id, ip_address)
        result = self.db.execute(
            update(models.AccessAttempt)
            .where(models.AccessAttempt.attempt_id == key)
            .values(attempt_count=models.AccessAttempt.attempt_count + 1, last_attempt=now)
        )
        if result.rowcount == 0:
            try:
                self.db.add(models.AccessAttempt(
                    attempt_id=key, group_id=group_id, ip_address=canonical_address(ip_address),
                    attempt_count=1, first_attempt=now, last_attempt=now,
                    is_locked=False, lock_expiry=None,
                ))
                self.db.flush()
            except IntegrityError:
                # Another request created it first; count on top of theirs
                self.db.rollback()
                self.db.execute(
                    update(models.AccessAttempt)
                    .where(models.AccessAttempt.attempt_id == key)
                    .values(attempt_count=models.AccessAttempt.attempt_count + 1, last_attempt=now)
                )
        self.db.commit()
        return self._reload_attempt(key)

    def lock_attempt(self, group_id: str, ip_address: str, threshold: int,
                     lock_expiry: datetime) -> models.AccessAttempt:
        """Lock the row if it reached the threshold and is not locked yet."""
        key = attempt_key(group_id, ip_address)
        self.db.execute(
            update(models.AccessAttempt)
            .where(
                models.AccessAttempt.attempt_id == key,
                models.AccessAttempt.attempt_count >= threshold,
                models.AccessAttempt.is_locked.is_(False),
            )
            .values(is_locked=True, lock_expiry=lock_expiry)
        )
        self.db.commit()
        return self._reload_attempt(key)

    def delete_attempt(self, group_id: str, ip_address: str):
        attempt = self.get_attempt(group_id, ip_address)
        if attempt is not None:
            self.db.delete(attempt)
            self.db.commit()

    def _reload_attempt(self, key: str) -> Optional[models.AccessAttempt]:
        return self.db.get(models.AccessAttempt, key, populate_existing=True)

    # ─── Access logs ─────────────────────────────────────────

    def add_log(self, entry: models.AccessLog):
        self.db.add(entry)
        self.db.commit()

    def query_logs(self, group_id: str, limit: int,
                   after: Optional[tuple[datetime, str]] = None) -> List[models.AccessLog]:
        """Newest first. `after` is the (timestamp, log_id) of the last row already seen."""
        query = self.db.query(models.AccessLog).filter(models.AccessLog.group_id == group_id)
        if after is not None:
            ts, log_id = after
            query = query.filter(or_(
                models.AccessLog.timestamp < ts,
                and_(models.AccessLog.timestamp == ts, models.AccessLog.log_id < log_id),
            ))
        return (
            query.order_by(models.AccessLog.timestamp.desc(), models.AccessLog.log_id.desc())
            .limit(limit)
            .all()
        )

    def query_logs_between(self, group_id: str, start: datetime, end: datetime,
                           limit: int) -> List[models.AccessLog]:
        return (
            self.db.query(models.AccessLog)
            .filter(
                models.AccessLog.group_id == group_id,
                models.AccessLog.timestamp >= start,
                models.AccessLog.timestamp <= end,
            )
            .order_by(models.AccessLog.timestamp.asc(), models.AccessLog.log_id.asc())
            .limit(limit)
            .all()
        )

    def delete_logs_expired_before(self, epoch_seconds: int) -> int:
        deleted = (
            self.db.query(models.AccessLog)
            .filter(models.AccessLog.ttl.isnot(None), models.AccessLog.ttl < epoch_seconds)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted

    def rollback(self):
        self.db.rollback()
