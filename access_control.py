"""
access_control.py: Decides whether a requester may open a share link.

verify_access() walks a fixed sequence of checks:

    lock -> IP allow-list -> group -> permission -> expiry -> password

and stops at the first one that denies. Every denial is an ordinary
VerificationResult; only storage failures raise. Each outcome is written to
the access log before returning, and a failed log write never changes it.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from attempts import AttemptTracker, is_currently_locked
from audit import AuditLogger
from config import AccessControlConfig, as_naive_utc
from ip_filter import IpCheck, check_ip, normalize_rules
from schemas import ReasonCode, ResourceSummary, VerificationResult
from security import (
    LegacyPassword,
    create_password_protection,
    hash_password,
    password_record_from,
    verify_record,
)
from store import AccessStore
import models

logger = logging.getLogger(__name__)

MESSAGES = {
    ReasonCode.GRANTED: "Access granted",
    ReasonCode.NOT_PROTECTED: "This share is not password protected",
    ReasonCode.LOCKED: "Access is locked after too many failed attempts",
    ReasonCode.IP_NOT_ALLOWED: "Access from this IP address is not allowed",
    ReasonCode.RESOURCE_NOT_FOUND: "File group not found",
    ReasonCode.PERMISSION_NOT_FOUND: "Access permission not found",
    ReasonCode.EXPIRED: "This link has expired",
    ReasonCode.PASSWORD_REQUIRED: "A password is required",
    ReasonCode.INVALID_PASSWORD: "Incorrect password",
}


def _summary(group: models.FileGroup) -> ResourceSummary:
    return ResourceSummary(resource_id=group.group_id, expiration_date=group.expiration_date)


def _result(reason: ReasonCode, success: bool = False, **fields) -> VerificationResult:
    return VerificationResult(success=success, message=MESSAGES[reason], reason_code=reason, **fields)


class AccessEvaluator:

    def __init__(self, store: AccessStore, config: AccessControlConfig):
        self.store = store
        self.config = config
        self.attempts = AttemptTracker(store, config)
        self.audit = AuditLogger(store, config)

    # ─── Verification ─────────────────────────────────────

    def verify_access(self, group_id: str, password: Optional[str], ip_address: str) -> VerificationResult:
        result = self._evaluate(group_id, password, ip_address)
        self._log_outcome(group_id, ip_address, result)
        return result

    def _evaluate(self, group_id: str, password: Optional[str], ip_address: str) -> VerificationResult:
        now = self.config.now()
        max_attempts = self.config.max_attempts

        # Lock check. A lapsed lock is cleared by the tracker and comes back as None.
        attempt = self.store.get_attempt(group_id, ip_address)
        if is_currently_locked(attempt, now):
            return _result(
                ReasonCode.LOCKED,
                remaining_attempts=0,
                is_locked=True,
                lock_expiry=attempt.lock_expiry,
            )
        attempt = self.attempts.get(group_id, ip_address)

        # IP allow-list, resolved through the group's permission
        group = self.store.get_group(group_id)
        permission_id = group.access_permission_id if group is not None else None
        ip_check = self._check_ip(ip_address, permission_id)
        if not ip_check.allowed:
            return _result(ReasonCode.IP_NOT_ALLOWED, remaining_attempts=max_attempts)

        if group is None:
            return _result(ReasonCode.RESOURCE_NOT_FOUND, remaining_attempts=max_attempts)

        if not group.is_password_protected:
            return _result(ReasonCode.NOT_PROTECTED, success=True, resource_summary=_summary(group))

        permission = self.store.get_permission(permission_id)
        if permission is None:
            return _result(ReasonCode.PERMISSION_NOT_FOUND, remaining_attempts=max_attempts)

        if now > permission.expiration_date:
            return _result(ReasonCode.EXPIRED, remaining_attempts=max_attempts)

        if not password:
            return _result(ReasonCode.PASSWORD_REQUIRED, remaining_attempts=self.attempts.remaining(attempt))

        record = password_record_from(permission.password_hash, permission.password_salt)
        if verify_record(password, record):
            self.attempts.reset(group_id, ip_address)
            if isinstance(record, LegacyPassword):
                self._upgrade_legacy_hash(permission.permission_id, group_id, password)
            return _result(ReasonCode.GRANTED, success=True, resource_summary=_summary(group))

        failed = self.attempts.record_failure(group_id, ip_address)
        return _result(
            ReasonCode.INVALID_PASSWORD,
            remaining_attempts=self.attempts.remaining(failed),
            is_locked=bool(failed.is_locked),
            lock_expiry=failed.lock_expiry,
        )

    def _check_ip(self, ip_address: str, permission_id: Optional[str]) -> IpCheck:
        # Errors here allow the request (IpCheck.ALLOWED_ON_ERROR). The password
        # check below fails closed.
        try:
            restriction = self.store.get_ip_restriction(permission_id)
        except Exception as e:
            logger.error(f"Could not load IP restriction {permission_id}, allowing request: {e}")
            self.store.rollback()
            return IpCheck.ALLOWED_ON_ERROR
        return check_ip(ip_address, restriction)

    def _upgrade_legacy_hash(self, permission_id: str, group_id: str, password: str):
        """Best effort: the caller has already been granted access."""
        try:
            password_hash, salt = hash_password(password)
            self.store.set_password_hash(permission_id, password_hash, salt)
            logger.info(f"Updated password hash for group {group_id} to salted format")
        except Exception as e:
            logger.error(f"Error updating password hash format for group {group_id}: {e}")
            self.store.rollback()

    def _log_outcome(self, group_id: str, ip_address: str, result: VerificationResult):
        try:
            self.audit.record(
                group_id,
                ip_address,
                action="verify",
                metadata={
                    "success": result.success,
                    "reasonCode": result.reason_code.value,
                    "isLocked": bool(result.is_locked),
                },
            )
        except Exception as e:
            logger.error(f"Access log write failed for group {group_id}: {e}")

    # ─── Settings ─────────────────────────────────────

    def update_ip_restriction(self, permission_id: str, enabled: bool, allowed_rules) -> dict:
        rules = normalize_rules(allowed_rules, limit=self.config.max_ip_rules)
        self.store.put_ip_restriction(permission_id, enabled is True, rules, self.config.now())
        return {
            "success": True,
            "message": "IP restriction settings updated",
            "normalized_rules": rules,
        }

    def get_ip_restriction(self, permission_id: str) -> Optional[models.IpRestriction]:
        return self.store.get_ip_restriction(permission_id)

    def create_protection(self, password: Optional[str]) -> dict:
        return create_password_protection(password)

    def create_share(
        self,
        owner_id: str,
        expiration_date: datetime,
        password: Optional[str] = None,
        allowed_emails=None,
        ip_enabled: bool = False,
        ip_rules=None,
    ) -> models.FileGroup:
        """Create the group, its permission and (optionally) an IP restriction."""
        expiration_date = as_naive_utc(expiration_date)
        protection = self.create_protection(password)
        group_id = str(uuid.uuid4())
        permission_id = str(uuid.uuid4())
        now = self.config.now()

        group = models.FileGroup(
            group_id=group_id,
            owner_id=owner_id,
            created_at=now,
            expiration_date=expiration_date,
            is_password_protected=protection["is_password_protected"],
            access_permission_id=permission_id,
        )
        permission = models.AccessPermission(
            permission_id=permission_id,
            group_id=group_id,
            expiration_date=expiration_date,
            password_hash=protection["password_hash"],
            password_salt=protection["password_salt"],
            allowed_emails=list(allowed_emails or []),
            created_by=owner_id,
            created_at=now,
        )
        restriction = None
        if ip_enabled or ip_rules:
            restriction = models.IpRestriction(
                permission_id=permission_id,
                enabled=ip_enabled is True,
                allowed_ips=normalize_rules(ip_rules or [], limit=self.config.max_ip_rules),
                updated_at=now,
            )
        self.store.add_share(group, permission, restriction)
        logger.info(f"Created share {group_id} for owner {owner_id}")
        return group

    def update_expiration(self, group_id: str, expiration_date: datetime) -> Optional[models.FileGroup]:
        group = self.store.get_group(group_id)
        if group is None:
            return None
        self.store.set_expiration(group, as_naive_utc(expiration_date))
        return group
