import base64
import binascii
import calendar
import ipaddress
import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional, Union

from config import AccessControlConfig, as_naive_utc
from store import AccessStore
import models

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = frozenset({"password", "passwordHash", "passwordSalt", "token", "credentials", "secret"})

EPOCH = datetime(1970, 1, 1)


def mask_ip(ip_address: Optional[str]) -> str:
    """Hide the host part: last IPv4 octet, or the last four IPv6 groups."""
    if not ip_address or ip_address == "unknown":
        return "unknown"
    try:
        address = ipaddress.ip_address(ip_address)
    except ValueError:
        return "unknown"
    if address.version == 4:
        parts = str(address).split(".")
        parts[-1] = "xxx"
        return ".".join(parts)
    # Read groups from the packed form; the text may be compressed ("2001:db8::1")
    packed = address.packed
    groups = [format(int.from_bytes(packed[i:i + 2], "big"), "x") for i in range(0, 8, 2)]
    return ":".join(groups) + ":xxxx:xxxx:xxxx:xxxx"


def sanitize_metadata(metadata: Optional[dict]) -> dict:
    if not metadata:
        return {}
    return {k: v for k, v in metadata.items() if k not in SENSITIVE_KEYS}


def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat(timespec="milliseconds") + "Z"


def _epoch_millis(dt: datetime) -> int:
    return calendar.timegm(dt.utctimetuple()) * 1000 + dt.microsecond // 1000


def new_log_id(group_id: str, now: datetime) -> str:
    return f"{group_id}:{_epoch_millis(now)}:{secrets.token_hex(16)}"


def entry_to_dict(log: models.AccessLog) -> dict:
    """Flat entry: metadata first so the fixed fields always win on key clashes."""
    entry = sanitize_metadata(log.meta_data)
    entry.update({
        "logId": log.log_id,
        "groupId": log.group_id,
        "timestamp": iso(log.timestamp),
        "ipAddress": log.ip_address,
        "userId": log.user_id,
        "action": log.action,
    })
    if log.file_id:
        entry["fileId"] = log.file_id
    if log.ttl is not None:
        entry["ttl"] = log.ttl
    return entry


def encode_page_token(log: models.AccessLog) -> str:
    cursor = {"timestamp": log.timestamp.isoformat(), "logId": log.log_id}
    return base64.urlsafe_b64encode(json.dumps(cursor).encode("utf-8")).decode("ascii")


def decode_page_token(token: str) -> tuple[datetime, str]:
    cursor = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
    ts = parse_timestamp(cursor["timestamp"])
    log_id = cursor["logId"]
    if ts is None or not isinstance(log_id, str):
        raise ValueError("incomplete cursor")
    return ts, log_id


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """ISO-8601 string or datetime -> naive UTC datetime, None if unusable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    return as_naive_utc(dt)


class AuditLogger:

    def __init__(self, store: AccessStore, config: AccessControlConfig):
        self.store = store
        self.config = config

    def record(
        self,
        group_id: str,
        ip_address: Optional[str],
        action: str = "access",
        file_id: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[dict]:
        """
        Append one access event. Returns the stored entry, or None if it
        could not be written; a logging outage must not block access decisions.
        """
        try:
            now = self.config.now()
            now = now.replace(microsecond=now.microsecond // 1000 * 1000)
            ttl = calendar.timegm((now + timedelta(days=self.config.log_retention_days)).utctimetuple())
            log = models.AccessLog(
                log_id=new_log_id(group_id, now),
                group_id=group_id,
                file_id=file_id,
                user_id=user_id or "anonymous",
                ip_address=mask_ip(ip_address),
                action=action or "access",
                timestamp=now,
                meta_data=sanitize_metadata(metadata),
                ttl=ttl,
            )
            self.store.add_log(log)
            return entry_to_dict(log)
        except Exception as e:
            logger.error(f"Error recording access log for group {group_id}: {e}")
            try:
                self.store.rollback()
            except Exception:
                logger.exception("Rollback after failed access log write also failed")
            return None

    def list_logs(self, group_id: str, limit: Optional[int] = None,
                  page_token: Optional[str] = None) -> dict:
        """Newest-first page of entries plus an opaque token for the next page."""
        if limit is None:
            limit = self.config.default_log_limit
        limit = min(max(1, int(limit)), self.config.max_log_limit)

        after = None
        if page_token:
            try:
                after = decode_page_token(page_token)
            except (ValueError, KeyError, TypeError, binascii.Error, UnicodeError) as e:
                logger.warning(f"Invalid page token ({type(e).__name__}); starting from the newest entry")

        rows = self.store.query_logs(group_id, limit + 1, after)
        next_token = None
        if len(rows) > limit:
            rows = rows[:limit]
            next_token = encode_page_token(rows[-1])
        return {
            "entries": [entry_to_dict(row) for row in rows],
            "next_page_token": next_token,
        }

    def export_logs(self, group_id: str, start=None, end=None) -> list:
        """Oldest-first entries in [start, end], capped at max_export_items."""
        start_dt = parse_timestamp(start)
        if start_dt is None:
            if start:
                logger.warning("Invalid start date provided, using epoch time instead")
            start_dt = EPOCH
        end_dt = parse_timestamp(end)
        if end_dt is None:
            if end:
                logger.warning("Invalid end date provided, using current time instead")
            end_dt = self.config.now()

        cap = self.config.max_export_items
        rows = self.store.query_logs_between(group_id, start_dt, end_dt, cap)
        if len(rows) >= cap:
            logger.warning(f"Export limit of {cap} items reached for group {group_id}")
        return [entry_to_dict(row) for row in rows]

    def purge_expired(self) -> int:
        """Delete entries whose ttl has passed."""
        now_epoch = calendar.timegm(self.config.now().utctimetuple())
        deleted = self.store.delete_logs_expired_before(now_epoch)
        if deleted:
            logger.info(f"Purged {deleted} expired access log entries")
        return deleted
