from sqlalchemy import Column, Integer, String, DateTime, BigInteger, Boolean, JSON, ForeignKey, Index
from sqlalchemy.sql import func
from database import Base


# ─────────────────────────────────────────────────────────────
# File Group (the shareable unit behind a link)
# ─────────────────────────────────────────────────────────────
class FileGroup(Base):
    __tablename__ = "file_groups"

    group_id = Column(String, primary_key=True, index=True)
    owner_id = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, server_default=func.now())
    expiration_date = Column(DateTime, nullable=False)
    is_password_protected = Column(Boolean, default=False, nullable=False)
    access_permission_id = Column(String, nullable=True)


# ─────────────────────────────────────────────────────────────
# Access Permission (protection settings for one group)
# ─────────────────────────────────────────────────────────────
class AccessPermission(Base):
    __tablename__ = "access_permissions"

    permission_id = Column(String, primary_key=True, index=True)
    group_id = Column(String, ForeignKey("file_groups.group_id"), nullable=False, index=True)
    expiration_date = Column(DateTime, nullable=False)
    password_hash = Column(String, nullable=True)
    password_salt = Column(String, nullable=True)   # null + hash present = legacy base64 record
    allowed_emails = Column(JSON, nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


# ─────────────────────────────────────────────────────────────
# IP Restriction (keyed by permission id, replaced wholesale)
# ─────────────────────────────────────────────────────────────
class IpRestriction(Base):
    __tablename__ = "ip_restrictions"

    permission_id = Column(String, primary_key=True)
    enabled = Column(Boolean, default=False, nullable=False)
    allowed_ips = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime, nullable=True)


# ─────────────────────────────────────────────────────────────
# Access Attempts (keyed by "groupId:ipAddress")
# ─────────────────────────────────────────────────────────────
class AccessAttempt(Base):
    __tablename__ = "access_attempts"

    attempt_id = Column(String, primary_key=True)
    group_id = Column(String, nullable=False)
    ip_address = Column(String, nullable=False)
    attempt_count = Column(Integer, default=0, nullable=False)
    first_attempt = Column(DateTime, nullable=False)
    last_attempt = Column(DateTime, nullable=False)
    is_locked = Column(Boolean, default=False, nullable=False)
    lock_expiry = Column(DateTime, nullable=True)


# ─────────────────────────────────────────────────────────────
# Access Log (append-only, "groupId:epochMillis:randomHex")
# ─────────────────────────────────────────────────────────────
class AccessLog(Base):
    __tablename__ = "file_access_logs"
    __table_args__ = (Index("ix_access_logs_group_timestamp", "group_id", "timestamp"),)

    log_id = Column(String, primary_key=True)
    group_id = Column(String, nullable=False)
    file_id = Column(String, nullable=True)
    user_id = Column(String, nullable=False, default="anonymous")
    ip_address = Column(String, nullable=False)     # masked before insert
    action = Column(String, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    meta_data = Column(JSON, nullable=True)         # sanitized before insert
    ttl = Column(BigInteger, nullable=True)         # epoch seconds
