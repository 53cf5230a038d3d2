import enum
from datetime import datetime, timezone
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel


def _utc_iso(dt: datetime) -> str:
    # Stored values are naive UTC
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat(timespec="milliseconds") + "Z"


UtcDatetime = Annotated[datetime, PlainSerializer(_utc_iso, return_type=str, when_used="json")]


class CamelModel(BaseModel):
    """Wire shapes use camelCase keys; Python code uses snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReasonCode(str, enum.Enum):
    GRANTED = "granted"
    NOT_PROTECTED = "not_protected"
    LOCKED = "locked"
    IP_NOT_ALLOWED = "ip_not_allowed"
    RESOURCE_NOT_FOUND = "resource_not_found"
    PERMISSION_NOT_FOUND = "permission_not_found"
    EXPIRED = "expired"
    PASSWORD_REQUIRED = "password_required"
    INVALID_PASSWORD = "invalid_password"


class ResourceSummary(CamelModel):
    resource_id: str
    expiration_date: UtcDatetime


class VerificationResult(CamelModel):
    success: bool
    message: str
    reason_code: ReasonCode
    remaining_attempts: Optional[int] = None
    is_locked: Optional[bool] = None
    lock_expiry: Optional[UtcDatetime] = None
    resource_summary: Optional[ResourceSummary] = None


class VerifyAccessRequest(BaseModel):
    password: Optional[str] = None


class IpRestrictionUpdate(CamelModel):
    enabled: bool = False
    # Raw entries; anything that is not a usable rule is dropped, not rejected
    allowed_rules: List[Any] = Field(default_factory=list)


class IpRestrictionResult(CamelModel):
    success: bool
    message: str
    normalized_rules: List[str]


class IpRestrictionOut(CamelModel):
    permission_id: str
    enabled: bool
    allowed_rules: List[str]
    updated_at: Optional[UtcDatetime] = None


class PasswordProtection(CamelModel):
    is_password_protected: bool
    password_hash: Optional[str] = None
    password_salt: Optional[str] = None


class CreateShareRequest(CamelModel):
    expiration_date: UtcDatetime
    password: Optional[str] = None
    allowed_emails: List[str] = Field(default_factory=list)
    ip_restriction: Optional[IpRestrictionUpdate] = None


class ShareOut(CamelModel):
    resource_id: str
    permission_id: str
    expiration_date: UtcDatetime
    is_password_protected: bool


class UpdateExpirationRequest(CamelModel):
    expiration_date: UtcDatetime


class AccessLogPage(CamelModel):
    entries: List[dict]
    next_page_token: Optional[str] = None
