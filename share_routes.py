# share_routes.py

from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from access_control import AccessEvaluator
from auth import get_current_user
from config import AccessControlConfig, load_config
from database import get_db
from schemas import (
    AccessLogPage,
    CreateShareRequest,
    IpRestrictionOut,
    IpRestrictionResult,
    IpRestrictionUpdate,
    ReasonCode,
    ShareOut,
    UpdateExpirationRequest,
    VerifyAccessRequest,
)
from store import AccessStore

router = APIRouter(prefix="/share", tags=["Share Access"])

STATUS_BY_REASON = {
    ReasonCode.GRANTED: 200,
    ReasonCode.NOT_PROTECTED: 200,
    ReasonCode.LOCKED: 403,
    ReasonCode.IP_NOT_ALLOWED: 403,
    ReasonCode.INVALID_PASSWORD: 401,
    ReasonCode.PASSWORD_REQUIRED: 401,
    ReasonCode.RESOURCE_NOT_FOUND: 404,
    ReasonCode.PERMISSION_NOT_FOUND: 404,
    ReasonCode.EXPIRED: 410,
}

# ─── DEPENDENCIES ─────────────────────────────────────────────

@lru_cache(maxsize=1)
def get_config() -> AccessControlConfig:
    return load_config()


def get_evaluator(db: Session = Depends(get_db),
                  config: AccessControlConfig = Depends(get_config)) -> AccessEvaluator:
    return AccessEvaluator(AccessStore(db), config)


def get_client_ip(request: Request) -> str:
    """Socket peer address. Forwarded headers count only after ProxyHeadersMiddleware
    has rewritten the peer for a trusted proxy (see main.py)."""
    return request.client.host if request.client else "unknown"


def _owned_group(evaluator: AccessEvaluator, group_id: str, user_id: str):
    group = evaluator.store.get_group(group_id)
    if not group or group.owner_id != user_id:
        raise HTTPException(status_code=404, detail="File group not found")
    return group


def _owned_permission(evaluator: AccessEvaluator, permission_id: str, user_id: str):
    permission = evaluator.store.get_permission(permission_id)
    if not permission:
        raise HTTPException(status_code=404, detail="Access permission not found")
    _owned_group(evaluator, permission.group_id, user_id)
    return permission


# ─── VERIFY (public, used by link recipients) ─────────────────

@router.post("/{group_id}/verify")
def verify_share_access(
    group_id: str,
    body: VerifyAccessRequest,
    request: Request,
    evaluator: AccessEvaluator = Depends(get_evaluator),
):
    result = evaluator.verify_access(group_id, body.password, get_client_ip(request))
    return JSONResponse(
        status_code=STATUS_BY_REASON[result.reason_code],
        content=result.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


# ─── SHARE MANAGEMENT (internal users) ────────────────────────

@router.post("", response_model=ShareOut, response_model_by_alias=True)
def create_share(
    req: CreateShareRequest,
    evaluator: AccessEvaluator = Depends(get_evaluator),
    user_id: str = Depends(get_current_user),
):
    ip = req.ip_restriction
    group = evaluator.create_share(
        owner_id=user_id,
        expiration_date=req.expiration_date,
        password=req.password,
        allowed_emails=req.allowed_emails,
        ip_enabled=ip.enabled if ip else False,
        ip_rules=ip.allowed_rules if ip else None,
    )
    return ShareOut(
        resource_id=group.group_id,
        permission_id=group.access_permission_id,
        expiration_date=group.expiration_date,
        is_password_protected=group.is_password_protected,
    )


@router.put("/{group_id}/expiration", response_model=ShareOut, response_model_by_alias=True)
def update_share_expiration(
    group_id: str,
    req: UpdateExpirationRequest,
    evaluator: AccessEvaluator = Depends(get_evaluator),
    user_id: str = Depends(get_current_user),
):
    _owned_group(evaluator, group_id, user_id)
    group = evaluator.update_expiration(group_id, req.expiration_date)
    return ShareOut(
        resource_id=group.group_id,
        permission_id=group.access_permission_id,
        expiration_date=group.expiration_date,
        is_password_protected=group.is_password_protected,
    )


@router.get("/permissions/{permission_id}/ip-restriction",
            response_model=IpRestrictionOut, response_model_by_alias=True)
def read_ip_restriction(
    permission_id: str,
    evaluator: AccessEvaluator = Depends(get_evaluator),
    user_id: str = Depends(get_current_user),
):
    _owned_permission(evaluator, permission_id, user_id)
    restriction = evaluator.get_ip_restriction(permission_id)
    if restriction is None:
        return IpRestrictionOut(permission_id=permission_id, enabled=False, allowed_rules=[])
    return IpRestrictionOut(
        permission_id=permission_id,
        enabled=restriction.enabled,
        allowed_rules=restriction.allowed_ips or [],
        updated_at=restriction.updated_at,
    )


@router.put("/permissions/{permission_id}/ip-restriction",
            response_model=IpRestrictionResult, response_model_by_alias=True)
def update_ip_restriction(
    permission_id: str,
    req: IpRestrictionUpdate,
    evaluator: AccessEvaluator = Depends(get_evaluator),
    user_id: str = Depends(get_current_user),
):
    _owned_permission(evaluator, permission_id, user_id)
    return evaluator.update_ip_restriction(permission_id, req.enabled, req.allowed_rules)


# ─── ACCESS LOGS ──────────────────────────────────────────────

@router.get("/{group_id}/logs", response_model=AccessLogPage, response_model_by_alias=True)
def list_access_logs(
    group_id: str,
    limit: Optional[int] = Query(None, ge=1),
    page_token: Optional[str] = Query(None),
    evaluator: AccessEvaluator = Depends(get_evaluator),
    user_id: str = Depends(get_current_user),
):
    _owned_group(evaluator, group_id, user_id)
    return evaluator.audit.list_logs(group_id, limit, page_token)


@router.get("/{group_id}/logs/export")
def export_access_logs(
    group_id: str,
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    evaluator: AccessEvaluator = Depends(get_evaluator),
    user_id: str = Depends(get_current_user),
):
    _owned_group(evaluator, group_id, user_id)
    entries = evaluator.audit.export_logs(group_id, start, end)
    return {"groupId": group_id, "count": len(entries), "entries": entries}
