from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import desc, select

from ..audit.alerts import (
    list_security_alerts,
    resolve_alert,
    resolve_alerts_by_ip,
    threat_summary,
)
from ..audit.logger import audit_log
from ..auth.core import hash_password, verify_password
from ..auth.dependencies import require_admin
from ..config import settings
from ..database import db_session
from ..models import AuditLog, User
from ..schemas import AuditLogRead, PasswordChangeIn, ResolveAlertIn
from ..security.client_ip import get_client_ip
from ..security.threats import threat_tracker

logger = logging.getLogger("civicsite.admin")

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Security alerts
# ---------------------------------------------------------------------------

@router.get("/security-alerts")
def get_security_alerts(
    action: str = Query("list", pattern="^(list|summary|active-threats)$"),
    severity: Optional[str] = Query(None, pattern="^(low|medium|high|critical)$"),
    type: Optional[str] = Query(None, max_length=32),
    resolved: Optional[bool] = None,
    since: Optional[datetime] = None,
    limit: int = Query(50, ge=1),
    _admin: User = Depends(require_admin),
) -> Dict[str, Any]:
    """
    action=list            recent alerts, newest first (limit capped at 200)
    action=summary         24h severity counts, top IPs / threat types over 7 days
    action=active-threats  live per-IP threat records from this process
    """
    if action == "summary":
        return threat_summary()
    if action == "active-threats":
        return {"threats": threat_tracker.active_threats()}
    return {
        "alerts": list_security_alerts(
            severity=severity, type=type, resolved=resolved, since=since, limit=limit,
        )
    }


@router.patch("/security-alerts")
def update_security_alerts(body: ResolveAlertIn, _admin: User = Depends(require_admin)):
    if body.action == "resolve" and body.alertId is not None:
        return {"success": resolve_alert(body.alertId)}

    if body.action == "resolve-ip" and body.ipAddress:
        count = resolve_alerts_by_ip(body.ipAddress)
        # Operator has reviewed this address; lift any in-process block too
        threat_tracker.unblock(body.ipAddress)
        return {"success": True, "resolvedCount": count}

    return JSONResponse(
        {"error": "Invalid action. Use 'resolve' with alertId or 'resolve-ip' with ipAddress."},
        status_code=400,
    )


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

@router.get("/audit-log", response_model=List[AuditLogRead])
def get_audit_log(
    limit: int = Query(100, ge=1, le=500),
    action: Optional[str] = Query(None, max_length=32),
    severity: Optional[str] = Query(None, pattern="^(low|medium|high|critical)$"),
    _admin: User = Depends(require_admin),
) -> List[AuditLogRead]:
    stmt = select(AuditLog)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if severity:
        stmt = stmt.where(AuditLog.severity == severity)
    stmt = stmt.order_by(desc(AuditLog.created_at), desc(AuditLog.id)).limit(limit)
    with db_session() as session:
        rows = session.execute(stmt).scalars().all()
        return [AuditLogRead.model_validate(r) for r in rows]


# ---------------------------------------------------------------------------
# Password change
# ---------------------------------------------------------------------------

@router.post("/change-password")
def change_password(
    request: Request,
    body: PasswordChangeIn,
    admin: User = Depends(require_admin),
):
    ip = get_client_ip(request.headers)

    with db_session() as session:
        user = session.get(User, admin.id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

        if not verify_password(body.currentPassword, user.password_hash):
            return JSONResponse({"error": "Current password is incorrect"}, status_code=401)
        if verify_password(body.newPassword, user.password_hash):
            return JSONResponse(
                {"error": "New password must be different from the current password"},
                status_code=400,
            )
        user.password_hash = hash_password(body.newPassword)

    audit_log(
        "PASSWORD_CHANGE", "auth", ip,
        resource_id=str(admin.id),
        user_id=str(admin.id),
        user_email=admin.email,
        user_agent=request.headers.get("user-agent"),
        details={"note": "Password changed by admin"},
    )
    logger.info("Password changed for %s", admin.email)

    response = JSONResponse({
        "success": True,
        "message": "Password changed successfully. Please log in again.",
    })
    response.delete_cookie(settings.session_cookie_name, path="/")
    return response
