from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func, select, update

from ..database import db_session
from ..models import SecurityAlert

logger = logging.getLogger("civicsite.alerts")

SEVERITIES = ("low", "medium", "high", "critical")

ALERT_TYPES = frozenset({
    "API_SPAM", "BRUTE_FORCE", "PATH_TRAVERSAL", "XSS_ATTEMPT", "SQL_INJECTION",
    "SCANNER_DETECTED", "RATE_LIMIT_ABUSE", "SUSPICIOUS_UA", "ADMIN_PROBE",
    "ENV_FILE_ACCESS", "BOT_FLOOD", "CREDENTIAL_STUFFING", "HONEYPOT_TRIGGERED",
    "PAYLOAD_INJECTION", "CSP_VIOLATION",
})

MAX_LIST_LIMIT = 200


def _serialize(row: SecurityAlert) -> Dict[str, Any]:
    metadata = None
    if row.metadata_json:
        try:
            metadata = json.loads(row.metadata_json)
        except ValueError:
            metadata = row.metadata_json
    return {
        "id": row.id,
        "type": row.type,
        "severity": row.severity,
        "ipAddress": row.ip_address,
        "path": row.path,
        "userAgent": row.user_agent,
        "details": row.details,
        "metadata": metadata,
        "resolved": row.resolved,
        "resolvedAt": row.resolved_at.isoformat() if row.resolved_at else None,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }


def record_security_alert(
    type: str,
    severity: str,
    ip_address: str,
    details: str,
    path: Optional[str] = None,
    user_agent: Optional[str] = None,
    metadata: Optional[Any] = None,
) -> Optional[int]:
    """
    Persist a security alert and return its id.

    Alert storage must never break the request that noticed the threat, so a
    failed write is logged and ``None`` is returned.
    """
    if metadata is not None and not isinstance(metadata, str):
        metadata = json.dumps(metadata, default=str)
    try:
        with db_session() as session:
            row = SecurityAlert(
                type=type,
                severity=severity,
                ip_address=ip_address,
                path=path,
                user_agent=user_agent,
                details=details,
                metadata_json=metadata,
                resolved=False,
            )
            session.add(row)
            session.flush()
            return row.id
    except Exception:
        logger.exception("Failed to persist security alert %s from %s", type, ip_address)
        return None


def list_security_alerts(
    *,
    severity: Optional[str] = None,
    type: Optional[str] = None,
    resolved: Optional[bool] = None,
    since: Optional[datetime] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    stmt = select(SecurityAlert)
    if severity:
        stmt = stmt.where(SecurityAlert.severity == severity)
    if type:
        stmt = stmt.where(SecurityAlert.type == type)
    if resolved is not None:
        stmt = stmt.where(SecurityAlert.resolved == resolved)
    if since is not None:
        stmt = stmt.where(SecurityAlert.created_at >= since)
    stmt = stmt.order_by(desc(SecurityAlert.created_at), desc(SecurityAlert.id))
    stmt = stmt.limit(max(1, min(limit, MAX_LIST_LIMIT)))

    with db_session() as session:
        return [_serialize(r) for r in session.execute(stmt).scalars().all()]


def threat_summary(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Counts for the last 24 hours plus top offenders over the last 7 days."""
    now = now or datetime.now(timezone.utc)
    day_ago = now - timedelta(hours=24)
    week_ago = now - timedelta(days=7)

    with db_session() as session:
        by_severity = dict(session.execute(
            select(SecurityAlert.severity, func.count(SecurityAlert.id))
            .where(SecurityAlert.created_at >= day_ago)
            .group_by(SecurityAlert.severity)
        ).all())
        unresolved = session.execute(
            select(func.count(SecurityAlert.id)).where(SecurityAlert.resolved.is_(False))
        ).scalar_one() or 0

        top_ips = session.execute(
            select(SecurityAlert.ip_address, func.count(SecurityAlert.id).label("cnt"))
            .where(SecurityAlert.created_at >= week_ago)
            .group_by(SecurityAlert.ip_address)
            .order_by(desc("cnt"))
            .limit(10)
        ).all()
        top_threats = session.execute(
            select(SecurityAlert.type, func.count(SecurityAlert.id).label("cnt"))
            .where(SecurityAlert.created_at >= week_ago)
            .group_by(SecurityAlert.type)
            .order_by(desc("cnt"))
            .limit(10)
        ).all()
        stamps = session.execute(
            select(SecurityAlert.created_at).where(SecurityAlert.created_at >= week_ago)
        ).scalars().all()

    daily = Counter(ts.date().isoformat() for ts in stamps if ts is not None)

    summary: Dict[str, Any] = {"total": sum(by_severity.values())}
    for level in SEVERITIES:
        summary[level] = by_severity.get(level, 0)
    summary.update({
        "unresolved": unresolved,
        "topIPs": [{"ip": ip, "count": cnt} for ip, cnt in top_ips],
        "topThreats": [{"type": t, "count": cnt} for t, cnt in top_threats],
        "recentActivity": [{"date": d, "count": daily[d]} for d in sorted(daily)],
    })
    return summary


def resolve_alert(alert_id: int) -> bool:
    with db_session() as session:
        row = session.get(SecurityAlert, alert_id)
        if row is None:
            return False
        row.resolved = True
        row.resolved_at = datetime.now(timezone.utc)
    return True


def resolve_alerts_by_ip(ip_address: str) -> int:
    with db_session() as session:
        result = session.execute(
            update(SecurityAlert)
            .where(SecurityAlert.ip_address == ip_address, SecurityAlert.resolved.is_(False))
            .values(resolved=True, resolved_at=datetime.now(timezone.utc))
        )
        return result.rowcount or 0
