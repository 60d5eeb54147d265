from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import desc, func, select
from starlette.concurrency import run_in_threadpool

from ..auth.dependencies import require_admin
from ..database import db_session
from ..models import PageView, User
from ..schemas import AnalyticsSummary

logger = logging.getLogger("civicsite.analytics")

router = APIRouter(prefix="/api", tags=["analytics"])

MAX_PATH_LENGTH = 500
MAX_REFERRER_LENGTH = 1000
MAX_SESSION_ID_LENGTH = 100

_UNSAFE_CHARS = re.compile(r"[<>\"']")
_SESSION_ID_CHARS = re.compile(r"[^a-zA-Z0-9\-_]")

PERIODS = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "all": None,
}


# ---------------------------------------------------------------------------
# User-agent classification
# ---------------------------------------------------------------------------

def get_device_type(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "unknown"
    if re.search(r"mobile", user_agent, re.I):
        return "mobile"
    if re.search(r"tablet|ipad", user_agent, re.I):
        return "tablet"
    return "desktop"


def get_browser(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "unknown"
    # Order matters: Edge and Opera UAs also mention Chrome, Chrome mentions Safari
    for pattern, name in (
        (r"edg", "Edge"),
        (r"opera|opr/", "Opera"),
        (r"chrome", "Chrome"),
        (r"firefox", "Firefox"),
        (r"safari", "Safari"),
    ):
        if re.search(pattern, user_agent, re.I):
            return name
    return "Other"


def get_os(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "unknown"
    for pattern, name in (
        (r"windows", "Windows"),
        (r"android", "Android"),
        (r"iphone|ipad|ios", "iOS"),
        (r"mac os", "macOS"),
        (r"linux", "Linux"),
    ):
        if re.search(pattern, user_agent, re.I):
            return name
    return "Other"


def sanitize_page_view(body: Dict[str, Any]) -> Optional[Dict[str, Optional[str]]]:
    """Trimmed, character-filtered beacon fields; None when the beacon is junk."""
    path = body.get("path")
    if path is not None and not isinstance(path, str):
        return None
    referrer = body.get("referrer")
    session_id = body.get("sessionId")
    return {
        "path": _UNSAFE_CHARS.sub("", path[:MAX_PATH_LENGTH]) if isinstance(path, str) else "/",
        "referrer": (
            _UNSAFE_CHARS.sub("", referrer[:MAX_REFERRER_LENGTH]) if isinstance(referrer, str) else None
        ),
        "session_id": (
            _SESSION_ID_CHARS.sub("", session_id[:MAX_SESSION_ID_LENGTH])
            if isinstance(session_id, str) else None
        ),
    }


def _geo(headers) -> Dict[str, Optional[str]]:
    city = headers.get("cf-ipcity") or headers.get("x-vercel-ip-city")
    return {
        "country": headers.get("cf-ipcountry") or headers.get("x-vercel-ip-country"),
        "city": unquote(city) if city else None,
        "region": headers.get("cf-region") or headers.get("x-vercel-ip-country-region"),
    }


def _store_page_view(fields: Dict[str, Any]) -> None:
    with db_session() as session:
        session.add(PageView(**fields))


# ---------------------------------------------------------------------------
# Tracking beacon
# ---------------------------------------------------------------------------

@router.post("/analytics/track")
async def track_page_view(request: Request) -> Dict[str, bool]:
    """Always answers success so a tracking hiccup never breaks a page."""
    try:
        body = await request.json()
    except ValueError:
        return {"success": True}
    if not isinstance(body, dict):
        return {"success": True}

    fields = sanitize_page_view(body)
    if fields is None:
        return {"success": True}

    user_agent = request.headers.get("user-agent")
    fields.update(_geo(request.headers))
    fields.update(
        device=get_device_type(user_agent),
        browser=get_browser(user_agent),
        os=get_os(user_agent),
    )
    try:
        await run_in_threadpool(_store_page_view, fields)
    except Exception:
        logger.exception("Failed to store page view")
    return {"success": True}


# ---------------------------------------------------------------------------
# Admin summary
# ---------------------------------------------------------------------------

def _top(session, column, where: List[Any], key: str, limit: Optional[int] = 10) -> List[Dict[str, Any]]:
    stmt = (
        select(column, func.count(PageView.id).label("cnt"))
        .where(*where)
        .group_by(column)
        .order_by(desc("cnt"))
    )
    if limit:
        stmt = stmt.limit(limit)
    return [{key: value or "Unknown", "count": cnt} for value, cnt in session.execute(stmt).all()]


@router.get("/admin/analytics", response_model=AnalyticsSummary)
def analytics_summary(
    period: str = Query("7d", pattern="^(24h|7d|30d|all)$"),
    country: Optional[str] = Query(None, max_length=8),
    _admin: User = Depends(require_admin),
) -> AnalyticsSummary:
    where: List[Any] = []
    span = PERIODS[period]
    if span is not None:
        where.append(PageView.created_at >= datetime.now(timezone.utc) - span)
    filtered = where + ([PageView.country == country] if country else [])

    with db_session() as session:
        total = session.execute(
            select(func.count(PageView.id)).where(*filtered)
        ).scalar_one() or 0
        unique_sessions = session.execute(
            select(func.count(func.distinct(PageView.session_id)))
            .where(*filtered, PageView.session_id.is_not(None))
        ).scalar_one() or 0

        return AnalyticsSummary(
            period=period,
            totalViews=total,
            uniqueSessions=unique_sessions,
            topPaths=_top(session, PageView.path, filtered, "path"),
            topCountries=_top(session, PageView.country, where, "country", limit=20),
            devices=_top(session, PageView.device, filtered, "device", limit=None),
            browsers=_top(session, PageView.browser, filtered, "browser", limit=None),
            operatingSystems=_top(session, PageView.os, filtered, "os", limit=None),
        )
