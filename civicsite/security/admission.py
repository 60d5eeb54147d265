"""
admission.py — Request admission pipeline
=========================================
Every request passes these guards in order before it reaches a route:

  0. threat gate      blocked IPs, bot floods and attack patterns → 403
  1. classification   first matching RouteRule in ROUTE_TABLE names the
                      rate-limit category (no match → no limit)
  2. rate limit       "<category>:<ip>" over the category policy → 429
  3. admin allow-list /admin* and /api/admin* (not /admin/login) → 403
  4. session / role   admin pages redirect to /admin/login, admin API
                      answers 401/403; /admin/login with a live session
                      redirects to /admin
  5. headers          security headers on every response, early
                      rejections and unhandled errors included, plus
                      X-RateLimit-* when a category applied

Guards 0–4 are synchronous (store lookups, alert writes) and run in the
threadpool so the event loop is never blocked.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Sequence, Tuple

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from ..audit.alerts import record_security_alert
from ..auth.core import read_session
from ..config import settings
from .client_ip import get_client_ip
from .headers import apply_security_headers
from .ratelimit import RateLimitResult, rate_limiter
from .threats import threat_tracker, detect_suspicious_pattern

logger = logging.getLogger("civicsite.admission")

LOGIN_PAGE = "/admin/login"
DASHBOARD_PAGE = "/admin"

# Liveness probes bypass the threat gate
EXEMPT_PATHS = frozenset({"/health", "/healthz"})


# ---------------------------------------------------------------------------
# Route classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RouteRule:
    predicate: Callable[[str], bool]
    category: str


def _exact(target: str) -> Callable[[str], bool]:
    return lambda path: path == target


def _prefix(prefix: str) -> Callable[[str], bool]:
    return lambda path: path.startswith(prefix)


def _public_api(path: str) -> bool:
    return path.startswith("/api/") and not path.startswith("/api/internal")


ROUTE_TABLE: Tuple[RouteRule, ...] = (
    RouteRule(_prefix("/api/auth"), "auth"),
    RouteRule(_exact(LOGIN_PAGE), "auth"),
    RouteRule(_exact("/api/contact"), "contact"),
    RouteRule(_exact("/api/analytics/track"), "analytics"),
    RouteRule(_exact("/api/international-join"), "international_join"),
    RouteRule(_exact("/api/recruitment"), "recruitment"),
    RouteRule(_prefix("/api/admin"), "admin"),
    RouteRule(_public_api, "public"),
)


def classify_route(path: str, table: Sequence[RouteRule] = ROUTE_TABLE) -> Optional[str]:
    for rule in table:
        if rule.predicate(path):
            return rule.category
    return None


def is_admin_area(path: str) -> bool:
    return path.startswith("/admin") or path.startswith("/api/admin")


def is_admin_ip_allowed(ip: str, allow_list: Sequence[str]) -> bool:
    """An empty list, or one containing ``*``, admits everyone."""
    entries = [entry.strip() for entry in allow_list if entry.strip()]
    if not entries or "*" in entries:
        return True
    return ip in entries


def log_security_event(event: str, **details) -> None:
    logger.warning("SECURITY:%s %s", event, details, extra={"security_event": event, **details})


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

@dataclass
class _Decision:
    response: Optional[Response] = None
    rate: Optional[RateLimitResult] = None
    session: Optional[dict] = None


def _deny(message: str = "Access denied", status_code: int = 403) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _too_many(result: RateLimitResult) -> JSONResponse:
    return JSONResponse(
        {
            "error": "Too many requests",
            "message": "Rate limit exceeded. Please try again later.",
            "retryAfter": result.retry_after,
        },
        status_code=429,
        headers={"Retry-After": str(result.retry_after)},
    )


class AdmissionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        decision = await run_in_threadpool(
            self.evaluate,
            request.url.path,
            request.headers,
            request.cookies,
        )
        if decision.response is not None:
            return apply_security_headers(decision.response)

        request.state.session = decision.session
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return apply_security_headers(JSONResponse({"error": "Internal server error"}, status_code=500))
        if decision.rate is not None:
            response.headers["X-RateLimit-Remaining"] = str(decision.rate.remaining)
            response.headers["X-RateLimit-Reset"] = str(decision.rate.retry_after)
        return apply_security_headers(response)

    def evaluate(self, path: str, headers: Mapping[str, str], cookies: Mapping[str, str]) -> _Decision:
        ip = get_client_ip(headers)
        user_agent = headers.get("user-agent")

        # 0. threat gate
        if path not in EXEMPT_PATHS:
            blocked = self._threat_gate(path, ip, user_agent)
            if blocked is not None:
                return _Decision(response=blocked)

        # 1–2. classification and rate limit
        category = classify_route(path)
        rate: Optional[RateLimitResult] = None
        if category is not None:
            rate = rate_limiter.hit(category, ip)
            if not rate.allowed:
                log_security_event("RATE_LIMITED", ip=ip, path=path, category=category, blocked=rate.blocked)
                threat_tracker.track_rate_limit_hit(ip, path, category)
                if rate.blocked:
                    record_security_alert(
                        "RATE_LIMIT_ABUSE", "high", ip,
                        f"Rate limit exceeded and IP blocked (type: {category}) on {path}",
                        path=path, user_agent=user_agent,
                    )
                return _Decision(response=_too_many(rate), rate=rate)

        if not is_admin_area(path):
            return _Decision(rate=rate, session=read_session(headers, cookies))

        is_login = path == LOGIN_PAGE
        is_api = path.startswith("/api/")

        # 3. admin IP allow-list
        if not is_login and not is_admin_ip_allowed(ip, settings.allowed_admin_ips):
            log_security_event("BLOCKED_ADMIN_IP", ip=ip, path=path)
            threat_tracker.track_suspicious(ip, path, user_agent, "admin_probe")
            return _Decision(response=_deny(), rate=rate)

        # 4. session and role
        session = read_session(headers, cookies)
        if is_login:
            if session is not None:
                return _Decision(response=RedirectResponse(DASHBOARD_PAGE, status_code=307), rate=rate)
            return _Decision(rate=rate)

        if session is None:
            log_security_event("UNAUTHORIZED_ADMIN_ACCESS", ip=ip, path=path)
            threat_tracker.track_suspicious(ip, path, user_agent, "admin_probe")
            if is_api:
                return _Decision(response=_deny("Unauthorized", 401), rate=rate)
            return _Decision(response=RedirectResponse(LOGIN_PAGE, status_code=307), rate=rate)

        if session.get("role") != "admin":
            log_security_event("NON_ADMIN_ACCESS_ATTEMPT", ip=ip, path=path, email=session.get("sub"))
            if is_api:
                return _Decision(response=_deny("Forbidden", 403), rate=rate)
            return _Decision(response=RedirectResponse(LOGIN_PAGE, status_code=307), rate=rate)

        return _Decision(rate=rate, session=session)

    @staticmethod
    def _threat_gate(path: str, ip: str, user_agent: Optional[str]) -> Optional[Response]:
        verdict = threat_tracker.is_blocked(ip)
        if verdict.blocked:
            log_security_event("THREAT_BLOCKED", ip=ip, path=path, reason=verdict.reason)
            record_security_alert(
                "RATE_LIMIT_ABUSE", "high", ip, f"Blocked IP attempted access: {path}",
                path=path, user_agent=user_agent,
            )
            return _deny()

        verdict = threat_tracker.track_request(ip, path)
        if verdict.blocked:
            log_security_event("FLOOD_BLOCKED", ip=ip, path=path, reason=verdict.reason)
            return _deny()

        if settings.block_suspicious_requests:
            pattern = detect_suspicious_pattern(path, user_agent)
            if pattern is not None:
                log_security_event(
                    "BLOCKED_SUSPICIOUS", ip=ip, path=path, user_agent=user_agent, pattern=pattern,
                )
                threat_tracker.track_suspicious(ip, path, user_agent, pattern)
                return _deny()
        return None
