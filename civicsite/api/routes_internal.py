from __future__ import annotations

import hmac
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from ..audit.alerts import record_security_alert
from ..config import settings
from ..rate_limit import limiter
from ..schemas import SecurityLogIn
from ..security.client_ip import get_client_ip

logger = logging.getLogger("civicsite.internal")

router = APIRouter(prefix="/api/internal", tags=["internal"], include_in_schema=False)


# ---------------------------------------------------------------------------
# Security alert ingestion (shared-secret callers only)
# ---------------------------------------------------------------------------

def _secret_matches(presented: Optional[str]) -> bool:
    expected = settings.effective_internal_secret
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


@router.post("/security-log")
async def ingest_security_log(request: Request):
    if not _secret_matches(request.headers.get("x-internal-secret")):
        logger.warning(
            "Rejected security-log call with a bad secret from %s", get_client_ip(request.headers),
        )
        return JSONResponse({"error": "Forbidden"}, status_code=403)

    try:
        payload = SecurityLogIn.model_validate(await request.json())
    except (ValueError, ValidationError):
        return JSONResponse({"error": "Missing required fields"}, status_code=400)

    alert_id = await run_in_threadpool(
        record_security_alert,
        payload.type,
        payload.severity,
        payload.ipAddress,
        payload.details,
        path=payload.path,
        user_agent=payload.userAgent,
        metadata=payload.metadata,
    )
    if alert_id is None:
        return JSONResponse({"error": "Failed to log alert"}, status_code=500)
    return {"success": True, "id": alert_id}


# ---------------------------------------------------------------------------
# Content-Security-Policy violation reports
# ---------------------------------------------------------------------------

def extract_csp_report(content_type: str, body: Any) -> Optional[Dict[str, Any]]:
    """
    Normalise the two browser report formats to one dict.

      application/csp-report     {"csp-report": {...}}        (report-uri)
      application/reports+json   [{"type": ..., "body": {...}}]  (report-to)
    """
    if "application/reports+json" in content_type and isinstance(body, list):
        if not body:
            return None
        first = body[0]
        if isinstance(first, dict):
            return first.get("body") or first
        return None
    if isinstance(body, dict):
        report = body.get("csp-report") or body
        return report if isinstance(report, dict) else None
    return None


def _pick(report: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = report.get(key)
        if value:
            return value
    return default


@router.post("/csp-report", status_code=204)
@limiter.limit(settings.csp_report_rate_limit)
async def csp_report(request: Request) -> Response:
    ip = get_client_ip(request.headers)
    try:
        body = json.loads(await request.body())
    except ValueError:
        return Response(status_code=400)

    report = extract_csp_report(request.headers.get("content-type", ""), body)
    if not report:
        return Response(status_code=400)

    original_policy = report.get("original-policy")
    violation = {
        "ip": ip,
        "blocked_uri": _pick(report, "blocked-uri", "blockedURL", default="unknown"),
        "violated_directive": _pick(
            report, "violated-directive", "effectiveDirective", default="unknown",
        ),
        "document_uri": _pick(report, "document-uri", "documentURL", default="unknown"),
        "source_file": _pick(report, "source-file", "sourceFile"),
        "line_number": _pick(report, "line-number", "lineNumber"),
        "original_policy": original_policy[:200] if isinstance(original_policy, str) else None,
    }
    logger.warning("CSP_VIOLATION %s", violation["violated_directive"],
                   extra={"security_event": "CSP_VIOLATION", **violation})

    await run_in_threadpool(
        record_security_alert,
        "CSP_VIOLATION",
        "low",
        ip,
        f"CSP violation: {violation['violated_directive']} blocked {violation['blocked_uri']}",
        path=str(violation["document_uri"])[:512],
        user_agent=request.headers.get("user-agent"),
        metadata=violation,
    )
    return Response(status_code=204)


@router.get("/csp-report")
def csp_report_get() -> Response:
    return Response(status_code=405, headers={"Allow": "POST"})
