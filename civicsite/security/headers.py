"""
headers.py — Security response headers
======================================
Single source of truth for the hardening headers the admission middleware
puts on every response, early rejections included.
"""
from __future__ import annotations

from typing import Dict

from starlette.responses import Response

SECURITY_HEADERS: Dict[str, str] = {
    "X-XSS-Protection": "1; mode=block",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": (
        "camera=(), microphone=(), geolocation=(), payment=(), usb=(), "
        "magnetometer=(), gyroscope=(), accelerometer=()"
    ),
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
}

_CSP_DIRECTIVES = [
    "default-src 'self'",
    "script-src 'self' 'unsafe-inline' https://challenges.cloudflare.com",
    "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com",
    "img-src 'self' data: https: blob:",
    "font-src 'self' data: https://fonts.gstatic.com",
    "connect-src 'self'",
    "media-src 'self'",
    "object-src 'none'",
    "frame-src https://challenges.cloudflare.com",
    "frame-ancestors 'none'",
    "form-action 'self'",
    "base-uri 'self'",
    "upgrade-insecure-requests",
    "report-uri /api/internal/csp-report",
]

CONTENT_SECURITY_POLICY = "; ".join(_CSP_DIRECTIVES)


def get_security_headers() -> Dict[str, str]:
    """All hardening headers, CSP included, as a fresh dict."""
    return {**SECURITY_HEADERS, "Content-Security-Policy": CONTENT_SECURITY_POLICY}


def apply_security_headers(response: Response) -> Response:
    for name, value in get_security_headers().items():
        response.headers[name] = value
    return response
