"""
rate_limit.py — Per-endpoint limits for the internal report endpoints
=====================================================================
The admission middleware applies the category limits. slowapi covers the
few endpoints that sit outside any category, such as browser CSP reports,
keyed by the same proxy-aware client address.
"""
from __future__ import annotations

from slowapi import Limiter
from starlette.requests import Request

from .security.client_ip import get_client_ip


def client_ip_key(request: Request) -> str:
    return get_client_ip(request.headers)


limiter = Limiter(key_func=client_ip_key)
