"""
origin.py — Lightweight CSRF mitigation for unauthenticated writes
===================================================================
Compares the host of the ``Origin`` header (or ``Referer`` when Origin is
absent) with the configured allow-list. Ports and scheme are ignored; host
comparison is case-insensitive.

Whether a request *without* either header is acceptable is a per-route
decision: plain same-origin form posts from older browsers may omit both.
"""
from __future__ import annotations

from typing import Iterable, Mapping, Optional
from urllib.parse import urlsplit


def _host_of(url: str) -> Optional[str]:
    try:
        host = urlsplit(url.strip()).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def validate_origin(
    headers: Mapping[str, str],
    allowed_hosts: Iterable[str],
    allow_missing: bool = True,
) -> bool:
    source = headers.get("origin") or headers.get("referer")
    if not source or source == "null":
        return allow_missing

    host = _host_of(source)
    if host is None:
        return False

    allowed = {h.strip().lower() for h in allowed_hosts if h and h.strip()}
    return host in allowed
