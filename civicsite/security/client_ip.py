"""
client_ip.py — Best-effort client address from proxy headers
=============================================================
Order of preference:

  1. ``cf-connecting-ip``   (set by the Cloudflare edge)
  2. ``x-forwarded-for``    (first hop of the comma-separated chain)
  3. ``x-real-ip``
  4. the literal ``"unknown"``

None of these headers is authenticated. Without a trusted reverse proxy in
front of the service a client can put any value here, so the result is only
good enough for abuse dampening, never for access control decisions that
must hold against a determined attacker.
"""
from __future__ import annotations

from typing import Mapping

UNKNOWN_IP = "unknown"


def get_client_ip(headers: Mapping[str, str]) -> str:
    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return UNKNOWN_IP
