"""
turnstile.py — Server-side Cloudflare Turnstile verification
===========================================================
Decision table for :meth:`TurnstileVerifier.verify`:

  secret not configured          → True  (verification skipped; warned in production)
  token missing / empty          → False
  provider says success          → True
  provider says failure / non-2xx → False
  transport error or timeout     → ``fail_open`` (True by default)

Failing open on transport errors keeps the forms usable when the provider is
unreachable; rate limiting, the honeypot and validation still apply.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..config import settings

logger = logging.getLogger("civicsite.turnstile")


class TurnstileVerifier:
    def __init__(
        self,
        secret: Optional[str],
        verify_url: str = "https://challenges.cloudflare.com/turnstile/v0/siteverify",
        timeout: float = 5.0,
        fail_open: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        warn_unconfigured: bool = False,
    ) -> None:
        self.secret = secret
        self.verify_url = verify_url
        self.timeout = timeout
        self.fail_open = fail_open
        self._transport = transport
        self._warn_unconfigured = warn_unconfigured

    async def verify(self, token: Optional[str], ip: Optional[str] = None) -> bool:
        if not self.secret:
            if self._warn_unconfigured:
                logger.warning(
                    "CIVICSITE_TURNSTILE_SECRET_KEY not set; CAPTCHA verification skipped"
                )
            return True

        if not token:
            logger.warning("Turnstile token missing, rejecting request")
            return False

        form = {"secret": self.secret, "response": token}
        if ip:
            form["remoteip"] = ip

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.verify_url, data=form)
            if not resp.is_success:
                logger.error("Turnstile verification API returned %d", resp.status_code)
                return False
            result = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "Turnstile verification request failed (%s); fail_open=%s",
                exc, self.fail_open,
            )
            return self.fail_open

        if result.get("success") is True:
            return True
        logger.warning(
            "Turnstile verification failed: %s",
            ", ".join(result.get("error-codes") or []) or "no error codes",
        )
        return False


_verifier = TurnstileVerifier(
    secret=settings.turnstile_secret_key,
    verify_url=settings.turnstile_verify_url,
    timeout=settings.turnstile_timeout_seconds,
    fail_open=settings.turnstile_fail_open,
    warn_unconfigured=settings.is_production,
)


async def verify_turnstile_token(token: Optional[str], ip: Optional[str] = None) -> bool:
    """Verify a widget token with the configured secret."""
    return await _verifier.verify(token, ip)
