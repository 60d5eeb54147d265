"""
two_factor.py — E-mailed one-time codes for admin login
======================================================
Flow:

  1. ``request``: the password has been checked; a 6-digit code is generated
     for the e-mail and a random challenge token is handed back to the
     browser. Any earlier challenge for the same e-mail is discarded.
  2. ``verify``: the browser returns the token with the code. A challenge is
     good for one successful verification within five minutes. Five wrong
     codes burn it.

Challenges are held in process memory. A restart forces users to request a
new code, which is acceptable for a five-minute credential.
"""
from __future__ import annotations

import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger("civicsite.two_factor")

CODE_TTL_SECONDS = 5 * 60
MAX_ATTEMPTS = 5


class TwoFactorError(Exception):
    """Verification refused; ``str(exc)`` is safe to show to the user."""


@dataclass
class TwoFactorChallenge:
    challenge_token: str
    email: str
    code: str
    expires_at: float
    used: bool = False
    verified: bool = False
    attempts: int = 0


def generate_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def generate_challenge_token() -> str:
    return secrets.token_hex(32)


class TwoFactorStore:
    def __init__(
        self,
        ttl: float = CODE_TTL_SECONDS,
        max_attempts: int = MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self.max_attempts = max_attempts
        self.clock = clock
        self._challenges: Dict[str, TwoFactorChallenge] = {}
        self._lock = threading.Lock()

    def create(self, email: str) -> TwoFactorChallenge:
        email = email.strip().lower()
        challenge = TwoFactorChallenge(
            challenge_token=generate_challenge_token(),
            email=email,
            code=generate_code(),
            expires_at=self.clock() + self.ttl,
        )
        with self._lock:
            stale = [t for t, c in self._challenges.items() if c.email == email]
            for token in stale:
                del self._challenges[token]
            self._challenges[challenge.challenge_token] = challenge
        return challenge

    def get(self, challenge_token: str) -> Optional[TwoFactorChallenge]:
        with self._lock:
            return self._challenges.get(challenge_token)

    def discard(self, challenge_token: str) -> None:
        with self._lock:
            self._challenges.pop(challenge_token, None)

    def verify(self, challenge_token: str, code: str) -> TwoFactorChallenge:
        """Consume a challenge, returning it on success.

        Raises :class:`TwoFactorError` for unknown, expired, already used or
        mismatching codes.
        """
        with self._lock:
            challenge = self._challenges.get(challenge_token)
            if challenge is None:
                raise TwoFactorError("Invalid or expired verification")

            if self.clock() > challenge.expires_at:
                del self._challenges[challenge_token]
                raise TwoFactorError("Code expired. Please try again.")

            if challenge.used:
                raise TwoFactorError("Code already used")

            if not hmac.compare_digest(challenge.code.encode(), code.strip().encode()):
                challenge.attempts += 1
                if challenge.attempts >= self.max_attempts:
                    del self._challenges[challenge_token]
                    logger.warning(
                        "Two-factor challenge for %s burned after %d wrong codes",
                        challenge.email, challenge.attempts,
                    )
                raise TwoFactorError("Invalid code")

            challenge.used = True
            challenge.verified = True
            return challenge

    def sweep(self) -> int:
        with self._lock:
            now = self.clock()
            expired = [t for t, c in self._challenges.items() if now > c.expires_at]
            for token in expired:
                del self._challenges[token]
        return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._challenges.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)


two_factor_store = TwoFactorStore()
