from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

import bcrypt
from jose import JWTError, jwt

from ..config import settings

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode(), bcrypt.gensalt(rounds=12)).decode()


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode(), hashed.encode())
    except ValueError:
        # Malformed stored hash
        return False


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------

ALGORITHM = "HS256"


def create_session_token(
    email: str,
    role: str,
    user_id: Optional[int] = None,
    expires_minutes: int | None = None,
) -> str:
    """Signed session issued after a completed two-factor login."""
    minutes = expires_minutes or settings.jwt_expire_minutes
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "sub": email,
        "role": role,
        "exp": now + timedelta(minutes=minutes),
        "iat": now,
    }
    if user_id is not None:
        payload["uid"] = user_id
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a session token. Raises JWTError on failure."""
    return jwt.decode(token, settings.jwt_secret, algorithms=[ALGORITHM])


def extract_token(headers: Mapping[str, str], cookies: Mapping[str, str]) -> Optional[str]:
    """Session cookie first, then ``Authorization: Bearer``."""
    token = cookies.get(settings.session_cookie_name)
    if token:
        return token
    auth = headers.get("authorization", "")
    scheme, _, credentials = auth.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def read_session(headers: Mapping[str, str], cookies: Mapping[str, str]) -> Optional[dict]:
    """Claims of a valid session, or None when absent, expired or forged."""
    token = extract_token(headers, cookies)
    if not token:
        return None
    try:
        return decode_token(token)
    except JWTError:
        return None
