from __future__ import annotations

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import HTTPBearer
from sqlalchemy import select

from .core import read_session
from ..database import db_session
from ..models import User

# Declared for the OpenAPI schema; the token itself is read by read_session
bearer_scheme = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# Resolve current user from the session cookie or bearer token
# ---------------------------------------------------------------------------

def get_current_user(request: Request, _bearer=Security(bearer_scheme)) -> User:
    """
    Accepts either:
      - the session cookie set by POST /api/auth/2fa (verify)
      - Authorization: Bearer <session token>
    Returns the matching active User or raises 401.
    """
    claims = getattr(request.state, "session", None) or read_session(request.headers, request.cookies)
    if not claims:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    email = str(claims.get("sub", "")).lower()
    with db_session() as session:
        user = session.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user


# ---------------------------------------------------------------------------
# Role guards
# ---------------------------------------------------------------------------

def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required.")
    return current_user
