from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import select

from .core import create_session_token, verify_password
from .two_factor import TwoFactorError, two_factor_store
from ..audit.logger import audit_log, clear_failed_logins, track_failed_login
from ..config import settings
from ..database import db_session
from ..mailer import send_email
from ..models import User
from ..schemas import TwoFactorChallengeOut, TwoFactorRequestIn, TwoFactorVerifyIn
from ..security.client_ip import get_client_ip
from ..security.threats import threat_tracker

logger = logging.getLogger("civicsite.auth")

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _send_code(email: str, code: str) -> bool:
    return send_email(
        email,
        f"Your login verification code: {code}",
        (
            f"Your verification code is: {code}\n\n"
            "This code expires in 5 minutes.\n\n"
            "If you did not request this, someone may be trying to access your account."
        ),
    )


# ---------------------------------------------------------------------------
# Two-factor login: request a code, then verify it
# ---------------------------------------------------------------------------

@router.post("/2fa")
def two_factor(request: Request, body: Dict[str, Any] = Body(...)):
    action = body.get("action")
    if action == "request":
        return _request_code(request, body)
    if action == "verify":
        return _verify_code(request, body)
    return _error("Invalid action", 400)


def _request_code(request: Request, body: Dict[str, Any]):
    try:
        creds = TwoFactorRequestIn.model_validate(body)
    except ValidationError:
        return _error("Email and password required", 400)

    ip = get_client_ip(request.headers)
    user_agent = request.headers.get("user-agent")

    with db_session() as session:
        user = session.execute(
            select(User).where(User.email == creds.email)
        ).scalar_one_or_none()

    # One generic answer for unknown users and wrong passwords
    if user is None or not user.is_active or not verify_password(creds.password, user.password_hash):
        track_failed_login(ip, creds.email, user_agent)
        threat_tracker.track_login_failure(ip, creds.email)
        return _error("Invalid email or password", 401)

    if user.role != "admin":
        audit_log("LOGIN_FAILED", "auth", ip, user_id=str(user.id), user_email=user.email,
                  user_agent=user_agent, details={"reason": "not an admin"})
        return _error("Access denied", 403)

    challenge = two_factor_store.create(user.email)
    if not _send_code(user.email, challenge.code):
        two_factor_store.discard(challenge.challenge_token)
        return _error("Failed to send verification code", 500)

    logger.info("Two-factor code issued for %s", user.email)
    return TwoFactorChallengeOut(challengeToken=challenge.challenge_token)


def _verify_code(request: Request, body: Dict[str, Any]):
    try:
        attempt = TwoFactorVerifyIn.model_validate(body)
    except ValidationError:
        return _error("Challenge token and code required", 400)

    ip = get_client_ip(request.headers)
    user_agent = request.headers.get("user-agent")

    try:
        challenge = two_factor_store.verify(attempt.challenge_token, attempt.code)
    except TwoFactorError as exc:
        logger.info("Two-factor verification refused: %s", exc)
        return _error(str(exc), 401)

    with db_session() as session:
        user = session.execute(
            select(User).where(User.email == challenge.email)
        ).scalar_one_or_none()
        if user is None or not user.is_active or user.role != "admin":
            return _error("Invalid or expired verification", 401)
        user.last_login_at = datetime.now(timezone.utc)
        user.login_count = (user.login_count or 0) + 1
        user_id, email, role = user.id, user.email, user.role

    clear_failed_logins(ip, email)
    audit_log("LOGIN_SUCCESS", "auth", ip, user_id=str(user_id), user_email=email, user_agent=user_agent)

    token = create_session_token(email, role, user_id=user_id)
    response = JSONResponse({"success": True, "message": "Code verified"})
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=settings.jwt_expire_minutes * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        path="/",
    )
    return response


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------

@router.post("/logout")
def logout(request: Request):
    claims = getattr(request.state, "session", None)
    if claims:
        audit_log(
            "LOGOUT", "auth", get_client_ip(request.headers),
            user_id=str(claims.get("uid")) if claims.get("uid") is not None else None,
            user_email=claims.get("sub"),
            user_agent=request.headers.get("user-agent"),
        )
    response = JSONResponse({"success": True})
    response.delete_cookie(settings.session_cookie_name, path="/")
    return response
