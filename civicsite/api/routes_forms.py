"""
routes_forms.py — Public form submissions
=========================================
POST /api/contact               origin → validation → honeypot → e-mail
POST /api/recruitment           origin (header required) → CAPTCHA →
                                validation → honeypot → e-mail
POST /api/international-join    origin → validation → honeypot → e-mail

Rate limiting happens earlier, in the admission middleware. A tripped
honeypot gets the same ``{"success": true}`` a real submission gets, so bots
learn nothing; the hit is recorded as a HONEYPOT_TRIGGERED alert.
E-mail delivery failures never fail the submission.
"""
from __future__ import annotations

import html
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import APIRouter, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from starlette.concurrency import run_in_threadpool

from ..audit.alerts import record_security_alert
from ..config import settings
from ..mailer import send_email
from ..schemas import ContactForm, FormAccepted, InternationalJoinForm, RecruitmentForm
from ..security.client_ip import get_client_ip
from ..security.honeypot import validate_honeypot
from ..security.origin import validate_origin
from ..security import turnstile

logger = logging.getLogger("civicsite.forms")

router = APIRouter(prefix="/api", tags=["forms"])

FormT = TypeVar("FormT", bound=BaseModel)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _forbidden() -> JSONResponse:
    return JSONResponse({"error": "Forbidden"}, status_code=403)


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise RequestValidationError([{"loc": ("body",), "msg": "Malformed JSON", "type": "json_invalid"}])
    if not isinstance(body, dict):
        raise RequestValidationError([{"loc": ("body",), "msg": "Expected an object", "type": "dict_type"}])
    return body


def _parse(model: Type[FormT], body: Dict[str, Any]) -> FormT:
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors(include_url=False, include_input=False))


async def _honeypot_hit(request: Request, email: Optional[str]) -> JSONResponse:
    ip = get_client_ip(request.headers)
    path = request.url.path
    logger.warning("Honeypot triggered on %s from %s", path, ip, extra={"ip": ip, "path": path})
    await run_in_threadpool(
        record_security_alert,
        "HONEYPOT_TRIGGERED",
        "medium",
        ip,
        f"Bot detected via honeypot field{f' (email: {email})' if email else ''}",
        path=path,
        user_agent=request.headers.get("user-agent"),
        metadata={"email": email},
    )
    return JSONResponse({"success": True})


def _one_line(value: str, limit: int) -> str:
    """Strip CR/LF so user input cannot inject mail headers."""
    return value.replace("\r", "").replace("\n", "")[:limit]


async def _deliver(subject: str, text: str, body_html: str, reply_to: str) -> None:
    sent = await run_in_threadpool(
        send_email, settings.contact_email, subject, text, body_html, reply_to,
    )
    if not sent:
        logger.warning("Submission accepted but notification e-mail failed: %s", subject)


def _submitted_at() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Contact
# ---------------------------------------------------------------------------

@router.post("/contact", response_model=FormAccepted)
async def submit_contact(request: Request):
    if not validate_origin(request.headers, settings.allowed_hosts, allow_missing=True):
        return _forbidden()

    body = await _json_body(request)
    form = _parse(ContactForm, body)
    if not validate_honeypot(form.website):
        return await _honeypot_hit(request, form.email)

    e = html.escape
    await _deliver(
        subject=f"[Contact] {_one_line(form.subject, 120)} - {_one_line(form.name, 50)} ({form.email})",
        text=(
            f"New message from the contact form:\n\n"
            f"Name: {form.name}\nEmail: {form.email}\nSubject: {form.subject}\n\n"
            f"Message:\n{form.message}\n\n---\nSubmitted: {_submitted_at()}"
        ),
        body_html=(
            f"<h2>New message from the contact form</h2>"
            f"<p><strong>Name:</strong> {e(form.name)}</p>"
            f"<p><strong>Email:</strong> <a href=\"mailto:{e(form.email)}\">{e(form.email)}</a></p>"
            f"<p><strong>Subject:</strong> {e(form.subject)}</p><hr>"
            f"<p>{e(form.message).replace(chr(10), '<br>')}</p>"
        ),
        reply_to=form.email,
    )
    return FormAccepted(message="Your message has been sent successfully.")


# ---------------------------------------------------------------------------
# Recruitment
# ---------------------------------------------------------------------------

@router.get("/recruitment", include_in_schema=False)
def recruitment_hidden() -> JSONResponse:
    return JSONResponse(None, status_code=404)


@router.post("/recruitment", response_model=FormAccepted)
async def submit_recruitment(request: Request):
    if not validate_origin(request.headers, settings.allowed_hosts, allow_missing=False):
        return _forbidden()

    body = await _json_body(request)
    ip = get_client_ip(request.headers)
    if not await turnstile.verify_turnstile_token(body.get("turnstileToken"), ip):
        return JSONResponse(
            {"error": "CAPTCHA verification failed. Please try again."}, status_code=403,
        )

    form = _parse(RecruitmentForm, body)
    if not validate_honeypot(form.website):
        return await _honeypot_hit(request, form.email)

    location = form.location or ""
    subject_bits = [
        "[Recruitment]",
        _one_line(form.name, 50),
        f"({_one_line(form.email, 80)})",
        f"- {_one_line(location, 40)}" if location else "",
    ]
    e = html.escape
    await _deliver(
        subject=" ".join(bit for bit in subject_bits if bit),
        text=(
            f"New recruitment interest:\n\nName: {form.name}\nEmail: {form.email}\n"
            f"Location: {location or 'Not provided'}\n\nMessage:\n{form.message}\n\n"
            f"---\nSubmitted: {_submitted_at()}"
        ),
        body_html=(
            f"<h2>New recruitment interest</h2>"
            f"<p><strong>Name:</strong> {e(form.name)}</p>"
            f"<p><strong>Email:</strong> {e(form.email)}</p>"
            f"<p><strong>Location:</strong> {e(location) if location else '<em>Not provided</em>'}</p><hr>"
            f"<p>{e(form.message).replace(chr(10), '<br>')}</p>"
        ),
        reply_to=form.email,
    )
    return FormAccepted(message="Your request has been sent successfully.")


# ---------------------------------------------------------------------------
# International wing
# ---------------------------------------------------------------------------

@router.post("/international-join", response_model=FormAccepted)
async def submit_international_join(request: Request):
    if not validate_origin(request.headers, settings.allowed_hosts, allow_missing=True):
        return _forbidden()

    body = await _json_body(request)
    form = _parse(InternationalJoinForm, body)
    if not validate_honeypot(form.website):
        return await _honeypot_hit(request, form.email)

    e = html.escape
    await _deliver(
        subject=f"[International Wing] New registration: {_one_line(form.name, 50)} ({form.email})",
        text=(
            f"New International Wing registration\n\nName: {form.name}\nEmail: {form.email}\n"
            f"Country: {form.country}\nLanguages: {form.languages or 'Not specified'}\n"
            f"Area of interest: {form.interest_label}\n\nMessage:\n"
            f"{form.message or 'No message provided'}\n\n---\nSubmitted: {_submitted_at()}\n"
            f"Participation does not constitute party membership (acknowledged)."
        ),
        body_html=(
            f"<h2>New International Wing registration</h2>"
            f"<p><strong>Name:</strong> {e(form.name)}</p>"
            f"<p><strong>Email:</strong> {e(form.email)}</p>"
            f"<p><strong>Country:</strong> {e(form.country)}</p>"
            f"<p><strong>Languages:</strong> {e(form.languages) if form.languages else '<em>Not specified</em>'}</p>"
            f"<p><strong>Interest area:</strong> {e(form.interest_label)}</p>"
            + (f"<p>{e(form.message).replace(chr(10), '<br>')}</p>" if form.message else "")
        ),
        reply_to=form.email,
    )
    logger.info("International registration from %s (%s)", form.email, form.country)
    return FormAccepted(message="Registration received successfully")
