from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Input hygiene shared by every public form
# ---------------------------------------------------------------------------

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")

_DANGEROUS_PATTERNS = [
    re.compile(r"<script\b", re.I),
    re.compile(r"javascript:", re.I),
    re.compile(r"on\w+\s*=", re.I),      # onclick=, onerror=, ...
    re.compile(r"data:\s*text/html", re.I),
    re.compile(r"vbscript:", re.I),
]

_NAME_RE = re.compile(r"^[a-zA-ZąćęłńóśźżĄĆĘŁŃÓŚŹŻ\s\-'.]+$")

# Disposable mailbox providers commonly used for spam
BLOCKED_EMAIL_DOMAINS = frozenset({
    "tempmail.com",
    "throwaway.email",
    "guerrillamail.com",
    "10minutemail.com",
    "mailinator.com",
    "yopmail.com",
    "trashmail.com",
})

MAX_EMAIL_LENGTH = 254


def strip_control_chars(value: str) -> str:
    return _CONTROL_CHARS.sub("", value)


def contains_dangerous_content(value: str) -> bool:
    return any(p.search(value) for p in _DANGEROUS_PATTERNS)


def _clean(value: Any) -> Any:
    if isinstance(value, str):
        return strip_control_chars(value).strip()
    return value


def _check_name(value: str) -> str:
    if not _NAME_RE.match(value):
        raise ValueError("Name contains invalid characters")
    return value


def _check_email(value: str) -> str:
    value = value.lower()
    if len(value) > MAX_EMAIL_LENGTH:
        raise ValueError("Email too long")
    if value.rsplit("@", 1)[-1] in BLOCKED_EMAIL_DOMAINS:
        raise ValueError("Please use a valid email address")
    return value


def _check_safe(value: Optional[str]) -> Optional[str]:
    if value and contains_dangerous_content(value):
        raise ValueError("Input contains potentially dangerous content")
    return value


class PublicForm(BaseModel):
    """Common fields: sender name/e-mail plus the honeypot decoy."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    website: Optional[str] = Field(default=None, description="Honeypot; must stay empty.")
    timestamp: Optional[float] = None

    @field_validator("*", mode="before")
    @classmethod
    def _sanitize(cls, v: Any) -> Any:
        return _clean(v)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, v: str) -> str:
        return _check_name(v)

    @field_validator("email")
    @classmethod
    def _valid_email(cls, v: str) -> str:
        return _check_email(str(v))


# ---------------------------------------------------------------------------
# Public forms
# ---------------------------------------------------------------------------

class ContactForm(PublicForm):
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=10, max_length=5000)

    @field_validator("subject", "message")
    @classmethod
    def _safe(cls, v: str) -> str:
        return _check_safe(v)


class RecruitmentForm(PublicForm):
    location: Optional[str] = Field(default="", max_length=120)
    message: str = Field(..., min_length=20, max_length=5000)
    turnstile_token: Optional[str] = Field(default=None, alias="turnstileToken")

    @field_validator("location", "message")
    @classmethod
    def _safe(cls, v: Optional[str]) -> Optional[str]:
        return _check_safe(v)


INTEREST_LABELS: Dict[str, str] = {
    "translation": "Translation & Localization",
    "outreach": "Outreach & Social Media",
    "events": "Events & Coordination",
    "research": "Research & Analysis",
    "other": "Other",
}


class InternationalJoinForm(PublicForm):
    country: str = Field(..., min_length=1, max_length=100)
    languages: Optional[str] = Field(default=None, max_length=200)
    interest: str = Field(..., min_length=1, max_length=50)
    message: Optional[str] = Field(default=None, max_length=5000)
    consent: bool

    @field_validator("country", "languages", "interest", "message")
    @classmethod
    def _safe(cls, v: Optional[str]) -> Optional[str]:
        return _check_safe(v)

    @field_validator("consent")
    @classmethod
    def _consent_given(cls, v: bool) -> bool:
        if v is not True:
            raise ValueError("Consent is required")
        return v

    @property
    def interest_label(self) -> str:
        return INTEREST_LABELS.get(self.interest, self.interest)


class FormAccepted(BaseModel):
    success: bool = True
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Two-factor login
# ---------------------------------------------------------------------------

class TwoFactorRequestIn(BaseModel):
    email: str = Field(..., min_length=1, max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return v.strip().lower()


class TwoFactorVerifyIn(BaseModel):
    challenge_token: str = Field(..., min_length=1, alias="challengeToken")
    code: str = Field(..., min_length=1, max_length=12)


class TwoFactorChallengeOut(BaseModel):
    success: bool = True
    challengeToken: str
    message: str = "Verification code sent to your email"


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

class PageViewIn(BaseModel):
    """Page view beacon; all fields optional and sanitised before storage."""

    model_config = ConfigDict(extra="ignore")

    path: Optional[Any] = None
    referrer: Optional[Any] = None
    sessionId: Optional[Any] = None


class AnalyticsSummary(BaseModel):
    period: str
    totalViews: int
    uniqueSessions: int
    topPaths: List[Dict[str, Any]]
    topCountries: List[Dict[str, Any]]
    devices: List[Dict[str, Any]]
    browsers: List[Dict[str, Any]]
    operatingSystems: List[Dict[str, Any]]


# ---------------------------------------------------------------------------
# Internal / admin
# ---------------------------------------------------------------------------

class SecurityLogIn(BaseModel):
    type: str = Field(..., min_length=1, max_length=32)
    severity: str = Field(..., pattern="^(low|medium|high|critical)$")
    ipAddress: str = Field(..., min_length=1, max_length=64)
    details: str = Field(..., min_length=1, max_length=2000)
    path: Optional[str] = Field(default=None, max_length=512)
    userAgent: Optional[str] = Field(default=None, max_length=512)
    metadata: Optional[Any] = None


class ResolveAlertIn(BaseModel):
    action: str
    alertId: Optional[int] = None
    ipAddress: Optional[str] = None


class AuditLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    resource: str
    resource_id: Optional[str] = None
    severity: str
    user_email: Optional[str] = None
    ip_address: str
    user_agent: Optional[str] = None
    details_json: Optional[str] = None
    created_at: datetime


class PasswordChangeIn(BaseModel):
    currentPassword: str = Field(..., min_length=1)
    newPassword: str = Field(..., min_length=12, max_length=128)
    confirmPassword: str

    @field_validator("newPassword")
    @classmethod
    def _strong(cls, v: str) -> str:
        if not re.search(r"[A-Z]", v):
            raise ValueError("Password must contain at least one uppercase letter")
        if not re.search(r"[a-z]", v):
            raise ValueError("Password must contain at least one lowercase letter")
        if not re.search(r"[0-9]", v):
            raise ValueError("Password must contain at least one number")
        if not re.search(r"[^A-Za-z0-9]", v):
            raise ValueError("Password must contain at least one special character")
        return v

    @model_validator(mode="after")
    def _confirmed(self) -> "PasswordChangeIn":
        if self.newPassword != self.confirmPassword:
            raise ValueError("Passwords don't match")
        return self
