from __future__ import annotations

import sys
from functools import lru_cache
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


_DEFAULT_JWT_SECRET = "change-me-in-production-use-long-random-string"


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./civicsite.db"
    log_sql: bool = False

    # Server
    environment: str = "development"
    log_level: str = "info"
    log_format: str = "json"
    site_url: str = "http://localhost:8000"
    allow_cors_origins: List[str] = []

    # Origin validation for unauthenticated form posts
    allowed_hosts: List[str] = ["localhost", "127.0.0.1"]

    # Admin IP allow-list; empty (or "*") admits everyone
    allowed_admin_ips: List[str] = []

    # Sessions
    jwt_secret: str = _DEFAULT_JWT_SECRET
    jwt_expire_minutes: int = 60
    session_cookie_name: str = "civicsite_session"

    # Shared secret for /api/internal/* callers; falls back to jwt_secret
    internal_secret: Optional[str] = None

    # Cloudflare Turnstile
    turnstile_secret_key: Optional[str] = None
    turnstile_verify_url: str = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
    turnstile_timeout_seconds: float = 5.0
    turnstile_fail_open: bool = True

    # Rate limiting
    rate_limit_backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    rate_limit_sweep_seconds: float = 60.0
    csp_report_rate_limit: str = "20/minute"
    block_suspicious_requests: bool = True

    # Audit log buffering
    audit_flush_seconds: float = 5.0
    audit_buffer_max: int = 50

    # Outbound mail
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    mail_from: str = "Website <noreply@localhost>"
    contact_email: str = "office@localhost"

    # Seed admin account
    admin_email: str = "admin@localhost"
    admin_password: str = "changeme"
    admin_name: str = "Site Admin"

    @field_validator("jwt_secret")
    @classmethod
    def validate_jwt_secret(cls, v: str, info) -> str:
        """Refuse to start in production with the default JWT secret."""
        env = info.data.get("environment", "development")
        if env != "development" and v == _DEFAULT_JWT_SECRET:
            print(
                "\nFATAL: CIVICSITE_JWT_SECRET is set to the default value.\n"
                "   Set CIVICSITE_JWT_SECRET to a strong random string before "
                "running in production.\n"
                "   Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\"\n",
                file=sys.stderr,
            )
            raise ValueError(
                "JWT secret must be changed from default in non-development environments. "
                "Set CIVICSITE_JWT_SECRET env var."
            )
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def effective_internal_secret(self) -> str:
        return self.internal_secret or self.jwt_secret

    class Config:
        env_prefix = "CIVICSITE_"


@lru_cache
def get_settings() -> Settings:
    return Settings()


# Module-level singleton for convenience
settings = get_settings()
