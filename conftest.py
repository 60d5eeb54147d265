"""
pytest configuration – point the service at a throwaway SQLite file, create
tables once per run and reset every in-process guard before each test.
"""
import os
import tempfile

_tmpdir = tempfile.mkdtemp(prefix="civicsite-tests-")
os.environ.setdefault("CIVICSITE_DATABASE_URL", f"sqlite:///{_tmpdir}/test.db")
os.environ.setdefault("CIVICSITE_ENVIRONMENT", "development")
os.environ.setdefault("CIVICSITE_LOG_FORMAT", "text")
os.environ.setdefault("CIVICSITE_JWT_SECRET", "test-secret-not-for-production-use-0123456789")
os.environ.setdefault("CIVICSITE_ALLOWED_HOSTS", '["localhost", "testserver", "example.org"]')
os.environ.setdefault("CIVICSITE_ADMIN_EMAIL", "admin@example.org")
os.environ.setdefault("CIVICSITE_ADMIN_PASSWORD", "Adm1n!Passw0rd-Test")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete, select

from civicsite.database import Base, db_session, engine
from civicsite import models  # noqa: F401 – registers ORM mappings with Base.metadata
from civicsite.main import app
from civicsite.models import AuditLog, PageView, SecurityAlert, User
from civicsite.audit.logger import audit_logger, failed_logins
from civicsite.auth.core import create_session_token, hash_password
from civicsite.auth.two_factor import two_factor_store
from civicsite.rate_limit import limiter
from civicsite.security.ratelimit import rate_limiter
from civicsite.security.threats import threat_tracker

ADMIN_EMAIL = os.environ["CIVICSITE_ADMIN_EMAIL"]
ADMIN_PASSWORD = os.environ["CIVICSITE_ADMIN_PASSWORD"]

# A realistic browser UA; short or tool-like agents trip the threat gate
BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class FakeClock:
    """Injectable clock for the time-based guards."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True, scope="session")
def create_tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_state():
    """Every test starts with empty counters, buffers and alert tables."""
    rate_limiter.reset()
    limiter.reset()
    threat_tracker.reset()
    audit_logger.clear()
    failed_logins.reset()
    two_factor_store.reset()
    with db_session() as session:
        session.execute(delete(SecurityAlert))
        session.execute(delete(AuditLog))
        session.execute(delete(PageView))
        session.execute(delete(User).where(User.email != ADMIN_EMAIL))
    yield
    audit_logger.clear()


@pytest.fixture()
def client() -> TestClient:
    return TestClient(app, headers={"User-Agent": BROWSER_UA})


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def admin_user() -> User:
    with db_session() as session:
        return session.execute(select(User).where(User.email == ADMIN_EMAIL)).scalar_one()


@pytest.fixture()
def admin_token(admin_user: User) -> str:
    return create_session_token(admin_user.email, "admin", user_id=admin_user.id)


@pytest.fixture()
def admin_headers(admin_token: str) -> dict:
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture()
def make_user():
    """Factory for extra accounts; removed again by ``reset_state``."""

    def _make(email: str, password: str, role: str = "admin", is_active: bool = True) -> User:
        with db_session() as session:
            user = User(
                email=email,
                name=email.split("@")[0],
                password_hash=hash_password(password),
                role=role,
                is_active=is_active,
            )
            session.add(user)
            session.flush()
        return user

    return _make
