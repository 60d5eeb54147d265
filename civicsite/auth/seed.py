from __future__ import annotations

import logging

from sqlalchemy import select

from .core import hash_password
from ..config import settings
from ..database import db_session
from ..models import User

logger = logging.getLogger("civicsite.seed")

_DEFAULT_PASSWORD = "changeme"


def seed_admin() -> None:
    """
    Create the first admin account when the users table is empty.

    Credentials come from CIVICSITE_ADMIN_EMAIL / CIVICSITE_ADMIN_PASSWORD /
    CIVICSITE_ADMIN_NAME. The default password is only accepted in
    development.
    """
    email = settings.admin_email.strip().lower()

    with db_session() as session:
        existing = session.execute(select(User).limit(1)).scalar_one_or_none()
        if existing:
            return

        if settings.admin_password == _DEFAULT_PASSWORD:
            logger.warning(
                "Seeding admin with the DEFAULT password; set CIVICSITE_ADMIN_PASSWORD "
                "before deploying to production."
            )
            if settings.environment != "development":
                logger.error(
                    "Refusing to seed the default password in the %s environment",
                    settings.environment,
                )
                return

        session.add(User(
            email=email,
            name=settings.admin_name,
            password_hash=hash_password(settings.admin_password),
            role="admin",
            is_active=True,
        ))
    logger.info("Default admin created: %s", email)
