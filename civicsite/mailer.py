"""
mailer.py — Outbound e-mail over SMTP
=====================================
Used for two-factor codes and for forwarding form submissions to the
office inbox. Delivery failures are logged and reported as ``False``;
callers decide whether that is fatal.

When ``CIVICSITE_SMTP_HOST`` is unset the message is written to the log
instead, which keeps local development and tests free of network I/O.
"""
from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Sequence, Union

from .config import settings

logger = logging.getLogger("civicsite.mailer")


def send_email(
    to: Union[str, Sequence[str]],
    subject: str,
    text: str,
    html: Optional[str] = None,
    reply_to: Optional[str] = None,
) -> bool:
    to_addrs = [to] if isinstance(to, str) else list(to)
    if not to_addrs:
        logger.warning("Email %r has no recipients", subject)
        return False

    if not settings.smtp_host:
        # Bodies carry 2FA codes; production logs get the subject only
        extra = {"mail_subject": subject}
        if not settings.is_production:
            extra["mail_body"] = text
        logger.info(
            "SMTP not configured; email to %s not sent: %s",
            ", ".join(to_addrs), subject, extra=extra,
        )
        return True

    msg = MIMEMultipart("alternative")
    msg["From"] = settings.mail_from
    msg["To"] = ", ".join(to_addrs)
    msg["Subject"] = subject
    if reply_to:
        msg["Reply-To"] = reply_to
    msg.attach(MIMEText(text, "plain", "utf-8"))
    if html:
        msg.attach(MIMEText(html, "html", "utf-8"))

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            if settings.smtp_use_tls:
                server.starttls()
            if settings.smtp_username and settings.smtp_password:
                server.login(settings.smtp_username, settings.smtp_password)
            server.sendmail(settings.mail_from, to_addrs, msg.as_string())
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("Email %r to %s failed: %s", subject, ", ".join(to_addrs), exc)
        return False

    logger.info("Email %r sent to %s", subject, ", ".join(to_addrs))
    return True
