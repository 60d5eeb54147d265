"""
logger.py — Buffered audit trail and failed-login tracking
=========================================================
Audit entries are buffered in memory and written to the ``audit_logs`` table
in batches. ``high`` and ``critical`` entries flush immediately, as does a
full buffer; everything else waits for the periodic flush started in
``main.py``.

Every flushed entry is also emitted on the ``civicsite.audit`` logger so the
trail is visible in the process log. If the sink fails, the entries are
logged as fallback records instead of being dropped.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..config import settings
from ..database import db_session
from ..models import AuditLog
from ..security.ratelimit import InMemoryRateLimitStore, RateLimitEntry, RateLimitStore

logger = logging.getLogger("civicsite.audit")

AUDIT_ACTIONS = frozenset({
    "LOGIN_SUCCESS", "LOGIN_FAILED", "LOGOUT",
    "CREATE", "UPDATE", "DELETE", "VIEW", "EXPORT",
    "SETTINGS_CHANGE", "PASSWORD_CHANGE", "SUSPICIOUS_ACTIVITY",
})

AUDIT_RESOURCES = frozenset({
    "auth", "announcement", "event", "manifesto", "team", "settings", "contact", "system",
})

_LOG_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


def default_severity(action: str) -> str:
    if action == "SUSPICIOUS_ACTIVITY":
        return "critical"
    if action in ("DELETE", "PASSWORD_CHANGE", "SETTINGS_CHANGE"):
        return "high"
    if action in ("CREATE", "UPDATE", "LOGIN_FAILED"):
        return "medium"
    return "low"


@dataclass(frozen=True)
class AuditEntry:
    action: str
    resource: str
    ip_address: str
    resource_id: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    severity: str = "low"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_urgent(self) -> bool:
        return self.severity in ("high", "critical")


AuditSink = Callable[[List[AuditEntry]], None]


def persist_audit_entries(entries: List[AuditEntry]) -> None:
    """Default sink: one ``audit_logs`` row per entry, in a single transaction."""
    with db_session() as session:
        for e in entries:
            session.add(AuditLog(
                action=e.action,
                resource=e.resource,
                resource_id=e.resource_id,
                severity=e.severity,
                user_id=e.user_id,
                user_email=e.user_email,
                ip_address=e.ip_address,
                user_agent=e.user_agent,
                details_json=json.dumps(e.details) if e.details else None,
                created_at=e.timestamp,
            ))


class AuditLogger:
    def __init__(
        self,
        sink: Optional[AuditSink] = persist_audit_entries,
        flush_interval: float = 5.0,
        max_buffer: int = 50,
    ) -> None:
        self.sink = sink
        self.flush_interval = flush_interval
        self.max_buffer = max_buffer
        self._buffer: List[AuditEntry] = []
        self._lock = threading.Lock()

    def log(
        self,
        action: str,
        resource: str,
        ip_address: str,
        *,
        resource_id: Optional[str] = None,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            action=action,
            resource=resource,
            ip_address=ip_address,
            resource_id=resource_id,
            user_id=user_id,
            user_email=user_email,
            user_agent=user_agent,
            details=details,
            severity=severity or default_severity(action),
        )
        with self._lock:
            self._buffer.append(entry)
            full = len(self._buffer) >= self.max_buffer
        if entry.is_urgent or full:
            self.flush()
        return entry

    def pending(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._buffer)

    def flush(self) -> int:
        """Drain the buffer; returns the number of entries handled."""
        with self._lock:
            entries, self._buffer = self._buffer, []
        if not entries:
            return 0

        for e in entries:
            target = f"{e.resource}:{e.resource_id}" if e.resource_id else e.resource
            logger.log(
                _LOG_LEVELS.get(e.severity, logging.INFO),
                "%s %s ip=%s user=%s", e.action, target, e.ip_address, e.user_email or "anonymous",
                extra={"audit_action": e.action, "severity": e.severity, "ip": e.ip_address,
                       "details": e.details if e.is_urgent else None},
            )

        if self.sink is not None:
            try:
                self.sink(entries)
            except Exception:
                logger.exception("Failed to persist %d audit entries", len(entries))
                for e in entries:
                    logger.error("AUDIT-FALLBACK %s", json.dumps(asdict(e), default=str))
        return len(entries)

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()


class FailedLoginTracker:
    """Counts failed logins per ``(ip, email)`` within a rolling window.

    ``record`` returns the count after this failure. The window starts at the
    first failure and is not extended by later ones.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        threshold: int = 5,
        window: float = 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.threshold = threshold
        self.window = window
        self.clock = clock
        self._lock = threading.Lock()

    @staticmethod
    def _key(ip: str, email: str) -> str:
        return f"login:{ip}:{email.strip().lower()}"

    def record(self, ip: str, email: str) -> int:
        key = self._key(ip, email)
        with self._lock:
            now = self.clock()
            if self.store.get(key, now) is None:
                self.store.set(key, RateLimitEntry(count=1, reset_at=now + self.window))
                return 1
            return self.store.increment(key)

    def clear(self, ip: str, email: str) -> None:
        self.store.delete(self._key(ip, email))

    def sweep(self) -> int:
        return self.store.sweep(self.clock())

    def reset(self) -> None:
        self.store.clear()


# Module-level singletons
audit_logger = AuditLogger(
    flush_interval=settings.audit_flush_seconds,
    max_buffer=settings.audit_buffer_max,
)
failed_logins = FailedLoginTracker()


def audit_log(action: str, resource: str, ip_address: str, **kwargs: Any) -> AuditEntry:
    return audit_logger.log(action, resource, ip_address, **kwargs)


def track_failed_login(ip_address: str, email: str, user_agent: Optional[str] = None) -> int:
    """Record a failed login and write the matching audit entries.

    A single critical ``SUSPICIOUS_ACTIVITY`` entry is written when the count
    for this IP/e-mail pair reaches the threshold inside the window.
    """
    count = failed_logins.record(ip_address, email)
    if count == failed_logins.threshold:
        audit_log(
            "SUSPICIOUS_ACTIVITY", "auth", ip_address,
            user_email=email,
            user_agent=user_agent,
            severity="critical",
            details={
                "reason": "Multiple failed login attempts",
                "attemptCount": count,
                "timeWindow": "1 hour",
            },
        )
    audit_log("LOGIN_FAILED", "auth", ip_address, user_email=email, user_agent=user_agent)
    return count


def clear_failed_logins(ip_address: str, email: str) -> None:
    failed_logins.clear(ip_address, email)
