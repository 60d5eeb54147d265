"""
threats.py — Per-IP threat tracking and attack pattern detection
================================================================
Complements the fixed-window limiter with behaviour that spans categories:
request floods, repeated limit hits, scanner probes and login abuse. Each
client IP gets a :class:`ThreatRecord` that lives for a 10-minute tracking
window; crossing a threshold raises a security alert and, for the nastier
patterns, blocks the IP for an hour.

Alerts are handed to an ``alert_sink`` callable (the module singleton uses
:func:`civicsite.audit.alerts.record_security_alert`). The sink is invoked
outside the tracker lock.
"""
from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger("civicsite.threats")

TRACKING_WINDOW = 10 * 60
BLOCK_DURATION = 60 * 60

API_SPAM_REQUESTS = 150
RATE_LIMIT_ABUSE_HITS = 5
BRUTE_FORCE_FAILURES = 3
CREDENTIAL_STUFFING_EMAILS = 3
BOT_FLOOD_RPS = 10
BOT_FLOOD_MIN_SECONDS = 5
SUSPICIOUS_PATTERN_HITS = 3

# alerts_sent caps, so a single noisy IP cannot flood the alert table
_MAX_SPAM_ALERTS = 3
_MAX_FLOOD_ALERTS = 5

PATTERN_ALERT_TYPES: Dict[str, str] = {
    "path_traversal": "PATH_TRAVERSAL",
    "xss": "XSS_ATTEMPT",
    "sql_injection": "SQL_INJECTION",
    "scanner": "SCANNER_DETECTED",
    "suspicious_ua": "SUSPICIOUS_UA",
    "env_access": "ENV_FILE_ACCESS",
    "admin_probe": "ADMIN_PROBE",
    "payload_injection": "PAYLOAD_INJECTION",
}

AlertSink = Callable[..., Any]


# ---------------------------------------------------------------------------
# Pattern detection
# ---------------------------------------------------------------------------

_PATH_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\.\."), "path_traversal"),
    (re.compile(r"<script", re.I), "xss"),
    (re.compile(r"union\s+select", re.I), "sql_injection"),
    (re.compile(r"eval\(", re.I), "payload_injection"),
    (re.compile(r"javascript:", re.I), "xss"),
    (re.compile(r"on\w+\s*=", re.I), "xss"),
    (re.compile(r"wp-admin", re.I), "scanner"),
    (re.compile(r"wp-login", re.I), "scanner"),
    (re.compile(r"phpmyadmin", re.I), "scanner"),
    (re.compile(r"\.php$", re.I), "scanner"),
    (re.compile(r"\.asp$", re.I), "scanner"),
    (re.compile(r"\.env", re.I), "env_access"),
    (re.compile(r"\.git", re.I), "env_access"),
    (re.compile(r"\.htaccess", re.I), "env_access"),
    (re.compile(r"/etc/passwd", re.I), "path_traversal"),
    (re.compile(r"/proc/self", re.I), "path_traversal"),
    (re.compile(r"cmd\.exe", re.I), "payload_injection"),
    (re.compile(r"powershell", re.I), "payload_injection"),
    (re.compile(r"\bexec\b.*\(", re.I), "payload_injection"),
    (re.compile(r"\bdrop\s+table\b", re.I), "sql_injection"),
    (re.compile(r"\binsert\s+into\b", re.I), "sql_injection"),
    (re.compile(r"\bdelete\s+from\b", re.I), "sql_injection"),
    (re.compile(r"\bor\s+1\s*=\s*1", re.I), "sql_injection"),
    (re.compile(r"\badmin.*\.bak", re.I), "scanner"),
    (re.compile(r"\bbackup.*\.sql", re.I), "scanner"),
    (re.compile(r"/xmlrpc\.php", re.I), "scanner"),
    (re.compile(r"/wp-content", re.I), "scanner"),
    (re.compile(r"/wp-includes", re.I), "scanner"),
]

_UA_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"sqlmap", re.I), "sql_injection"),
    (re.compile(r"havij", re.I), "sql_injection"),
    (re.compile(
        r"nikto|nmap|masscan|zgrab|gobuster|dirbuster|wpscan|acunetix|nessus|openvas", re.I,
    ), "scanner"),
    (re.compile(r"curl/[0-9]", re.I), "suspicious_ua"),
    (re.compile(r"python-requests", re.I), "suspicious_ua"),
    (re.compile(r"go-http-client", re.I), "suspicious_ua"),
    (re.compile(r"java/", re.I), "suspicious_ua"),
]

_MIN_USER_AGENT_LENGTH = 10


def detect_suspicious_pattern(path: str, user_agent: Optional[str]) -> Optional[str]:
    """Return the pattern type of the first match, or None for a clean request.

    The path is checked before the user agent; a missing or very short user
    agent counts as ``suspicious_ua``.
    """
    for pattern, kind in _PATH_PATTERNS:
        if pattern.search(path):
            return kind

    ua = user_agent or ""
    for pattern, kind in _UA_PATTERNS:
        if pattern.search(ua):
            return kind

    if len(ua) < _MIN_USER_AGENT_LENGTH:
        return "suspicious_ua"
    return None


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

@dataclass
class ThreatRecord:
    first_seen: float
    last_seen: float
    request_count: int = 0
    rate_limit_hits: int = 0
    suspicious_hits: int = 0
    login_failures: int = 0
    emails_attempted: Set[str] = field(default_factory=set)
    alerts_sent: int = 0
    blocked: bool = False
    block_expiry: float = 0.0

    def is_blocked(self, now: float) -> bool:
        return self.blocked and now < self.block_expiry

    def block(self, now: float) -> None:
        self.blocked = True
        self.block_expiry = now + BLOCK_DURATION

    def to_dict(self, ip: str) -> Dict[str, Any]:
        return {
            "ip": ip,
            "requestCount": self.request_count,
            "rateLimitHits": self.rate_limit_hits,
            "suspiciousHits": self.suspicious_hits,
            "loginFailures": self.login_failures,
            "emailsAttempted": sorted(self.emails_attempted),
            "firstSeen": self.first_seen,
            "lastSeen": self.last_seen,
            "blocked": self.blocked,
            "blockExpiry": self.block_expiry if self.blocked else None,
        }


@dataclass(frozen=True)
class ThreatVerdict:
    blocked: bool
    reason: Optional[str] = None


_ALLOWED = ThreatVerdict(blocked=False)


class ThreatTracker:
    def __init__(
        self,
        alert_sink: Optional[AlertSink] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.alert_sink = alert_sink
        self.clock = clock
        self._records: Dict[str, ThreatRecord] = {}
        self._lock = threading.Lock()

    # -- internals -----------------------------------------------------------

    def _record(self, ip: str, now: float) -> ThreatRecord:
        record = self._records.get(ip)
        if record is None or now - record.first_seen > TRACKING_WINDOW:
            # A still-running block survives the window rollover
            carried = record if record is not None and record.is_blocked(now) else None
            record = ThreatRecord(first_seen=now, last_seen=now)
            if carried is not None:
                record.blocked = True
                record.block_expiry = carried.block_expiry
            self._records[ip] = record
        record.last_seen = now
        return record

    def _emit(self, alerts: List[Dict[str, Any]]) -> None:
        for alert in alerts:
            logger.warning(
                "SECURITY ALERT %s from %s: %s",
                alert["type"], alert["ip_address"], alert["details"],
                extra={"alert_type": alert["type"], "severity": alert["severity"],
                       "ip": alert["ip_address"], "path": alert.get("path")},
            )
            if self.alert_sink is not None:
                self.alert_sink(**alert)

    # -- tracking ------------------------------------------------------------

    def is_blocked(self, ip: str) -> ThreatVerdict:
        with self._lock:
            record = self._records.get(ip)
            if record is not None and record.is_blocked(self.clock()):
                return ThreatVerdict(True, "IP blocked due to detected malicious activity")
        return _ALLOWED

    def track_request(self, ip: str, path: str) -> ThreatVerdict:
        alerts: List[Dict[str, Any]] = []
        verdict = _ALLOWED
        with self._lock:
            now = self.clock()
            record = self._record(ip, now)
            if record.is_blocked(now):
                return ThreatVerdict(True, "IP temporarily blocked due to malicious activity")
            record.blocked = False

            record.request_count += 1
            elapsed = now - record.first_seen
            rps = record.request_count / max(elapsed, 1.0)

            if record.request_count >= API_SPAM_REQUESTS and record.alerts_sent < _MAX_SPAM_ALERTS:
                alerts.append(dict(
                    type="API_SPAM", severity="high", ip_address=ip, path=path,
                    details=f"{record.request_count} requests in {round(elapsed)}s ({rps:.1f} req/s)",
                    metadata={"requestCount": record.request_count, "rps": round(rps, 1),
                              "elapsed": round(elapsed)},
                ))
                record.alerts_sent += 1

            if rps >= BOT_FLOOD_RPS and elapsed > BOT_FLOOD_MIN_SECONDS \
                    and record.alerts_sent < _MAX_FLOOD_ALERTS:
                alerts.append(dict(
                    type="BOT_FLOOD", severity="critical", ip_address=ip, path=path,
                    details=f"Bot-like flood detected: {rps:.1f} requests/second over {round(elapsed)}s",
                    metadata={"rps": round(rps, 1), "totalRequests": record.request_count},
                ))
                record.alerts_sent += 1
                record.block(now)
                verdict = ThreatVerdict(True, "Blocked: bot-like flood detected")
        self._emit(alerts)
        return verdict

    def track_rate_limit_hit(self, ip: str, path: str, category: str) -> None:
        alerts: List[Dict[str, Any]] = []
        with self._lock:
            now = self.clock()
            record = self._record(ip, now)
            record.rate_limit_hits += 1
            if record.rate_limit_hits >= RATE_LIMIT_ABUSE_HITS and record.alerts_sent < _MAX_SPAM_ALERTS:
                alerts.append(dict(
                    type="RATE_LIMIT_ABUSE", severity="high", ip_address=ip, path=path,
                    details=f"IP hit rate limits {record.rate_limit_hits} times (type: {category})",
                    metadata={"hitCount": record.rate_limit_hits, "limitType": category},
                ))
                record.alerts_sent += 1
            if record.rate_limit_hits >= RATE_LIMIT_ABUSE_HITS * 2 and not record.is_blocked(now):
                record.block(now)
        self._emit(alerts)

    def track_suspicious(self, ip: str, path: str, user_agent: Optional[str], pattern_type: str) -> None:
        with self._lock:
            now = self.clock()
            record = self._record(ip, now)
            record.suspicious_hits += 1
            escalated = record.suspicious_hits >= SUSPICIOUS_PATTERN_HITS
            if escalated:
                record.block(now)
            alert = dict(
                type=PATTERN_ALERT_TYPES.get(pattern_type, "SCANNER_DETECTED"),
                severity="critical" if escalated else "medium",
                ip_address=ip, path=path, user_agent=user_agent,
                details=f"Suspicious pattern detected: {pattern_type} on {path}",
                metadata={"patternType": pattern_type, "totalSuspiciousHits": record.suspicious_hits},
            )
        self._emit([alert])

    def track_login_failure(self, ip: str, email: str) -> None:
        alerts: List[Dict[str, Any]] = []
        with self._lock:
            now = self.clock()
            record = self._record(ip, now)
            record.login_failures += 1
            record.emails_attempted.add(email.strip().lower())
            emails = sorted(record.emails_attempted)

            if record.login_failures >= BRUTE_FORCE_FAILURES:
                alerts.append(dict(
                    type="BRUTE_FORCE", severity="critical", ip_address=ip, path="/api/auth",
                    details=f"{record.login_failures} failed login attempts from this IP",
                    metadata={"failureCount": record.login_failures, "emailsAttempted": emails},
                ))
            if len(emails) >= CREDENTIAL_STUFFING_EMAILS:
                alerts.append(dict(
                    type="CREDENTIAL_STUFFING", severity="critical", ip_address=ip, path="/api/auth",
                    details=f"{len(emails)} different emails attempted from same IP",
                    metadata={"emailCount": len(emails), "emails": emails},
                ))
                record.block(now)
        self._emit(alerts)

    # -- maintenance / reporting ---------------------------------------------

    def unblock(self, ip: str) -> bool:
        with self._lock:
            record = self._records.pop(ip, None)
        return record is not None

    def active_threats(self) -> List[Dict[str, Any]]:
        """Records worth showing an operator, blocked and noisiest first."""
        with self._lock:
            now = self.clock()
            rows = [
                (ip, r) for ip, r in self._records.items()
                if r.request_count > 10 or r.suspicious_hits > 0 or r.login_failures > 0
                or r.is_blocked(now)
            ]
            rows.sort(key=lambda item: (
                not item[1].is_blocked(now), -item[1].suspicious_hits, -item[1].request_count,
            ))
            return [r.to_dict(ip) for ip, r in rows]

    def sweep(self) -> int:
        with self._lock:
            now = self.clock()
            stale = [
                ip for ip, r in self._records.items()
                if not r.is_blocked(now) and now - r.last_seen > TRACKING_WINDOW * 2
            ]
            for ip in stale:
                del self._records[ip]
        return len(stale)

    def reset(self) -> None:
        with self._lock:
            self._records.clear()


def _persist_alert(**alert: Any) -> None:
    from ..audit.alerts import record_security_alert

    record_security_alert(**alert)


# Module-level singleton used by the admission middleware and auth routes
threat_tracker = ThreatTracker(alert_sink=_persist_alert)
