"""
tests/test_threats.py — Per-IP threat tracking and pattern detection
====================================================================
"""
import pytest

from civicsite.security.threats import (
    BLOCK_DURATION,
    TRACKING_WINDOW,
    ThreatTracker,
    detect_suspicious_pattern,
)

UA = "Mozilla/5.0 (X11; Linux x86_64) Firefox/125.0"


@pytest.fixture()
def alerts():
    return []


@pytest.fixture()
def tracker(clock, alerts):
    return ThreatTracker(alert_sink=lambda **alert: alerts.append(alert), clock=clock)


# ═══════════════════════════════════════════════════════════════════════════
# Pattern detection
# ═══════════════════════════════════════════════════════════════════════════

class TestPatterns:
    @pytest.mark.parametrize("path,kind", [
        ("/../../etc/passwd", "path_traversal"),
        ("/search?q=<script>alert(1)</script>", "xss"),
        ("/api/items?id=1 union select password", "sql_injection"),
        ("/wp-login.php", "scanner"),
        ("/.env", "env_access"),
        ("/.git/config", "env_access"),
        ("/run?c=cmd.exe", "payload_injection"),
    ])
    def test_paths(self, path, kind):
        assert detect_suspicious_pattern(path, UA) == kind

    @pytest.mark.parametrize("ua,kind", [
        ("sqlmap/1.7", "sql_injection"),
        ("Mozilla/5.0 (compatible; Nikto/2.5)", "scanner"),
        ("curl/8.4.0", "suspicious_ua"),
        ("python-requests/2.31", "suspicious_ua"),
        ("short", "suspicious_ua"),
        (None, "suspicious_ua"),
    ])
    def test_user_agents(self, ua, kind):
        assert detect_suspicious_pattern("/", ua) == kind

    def test_path_checked_before_user_agent(self):
        assert detect_suspicious_pattern("/.env", "sqlmap/1.7") == "env_access"

    def test_clean_request(self):
        assert detect_suspicious_pattern("/api/calendar/feed", UA) is None


# ═══════════════════════════════════════════════════════════════════════════
# Tracker
# ═══════════════════════════════════════════════════════════════════════════

class TestRequestTracking:
    def test_normal_traffic(self, tracker, alerts):
        for _ in range(20):
            assert tracker.track_request("1.1.1.1", "/").blocked is False
        assert alerts == []

    def test_bot_flood_blocks(self, tracker, clock, alerts):
        verdict = None
        for _ in range(70):
            verdict = tracker.track_request("6.6.6.6", "/")
            clock.advance(0.09)
        assert verdict.blocked is True
        assert any(a["type"] == "BOT_FLOOD" and a["severity"] == "critical" for a in alerts)
        assert tracker.is_blocked("6.6.6.6").blocked is True

    def test_api_spam_alert(self, tracker, clock, alerts):
        for _ in range(150):
            tracker.track_request("7.7.7.7", "/api/x")
            clock.advance(1)
        assert [a["type"] for a in alerts] == ["API_SPAM"]
        assert alerts[0]["metadata"]["requestCount"] == 150

    def test_blocked_ip_short_circuits(self, tracker, clock):
        for _ in range(3):
            tracker.track_suspicious("5.5.5.5", "/.env", UA, "env_access")
        verdict = tracker.track_request("5.5.5.5", "/")
        assert verdict.blocked is True


class TestSuspicious:
    def test_escalates_to_block_on_third_hit(self, tracker, alerts):
        tracker.track_suspicious("2.2.2.2", "/wp-admin", UA, "scanner")
        tracker.track_suspicious("2.2.2.2", "/wp-admin", UA, "scanner")
        assert tracker.is_blocked("2.2.2.2").blocked is False
        tracker.track_suspicious("2.2.2.2", "/wp-admin", UA, "scanner")
        assert tracker.is_blocked("2.2.2.2").blocked is True
        assert [a["severity"] for a in alerts] == ["medium", "medium", "critical"]
        assert {a["type"] for a in alerts} == {"SCANNER_DETECTED"}

    def test_alert_type_mapping(self, tracker, alerts):
        tracker.track_suspicious("2.2.2.3", "/x", UA, "admin_probe")
        assert alerts[0]["type"] == "ADMIN_PROBE"

    def test_block_expires(self, tracker, clock):
        for _ in range(3):
            tracker.track_suspicious("2.2.2.4", "/.env", UA, "env_access")
        clock.advance(BLOCK_DURATION + 1)
        assert tracker.is_blocked("2.2.2.4").blocked is False


class TestRateLimitHits:
    def test_abuse_alert_then_block(self, tracker, alerts):
        for _ in range(4):
            tracker.track_rate_limit_hit("3.3.3.3", "/api/contact", "contact")
        assert alerts == []
        tracker.track_rate_limit_hit("3.3.3.3", "/api/contact", "contact")
        assert alerts[0]["type"] == "RATE_LIMIT_ABUSE"
        assert tracker.is_blocked("3.3.3.3").blocked is False
        for _ in range(5):
            tracker.track_rate_limit_hit("3.3.3.3", "/api/contact", "contact")
        assert tracker.is_blocked("3.3.3.3").blocked is True


class TestLoginFailures:
    def test_brute_force(self, tracker, alerts):
        for _ in range(3):
            tracker.track_login_failure("4.4.4.4", "admin@example.org")
        assert [a["type"] for a in alerts] == ["BRUTE_FORCE"]
        assert tracker.is_blocked("4.4.4.4").blocked is False

    def test_credential_stuffing_blocks(self, tracker, alerts):
        for email in ("a@example.org", "b@example.org", "C@example.org"):
            tracker.track_login_failure("4.4.4.5", email)
        assert "CREDENTIAL_STUFFING" in [a["type"] for a in alerts]
        assert tracker.is_blocked("4.4.4.5").blocked is True

    def test_email_case_counts_once(self, tracker, alerts):
        tracker.track_login_failure("4.4.4.6", "a@example.org")
        tracker.track_login_failure("4.4.4.6", "A@Example.org")
        assert tracker.active_threats()[0]["emailsAttempted"] == ["a@example.org"]


class TestMaintenance:
    def test_window_rollover_forgets_counts(self, tracker, clock):
        tracker.track_suspicious("8.8.8.8", "/x", UA, "scanner")
        tracker.track_suspicious("8.8.8.8", "/x", UA, "scanner")
        clock.advance(TRACKING_WINDOW + 1)
        tracker.track_suspicious("8.8.8.8", "/x", UA, "scanner")
        assert tracker.is_blocked("8.8.8.8").blocked is False

    def test_unblock(self, tracker):
        for _ in range(3):
            tracker.track_suspicious("9.9.9.9", "/.env", UA, "env_access")
        assert tracker.unblock("9.9.9.9") is True
        assert tracker.is_blocked("9.9.9.9").blocked is False
        assert tracker.unblock("9.9.9.9") is False

    def test_active_threats_orders_blocked_first(self, tracker):
        tracker.track_login_failure("10.0.0.1", "x@example.org")
        for _ in range(3):
            tracker.track_suspicious("10.0.0.2", "/.env", UA, "env_access")
        rows = tracker.active_threats()
        assert [r["ip"] for r in rows] == ["10.0.0.2", "10.0.0.1"]
        assert rows[0]["blocked"] is True

    def test_sweep_drops_idle_records(self, tracker, clock):
        tracker.track_request("11.0.0.1", "/")
        clock.advance(TRACKING_WINDOW * 2 + 1)
        assert tracker.sweep() == 1
        assert tracker.active_threats() == []
