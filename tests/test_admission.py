"""
tests/test_admission.py — Request admission pipeline
====================================================

Covers: route classification, per-category limits through the middleware,
threat gate, admin IP allow-list, session / role checks, redirects and the
headers every response carries.
"""
import pytest

from civicsite.api import routes_forms
from civicsite.audit.alerts import list_security_alerts
from civicsite.auth.core import create_session_token
from civicsite.config import settings
from civicsite.security.admission import classify_route, is_admin_ip_allowed
from civicsite.security.threats import threat_tracker

ORIGIN = {"Origin": "http://localhost"}


def _contact(name="Jan Kowalski"):
    return {
        "name": name,
        "email": "jan@example.com",
        "subject": "Question",
        "message": "Hello, I would like to know more.",
    }


def _assert_security_headers(resp):
    assert resp.headers["x-frame-options"] == "DENY"
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert "content-security-policy" in resp.headers


# ═══════════════════════════════════════════════════════════════════════════
# Classification (unit)
# ═══════════════════════════════════════════════════════════════════════════

class TestClassification:
    @pytest.mark.parametrize("path,category", [
        ("/api/auth/2fa", "auth"),
        ("/api/auth/logout", "auth"),
        ("/admin/login", "auth"),
        ("/api/contact", "contact"),
        ("/api/admin/x", "admin"),
        ("/api/international-join", "international_join"),
        ("/api/recruitment", "recruitment"),
        ("/api/analytics/track", "analytics"),
        ("/api/calendar/feed", "public"),
        ("/api/internal/security-log", None),
        ("/admin", None),
        ("/", None),
    ])
    def test_route_table(self, path, category):
        assert classify_route(path) == category

    @pytest.mark.parametrize("allow_list,ip,expected", [
        ([], "1.2.3.4", True),
        (["*"], "1.2.3.4", True),
        (["10.0.0.1", " 10.0.0.2 "], "10.0.0.2", True),
        (["10.0.0.1"], "1.2.3.4", False),
    ])
    def test_admin_allow_list(self, allow_list, ip, expected):
        assert is_admin_ip_allowed(ip, allow_list) is expected


# ═══════════════════════════════════════════════════════════════════════════
# Rate limits through the middleware
# ═══════════════════════════════════════════════════════════════════════════

class TestRateLimiting:
    def test_contact_limit(self, client):
        headers = {**ORIGIN, "X-Forwarded-For": "203.0.113.10"}
        responses = [client.post("/api/contact", json=_contact(), headers=headers) for _ in range(6)]
        assert [r.status_code for r in responses] == [200] * 5 + [429]

        assert responses[0].headers["x-ratelimit-remaining"] == "4"
        assert int(responses[0].headers["x-ratelimit-reset"]) > 0

        denied = responses[5]
        body = denied.json()
        assert body["error"] == "Too many requests"
        assert body["retryAfter"] > 0
        assert int(denied.headers["retry-after"]) == body["retryAfter"]
        _assert_security_headers(denied)

    def test_limits_are_per_client(self, client):
        for _ in range(5):
            client.post("/api/contact", json=_contact(), headers={**ORIGIN, "X-Forwarded-For": "203.0.113.11"})
        resp = client.post("/api/contact", json=_contact(), headers={**ORIGIN, "X-Forwarded-For": "203.0.113.12"})
        assert resp.status_code == 200

    def test_international_join_lockout_records_alert(self, client):
        headers = {**ORIGIN, "X-Forwarded-For": "203.0.113.13"}
        payload = {
            "name": "Anna Smith",
            "email": "anna@example.com",
            "country": "Ireland",
            "interest": "translation",
            "consent": True,
        }
        codes = [
            client.post("/api/international-join", json=payload, headers=headers).status_code
            for _ in range(4)
        ]
        assert codes == [200, 200, 429, 429]

        alerts = list_security_alerts(type="RATE_LIMIT_ABUSE")
        assert alerts
        assert all(a["ipAddress"] == "203.0.113.13" for a in alerts)

    def test_unclassified_paths_have_no_rate_headers(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert "x-ratelimit-remaining" not in resp.headers
        _assert_security_headers(resp)


class TestUnhandledErrors:
    def test_route_error_still_carries_headers(self, client, monkeypatch):
        def broken_mailer(*args, **kwargs):
            raise RuntimeError("mail transport exploded")

        monkeypatch.setattr(routes_forms, "send_email", broken_mailer)
        resp = client.post("/api/contact", json=_contact(), headers=ORIGIN)
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error"}
        assert "exploded" not in resp.text
        _assert_security_headers(resp)


# ═══════════════════════════════════════════════════════════════════════════
# Threat gate
# ═══════════════════════════════════════════════════════════════════════════

class TestThreatGate:
    def test_scanner_path_blocked(self, client):
        resp = client.get("/.env", headers={"X-Forwarded-For": "198.51.100.1"})
        assert resp.status_code == 403
        assert resp.json() == {"error": "Access denied"}
        _assert_security_headers(resp)
        assert list_security_alerts(type="ENV_FILE_ACCESS")[0]["ipAddress"] == "198.51.100.1"

    def test_tool_user_agent_blocked(self, client):
        resp = client.get("/api/calendar/feed", headers={"User-Agent": "sqlmap/1.7"})
        assert resp.status_code == 403

    def test_repeated_probes_block_the_ip(self, client):
        headers = {"X-Forwarded-For": "198.51.100.2"}
        for _ in range(3):
            client.get("/wp-login.php", headers=headers)
        resp = client.get("/health", headers=headers)
        assert resp.status_code == 200  # probes stay reachable
        resp = client.post("/api/analytics/track", json={"path": "/"}, headers=headers)
        assert resp.status_code == 403
        assert threat_tracker.is_blocked("198.51.100.2").blocked is True

    def test_pattern_blocking_can_be_disabled(self, client, monkeypatch):
        monkeypatch.setattr(settings, "block_suspicious_requests", False)
        resp = client.get("/wp-login.php")
        assert resp.status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
# Admin area
# ═══════════════════════════════════════════════════════════════════════════

class TestAdminArea:
    def test_api_without_session(self, client):
        resp = client.get("/api/admin/audit-log")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}
        _assert_security_headers(resp)

    def test_page_without_session_redirects(self, client):
        resp = client.get("/admin", follow_redirects=False)
        assert resp.status_code == 307
        assert resp.headers["location"] == "/admin/login"
        _assert_security_headers(resp)

    def test_expired_session_redirects(self, client):
        token = create_session_token(settings.admin_email, "admin", expires_minutes=-1)
        resp = client.get("/admin", headers={"Authorization": f"Bearer {token}"}, follow_redirects=False)
        assert resp.status_code == 307

    def test_non_admin_role(self, client):
        token = create_session_token("editor@example.org", "editor")
        headers = {"Authorization": f"Bearer {token}"}
        resp = client.get("/api/admin/audit-log", headers=headers)
        assert resp.status_code == 403
        assert resp.json() == {"error": "Forbidden"}
        resp = client.get("/admin", headers=headers, follow_redirects=False)
        assert resp.status_code == 307
        assert resp.headers["location"] == "/admin/login"

    def test_admin_page(self, client, admin_headers):
        resp = client.get("/admin", headers=admin_headers)
        assert resp.status_code == 200
        assert settings.admin_email in resp.text

    def test_login_page_with_session_redirects(self, client, admin_headers):
        resp = client.get("/admin/login", headers=admin_headers, follow_redirects=False)
        assert resp.status_code == 307
        assert resp.headers["location"] == "/admin"

    def test_login_page_is_public(self, client):
        resp = client.get("/admin/login")
        assert resp.status_code == 200
        assert "x-ratelimit-remaining" in resp.headers

    def test_admin_ip_allow_list(self, client, admin_headers, monkeypatch):
        monkeypatch.setattr(settings, "allowed_admin_ips", ["10.0.0.1"])
        denied = client.get(
            "/api/admin/audit-log", headers={**admin_headers, "X-Forwarded-For": "10.0.0.2"},
        )
        assert denied.status_code == 403
        assert denied.json() == {"error": "Access denied"}

        allowed = client.get(
            "/api/admin/audit-log", headers={**admin_headers, "X-Forwarded-For": "10.0.0.1"},
        )
        assert allowed.status_code == 200

        # The login page stays reachable from anywhere
        login = client.get("/admin/login", headers={"X-Forwarded-For": "10.0.0.2"})
        assert login.status_code == 200
