"""
tests/test_guards.py — Stateless request guards
===============================================

Covers: client IP resolution, origin validation, honeypot check and the
security header set.
"""
import pytest
from starlette.responses import Response

from civicsite.security.client_ip import UNKNOWN_IP, get_client_ip
from civicsite.security.headers import (
    CONTENT_SECURITY_POLICY,
    apply_security_headers,
    get_security_headers,
)
from civicsite.security.honeypot import validate_honeypot
from civicsite.security.origin import validate_origin

ALLOWED = ["example.org", "www.example.org", "localhost"]


# ═══════════════════════════════════════════════════════════════════════════
# Client IP
# ═══════════════════════════════════════════════════════════════════════════

class TestClientIp:
    def test_cloudflare_header_wins(self):
        headers = {
            "cf-connecting-ip": "1.1.1.1",
            "x-forwarded-for": "2.2.2.2",
            "x-real-ip": "3.3.3.3",
        }
        assert get_client_ip(headers) == "1.1.1.1"

    def test_first_forwarded_hop(self):
        assert get_client_ip({"x-forwarded-for": " 2.2.2.2 , 10.0.0.1"}) == "2.2.2.2"

    def test_real_ip_fallback(self):
        assert get_client_ip({"x-real-ip": "3.3.3.3"}) == "3.3.3.3"

    def test_unknown(self):
        assert get_client_ip({}) == UNKNOWN_IP == "unknown"


# ═══════════════════════════════════════════════════════════════════════════
# Origin
# ═══════════════════════════════════════════════════════════════════════════

class TestOrigin:
    def test_allowed_origin(self):
        assert validate_origin({"origin": "https://example.org"}, ALLOWED) is True

    def test_port_and_case_ignored(self):
        assert validate_origin({"origin": "https://WWW.Example.org:8443"}, ALLOWED) is True

    def test_foreign_origin(self):
        assert validate_origin({"origin": "https://evil.test"}, ALLOWED) is False

    def test_lookalike_suffix_rejected(self):
        assert validate_origin({"origin": "https://example.org.evil.test"}, ALLOWED) is False

    def test_referer_fallback(self):
        headers = {"referer": "https://example.org/contact?x=1"}
        assert validate_origin(headers, ALLOWED) is True

    def test_origin_preferred_over_referer(self):
        headers = {"origin": "https://evil.test", "referer": "https://example.org/"}
        assert validate_origin(headers, ALLOWED) is False

    @pytest.mark.parametrize("allow_missing", [True, False])
    def test_missing_headers(self, allow_missing):
        assert validate_origin({}, ALLOWED, allow_missing=allow_missing) is allow_missing

    def test_unparseable_origin(self):
        assert validate_origin({"origin": "not a url"}, ALLOWED) is False


# ═══════════════════════════════════════════════════════════════════════════
# Honeypot
# ═══════════════════════════════════════════════════════════════════════════

class TestHoneypot:
    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_untouched(self, value):
        assert validate_honeypot(value) is True

    def test_filled(self):
        assert validate_honeypot("http://spam.example") is False


# ═══════════════════════════════════════════════════════════════════════════
# Security headers
# ═══════════════════════════════════════════════════════════════════════════

class TestSecurityHeaders:
    def test_full_set(self):
        headers = get_security_headers()
        assert headers["X-Frame-Options"] == "DENY"
        assert headers["X-Content-Type-Options"] == "nosniff"
        assert "max-age=31536000" in headers["Strict-Transport-Security"]
        assert headers["Content-Security-Policy"] == CONTENT_SECURITY_POLICY

    def test_csp_reports_to_internal_endpoint(self):
        assert "report-uri /api/internal/csp-report" in CONTENT_SECURITY_POLICY
        assert "frame-ancestors 'none'" in CONTENT_SECURITY_POLICY

    def test_apply(self):
        response = apply_security_headers(Response("ok"))
        assert response.headers["referrer-policy"] == "strict-origin-when-cross-origin"
        assert "content-security-policy" in response.headers
