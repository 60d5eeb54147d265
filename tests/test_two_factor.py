"""
tests/test_two_factor.py — Two-factor challenges and the admin login flow
=========================================================================

Covers: challenge lifecycle in the store (expiry, single use, attempt cap),
plus the HTTP flow request → verify → session cookie → logout.
"""
import pytest

from civicsite.audit.logger import audit_logger, failed_logins
from civicsite.auth import routes_auth
from civicsite.auth.core import read_session
from civicsite.auth.two_factor import TwoFactorError, TwoFactorStore, two_factor_store
from civicsite.config import settings


# ═══════════════════════════════════════════════════════════════════════════
# Store (unit)
# ═══════════════════════════════════════════════════════════════════════════

class TestTwoFactorStore:
    def test_create(self, clock):
        store = TwoFactorStore(clock=clock)
        challenge = store.create(" Admin@Example.org ")
        assert challenge.email == "admin@example.org"
        assert len(challenge.code) == 6 and challenge.code.isdigit()
        assert len(challenge.challenge_token) == 64
        assert challenge.expires_at == clock() + 300

    def test_new_challenge_replaces_old_one(self, clock):
        store = TwoFactorStore(clock=clock)
        first = store.create("a@example.org")
        second = store.create("a@example.org")
        assert store.get(first.challenge_token) is None
        assert store.get(second.challenge_token) is second
        assert len(store) == 1

    def test_verify_success_then_reuse(self, clock):
        store = TwoFactorStore(clock=clock)
        challenge = store.create("a@example.org")
        verified = store.verify(challenge.challenge_token, challenge.code)
        assert verified.used is True and verified.verified is True
        with pytest.raises(TwoFactorError, match="Code already used"):
            store.verify(challenge.challenge_token, challenge.code)

    def test_unknown_token(self, clock):
        with pytest.raises(TwoFactorError, match="Invalid or expired verification"):
            TwoFactorStore(clock=clock).verify("nope", "123456")

    def test_expired(self, clock):
        store = TwoFactorStore(clock=clock)
        challenge = store.create("a@example.org")
        clock.advance(301)
        with pytest.raises(TwoFactorError, match="Code expired"):
            store.verify(challenge.challenge_token, challenge.code)
        # Expired challenges are removed on sight
        assert store.get(challenge.challenge_token) is None

    def test_wrong_code_burns_after_five_attempts(self, clock):
        store = TwoFactorStore(clock=clock)
        challenge = store.create("a@example.org")
        wrong = "000000" if challenge.code != "000000" else "111111"
        for _ in range(5):
            with pytest.raises(TwoFactorError, match="Invalid code"):
                store.verify(challenge.challenge_token, wrong)
        with pytest.raises(TwoFactorError, match="Invalid or expired verification"):
            store.verify(challenge.challenge_token, challenge.code)

    def test_non_ascii_code_counts_as_wrong(self, clock):
        store = TwoFactorStore(clock=clock)
        challenge = store.create("a@example.org")
        with pytest.raises(TwoFactorError, match="Invalid code"):
            store.verify(challenge.challenge_token, "１２３４５６")
        assert store.get(challenge.challenge_token).attempts == 1

    def test_sweep(self, clock):
        store = TwoFactorStore(clock=clock)
        store.create("a@example.org")
        clock.advance(200)
        store.create("b@example.org")
        clock.advance(101)
        assert store.sweep() == 1
        assert len(store) == 1


# ═══════════════════════════════════════════════════════════════════════════
# HTTP flow
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture()
def outbox(monkeypatch):
    sent = []

    def fake_send(to, subject, text, html=None, reply_to=None):
        sent.append({"to": to, "subject": subject, "text": text})
        return True

    monkeypatch.setattr(routes_auth, "send_email", fake_send)
    return sent


def _request_code(client, email, password, **kwargs):
    return client.post(
        "/api/auth/2fa", json={"action": "request", "email": email, "password": password}, **kwargs,
    )


def _verify(client, token, code, **kwargs):
    return client.post(
        "/api/auth/2fa", json={"action": "verify", "challengeToken": token, "code": code}, **kwargs,
    )


class TestLoginFlow:
    def test_full_login(self, client, outbox):
        resp = _request_code(client, settings.admin_email, settings.admin_password)
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["success"] is True
        token = body["challengeToken"]

        assert len(outbox) == 1
        assert outbox[0]["to"] == settings.admin_email
        code = two_factor_store.get(token).code
        assert code in outbox[0]["subject"]

        resp = _verify(client, token, code)
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "message": "Code verified"}

        set_cookie = resp.headers["set-cookie"]
        name, _, value = set_cookie.split(";")[0].partition("=")
        assert name == settings.session_cookie_name
        claims = read_session({}, {name: value})
        assert claims["sub"] == settings.admin_email
        assert claims["role"] == "admin"
        assert "httponly" in set_cookie.lower()
        assert "samesite=strict" in set_cookie.lower()

        actions = [e.action for e in audit_logger.pending()]
        assert "LOGIN_SUCCESS" in actions

    def test_code_is_single_use(self, client, outbox):
        token = _request_code(client, settings.admin_email, settings.admin_password).json()["challengeToken"]
        code = two_factor_store.get(token).code
        assert _verify(client, token, code).status_code == 200
        resp = _verify(client, token, code)
        assert resp.status_code == 401
        assert resp.json() == {"error": "Code already used"}

    def test_wrong_code(self, client, outbox):
        token = _request_code(client, settings.admin_email, settings.admin_password).json()["challengeToken"]
        code = two_factor_store.get(token).code
        wrong = "000000" if code != "000000" else "111111"
        resp = _verify(client, token, wrong)
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid code"}
        assert "set-cookie" not in resp.headers

    def test_fullwidth_digits_rejected(self, client, outbox):
        token = _request_code(client, settings.admin_email, settings.admin_password).json()["challengeToken"]
        resp = _verify(client, token, "１２３４５６")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid code"}
        assert two_factor_store.get(token).attempts == 1

    def test_unknown_challenge(self, client):
        resp = _verify(client, "f" * 64, "123456")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid or expired verification"}

    def test_bad_password(self, client, outbox):
        resp = _request_code(client, settings.admin_email, "wrong-password")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid email or password"}
        assert outbox == []
        assert failed_logins.record("unknown", settings.admin_email) == 2

    def test_unknown_user_gets_same_answer(self, client, outbox):
        resp = _request_code(client, "nobody@example.org", "whatever")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid email or password"}

    def test_non_admin_refused(self, client, outbox, make_user):
        make_user("editor@example.org", "Ed1tor!Password", role="editor")
        resp = _request_code(client, "editor@example.org", "Ed1tor!Password")
        assert resp.status_code == 403
        assert resp.json() == {"error": "Access denied"}
        assert outbox == []

    def test_missing_fields(self, client):
        resp = client.post("/api/auth/2fa", json={"action": "request", "email": settings.admin_email})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Email and password required"}

        resp = client.post("/api/auth/2fa", json={"action": "verify", "code": "123456"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Challenge token and code required"}

    def test_unknown_action(self, client):
        resp = client.post("/api/auth/2fa", json={"action": "reset"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid action"}

    def test_mail_failure(self, client, monkeypatch):
        monkeypatch.setattr(routes_auth, "send_email", lambda *a, **k: False)
        resp = _request_code(client, settings.admin_email, settings.admin_password)
        assert resp.status_code == 500
        assert len(two_factor_store) == 0

    def test_auth_rate_limit(self, client, outbox):
        headers = {"X-Forwarded-For": "198.51.100.20"}
        codes = [
            client.post("/api/auth/2fa", json={"action": "reset"}, headers=headers).status_code
            for _ in range(6)
        ]
        assert codes == [400] * 5 + [429]


class TestLogout:
    def test_logout_clears_cookie(self, client, admin_headers):
        resp = client.post("/api/auth/logout", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json() == {"success": True}
        assert settings.session_cookie_name in resp.headers["set-cookie"]
        assert [e.action for e in audit_logger.pending()] == ["LOGOUT"]

    def test_logout_without_session(self, client):
        resp = client.post("/api/auth/logout")
        assert resp.status_code == 200
        assert audit_logger.pending() == []
