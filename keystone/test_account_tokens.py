"""
keystone/test_account_tokens.py

Tests for email verification and password reset:
1. Registration stores a hashed, 24-hour verification token
2. Tokens are single use and expire
3. Verifying marks both the user and the tenant
4. Forgot-password answers the same for unknown emails
5. A reset replaces the password and clears the token
"""

from datetime import datetime, timedelta, timezone

from keystone.accounts import issue_password_reset, reset_password, verify_email
from keystone.auth_context import hash_token, verify_password
from keystone.tenant import provision_tenant

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _provision(db, email="casey@harbor.example"):
    return provision_tenant(
        db,
        company_name="Harbor Lets",
        email=email,
        password="password123",
        first_name="Casey",
        last_name="Owner",
        now=NOW,
    )


def _user(db, user_id):
    return db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()


class TestEmailVerification:
    def test_registration_stores_hashed_token(self, db):
        result = _provision(db)
        user = _user(db, result.user_id)
        assert user["email_verified"] == 0
        assert user["email_verification_token"] == hash_token(result.verification_token)
        assert user["email_verification_token"] != result.verification_token
        expires = datetime.fromisoformat(user["email_verification_expires"])
        assert expires == NOW + timedelta(hours=24)

    def test_valid_token_verifies_user_and_tenant(self, db):
        result = _provision(db)
        assert verify_email(db, result.verification_token, now=NOW + timedelta(hours=1)) == result.user_id

        user = _user(db, result.user_id)
        assert user["email_verified"] == 1
        assert user["email_verification_token"] is None
        assert user["email_verification_expires"] is None
        tenant = db.execute("SELECT email_verified FROM tenants WHERE id = ?", (result.tenant_id,)).fetchone()
        assert tenant["email_verified"] == 1

    def test_token_cannot_be_reused(self, db):
        result = _provision(db)
        assert verify_email(db, result.verification_token, now=NOW) == result.user_id
        assert verify_email(db, result.verification_token, now=NOW) is None

    def test_expired_token_is_rejected(self, db):
        result = _provision(db)
        assert verify_email(db, result.verification_token, now=NOW + timedelta(hours=24, seconds=1)) is None
        assert _user(db, result.user_id)["email_verified"] == 0

    def test_unknown_token_is_rejected(self, db):
        _provision(db)
        assert verify_email(db, "not-a-real-token", now=NOW) is None


class TestPasswordReset:
    def test_unknown_email_issues_nothing(self, db):
        _provision(db)
        assert issue_password_reset(db, "nobody@harbor.example", now=NOW) is None

    def test_reset_replaces_password(self, db):
        result = _provision(db)
        token = issue_password_reset(db, "Casey@Harbor.example", now=NOW)
        assert token is not None

        assert reset_password(db, token, "brand-new-pass", now=NOW + timedelta(minutes=30)) == result.user_id
        user = _user(db, result.user_id)
        assert verify_password("brand-new-pass", user["password_hash"])
        assert not verify_password("password123", user["password_hash"])
        assert user["password_reset_token"] is None
        assert user["password_reset_expires"] is None

    def test_reset_token_is_single_use(self, db):
        _provision(db)
        token = issue_password_reset(db, "casey@harbor.example", now=NOW)
        assert reset_password(db, token, "first-new-pass", now=NOW) is not None
        assert reset_password(db, token, "second-new-pass", now=NOW) is None

    def test_reset_token_expires_after_an_hour(self, db):
        result = _provision(db)
        token = issue_password_reset(db, "casey@harbor.example", now=NOW)
        assert reset_password(db, token, "too-late-pass", now=NOW + timedelta(minutes=61)) is None
        assert verify_password("password123", _user(db, result.user_id)["password_hash"])

    def test_new_request_replaces_old_token(self, db):
        _provision(db)
        first = issue_password_reset(db, "casey@harbor.example", now=NOW)
        second = issue_password_reset(db, "casey@harbor.example", now=NOW)
        assert reset_password(db, first, "stale-token-pass", now=NOW) is None
        assert reset_password(db, second, "fresh-token-pass", now=NOW) is not None


class TestAccountTokenEndpoints:
    def _verification_token_for(self, email):
        """Only the hash is stored, so mint a fresh token the test can send."""
        from keystone.accounts import issue_email_verification
        from keystone.db import get_db_connection

        with get_db_connection() as conn:
            user_id = conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()["id"]
            token = issue_email_verification(conn, user_id)
            conn.commit()
        return token

    def test_verify_email_endpoint(self, client, register_tenant):
        owner = register_tenant()
        token = self._verification_token_for(owner["email"])

        resp = client.post("/auth/verify-email", json={"token": token})
        assert resp.status_code == 200
        assert resp.json()["success"] is True

        login = client.post("/auth/login", json={"email": owner["email"], "password": owner["password"]})
        assert login.json()["user"]["email_verified"] is True

        again = client.post("/auth/verify-email", json={"token": token})
        assert again.status_code == 400

    def test_forgot_password_same_response_for_unknown_email(self, client, register_tenant, unique_email):
        owner = register_tenant()
        known = client.post("/auth/forgot-password", json={"email": owner["email"]})
        unknown = client.post("/auth/forgot-password", json={"email": unique_email("ghost")})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

    def test_reset_password_endpoint(self, client, register_tenant):
        from keystone.db import get_db_connection

        owner = register_tenant()
        with get_db_connection() as conn:
            token = issue_password_reset(conn, owner["email"])

        resp = client.post("/auth/reset-password", json={"token": token, "password": "reset-pass-123"})
        assert resp.status_code == 200

        old = client.post("/auth/login", json={"email": owner["email"], "password": owner["password"]})
        assert old.status_code == 401
        new = client.post("/auth/login", json={"email": owner["email"], "password": "reset-pass-123"})
        assert new.status_code == 200

        reused = client.post("/auth/reset-password", json={"token": token, "password": "another-pass-1"})
        assert reused.status_code == 400

    def test_reset_password_rejects_short_password(self, client):
        resp = client.post("/auth/reset-password", json={"token": "whatever", "password": "short"})
        assert resp.status_code == 422
