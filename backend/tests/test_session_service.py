"""
Session authority tests: issue, verify and authorize tokens.
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from roastery.extensions import db
from roastery.models import ROLE_ADMIN, ROLE_TEAM, ROLE_CUSTOMER
from roastery.services import session_service
from roastery.services.session_service import (
    InvalidCredentials,
    AccountInactive,
    InvalidToken,
    Forbidden,
    STAFF_ROLES,
    MANAGEMENT_ROLES,
)

from conftest import TEST_PASSWORD


def _forge(app, **claims):
    now = datetime.now(timezone.utc)
    payload = {
        "type": "session",
        "sub": "1",
        "email": "x@example.com",
        "role": ROLE_ADMIN,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=1)).timestamp()),
    }
    payload.update(claims)
    payload = {k: v for k, v in payload.items() if v is not None}
    return jwt.encode(payload, app.config["JWT_SECRET"], algorithm="HS256")


class TestIssueToken:
    def test_issue_then_verify_round_trip(self, admin_user):
        user, token = session_service.issue_token("admin@roastery.test", TEST_PASSWORD)
        context = session_service.verify_token(token)

        assert user.id == admin_user.id
        assert context.user_id == admin_user.id
        assert context.role == ROLE_ADMIN
        assert context.expires_at > context.issued_at

    def test_email_is_case_insensitive(self, admin_user):
        user, _ = session_service.issue_token("  ADMIN@Roastery.Test ", TEST_PASSWORD)
        assert user.id == admin_user.id

    def test_sets_last_login(self, admin_user):
        assert admin_user.last_login_at is None
        session_service.issue_token("admin@roastery.test", TEST_PASSWORD)
        assert db.session.get(type(admin_user), admin_user.id).last_login_at is not None

    def test_wrong_password(self, admin_user):
        with pytest.raises(InvalidCredentials):
            session_service.issue_token("admin@roastery.test", "Wrong12345")

    def test_unknown_email(self, db_session):
        with pytest.raises(InvalidCredentials):
            session_service.issue_token("nobody@roastery.test", TEST_PASSWORD)

    @pytest.mark.parametrize("email, password", [(123, TEST_PASSWORD), ("admin@roastery.test", 123)])
    def test_non_string_credentials(self, admin_user, email, password):
        with pytest.raises(InvalidCredentials):
            session_service.issue_token(email, password)

    def test_inactive_account(self, admin_user):
        admin_user.is_active = False
        db.session.commit()
        with pytest.raises(AccountInactive):
            session_service.issue_token("admin@roastery.test", TEST_PASSWORD)


class TestVerifyToken:
    def test_resolves_stored_role_not_embedded_role(self, team_user):
        token = session_service.encode_token(team_user)
        team_user.role = ROLE_CUSTOMER
        db.session.commit()

        assert session_service.verify_token(token).role == ROLE_CUSTOMER

    def test_deactivated_user_token_fails(self, team_user):
        token = session_service.encode_token(team_user)
        session_service.verify_token(token)

        team_user.is_active = False
        db.session.commit()

        with pytest.raises(InvalidToken):
            session_service.verify_token(token)

    def test_deleted_user_token_fails(self, app, db_session):
        with pytest.raises(InvalidToken):
            session_service.verify_token(_forge(app, sub="999"))

    def test_expired_token(self, app, admin_user):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        token = _forge(
            app,
            sub=str(admin_user.id),
            iat=int(past.timestamp()),
            exp=int((past + timedelta(hours=1)).timestamp()),
        )
        with pytest.raises(InvalidToken):
            session_service.verify_token(token)

    def test_wrong_secret(self, admin_user):
        token = jwt.encode({"sub": str(admin_user.id), "iat": 1, "exp": 4102444800}, "other", algorithm="HS256")
        with pytest.raises(InvalidToken):
            session_service.verify_token(token)

    def test_missing_claim(self, app, admin_user):
        with pytest.raises(InvalidToken):
            session_service.verify_token(_forge(app, sub=str(admin_user.id), exp=None))

    def test_wrong_token_type(self, app, admin_user):
        with pytest.raises(InvalidToken):
            session_service.verify_token(_forge(app, sub=str(admin_user.id), type="refresh"))

    @pytest.mark.parametrize("token", ["", "abc", "a.b.c"])
    def test_malformed(self, db_session, token):
        with pytest.raises(InvalidToken):
            session_service.verify_token(token)


class TestAuthorize:
    def test_allowed_role(self, team_user):
        token = session_service.encode_token(team_user)
        context = session_service.authorize(token, STAFF_ROLES)
        assert context.role == ROLE_TEAM

    def test_forbidden_role_carries_user(self, team_user):
        token = session_service.encode_token(team_user)
        with pytest.raises(Forbidden) as exc:
            session_service.authorize(token, MANAGEMENT_ROLES)
        assert exc.value.user_id == team_user.id

    def test_invalid_token_before_role_check(self, db_session):
        with pytest.raises(InvalidToken):
            session_service.authorize("garbage", MANAGEMENT_ROLES)


class TestAuthRoutes:
    def test_login_sets_http_only_cookie(self, client, admin_user):
        resp = client.post("/api/auth/login", json={"email": "admin@roastery.test", "password": TEST_PASSWORD})

        assert resp.status_code == 200
        assert resp.get_json()["user"]["id"] == admin_user.id
        assert resp.headers["Cache-Control"] == "no-store"
        cookie = resp.headers["Set-Cookie"]
        assert cookie.startswith("auth_token=")
        assert "HttpOnly" in cookie
        assert "SameSite=Lax" in cookie

    def test_cookie_authenticates_session(self, client, admin_user):
        client.post("/api/auth/login", json={"email": "admin@roastery.test", "password": TEST_PASSWORD})
        resp = client.get("/api/auth/session")
        assert resp.status_code == 200
        assert resp.get_json()["user"]["email"] == "admin@roastery.test"

    def test_logout_clears_cookie(self, client, admin_user):
        client.post("/api/auth/login", json={"email": "admin@roastery.test", "password": TEST_PASSWORD})
        resp = client.post("/api/auth/logout")
        assert resp.status_code == 200
        assert client.get("/api/auth/session").status_code == 401

    def test_login_missing_fields(self, client):
        assert client.post("/api/auth/login", json={"email": "a@b.co"}).status_code == 400

    @pytest.mark.parametrize("body", [
        {"email": 123, "password": "Password123"},
        {"email": "admin@roastery.test", "password": ["Password123"]},
        ["admin@roastery.test", "Password123"],
    ])
    def test_login_rejects_non_string_fields(self, client, admin_user, body):
        assert client.post("/api/auth/login", json=body).status_code == 400

    @pytest.mark.parametrize("body", [
        {"email": 123, "password": "Coffee1234"},
        {"email": "new@example.com", "password": "Coffee1234", "name": 7},
        ["new@example.com", "Coffee1234"],
    ])
    def test_register_rejects_non_string_fields(self, client, body):
        assert client.post("/api/auth/register", json=body).status_code == 400

    def test_login_invalid_credentials(self, client, admin_user):
        resp = client.post("/api/auth/login", json={"email": "admin@roastery.test", "password": "Nope12345"})
        assert resp.status_code == 401
        assert "Set-Cookie" not in resp.headers

    def test_login_inactive(self, client, admin_user):
        admin_user.is_active = False
        db.session.commit()
        resp = client.post("/api/auth/login", json={"email": "admin@roastery.test", "password": TEST_PASSWORD})
        assert resp.status_code == 403

    def test_register_customer(self, client):
        resp = client.post("/api/auth/register", json={
            "email": "New.Customer@Example.com",
            "password": "Coffee1234",
            "name": "New Customer",
        })
        assert resp.status_code == 201
        data = resp.get_json()["user"]
        assert data["email"] == "new.customer@example.com"
        assert data["role"] == ROLE_CUSTOMER

    def test_register_duplicate(self, client, customer_user):
        resp = client.post("/api/auth/register", json={"email": "customer@example.com", "password": "Coffee1234"})
        assert resp.status_code == 409

    def test_register_weak_password(self, client):
        resp = client.post("/api/auth/register", json={"email": "weak@example.com", "password": "short"})
        assert resp.status_code == 400
