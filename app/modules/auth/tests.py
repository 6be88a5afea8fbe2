"""
Tests del módulo de autenticación: registro, login, sesión por cookie/JWT,
verificación de email, recuperación de contraseña y callbacks OAuth.
"""
import time
import pytest
from concurrent.futures import ThreadPoolExecutor
from fastapi.testclient import TestClient
from fastapi import HTTPException
from datetime import datetime, timedelta, timezone
from unittest.mock import patch, MagicMock

from app.main import app
from app.common.tenancy import run_in_tenant_context
from app.modules.auth.dependencies import check_company_access, require_company_access
from app.modules.auth.models import User, CompanyRole, EmailVerificationToken, PasswordResetToken
from app.modules.auth.utils import (
    create_session_token, decode_session_token, hash_password, verify_password
)
from app.modules.auth import oauth

DEFAULT_PASSWORD = "SuperSecret123"


# ===== UTILIDADES =====

class TestSessionToken:

    def test_roundtrip_payload(self, make_user):
        user = make_user(name="Alice")
        payload = decode_session_token(create_session_token(user))
        assert payload["userId"] == str(user.id)
        assert payload["id"] == str(user.id)
        assert payload["email"] == user.email
        assert payload["name"] == "Alice"

    def test_expired_token(self, make_user):
        token = create_session_token(make_user(), expires_delta=timedelta(seconds=-1))
        assert decode_session_token(token) is None

    def test_garbage_token(self):
        assert decode_session_token("abc.def.ghi") is None

    def test_password_hashing(self):
        hashed = hash_password("my-password")
        assert verify_password("my-password", hashed)
        assert not verify_password("other", hashed)
        assert not verify_password("my-password", None)


class TestCompanyAccess:

    def test_role_hierarchy(self, db_session, make_user, make_company, add_member):
        owner = make_user()
        member = make_user()
        company = make_company(owner=owner)
        add_member(company, member, CompanyRole.MEMBER.value)

        assert check_company_access(db_session, owner.id, company.id, CompanyRole.ADMIN.value) is not None
        assert check_company_access(db_session, member.id, company.id) is not None
        assert check_company_access(db_session, member.id, company.id, CompanyRole.ADMIN.value) is None

    def test_require_raises_403(self, db_session, make_user, make_company):
        company = make_company()
        outsider = make_user()
        with pytest.raises(HTTPException) as exc:
            require_company_access(db_session, outsider.id, company.id)
        assert exc.value.status_code == 403

    def test_access_check_ignores_current_tenant(self, db_session, make_user, make_company):
        owner = make_user()
        company = make_company(owner=owner)
        other = make_company()
        with run_in_tenant_context(other.id):
            assert check_company_access(db_session, owner.id, company.id) is not None


# ===== REGISTRO Y LOGIN =====

class TestRegister:

    def test_register_sets_cookie_and_sends_email(self, client, email_task_mocks):
        response = client.post("/api/auth/register", json={
            "email": "New@Example.com",
            "password": "password123",
            "name": "New User",
        })
        assert response.status_code == 201
        body = response.json()
        assert body["user"]["email"] == "new@example.com"
        assert body["user"]["email_verified"] is False
        assert "session_token" in response.cookies
        email_task_mocks["verification"].delay.assert_called_once()

    def test_duplicate_email(self, client, make_user):
        make_user(email="taken@example.com")
        response = client.post("/api/auth/register", json={
            "email": "taken@example.com",
            "password": "password123",
        })
        assert response.status_code == 409
        assert response.json()["detail"] == "User already exists"

    def test_short_password_rejected(self, client):
        response = client.post("/api/auth/register", json={"email": "a@example.com", "password": "short"})
        assert response.status_code == 422


class TestLogin:

    def test_login_success(self, client, make_user):
        make_user(email="login@example.com")
        response = client.post("/api/auth/login", json={
            "email": "login@example.com",
            "password": DEFAULT_PASSWORD,
        })
        assert response.status_code == 200
        assert "session_token" in response.cookies

    @pytest.mark.parametrize("email,password", [
        ("login@example.com", "wrong-password"),
        ("missing@example.com", DEFAULT_PASSWORD),
    ])
    def test_invalid_credentials(self, client, make_user, email, password):
        make_user(email="login@example.com")
        response = client.post("/api/auth/login", json={"email": email, "password": password})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid credentials"

    def test_oauth_only_user_cannot_login_with_password(self, client, make_user):
        make_user(email="oauth@example.com", password=None)
        response = client.post("/api/auth/login", json={"email": "oauth@example.com", "password": "anything123"})
        assert response.status_code == 401

    def test_logout_clears_cookie(self, client):
        response = client.post("/api/auth/logout")
        assert response.status_code == 200
        assert "session_token=" in response.headers["set-cookie"]


class TestMe:

    def test_requires_session(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401

    def test_lists_companies_with_roles(self, client, make_user, make_company, auth_headers):
        user = make_user()
        company = make_company(owner=user, title="Acme")
        response = client.get("/api/auth/me", headers=auth_headers(user))
        assert response.status_code == 200
        companies = response.json()["companies"]
        assert companies == [{
            "company_id": str(company.id),
            "company_title": "Acme",
            "company_slug": company.slug,
            "role": "owner",
            "joined_at": companies[0]["joined_at"],
        }]

    def test_cookie_session(self, client, make_user):
        user = make_user()
        client.cookies.set("session_token", create_session_token(user))
        assert client.get("/api/auth/me").json()["id"] == str(user.id)


class TestProfile:

    def test_update_profile(self, client, make_user, auth_headers):
        user = make_user()
        response = client.put("/api/auth/profile", json={"name": "Renamed", "username": "renamed"},
                              headers=auth_headers(user))
        assert response.status_code == 200
        assert response.json()["username"] == "renamed"

    def test_partial_update_keeps_other_fields(self, client, db_session, make_user, auth_headers):
        user = make_user(name="Alice")
        response = client.put("/api/auth/profile", json={"username": "alice"}, headers=auth_headers(user))
        assert response.status_code == 200
        assert response.json()["name"] == "Alice"
        assert response.json()["username"] == "alice"

        response = client.put("/api/auth/profile", json={"name": ""}, headers=auth_headers(user))
        assert response.json()["name"] is None
        assert response.json()["username"] == "alice"

    def test_username_taken(self, client, make_user, auth_headers):
        make_user(username="taken")
        user = make_user()
        response = client.put("/api/auth/profile", json={"username": "taken"}, headers=auth_headers(user))
        assert response.status_code == 409
        assert response.json()["detail"] == "Username already taken"

    def test_change_password(self, client, db_session, make_user, auth_headers):
        user = make_user()
        response = client.post("/api/auth/change-password", json={
            "current_password": DEFAULT_PASSWORD,
            "new_password": "brand-new-pass",
            "confirm_password": "brand-new-pass",
        }, headers=auth_headers(user))
        assert response.status_code == 200
        db_session.expire_all()
        assert verify_password("brand-new-pass", db_session.get(User, user.id).password_hash)

    def test_change_password_wrong_current(self, client, make_user, auth_headers):
        user = make_user()
        response = client.post("/api/auth/change-password", json={
            "current_password": "not-my-password",
            "new_password": "brand-new-pass",
            "confirm_password": "brand-new-pass",
        }, headers=auth_headers(user))
        assert response.status_code == 400
        assert response.json()["detail"] == "Current password is incorrect"

    def test_change_password_mismatch(self, client, make_user, auth_headers):
        user = make_user()
        response = client.post("/api/auth/change-password", json={
            "current_password": DEFAULT_PASSWORD,
            "new_password": "brand-new-pass",
            "confirm_password": "different-pass",
        }, headers=auth_headers(user))
        assert response.status_code == 400


# ===== VERIFICACIÓN Y RESET =====

class TestEmailVerification:

    def test_send_verification_already_verified(self, client, make_user, auth_headers):
        user = make_user(email_verified=True)
        response = client.post("/api/auth/send-verification", headers=auth_headers(user))
        assert response.status_code == 400
        assert response.json()["detail"] == "Email already verified"

    def test_send_and_verify(self, client, db_session, make_user, auth_headers, email_task_mocks):
        user = make_user()
        response = client.post("/api/auth/send-verification", headers=auth_headers(user))
        assert response.status_code == 200

        token = email_task_mocks["verification"].delay.call_args.kwargs["verification_token"]
        response = client.get("/api/auth/verify-email", params={"token": token})
        assert response.status_code == 200
        assert response.json()["email_verified"] is True

        # Un token usado no sirve dos veces
        response = client.post("/api/auth/verify-email", json={"token": token})
        assert response.status_code == 400

    def test_expired_token(self, client, db_session, make_user):
        user = make_user()
        db_session.add(EmailVerificationToken(
            user_id=user.id,
            token="expired-token",
            expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
        ))
        db_session.commit()
        response = client.get("/api/auth/verify-email", params={"token": "expired-token"})
        assert response.status_code == 400


class TestPasswordReset:

    def test_unknown_email_still_ok(self, client, email_task_mocks):
        response = client.post("/api/auth/request-password-reset", json={"email": "ghost@example.com"})
        assert response.status_code == 200
        email_task_mocks["reset"].delay.assert_not_called()

    def test_reset_flow(self, client, make_user, email_task_mocks):
        make_user(email="reset@example.com")
        client.post("/api/auth/request-password-reset", json={"email": "reset@example.com"})
        token = email_task_mocks["reset"].delay.call_args.kwargs["reset_token"]

        response = client.post("/api/auth/reset-password", json={"token": token, "new_password": "another-pass"})
        assert response.status_code == 200

        response = client.post("/api/auth/login", json={"email": "reset@example.com", "password": "another-pass"})
        assert response.status_code == 200

    def test_invalid_token(self, client, db_session, make_user):
        user = make_user()
        db_session.add(PasswordResetToken(
            user_id=user.id,
            token="old",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        ))
        db_session.commit()
        response = client.post("/api/auth/reset-password", json={"token": "old", "new_password": "another-pass"})
        assert response.status_code == 400


# ===== OAUTH =====

def _response(status_code=200, payload=None):
    response = MagicMock()
    response.ok = 200 <= status_code < 300
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.text = ""
    return response


class TestGoogleOAuth:

    def test_auth_url(self, client):
        response = client.get("/api/auth/google/url")
        assert response.json()["url"].startswith("https://accounts.google.com/")

    def test_provider_error_redirects(self, client):
        response = client.get("/api/auth/google/callback", params={"error": "access_denied"}, follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == "/login?error=access_denied"

    def test_missing_code(self, client):
        response = client.get("/api/auth/google/callback", follow_redirects=False)
        assert response.headers["location"] == "/login?error=no_code"

    def test_token_exchange_failed(self, client):
        with patch("app.modules.auth.oauth.requests.post", return_value=_response(400)):
            response = client.get("/api/auth/google/callback", params={"code": "abc"}, follow_redirects=False)
        assert response.headers["location"] == "/login?error=token_exchange_failed"

    def test_concurrent_callbacks_run_in_parallel(self):
        def slow_token_exchange(*args, **kwargs):
            time.sleep(0.5)
            return _response(400)

        with TestClient(app) as shared_client, \
                patch("app.modules.auth.oauth.requests.post", side_effect=slow_token_exchange):
            started = time.monotonic()
            with ThreadPoolExecutor(max_workers=2) as pool:
                responses = list(pool.map(
                    lambda code: shared_client.get(
                        "/api/auth/google/callback", params={"code": code}, follow_redirects=False
                    ),
                    ["first", "second"],
                ))
            elapsed = time.monotonic() - started

        assert [r.headers["location"] for r in responses] == ["/login?error=token_exchange_failed"] * 2
        assert elapsed < 0.9

    def test_creates_verified_user(self, client, db_session):
        token = _response(payload={"access_token": "tok"})
        profile = _response(payload={"email": "g@example.com", "name": "G User", "picture": "https://img"})
        with patch("app.modules.auth.oauth.requests.post", return_value=token), \
                patch("app.modules.auth.oauth.requests.get", return_value=profile):
            response = client.get("/api/auth/google/callback", params={"code": "abc"}, follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "/"
        assert "session_token" in response.cookies
        user = db_session.query(User).filter(User.email == "g@example.com").one()
        assert user.email_verified is True
        assert user.password_hash is None


class TestAppleOAuth:

    def test_form_post_without_code(self, client):
        response = client.post("/api/auth/apple/callback", data={}, follow_redirects=False)
        assert response.headers["location"] == "/login?error=no_code"

    def test_oauth_error_code(self, client):
        with patch.object(oauth, "exchange_apple_code", side_effect=oauth.OAuthError("user_info_failed")):
            response = client.get("/api/auth/apple/callback", params={"code": "abc"}, follow_redirects=False)
        assert response.headers["location"] == "/login?error=user_info_failed"

    def test_unexpected_error(self, client):
        with patch.object(oauth, "exchange_apple_code", side_effect=RuntimeError("boom")):
            response = client.post("/api/auth/apple/callback", data={"code": "abc"}, follow_redirects=False)
        assert response.headers["location"] == "/login?error=oauth_failed"
