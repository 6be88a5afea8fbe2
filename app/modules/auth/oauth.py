"""
Google and Apple sign-in: authorization URLs and code exchange.
"""
import json
import logging
from typing import Optional
from urllib.parse import urlencode

import jwt
import requests

from app.core.config import settings

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
APPLE_AUTH_URL = "https://appleid.apple.com/auth/authorize"
APPLE_TOKEN_URL = "https://appleid.apple.com/auth/token"

OAUTH_TIMEOUT_SECONDS = 10


class OAuthError(Exception):
    """Carries the error code used in the ``/login?error=`` redirect."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


def _redirect_uri(provider: str) -> str:
    return f"{settings.BASE_URL.rstrip('/')}/api/auth/{provider}/callback"


def get_google_auth_url() -> str:
    params = {
        "client_id": settings.GOOGLE_CLIENT_ID,
        "redirect_uri": _redirect_uri("google"),
        "response_type": "code",
        "scope": "openid email profile",
        "access_type": "offline",
        "prompt": "consent",
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def get_apple_auth_url() -> str:
    params = {
        "client_id": settings.APPLE_CLIENT_ID,
        "redirect_uri": _redirect_uri("apple"),
        "response_type": "code id_token",
        "response_mode": "form_post",
        "scope": "name email",
    }
    return f"{APPLE_AUTH_URL}?{urlencode(params)}"


def exchange_google_code(code: str) -> dict:
    """Return ``{email, name, avatar_url}`` for the Google account behind ``code``."""
    try:
        token_response = requests.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET,
                "redirect_uri": _redirect_uri("google"),
                "grant_type": "authorization_code",
            },
            timeout=OAUTH_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        logger.error(f"[OAuth Google] Token exchange failed: {e}")
        raise OAuthError("token_exchange_failed")

    if not token_response.ok:
        logger.error(f"[OAuth Google] Token exchange failed: {token_response.status_code} {token_response.text[:200]}")
        raise OAuthError("token_exchange_failed")

    access_token = token_response.json().get("access_token")
    try:
        user_response = requests.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=OAUTH_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        logger.error(f"[OAuth Google] User info fetch failed: {e}")
        raise OAuthError("user_info_failed")

    if not user_response.ok:
        logger.error(f"[OAuth Google] User info fetch failed: {user_response.status_code}")
        raise OAuthError("user_info_failed")

    profile = user_response.json()
    if not profile.get("email"):
        raise OAuthError("user_info_failed")

    return {
        "email": profile["email"],
        "name": profile.get("name"),
        "avatar_url": profile.get("picture"),
    }


def _apple_display_name(user_json: Optional[str]) -> Optional[str]:
    # Apple only posts the user's name on the first sign-in
    if not user_json:
        return None
    try:
        name = json.loads(user_json).get("name") or {}
    except (ValueError, AttributeError):
        return None
    full_name = " ".join(part for part in (name.get("firstName"), name.get("lastName")) if part)
    return full_name or None


def exchange_apple_code(code: str, user_json: Optional[str] = None) -> dict:
    """Return ``{email, name}`` for the Apple account behind ``code``."""
    try:
        token_response = requests.post(
            APPLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": settings.APPLE_CLIENT_ID,
                "client_secret": settings.APPLE_CLIENT_SECRET,
                "redirect_uri": _redirect_uri("apple"),
                "grant_type": "authorization_code",
            },
            timeout=OAUTH_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        logger.error(f"[OAuth Apple] Token exchange failed: {e}")
        raise OAuthError("token_exchange_failed")

    if not token_response.ok:
        logger.error(f"[OAuth Apple] Token exchange failed: {token_response.status_code}")
        raise OAuthError("token_exchange_failed")

    id_token = token_response.json().get("id_token")
    if not id_token:
        raise OAuthError("user_info_failed")

    # id_token comes straight from Apple's token endpoint over TLS
    try:
        claims = jwt.decode(id_token, options={"verify_signature": False})
    except jwt.PyJWTError:
        raise OAuthError("user_info_failed")

    if not claims.get("email"):
        raise OAuthError("user_info_failed")

    return {
        "email": claims["email"],
        "name": _apple_display_name(user_json),
    }
