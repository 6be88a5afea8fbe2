import logging
from typing import Optional
from fastapi import APIRouter, Depends, status, Response, Form, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.dependencies.dbDependecies import get_db
from app.dependencies.userDependencies import user_dependency
from app.modules.auth import oauth
from app.modules.auth.service import AuthService
from app.modules.auth.schemas import (
    UserCreate, UserLogin, UserOut, UserWithCompaniesOut, AuthResponse, ProfileUpdate,
    PasswordChangeRequest, EmailVerificationConfirm, PasswordResetRequest, PasswordResetConfirm,
    MessageResponse, OAuthUrlResponse
)
from app.modules.auth.utils import create_session_token, set_session_cookie, clear_session_cookie

logger = logging.getLogger(__name__)

auth_router = APIRouter()


@auth_router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(user_data: UserCreate, response: Response, db: Session = Depends(get_db)):
    """
    Registrar nuevo usuario. Inicia sesión y envía el email de verificación.
    """
    auth_service = AuthService(db)
    user = auth_service.create_user(user_data)
    set_session_cookie(response, create_session_token(user))
    return AuthResponse(user=UserOut.model_validate(user), message="Registration successful")


@auth_router.post("/login", response_model=AuthResponse)
def login(credentials: UserLogin, response: Response, db: Session = Depends(get_db)):
    auth_service = AuthService(db)
    user = auth_service.login(credentials.email, credentials.password)
    set_session_cookie(response, create_session_token(user))
    return AuthResponse(user=UserOut.model_validate(user), message="Login successful")


@auth_router.post("/logout", response_model=MessageResponse)
def logout(response: Response):
    clear_session_cookie(response)
    return MessageResponse(message="Logged out")


@auth_router.get("/me", response_model=UserWithCompaniesOut)
def get_current_user_info(current_user: user_dependency, db: Session = Depends(get_db)):
    """
    Usuario actual con sus compañías y roles.
    """
    return AuthService(db).get_user_with_companies(current_user)


@auth_router.put("/profile", response_model=UserOut)
def update_profile(data: ProfileUpdate, current_user: user_dependency, db: Session = Depends(get_db)):
    return AuthService(db).update_profile(current_user, data)


@auth_router.post("/change-password", response_model=MessageResponse)
def change_password(data: PasswordChangeRequest, current_user: user_dependency, db: Session = Depends(get_db)):
    AuthService(db).change_password(current_user, data)
    return MessageResponse(message="Password updated")


@auth_router.post("/send-verification", response_model=MessageResponse)
def send_verification(current_user: user_dependency, db: Session = Depends(get_db)):
    """
    Reenviar email de verificación al usuario actual.
    """
    AuthService(db).send_verification_email(current_user)
    return MessageResponse(message="Verification email sent")


@auth_router.get("/verify-email", response_model=UserOut)
def verify_email_get(token: str, db: Session = Depends(get_db)):
    """
    Verificar email via GET (para links en correos).
    """
    return AuthService(db).verify_email(token)


@auth_router.post("/verify-email", response_model=UserOut)
def verify_email(data: EmailVerificationConfirm, db: Session = Depends(get_db)):
    return AuthService(db).verify_email(data.token)


@auth_router.post("/request-password-reset", response_model=MessageResponse)
def request_password_reset(request_data: PasswordResetRequest, db: Session = Depends(get_db)):
    """
    Solicitar restablecimiento de contraseña.
    """
    AuthService(db).request_password_reset(request_data.email)
    return MessageResponse(message="If the email exists, a reset link has been sent")


@auth_router.post("/reset-password", response_model=MessageResponse)
def reset_password(reset_data: PasswordResetConfirm, db: Session = Depends(get_db)):
    AuthService(db).reset_password(reset_data.token, reset_data.new_password)
    return MessageResponse(message="Password has been reset")


# OAuth
def _login_redirect(error_code: str) -> RedirectResponse:
    return RedirectResponse(url=f"/login?error={error_code}", status_code=status.HTTP_302_FOUND)


def _complete_oauth_login(db: Session, profile: dict) -> RedirectResponse:
    user, _ = AuthService(db).find_or_create_oauth_user(
        email=profile["email"],
        name=profile.get("name"),
        avatar_url=profile.get("avatar_url"),
    )
    response = RedirectResponse(url="/", status_code=status.HTTP_302_FOUND)
    set_session_cookie(response, create_session_token(user))
    return response


@auth_router.get("/google/url", response_model=OAuthUrlResponse)
def google_auth_url():
    return OAuthUrlResponse(url=oauth.get_google_auth_url())


@auth_router.get("/google/callback")
def google_callback(
    code: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    db: Session = Depends(get_db)
):
    if error:
        return _login_redirect(error)
    if not code:
        return _login_redirect("no_code")

    try:
        profile = oauth.exchange_google_code(code)
        return _complete_oauth_login(db, profile)
    except oauth.OAuthError as e:
        return _login_redirect(e.code)
    except Exception as e:
        logger.error(f"[OAuth Google] Error: {e}")
        return _login_redirect("oauth_failed")


@auth_router.get("/apple/url", response_model=OAuthUrlResponse)
def apple_auth_url():
    return OAuthUrlResponse(url=oauth.get_apple_auth_url())


def _apple_callback(db: Session, code: Optional[str], error: Optional[str], user: Optional[str]) -> RedirectResponse:
    if error:
        return _login_redirect(error)
    if not code:
        return _login_redirect("no_code")

    try:
        profile = oauth.exchange_apple_code(code, user)
        return _complete_oauth_login(db, profile)
    except oauth.OAuthError as e:
        return _login_redirect(e.code)
    except Exception as e:
        logger.error(f"[OAuth Apple] Error: {e}")
        return _login_redirect("oauth_failed")


@auth_router.post("/apple/callback")
def apple_callback_form_post(
    code: Optional[str] = Form(None),
    error: Optional[str] = Form(None),
    user: Optional[str] = Form(None),
    db: Session = Depends(get_db)
):
    """Apple usa response_mode=form_post."""
    return _apple_callback(db, code, error, user)


@auth_router.get("/apple/callback")
def apple_callback(
    code: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    db: Session = Depends(get_db)
):
    return _apple_callback(db, code, error, None)
