import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from uuid import UUID
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.common.tenancy import without_tenant_isolation
from app.common.validators import ensure_aware
from app.modules.auth.models import (
    User, CompanyUser, EmailVerificationToken, PasswordResetToken
)
from app.modules.auth.schemas import (
    UserCreate, UserCompanyOut, UserWithCompaniesOut, ProfileUpdate, PasswordChangeRequest
)
from app.modules.auth.utils import hash_password, verify_password
from app.modules.email.tasks import (
    send_verification_email_task, send_password_reset_email_task
)

logger = logging.getLogger(__name__)

VERIFICATION_TOKEN_TTL = timedelta(hours=24)
RESET_TOKEN_TTL = timedelta(hours=1)


class AuthService:
    """
    Servicio de autenticación: registro, login, perfil, verificación de
    email, restablecimiento de contraseña y usuarios OAuth.
    """

    def __init__(self, db: Session):
        self.db = db

    def generate_secure_token(self) -> str:
        """Token aleatorio de 64 caracteres hexadecimales."""
        return secrets.token_hex(32)

    def create_user(self, user_data: UserCreate) -> User:
        """
        Crear nuevo usuario y enviar email de verificación.
        El usuario queda con sesión iniciada (la cookie la pone el router).
        """
        email = user_data.email.lower()
        if self.db.query(User).filter(User.email == email).first():
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="User already exists"
            )
        if user_data.username and self.db.query(User).filter(User.username == user_data.username).first():
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Username already taken"
            )

        user = User(
            email=email,
            password_hash=hash_password(user_data.password),
            name=user_data.name,
            username=user_data.username,
            email_verified=False,
        )
        self.db.add(user)
        self.db.flush()

        verification_token = self._issue_verification_token(user)
        self.db.commit()
        self.db.refresh(user)

        send_verification_email_task.delay(
            user_email=user.email,
            user_name=user.name,
            verification_token=verification_token,
        )
        logger.info(f"User registered: {user.id}")
        return user

    def login(self, email: str, password: str) -> User:
        user = self.db.query(User).filter(User.email == email.lower()).first()

        # Mismo mensaje para usuario inexistente, cuenta OAuth y contraseña errónea
        if user is None or not user.is_active or not verify_password(password, user.password_hash):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials"
            )

        user.last_login = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(user)
        return user

    def get_user_with_companies(self, user: User) -> UserWithCompaniesOut:
        with without_tenant_isolation():
            company_users = self.db.query(CompanyUser).filter(
                CompanyUser.user_id == user.id
            ).all()

        companies = [
            UserCompanyOut(
                company_id=cu.company_id,
                company_title=cu.company.title,
                company_slug=cu.company.slug,
                role=cu.role,
                joined_at=cu.joined_at,
            )
            for cu in company_users
        ]
        return UserWithCompaniesOut(
            id=user.id,
            email=user.email,
            name=user.name,
            username=user.username,
            avatar_url=user.avatar_url,
            email_verified=bool(user.email_verified),
            created_at=user.created_at,
            companies=companies,
        )

    def update_profile(self, user: User, data: ProfileUpdate) -> User:
        if data.username:
            taken = self.db.query(User).filter(
                User.username == data.username,
                User.id != user.id
            ).first()
            if taken:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="Username already taken"
                )

        # Solo los campos enviados; cadenas vacías limpian el campo
        if "name" in data.model_fields_set:
            user.name = data.name or None
        if "username" in data.model_fields_set:
            user.username = data.username or None
        self.db.commit()
        self.db.refresh(user)
        return user

    def change_password(self, user: User, data: PasswordChangeRequest) -> None:
        if data.new_password != data.confirm_password:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Passwords do not match"
            )
        if len(data.new_password) < 8:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Password must be at least 8 characters"
            )
        if not user.password_hash:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid account"
            )
        if not verify_password(data.current_password, user.password_hash):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Current password is incorrect"
            )

        user.password_hash = hash_password(data.new_password)
        self.db.commit()

    def send_verification_email(self, user: User) -> None:
        """Invalida tokens previos y envía un enlace nuevo (24 horas)."""
        if user.email_verified:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Email already verified"
            )

        self.db.query(EmailVerificationToken).filter(
            EmailVerificationToken.user_id == user.id,
            EmailVerificationToken.is_used == False  # noqa: E712
        ).update({"is_used": True})

        verification_token = self._issue_verification_token(user)
        self.db.commit()

        send_verification_email_task.delay(
            user_email=user.email,
            user_name=user.name,
            verification_token=verification_token,
        )

    def verify_email(self, token: str) -> User:
        """Verificar email con token."""
        email_token = self.db.query(EmailVerificationToken).filter(
            EmailVerificationToken.token == token
        ).first()

        now = datetime.now(timezone.utc)
        if email_token is None or email_token.is_used or ensure_aware(email_token.expires_at) <= now:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid or expired verification token"
            )

        email_token.is_used = True
        email_token.used_at = now

        user = email_token.user
        user.email_verified = True
        user.email_verified_at = now

        self.db.commit()
        self.db.refresh(user)
        return user

    def request_password_reset(self, email: str) -> None:
        """No revela si el email existe."""
        user = self.db.query(User).filter(User.email == email.lower()).first()
        if user is None:
            return

        self.db.query(PasswordResetToken).filter(
            PasswordResetToken.user_id == user.id,
            PasswordResetToken.is_used == False  # noqa: E712
        ).update({"is_used": True})

        reset_token = self.generate_secure_token()
        self.db.add(PasswordResetToken(
            user_id=user.id,
            token=reset_token,
            expires_at=datetime.now(timezone.utc) + RESET_TOKEN_TTL
        ))
        self.db.commit()

        send_password_reset_email_task.delay(
            user_email=user.email,
            user_name=user.name,
            reset_token=reset_token,
        )

    def reset_password(self, token: str, new_password: str) -> User:
        reset_token = self.db.query(PasswordResetToken).filter(
            PasswordResetToken.token == token
        ).first()

        now = datetime.now(timezone.utc)
        if reset_token is None or reset_token.is_used or ensure_aware(reset_token.expires_at) <= now:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid or expired reset token"
            )

        reset_token.is_used = True
        reset_token.used_at = now

        user = reset_token.user
        user.password_hash = hash_password(new_password)
        self.db.commit()
        return user

    def find_or_create_oauth_user(
        self,
        email: str,
        name: Optional[str] = None,
        avatar_url: Optional[str] = None
    ) -> Tuple[User, bool]:
        """
        Usuario para un login OAuth. Los proveedores ya verificaron el email.

        Returns:
            Tuple[User, bool]: usuario y si fue creado
        """
        email = email.lower()
        user = self.db.query(User).filter(User.email == email).first()
        created = False
        now = datetime.now(timezone.utc)

        if user is None:
            user = User(
                email=email,
                name=name,
                avatar_url=avatar_url,
                email_verified=True,
                email_verified_at=now,
            )
            self.db.add(user)
            created = True
        elif not user.email_verified:
            user.email_verified = True
            user.email_verified_at = now

        user.last_login = now
        self.db.commit()
        self.db.refresh(user)
        return user, created

    def get_user(self, user_id: UUID) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def _issue_verification_token(self, user: User) -> str:
        verification_token = self.generate_secure_token()
        self.db.add(EmailVerificationToken(
            user_id=user.id,
            token=verification_token,
            expires_at=datetime.now(timezone.utc) + VERIFICATION_TOKEN_TTL
        ))
        return verification_token
