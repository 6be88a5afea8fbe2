from passlib.context import CryptContext
from datetime import datetime, timedelta, timezone
from typing import Optional
import jwt
from app.core.config import settings

SECRET_KEY = settings.APP_SECRET_STRING
ALGORITHM = settings.ALGORITHM
SESSION_TOKEN_EXPIRE_DAYS = settings.SESSION_TOKEN_EXPIRE_DAYS
SESSION_MAX_AGE = SESSION_TOKEN_EXPIRE_DAYS * 24 * 60 * 60

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    """Verify a plain password against its hash. OAuth-only users have no hash."""
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def create_session_token(user, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create the session JWT stored in the session cookie.
    Payload: id, userId, email, name.
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=SESSION_TOKEN_EXPIRE_DAYS))
    to_encode = {
        "id": str(user.id),
        "userId": str(user.id),
        "email": user.email,
        "name": user.name,
        "exp": expire,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_session_token(token: str) -> Optional[dict]:
    """Return the session payload, or None when the token is invalid or expired."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        return None
    if not payload.get("userId"):
        return None
    return payload


def set_session_cookie(response, token: str) -> None:
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=SESSION_MAX_AGE,
        path="/",
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(key=settings.SESSION_COOKIE_NAME, path="/")


def token_from_request(request) -> Optional[str]:
    """Session cookie first, then an Authorization: Bearer header."""
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if token:
        return token
    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None
