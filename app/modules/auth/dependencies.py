"""
Dependencias de autenticación y control de acceso por compañía.
"""
from typing import Optional
from uuid import UUID
from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.orm import Session

from app.dependencies.dbDependecies import get_db
from app.common.tenancy import without_tenant_isolation
from app.modules.auth.models import User, CompanyUser, CompanyRole
from app.modules.auth.schemas import SessionData
from app.modules.auth.utils import decode_session_token, token_from_request

# Jerarquía de roles: owner > admin > member
ROLE_HIERARCHY = {
    CompanyRole.OWNER.value: 3,
    CompanyRole.ADMIN.value: 2,
    CompanyRole.MEMBER.value: 1,
}


def get_session(request: Request) -> Optional[SessionData]:
    """
    Sesión decodificada. SessionAuthMiddleware la deja en request.state;
    las rutas exentas del middleware la decodifican aquí.
    """
    payload = getattr(request.state, "session", None)
    if payload is None:
        token = token_from_request(request)
        payload = decode_session_token(token) if token else None
    if payload is None:
        return None
    return SessionData(**payload)


def get_current_user(
    request: Request,
    db: Session = Depends(get_db)
) -> User:
    """Usuario autenticado; 401 si no hay sesión válida."""
    session = get_session(request)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )

    user = db.query(User).filter(User.id == session.userId).first()
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        )
    return user


def get_optional_user(
    request: Request,
    db: Session = Depends(get_db)
) -> Optional[User]:
    session = get_session(request)
    if session is None:
        return None
    return db.query(User).filter(User.id == session.userId).first()


def check_company_access(
    db: Session,
    user_id: UUID,
    company_id: UUID,
    required_role: Optional[str] = None
) -> Optional[CompanyUser]:
    """
    Relación usuario-compañía si el usuario pertenece a la compañía y su rol
    alcanza ``required_role`` en la jerarquía; None en caso contrario.
    """
    with without_tenant_isolation():
        company_user = db.query(CompanyUser).filter(
            CompanyUser.user_id == user_id,
            CompanyUser.company_id == company_id
        ).first()

    if company_user is None:
        return None
    if required_role and ROLE_HIERARCHY.get(company_user.role, 0) < ROLE_HIERARCHY[required_role]:
        return None
    return company_user


def require_company_access(
    db: Session,
    user_id: UUID,
    company_id: UUID,
    required_role: Optional[str] = None,
    detail: str = "Access denied"
) -> CompanyUser:
    """Igual que check_company_access pero lanza 403."""
    company_user = check_company_access(db, user_id, company_id, required_role)
    if company_user is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
    return company_user


def is_company_admin(db: Session, user_id: UUID, company_id: UUID) -> bool:
    return check_company_access(db, user_id, company_id, CompanyRole.ADMIN.value) is not None


