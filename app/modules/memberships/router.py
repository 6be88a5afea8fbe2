import logging
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.dependencies.dbDependecies import db_dependency
from app.dependencies.userDependencies import user_dependency
from app.modules.memberships import service
from app.modules.memberships.models import MembershipStatus
from app.modules.memberships.service import LicenseValidationError
from app.modules.memberships.schemas import (
    MembershipDetailOut, MembershipListResponse, MembershipUpdate,
    LicenseKeyCreate, LicenseKeyOut, LicenseKeyListResponse,
    LicenseValidationRequest, LicenseValidationResponse
)

logger = logging.getLogger(__name__)

membership_router = APIRouter()


@membership_router.get("", response_model=MembershipListResponse)
def list_memberships(
    db: db_dependency,
    current_user: user_dependency,
    company_id: Optional[UUID] = Query(None),
    user_id: Optional[UUID] = Query(None),
    product_id: Optional[UUID] = Query(None),
    membership_status: Optional[MembershipStatus] = Query(None, alias="status"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0)
):
    """
    Listar membresías.

    Las membresías se crean desde el checkout de Stripe, no hay POST aquí.
    """
    try:
        return service.list_memberships(
            db, current_user, company_id, user_id, product_id, membership_status, limit, offset
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[Memberships API] GET error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch memberships")


@membership_router.get("/{membership_id}", response_model=MembershipDetailOut)
def get_membership(membership_id: UUID, db: db_dependency, current_user: user_dependency):
    return service.get_membership(db, membership_id, current_user)


@membership_router.put("/{membership_id}", response_model=MembershipDetailOut)
def update_membership(
    membership_id: UUID,
    data: MembershipUpdate,
    db: db_dependency,
    current_user: user_dependency
):
    try:
        return service.update_membership(db, membership_id, data, current_user)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[Memberships API] PUT error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to update membership")


@membership_router.post(
    "/{membership_id}/license_keys",
    response_model=LicenseKeyOut,
    status_code=status.HTTP_201_CREATED
)
def create_license_key(
    membership_id: UUID,
    data: LicenseKeyCreate,
    db: db_dependency,
    current_user: user_dependency
):
    """Emitir una licencia para la membresía (owner/admin)."""
    return service.create_license_key(db, membership_id, data, current_user)


@membership_router.get("/{membership_id}/license_keys", response_model=LicenseKeyListResponse)
def list_license_keys(membership_id: UUID, db: db_dependency, current_user: user_dependency):
    return service.list_license_keys(db, membership_id, current_user)


@membership_router.post(
    "/{membership_id}/license_keys/{license_id}/deactivate",
    response_model=LicenseKeyOut
)
def deactivate_license_key(
    membership_id: UUID,
    license_id: UUID,
    db: db_dependency,
    current_user: user_dependency
):
    return service.deactivate_license_key(db, membership_id, license_id, current_user)


@membership_router.post(
    "/{key}/validate_license",
    response_model=LicenseValidationResponse,
    responses={403: {"description": "License rejected"}, 404: {"description": "License not found"}}
)
def validate_license(key: str, data: LicenseValidationRequest, request: Request, db: db_dependency):
    """
    Validación de licencias para aplicaciones cliente. No requiere sesión.
    """
    try:
        return service.validate_license(db, key, data, request.headers)
    except LicenseValidationError as e:
        content = {"valid": False, "reason": e.reason}
        if e.details:
            content["details"] = e.details
        return JSONResponse(status_code=e.status_code, content=content)
    except Exception as e:
        logger.error(f"[License Validation] Error: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"valid": False, "error": "Internal server error"}
        )
