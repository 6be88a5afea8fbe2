import logging
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, HTTPException, Query, status

from app.core.config import settings
from app.dependencies.dbDependecies import db_dependency
from app.dependencies.userDependencies import user_dependency
from app.modules.company import service
from app.modules.company.schemas import (
    CompanyCreate, CompanyUpdate, CompanyOut, CompanyWithRoleOut, CompanyListResponse, CompanyStats
)

logger = logging.getLogger(__name__)

company_router = APIRouter()


@company_router.get("", response_model=CompanyListResponse)
def list_companies(
    db: db_dependency,
    current_user: user_dependency,
    role: Optional[str] = Query(None, description="owner, admin o member"),
    type: Optional[str] = Query(None, description="platform o sub_merchant"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0)
):
    """
    Compañías del usuario actual con su rol y conteos.
    """
    try:
        return service.list_companies(db, current_user, role, type, limit, offset)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[Companies API] GET error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch companies")


@company_router.post("", response_model=CompanyOut, status_code=status.HTTP_201_CREATED)
def create_company(company: CompanyCreate, db: db_dependency, current_user: user_dependency):
    """
    Endpoint to create a company. The creator becomes its owner.
    """
    try:
        return service.create_company(db, company, current_user)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[Companies API] POST error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create company")


@company_router.get("/{company_id}", response_model=CompanyWithRoleOut)
def get_company(company_id: UUID, db: db_dependency, current_user: user_dependency):
    return service.get_company(db, company_id, current_user)


@company_router.put("/{company_id}", response_model=CompanyOut)
def update_company(
    company_id: UUID,
    company_update: CompanyUpdate,
    db: db_dependency,
    current_user: user_dependency
):
    """
    Actualizar una compañía.

    **Validaciones:**
    - Solo usuarios con rol 'owner' o 'admin' pueden modificarla
    - El email no puede pertenecer a otra compañía
    - Solo el 'owner' puede cambiar el status
    """
    try:
        return service.update_company(db, company_id, company_update, current_user)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[Companies API] PUT error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to update company")


@company_router.get("/{company_id}/stats", response_model=CompanyStats)
def get_company_stats(company_id: UUID, db: db_dependency, current_user: user_dependency):
    """Métricas del dashboard de la compañía (cualquier miembro)."""
    return service.get_company_stats(db, company_id, current_user)
