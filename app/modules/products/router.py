import logging
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, HTTPException, Query, status

from app.core.config import settings
from app.dependencies.dbDependecies import db_dependency
from app.dependencies.userDependencies import user_dependency
from app.modules.products import service
from app.modules.products.schemas import (
    ProductCreate, ProductUpdate, ProductOut, ProductWithCountOut,
    ProductListResponse, ProductDeleteResponse
)

logger = logging.getLogger(__name__)

product_router = APIRouter()


@product_router.get("", response_model=ProductListResponse)
def list_products(
    db: db_dependency,
    current_user: user_dependency,
    company_id: Optional[UUID] = Query(None, description="Compañía dueña de los productos"),
    active: Optional[bool] = Query(None, description="Solo productos activos"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0)
):
    """Lista productos con paginación."""
    try:
        return service.list_products(db, current_user, company_id, active, limit, offset)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[Products API] GET error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch products")


@product_router.post("", response_model=ProductOut, status_code=status.HTTP_201_CREATED)
def create_product(data: ProductCreate, db: db_dependency, current_user: user_dependency):
    """Create a new product (owner/admin only)."""
    try:
        return service.create_product(db, data, current_user)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[Products API] POST error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create product")


@product_router.get("/{product_id}", response_model=ProductWithCountOut)
def get_product(product_id: UUID, db: db_dependency, current_user: user_dependency):
    return service.get_product(db, product_id, current_user)


@product_router.put("/{product_id}", response_model=ProductOut)
def update_product(product_id: UUID, data: ProductUpdate, db: db_dependency, current_user: user_dependency):
    """Update a product (owner/admin only)."""
    try:
        return service.update_product(db, product_id, data, current_user)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[Products API] PUT error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to update product")


@product_router.delete("/{product_id}", response_model=ProductDeleteResponse)
def delete_product(product_id: UUID, db: db_dependency, current_user: user_dependency):
    """Desactivar producto (soft delete, solo owner)."""
    try:
        return service.delete_product(db, product_id, current_user)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[Products API] DELETE error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to delete product")
