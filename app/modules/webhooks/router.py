import logging
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, HTTPException, Query, status

from app.core.config import settings
from app.dependencies.dbDependecies import db_dependency
from app.dependencies.userDependencies import user_dependency
from app.modules.webhooks import service
from app.modules.webhooks.schemas import (
    WebhookCreate, WebhookUpdate, WebhookOut, WebhookCreateResponse,
    WebhookListResponse, WebhookDeleteResponse, WebhookDeliveryListResponse
)

logger = logging.getLogger(__name__)

webhook_router = APIRouter()


@webhook_router.get("", response_model=WebhookListResponse)
def list_webhooks(
    db: db_dependency,
    current_user: user_dependency,
    company_id: Optional[UUID] = Query(None),
    active: Optional[bool] = Query(None),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0)
):
    """
    Suscripciones de webhooks de una compañía (solo owner/admin).
    Los secretos se devuelven enmascarados.
    """
    try:
        return service.list_webhooks(db, current_user, company_id, active, limit, offset)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[Webhooks API] GET error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch webhooks")


@webhook_router.post("", response_model=WebhookCreateResponse, status_code=status.HTTP_201_CREATED)
def create_webhook(data: WebhookCreate, db: db_dependency, current_user: user_dependency):
    """
    Crear suscripción. El secreto completo solo se muestra en esta respuesta.
    """
    try:
        return service.create_webhook(db, data, current_user)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[Webhooks API] POST error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create webhook")


@webhook_router.get("/{webhook_id}", response_model=WebhookOut)
def get_webhook(webhook_id: UUID, db: db_dependency, current_user: user_dependency):
    return service.get_webhook(db, webhook_id, current_user)


@webhook_router.put("/{webhook_id}", response_model=WebhookOut)
def update_webhook(webhook_id: UUID, data: WebhookUpdate, db: db_dependency, current_user: user_dependency):
    try:
        return service.update_webhook(db, webhook_id, data, current_user)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[Webhooks API] PUT error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to update webhook")


@webhook_router.delete("/{webhook_id}", response_model=WebhookDeleteResponse)
def delete_webhook(webhook_id: UUID, db: db_dependency, current_user: user_dependency):
    try:
        return service.delete_webhook(db, webhook_id, current_user)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[Webhooks API] DELETE error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to delete webhook")


@webhook_router.get("/{webhook_id}/deliveries", response_model=WebhookDeliveryListResponse)
def list_deliveries(
    webhook_id: UUID,
    db: db_dependency,
    current_user: user_dependency,
    delivery_status: Optional[str] = Query(None, alias="status"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0)
):
    """Historial de entregas (status: pending, delivered, failed)."""
    return service.list_deliveries(db, webhook_id, current_user, delivery_status, limit, offset)
