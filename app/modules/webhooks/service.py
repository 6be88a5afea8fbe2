import secrets
import logging
from typing import Optional
from uuid import UUID
from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.common.pagination import build_pagination
from app.common.tenancy import run_in_tenant_context, without_tenant_isolation
from app.modules.auth.models import User, CompanyRole
from app.modules.auth.dependencies import require_company_access
from app.modules.webhooks.models import Webhook, WebhookDelivery
from app.modules.webhooks.schemas import (
    WebhookCreate, WebhookUpdate, WebhookOut, WebhookCreateResponse,
    WebhookListResponse, WebhookDeleteResponse, WebhookDeliveryOut, WebhookDeliveryListResponse
)

logger = logging.getLogger(__name__)

SECRET_WARNING = "Save this secret securely. It will not be shown again."


def generate_webhook_secret() -> str:
    return f"whsec_{secrets.token_hex(32)}"


def mask_secret(secret: str) -> str:
    return f"{secret[:8]}..."


def _delivery_count(db: Session, webhook_id: UUID) -> int:
    return db.query(func.count(WebhookDelivery.id)).filter(
        WebhookDelivery.webhook_id == webhook_id
    ).scalar() or 0


def _to_out(db: Session, webhook: Webhook) -> WebhookOut:
    out = WebhookOut.model_validate(webhook)
    out.secret = mask_secret(webhook.secret)
    out.delivery_count = _delivery_count(db, webhook.id)
    return out


def _get_webhook_with_access(db: Session, webhook_id: UUID, user: User) -> Webhook:
    """Webhook + verificación de rol owner/admin en su compañía."""
    with without_tenant_isolation():
        webhook = db.query(Webhook).filter(Webhook.id == webhook_id).first()
    if webhook is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook not found")

    require_company_access(
        db, user.id, webhook.company_id, CompanyRole.ADMIN.value,
        detail="You do not have access to this webhook"
    )
    return webhook


def list_webhooks(
    db: Session,
    user: User,
    company_id: Optional[UUID],
    active: Optional[bool],
    limit: int,
    offset: int
) -> WebhookListResponse:
    if not company_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="company_id is required")

    require_company_access(
        db, user.id, company_id, CompanyRole.ADMIN.value,
        detail="You do not have access to this company or insufficient permissions"
    )

    with run_in_tenant_context(company_id, user.id):
        query = db.query(Webhook)
        count_query = db.query(func.count(Webhook.id))
        if active:
            query = query.filter(Webhook.active == True)  # noqa: E712
            count_query = count_query.filter(Webhook.active == True)  # noqa: E712

        total = count_query.scalar() or 0
        webhooks = query.order_by(Webhook.created_at.desc()).offset(offset).limit(limit).all()
        items = [_to_out(db, webhook) for webhook in webhooks]

    return WebhookListResponse(webhooks=items, pagination=build_pagination(total, limit, offset))


def create_webhook(db: Session, data: WebhookCreate, user: User) -> WebhookCreateResponse:
    require_company_access(
        db, user.id, data.company_id, CompanyRole.ADMIN.value,
        detail="You do not have permission to create webhooks for this company"
    )

    secret = generate_webhook_secret()
    with run_in_tenant_context(data.company_id, user.id):
        webhook = Webhook(
            url=str(data.url),
            events=list(data.events),
            api_version=data.api_version,
            secret=secret,
            active=data.active,
        )
        db.add(webhook)
        db.commit()
        db.refresh(webhook)

        out = WebhookOut.model_validate(webhook)

    logger.info(f"Webhook {webhook.id} created for company {data.company_id}")
    # Secreto completo solo en la creación
    return WebhookCreateResponse(**out.model_dump(), warning=SECRET_WARNING)


def get_webhook(db: Session, webhook_id: UUID, user: User) -> WebhookOut:
    webhook = _get_webhook_with_access(db, webhook_id, user)
    return _to_out(db, webhook)


def update_webhook(db: Session, webhook_id: UUID, data: WebhookUpdate, user: User) -> WebhookOut:
    webhook = _get_webhook_with_access(db, webhook_id, user)

    update_data = data.model_dump(exclude_unset=True, exclude_none=True)
    with run_in_tenant_context(webhook.company_id, user.id):
        if "url" in update_data:
            webhook.url = str(data.url)
        if "events" in update_data:
            webhook.events = list(data.events)
        if "api_version" in update_data:
            webhook.api_version = data.api_version
        if "active" in update_data:
            webhook.active = data.active

        db.commit()
        db.refresh(webhook)
        return _to_out(db, webhook)


def delete_webhook(db: Session, webhook_id: UUID, user: User) -> WebhookDeleteResponse:
    webhook = _get_webhook_with_access(db, webhook_id, user)

    with run_in_tenant_context(webhook.company_id, user.id):
        db.delete(webhook)
        db.commit()

    logger.info(f"Webhook {webhook_id} deleted")
    return WebhookDeleteResponse(message="Webhook deleted successfully", id=webhook_id)


def list_deliveries(
    db: Session,
    webhook_id: UUID,
    user: User,
    delivery_status: Optional[str],
    limit: int,
    offset: int
) -> WebhookDeliveryListResponse:
    """Historial de entregas de un webhook, más recientes primero."""
    webhook = _get_webhook_with_access(db, webhook_id, user)

    with run_in_tenant_context(webhook.company_id, user.id):
        filters = [WebhookDelivery.webhook_id == webhook.id]
        if delivery_status:
            filters.append(WebhookDelivery.status == delivery_status)

        total = db.query(func.count(WebhookDelivery.id)).filter(*filters).scalar() or 0
        deliveries = db.query(WebhookDelivery).filter(*filters).order_by(
            WebhookDelivery.created_at.desc()
        ).offset(offset).limit(limit).all()
        items = [WebhookDeliveryOut.model_validate(delivery) for delivery in deliveries]

    return WebhookDeliveryListResponse(deliveries=items, pagination=build_pagination(total, limit, offset))
