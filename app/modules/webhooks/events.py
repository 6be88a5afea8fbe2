"""
Webhook event types and fan-out to subscribed endpoints.
"""
import logging
import secrets
import time
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.common.tenancy import run_in_tenant_context
from app.modules.webhooks.models import Webhook, WebhookDelivery, DeliveryStatus
from app.modules.webhooks.tasks import deliver_webhook

logger = logging.getLogger(__name__)


class WebhookEvents:
    # Payment events
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"

    # Membership events
    MEMBERSHIP_CREATED = "membership.created"
    MEMBERSHIP_UPDATED = "membership.updated"
    MEMBERSHIP_CANCELED = "membership.canceled"
    MEMBERSHIP_EXPIRED = "membership.expired"

    # License events
    LICENSE_CREATED = "license.created"
    LICENSE_ACTIVATED = "license.activated"
    LICENSE_DEACTIVATED = "license.deactivated"

    # Company events
    COMPANY_ONBOARDED = "company.onboarded"
    COMPANY_UPDATED = "company.updated"

    # Product events
    PRODUCT_CREATED = "product.created"
    PRODUCT_UPDATED = "product.updated"
    PRODUCT_DELETED = "product.deleted"


# Every event the service emits can be subscribed to through the webhooks API
SUBSCRIBABLE_EVENTS = tuple(
    value for name, value in vars(WebhookEvents).items()
    if name.isupper()
)


def generate_event_id() -> str:
    return f"evt_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def queue_webhook_delivery(
    db: Session,
    company_id: UUID,
    event_type: str,
    event_data: Dict[str, Any],
    event_id: Optional[str] = None,
) -> List[WebhookDelivery]:
    """
    Create a pending delivery for every active webhook of the company that
    subscribes to ``event_type`` and enqueue it.

    A webhook that already has a delivery for ``event_id`` is skipped. A
    failure on one webhook is logged and does not stop the others.
    """
    event_id = event_id or generate_event_id()
    queued: List[WebhookDelivery] = []

    with run_in_tenant_context(company_id):
        webhooks = db.query(Webhook).filter(Webhook.active == True).all()  # noqa: E712
        subscribed = [webhook for webhook in webhooks if event_type in (webhook.events or [])]

        if not subscribed:
            logger.debug(f"[Webhook Queue] No webhooks for {event_type}")
            return queued

        for webhook in subscribed:
            try:
                duplicate = db.query(WebhookDelivery.id).filter(
                    WebhookDelivery.webhook_id == webhook.id,
                    WebhookDelivery.event_id == event_id
                ).first()
                if duplicate:
                    logger.info(f"[Webhook Queue] Skipping duplicate event {event_id} for webhook {webhook.id}")
                    continue

                delivery = WebhookDelivery(
                    webhook_id=webhook.id,
                    event_id=event_id,
                    event_type=event_type,
                    event_data=event_data,
                    status=DeliveryStatus.PENDING.value,
                    attempts=0,
                )
                db.add(delivery)
                db.commit()
                queued.append(delivery)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"[Webhook Queue] Failed to queue webhook {webhook.id}: {e}")

    for delivery in queued:
        try:
            deliver_webhook.delay(str(delivery.id))
            logger.info(f"[Webhook Queue] Triggered {event_type} for webhook {delivery.webhook_id}")
        except Exception as e:
            # Broker unavailable: the delivery stays pending
            logger.error(f"[Webhook Queue] Failed to enqueue delivery {delivery.id}: {e}")

    return queued


def trigger_webhook(db: Session, company_id: UUID, event_type: str, event_data: Dict[str, Any]) -> List[WebhookDelivery]:
    """Convenience wrapper with a generated event id."""
    return queue_webhook_delivery(db, company_id, event_type, event_data)
