"""
Tareas Celery para la entrega de webhooks salientes.
"""
import logging
from uuid import UUID

from app.core.celery import celery_app
from app.core.config import settings
from app.database.database import SessionLocal
from app.common.tenancy import without_tenant_isolation
from app.modules.webhooks.models import WebhookDelivery, DeliveryStatus
from app.modules.webhooks.delivery import (
    attempt_delivery, should_retry, retry_countdown, WebhookDeliveryError
)

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=settings.WEBHOOK_MAX_ATTEMPTS - 1)
def deliver_webhook(self, delivery_id: str):
    """
    Entregar un evento a un suscriptor.

    Cada intento actualiza el registro de entrega. Los errores 4xx no se
    reintentan; 5xx y errores de red se reintentan tras 5^intento segundos.
    """
    attempt = self.request.retries + 1

    db = SessionLocal()
    try:
        with without_tenant_isolation():
            delivery = db.query(WebhookDelivery).filter(
                WebhookDelivery.id == UUID(delivery_id)
            ).first()
            if delivery is None:
                logger.warning(f"[Webhook] Delivery {delivery_id} not found")
                return {"status": "missing", "delivery_id": delivery_id}

            webhook = delivery.webhook
            if not webhook.active:
                delivery.status = DeliveryStatus.FAILED.value
                delivery.response_body = "Webhook disabled"
                db.commit()
                logger.info(f"[Webhook] Skipping delivery {delivery_id}: webhook {webhook.id} disabled")
                return {"status": "skipped", "delivery_id": delivery_id}

            result = attempt_delivery(delivery, webhook, attempt)
            db.commit()
    finally:
        db.close()

    if result.success:
        return {"status": "delivered", "delivery_id": delivery_id, "attempts": attempt}

    if should_retry(result.status_code) and attempt < settings.WEBHOOK_MAX_ATTEMPTS:
        raise self.retry(
            exc=WebhookDeliveryError(result.error),
            countdown=retry_countdown(attempt),
        )

    logger.error(f"[Webhook] Giving up on delivery {delivery_id} after {attempt} attempt(s): {result.error}")
    return {
        "status": "failed",
        "delivery_id": delivery_id,
        "attempts": attempt,
        "error": result.error,
    }
