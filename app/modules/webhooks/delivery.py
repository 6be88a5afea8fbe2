"""
Outgoing webhook delivery: payload, HMAC signature and a single HTTP attempt.

Retry scheduling lives in the Celery task (app.modules.webhooks.tasks).
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import requests

from app.common.validators import ensure_aware
from app.core.config import settings
from app.modules.webhooks.models import Webhook, WebhookDelivery, DeliveryStatus

logger = logging.getLogger(__name__)

# Stored response bodies are truncated
MAX_RESPONSE_BODY = 10_000


class WebhookDeliveryError(Exception):
    pass


@dataclass
class DeliveryResult:
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


def generate_webhook_signature(payload: str, secret: str) -> str:
    """HMAC-SHA256 of the raw payload, formatted as ``sha256=<hex>``."""
    digest = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_webhook_signature(payload: str, signature: str, secret: str) -> bool:
    expected = generate_webhook_signature(payload, secret)
    return hmac.compare_digest(signature.encode(), expected.encode())


def build_payload(delivery: WebhookDelivery) -> str:
    # Timestamp comes from the delivery record so retries sign the same body
    created_at = ensure_aware(delivery.created_at) or datetime.now(timezone.utc)
    return json.dumps({
        "event_id": delivery.event_id,
        "event_type": delivery.event_type,
        "data": delivery.event_data,
        "timestamp": created_at.isoformat(),
    })


def build_headers(delivery: WebhookDelivery, signature: str) -> dict:
    return {
        "Content-Type": "application/json",
        "X-Webhook-Signature": signature,
        "X-Webhook-Event": delivery.event_type,
        "X-Webhook-Event-ID": delivery.event_id,
        "User-Agent": settings.WEBHOOK_USER_AGENT,
    }


def should_retry(status_code: Optional[int]) -> bool:
    """Network errors and 5xx are retried; 4xx client errors are final."""
    if status_code is None:
        return True
    return not (400 <= status_code < 500)


def retry_countdown(attempt: int) -> int:
    """Seconds before the next attempt: 5, 25, 125..."""
    return 5 ** attempt


def attempt_delivery(delivery: WebhookDelivery, webhook: Webhook, attempt: int) -> DeliveryResult:
    """
    POST the event to the subscriber once and record the outcome on ``delivery``.
    The caller commits.
    """
    payload = build_payload(delivery)
    headers = build_headers(delivery, generate_webhook_signature(payload, webhook.secret))

    delivery.attempts = attempt
    try:
        response = requests.post(
            webhook.url,
            data=payload,
            headers=headers,
            timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        logger.error(f"[Webhook] Error delivering {delivery.event_type} to {webhook.url}: {e}")
        delivery.status = DeliveryStatus.FAILED.value
        delivery.response_body = str(e)[:MAX_RESPONSE_BODY]
        return DeliveryResult(success=False, error=str(e))

    delivery.response_status = response.status_code
    delivery.response_body = (response.text or "")[:MAX_RESPONSE_BODY]

    if response.ok:
        delivery.status = DeliveryStatus.DELIVERED.value
        delivery.delivered_at = datetime.now(timezone.utc)
        logger.info(f"[Webhook] Delivered {delivery.event_type} to {webhook.url} (attempt {attempt})")
        return DeliveryResult(success=True, status_code=response.status_code)

    delivery.status = DeliveryStatus.FAILED.value
    logger.warning(
        f"[Webhook] Failed {delivery.event_type} to {webhook.url}: {response.status_code} "
        f"(attempt {attempt}/{settings.WEBHOOK_MAX_ATTEMPTS})"
    )
    return DeliveryResult(
        success=False,
        status_code=response.status_code,
        error=f"HTTP {response.status_code}",
    )
