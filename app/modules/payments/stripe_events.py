"""
Procesamiento de eventos recibidos desde Stripe.

Cada handler recibe el objeto del evento (event["data"]["object"]) como
dict, localiza el registro local sin contexto de tenant y aplica los
cambios dentro del contexto de la compañía dueña.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.common.tenancy import run_in_tenant_context, without_tenant_isolation
from app.modules.memberships.models import Membership, MembershipStatus
from app.modules.memberships.schemas import MembershipOut
from app.modules.payments.models import Payment, PaymentStatus, CheckoutSession, CheckoutStatus
from app.modules.products.models import Product, PlanType
from app.modules.webhooks.events import trigger_webhook, WebhookEvents

logger = logging.getLogger(__name__)

# Estado de suscripción en Stripe -> estado de membresía
SUBSCRIPTION_STATUS_MAP = {
    "active": MembershipStatus.ACTIVE.value,
    "past_due": MembershipStatus.PAST_DUE.value,
    "canceled": MembershipStatus.CANCELED.value,
    "unpaid": MembershipStatus.CANCELED.value,
    "trialing": MembershipStatus.TRIALING.value,
}


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _object_id(value) -> Optional[str]:
    # Stripe envía ids o el objeto expandido
    if isinstance(value, dict):
        return value.get("id")
    return value


def _as_uuid(value) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def _find_payment(db: Session, payment_intent_id: str) -> Optional[Payment]:
    with without_tenant_isolation():
        return db.query(Payment).filter(Payment.stripe_payment_intent_id == payment_intent_id).first()


def _find_membership(db: Session, subscription_id: str) -> Optional[Membership]:
    with without_tenant_isolation():
        return db.query(Membership).filter(Membership.stripe_subscription_id == subscription_id).first()


def handle_payment_intent_succeeded(db: Session, payment_intent: Dict[str, Any]) -> None:
    payment = _find_payment(db, payment_intent["id"])
    if payment is None:
        logger.warning(f"[Stripe Webhook] Payment not found: {payment_intent['id']}")
        return

    latest_charge = payment_intent.get("latest_charge")
    payment_id = str(payment.id)
    company_id = payment.company_id
    with run_in_tenant_context(company_id):
        payment.status = PaymentStatus.SUCCEEDED.value
        payment.stripe_charge_id = latest_charge if isinstance(latest_charge, str) else _object_id(latest_charge)
        payment_method = payment_intent.get("payment_method")
        payment.metadata_ = {
            **(payment.metadata_ or {}),
            "payment_method": payment_method if isinstance(payment_method, str) else None,
            "receipt_url": latest_charge.get("receipt_url") if isinstance(latest_charge, dict) else None,
        }
        db.commit()

    customer = payment_intent.get("customer")
    trigger_webhook(db, company_id, WebhookEvents.PAYMENT_SUCCEEDED, {
        "payment_id": payment_id,
        "amount": payment_intent.get("amount"),
        "currency": payment_intent.get("currency"),
        "customer": customer if isinstance(customer, str) else None,
    })
    logger.info(f"[Stripe Webhook] Payment succeeded: {payment_id}")


def handle_payment_intent_failed(db: Session, payment_intent: Dict[str, Any]) -> None:
    payment = _find_payment(db, payment_intent["id"])
    if payment is None:
        logger.warning(f"[Stripe Webhook] Payment not found: {payment_intent['id']}")
        return

    last_error = payment_intent.get("last_payment_error") or {}
    payment_id = str(payment.id)
    company_id = payment.company_id
    with run_in_tenant_context(company_id):
        payment.status = PaymentStatus.FAILED.value
        payment.metadata_ = {
            **(payment.metadata_ or {}),
            "failure_code": last_error.get("code"),
            "failure_message": last_error.get("message"),
        }
        db.commit()

    trigger_webhook(db, company_id, WebhookEvents.PAYMENT_FAILED, {
        "payment_id": payment_id,
        "amount": payment_intent.get("amount"),
        "failure_code": last_error.get("code"),
        "failure_message": last_error.get("message"),
    })
    logger.info(f"[Stripe Webhook] Payment failed: {payment_id}")


def handle_charge_refunded(db: Session, charge: Dict[str, Any]) -> None:
    payment_intent_id = _object_id(charge.get("payment_intent"))
    payment = _find_payment(db, payment_intent_id) if payment_intent_id else None
    if payment is None:
        logger.warning(f"[Stripe Webhook] Payment not found for refunded charge: {charge.get('id')}")
        return

    payment_id = str(payment.id)
    company_id = payment.company_id
    with run_in_tenant_context(company_id):
        payment.status = PaymentStatus.REFUNDED.value
        payment.stripe_charge_id = payment.stripe_charge_id or charge.get("id")
        db.commit()

    trigger_webhook(db, company_id, WebhookEvents.PAYMENT_REFUNDED, {
        "payment_id": payment_id,
        "amount_refunded": charge.get("amount_refunded"),
        "currency": charge.get("currency"),
    })
    logger.info(f"[Stripe Webhook] Payment refunded: {payment_id}")


def handle_checkout_session_completed(db: Session, session: Dict[str, Any]) -> None:
    """
    Marca la sesión como completada y, para productos de suscripción,
    crea la membresía del cliente (client_reference_id).
    """
    metadata = session.get("metadata") or {}
    company_id = _as_uuid(metadata.get("company_id"))
    product_id = _as_uuid(metadata.get("product_id"))
    if company_id is None or product_id is None:
        logger.warning("[Stripe Webhook] Missing metadata in checkout session")
        return

    with run_in_tenant_context(company_id):
        checkout = db.query(CheckoutSession).filter(
            CheckoutSession.stripe_session_id == session["id"]
        ).first()
        if checkout is not None:
            checkout.status = CheckoutStatus.COMPLETED.value

        product = db.query(Product).filter(Product.id == product_id).first()
        if product is None:
            db.commit()
            logger.warning(f"[Stripe Webhook] Product not found: {product_id}")
            return

        subscription_id = _object_id(session.get("subscription"))
        user_id = _as_uuid(session.get("client_reference_id"))
        membership = None

        if product.plan_type != PlanType.ONE_TIME.value and subscription_id:
            if _find_membership(db, subscription_id) is not None:
                logger.info(f"[Stripe Webhook] Subscription {subscription_id} already linked")
            elif user_id is None:
                logger.warning(f"[Stripe Webhook] Checkout {session['id']} has no client_reference_id")
            else:
                membership = Membership(
                    user_id=user_id,
                    product_id=product.id,
                    status=MembershipStatus.ACTIVE.value,
                    stripe_subscription_id=subscription_id,
                )
                db.add(membership)
        db.commit()
        membership_id = str(membership.id) if membership is not None else None

    if membership_id is not None:
        trigger_webhook(db, company_id, WebhookEvents.MEMBERSHIP_CREATED, {
            "membership_id": membership_id,
            "product_id": str(product_id),
            "subscription_id": subscription_id,
        })
    logger.info(f"[Stripe Webhook] Checkout completed: {session['id']}")


def handle_subscription_created(db: Session, subscription: Dict[str, Any]) -> None:
    membership = _find_membership(db, subscription["id"])
    if membership is None:
        logger.warning(f"[Stripe Webhook] Membership not found for subscription: {subscription['id']}")
        return

    with run_in_tenant_context(membership.company_id):
        membership.status = (
            MembershipStatus.ACTIVE.value
            if subscription.get("status") == "active"
            else MembershipStatus.TRIALING.value
        )
        membership.current_period_start = _from_timestamp(subscription.get("current_period_start"))
        membership.current_period_end = _from_timestamp(subscription.get("current_period_end"))
        membership.trial_end = _from_timestamp(subscription.get("trial_end"))
        db.commit()

    logger.info(f"[Stripe Webhook] Subscription created: {subscription['id']}")


def handle_subscription_updated(db: Session, subscription: Dict[str, Any]) -> None:
    membership = _find_membership(db, subscription["id"])
    if membership is None:
        return

    company_id = membership.company_id
    with run_in_tenant_context(company_id):
        membership.status = SUBSCRIPTION_STATUS_MAP.get(
            subscription.get("status"), MembershipStatus.ACTIVE.value
        )
        membership.current_period_start = _from_timestamp(subscription.get("current_period_start"))
        membership.current_period_end = _from_timestamp(subscription.get("current_period_end"))
        membership.cancel_at = _from_timestamp(subscription.get("cancel_at"))
        membership.canceled_at = _from_timestamp(subscription.get("canceled_at"))
        db.commit()
        db.refresh(membership)
        event_data = {
            "membership_id": str(membership.id),
            "status": membership.status,
            "subscription_id": subscription["id"],
            "membership": MembershipOut.model_validate(membership).model_dump(mode="json"),
        }

    trigger_webhook(db, company_id, WebhookEvents.MEMBERSHIP_UPDATED, event_data)
    logger.info(f"[Stripe Webhook] Subscription updated: {subscription['id']}")


def handle_subscription_deleted(db: Session, subscription: Dict[str, Any]) -> None:
    membership = _find_membership(db, subscription["id"])
    if membership is None:
        return

    company_id = membership.company_id
    membership_id = str(membership.id)
    with run_in_tenant_context(company_id):
        membership.status = MembershipStatus.CANCELED.value
        membership.canceled_at = datetime.now(timezone.utc)
        db.commit()

    trigger_webhook(db, company_id, WebhookEvents.MEMBERSHIP_CANCELED, {
        "membership_id": membership_id,
        "subscription_id": subscription["id"],
    })
    logger.info(f"[Stripe Webhook] Subscription deleted: {subscription['id']}")


EVENT_HANDLERS: Dict[str, Callable[[Session, Dict[str, Any]], None]] = {
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
    "charge.refunded": handle_charge_refunded,
    "checkout.session.completed": handle_checkout_session_completed,
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
}


def process_stripe_event(db: Session, event: Dict[str, Any]) -> bool:
    """
    Despacha el evento a su handler. Devuelve False si el tipo no se procesa.
    """
    event_type = event.get("type")
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"[Stripe Webhook] Unhandled event: {event_type}")
        return False

    logger.info(f"[Stripe Webhook] Received: {event_type}")
    handler(db, event["data"]["object"])
    return True
