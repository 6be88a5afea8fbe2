"""
Checkout de productos a través de Stripe Connect.
"""
import logging
import secrets
from typing import Optional
from uuid import UUID
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.common.tenancy import run_in_tenant_context, without_tenant_isolation
from app.modules.auth.models import User
from app.modules.company.models import Company, CompanyStatus
from app.modules.payments import stripe_client
from app.modules.payments.models import Payment, PaymentStatus, CheckoutSession, CheckoutMode
from app.modules.payments.schemas import CheckoutCreate, CheckoutResponse
from app.modules.products.models import Product, PlanType

logger = logging.getLogger(__name__)


def generate_checkout_idempotency_key(company_id: UUID, product_id: UUID) -> str:
    return f"checkout_{company_id}_{product_id}_{secrets.token_urlsafe(16)}"


def _payment_intent_id(session) -> Optional[str]:
    payment_intent = getattr(session, "payment_intent", None)
    if payment_intent is None or isinstance(payment_intent, str):
        return payment_intent
    return payment_intent.id


def create_checkout(db: Session, data: CheckoutCreate, user: User) -> CheckoutResponse:
    """
    Crear una sesión de Stripe Checkout para un producto de la compañía.

    Validaciones:
    - compañía existente y activa
    - onboarding de Stripe completo
    - producto activo de esa compañía

    Para productos one_time se registra un pago pendiente con la comisión
    de la plataforma.
    """
    with without_tenant_isolation():
        company = db.query(Company).filter(Company.id == data.company_id).first()
    if company is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Company not found")

    if company.status != CompanyStatus.ACTIVE.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Company is not active")

    if not company.stripe_onboarded or not company.stripe_account_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Company has not completed Stripe onboarding",
                "onboarding_required": True,
            }
        )

    with run_in_tenant_context(company.id, user.id):
        product = db.query(Product).filter(
            Product.id == data.product_id,
            Product.active == True  # noqa: E712
        ).first()
        if product is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found or inactive")

        idempotency_key = generate_checkout_idempotency_key(company.id, product.id)
        extra_metadata = data.metadata or {}

        session = stripe_client.create_checkout_session(
            product_id=str(product.id),
            product_name=product.title,
            price_in_cents=product.price_minor_units,
            currency=product.currency,
            plan_type=product.plan_type,
            stripe_account_id=company.stripe_account_id,
            platform_fee_percent=company.platform_fee_percent,
            success_url=str(data.success_url),
            cancel_url=str(data.cancel_url),
            idempotency_key=idempotency_key,
            trial_days=product.trial_days or None,
            customer_email=data.customer_email,
            client_reference_id=str(user.id),
            metadata={
                "company_id": str(company.id),
                "product_id": str(product.id),
                **extra_metadata,
            },
        )

        is_one_time = product.plan_type == PlanType.ONE_TIME.value
        db.add(CheckoutSession(
            product_id=product.id,
            user_id=user.id,
            stripe_session_id=session.id,
            idempotency_key=idempotency_key,
            mode=CheckoutMode.PAYMENT.value if is_one_time else CheckoutMode.SUBSCRIPTION.value,
            url=session.url,
            customer_email=data.customer_email,
        ))

        payment_intent_id = _payment_intent_id(session)
        if is_one_time and payment_intent_id:
            fee_in_cents = stripe_client.calculate_platform_fee(
                product.price_minor_units, company.platform_fee_percent
            )
            db.add(Payment(
                user_id=user.id,
                amount=product.price_amount,
                amount_minor_units=product.price_minor_units,
                currency=product.currency,
                status=PaymentStatus.PENDING.value,
                stripe_payment_intent_id=payment_intent_id,
                platform_fee_amount=stripe_client.to_dollars(fee_in_cents),
                platform_fee_minor_units=fee_in_cents,
                checkout_metadata={
                    "session_id": session.id,
                    "product_id": str(product.id),
                    "idempotency_key": idempotency_key,
                },
                metadata_=extra_metadata,
            ))

        db.commit()

    logger.info(f"[Checkout] Session {session.id} created for product {product.id}")
    return CheckoutResponse(success=True, checkout_url=session.url, session_id=session.id)
