import logging
import stripe
from fastapi import APIRouter, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from app.dependencies.dbDependecies import db_dependency
from app.dependencies.userDependencies import user_dependency
from app.modules.payments import service, stripe_client
from app.modules.payments.schemas import CheckoutCreate, CheckoutResponse, StripeWebhookResponse
from app.modules.payments.stripe_events import process_stripe_event

logger = logging.getLogger(__name__)

checkout_router = APIRouter()
stripe_webhook_router = APIRouter()


@checkout_router.post("/create", response_model=CheckoutResponse)
def create_checkout(data: CheckoutCreate, db: db_dependency, current_user: user_dependency):
    """
    Crear una sesión de Stripe Checkout con comisión de plataforma.

    Body (camelCase o snake_case):
    - productId, companyId, successUrl, cancelUrl
    - customerEmail, metadata (opcionales)
    """
    try:
        return service.create_checkout(db, data, current_user)
    except HTTPException:
        raise
    except stripe.StripeError as e:
        logger.error(f"[Checkout API] Stripe error: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment provider error")
    except Exception as e:
        logger.error(f"[Checkout API] Error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create checkout session"
        )


@stripe_webhook_router.post("/stripe", response_model=StripeWebhookResponse)
async def stripe_webhook(request: Request, db: db_dependency):
    """
    Receptor de eventos de Stripe. La firma se verifica sobre el cuerpo crudo;
    el procesamiento (sesión síncrona) corre en el threadpool.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing stripe-signature header")

    try:
        event = stripe_client.verify_stripe_webhook(payload, signature)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        await run_in_threadpool(process_stripe_event, db, event)
    except Exception as e:
        db.rollback()
        logger.error(f"[Stripe Webhook] Error processing {event.get('type')}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    return StripeWebhookResponse(received=True)
