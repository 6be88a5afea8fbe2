"""
Stripe Connect helpers for the marketplace.

All amounts sent to Stripe are in minor units (cents). Every mutation carries
an idempotency key.
"""
import json
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, Union

import stripe

from app.core.config import settings

logger = logging.getLogger(__name__)

stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.api_version = settings.STRIPE_API_VERSION

Number = Union[int, float, Decimal]


# =========================================================================
# Money conversion
# =========================================================================

def to_cents(amount: Number) -> int:
    """Dollars to cents, rounding half up (49.995 -> 5000)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_dollars(amount_in_cents: int) -> Decimal:
    return (Decimal(amount_in_cents) / 100).quantize(Decimal("0.01"))


def calculate_platform_fee(amount_in_cents: int, fee_percent: Number) -> int:
    """Platform fee in cents for a charge of ``amount_in_cents``."""
    fee = Decimal(amount_in_cents) * Decimal(str(fee_percent)) / 100
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_merchant_payout(amount_in_cents: int, fee_percent: Number) -> int:
    return amount_in_cents - calculate_platform_fee(amount_in_cents, fee_percent)


# =========================================================================
# Checkout
# =========================================================================

def create_checkout_session(
    product_id: str,
    product_name: str,
    price_in_cents: int,
    currency: str,
    plan_type: str,
    stripe_account_id: str,
    platform_fee_percent: Number,
    success_url: str,
    cancel_url: str,
    idempotency_key: str,
    trial_days: Optional[int] = None,
    customer_email: Optional[str] = None,
    client_reference_id: Optional[str] = None,
    metadata: Optional[Dict[str, str]] = None,
) -> stripe.checkout.Session:
    """
    Create a Checkout Session on the company's connected account.

    One-time products are charged in ``payment`` mode with an application fee
    and a transfer to the connected account; monthly and yearly products use
    ``subscription`` mode with an application fee percent.
    """
    price_data: Dict[str, Any] = {
        "currency": currency.lower(),
        "product_data": {
            "name": product_name,
            "metadata": {"product_id": product_id},
        },
        "unit_amount": price_in_cents,
    }

    params: Dict[str, Any] = {
        "line_items": [{"price_data": price_data, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": {
            "product_id": product_id,
            "plan_type": plan_type,
            **(metadata or {}),
        },
        "consent_collection": {"terms_of_service": "required"},
    }

    if plan_type == "one_time":
        params["mode"] = "payment"
        params["payment_intent_data"] = {
            "application_fee_amount": calculate_platform_fee(price_in_cents, platform_fee_percent),
            "transfer_data": {"destination": stripe_account_id},
        }
    else:
        params["mode"] = "subscription"
        price_data["recurring"] = {
            "interval": "month" if plan_type == "monthly" else "year",
            "interval_count": 1,
        }
        subscription_data: Dict[str, Any] = {"application_fee_percent": float(platform_fee_percent)}
        if trial_days:
            subscription_data["trial_period_days"] = trial_days
        params["subscription_data"] = subscription_data

    if customer_email:
        params["customer_email"] = customer_email
    if client_reference_id:
        params["client_reference_id"] = client_reference_id

    return stripe.checkout.Session.create(
        **params,
        idempotency_key=idempotency_key,
        stripe_account=stripe_account_id,
    )


# =========================================================================
# Connect onboarding
# =========================================================================

def create_connect_account(
    company_id: str,
    email: str,
    business_name: str,
    country: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> stripe.Account:
    """Express account for a sub-merchant."""
    return stripe.Account.create(
        type="express",
        country=country or settings.STRIPE_CONNECT_COUNTRY,
        email=email,
        business_type="company",
        company={"name": business_name},
        capabilities={
            "card_payments": {"requested": True},
            "transfers": {"requested": True},
        },
        metadata={"company_id": company_id},
        idempotency_key=idempotency_key or f"connect_account_{company_id}",
    )


def create_onboarding_link(account_id: str, refresh_url: str, return_url: str) -> str:
    account_link = stripe.AccountLink.create(
        account=account_id,
        refresh_url=refresh_url,
        return_url=return_url,
        type="account_onboarding",
    )
    return account_link.url


def is_account_onboarded(account_id: str) -> bool:
    """Onboarded when charges and payouts are enabled and details were submitted."""
    account = stripe.Account.retrieve(account_id)
    return bool(
        account.get("charges_enabled")
        and account.get("payouts_enabled")
        and account.get("details_submitted")
    )


# =========================================================================
# Webhook verification
# =========================================================================

def verify_stripe_webhook(payload: Union[bytes, str], signature: str) -> Dict[str, Any]:
    """
    Verify the Stripe-Signature header against the raw body and return the
    event as a plain dict.

    Raises:
        ValueError: the payload or signature is invalid
    """
    try:
        stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error(f"[Stripe] Webhook verification failed: {e}")
        raise ValueError("Invalid webhook signature")
    return json.loads(payload)
