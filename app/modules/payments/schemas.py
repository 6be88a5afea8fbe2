from pydantic import BaseModel, Field, EmailStr, HttpUrl, AliasChoices, field_serializer
from typing import Optional, Dict, Any
from uuid import UUID
from datetime import datetime
from decimal import Decimal


class CheckoutCreate(BaseModel):
    """Acepta camelCase (productId) y snake_case (product_id)."""
    product_id: UUID = Field(..., validation_alias=AliasChoices("productId", "product_id"))
    company_id: UUID = Field(..., validation_alias=AliasChoices("companyId", "company_id"))
    customer_email: Optional[EmailStr] = Field(
        None, validation_alias=AliasChoices("customerEmail", "customer_email")
    )
    success_url: HttpUrl = Field(..., validation_alias=AliasChoices("successUrl", "success_url"))
    cancel_url: HttpUrl = Field(..., validation_alias=AliasChoices("cancelUrl", "cancel_url"))
    metadata: Optional[Dict[str, str]] = None


class CheckoutResponse(BaseModel):
    success: bool = True
    checkout_url: Optional[str] = None
    session_id: str


class PaymentOut(BaseModel):
    id: UUID
    company_id: UUID
    user_id: Optional[UUID] = None
    membership_id: Optional[UUID] = None
    amount: Decimal
    amount_minor_units: int
    currency: str
    status: str
    stripe_payment_intent_id: Optional[str] = None
    stripe_charge_id: Optional[str] = None
    platform_fee_minor_units: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: datetime

    @field_serializer("amount")
    def serialize_amount(self, amount: Decimal):
        return float(amount)

    class Config:
        from_attributes = True


class StripeWebhookResponse(BaseModel):
    received: bool = True
