from pydantic import BaseModel, Field, AliasChoices, field_serializer
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import datetime
from decimal import Decimal
from app.common.pagination import Pagination
from app.modules.memberships.models import MembershipStatus


class MembershipProductOut(BaseModel):
    id: UUID
    title: str
    price_amount: Decimal
    currency: str
    plan_type: str

    @field_serializer("price_amount")
    def serialize_price_amount(self, price_amount: Decimal):
        return float(price_amount)

    class Config:
        from_attributes = True


class MembershipUserOut(BaseModel):
    id: UUID
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None

    class Config:
        from_attributes = True


class MembershipOut(BaseModel):
    id: UUID
    company_id: UUID
    user_id: UUID
    product_id: UUID
    status: str
    stripe_subscription_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class MembershipDetailOut(MembershipOut):
    product: Optional[MembershipProductOut] = None
    user: Optional[MembershipUserOut] = None


class MembershipListResponse(BaseModel):
    memberships: List[MembershipDetailOut]
    pagination: Pagination


class MembershipUpdate(BaseModel):
    """
    status y metadata: solo admins de la compañía.
    cancel_at: dueño de la membresía o admins; null explícito cancela ya.
    """
    status: Optional[MembershipStatus] = None
    cancel_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class LicenseKeyCreate(BaseModel):
    max_activations: int = Field(1, ge=1)
    expires_at: Optional[datetime] = None


class LicenseKeyOut(BaseModel):
    id: UUID
    company_id: UUID
    membership_id: UUID
    product_id: UUID
    user_id: UUID
    key: str
    active: bool
    expires_at: Optional[datetime] = None
    max_activations: int
    current_activations: int
    last_validated_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class LicenseKeyListResponse(BaseModel):
    license_keys: List[LicenseKeyOut]


class LicenseValidationRequest(BaseModel):
    hardware_id: str = Field(..., min_length=1)
    device_name: Optional[str] = None
    ip_address: Optional[str] = None


class LicenseProductInfo(BaseModel):
    id: UUID
    title: str
    description: Optional[str] = None

    class Config:
        from_attributes = True


class LicenseUserInfo(BaseModel):
    id: UUID
    email: str
    username: Optional[str] = None

    class Config:
        from_attributes = True


class LicenseActivations(BaseModel):
    current: int
    max: int


class LicenseValidationResponse(BaseModel):
    valid: bool = True
    product: LicenseProductInfo
    user: LicenseUserInfo
    expires_at: Optional[datetime] = None
    activations: LicenseActivations
