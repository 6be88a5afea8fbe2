from pydantic import BaseModel, EmailStr, Field, HttpUrl, AliasChoices, field_serializer
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import datetime
from decimal import Decimal
from app.common.pagination import Pagination
from app.modules.company.models import CompanyType, CompanyStatus, PayoutFrequency


class CompanyCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    type: CompanyType = CompanyType.SUB_MERCHANT
    logo_url: Optional[HttpUrl] = None
    website_url: Optional[HttpUrl] = None
    description: Optional[str] = None
    platform_fee_percent: float = Field(5.0, ge=0, le=100)
    payout_minimum_amount: float = Field(50.0, ge=0)
    payout_frequency: PayoutFrequency = PayoutFrequency.WEEKLY
    metadata: Optional[Dict[str, Any]] = None


class CompanyUpdate(BaseModel):
    """Campos omitidos no se modifican; null limpia los campos opcionales."""
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    logo_url: Optional[HttpUrl] = None
    website_url: Optional[HttpUrl] = None
    description: Optional[str] = None
    platform_fee_percent: Optional[float] = Field(None, ge=0, le=100)
    payout_minimum_amount: Optional[float] = Field(None, ge=0)
    payout_frequency: Optional[PayoutFrequency] = None
    status: Optional[CompanyStatus] = None
    metadata: Optional[Dict[str, Any]] = None


class CompanyCounts(BaseModel):
    products: int = 0
    memberships: int = 0
    payments: int = 0
    users: int = 0
    apps: int = 0
    webhooks: int = 0


class CompanyOut(BaseModel):
    id: UUID
    title: str
    email: str
    slug: str
    type: str
    status: str
    logo_url: Optional[str] = None
    website_url: Optional[str] = None
    description: Optional[str] = None
    platform_fee_percent: float
    payout_minimum_amount: float
    payout_frequency: str
    stripe_account_id: Optional[str] = None
    stripe_onboarded: bool
    onboarding_completed: bool
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CompanyWithRoleOut(CompanyOut):
    user_role: str
    counts: CompanyCounts


class CompanyListResponse(BaseModel):
    companies: List[CompanyWithRoleOut]
    pagination: Pagination


class RecentPayment(BaseModel):
    id: UUID
    amount: Decimal
    currency: str
    status: str
    user_id: Optional[UUID] = None
    created_at: datetime

    @field_serializer("amount")
    def serialize_amount(self, amount: Decimal):
        return float(amount)

    class Config:
        from_attributes = True


class TeamMember(BaseModel):
    user_id: UUID
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str


class CompanyStats(BaseModel):
    company_id: UUID
    products: int
    active_memberships: int
    memberships: int
    succeeded_payments: int
    revenue_30d: float
    platform_fees_30d: float
    net_revenue_30d: float
    payments_30d: int
    recent_payments: List[RecentPayment]
    team_members: List[TeamMember]
