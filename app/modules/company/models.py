from app.database.database import Base
from app.common.mixins import TimestampMixin, BaseMixin, JSONType
from sqlalchemy import Column, String, Boolean, DateTime, Numeric, Text
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from enum import Enum
import uuid


class CompanyType(str, Enum):
    PLATFORM = "platform"
    SUB_MERCHANT = "sub_merchant"


class CompanyStatus(str, Enum):
    ACTIVE = "active"
    PENDING_KYC = "pending_kyc"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class PayoutFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Company(Base, TimestampMixin):
    __tablename__ = "companies"

    id = Column(UUID(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    title = Column(String(255), nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    slug = Column(String, unique=True, nullable=False, index=True)
    type = Column(String(20), nullable=False, default=CompanyType.SUB_MERCHANT.value)
    status = Column(String(20), nullable=False, default=CompanyStatus.ACTIVE.value)
    logo_url = Column(String, nullable=True)
    website_url = Column(String, nullable=True)
    description = Column(Text, nullable=True)

    # Platform fee and payouts
    platform_fee_percent = Column(Numeric(5, 2), nullable=False, default=5.0)
    payout_minimum_amount = Column(Numeric(10, 2), nullable=False, default=50.0)
    payout_frequency = Column(String(20), nullable=False, default=PayoutFrequency.WEEKLY.value)

    # Stripe Connect
    stripe_account_id = Column(String, unique=True, nullable=True)
    stripe_onboarded = Column(Boolean, default=False, nullable=False)
    onboarding_link_expires_at = Column(DateTime(timezone=True), nullable=True)
    onboarding_completed = Column(Boolean, default=False, nullable=False)

    metadata_ = Column("metadata", JSONType, nullable=True)

    company_users = relationship("CompanyUser", back_populates="company")


class App(Base, BaseMixin):
    """App/experience installed by a company."""
    __tablename__ = "apps"

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    base_url = Column(String, nullable=True)
    active = Column(Boolean, default=True, nullable=False)
