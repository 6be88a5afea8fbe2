from sqlalchemy import Column, String, Boolean, Integer, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from enum import Enum
from app.database.database import Base
from app.common.mixins import BaseMixin, JSONType


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"
    TRIALING = "trialing"


class Membership(Base, BaseMixin):
    __tablename__ = "memberships"

    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=MembershipStatus.ACTIVE.value, index=True)

    stripe_subscription_id = Column(String, unique=True, nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    metadata_ = Column("metadata", JSONType, nullable=True)

    # Relationships
    user = relationship("User")
    product = relationship("Product", back_populates="memberships")
    license_keys = relationship("LicenseKey", back_populates="membership", cascade="all, delete-orphan")


class LicenseKey(Base, BaseMixin):
    __tablename__ = "license_keys"

    membership_id = Column(UUID(as_uuid=True), ForeignKey("memberships.id"), nullable=False, index=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    key = Column(String(64), unique=True, nullable=False, index=True)
    active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    max_activations = Column(Integer, nullable=False, default=1)
    current_activations = Column(Integer, nullable=False, default=0)
    last_validated_at = Column(DateTime(timezone=True), nullable=True)
    # hardware_id, device_name, last_ip, last_validated
    metadata_ = Column("metadata", JSONType, nullable=True)

    # Relationships
    membership = relationship("Membership", back_populates="license_keys")
    product = relationship("Product")
    user = relationship("User")
