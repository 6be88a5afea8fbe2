from sqlalchemy import Column, String, Integer, Numeric, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from enum import Enum
from app.database.database import Base
from app.common.mixins import BaseMixin, JSONType


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class CheckoutMode(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"


class CheckoutStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"


class Payment(Base, BaseMixin):
    __tablename__ = "payments"

    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)
    membership_id = Column(UUID(as_uuid=True), ForeignKey("memberships.id"), nullable=True)

    amount = Column(Numeric(10, 2), nullable=False)
    amount_minor_units = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)

    stripe_payment_intent_id = Column(String, unique=True, nullable=True)
    stripe_charge_id = Column(String, nullable=True)
    platform_fee_amount = Column(Numeric(10, 2), nullable=True)
    platform_fee_minor_units = Column(Integer, nullable=True)

    checkout_metadata = Column(JSONType, nullable=True)
    metadata_ = Column("metadata", JSONType, nullable=True)

    membership = relationship("Membership")


class CheckoutSession(Base, BaseMixin):
    __tablename__ = "checkout_sessions"

    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    stripe_session_id = Column(String, unique=True, nullable=False, index=True)
    idempotency_key = Column(String, unique=True, nullable=False)
    mode = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=CheckoutStatus.OPEN.value)
    url = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)

    product = relationship("Product")
