from sqlalchemy import Column, String, Boolean, Integer, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from enum import Enum
from app.database.database import Base
from app.common.mixins import BaseMixin, JSONType


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class Webhook(Base, BaseMixin):
    __tablename__ = "webhooks"

    url = Column(String, nullable=False)
    events = Column(JSONType, nullable=False, default=list)
    api_version = Column(String(10), nullable=False, default="v1")
    secret = Column(String, nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    deliveries = relationship("WebhookDelivery", back_populates="webhook", cascade="all, delete-orphan")


class WebhookDelivery(Base, BaseMixin):
    __tablename__ = "webhook_deliveries"

    webhook_id = Column(UUID(as_uuid=True), ForeignKey("webhooks.id"), nullable=False, index=True)
    event_id = Column(String, nullable=False)
    event_type = Column(String(64), nullable=False)
    event_data = Column(JSONType, nullable=False)
    status = Column(String(20), nullable=False, default=DeliveryStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    webhook = relationship("Webhook", back_populates="deliveries")

    __table_args__ = (
        UniqueConstraint("webhook_id", "event_id", name="uq_webhook_delivery_event"),
    )
