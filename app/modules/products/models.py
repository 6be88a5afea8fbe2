from sqlalchemy import Column, String, Text, Boolean, Integer, Numeric
from sqlalchemy.orm import relationship
from enum import Enum
from app.database.database import Base
from app.common.mixins import BaseMixin, JSONType


class PlanType(str, Enum):
    ONE_TIME = "one_time"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Product(Base, BaseMixin):
    __tablename__ = "products"

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    image_url = Column(String, nullable=True)

    # Precio: price_minor_units es la fuente de verdad (centavos)
    price_amount = Column(Numeric(10, 2), nullable=False)
    price_minor_units = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    plan_type = Column(String(20), nullable=False, default=PlanType.ONE_TIME.value)
    billing_period = Column(Integer, nullable=True)  # days
    trial_days = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True, index=True)
    metadata_ = Column("metadata", JSONType, nullable=True)

    # Relationships
    memberships = relationship("Membership", back_populates="product")
