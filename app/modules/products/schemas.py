from pydantic import BaseModel, Field, HttpUrl, AliasChoices, field_validator, field_serializer
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import datetime
from decimal import Decimal
from app.common.pagination import Pagination
from app.common.validators import validate_currency_code
from app.modules.products.models import PlanType


class ProductCreate(BaseModel):
    """
    Precio: enviar price_minor_units (centavos) o price_amount (dólares).
    Si llegan ambos, price_minor_units tiene prioridad.
    """
    company_id: UUID
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    image_url: Optional[HttpUrl] = None
    price_amount: Optional[Decimal] = Field(None, gt=0)
    price_minor_units: Optional[int] = Field(None, gt=0)
    currency: str = "USD"
    plan_type: PlanType
    billing_period: Optional[int] = Field(None, gt=0, description="Días (30, 365, ...)")
    trial_days: int = Field(0, ge=0)
    active: bool = True
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v):
        return validate_currency_code(v)


class ProductUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    image_url: Optional[HttpUrl] = None
    price_amount: Optional[Decimal] = Field(None, gt=0)
    price_minor_units: Optional[int] = Field(None, gt=0)
    currency: Optional[str] = None
    plan_type: Optional[PlanType] = None
    billing_period: Optional[int] = Field(None, gt=0)
    trial_days: Optional[int] = Field(None, ge=0)
    active: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v):
        if v is None:
            return v
        return validate_currency_code(v)


class ProductOut(BaseModel):
    id: UUID
    company_id: UUID
    title: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    price_amount: Decimal
    price_minor_units: int
    currency: str
    plan_type: str
    billing_period: Optional[int] = None
    trial_days: int
    active: bool
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: datetime
    updated_at: datetime

    @field_serializer("price_amount")
    def serialize_price_amount(self, price_amount: Decimal):
        return float(price_amount)

    class Config:
        from_attributes = True


class ProductWithCountOut(ProductOut):
    membership_count: int = 0


class ProductListResponse(BaseModel):
    products: List[ProductWithCountOut]
    pagination: Pagination


class ProductDeleteResponse(BaseModel):
    message: str
    product: ProductOut
