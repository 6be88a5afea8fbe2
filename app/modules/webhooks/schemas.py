from pydantic import BaseModel, Field, HttpUrl, field_validator
from typing import Optional, List, Any
from uuid import UUID
from datetime import datetime
from app.common.pagination import Pagination
from app.modules.webhooks.events import SUBSCRIBABLE_EVENTS


def _validate_events(events: Optional[List[str]]) -> Optional[List[str]]:
    if events is None:
        return events
    invalid = [event for event in events if event not in SUBSCRIBABLE_EVENTS]
    if invalid:
        raise ValueError(f"Unsupported events: {', '.join(invalid)}")
    # Orden estable y sin duplicados
    return list(dict.fromkeys(events))


class WebhookCreate(BaseModel):
    company_id: UUID
    url: HttpUrl
    events: List[str] = Field(..., min_length=1)
    api_version: str = Field("v1", max_length=10)
    active: bool = True

    @field_validator("events")
    @classmethod
    def validate_events(cls, v):
        return _validate_events(v)


class WebhookUpdate(BaseModel):
    url: Optional[HttpUrl] = None
    events: Optional[List[str]] = Field(None, min_length=1)
    api_version: Optional[str] = Field(None, max_length=10)
    active: Optional[bool] = None

    @field_validator("events")
    @classmethod
    def validate_events(cls, v):
        return _validate_events(v)


class WebhookOut(BaseModel):
    id: UUID
    company_id: UUID
    url: str
    events: List[str]
    api_version: str
    secret: str
    active: bool
    created_at: datetime
    updated_at: datetime
    delivery_count: int = 0

    class Config:
        from_attributes = True


class WebhookCreateResponse(WebhookOut):
    warning: str


class WebhookListResponse(BaseModel):
    webhooks: List[WebhookOut]
    pagination: Pagination


class WebhookDeleteResponse(BaseModel):
    message: str
    id: UUID


class WebhookDeliveryOut(BaseModel):
    id: UUID
    webhook_id: UUID
    event_id: str
    event_type: str
    event_data: Any
    status: str
    attempts: int
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class WebhookDeliveryListResponse(BaseModel):
    deliveries: List[WebhookDeliveryOut]
    pagination: Pagination
