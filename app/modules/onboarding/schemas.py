from pydantic import BaseModel, Field, AliasChoices
from typing import Optional
from uuid import UUID
from datetime import datetime


class OnboardingCreate(BaseModel):
    company_id: UUID = Field(..., validation_alias=AliasChoices("companyId", "company_id"))


class OnboardingLinkResponse(BaseModel):
    success: bool = True
    onboarding_url: str
    account_id: str
    expires_at: datetime


class OnboardingStatusResponse(BaseModel):
    onboarded: bool
    status: str
    stripe_account_id: Optional[str] = None
