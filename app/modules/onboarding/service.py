"""
Onboarding de sub-merchants en Stripe Connect (cuentas Express).
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.modules.company.models import Company, CompanyStatus
from app.modules.company.schemas import CompanyOut
from app.modules.payments import stripe_client
from app.modules.onboarding.schemas import OnboardingLinkResponse, OnboardingStatusResponse
from app.modules.webhooks.events import trigger_webhook, WebhookEvents

logger = logging.getLogger(__name__)

ONBOARDING_LINK_TTL = timedelta(hours=24)


def onboarding_urls(company_id: UUID):
    """(refresh_url, return_url) del flujo de onboarding."""
    base = f"{settings.BASE_URL}/dashboard/{company_id}/onboarding/stripe"
    return f"{base}/refresh", f"{base}/complete"


def _get_company(db: Session, company_id: UUID) -> Company:
    company = db.query(Company).filter(Company.id == company_id).first()
    if company is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Company not found")
    return company


def create_onboarding(db: Session, company_id: UUID) -> OnboardingLinkResponse:
    """
    Crea la cuenta Express (si no existe) y un link de onboarding de 24 h.
    Si la cuenta ya existe pero no terminó el KYC, solo se genera un link nuevo.
    """
    company = _get_company(db, company_id)
    refresh_url, return_url = onboarding_urls(company.id)
    expires_at = datetime.now(timezone.utc) + ONBOARDING_LINK_TTL

    if company.stripe_account_id:
        if company.stripe_onboarded:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Company already onboarded to Stripe"
            )
        account_id = company.stripe_account_id
        onboarding_url = stripe_client.create_onboarding_link(account_id, refresh_url, return_url)
        company.onboarding_link_expires_at = expires_at
    else:
        account = stripe_client.create_connect_account(
            company_id=str(company.id),
            email=company.email,
            business_name=company.title,
        )
        account_id = account.id
        onboarding_url = stripe_client.create_onboarding_link(account_id, refresh_url, return_url)
        company.stripe_account_id = account_id
        company.stripe_onboarded = False
        company.onboarding_link_expires_at = expires_at
        company.status = CompanyStatus.PENDING_KYC.value
        logger.info(f"[Stripe Onboarding] Account {account_id} created for company {company.id}")

    db.commit()
    return OnboardingLinkResponse(
        success=True,
        onboarding_url=onboarding_url,
        account_id=account_id,
        expires_at=expires_at,
    )


def get_onboarding_status(db: Session, company_id: Optional[UUID]) -> OnboardingStatusResponse:
    if not company_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="companyId is required")

    company = _get_company(db, company_id)
    if not company.stripe_account_id:
        return OnboardingStatusResponse(onboarded=False, status="not_started")

    onboarded = stripe_client.is_account_onboarded(company.stripe_account_id)

    if onboarded and not company.stripe_onboarded:
        company.stripe_onboarded = True
        company.onboarding_completed = True
        company.status = CompanyStatus.ACTIVE.value
        db.commit()
        db.refresh(company)
        logger.info(f"[Stripe Onboarding] Company {company.id} completed onboarding")
        trigger_webhook(
            db, company.id, WebhookEvents.COMPANY_ONBOARDED,
            {"company": CompanyOut.model_validate(company).model_dump(mode="json")}
        )

    return OnboardingStatusResponse(
        onboarded=onboarded,
        status="complete" if onboarded else "pending",
        stripe_account_id=company.stripe_account_id,
    )
