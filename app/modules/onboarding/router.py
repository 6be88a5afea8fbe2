import logging
from typing import Optional
from uuid import UUID
import stripe
from fastapi import APIRouter, HTTPException, Query, status

from app.dependencies.dbDependecies import db_dependency
from app.modules.onboarding import service
from app.modules.onboarding.schemas import (
    OnboardingCreate, OnboardingLinkResponse, OnboardingStatusResponse
)

logger = logging.getLogger(__name__)

onboarding_router = APIRouter()


@onboarding_router.post("/create", response_model=OnboardingLinkResponse)
def create_onboarding(data: OnboardingCreate, db: db_dependency):
    """Crear cuenta Stripe Connect Express y devolver el link de KYC."""
    try:
        return service.create_onboarding(db, data.company_id)
    except HTTPException:
        raise
    except stripe.StripeError as e:
        db.rollback()
        logger.error(f"[Stripe Onboarding] Stripe error: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment provider error")
    except Exception as e:
        db.rollback()
        logger.error(f"[Stripe Onboarding] Error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create Stripe onboarding"
        )


@onboarding_router.get("/status", response_model=OnboardingStatusResponse)
def onboarding_status(
    db: db_dependency,
    company_id: Optional[UUID] = Query(None, alias="companyId")
):
    try:
        return service.get_onboarding_status(db, company_id)
    except HTTPException:
        raise
    except stripe.StripeError as e:
        logger.error(f"[Stripe Onboarding] Stripe error: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment provider error")
    except Exception as e:
        logger.error(f"[Stripe Onboarding] Status error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to check onboarding status"
        )
