from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging

# Import database components
from app.database.database import sync_engine, Base

# Import middleware
from app.common.middleware import SecurityHeadersMiddleware, RateLimitMiddleware, SessionAuthMiddleware

# Import routers
from app.modules.auth.router import auth_router
from app.modules.company.router import company_router
from app.modules.products.router import product_router
from app.modules.memberships.router import membership_router
from app.modules.payments.router import checkout_router, stripe_webhook_router
from app.modules.onboarding.router import onboarding_router
from app.modules.webhooks.router import webhook_router
from app.modules.docs.router import docs_router

# Import models for table creation
import app.modules.auth.models
import app.modules.company.models
import app.modules.products.models
import app.modules.memberships.models
import app.modules.payments.models
import app.modules.webhooks.models

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Whop SaaS API",
    description="Multi-tenant marketplace API: companies, products, memberships, Stripe Connect payments, license keys and webhooks",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters! the last one added runs first)
app.add_middleware(SessionAuthMiddleware)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=1000)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.BASE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth_router, prefix="/api/auth", tags=["Auth"])
app.include_router(company_router, prefix="/api/companies", tags=["Companies"])
app.include_router(product_router, prefix="/api/products", tags=["Products"])
app.include_router(membership_router, prefix="/api/memberships", tags=["Memberships"])
app.include_router(checkout_router, prefix="/api/checkout", tags=["Checkout"])
app.include_router(onboarding_router, prefix="/api/onboarding/stripe", tags=["Onboarding"])
# Stripe receiver before the subscriptions API so /stripe is not taken as a webhook id
app.include_router(stripe_webhook_router, prefix="/api/webhooks", tags=["Stripe"])
app.include_router(webhook_router, prefix="/api/webhooks", tags=["Webhooks"])
app.include_router(docs_router, prefix="/api", tags=["Docs"])

# Create database tables (only for development - no migrations yet)
if settings.ENVIRONMENT == "development":
    Base.metadata.create_all(bind=sync_engine)


@app.get("/")
async def read_root():
    return {
        "message": "Whop SaaS API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    logger.info("Whop SaaS API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Whop SaaS API shutting down...")
