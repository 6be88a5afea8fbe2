import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID
from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.common.pagination import build_pagination
from app.common.tenancy import run_in_tenant_context, without_tenant_isolation
from app.common.validators import slugify_title
from app.modules.auth.models import User, CompanyUser, CompanyRole
from app.modules.auth.dependencies import check_company_access, require_company_access
from app.modules.company.models import Company, App, CompanyStatus
from app.modules.company.schemas import (
    CompanyCreate, CompanyUpdate, CompanyOut, CompanyWithRoleOut, CompanyCounts,
    CompanyListResponse, CompanyStats, RecentPayment, TeamMember
)
from app.modules.memberships.models import Membership, MembershipStatus
from app.modules.payments.models import Payment, PaymentStatus
from app.modules.products.models import Product
from app.modules.webhooks.models import Webhook
from app.modules.webhooks.events import trigger_webhook, WebhookEvents

logger = logging.getLogger(__name__)


def generate_unique_slug(db: Session, title: str) -> str:
    """
    Slug a partir del título; si ya existe se agrega -1, -2, ...
    """
    base_slug = slugify_title(title) or "company"
    slug = base_slug
    counter = 1
    while db.query(Company.id).filter(Company.slug == slug).first():
        slug = f"{base_slug}-{counter}"
        counter += 1
    return slug


def get_company_counts(db: Session, company_id: UUID) -> CompanyCounts:
    """Conteos de recursos de la compañía; el contexto de tenant filtra cada consulta."""
    with run_in_tenant_context(company_id):
        return CompanyCounts(
            products=db.query(func.count(Product.id)).scalar() or 0,
            memberships=db.query(func.count(Membership.id)).scalar() or 0,
            payments=db.query(func.count(Payment.id)).scalar() or 0,
            users=db.query(func.count(CompanyUser.id)).scalar() or 0,
            apps=db.query(func.count(App.id)).scalar() or 0,
            webhooks=db.query(func.count(Webhook.id)).scalar() or 0,
        )


def _with_role(db: Session, company: Company, role: str) -> CompanyWithRoleOut:
    return CompanyWithRoleOut(
        **CompanyOut.model_validate(company).model_dump(),
        user_role=role,
        counts=get_company_counts(db, company.id),
    )


def list_companies(
    db: Session,
    user: User,
    role: Optional[str],
    company_type: Optional[str],
    limit: int,
    offset: int
) -> CompanyListResponse:
    """
    Compañías del usuario a través de su relación CompanyUser.
    """
    with without_tenant_isolation():
        query = db.query(CompanyUser, Company).join(
            Company, Company.id == CompanyUser.company_id
        ).filter(CompanyUser.user_id == user.id)
        count_query = db.query(func.count(CompanyUser.id)).join(
            Company, Company.id == CompanyUser.company_id
        ).filter(CompanyUser.user_id == user.id)

        if role:
            query = query.filter(CompanyUser.role == role)
            count_query = count_query.filter(CompanyUser.role == role)
        if company_type:
            query = query.filter(Company.type == company_type)
            count_query = count_query.filter(Company.type == company_type)

        total = count_query.scalar() or 0
        rows = query.order_by(CompanyUser.created_at.desc()).offset(offset).limit(limit).all()

    companies = [_with_role(db, company, company_user.role) for company_user, company in rows]
    return CompanyListResponse(companies=companies, pagination=build_pagination(total, limit, offset))


def create_company(db: Session, company_data: CompanyCreate, current_user: User) -> CompanyOut:
    """
    Crear compañía; el usuario que la crea queda como owner.
    """
    if db.query(Company.id).filter(Company.email == company_data.email).first():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A company with this email already exists"
        )

    company = Company(
        title=company_data.title,
        email=company_data.email,
        slug=generate_unique_slug(db, company_data.title),
        type=company_data.type.value,
        status=CompanyStatus.ACTIVE.value,
        logo_url=str(company_data.logo_url) if company_data.logo_url else None,
        website_url=str(company_data.website_url) if company_data.website_url else None,
        description=company_data.description,
        platform_fee_percent=company_data.platform_fee_percent,
        payout_minimum_amount=company_data.payout_minimum_amount,
        payout_frequency=company_data.payout_frequency.value,
        metadata_=company_data.metadata,
    )
    db.add(company)
    db.flush()

    with run_in_tenant_context(company.id, current_user.id):
        db.add(CompanyUser(user_id=current_user.id, role=CompanyRole.OWNER.value))
        db.commit()

    db.refresh(company)
    logger.info(f"Company {company.id} created by user {current_user.id}")
    return CompanyOut.model_validate(company)


def get_company(db: Session, company_id: UUID, current_user: User) -> CompanyWithRoleOut:
    company_user = check_company_access(db, current_user.id, company_id)
    if company_user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Company not found or you do not have access"
        )
    company = db.query(Company).filter(Company.id == company_id).first()
    return _with_role(db, company, company_user.role)


def update_company(db: Session, company_id: UUID, data: CompanyUpdate, current_user: User) -> CompanyOut:
    """
    Actualizar compañía.

    - Solo owner o admin pueden modificar
    - El email debe seguir siendo único
    - Solo el owner puede cambiar el status
    """
    company_user = check_company_access(db, current_user.id, company_id)
    if company_user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Company not found or you do not have access"
        )
    if company_user.role not in (CompanyRole.OWNER.value, CompanyRole.ADMIN.value):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to update this company"
        )

    company = db.query(Company).filter(Company.id == company_id).first()
    update_data = data.model_dump(exclude_unset=True)

    if update_data.get("email") and update_data["email"] != company.email:
        taken = db.query(Company.id).filter(
            Company.email == update_data["email"],
            Company.id != company.id
        ).first()
        if taken:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="A company with this email already exists"
            )

    if update_data.get("status") is not None and company_user.role != CompanyRole.OWNER.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only company owners can change company status"
        )

    for field in ("title", "email", "platform_fee_percent", "payout_minimum_amount"):
        if field in update_data and update_data[field] is not None:
            setattr(company, field, update_data[field])
    if "description" in update_data:
        company.description = update_data["description"]
    for field in ("logo_url", "website_url"):
        if field in update_data:
            value = getattr(data, field)
            setattr(company, field, str(value) if value else None)
    if update_data.get("payout_frequency") is not None:
        company.payout_frequency = data.payout_frequency.value
    if update_data.get("status") is not None:
        company.status = data.status.value
    if "metadata" in update_data:
        company.metadata_ = update_data["metadata"]

    db.commit()
    db.refresh(company)

    updated = CompanyOut.model_validate(company)
    trigger_webhook(
        db, company.id, WebhookEvents.COMPANY_UPDATED,
        {"company": updated.model_dump(mode="json"), "updated_fields": sorted(update_data.keys())}
    )
    return updated


def get_company_stats(db: Session, company_id: UUID, current_user: User) -> CompanyStats:
    """
    Resumen para el dashboard: conteos, ingresos de los últimos 30 días,
    últimos 10 pagos y equipo.
    """
    require_company_access(db, current_user.id, company_id)
    since = datetime.now(timezone.utc) - timedelta(days=30)

    with run_in_tenant_context(company_id, current_user.id):
        products = db.query(func.count(Product.id)).scalar() or 0
        memberships = db.query(func.count(Membership.id)).scalar() or 0
        active_memberships = db.query(func.count(Membership.id)).filter(
            Membership.status == MembershipStatus.ACTIVE.value
        ).scalar() or 0
        succeeded_payments = db.query(func.count(Payment.id)).filter(
            Payment.status == PaymentStatus.SUCCEEDED.value
        ).scalar() or 0

        revenue, fees, payments_30d = db.query(
            func.coalesce(func.sum(Payment.amount), 0),
            func.coalesce(func.sum(Payment.platform_fee_amount), 0),
            func.count(Payment.id),
        ).filter(
            Payment.status == PaymentStatus.SUCCEEDED.value,
            Payment.created_at >= since
        ).one()

        recent_payments = db.query(Payment).order_by(Payment.created_at.desc()).limit(10).all()
        team = db.query(CompanyUser).all()

        recent = [RecentPayment.model_validate(payment) for payment in recent_payments]
        team_members = [
            TeamMember(
                user_id=member.user.id,
                email=member.user.email,
                name=member.user.name,
                avatar_url=member.user.avatar_url,
                role=member.role,
            )
            for member in team
        ]

    revenue = float(revenue or 0)
    fees = float(fees or 0)
    return CompanyStats(
        company_id=company_id,
        products=products,
        active_memberships=active_memberships,
        memberships=memberships,
        succeeded_payments=succeeded_payments,
        revenue_30d=revenue,
        platform_fees_30d=fees,
        net_revenue_30d=round(revenue - fees, 2),
        payments_30d=payments_30d or 0,
        recent_payments=recent,
        team_members=team_members,
    )
