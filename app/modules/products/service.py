import logging
from typing import Optional
from uuid import UUID
from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.common.pagination import build_pagination
from app.common.tenancy import run_in_tenant_context, without_tenant_isolation
from app.modules.auth.models import User, CompanyRole
from app.modules.auth.dependencies import check_company_access, require_company_access
from app.modules.memberships.models import Membership, MembershipStatus
from app.modules.payments.stripe_client import to_cents, to_dollars
from app.modules.products.models import Product
from app.modules.products.schemas import (
    ProductCreate, ProductUpdate, ProductOut, ProductWithCountOut,
    ProductListResponse, ProductDeleteResponse
)
from app.modules.webhooks.events import trigger_webhook, WebhookEvents

logger = logging.getLogger(__name__)


def resolve_price(price_amount=None, price_minor_units: Optional[int] = None):
    """
    (price_amount, price_minor_units) consistentes.
    price_minor_units gana; si solo llega price_amount se convierte a centavos.
    """
    if price_minor_units is not None:
        return to_dollars(price_minor_units), price_minor_units
    if price_amount is not None:
        minor_units = to_cents(price_amount)
        return to_dollars(minor_units), minor_units
    return None, None


def _membership_count(db: Session, product_id: UUID) -> int:
    return db.query(func.count(Membership.id)).filter(
        Membership.product_id == product_id
    ).scalar() or 0


def _with_count(db: Session, product: Product) -> ProductWithCountOut:
    return ProductWithCountOut(
        **ProductOut.model_validate(product).model_dump(),
        membership_count=_membership_count(db, product.id),
    )


def _get_product_with_access(db: Session, product_id: UUID, user: User):
    """Producto + relación del usuario con su compañía (404 / 403)."""
    with without_tenant_isolation():
        product = db.query(Product).filter(Product.id == product_id).first()
    if product is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")

    company_user = check_company_access(db, user.id, product.company_id)
    if company_user is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this product"
        )
    return product, company_user


def list_products(
    db: Session,
    user: User,
    company_id: Optional[UUID],
    active: Optional[bool],
    limit: int,
    offset: int
) -> ProductListResponse:
    """
    Productos de una compañía, más recientes primero.
    """
    if not company_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="company_id is required")

    require_company_access(db, user.id, company_id, detail="You do not have access to this company")

    with run_in_tenant_context(company_id, user.id):
        query = db.query(Product)
        count_query = db.query(func.count(Product.id))
        if active:
            query = query.filter(Product.active == True)  # noqa: E712
            count_query = count_query.filter(Product.active == True)  # noqa: E712

        total = count_query.scalar() or 0
        products = query.order_by(Product.created_at.desc()).offset(offset).limit(limit).all()
        items = [_with_count(db, product) for product in products]

    return ProductListResponse(products=items, pagination=build_pagination(total, limit, offset))


def create_product(db: Session, data: ProductCreate, user: User) -> ProductOut:
    require_company_access(
        db, user.id, data.company_id, CompanyRole.ADMIN.value,
        detail="You do not have permission to create products for this company"
    )

    price_amount, price_minor_units = resolve_price(data.price_amount, data.price_minor_units)
    if price_minor_units is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Either price_amount or price_minor_units is required"
        )

    with run_in_tenant_context(data.company_id, user.id):
        product = Product(
            title=data.title,
            description=data.description,
            image_url=str(data.image_url) if data.image_url else None,
            price_amount=price_amount,
            price_minor_units=price_minor_units,
            currency=data.currency,
            plan_type=data.plan_type.value,
            billing_period=data.billing_period,
            trial_days=data.trial_days,
            active=data.active,
            metadata_=data.metadata,
        )
        db.add(product)
        db.commit()
        db.refresh(product)
        created = ProductOut.model_validate(product)

    logger.info(f"Product {product.id} created for company {data.company_id}")
    trigger_webhook(db, data.company_id, WebhookEvents.PRODUCT_CREATED, {"product": created.model_dump(mode="json")})
    return created


def get_product(db: Session, product_id: UUID, user: User) -> ProductWithCountOut:
    product, _ = _get_product_with_access(db, product_id, user)
    with run_in_tenant_context(product.company_id, user.id):
        return _with_count(db, product)


def update_product(db: Session, product_id: UUID, data: ProductUpdate, user: User) -> ProductOut:
    product, company_user = _get_product_with_access(db, product_id, user)
    if company_user.role not in (CompanyRole.OWNER.value, CompanyRole.ADMIN.value):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to update this product"
        )

    update_data = data.model_dump(exclude_unset=True)
    company_id = product.company_id

    with run_in_tenant_context(company_id, user.id):
        price_amount, price_minor_units = resolve_price(
            update_data.get("price_amount"), update_data.get("price_minor_units")
        )
        if price_minor_units is not None:
            product.price_amount = price_amount
            product.price_minor_units = price_minor_units

        for field in ("title", "currency", "trial_days", "active"):
            if update_data.get(field) is not None:
                setattr(product, field, update_data[field])
        for field in ("description", "billing_period"):
            if field in update_data:
                setattr(product, field, update_data[field])
        if "image_url" in update_data:
            product.image_url = str(data.image_url) if data.image_url else None
        if update_data.get("plan_type") is not None:
            product.plan_type = data.plan_type.value
        if "metadata" in update_data:
            product.metadata_ = update_data["metadata"]

        db.commit()
        db.refresh(product)
        updated = ProductOut.model_validate(product)

    trigger_webhook(
        db, company_id, WebhookEvents.PRODUCT_UPDATED,
        {"product": updated.model_dump(mode="json"), "updated_fields": sorted(update_data.keys())}
    )
    return updated


def delete_product(db: Session, product_id: UUID, user: User) -> ProductDeleteResponse:
    """
    Soft delete (active=false). Solo el owner; falla si hay membresías activas.
    """
    product, company_user = _get_product_with_access(db, product_id, user)
    if company_user.role != CompanyRole.OWNER.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only company owners can delete products"
        )

    company_id = product.company_id
    with run_in_tenant_context(company_id, user.id):
        active_memberships = db.query(func.count(Membership.id)).filter(
            Membership.product_id == product.id,
            Membership.status == MembershipStatus.ACTIVE.value
        ).scalar() or 0
        if active_memberships:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Cannot delete product with active memberships"
            )

        product.active = False
        db.commit()
        db.refresh(product)
        deleted = ProductOut.model_validate(product)

    logger.info(f"Product {product_id} deactivated by user {user.id}")
    trigger_webhook(db, company_id, WebhookEvents.PRODUCT_DELETED, {"product": deleted.model_dump(mode="json")})
    return ProductDeleteResponse(message="Product deleted successfully", product=deleted)
