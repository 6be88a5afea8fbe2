import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Optional, Mapping
from uuid import UUID
from fastapi import HTTPException, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.common.pagination import build_pagination
from app.common.tenancy import run_in_tenant_context, without_tenant_isolation
from app.common.validators import client_ip_from_headers, ensure_aware
from app.modules.auth.models import User, CompanyRole
from app.modules.auth.dependencies import check_company_access, require_company_access
from app.modules.memberships.models import Membership, MembershipStatus, LicenseKey
from app.modules.memberships.schemas import (
    MembershipOut, MembershipDetailOut, MembershipListResponse, MembershipUpdate,
    LicenseKeyCreate, LicenseKeyOut, LicenseKeyListResponse,
    LicenseValidationRequest, LicenseValidationResponse, LicenseActivations,
    LicenseProductInfo, LicenseUserInfo
)
from app.modules.webhooks.events import trigger_webhook, WebhookEvents

logger = logging.getLogger(__name__)

LICENSE_KEY_ALPHABET = string.ascii_uppercase + string.digits
ADMIN_ROLES = (CompanyRole.OWNER.value, CompanyRole.ADMIN.value)


class LicenseValidationError(Exception):
    """Validación de licencia rechazada; se responde con {valid: false, reason, details}."""

    def __init__(self, status_code: int, reason: str, details: Optional[str] = None):
        super().__init__(reason)
        self.status_code = status_code
        self.reason = reason
        self.details = details


def generate_license_key() -> str:
    """XXXXX-XXXXX-XXXXX-XXXXX con mayúsculas y dígitos."""
    groups = [
        "".join(secrets.choice(LICENSE_KEY_ALPHABET) for _ in range(5))
        for _ in range(4)
    ]
    return "-".join(groups)


def _membership_event_data(membership: Membership) -> dict:
    return {"membership": MembershipOut.model_validate(membership).model_dump(mode="json")}


def _get_membership_with_access(db: Session, membership_id: UUID, user: User):
    """
    Membresía + (es dueño, es admin de la compañía).
    404 si no existe; 403 si no es dueño ni admin.
    """
    with without_tenant_isolation():
        membership = db.query(Membership).filter(Membership.id == membership_id).first()
    if membership is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Membership not found")

    is_owner = membership.user_id == user.id
    is_admin = check_company_access(db, user.id, membership.company_id, CompanyRole.ADMIN.value) is not None

    if not is_owner and not is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this membership"
        )
    return membership, is_owner, is_admin


def list_memberships(
    db: Session,
    user: User,
    company_id: Optional[UUID],
    user_id: Optional[UUID],
    product_id: Optional[UUID],
    membership_status: Optional[MembershipStatus],
    limit: int,
    offset: int
) -> MembershipListResponse:
    """
    Con company_id: membresías de la compañía (el usuario debe pertenecer a ella).
    Sin company_id: solo las membresías del propio usuario.
    """
    is_admin = False
    if company_id:
        company_user = require_company_access(
            db, user.id, company_id, detail="You do not have access to this company"
        )
        is_admin = company_user.role in ADMIN_ROLES

    if user_id and user_id != user.id and not is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only view your own memberships"
        )

    filters = []
    if user_id:
        filters.append(Membership.user_id == user_id)
    elif not company_id:
        filters.append(Membership.user_id == user.id)
    if product_id:
        filters.append(Membership.product_id == product_id)
    if membership_status:
        filters.append(Membership.status == membership_status.value)

    def _query():
        total = db.query(func.count(Membership.id)).filter(*filters).scalar() or 0
        memberships = db.query(Membership).filter(*filters).order_by(
            Membership.created_at.desc()
        ).offset(offset).limit(limit).all()
        return total, [MembershipDetailOut.model_validate(m) for m in memberships]

    if company_id:
        with run_in_tenant_context(company_id, user.id):
            total, items = _query()
    else:
        # Membresías propias en todas las compañías
        with without_tenant_isolation():
            total, items = _query()

    return MembershipListResponse(memberships=items, pagination=build_pagination(total, limit, offset))


def get_membership(db: Session, membership_id: UUID, user: User) -> MembershipDetailOut:
    membership, _, _ = _get_membership_with_access(db, membership_id, user)
    return MembershipDetailOut.model_validate(membership)


def update_membership(db: Session, membership_id: UUID, data: MembershipUpdate, user: User) -> MembershipDetailOut:
    """
    Actualizar estado, cancelación programada o metadata.

    - status / metadata: solo owner/admin de la compañía
    - cancel_at: dueño de la membresía o admins; null explícito cancela ya
    """
    membership, is_owner, is_admin = _get_membership_with_access(db, membership_id, user)
    fields = data.model_fields_set
    now = datetime.now(timezone.utc)

    if "status" in fields and data.status is not None and not is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only company admins can change membership status"
        )
    if "metadata" in fields and not is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only company admins can update membership metadata"
        )
    if "cancel_at" in fields and not (is_owner or is_admin):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to cancel this membership"
        )

    company_id = membership.company_id
    with run_in_tenant_context(company_id, user.id):
        if "status" in fields and data.status is not None:
            membership.status = data.status.value
            if data.status == MembershipStatus.CANCELED:
                membership.canceled_at = now

        if "cancel_at" in fields:
            membership.cancel_at = data.cancel_at
            if data.cancel_at is None:
                membership.status = MembershipStatus.CANCELED.value
                membership.canceled_at = now

        if "metadata" in fields:
            membership.metadata_ = data.metadata

        db.commit()
        db.refresh(membership)
        updated = MembershipDetailOut.model_validate(membership)

    event_type = (
        WebhookEvents.MEMBERSHIP_CANCELED
        if updated.status == MembershipStatus.CANCELED.value
        else WebhookEvents.MEMBERSHIP_UPDATED
    )
    trigger_webhook(db, company_id, event_type, _membership_event_data(membership))
    return updated


def create_license_key(db: Session, membership_id: UUID, data: LicenseKeyCreate, user: User) -> LicenseKeyOut:
    membership, _, is_admin = _get_membership_with_access(db, membership_id, user)
    if not is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only company admins can issue license keys"
        )

    company_id = membership.company_id
    with run_in_tenant_context(company_id, user.id):
        with without_tenant_isolation():
            key = generate_license_key()
            while db.query(LicenseKey.id).filter(LicenseKey.key == key).first():
                key = generate_license_key()

        license_key = LicenseKey(
            membership_id=membership.id,
            product_id=membership.product_id,
            user_id=membership.user_id,
            key=key,
            active=True,
            expires_at=data.expires_at,
            max_activations=data.max_activations,
            current_activations=0,
        )
        db.add(license_key)
        db.commit()
        db.refresh(license_key)
        created = LicenseKeyOut.model_validate(license_key)

    logger.info(f"License key {license_key.id} issued for membership {membership.id}")
    trigger_webhook(db, company_id, WebhookEvents.LICENSE_CREATED, {"license": created.model_dump(mode="json")})
    return created


def list_license_keys(db: Session, membership_id: UUID, user: User) -> LicenseKeyListResponse:
    membership, _, _ = _get_membership_with_access(db, membership_id, user)
    with run_in_tenant_context(membership.company_id, user.id):
        keys = db.query(LicenseKey).filter(
            LicenseKey.membership_id == membership.id
        ).order_by(LicenseKey.created_at.desc()).all()
        return LicenseKeyListResponse(license_keys=[LicenseKeyOut.model_validate(k) for k in keys])


def deactivate_license_key(db: Session, membership_id: UUID, license_id: UUID, user: User) -> LicenseKeyOut:
    """Desactiva la licencia y libera el dispositivo vinculado."""
    membership, _, is_admin = _get_membership_with_access(db, membership_id, user)
    if not is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only company admins can deactivate license keys"
        )

    company_id = membership.company_id
    with run_in_tenant_context(company_id, user.id):
        license_key = db.query(LicenseKey).filter(
            LicenseKey.id == license_id,
            LicenseKey.membership_id == membership.id
        ).first()
        if license_key is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="License key not found")

        binding_keys = ("hardware_id", "device_name", "last_ip", "last_validated")
        license_key.metadata_ = {
            k: v for k, v in (license_key.metadata_ or {}).items() if k not in binding_keys
        }
        license_key.active = False
        license_key.current_activations = 0
        db.commit()
        db.refresh(license_key)
        deactivated = LicenseKeyOut.model_validate(license_key)

    trigger_webhook(db, company_id, WebhookEvents.LICENSE_DEACTIVATED, {"license": deactivated.model_dump(mode="json")})
    return deactivated


def validate_license(
    db: Session,
    key: str,
    data: LicenseValidationRequest,
    headers: Mapping[str, str]
) -> LicenseValidationResponse:
    """
    Validar una licencia desde una aplicación cliente.

    La primera validación vincula la licencia al hardware_id recibido y
    consume una activación; las siguientes desde el mismo equipo no.
    Lanza LicenseValidationError con el motivo del rechazo.
    """
    with without_tenant_isolation():
        license_key = db.query(LicenseKey).filter(LicenseKey.key == key).first()
    if license_key is None:
        raise LicenseValidationError(status.HTTP_404_NOT_FOUND, "License not found")

    if not license_key.active:
        raise LicenseValidationError(status.HTTP_403_FORBIDDEN, "License inactive")

    now = datetime.now(timezone.utc)
    expires_at = ensure_aware(license_key.expires_at)
    if expires_at and expires_at < now:
        raise LicenseValidationError(status.HTTP_403_FORBIDDEN, "License expired")

    metadata = dict(license_key.metadata_ or {})
    bound_hardware_id = metadata.get("hardware_id")

    if bound_hardware_id and bound_hardware_id != data.hardware_id:
        raise LicenseValidationError(
            status.HTTP_403_FORBIDDEN,
            "Hardware mismatch",
            "This license is bound to a different device"
        )

    if not bound_hardware_id and license_key.current_activations >= license_key.max_activations:
        raise LicenseValidationError(
            status.HTTP_403_FORBIDDEN,
            "Activation limit reached",
            f"Maximum {license_key.max_activations} activation(s) allowed"
        )

    metadata.update({
        "hardware_id": data.hardware_id,
        "device_name": data.device_name,
        "last_ip": data.ip_address or client_ip_from_headers(headers),
        "last_validated": now.isoformat(),
    })

    company_id = license_key.company_id
    with run_in_tenant_context(company_id):
        license_key.metadata_ = metadata
        license_key.last_validated_at = now
        if not bound_hardware_id:
            license_key.current_activations += 1
        db.commit()
        db.refresh(license_key)

        response = LicenseValidationResponse(
            valid=True,
            product=LicenseProductInfo.model_validate(license_key.product),
            user=LicenseUserInfo.model_validate(license_key.user),
            expires_at=license_key.expires_at,
            activations=LicenseActivations(
                current=license_key.current_activations,
                max=license_key.max_activations,
            ),
        )
        license_data = LicenseKeyOut.model_validate(license_key).model_dump(mode="json")

    if not bound_hardware_id:
        logger.info(f"License {license_key.id} activated on {data.hardware_id}")
        trigger_webhook(db, company_id, WebhookEvents.LICENSE_ACTIVATED, {"license": license_data})

    return response


def expire_due_memberships(db: Session) -> dict:
    """
    Cierra membresías vencidas de todas las compañías:
    - cancel_at alcanzado -> canceled
    - current_period_end pasado -> expired
    """
    now = datetime.now(timezone.utc)
    open_statuses = (
        MembershipStatus.ACTIVE.value,
        MembershipStatus.TRIALING.value,
        MembershipStatus.PAST_DUE.value,
    )
    events = []

    with without_tenant_isolation():
        due = db.query(Membership).filter(
            Membership.status.in_(open_statuses),
            or_(Membership.cancel_at <= now, Membership.current_period_end <= now)
        ).all()

        for membership in due:
            cancel_at = ensure_aware(membership.cancel_at)
            if cancel_at and cancel_at <= now:
                membership.status = MembershipStatus.CANCELED.value
                membership.canceled_at = now
                events.append((membership, WebhookEvents.MEMBERSHIP_CANCELED))
            else:
                membership.status = MembershipStatus.EXPIRED.value
                events.append((membership, WebhookEvents.MEMBERSHIP_EXPIRED))
        db.commit()
        notifications = [
            (membership.company_id, event_type, _membership_event_data(membership))
            for membership, event_type in events
        ]

    for company_id, event_type, event_data in notifications:
        trigger_webhook(db, company_id, event_type, event_data)

    expired = sum(1 for _, event_type in events if event_type == WebhookEvents.MEMBERSHIP_EXPIRED)
    result = {"expired": expired, "canceled": len(events) - expired}
    logger.info(f"[Memberships] Closed due memberships: {result}")
    return result
