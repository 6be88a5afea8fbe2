"""
Fixtures compartidas por los tests de todos los módulos.

La base de datos es SQLite en memoria (StaticPool) y las tablas se crean y
destruyen en cada test. Las tareas Celery se reemplazan por mocks.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("RATE_LIMIT_REQUESTS", "100000")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("BASE_URL", "http://testserver")

from decimal import Decimal
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.database.database import Base, SessionLocal, sync_engine
from app.common.tenancy import run_in_tenant_context
from app.modules.auth.models import User, CompanyUser, CompanyRole
from app.modules.auth.utils import hash_password, create_session_token
from app.modules.company.models import Company, CompanyStatus
from app.modules.memberships.models import Membership, MembershipStatus
from app.modules.products.models import Product

DEFAULT_PASSWORD = "SuperSecret123"


@pytest.fixture(autouse=True)
def database():
    Base.metadata.create_all(bind=sync_engine)
    yield
    Base.metadata.drop_all(bind=sync_engine)


@pytest.fixture
def db_session(database):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture(autouse=True)
def deliver_webhook_mock():
    """Evita encolar entregas en Redis; los tests inspeccionan las llamadas."""
    with patch("app.modules.webhooks.events.deliver_webhook") as mock:
        yield mock


@pytest.fixture(autouse=True)
def email_task_mocks():
    with patch("app.modules.auth.service.send_verification_email_task") as verification, \
            patch("app.modules.auth.service.send_password_reset_email_task") as reset:
        yield {"verification": verification, "reset": reset}


@pytest.fixture
def make_user(db_session):
    counter = {"n": 0}

    def _make_user(email=None, password=DEFAULT_PASSWORD, **kwargs):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            password_hash=hash_password(password) if password else None,
            name=kwargs.pop("name", f"User {counter['n']}"),
            **kwargs,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def auth_headers():
    def _auth_headers(user):
        return {"Authorization": f"Bearer {create_session_token(user)}"}

    return _auth_headers


@pytest.fixture
def make_company(db_session):
    counter = {"n": 0}

    def _make_company(owner=None, **kwargs):
        counter["n"] += 1
        company = Company(
            title=kwargs.pop("title", f"Company {counter['n']}"),
            email=kwargs.pop("email", f"company{counter['n']}@example.com"),
            slug=kwargs.pop("slug", f"company-{counter['n']}"),
            status=kwargs.pop("status", CompanyStatus.ACTIVE.value),
            **kwargs,
        )
        db_session.add(company)
        db_session.commit()
        db_session.refresh(company)
        if owner is not None:
            with run_in_tenant_context(company.id, owner.id):
                db_session.add(CompanyUser(user_id=owner.id, role=CompanyRole.OWNER.value))
                db_session.commit()
        return company

    return _make_company


@pytest.fixture
def add_member(db_session):
    def _add_member(company, user, role=CompanyRole.MEMBER.value):
        with run_in_tenant_context(company.id, user.id):
            company_user = CompanyUser(user_id=user.id, role=role)
            db_session.add(company_user)
            db_session.commit()
        return company_user

    return _add_member


@pytest.fixture
def make_product(db_session):
    def _make_product(company, **kwargs):
        price_minor_units = kwargs.pop("price_minor_units", 2999)
        with run_in_tenant_context(company.id):
            product = Product(
                title=kwargs.pop("title", "Pro Plan"),
                price_amount=Decimal(price_minor_units) / 100,
                price_minor_units=price_minor_units,
                currency=kwargs.pop("currency", "USD"),
                plan_type=kwargs.pop("plan_type", "monthly"),
                **kwargs,
            )
            db_session.add(product)
            db_session.commit()
            db_session.refresh(product)
        return product

    return _make_product


@pytest.fixture
def make_membership(db_session):
    def _make_membership(company, user, product, **kwargs):
        with run_in_tenant_context(company.id):
            membership = Membership(
                user_id=user.id,
                product_id=product.id,
                status=kwargs.pop("status", MembershipStatus.ACTIVE.value),
                **kwargs,
            )
            db_session.add(membership)
            db_session.commit()
            db_session.refresh(membership)
        return membership

    return _make_membership
