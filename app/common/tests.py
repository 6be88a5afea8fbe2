"""
Tests del aislamiento por compañía, validadores compartidos y middleware.
"""
import inspect
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4
from fastapi import FastAPI
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient
from sqlalchemy import update, delete

from app.common.middleware import SecurityHeadersMiddleware, RateLimitMiddleware, SessionAuthMiddleware
from app.common.pagination import build_pagination
from app.common.tenancy import (
    TenantIsolationError, run_in_tenant_context, without_tenant_isolation,
    get_company_id, current_tenant_context
)
from app.common.validators import slugify_title, validate_currency_code, client_ip_from_headers, ensure_aware
from app.modules.products.models import Product


# ===== TENANCY =====

class TestTenantContext:

    def test_context_is_scoped_to_block(self):
        company_id = uuid4()
        assert current_tenant_context() is None
        with run_in_tenant_context(company_id):
            assert get_company_id() == company_id
        assert current_tenant_context() is None

    def test_get_company_id_without_context_raises(self):
        with pytest.raises(RuntimeError):
            get_company_id()

    def test_bypass_has_no_company(self):
        with without_tenant_isolation():
            with pytest.raises(RuntimeError):
                get_company_id()

    def test_accepts_string_ids(self):
        company_id = uuid4()
        with run_in_tenant_context(str(company_id)):
            assert get_company_id() == company_id


class TestTenantScoping:

    def test_queries_only_see_current_company(self, db_session, make_company, make_product):
        company_a = make_company()
        company_b = make_company()
        product_a = make_product(company_a, title="A")
        make_product(company_b, title="B")

        with run_in_tenant_context(company_a.id):
            products = db_session.query(Product).all()
        assert [p.id for p in products] == [product_a.id]

    def test_get_by_id_of_other_company_returns_none(self, db_session, make_company, make_product):
        company_a = make_company()
        company_b = make_company()
        product_b = make_product(company_b)
        company_a_id = company_a.id
        product_b_id = product_b.id
        db_session.expunge_all()

        with run_in_tenant_context(company_a_id):
            assert db_session.query(Product).filter(Product.id == product_b_id).first() is None

    def test_bypass_sees_all_companies(self, db_session, make_company, make_product):
        make_product(make_company())
        make_product(make_company())

        with without_tenant_isolation():
            assert db_session.query(Product).count() == 2

    def test_new_rows_are_stamped_with_context_company(self, db_session, make_company):
        company = make_company()
        with run_in_tenant_context(company.id):
            product = Product(
                title="Stamped",
                price_amount=Decimal("10.00"),
                price_minor_units=1000,
                plan_type="one_time",
            )
            db_session.add(product)
            db_session.commit()
            db_session.refresh(product)
        assert product.company_id == company.id

    def test_company_change_is_reverted(self, db_session, make_company, make_product):
        company_a = make_company()
        company_b = make_company()
        product = make_product(company_a)

        with run_in_tenant_context(company_a.id):
            product = db_session.query(Product).filter(Product.id == product.id).one()
            product.company_id = company_b.id
            db_session.commit()
            db_session.refresh(product)
        assert product.company_id == company_a.id

    def test_updating_other_company_row_raises(self, db_session, make_company, make_product):
        company_a = make_company()
        company_b = make_company()
        product_b = make_product(company_b)

        with run_in_tenant_context(company_a.id):
            product_b.title = "Hijacked"
            with pytest.raises(TenantIsolationError):
                db_session.flush()
        db_session.rollback()

    def test_deleting_other_company_row_raises(self, db_session, make_company, make_product):
        company_a = make_company()
        product_b = make_product(make_company())

        with run_in_tenant_context(company_a.id):
            db_session.delete(product_b)
            with pytest.raises(TenantIsolationError):
                db_session.flush()
        db_session.rollback()

    def test_bulk_update_statement_only_touches_current_company(self, db_session, make_company, make_product):
        company_a = make_company()
        company_b = make_company()
        product_a = make_product(company_a, title="A")
        product_b = make_product(company_b, title="B")

        with run_in_tenant_context(company_a.id):
            result = db_session.execute(
                update(Product).values(title="Renamed").execution_options(synchronize_session=False)
            )
            db_session.commit()
        assert result.rowcount == 1

        db_session.expire_all()
        with without_tenant_isolation():
            assert db_session.get(Product, product_a.id).title == "Renamed"
            assert db_session.get(Product, product_b.id).title == "B"

    def test_bulk_delete_statement_only_touches_current_company(self, db_session, make_company, make_product):
        company_a = make_company()
        company_b = make_company()
        make_product(company_a)
        product_b = make_product(company_b)

        with run_in_tenant_context(company_a.id):
            result = db_session.execute(
                delete(Product).execution_options(synchronize_session=False)
            )
            db_session.commit()
        assert result.rowcount == 1

        db_session.expire_all()
        with without_tenant_isolation():
            assert [p.id for p in db_session.query(Product).all()] == [product_b.id]

    def test_query_update_and_delete_are_scoped(self, db_session, make_company, make_product):
        company_a = make_company()
        company_b = make_company()
        make_product(company_a, title="A")
        product_b = make_product(company_b, title="B")

        with run_in_tenant_context(company_a.id):
            updated = db_session.query(Product).update({"active": False}, synchronize_session=False)
            deleted = db_session.query(Product).delete(synchronize_session=False)
            db_session.commit()
        assert (updated, deleted) == (1, 1)

        db_session.expire_all()
        with without_tenant_isolation():
            remaining = db_session.query(Product).all()
        assert [p.id for p in remaining] == [product_b.id]
        assert remaining[0].active is True


# ===== VALIDADORES Y PAGINACIÓN =====

class TestValidators:

    def test_slugify_title(self):
        assert slugify_title("My Awesome Company!") == "my-awesome-company"
        assert slugify_title("  --Acme & Co.--  ") == "acme-co"

    def test_currency_code_normalized(self):
        assert validate_currency_code("usd") == "USD"

    def test_currency_code_invalid(self):
        with pytest.raises(ValueError):
            validate_currency_code("US")
        with pytest.raises(ValueError):
            validate_currency_code("U5D")

    def test_client_ip_order(self):
        assert client_ip_from_headers({"x-forwarded-for": "1.1.1.1, 2.2.2.2"}) == "1.1.1.1"
        assert client_ip_from_headers({"x-real-ip": "3.3.3.3"}) == "3.3.3.3"
        assert client_ip_from_headers({}, "4.4.4.4") == "4.4.4.4"
        assert client_ip_from_headers({}) == "unknown"

    def test_ensure_aware(self):
        naive = datetime(2024, 1, 1, 12, 0)
        assert ensure_aware(naive).tzinfo == timezone.utc
        assert ensure_aware(None) is None

    def test_pagination_has_more(self):
        assert build_pagination(total=120, limit=50, offset=50).has_more is True
        assert build_pagination(total=100, limit=50, offset=50).has_more is False


# ===== MIDDLEWARE =====

def _build_app(*middleware):
    test_app = FastAPI()

    @test_app.get("/api/private")
    async def private():
        return {"ok": True}

    @test_app.get("/api/auth/ping")
    async def public():
        return {"ok": True}

    @test_app.post("/api/memberships/{key}/validate_license")
    async def license_check(key: str):
        return {"key": key}

    for cls, kwargs in middleware:
        test_app.add_middleware(cls, **kwargs)
    return test_app


class TestSecurityHeaders:

    def test_headers_present(self):
        client = TestClient(_build_app((SecurityHeadersMiddleware, {})))
        response = client.get("/api/auth/ping")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "frame-ancestors" in response.headers["Content-Security-Policy"]
        assert response.headers["X-Frame-Options"] == "ALLOW-FROM https://whop.com"
        assert response.headers["Permissions-Policy"].startswith("camera=()")


class TestRateLimit:

    def test_blocks_after_limit(self):
        client = TestClient(_build_app((RateLimitMiddleware, {"max_requests": 3, "window_seconds": 60})))
        for _ in range(3):
            assert client.get("/api/auth/ping").status_code == 200

        response = client.get("/api/auth/ping")
        assert response.status_code == 429
        assert response.json()["detail"] == "Too many requests"
        assert response.headers["Retry-After"] == "60"

    def test_limits_per_forwarded_ip(self):
        client = TestClient(_build_app((RateLimitMiddleware, {"max_requests": 1, "window_seconds": 60})))
        assert client.get("/api/auth/ping", headers={"x-forwarded-for": "10.0.0.1"}).status_code == 200
        assert client.get("/api/auth/ping", headers={"x-forwarded-for": "10.0.0.2"}).status_code == 200
        assert client.get("/api/auth/ping", headers={"x-forwarded-for": "10.0.0.1"}).status_code == 429

    def test_ignores_forwarded_ip_without_trusted_proxy(self):
        client = TestClient(_build_app((RateLimitMiddleware, {
            "max_requests": 1, "window_seconds": 60, "trust_proxy_headers": False,
        })))
        assert client.get("/api/auth/ping", headers={"x-forwarded-for": "10.0.0.1"}).status_code == 200
        assert client.get("/api/auth/ping", headers={"x-forwarded-for": "10.0.0.2"}).status_code == 429

    def test_window_resets(self):
        limiter = RateLimitMiddleware(FastAPI(), max_requests=1, window_seconds=60)
        assert limiter.hit("1.2.3.4", now=0) is True
        assert limiter.hit("1.2.3.4", now=1) is False
        assert limiter.hit("1.2.3.4", now=61) is True

    def test_sweep_removes_expired_windows(self):
        limiter = RateLimitMiddleware(FastAPI(), max_requests=5, window_seconds=60)
        limiter._last_sweep = 0
        limiter.hit("1.1.1.1", now=0)
        limiter.hit("2.2.2.2", now=100)
        assert "1.1.1.1" not in limiter._windows
        assert "2.2.2.2" in limiter._windows


class TestSessionAuth:

    @pytest.fixture
    def client(self):
        return TestClient(_build_app((SessionAuthMiddleware, {})))

    def test_missing_token(self, client):
        response = client.get("/api/private")
        assert response.status_code == 401
        assert response.json()["detail"] == "Authentication required"

    def test_invalid_token_clears_cookie(self, client):
        client.cookies.set("session_token", "not-a-jwt")
        response = client.get("/api/private")
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired session"
        assert "session_token=" in response.headers.get("set-cookie", "")

    def test_valid_bearer_token(self, client, make_user, auth_headers):
        user = make_user()
        response = client.get("/api/private", headers=auth_headers(user))
        assert response.status_code == 200

    def test_public_paths(self, client):
        assert client.get("/api/auth/ping").status_code == 200
        assert client.post("/api/memberships/ABCDE/validate_license").status_code == 200

    def test_is_public(self):
        assert SessionAuthMiddleware.is_public("/health")
        assert SessionAuthMiddleware.is_public("/api/webhooks/stripe")
        assert SessionAuthMiddleware.is_public("/api/openapi")
        assert not SessionAuthMiddleware.is_public("/api/webhooks")
        assert not SessionAuthMiddleware.is_public("/api/authx")


class TestRouteHandlers:

    def test_api_handlers_run_in_threadpool(self):
        """Los endpoints con sesión síncrona, Stripe, OAuth o bcrypt son `def`."""
        from app.main import app

        async_allowed = {"/api/webhooks/stripe", "/api/openapi", "/api/docs"}
        blocking = [
            route.path for route in app.routes
            if isinstance(route, APIRoute)
            and route.path.startswith("/api")
            and route.path not in async_allowed
            and inspect.iscoroutinefunction(route.endpoint)
        ]
        assert blocking == []
