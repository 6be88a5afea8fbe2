"""
Tests del módulo de compañías: creación con slug único, listado por rol,
permisos de actualización y estadísticas del dashboard.
"""
import pytest
from decimal import Decimal

from app.common.tenancy import run_in_tenant_context
from app.modules.auth.models import CompanyRole
from app.modules.company.service import generate_unique_slug
from app.modules.payments.models import Payment
from app.modules.webhooks.models import Webhook, WebhookDelivery


@pytest.fixture
def owner(make_user):
    return make_user(email="owner@example.com")


@pytest.fixture
def company(make_company, owner):
    return make_company(owner=owner, title="Acme")


class TestSlug:

    def test_unique_suffix(self, db_session, make_company):
        make_company(slug="my-shop")
        make_company(slug="my-shop-1")
        assert generate_unique_slug(db_session, "My Shop!") == "my-shop-2"

    def test_fallback_for_symbols(self, db_session):
        assert generate_unique_slug(db_session, "!!!") == "company"


class TestCreateCompany:

    def test_creator_becomes_owner(self, client, make_user, auth_headers):
        user = make_user()
        response = client.post("/api/companies", json={
            "title": "My Awesome Company",
            "email": "hello@awesome.com",
        }, headers=auth_headers(user))
        assert response.status_code == 201
        body = response.json()
        assert body["slug"] == "my-awesome-company"
        assert body["status"] == "active"
        assert body["platform_fee_percent"] == 5.0

        detail = client.get(f"/api/companies/{body['id']}", headers=auth_headers(user)).json()
        assert detail["user_role"] == "owner"
        assert detail["counts"]["users"] == 1

    def test_duplicate_email(self, client, company, make_user, auth_headers):
        response = client.post("/api/companies", json={
            "title": "Another",
            "email": company.email,
        }, headers=auth_headers(make_user()))
        assert response.status_code == 409

    def test_fee_out_of_range(self, client, make_user, auth_headers):
        response = client.post("/api/companies", json={
            "title": "Fees",
            "email": "fees@example.com",
            "platform_fee_percent": 150,
        }, headers=auth_headers(make_user()))
        assert response.status_code == 422


class TestListCompanies:

    def test_only_member_companies(self, client, company, owner, make_company, auth_headers):
        make_company(title="Not mine")
        response = client.get("/api/companies", headers=auth_headers(owner))
        body = response.json()
        assert [c["id"] for c in body["companies"]] == [str(company.id)]
        assert body["pagination"] == {"total": 1, "limit": 50, "offset": 0, "has_more": False}

    def test_filter_by_role(self, client, company, make_company, make_user, add_member, auth_headers):
        user = make_user()
        add_member(company, user, CompanyRole.ADMIN.value)
        make_company(owner=user)
        response = client.get("/api/companies", params={"role": "admin"}, headers=auth_headers(user))
        companies = response.json()["companies"]
        assert len(companies) == 1
        assert companies[0]["user_role"] == "admin"


class TestGetCompany:

    def test_non_member_gets_404(self, client, company, make_user, auth_headers):
        response = client.get(f"/api/companies/{company.id}", headers=auth_headers(make_user()))
        assert response.status_code == 404


class TestUpdateCompany:

    def test_member_cannot_update(self, client, company, make_user, add_member, auth_headers):
        member = make_user()
        add_member(company, member)
        response = client.put(f"/api/companies/{company.id}", json={"title": "X"}, headers=auth_headers(member))
        assert response.status_code == 403

    def test_admin_cannot_change_status(self, client, company, make_user, add_member, auth_headers):
        admin = make_user()
        add_member(company, admin, CompanyRole.ADMIN.value)
        response = client.put(f"/api/companies/{company.id}", json={"status": "suspended"},
                              headers=auth_headers(admin))
        assert response.status_code == 403

    def test_owner_update_triggers_webhook(self, client, db_session, company, owner, auth_headers,
                                           deliver_webhook_mock):
        with run_in_tenant_context(company.id):
            db_session.add(Webhook(url="https://hooks.example.com", events=["company.updated"], secret="whsec_x"))
            db_session.commit()

        response = client.put(f"/api/companies/{company.id}", json={"title": "Acme 2", "status": "suspended"},
                              headers=auth_headers(owner))
        assert response.status_code == 200
        assert response.json()["title"] == "Acme 2"
        assert response.json()["status"] == "suspended"

        with run_in_tenant_context(company.id):
            delivery = db_session.query(WebhookDelivery).one()
        assert delivery.event_type == "company.updated"
        deliver_webhook_mock.delay.assert_called_once_with(str(delivery.id))

    def test_email_conflict(self, client, company, owner, make_company, auth_headers):
        other = make_company()
        response = client.put(f"/api/companies/{company.id}", json={"email": other.email},
                              headers=auth_headers(owner))
        assert response.status_code == 409


class TestCompanyStats:

    def test_stats(self, client, db_session, company, owner, make_user, make_product, make_membership,
                   auth_headers):
        product = make_product(company)
        make_membership(company, make_user(), product)
        with run_in_tenant_context(company.id):
            db_session.add(Payment(
                amount=Decimal("29.99"),
                amount_minor_units=2999,
                currency="USD",
                status="succeeded",
                platform_fee_amount=Decimal("1.50"),
                platform_fee_minor_units=150,
            ))
            db_session.commit()

        response = client.get(f"/api/companies/{company.id}/stats", headers=auth_headers(owner))
        assert response.status_code == 200
        stats = response.json()
        assert stats["products"] == 1
        assert stats["active_memberships"] == 1
        assert stats["revenue_30d"] == pytest.approx(29.99)
        assert stats["net_revenue_30d"] == pytest.approx(28.49)
        assert len(stats["recent_payments"]) == 1
        assert stats["team_members"][0]["role"] == "owner"

    def test_stats_require_membership(self, client, company, make_user, auth_headers):
        response = client.get(f"/api/companies/{company.id}/stats", headers=auth_headers(make_user()))
        assert response.status_code == 403

    def test_stats_are_isolated(self, client, db_session, company, owner, make_company, make_product,
                                auth_headers):
        make_product(make_company())
        stats = client.get(f"/api/companies/{company.id}/stats", headers=auth_headers(owner)).json()
        assert stats["products"] == 0
