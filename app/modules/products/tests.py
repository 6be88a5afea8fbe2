"""
Tests del módulo de productos: precios en centavos, permisos por rol,
aislamiento por compañía y soft delete.
"""
import pytest
from decimal import Decimal

from app.common.tenancy import run_in_tenant_context
from app.modules.auth.models import CompanyRole
from app.modules.products.models import Product
from app.modules.products.service import resolve_price
from app.modules.webhooks.models import Webhook, WebhookDelivery


@pytest.fixture
def owner(make_user):
    return make_user()


@pytest.fixture
def company(make_company, owner):
    return make_company(owner=owner)


@pytest.fixture
def product_webhook(db_session, company):
    with run_in_tenant_context(company.id):
        webhook = Webhook(
            url="https://hooks.example.com/products",
            events=["product.created", "product.updated", "product.deleted"],
            secret="whsec_test",
        )
        db_session.add(webhook)
        db_session.commit()
    return webhook


def _payload(company, **overrides):
    data = {
        "company_id": str(company.id),
        "title": "Pro Plan",
        "price_amount": 29.99,
        "plan_type": "monthly",
    }
    data.update(overrides)
    return data


class TestResolvePrice:

    def test_minor_units_win(self):
        assert resolve_price(Decimal("10.00"), 2999) == (Decimal("29.99"), 2999)

    def test_amount_converted(self):
        assert resolve_price(Decimal("49.995"), None) == (Decimal("50.00"), 5000)

    def test_nothing(self):
        assert resolve_price(None, None) == (None, None)


class TestCreateProduct:

    def test_create_with_amount(self, client, company, owner, auth_headers, product_webhook):
        response = client.post("/api/products", json=_payload(company), headers=auth_headers(owner))
        assert response.status_code == 201
        body = response.json()
        assert body["price_minor_units"] == 2999
        assert body["price_amount"] == 29.99
        assert body["company_id"] == str(company.id)
        assert body["currency"] == "USD"

    def test_create_triggers_webhook(self, client, db_session, company, owner, auth_headers,
                                     product_webhook, deliver_webhook_mock):
        client.post("/api/products", json=_payload(company), headers=auth_headers(owner))
        with run_in_tenant_context(company.id):
            delivery = db_session.query(WebhookDelivery).one()
        assert delivery.event_type == "product.created"
        assert delivery.event_data["product"]["title"] == "Pro Plan"
        deliver_webhook_mock.delay.assert_called_once()

    def test_minor_units_preferred(self, client, company, owner, auth_headers):
        payload = _payload(company, price_amount=10, price_minor_units=1500)
        body = client.post("/api/products", json=payload, headers=auth_headers(owner)).json()
        assert body["price_minor_units"] == 1500
        assert body["price_amount"] == 15.0

    def test_price_required(self, client, company, owner, auth_headers):
        payload = _payload(company)
        del payload["price_amount"]
        response = client.post("/api/products", json=payload, headers=auth_headers(owner))
        assert response.status_code == 400
        assert response.json()["detail"] == "Either price_amount or price_minor_units is required"

    def test_member_cannot_create(self, client, company, make_user, add_member, auth_headers):
        member = make_user()
        add_member(company, member, CompanyRole.MEMBER.value)
        response = client.post("/api/products", json=_payload(company), headers=auth_headers(member))
        assert response.status_code == 403

    def test_invalid_currency(self, client, company, owner, auth_headers):
        response = client.post("/api/products", json=_payload(company, currency="dollars"),
                               headers=auth_headers(owner))
        assert response.status_code == 422

    def test_requires_session(self, client, company):
        response = client.post("/api/products", json=_payload(company))
        assert response.status_code == 401


class TestListProducts:

    def test_company_id_required(self, client, owner, auth_headers):
        response = client.get("/api/products", headers=auth_headers(owner))
        assert response.status_code == 400

    def test_non_member_forbidden(self, client, company, make_user, auth_headers):
        response = client.get("/api/products", params={"company_id": str(company.id)},
                              headers=auth_headers(make_user()))
        assert response.status_code == 403

    def test_lists_own_company_only(self, client, company, owner, make_company, make_product,
                                    make_user, make_membership, auth_headers):
        first = make_product(company, title="First")
        second = make_product(company, title="Second", active=False)
        make_product(make_company(), title="Other company")
        make_membership(company, make_user(), first)

        response = client.get("/api/products", params={"company_id": str(company.id)},
                              headers=auth_headers(owner))
        body = response.json()
        assert [p["id"] for p in body["products"]] == [str(second.id), str(first.id)]
        assert body["products"][1]["membership_count"] == 1
        assert body["pagination"]["total"] == 2

    def test_active_filter(self, client, company, owner, make_product, auth_headers):
        make_product(company, title="On")
        make_product(company, title="Off", active=False)
        response = client.get("/api/products", params={"company_id": str(company.id), "active": "true"},
                              headers=auth_headers(owner))
        assert [p["title"] for p in response.json()["products"]] == ["On"]


class TestGetProduct:

    def test_not_found(self, client, owner, auth_headers):
        response = client.get("/api/products/00000000-0000-0000-0000-000000000000", headers=auth_headers(owner))
        assert response.status_code == 404

    def test_other_company_forbidden(self, client, make_company, make_product, owner, auth_headers):
        product = make_product(make_company())
        response = client.get(f"/api/products/{product.id}", headers=auth_headers(owner))
        assert response.status_code == 403

    def test_member_can_read(self, client, company, make_product, make_user, add_member, auth_headers):
        member = make_user()
        add_member(company, member)
        product = make_product(company)
        response = client.get(f"/api/products/{product.id}", headers=auth_headers(member))
        assert response.status_code == 200
        assert response.json()["membership_count"] == 0


class TestUpdateProduct:

    def test_price_update_keeps_units_consistent(self, client, company, owner, make_product, auth_headers):
        product = make_product(company)
        response = client.put(f"/api/products/{product.id}", json={"price_amount": 10.5},
                              headers=auth_headers(owner))
        assert response.status_code == 200
        assert response.json()["price_minor_units"] == 1050
        assert response.json()["price_amount"] == 10.5

    def test_member_cannot_update(self, client, company, make_product, make_user, add_member, auth_headers):
        member = make_user()
        add_member(company, member)
        product = make_product(company)
        response = client.put(f"/api/products/{product.id}", json={"title": "X"}, headers=auth_headers(member))
        assert response.status_code == 403

    def test_update_triggers_webhook(self, client, db_session, company, owner, make_product, auth_headers,
                                     product_webhook):
        product = make_product(company)
        client.put(f"/api/products/{product.id}", json={"title": "Renamed"}, headers=auth_headers(owner))
        with run_in_tenant_context(company.id):
            delivery = db_session.query(WebhookDelivery).one()
        assert delivery.event_type == "product.updated"
        assert delivery.event_data["updated_fields"] == ["title"]


class TestDeleteProduct:

    def test_soft_delete(self, client, db_session, company, owner, make_product, auth_headers):
        product = make_product(company)
        response = client.delete(f"/api/products/{product.id}", headers=auth_headers(owner))
        assert response.status_code == 200
        assert response.json()["message"] == "Product deleted successfully"
        assert response.json()["product"]["active"] is False

        db_session.expire_all()
        with run_in_tenant_context(company.id):
            assert db_session.query(Product).filter(Product.id == product.id).one().active is False

    def test_admin_cannot_delete(self, client, company, make_product, make_user, add_member, auth_headers):
        admin = make_user()
        add_member(company, admin, CompanyRole.ADMIN.value)
        product = make_product(company)
        response = client.delete(f"/api/products/{product.id}", headers=auth_headers(admin))
        assert response.status_code == 403

    def test_active_memberships_block_delete(self, client, company, owner, make_product, make_user,
                                             make_membership, auth_headers):
        product = make_product(company)
        make_membership(company, make_user(), product)
        response = client.delete(f"/api/products/{product.id}", headers=auth_headers(owner))
        assert response.status_code == 400
        assert response.json()["detail"] == "Cannot delete product with active memberships"
