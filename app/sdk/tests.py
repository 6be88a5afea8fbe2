"""
Tests del cliente Python contra la aplicación real (TestClient como sesión HTTP).
"""
import pytest
from unittest.mock import MagicMock

from app.common.tenancy import run_in_tenant_context
from app.modules.auth.utils import create_session_token
from app.modules.memberships.models import LicenseKey
from app.sdk import WhopSaaSClient, WhopSaaSError


@pytest.fixture
def owner(make_user):
    return make_user()


@pytest.fixture
def company(make_company, owner):
    return make_company(owner=owner)


@pytest.fixture
def sdk(client, owner):
    return WhopSaaSClient(base_url="http://testserver/", session_token=create_session_token(owner), session=client)


class TestClientSetup:

    def test_defaults(self):
        sdk = WhopSaaSClient()
        assert sdk.base_url == "http://localhost:3000"
        assert sdk.timeout == 30
        assert "Cookie" not in sdk._headers()

    def test_session_cookie_header(self):
        sdk = WhopSaaSClient(session_token="abc")
        assert sdk._headers()["Cookie"] == "session_token=abc"

    def test_error_message_from_body(self):
        response = MagicMock(status_code=403)
        response.json.return_value = {"detail": "Nope"}
        session = MagicMock()
        session.request.return_value = response

        with pytest.raises(WhopSaaSError) as exc_info:
            WhopSaaSClient(session=session).products.get("p1")
        assert exc_info.value.message == "Nope"
        assert exc_info.value.status_code == 403
        assert session.request.call_args.args == ("GET", "http://localhost:3000/api/products/p1")

    def test_error_without_json_body(self):
        response = MagicMock(status_code=502)
        response.json.side_effect = ValueError("no json")
        session = MagicMock()
        session.request.return_value = response

        with pytest.raises(WhopSaaSError) as exc_info:
            WhopSaaSClient(session=session).companies.list()
        assert exc_info.value.message == "API Error: 502"
        assert exc_info.value.body is None


class TestResources:

    def test_product_lifecycle(self, sdk, company):
        created = sdk.products.create({
            "company_id": str(company.id),
            "title": "Course",
            "price_amount": 49.0,
            "plan_type": "one_time",
        })
        assert created["price_minor_units"] == 4900

        listed = sdk.products.list(company_id=str(company.id), active=True)
        assert [p["id"] for p in listed["products"]] == [created["id"]]

        updated = sdk.products.update(created["id"], {"title": "Course v2"})
        assert updated["title"] == "Course v2"

        assert sdk.products.delete(created["id"])["message"] == "Product deleted successfully"

    def test_companies(self, sdk, company):
        companies = sdk.companies.list(role="owner")
        assert [c["id"] for c in companies["companies"]] == [str(company.id)]
        assert sdk.companies.get(company.id)["slug"] == company.slug

    def test_webhooks(self, sdk, company):
        created = sdk.webhooks.create({
            "company_id": str(company.id),
            "url": "https://hooks.example.com",
            "events": ["product.created"],
        })
        assert sdk.webhooks.get(created["id"])["secret"].endswith("...")
        sdk.webhooks.delete(created["id"])
        assert sdk.webhooks.list(company_id=str(company.id))["webhooks"] == []

    def test_stranger_gets_not_found(self, client, make_user, company):
        stranger = WhopSaaSClient(base_url="http://testserver", session_token=create_session_token(make_user()),
                                  session=client)
        with pytest.raises(WhopSaaSError) as exc_info:
            stranger.companies.get(company.id)
        assert exc_info.value.status_code == 404
        assert exc_info.value.message == "Company not found or you do not have access"

    def test_validate_license_without_session(self, client, db_session, company, make_user, make_product,
                                              make_membership):
        customer = make_user()
        membership = make_membership(company, customer, make_product(company))
        with run_in_tenant_context(company.id):
            db_session.add(LicenseKey(
                membership_id=membership.id, product_id=membership.product_id,
                user_id=customer.id, key="ABCDE-FGHIJ-KLMNO-PQRST",
            ))
            db_session.commit()

        sdk = WhopSaaSClient(base_url="http://testserver", session=client)
        result = sdk.memberships.validate_license("ABCDE-FGHIJ-KLMNO-PQRST", hardware_id="HW-1")
        assert result["valid"] is True

        with pytest.raises(WhopSaaSError) as exc_info:
            sdk.memberships.validate_license("ABCDE-FGHIJ-KLMNO-PQRST", hardware_id="HW-2")
        assert exc_info.value.message == "Hardware mismatch"
        assert exc_info.value.body["valid"] is False
