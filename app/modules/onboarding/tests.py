"""
Tests del onboarding de Stripe Connect. Las llamadas a Stripe se mockean.
"""
import pytest
import stripe
from types import SimpleNamespace
from unittest.mock import patch

from app.common.tenancy import run_in_tenant_context
from app.modules.company.models import Company
from app.modules.onboarding.service import onboarding_urls
from app.modules.webhooks.models import Webhook, WebhookDelivery

LINK_URL = "https://connect.stripe.com/setup/e/acct_new/abc"


@pytest.fixture
def company(make_company):
    return make_company(title="Acme Tools")


def _reload(db_session, company_id):
    db_session.expire_all()
    return db_session.get(Company, company_id)


class TestOnboardingUrls:

    def test_refresh_and_return(self, company):
        refresh_url, return_url = onboarding_urls(company.id)
        assert refresh_url == f"http://testserver/dashboard/{company.id}/onboarding/stripe/refresh"
        assert return_url == f"http://testserver/dashboard/{company.id}/onboarding/stripe/complete"


class TestCreateOnboarding:

    def test_creates_express_account(self, client, db_session, company):
        with patch("app.modules.onboarding.service.stripe_client.create_connect_account",
                   return_value=SimpleNamespace(id="acct_new")) as create_account, \
                patch("app.modules.onboarding.service.stripe_client.create_onboarding_link",
                      return_value=LINK_URL) as create_link:
            response = client.post("/api/onboarding/stripe/create", json={"companyId": str(company.id)})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["onboarding_url"] == LINK_URL
        assert body["account_id"] == "acct_new"
        assert create_account.call_args.kwargs == {
            "company_id": str(company.id),
            "email": company.email,
            "business_name": "Acme Tools",
        }
        assert create_link.call_args.args == ("acct_new", *onboarding_urls(company.id))

        stored = _reload(db_session, company.id)
        assert stored.stripe_account_id == "acct_new"
        assert stored.stripe_onboarded is False
        assert stored.status == "pending_kyc"
        assert stored.onboarding_link_expires_at is not None

    def test_existing_account_gets_new_link(self, client, make_company):
        company = make_company(stripe_account_id="acct_existing")
        with patch("app.modules.onboarding.service.stripe_client.create_connect_account") as create_account, \
                patch("app.modules.onboarding.service.stripe_client.create_onboarding_link",
                      return_value=LINK_URL):
            response = client.post("/api/onboarding/stripe/create", json={"company_id": str(company.id)})
        assert response.status_code == 200
        assert response.json()["account_id"] == "acct_existing"
        create_account.assert_not_called()

    def test_already_onboarded(self, client, make_company):
        company = make_company(stripe_account_id="acct_done", stripe_onboarded=True)
        response = client.post("/api/onboarding/stripe/create", json={"companyId": str(company.id)})
        assert response.status_code == 400
        assert response.json()["detail"] == "Company already onboarded to Stripe"

    def test_unknown_company(self, client):
        response = client.post("/api/onboarding/stripe/create",
                               json={"companyId": "00000000-0000-0000-0000-000000000000"})
        assert response.status_code == 404

    def test_stripe_error_rolls_back(self, client, db_session, company):
        with patch("app.modules.onboarding.service.stripe_client.create_connect_account",
                   side_effect=stripe.StripeError("connect disabled")):
            response = client.post("/api/onboarding/stripe/create", json={"companyId": str(company.id)})
        assert response.status_code == 502
        assert _reload(db_session, company.id).stripe_account_id is None


class TestOnboardingStatus:

    def test_company_id_required(self, client):
        response = client.get("/api/onboarding/stripe/status")
        assert response.status_code == 400
        assert response.json()["detail"] == "companyId is required"

    def test_not_started(self, client, company):
        response = client.get("/api/onboarding/stripe/status", params={"companyId": str(company.id)})
        assert response.json() == {"onboarded": False, "status": "not_started", "stripe_account_id": None}

    def test_pending(self, client, make_company):
        company = make_company(stripe_account_id="acct_kyc", status="pending_kyc")
        with patch("app.modules.onboarding.service.stripe_client.is_account_onboarded", return_value=False):
            response = client.get("/api/onboarding/stripe/status", params={"companyId": str(company.id)})
        assert response.json() == {"onboarded": False, "status": "pending", "stripe_account_id": "acct_kyc"}

    def test_complete_activates_company(self, client, db_session, make_company):
        company = make_company(stripe_account_id="acct_kyc", status="pending_kyc")
        with run_in_tenant_context(company.id):
            db_session.add(Webhook(url="https://hooks.example.com", events=["company.onboarded"], secret="s"))
            db_session.commit()

        with patch("app.modules.onboarding.service.stripe_client.is_account_onboarded", return_value=True):
            response = client.get("/api/onboarding/stripe/status", params={"companyId": str(company.id)})
            client.get("/api/onboarding/stripe/status", params={"companyId": str(company.id)})

        assert response.json()["status"] == "complete"
        stored = _reload(db_session, company.id)
        assert stored.stripe_onboarded is True
        assert stored.onboarding_completed is True
        assert stored.status == "active"
        with run_in_tenant_context(company.id):
            assert [d.event_type for d in db_session.query(WebhookDelivery).all()] == ["company.onboarded"]
