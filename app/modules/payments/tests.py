"""
Tests de checkout, helpers de Stripe y procesamiento de eventos de Stripe.
Las llamadas a la API de Stripe se reemplazan con mocks.
"""
import hashlib
import hmac
import json
import time
import pytest
import stripe
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import patch

from app.core.config import settings
from app.common.tenancy import run_in_tenant_context, without_tenant_isolation
from app.modules.memberships.models import Membership
from app.modules.payments import stripe_client
from app.modules.payments.models import Payment, CheckoutSession
from app.modules.payments.stripe_events import process_stripe_event
from app.modules.webhooks.models import Webhook, WebhookDelivery


@pytest.fixture
def owner(make_user):
    return make_user()


@pytest.fixture
def customer(make_user):
    return make_user()


@pytest.fixture
def company(make_company, owner):
    return make_company(owner=owner, stripe_account_id="acct_123", stripe_onboarded=True)


@pytest.fixture
def one_time_product(make_product, company):
    return make_product(company, title="E-book", plan_type="one_time", price_minor_units=2999)


@pytest.fixture
def monthly_product(make_product, company):
    return make_product(company, title="Pro Plan", plan_type="monthly", trial_days=7)


@pytest.fixture
def subscribed_webhook(db_session, company):
    def _subscribe(*events):
        with run_in_tenant_context(company.id):
            webhook = Webhook(url="https://hooks.example.com/whop", events=list(events), secret="whsec_local")
            db_session.add(webhook)
            db_session.commit()
        return webhook

    return _subscribe


@pytest.fixture
def make_payment(db_session):
    def _make_payment(company, **kwargs):
        with run_in_tenant_context(company.id):
            payment = Payment(
                amount=Decimal("29.99"),
                amount_minor_units=2999,
                currency="USD",
                stripe_payment_intent_id=kwargs.pop("stripe_payment_intent_id", "pi_123"),
                **kwargs,
            )
            db_session.add(payment)
            db_session.commit()
            db_session.refresh(payment)
        return payment

    return _make_payment


def _event(event_type, obj):
    return {"id": "evt_test", "type": event_type, "data": {"object": obj}}


def _deliveries(db_session, company):
    with run_in_tenant_context(company.id):
        return [d.event_type for d in db_session.query(WebhookDelivery).all()]


class TestMoney:

    def test_to_cents_rounds_half_up(self):
        assert stripe_client.to_cents(49.995) == 5000
        assert stripe_client.to_cents(Decimal("10.10")) == 1010
        assert stripe_client.to_cents(0) == 0

    def test_to_dollars(self):
        assert stripe_client.to_dollars(2999) == Decimal("29.99")
        assert stripe_client.to_dollars(5) == Decimal("0.05")

    def test_platform_fee_and_payout(self):
        assert stripe_client.calculate_platform_fee(2999, 5) == 150
        assert stripe_client.calculate_platform_fee(10000, Decimal("2.5")) == 250
        assert stripe_client.calculate_merchant_payout(2999, 5) == 2849


class TestCreateCheckoutSession:

    def _create(self, **overrides):
        params = dict(
            product_id="prod-1",
            product_name="Pro Plan",
            price_in_cents=2999,
            currency="USD",
            plan_type="one_time",
            stripe_account_id="acct_123",
            platform_fee_percent=5,
            success_url="https://shop.example.com/ok",
            cancel_url="https://shop.example.com/cancel",
            idempotency_key="checkout_key",
        )
        params.update(overrides)
        with patch("app.modules.payments.stripe_client.stripe.checkout.Session.create") as create:
            stripe_client.create_checkout_session(**params)
        return create.call_args.kwargs

    def test_one_time_payment_mode(self):
        kwargs = self._create(client_reference_id="user-1", metadata={"company_id": "c-1"})
        assert kwargs["mode"] == "payment"
        assert kwargs["payment_intent_data"] == {
            "application_fee_amount": 150,
            "transfer_data": {"destination": "acct_123"},
        }
        assert kwargs["line_items"][0]["price_data"]["currency"] == "usd"
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 2999
        assert kwargs["metadata"] == {"product_id": "prod-1", "plan_type": "one_time", "company_id": "c-1"}
        assert kwargs["client_reference_id"] == "user-1"
        assert kwargs["idempotency_key"] == "checkout_key"
        assert kwargs["stripe_account"] == "acct_123"

    def test_yearly_subscription_with_trial(self):
        kwargs = self._create(plan_type="yearly", trial_days=14, customer_email="buyer@example.com")
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"][0]["price_data"]["recurring"] == {"interval": "year", "interval_count": 1}
        assert kwargs["subscription_data"] == {"application_fee_percent": 5.0, "trial_period_days": 14}
        assert kwargs["customer_email"] == "buyer@example.com"
        assert "payment_intent_data" not in kwargs


class TestCheckoutAPI:

    def _body(self, company, product, **overrides):
        body = {
            "productId": str(product.id),
            "companyId": str(company.id),
            "successUrl": "https://shop.example.com/ok",
            "cancelUrl": "https://shop.example.com/cancel",
        }
        body.update(overrides)
        return body

    def _fake_session(self, payment_intent="pi_123"):
        return SimpleNamespace(
            id="cs_test_1",
            url="https://checkout.stripe.com/c/cs_test_1",
            payment_intent=payment_intent,
        )

    def test_requires_session(self, client, company, one_time_product):
        response = client.post("/api/checkout/create", json=self._body(company, one_time_product))
        assert response.status_code == 401

    def test_one_time_records_pending_payment(self, client, db_session, company, customer,
                                              one_time_product, auth_headers):
        with patch("app.modules.payments.stripe_client.create_checkout_session",
                   return_value=self._fake_session()) as create:
            response = client.post(
                "/api/checkout/create",
                json=self._body(company, one_time_product, customerEmail="buyer@example.com",
                                metadata={"campaign": "spring"}),
                headers=auth_headers(customer),
            )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "checkout_url": "https://checkout.stripe.com/c/cs_test_1",
            "session_id": "cs_test_1",
        }
        kwargs = create.call_args.kwargs
        assert kwargs["price_in_cents"] == 2999
        assert kwargs["client_reference_id"] == str(customer.id)
        assert kwargs["metadata"] == {
            "company_id": str(company.id),
            "product_id": str(one_time_product.id),
            "campaign": "spring",
        }
        assert kwargs["idempotency_key"].startswith(f"checkout_{company.id}_{one_time_product.id}_")

        with run_in_tenant_context(company.id):
            payment = db_session.query(Payment).one()
            checkout = db_session.query(CheckoutSession).one()
        assert payment.status == "pending"
        assert payment.stripe_payment_intent_id == "pi_123"
        assert payment.platform_fee_minor_units == 150
        assert payment.checkout_metadata["session_id"] == "cs_test_1"
        assert payment.metadata_ == {"campaign": "spring"}
        assert checkout.mode == "payment"
        assert checkout.customer_email == "buyer@example.com"

    def test_subscription_has_no_payment(self, client, db_session, company, customer, monthly_product,
                                         auth_headers):
        with patch("app.modules.payments.stripe_client.create_checkout_session",
                   return_value=self._fake_session(payment_intent=None)) as create:
            response = client.post("/api/checkout/create", json=self._body(company, monthly_product),
                                   headers=auth_headers(customer))
        assert response.status_code == 200
        assert create.call_args.kwargs["trial_days"] == 7
        with run_in_tenant_context(company.id):
            assert db_session.query(Payment).count() == 0
            assert db_session.query(CheckoutSession).one().mode == "subscription"

    def test_onboarding_required(self, client, make_company, make_product, customer, auth_headers):
        company = make_company()
        product = make_product(company)
        response = client.post("/api/checkout/create", json=self._body(company, product),
                               headers=auth_headers(customer))
        assert response.status_code == 400
        assert response.json()["detail"] == {
            "error": "Company has not completed Stripe onboarding",
            "onboarding_required": True,
        }

    def test_suspended_company(self, client, make_company, make_product, customer, auth_headers):
        company = make_company(status="suspended", stripe_account_id="acct_9", stripe_onboarded=True)
        product = make_product(company)
        response = client.post("/api/checkout/create", json=self._body(company, product),
                               headers=auth_headers(customer))
        assert response.status_code == 403

    def test_inactive_product(self, client, company, make_product, customer, auth_headers):
        product = make_product(company, active=False)
        response = client.post("/api/checkout/create", json=self._body(company, product),
                               headers=auth_headers(customer))
        assert response.status_code == 404
        assert response.json()["detail"] == "Product not found or inactive"

    def test_product_from_another_company(self, client, company, make_company, make_product, customer,
                                          auth_headers):
        foreign_product = make_product(make_company())
        response = client.post("/api/checkout/create", json=self._body(company, foreign_product),
                               headers=auth_headers(customer))
        assert response.status_code == 404

    def test_stripe_error(self, client, company, one_time_product, customer, auth_headers):
        with patch("app.modules.payments.stripe_client.create_checkout_session",
                   side_effect=stripe.StripeError("card network down")):
            response = client.post("/api/checkout/create", json=self._body(company, one_time_product),
                                   headers=auth_headers(customer))
        assert response.status_code == 502

    def test_invalid_urls(self, client, company, one_time_product, customer, auth_headers):
        response = client.post("/api/checkout/create",
                               json=self._body(company, one_time_product, successUrl="not a url"),
                               headers=auth_headers(customer))
        assert response.status_code == 422


class TestStripeWebhookEndpoint:

    def _signed(self, payload: str):
        timestamp = int(time.time())
        signature = hmac.new(
            settings.STRIPE_WEBHOOK_SECRET.encode(),
            f"{timestamp}.{payload}".encode(),
            hashlib.sha256,
        ).hexdigest()
        return f"t={timestamp},v1={signature}"

    def test_missing_signature(self, client):
        response = client.post("/api/webhooks/stripe", content=b"{}")
        assert response.status_code == 400
        assert response.json()["detail"] == "Missing stripe-signature header"

    def test_invalid_signature(self, client):
        response = client.post("/api/webhooks/stripe", content=b"{}",
                               headers={"stripe-signature": "t=1,v1=bad"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid webhook signature"

    def test_valid_signature_unhandled_event(self, client):
        payload = json.dumps({"id": "evt_1", "object": "event", "type": "customer.created",
                              "data": {"object": {"id": "cus_1"}}})
        response = client.post("/api/webhooks/stripe", content=payload,
                               headers={"stripe-signature": self._signed(payload)})
        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_processing_error(self, client):
        event = _event("payment_intent.succeeded", {"id": "pi_1"})
        with patch("app.modules.payments.stripe_client.verify_stripe_webhook", return_value=event), \
                patch("app.modules.payments.router.process_stripe_event", side_effect=RuntimeError("db down")):
            response = client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"})
        assert response.status_code == 500
        assert response.json()["detail"] == "Webhook processing failed"

    def test_dispatches_event(self, client, db_session, company, make_payment):
        make_payment(company)
        event = _event("payment_intent.succeeded", {"id": "pi_123", "latest_charge": "ch_1"})
        with patch("app.modules.payments.stripe_client.verify_stripe_webhook", return_value=event):
            response = client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"})
        assert response.status_code == 200
        with run_in_tenant_context(company.id):
            assert db_session.query(Payment).one().status == "succeeded"


class TestPaymentEvents:

    def test_unhandled_type(self, db_session):
        assert process_stripe_event(db_session, _event("invoice.created", {"id": "in_1"})) is False

    def test_unknown_payment_is_ignored(self, db_session):
        assert process_stripe_event(db_session, _event("payment_intent.succeeded", {"id": "pi_missing"}))

    def test_succeeded(self, db_session, company, make_payment, subscribed_webhook):
        subscribed_webhook("payment.succeeded")
        payment = make_payment(company, metadata_={"campaign": "spring"})
        process_stripe_event(db_session, _event("payment_intent.succeeded", {
            "id": "pi_123",
            "amount": 2999,
            "currency": "usd",
            "payment_method": "pm_1",
            "latest_charge": {"id": "ch_1", "receipt_url": "https://pay.stripe.com/receipts/1"},
        }))

        db_session.expire_all()
        with run_in_tenant_context(company.id):
            stored = db_session.get(Payment, payment.id)
            assert stored.status == "succeeded"
            assert stored.stripe_charge_id == "ch_1"
            assert stored.metadata_ == {
                "campaign": "spring",
                "payment_method": "pm_1",
                "receipt_url": "https://pay.stripe.com/receipts/1",
            }
        assert _deliveries(db_session, company) == ["payment.succeeded"]

    def test_failed(self, db_session, company, make_payment):
        payment = make_payment(company)
        process_stripe_event(db_session, _event("payment_intent.payment_failed", {
            "id": "pi_123",
            "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
        }))
        db_session.expire_all()
        with run_in_tenant_context(company.id):
            stored = db_session.get(Payment, payment.id)
            assert stored.status == "failed"
            assert stored.metadata_["failure_code"] == "card_declined"

    def test_refunded(self, db_session, company, make_payment):
        payment = make_payment(company)
        process_stripe_event(db_session, _event("charge.refunded", {
            "id": "ch_9",
            "payment_intent": "pi_123",
            "amount_refunded": 2999,
        }))
        db_session.expire_all()
        with run_in_tenant_context(company.id):
            stored = db_session.get(Payment, payment.id)
            assert stored.status == "refunded"
            assert stored.stripe_charge_id == "ch_9"


class TestSubscriptionEvents:

    def _checkout_completed(self, company, product, customer, subscription="sub_1"):
        return _event("checkout.session.completed", {
            "id": "cs_test_1",
            "subscription": subscription,
            "client_reference_id": str(customer.id),
            "metadata": {"company_id": str(company.id), "product_id": str(product.id)},
        })

    def test_checkout_completed_creates_membership(self, db_session, company, customer, monthly_product,
                                                   subscribed_webhook):
        subscribed_webhook("membership.created")
        with run_in_tenant_context(company.id):
            db_session.add(CheckoutSession(
                product_id=monthly_product.id, stripe_session_id="cs_test_1",
                idempotency_key="checkout_key", mode="subscription",
            ))
            db_session.commit()

        event = self._checkout_completed(company, monthly_product, customer)
        process_stripe_event(db_session, event)
        process_stripe_event(db_session, event)

        with run_in_tenant_context(company.id):
            memberships = db_session.query(Membership).all()
            assert db_session.query(CheckoutSession).one().status == "completed"
        assert len(memberships) == 1
        assert memberships[0].user_id == customer.id
        assert memberships[0].stripe_subscription_id == "sub_1"
        assert memberships[0].status == "active"
        assert _deliveries(db_session, company) == ["membership.created"]

    def test_checkout_completed_one_time_has_no_membership(self, db_session, company, customer,
                                                           one_time_product):
        process_stripe_event(db_session, self._checkout_completed(company, one_time_product, customer,
                                                                  subscription=None))
        with without_tenant_isolation():
            assert db_session.query(Membership).count() == 0

    def test_created_sets_trial(self, db_session, company, customer, monthly_product, make_membership):
        membership = make_membership(company, customer, monthly_product, stripe_subscription_id="sub_1")
        trial_end = int(time.time()) + 7 * 86400
        process_stripe_event(db_session, _event("customer.subscription.created", {
            "id": "sub_1",
            "status": "trialing",
            "current_period_start": int(time.time()),
            "current_period_end": trial_end,
            "trial_end": trial_end,
        }))
        db_session.expire_all()
        with without_tenant_isolation():
            stored = db_session.get(Membership, membership.id)
        assert stored.status == "trialing"
        assert stored.trial_end is not None

    def test_updated_maps_status(self, db_session, company, customer, monthly_product, make_membership,
                                 subscribed_webhook):
        subscribed_webhook("membership.updated")
        membership = make_membership(company, customer, monthly_product, stripe_subscription_id="sub_1")
        process_stripe_event(db_session, _event("customer.subscription.updated", {
            "id": "sub_1",
            "status": "unpaid",
            "current_period_end": int(time.time()) + 86400,
        }))
        db_session.expire_all()
        with without_tenant_isolation():
            stored = db_session.get(Membership, membership.id)
        assert stored.status == "canceled"
        assert stored.current_period_end is not None
        assert _deliveries(db_session, company) == ["membership.updated"]

    def test_deleted_cancels(self, db_session, company, customer, monthly_product, make_membership,
                             subscribed_webhook):
        subscribed_webhook("membership.canceled")
        membership = make_membership(company, customer, monthly_product, stripe_subscription_id="sub_1")
        process_stripe_event(db_session, _event("customer.subscription.deleted", {"id": "sub_1"}))
        db_session.expire_all()
        with without_tenant_isolation():
            stored = db_session.get(Membership, membership.id)
        assert stored.status == "canceled"
        assert stored.canceled_at is not None
        assert _deliveries(db_session, company) == ["membership.canceled"]
