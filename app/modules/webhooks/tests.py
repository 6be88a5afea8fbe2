"""
Tests de webhooks salientes: API de suscripciones, cola de entregas,
firma HMAC y la tarea Celery de entrega.
"""
import json
import pytest
import requests
from unittest.mock import patch, MagicMock

from app.common.tenancy import run_in_tenant_context
from app.modules.auth.models import CompanyRole
from app.modules.webhooks.delivery import (
    generate_webhook_signature, verify_webhook_signature, build_payload, build_headers,
    should_retry, retry_countdown, attempt_delivery, WebhookDeliveryError
)
from app.modules.webhooks.events import queue_webhook_delivery, generate_event_id
from app.modules.memberships.models import LicenseKey
from app.modules.webhooks.models import Webhook, WebhookDelivery
from app.modules.webhooks.service import mask_secret, generate_webhook_secret
from app.modules.webhooks.tasks import deliver_webhook


@pytest.fixture
def owner(make_user):
    return make_user()


@pytest.fixture
def company(make_company, owner):
    return make_company(owner=owner)


@pytest.fixture
def make_webhook(db_session):
    def _make_webhook(company, events=("payment.succeeded",), **kwargs):
        with run_in_tenant_context(company.id):
            webhook = Webhook(
                url=kwargs.pop("url", "https://hooks.example.com/whop"),
                events=list(events),
                secret=kwargs.pop("secret", "whsec_test"),
                **kwargs,
            )
            db_session.add(webhook)
            db_session.commit()
            db_session.refresh(webhook)
        return webhook

    return _make_webhook


def _response(status_code, text="ok"):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.ok = status_code < 400
    return response


class TestWebhookAPI:

    def _body(self, company, **overrides):
        body = {
            "company_id": str(company.id),
            "url": "https://hooks.example.com/whop",
            "events": ["payment.succeeded", "membership.created"],
        }
        body.update(overrides)
        return body

    def test_create_returns_full_secret_once(self, client, company, owner, auth_headers):
        response = client.post("/api/webhooks", json=self._body(company), headers=auth_headers(owner))
        assert response.status_code == 201
        body = response.json()
        assert body["secret"].startswith("whsec_")
        assert len(body["secret"]) == len("whsec_") + 64
        assert body["warning"] == "Save this secret securely. It will not be shown again."

        listing = client.get("/api/webhooks", params={"company_id": str(company.id)},
                             headers=auth_headers(owner)).json()
        assert listing["webhooks"][0]["secret"] == body["secret"][:8] + "..."
        assert listing["pagination"]["total"] == 1

    def test_unsupported_event(self, client, company, owner, auth_headers):
        response = client.post("/api/webhooks", json=self._body(company, events=["order.shipped"]),
                               headers=auth_headers(owner))
        assert response.status_code == 422

    def test_license_activation_reaches_subscriber(self, client, db_session, company, owner, make_user,
                                                   make_product, make_membership, auth_headers):
        response = client.post("/api/webhooks", json=self._body(company, events=["license.activated"]),
                               headers=auth_headers(owner))
        assert response.status_code == 201
        webhook_id = response.json()["id"]

        membership = make_membership(company, make_user(), make_product(company))
        with run_in_tenant_context(company.id):
            db_session.add(LicenseKey(
                membership_id=membership.id, product_id=membership.product_id,
                user_id=membership.user_id, key="AAAAA-BBBBB-CCCCC-DDDDD",
            ))
            db_session.commit()

        client.post("/api/memberships/AAAAA-BBBBB-CCCCC-DDDDD/validate_license", json={"hardware_id": "HW-1"})

        deliveries = client.get(f"/api/webhooks/{webhook_id}/deliveries", headers=auth_headers(owner)).json()
        assert [d["event_type"] for d in deliveries["deliveries"]] == ["license.activated"]
        assert deliveries["deliveries"][0]["event_data"]["license"]["key"] == "AAAAA-BBBBB-CCCCC-DDDDD"

    def test_every_emitted_event_is_subscribable(self, client, company, owner, auth_headers):
        events = [
            "payment.refunded", "membership.expired", "license.created", "license.activated",
            "license.deactivated", "company.onboarded", "company.updated",
        ]
        response = client.post("/api/webhooks", json=self._body(company, events=events),
                               headers=auth_headers(owner))
        assert response.status_code == 201
        assert response.json()["events"] == events

    def test_events_deduplicated(self, client, company, owner, auth_headers):
        response = client.post(
            "/api/webhooks",
            json=self._body(company, events=["product.created", "product.created", "product.deleted"]),
            headers=auth_headers(owner),
        )
        assert response.json()["events"] == ["product.created", "product.deleted"]

    def test_member_cannot_manage(self, client, company, make_user, add_member, auth_headers):
        member = make_user()
        add_member(company, member, CompanyRole.MEMBER.value)
        response = client.post("/api/webhooks", json=self._body(company), headers=auth_headers(member))
        assert response.status_code == 403
        response = client.get("/api/webhooks", params={"company_id": str(company.id)},
                              headers=auth_headers(member))
        assert response.status_code == 403

    def test_list_requires_company(self, client, owner, auth_headers):
        response = client.get("/api/webhooks", headers=auth_headers(owner))
        assert response.status_code == 400

    def test_list_active_filter(self, client, company, owner, make_webhook, auth_headers):
        make_webhook(company)
        make_webhook(company, active=False)
        response = client.get("/api/webhooks", params={"company_id": str(company.id), "active": "true"},
                              headers=auth_headers(owner))
        assert response.json()["pagination"]["total"] == 1

    def test_requires_session(self, client, company):
        response = client.get("/api/webhooks", params={"company_id": str(company.id)})
        assert response.status_code == 401

    def test_get_update_delete(self, client, company, owner, make_webhook, auth_headers):
        webhook = make_webhook(company)
        headers = auth_headers(owner)

        response = client.get(f"/api/webhooks/{webhook.id}", headers=headers)
        assert response.json()["secret"] == "whsec_te..."

        response = client.put(f"/api/webhooks/{webhook.id}",
                              json={"active": False, "events": ["product.updated"]}, headers=headers)
        assert response.json()["active"] is False
        assert response.json()["events"] == ["product.updated"]

        response = client.delete(f"/api/webhooks/{webhook.id}", headers=headers)
        assert response.json() == {"message": "Webhook deleted successfully", "id": str(webhook.id)}
        assert client.get(f"/api/webhooks/{webhook.id}", headers=headers).status_code == 404

    def test_other_company_admin_forbidden(self, client, company, make_user, make_company, make_webhook,
                                           auth_headers):
        webhook = make_webhook(company)
        outsider = make_user()
        make_company(owner=outsider)
        response = client.get(f"/api/webhooks/{webhook.id}", headers=auth_headers(outsider))
        assert response.status_code == 403

    def test_deliveries_history(self, client, db_session, company, owner, make_webhook, auth_headers):
        webhook = make_webhook(company)
        queue_webhook_delivery(db_session, company.id, "payment.succeeded", {"payment_id": "p1"})
        response = client.get(f"/api/webhooks/{webhook.id}/deliveries", headers=auth_headers(owner))
        body = response.json()
        assert body["pagination"]["total"] == 1
        assert body["deliveries"][0]["event_type"] == "payment.succeeded"
        assert body["deliveries"][0]["status"] == "pending"

        response = client.get(f"/api/webhooks/{webhook.id}", headers=auth_headers(owner))
        assert response.json()["delivery_count"] == 1


class TestQueueDelivery:

    def test_only_subscribed_active_webhooks(self, db_session, company, make_webhook, deliver_webhook_mock):
        subscribed = make_webhook(company, events=["payment.succeeded"])
        make_webhook(company, events=["product.created"])
        make_webhook(company, events=["payment.succeeded"], active=False)

        queued = queue_webhook_delivery(db_session, company.id, "payment.succeeded", {"amount": 2999})
        assert [d.webhook_id for d in queued] == [subscribed.id]
        deliver_webhook_mock.delay.assert_called_once_with(str(queued[0].id))

    def test_other_company_webhooks_untouched(self, db_session, company, make_company, make_webhook,
                                              deliver_webhook_mock):
        make_webhook(make_company())
        assert queue_webhook_delivery(db_session, company.id, "payment.succeeded", {}) == []
        deliver_webhook_mock.delay.assert_not_called()

    def test_duplicate_event_skipped(self, db_session, company, make_webhook, deliver_webhook_mock):
        make_webhook(company)
        event_id = generate_event_id()
        queue_webhook_delivery(db_session, company.id, "payment.succeeded", {}, event_id=event_id)
        second = queue_webhook_delivery(db_session, company.id, "payment.succeeded", {}, event_id=event_id)
        assert second == []
        assert deliver_webhook_mock.delay.call_count == 1

    def test_broker_down_keeps_pending(self, db_session, company, make_webhook, deliver_webhook_mock):
        make_webhook(company)
        deliver_webhook_mock.delay.side_effect = ConnectionError("redis down")
        queued = queue_webhook_delivery(db_session, company.id, "payment.succeeded", {})
        assert len(queued) == 1
        with run_in_tenant_context(company.id):
            assert db_session.query(WebhookDelivery).one().status == "pending"

    def test_event_id_format(self):
        event_id = generate_event_id()
        prefix, millis, token = event_id.split("_")
        assert prefix == "evt"
        assert millis.isdigit()
        assert len(token) == 16


class TestSignature:

    def test_generate_and_verify(self):
        signature = generate_webhook_signature('{"a": 1}', "secret")
        assert signature.startswith("sha256=")
        assert verify_webhook_signature('{"a": 1}', signature, "secret")
        assert not verify_webhook_signature('{"a": 2}', signature, "secret")
        assert not verify_webhook_signature('{"a": 1}', signature, "other")

    def test_secret_helpers(self):
        assert mask_secret("whsec_abcdef123") == "whsec_ab..."
        assert generate_webhook_secret() != generate_webhook_secret()


class TestDeliveryAttempt:

    @pytest.fixture
    def delivery(self, db_session, company, make_webhook):
        make_webhook(company)
        return queue_webhook_delivery(db_session, company.id, "payment.succeeded", {"amount": 2999})[0]

    def test_retry_policy(self):
        assert should_retry(None)
        assert should_retry(500)
        assert should_retry(503)
        assert not should_retry(400)
        assert not should_retry(404)
        assert [retry_countdown(n) for n in (1, 2, 3)] == [5, 25, 125]

    def test_payload_and_headers(self, delivery):
        payload = json.loads(build_payload(delivery))
        assert payload["event_id"] == delivery.event_id
        assert payload["event_type"] == "payment.succeeded"
        assert payload["data"] == {"amount": 2999}
        assert "timestamp" in payload

        headers = build_headers(delivery, "sha256=abc")
        assert headers["X-Webhook-Signature"] == "sha256=abc"
        assert headers["X-Webhook-Event"] == "payment.succeeded"
        assert headers["X-Webhook-Event-ID"] == delivery.event_id
        assert headers["User-Agent"] == "Whop-Webhook/1.0"

    def test_success_signs_payload(self, delivery):
        webhook = delivery.webhook
        with patch("app.modules.webhooks.delivery.requests.post", return_value=_response(200)) as post:
            result = attempt_delivery(delivery, webhook, 1)

        assert result.success
        assert delivery.status == "delivered"
        assert delivery.attempts == 1
        assert delivery.delivered_at is not None
        sent = post.call_args.kwargs
        assert verify_webhook_signature(sent["data"], sent["headers"]["X-Webhook-Signature"], webhook.secret)

    def test_network_error(self, delivery):
        with patch("app.modules.webhooks.delivery.requests.post",
                   side_effect=requests.ConnectionError("refused")):
            result = attempt_delivery(delivery, delivery.webhook, 2)
        assert not result.success
        assert result.status_code is None
        assert delivery.status == "failed"
        assert delivery.attempts == 2

    def test_response_body_truncated(self, delivery):
        with patch("app.modules.webhooks.delivery.requests.post", return_value=_response(500, "x" * 20_000)):
            result = attempt_delivery(delivery, delivery.webhook, 1)
        assert result.error == "HTTP 500"
        assert len(delivery.response_body) == 10_000


class TestDeliverWebhookTask:

    @pytest.fixture
    def delivery_id(self, db_session, company, make_webhook):
        make_webhook(company)
        return str(queue_webhook_delivery(db_session, company.id, "payment.succeeded", {})[0].id)

    def _stored(self, db_session, company):
        db_session.expire_all()
        with run_in_tenant_context(company.id):
            return db_session.query(WebhookDelivery).one()

    def test_delivered(self, db_session, company, delivery_id):
        with patch("app.modules.webhooks.delivery.requests.post", return_value=_response(204, "")):
            result = deliver_webhook(delivery_id)
        assert result == {"status": "delivered", "delivery_id": delivery_id, "attempts": 1}
        stored = self._stored(db_session, company)
        assert stored.status == "delivered"
        assert stored.response_status == 204

    def test_client_error_is_final(self, db_session, company, delivery_id):
        with patch("app.modules.webhooks.delivery.requests.post", return_value=_response(410, "gone")):
            result = deliver_webhook(delivery_id)
        assert result["status"] == "failed"
        assert result["error"] == "HTTP 410"
        assert self._stored(db_session, company).status == "failed"

    def test_server_error_retries(self, db_session, company, delivery_id):
        with patch("app.modules.webhooks.delivery.requests.post", return_value=_response(502, "bad gateway")):
            with pytest.raises(WebhookDeliveryError):
                deliver_webhook(delivery_id)
        assert self._stored(db_session, company).attempts == 1

    def test_disabled_webhook_skipped(self, db_session, company, delivery_id):
        with run_in_tenant_context(company.id):
            db_session.query(Webhook).one().active = False
            db_session.commit()
        with patch("app.modules.webhooks.delivery.requests.post") as post:
            result = deliver_webhook(delivery_id)
        assert result["status"] == "skipped"
        post.assert_not_called()

    def test_missing_delivery(self):
        missing_id = "00000000-0000-0000-0000-000000000000"
        assert deliver_webhook(missing_id) == {"status": "missing", "delivery_id": missing_id}
