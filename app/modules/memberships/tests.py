"""
Tests de membresías y licencias: permisos de lectura/actualización,
emisión de claves, validación con vinculación de hardware y expiración.
"""
import re
import pytest
from datetime import datetime, timedelta, timezone

from app.common.tenancy import run_in_tenant_context, without_tenant_isolation
from app.modules.auth.models import CompanyRole
from app.modules.memberships.models import Membership, LicenseKey
from app.modules.memberships.service import generate_license_key, expire_due_memberships
from app.modules.memberships.tasks import expire_memberships
from app.modules.webhooks.models import Webhook, WebhookDelivery


@pytest.fixture
def owner(make_user):
    return make_user()


@pytest.fixture
def customer(make_user):
    return make_user(username="customer")


@pytest.fixture
def company(make_company, owner):
    return make_company(owner=owner)


@pytest.fixture
def product(make_product, company):
    return make_product(company, title="Desktop App", description="Pro license")


@pytest.fixture
def membership(make_membership, company, customer, product):
    return make_membership(company, customer, product)


@pytest.fixture
def make_license(db_session):
    def _make_license(membership, **kwargs):
        with run_in_tenant_context(membership.company_id):
            license_key = LicenseKey(
                membership_id=membership.id,
                product_id=membership.product_id,
                user_id=membership.user_id,
                key=kwargs.pop("key", generate_license_key()),
                **kwargs,
            )
            db_session.add(license_key)
            db_session.commit()
            db_session.refresh(license_key)
        return license_key

    return _make_license


class TestListMemberships:

    def test_own_memberships_without_company(self, client, membership, customer, make_company,
                                             make_product, make_membership, auth_headers):
        other_company = make_company()
        make_membership(other_company, customer, make_product(other_company))
        response = client.get("/api/memberships", headers=auth_headers(customer))
        assert response.status_code == 200
        assert response.json()["pagination"]["total"] == 2

    def test_company_listing_requires_membership(self, client, company, make_user, auth_headers):
        response = client.get("/api/memberships", params={"company_id": str(company.id)},
                              headers=auth_headers(make_user()))
        assert response.status_code == 403

    def test_admin_lists_company(self, client, company, owner, membership, auth_headers):
        response = client.get("/api/memberships", params={"company_id": str(company.id)},
                              headers=auth_headers(owner))
        items = response.json()["memberships"]
        assert [m["id"] for m in items] == [str(membership.id)]
        assert items[0]["product"]["title"] == "Desktop App"
        assert items[0]["user"]["email"] == membership.user.email

    def test_member_cannot_filter_other_user(self, client, company, customer, membership, make_user,
                                             add_member, auth_headers):
        member = make_user()
        add_member(company, member)
        response = client.get("/api/memberships", params={
            "company_id": str(company.id),
            "user_id": str(customer.id),
        }, headers=auth_headers(member))
        assert response.status_code == 403

    def test_status_filter(self, client, company, owner, customer, product, membership, make_membership,
                           auth_headers):
        make_membership(company, customer, product, status="canceled")
        response = client.get("/api/memberships", params={
            "company_id": str(company.id),
            "status": "canceled",
        }, headers=auth_headers(owner))
        assert [m["status"] for m in response.json()["memberships"]] == ["canceled"]


class TestGetMembership:

    def test_owner_of_membership(self, client, membership, customer, auth_headers):
        response = client.get(f"/api/memberships/{membership.id}", headers=auth_headers(customer))
        assert response.status_code == 200

    def test_stranger_forbidden(self, client, membership, make_user, auth_headers):
        response = client.get(f"/api/memberships/{membership.id}", headers=auth_headers(make_user()))
        assert response.status_code == 403

    def test_missing(self, client, owner, auth_headers):
        response = client.get("/api/memberships/00000000-0000-0000-0000-000000000000",
                              headers=auth_headers(owner))
        assert response.status_code == 404


class TestUpdateMembership:

    def test_customer_cannot_change_status(self, client, membership, customer, auth_headers):
        response = client.put(f"/api/memberships/{membership.id}", json={"status": "expired"},
                              headers=auth_headers(customer))
        assert response.status_code == 403

    def test_customer_cannot_update_metadata(self, client, membership, customer, auth_headers):
        response = client.put(f"/api/memberships/{membership.id}", json={"metadata": {"a": 1}},
                              headers=auth_headers(customer))
        assert response.status_code == 403

    def test_customer_schedules_cancel(self, client, membership, customer, auth_headers):
        cancel_at = (datetime.now(timezone.utc) + timedelta(days=10)).isoformat()
        response = client.put(f"/api/memberships/{membership.id}", json={"cancel_at": cancel_at},
                              headers=auth_headers(customer))
        assert response.status_code == 200
        assert response.json()["status"] == "active"
        assert response.json()["cancel_at"] is not None

    def test_null_cancel_at_cancels_now(self, client, db_session, company, membership, customer,
                                        auth_headers, deliver_webhook_mock):
        with run_in_tenant_context(company.id):
            db_session.add(Webhook(url="https://hooks.example.com", events=["membership.canceled"], secret="s"))
            db_session.commit()

        response = client.put(f"/api/memberships/{membership.id}", json={"cancel_at": None},
                              headers=auth_headers(customer))
        body = response.json()
        assert body["status"] == "canceled"
        assert body["canceled_at"] is not None
        with run_in_tenant_context(company.id):
            assert db_session.query(WebhookDelivery).one().event_type == "membership.canceled"

    def test_admin_changes_status_and_metadata(self, client, membership, owner, auth_headers):
        response = client.put(f"/api/memberships/{membership.id}", json={
            "status": "past_due",
            "metadata": {"note": "card expired"},
        }, headers=auth_headers(owner))
        assert response.status_code == 200
        assert response.json()["status"] == "past_due"
        assert response.json()["metadata"] == {"note": "card expired"}


class TestLicenseKeys:

    def test_key_format(self):
        assert re.fullmatch(r"[A-Z0-9]{5}(-[A-Z0-9]{5}){3}", generate_license_key())

    def test_admin_issues_key(self, client, membership, owner, auth_headers):
        response = client.post(f"/api/memberships/{membership.id}/license_keys",
                               json={"max_activations": 2}, headers=auth_headers(owner))
        assert response.status_code == 201
        body = response.json()
        assert re.fullmatch(r"[A-Z0-9]{5}(-[A-Z0-9]{5}){3}", body["key"])
        assert body["max_activations"] == 2
        assert body["current_activations"] == 0
        assert body["company_id"] == str(membership.company_id)

    def test_customer_cannot_issue(self, client, membership, customer, auth_headers):
        response = client.post(f"/api/memberships/{membership.id}/license_keys", json={},
                               headers=auth_headers(customer))
        assert response.status_code == 403

    def test_customer_lists_keys(self, client, membership, customer, make_license, auth_headers):
        license_key = make_license(membership)
        response = client.get(f"/api/memberships/{membership.id}/license_keys", headers=auth_headers(customer))
        assert [k["key"] for k in response.json()["license_keys"]] == [license_key.key]

    def test_deactivate_clears_binding(self, client, membership, owner, make_license, auth_headers):
        license_key = make_license(membership, current_activations=1,
                                   metadata_={"hardware_id": "HW-1", "plan": "pro"})
        response = client.post(
            f"/api/memberships/{membership.id}/license_keys/{license_key.id}/deactivate",
            headers=auth_headers(owner)
        )
        assert response.status_code == 200
        body = response.json()
        assert body["active"] is False
        assert body["current_activations"] == 0
        assert body["metadata"] == {"plan": "pro"}


class TestValidateLicense:

    def _validate(self, client, key, **body):
        body.setdefault("hardware_id", "HW-1")
        return client.post(f"/api/memberships/{key}/validate_license", json=body)

    def test_no_session_needed_and_binds_hardware(self, client, db_session, membership, customer,
                                                  make_license):
        license_key = make_license(membership)
        response = self._validate(client, license_key.key, device_name="Laptop", ip_address="9.9.9.9")
        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is True
        assert body["product"]["title"] == "Desktop App"
        assert body["user"]["username"] == "customer"
        assert body["activations"] == {"current": 1, "max": 1}

        db_session.expire_all()
        with without_tenant_isolation():
            stored = db_session.get(LicenseKey, license_key.id)
        assert stored.metadata_["hardware_id"] == "HW-1"
        assert stored.metadata_["last_ip"] == "9.9.9.9"
        assert stored.last_validated_at is not None

    def test_same_device_does_not_consume_activation(self, client, membership, make_license):
        license_key = make_license(membership)
        self._validate(client, license_key.key)
        response = self._validate(client, license_key.key)
        assert response.status_code == 200
        assert response.json()["activations"]["current"] == 1

    def test_ip_from_forwarded_header(self, client, db_session, membership, make_license):
        license_key = make_license(membership)
        client.post(f"/api/memberships/{license_key.key}/validate_license", json={"hardware_id": "HW-1"},
                    headers={"x-forwarded-for": "7.7.7.7, 10.0.0.1"})
        db_session.expire_all()
        with without_tenant_isolation():
            assert db_session.get(LicenseKey, license_key.id).metadata_["last_ip"] == "7.7.7.7"

    def test_not_found(self, client):
        response = self._validate(client, "NOPE0-NOPE0-NOPE0-NOPE0")
        assert response.status_code == 404
        assert response.json() == {"valid": False, "reason": "License not found"}

    def test_inactive(self, client, membership, make_license):
        license_key = make_license(membership, active=False)
        response = self._validate(client, license_key.key)
        assert response.status_code == 403
        assert response.json()["reason"] == "License inactive"

    def test_expired(self, client, membership, make_license):
        license_key = make_license(membership, expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        response = self._validate(client, license_key.key)
        assert response.status_code == 403
        assert response.json()["reason"] == "License expired"

    def test_hardware_mismatch(self, client, membership, make_license):
        license_key = make_license(membership, current_activations=1, metadata_={"hardware_id": "HW-1"})
        response = self._validate(client, license_key.key, hardware_id="HW-2")
        assert response.status_code == 403
        assert response.json()["reason"] == "Hardware mismatch"
        assert response.json()["details"] == "This license is bound to a different device"

    def test_activation_limit(self, client, membership, make_license):
        license_key = make_license(membership, current_activations=1, max_activations=1)
        response = self._validate(client, license_key.key)
        assert response.status_code == 403
        assert response.json()["reason"] == "Activation limit reached"
        assert response.json()["details"] == "Maximum 1 activation(s) allowed"

    def test_missing_hardware_id(self, client, membership, make_license):
        license_key = make_license(membership)
        response = client.post(f"/api/memberships/{license_key.key}/validate_license", json={})
        assert response.status_code == 422

    def test_activation_triggers_webhook(self, client, db_session, company, membership, make_license):
        with run_in_tenant_context(company.id):
            db_session.add(Webhook(url="https://hooks.example.com", events=["license.activated"], secret="s"))
            db_session.commit()
        license_key = make_license(membership)
        self._validate(client, license_key.key)
        self._validate(client, license_key.key)
        with run_in_tenant_context(company.id):
            deliveries = db_session.query(WebhookDelivery).all()
        assert [d.event_type for d in deliveries] == ["license.activated"]


class TestExpireMemberships:

    def test_expires_and_cancels_due(self, db_session, company, customer, product, make_membership):
        now = datetime.now(timezone.utc)
        ended = make_membership(company, customer, product, current_period_end=now - timedelta(hours=1))
        scheduled = make_membership(company, customer, product, cancel_at=now - timedelta(minutes=5))
        current = make_membership(company, customer, product, current_period_end=now + timedelta(days=5))

        result = expire_due_memberships(db_session)
        assert result == {"expired": 1, "canceled": 1}

        db_session.expire_all()
        with without_tenant_isolation():
            assert db_session.get(Membership, ended.id).status == "expired"
            assert db_session.get(Membership, scheduled.id).status == "canceled"
            assert db_session.get(Membership, current.id).status == "active"

    def test_celery_task_runs(self, company, customer, product, make_membership):
        make_membership(company, customer, product,
                        current_period_end=datetime.now(timezone.utc) - timedelta(days=1))
        assert expire_memberships.run() == {"expired": 1, "canceled": 0}
