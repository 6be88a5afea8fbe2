"""
Python client for the Whop SaaS API.

Usage::

    client = WhopSaaSClient(base_url="https://api.example.com", session_token=token)
    products = client.products.list(company_id=company_id)
    client.memberships.validate_license(key, hardware_id="HW-123")
"""
import logging
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3000"
DEFAULT_TIMEOUT = 30
SESSION_COOKIE_NAME = "session_token"


class WhopSaaSError(Exception):
    """Error response from the API."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


def _clean(params: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in params.items() if value is not None}


class _Resource:
    path = ""

    def __init__(self, client: "WhopSaaSClient"):
        self._client = client

    def _request(self, method: str, suffix: str = "", **kwargs):
        return self._client.request(method, f"{self.path}{suffix}", **kwargs)


class ProductsAPI(_Resource):
    path = "/api/products"

    def list(self, company_id, active: Optional[bool] = None, limit: Optional[int] = None, offset: Optional[int] = None):
        params = _clean({"company_id": company_id, "active": active, "limit": limit, "offset": offset})
        return self._request("GET", params=params)

    def create(self, data: Dict[str, Any]):
        return self._request("POST", json=data)

    def get(self, product_id):
        return self._request("GET", f"/{product_id}")

    def update(self, product_id, data: Dict[str, Any]):
        return self._request("PUT", f"/{product_id}", json=data)

    def delete(self, product_id):
        return self._request("DELETE", f"/{product_id}")


class CompaniesAPI(_Resource):
    path = "/api/companies"

    def list(self, role: Optional[str] = None, type: Optional[str] = None,
             limit: Optional[int] = None, offset: Optional[int] = None):
        params = _clean({"role": role, "type": type, "limit": limit, "offset": offset})
        return self._request("GET", params=params)

    def create(self, data: Dict[str, Any]):
        return self._request("POST", json=data)

    def get(self, company_id):
        return self._request("GET", f"/{company_id}")

    def update(self, company_id, data: Dict[str, Any]):
        return self._request("PUT", f"/{company_id}", json=data)


class MembershipsAPI(_Resource):
    path = "/api/memberships"

    def list(self, company_id=None, user_id=None, product_id=None, status: Optional[str] = None,
             limit: Optional[int] = None, offset: Optional[int] = None):
        params = _clean({
            "company_id": company_id,
            "user_id": user_id,
            "product_id": product_id,
            "status": status,
            "limit": limit,
            "offset": offset,
        })
        return self._request("GET", params=params)

    def get(self, membership_id):
        return self._request("GET", f"/{membership_id}")

    def update(self, membership_id, data: Dict[str, Any]):
        return self._request("PUT", f"/{membership_id}", json=data)

    def validate_license(self, key: str, hardware_id: str, device_name: Optional[str] = None,
                         ip_address: Optional[str] = None):
        body = _clean({"hardware_id": hardware_id, "device_name": device_name, "ip_address": ip_address})
        return self._request("POST", f"/{key}/validate_license", json=body)


class WebhooksAPI(_Resource):
    path = "/api/webhooks"

    def list(self, company_id, active: Optional[bool] = None, limit: Optional[int] = None, offset: Optional[int] = None):
        params = _clean({"company_id": company_id, "active": active, "limit": limit, "offset": offset})
        return self._request("GET", params=params)

    def create(self, data: Dict[str, Any]):
        return self._request("POST", json=data)

    def get(self, webhook_id):
        return self._request("GET", f"/{webhook_id}")

    def update(self, webhook_id, data: Dict[str, Any]):
        return self._request("PUT", f"/{webhook_id}", json=data)

    def delete(self, webhook_id):
        return self._request("DELETE", f"/{webhook_id}")


class WhopSaaSClient:
    """
    Cliente HTTP sobre requests.

    Args:
        base_url: URL del servidor
        session_token: JWT de sesión; se envía como cookie
        session: sesión HTTP compatible con requests (por defecto requests.Session())
    """

    def __init__(self, base_url: str = DEFAULT_BASE_URL, session_token: Optional[str] = None,
                 session=None, timeout: int = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session_token = session_token
        self.session = session or requests.Session()
        self.timeout = timeout

        self.products = ProductsAPI(self)
        self.companies = CompaniesAPI(self)
        self.memberships = MembershipsAPI(self)
        self.webhooks = WebhooksAPI(self)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.session_token:
            headers["Cookie"] = f"{SESSION_COOKIE_NAME}={self.session_token}"
        return headers

    def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                json: Optional[Dict[str, Any]] = None):
        url = f"{self.base_url}{path}"
        logger.debug(f"[SDK] {method} {url}")

        response = self.session.request(
            method, url, params=params, json=json, headers=self._headers(), timeout=self.timeout
        )

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            message = f"API Error: {response.status_code}"
            if isinstance(body, dict):
                detail = body.get("detail") or body.get("error") or body.get("reason")
                if isinstance(detail, dict):
                    detail = detail.get("error")
                if detail:
                    message = detail if isinstance(detail, str) else str(detail)
            raise WhopSaaSError(message, response.status_code, body)

        return body
