"""
Request pipeline: security headers, rate limiting and session authentication
"""
import time
import logging
from typing import Dict, Optional, Tuple

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings
from app.common.validators import client_ip_from_headers
from app.modules.auth.utils import decode_session_token, token_from_request, clear_session_cookie

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Security headers on every response. Framing is allowed only for whop.com
    so the app can run inside the Whop iframe.
    """

    HEADERS = {
        "Content-Security-Policy": "frame-ancestors 'self' https://*.whop.com https://whop.com",
        "X-Frame-Options": "ALLOW-FROM https://whop.com",
        "X-Content-Type-Options": "nosniff",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=()",
        "X-XSS-Protection": "1; mode=block",
    }

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in self.HEADERS.items():
            response.headers[name] = value
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed-window rate limit per client IP, kept in process memory.
    Forwarded headers are honored only when the app sits behind a trusted proxy
    (TRUST_PROXY_HEADERS); otherwise the peer address is the key.
    """

    def __init__(self, app, max_requests: Optional[int] = None, window_seconds: Optional[int] = None,
                 trust_proxy_headers: Optional[bool] = None):
        super().__init__(app)
        self.trust_proxy_headers = (settings.TRUST_PROXY_HEADERS if trust_proxy_headers is None
                                    else trust_proxy_headers)
        self.max_requests = max_requests or settings.RATE_LIMIT_REQUESTS
        self.window_seconds = window_seconds or settings.RATE_LIMIT_WINDOW
        # ip -> (window_start, count)
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._last_sweep = time.monotonic()

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.window_seconds:
            return
        expired = [ip for ip, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for ip in expired:
            del self._windows[ip]
        self._last_sweep = now

    def hit(self, client_ip: str, now: Optional[float] = None) -> bool:
        """Registra una petición; False si el cliente superó el límite."""
        now = time.monotonic() if now is None else now
        self._sweep(now)

        start, count = self._windows.get(client_ip, (now, 0))
        if now - start >= self.window_seconds:
            start, count = now, 0

        count += 1
        self._windows[client_ip] = (start, count)
        return count <= self.max_requests

    async def dispatch(self, request: Request, call_next):
        peer = request.client.host if request.client else None
        if self.trust_proxy_headers:
            client_ip = client_ip_from_headers(request.headers, peer)
        else:
            client_ip = peer or "unknown"

        if not self.hit(client_ip):
            logger.warning(f"Rate limit exceeded for {client_ip}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "detail": "Too many requests",
                    "message": f"Rate limit of {self.max_requests} requests per {self.window_seconds}s exceeded",
                },
                headers={"Retry-After": str(self.window_seconds)},
            )

        return await call_next(request)


class SessionAuthMiddleware(BaseHTTPMiddleware):
    """
    Requires a valid session for /api routes, except the public prefixes
    and license validation. The decoded session is left on request.state.
    """

    PUBLIC_PREFIXES = (
        "/api/auth",
        "/api/webhooks/stripe",
        "/api/onboarding",
        "/api/docs",
        "/api/openapi",
    )

    @classmethod
    def is_public(cls, path: str) -> bool:
        if not path.startswith("/api"):
            return True
        if any(path == prefix or path.startswith(prefix + "/") for prefix in cls.PUBLIC_PREFIXES):
            return True
        return path.startswith("/api/memberships/") and path.endswith("/validate_license")

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or self.is_public(request.url.path):
            return await call_next(request)

        token = token_from_request(request)
        if not token:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Authentication required"},
            )

        session = decode_session_token(token)
        if session is None:
            response = JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Invalid or expired session"},
            )
            clear_session_cookie(response)
            return response

        request.state.session = session
        return await call_next(request)
