"""FastAPI middleware: request ID injection and rate limiting."""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

logger = structlog.get_logger(__name__)

# Checked in order; the first header present wins
_CLIENT_IP_HEADERS = ("cf-connecting-ip", "true-client-ip", "x-real-ip")


def client_ip(request: Request, *, trust_proxy_headers: bool = False) -> str:
    """Client address for audit records and rate limiting.

    Reverse-proxy headers are client-controlled unless a trusted proxy sets
    them, so they are only read when ``trust_proxy_headers`` is on.
    """
    if not trust_proxy_headers:
        return request.client.host if request.client else "unknown"
    for header in _CLIENT_IP_HEADERS:
        value = request.headers.get(header, "").strip()
        if value:
            return value
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")[:512]


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Adds a unique X-Request-ID header to every response."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Simple in-memory rate limiter for the authentication endpoints.

    Limits requests per IP to `max_requests` within `window_seconds`.
    Only applies to paths starting with one of the given prefixes. Idle
    addresses are swept once per window.
    """

    def __init__(
        self,
        app: object,
        max_requests: int = 30,
        window_seconds: int = 60,
        prefixes: tuple[str, ...] = ("/api/auth/", "/api/webauthn/"),
        trust_proxy_headers: bool = False,
    ) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._max_requests = max_requests
        self._window = window_seconds
        self._prefixes = prefixes
        self._trust_proxy_headers = trust_proxy_headers
        self._hits: dict[str, list[float]] = {}
        self._last_sweep = 0.0

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not request.url.path.startswith(self._prefixes):
            return await call_next(request)

        ip = client_ip(request, trust_proxy_headers=self._trust_proxy_headers)
        now = time.monotonic()
        if now - self._last_sweep >= self._window:
            self._sweep(now)

        hits = [t for t in self._hits.get(ip, []) if now - t < self._window]
        self._hits[ip] = hits

        if len(hits) >= self._max_requests:
            from starlette.responses import JSONResponse

            logger.warning("rate_limit_exceeded", ip=ip, path=request.url.path)
            return JSONResponse(
                {"detail": "Too many requests. Please try again later.", "code": "rate_limited"},
                status_code=429,
                headers={"Retry-After": str(self._window)},
            )

        hits.append(now)
        return await call_next(request)

    def _sweep(self, now: float) -> None:
        """Drop addresses with no hit inside the current window."""
        self._hits = {
            ip: hits for ip, hits in self._hits.items() if hits and now - hits[-1] < self._window
        }
        self._last_sweep = now
