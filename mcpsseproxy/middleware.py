"""Authentication, security-header and rate-limit middlewares."""

from __future__ import annotations

import os
from typing import Awaitable, Callable

from aiohttp import web

from .ratelimit import RateLimiter

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

HEALTH_PATH = "/health"
SECURITY_HEADERS_KEY = "security_headers"

_ALLOWED_HEADERS = ", ".join(
    [
        "Content-Type",
        "Authorization",
        "Cache-Control",
        "Last-Event-ID",
        "ENV_*",
        "X-Requested-With",
    ]
)


def _error(message: str, status: int) -> web.Response:
    return web.Response(
        status=status,
        text=message + "\n",
        content_type="text/plain",
        headers={"X-Content-Type-Options": "nosniff"},
    )


def _exempt(request: web.Request) -> bool:
    return request.path == HEALTH_PATH or request.method == "OPTIONS"


@web.middleware
async def auth_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Require ``Authorization: Bearer <MAXIM_SECRET>`` on all but health and preflight."""
    if _exempt(request):
        return await handler(request)

    auth_header = request.headers.get("Authorization", "")
    if not auth_header:
        return _error("Authorization header required", 401)

    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return _error("Invalid authorization format", 401)

    secret = os.environ.get("MAXIM_SECRET", "")
    if not secret:
        return _error("Server configuration error", 500)

    if parts[1] != secret:
        return _error("Invalid token", 401)

    return await handler(request)


def _security_header_values(request: web.Request) -> dict[str, str]:
    headers: dict[str, str] = {}
    if request.secure:
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    headers.update(
        {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "X-XSS-Protection": "1; mode=block",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Content-Security-Policy": "default-src 'self'; connect-src 'self' *",
        }
    )
    origin = request.headers.get("Origin", "")
    if origin:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
    else:
        headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    headers["Access-Control-Allow-Headers"] = _ALLOWED_HEADERS
    headers["Access-Control-Max-Age"] = "86400"
    return headers


@web.middleware
async def security_headers(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Answer health checks and preflights, and add security and CORS headers."""
    if request.path == HEALTH_PATH:
        return web.Response(status=200)

    headers = _security_header_values(request)

    if request.method == "OPTIONS":
        headers["Access-Control-Expose-Headers"] = "Content-Type, Last-Event-ID"
        return web.Response(status=200, headers=headers)

    # Streaming handlers read these before sending their headers.
    request[SECURITY_HEADERS_KEY] = headers
    try:
        response = await handler(request)
    except web.HTTPException as exc:
        for name, value in headers.items():
            exc.headers.setdefault(name, value)
        raise
    if not response.prepared:
        for name, value in headers.items():
            response.headers.setdefault(name, value)
    return response


def client_ip(request: web.Request) -> str:
    """Return the client address from X-Forwarded-For or the peer, without a port."""
    ip = request.headers.get("X-Forwarded-For", "") or (request.remote or "")
    if ":" in ip:
        ip = ip.split(":")[0]
    return ip


def rate_limit_middleware(limiter: RateLimiter):
    """Build a middleware that rejects clients exceeding ``limiter`` with 429."""

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if _exempt(request):
            return await handler(request)
        if not limiter.allow(client_ip(request)):
            return _error("Rate limit exceeded", 429)
        return await handler(request)

    return middleware