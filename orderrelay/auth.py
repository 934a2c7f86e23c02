"""Dashboard authentication: HS256 bearer JWTs carrying the tenant id.

Webhook POST routes are public (they are signature-verified by the handler
instead); everything else under ``/api`` needs a valid bearer token whose
``tenant_id`` claim scopes every query and mutation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import Request
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"
_TOKEN_TTL = timedelta(hours=24)

# Exact (method, path) pairs that skip authentication
PUBLIC_ROUTES: set[tuple[str, str]] = {
    ("GET", "/api/health"),
    ("POST", "/api/webhook/ecommerce-to-delivery"),
}

# Partner status webhooks: /api/webhook/delivery/{integration_id}
_PUBLIC_WEBHOOK_PREFIX = "/api/webhook/delivery/"

SKIP_METHODS = {"OPTIONS"}


def create_token(
    tenant_id: str,
    secret: str,
    *,
    subject: str | None = None,
    ttl: timedelta = _TOKEN_TTL,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject or tenant_id,
        "tenant_id": tenant_id,
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def verify_token(token: str, secret: str) -> dict:
    """Decode and validate a bearer token.

    Raises:
        ValueError: bad signature, expired, or missing ``tenant_id``.
    """
    try:
        claims = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except JWTError as e:
        raise ValueError(f"Invalid token: {e}") from e
    if not claims.get("tenant_id"):
        raise ValueError("Token carries no tenant_id")
    return claims


def extract_bearer_token(auth_header: str | None) -> str | None:
    if not auth_header:
        return None
    scheme, _, value = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def is_public(method: str, path: str) -> bool:
    if (method, path) in PUBLIC_ROUTES:
        return True
    return method == "POST" and path.startswith(_PUBLIC_WEBHOOK_PREFIX)


class AuthMiddleware(BaseHTTPMiddleware):
    """Verify the bearer token and put the tenant on ``request.state``."""

    async def dispatch(self, request: Request, call_next):
        method = request.method
        path = request.url.path

        if method in SKIP_METHODS or not path.startswith("/api") or is_public(method, path):
            return await call_next(request)

        token = extract_bearer_token(request.headers.get("authorization"))
        if not token:
            return JSONResponse(
                {"message": "Authentication required"},
                status_code=401,
                headers={"WWW-Authenticate": "Bearer"},
            )

        try:
            claims = verify_token(token, request.app.state.settings.jwt_secret)
        except ValueError as e:
            logger.debug("Auth failed: %s", e)
            return JSONResponse(
                {"message": "Invalid or expired credentials"},
                status_code=401,
                headers={"WWW-Authenticate": "Bearer"},
            )

        request.state.user = claims
        request.state.tenant_id = claims["tenant_id"]
        return await call_next(request)
