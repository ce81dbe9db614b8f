"""
Identity provider for ScoreBase.

Bearer tokens are HMAC-SHA256 signed, JWT-shaped strings carrying the caller's
user id, tenant id and roles. ``verify_token`` is the only entry point the
request path needs; ``create_token`` exists for operators and tests.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Optional

from fastapi import Depends, Header, Request

from shared.config import Settings, get_settings
from shared.errors import AuthError, ForbiddenError
from shared.models.domain import AuthContext, EventMetadata
from shared.utils.logging import get_logger

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "


def _b64_encode(data: str) -> str:
    return base64.urlsafe_b64encode(data.encode()).rstrip(b"=").decode()


def _b64_decode(data: str) -> str:
    padding = 4 - len(data) % 4
    if padding != 4:
        data += "=" * padding
    return base64.urlsafe_b64decode(data).decode()


def _sign(secret: str, signing_input: str) -> str:
    return hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).hexdigest()


def create_token(
    user_id: str,
    tenant_id: Optional[str],
    roles: list[str],
    *,
    username: Optional[str] = None,
    ttl_s: Optional[int] = None,
    settings: Settings | None = None,
) -> str:
    """Issue a signed token for the given identity."""
    settings = settings or get_settings()
    now = int(time.time())
    claims: dict[str, Any] = {
        "sub": user_id,
        "roles": roles,
        "iat": now,
        "exp": now + (ttl_s if ttl_s is not None else settings.token_ttl_s),
    }
    if tenant_id is not None:
        claims["tenant_id"] = tenant_id
    if username:
        claims["username"] = username
    header_b64 = _b64_encode(json.dumps({"alg": "HS256", "typ": "JWT"}))
    payload_b64 = _b64_encode(json.dumps(claims))
    signing_input = f"{header_b64}.{payload_b64}"
    return f"{signing_input}.{_sign(settings.token_secret, signing_input)}"


def decode_token(token: str, settings: Settings | None = None) -> dict[str, Any]:
    """Verify signature and expiry, returning the claims."""
    settings = settings or get_settings()
    parts = token.split(".")
    if len(parts) != 3:
        raise AuthError("INVALID_TOKEN", "Malformed token")

    signing_input = f"{parts[0]}.{parts[1]}"
    if not hmac.compare_digest(_sign(settings.token_secret, signing_input), parts[2]):
        raise AuthError("INVALID_SIGNATURE", "Token signature is invalid")

    try:
        claims = json.loads(_b64_decode(parts[1]))
    except (ValueError, UnicodeDecodeError):
        raise AuthError("INVALID_TOKEN", "Token payload is not valid JSON") from None
    if not isinstance(claims, dict):
        raise AuthError("INVALID_TOKEN", "Token payload must be an object")

    if claims.get("exp", 0) < time.time():
        raise AuthError("EXPIRED_TOKEN", "Token has expired")
    return claims


def verify_token(authorization: Optional[str], settings: Settings | None = None) -> AuthContext:
    """Resolve an ``Authorization: Bearer <token>`` header into an AuthContext."""
    if not authorization:
        raise AuthError("MISSING_TOKEN", "Authorization header is required")
    if not authorization.startswith(BEARER_PREFIX):
        raise AuthError("INVALID_TOKEN", "Authorization header must use the Bearer scheme")
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthError("MISSING_TOKEN", "Bearer token is empty")

    claims = decode_token(token, settings)
    if not claims.get("sub"):
        raise AuthError("INVALID_TOKEN", "Token is missing the subject claim")
    tenant_id = claims.get("tenant_id")
    if not tenant_id:
        raise AuthError("MISSING_TENANT_ID", "Token is missing the tenant_id claim")

    roles = claims.get("roles") or []
    return AuthContext(
        user_id=str(claims["sub"]),
        tenant_id=str(tenant_id),
        roles=[str(r) for r in roles] if isinstance(roles, list) else [],
        username=claims.get("username"),
    )


# ── FastAPI dependencies ─────────────────────────────────────────────

async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    return verify_token(authorization)


async def require_scorekeeper(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    role = get_settings().scorekeeper_role
    if not auth.has_role(role):
        logger.info("role_denied", user_id=auth.user_id, tenant_id=auth.tenant_id, required=role)
        raise ForbiddenError("FORBIDDEN", f"The {role} role is required", {"required_role": role})
    return auth


def request_metadata(request: Request, auth: AuthContext) -> EventMetadata:
    return EventMetadata(
        user_id=auth.user_id,
        source="api",
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
