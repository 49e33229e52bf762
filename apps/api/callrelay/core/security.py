"""Access-token verification, role checks and webhook authentication."""
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping

import jwt
from fastapi import Depends, HTTPException, Request, status

from .config import settings

logger = logging.getLogger(__name__)

ROLES = frozenset({"agent", "supervisor", "admin"})
MONITOR_ROLES = ("supervisor", "admin")


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated caller identity."""

    user_id: str
    role: str


class InvalidTokenError(Exception):
    """Raised when an access token cannot be verified."""


def decode_token(token: str) -> Principal:
    """Verify a bearer token and return the principal it names."""

    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as exc:
        raise InvalidTokenError(str(exc)) from exc

    user_id = claims.get("sub")
    role = claims.get("role")
    if not user_id or role not in ROLES:
        raise InvalidTokenError("Token is missing subject or role")
    return Principal(user_id=str(user_id), role=role)


def issue_token(user_id: str, role: str) -> str:
    """Sign a token for local tooling and tests; production tokens come from the auth service."""

    return jwt.encode({"sub": user_id, "role": role}, settings.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_principal(request: Request) -> Principal:
    """FastAPI dependency resolving the bearer token on the request."""

    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authorized, no token")
    try:
        return decode_token(token.strip())
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authorized, token failed"
        ) from exc


def require_roles(*roles: str) -> Callable[..., Awaitable[Principal]]:
    """Return a dependency that only admits the given roles."""

    async def _checker(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role {principal.role} is not authorized to access this route",
            )
        return principal

    return _checker


def verify_webhook(headers: Mapping[str, str], body: bytes) -> bool:
    """Check the provider's shared secret or HMAC signature on a webhook request."""

    secret = settings.webhook_secret
    if not secret:
        if settings.is_production:
            logger.error("Rejecting webhook: WEBHOOK_SECRET is not configured in production")
            return False
        return True

    provided_secret = headers.get("x-vapi-secret")
    if provided_secret and hmac.compare_digest(provided_secret.encode("utf-8"), secret.encode("utf-8")):
        return True

    signature = headers.get("x-vapi-signature")
    if signature:
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        if hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8")):
            return True

    logger.warning("Webhook signature mismatch")
    return False
