"""
Shared FastAPI dependencies and utility functions used across all routers.
"""
from fastapi import Header, Query, Request

import token_codec
from config import JWT_SECRET
from database import SessionLocal
from errors import AuthenticationFailed
from logging_config import get_logger

logger = get_logger(__name__)


# ── Database ───────────────────────────────────────────────────────────────────

async def get_db():
    async with SessionLocal() as session:
        yield session


# ── Request metadata ───────────────────────────────────────────────────────────

def client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For when behind a proxy, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# ── Auth dependencies ──────────────────────────────────────────────────────────

def _claims_for(token: str, expected_type: str) -> dict:
    """Verify a bearer token of the given type.  Every failure yields the same
    401 message; the specific cause only goes to the log."""
    result = token_codec.verify(token, JWT_SECRET)
    if not result.valid:
        logger.warning("auth_token_rejected", extra={"reason": result.reason, "expected": expected_type})
        raise AuthenticationFailed()
    if result.claims.get("type") != expected_type:
        logger.warning("auth_token_rejected", extra={
            "reason": "wrong_type", "expected": expected_type, "got": result.claims.get("type"),
        })
        raise AuthenticationFailed()
    return result.claims


def _bearer(authorization: str) -> str:
    if not authorization.startswith("Bearer "):
        logger.warning("auth_token_rejected", extra={"reason": "missing_bearer"})
        raise AuthenticationFailed()
    return authorization[7:].strip()


async def require_admin(authorization: str = Header(default="")) -> str:
    """FastAPI dependency: ``Authorization: Bearer <admin token>`` (issued by
    POST /admin/login).  Returns the admin username, recorded as the actor of
    every mutation."""
    claims = _claims_for(_bearer(authorization), "admin")
    username = claims.get("username")
    if not username:
        raise AuthenticationFailed()
    return username


async def require_admin_stream(
    authorization: str = Header(default=""),
    token: str = Query(default=""),
) -> str:
    """Same as require_admin, with a ?token= fallback because EventSource
    cannot set headers."""
    if authorization:
        return await require_admin(authorization)
    claims = _claims_for(token, "admin")
    if not claims.get("username"):
        raise AuthenticationFailed()
    return claims["username"]


async def require_member(authorization: str = Header(default="")) -> str:
    """FastAPI dependency for the member area; returns the member's e-mail."""
    claims = _claims_for(_bearer(authorization), "member")
    email = claims.get("email")
    if not email:
        raise AuthenticationFailed()
    return email
