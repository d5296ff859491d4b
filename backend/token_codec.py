"""
Compact signed bearer tokens (HS256 JWT) for admin and member sessions.

    issue(claims, secret, ttl_seconds)  -> "<b64 header>.<b64 payload>.<b64 sig>"
    verify(token, secret)               -> TokenVerification(valid, claims)

The payload always carries `iat` and `exp` (Unix seconds).  verify() never
raises: malformed segments, bad base64/JSON, a wrong signature or a past `exp`
all come back as `valid=False`.  PyJWT compares signatures with
hmac.compare_digest, so there is no timing side-channel on the MAC.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import jwt as _jwt

ALGORITHM = "HS256"


@dataclass(frozen=True)
class TokenVerification:
    valid: bool
    claims: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None     # internal only, never echoed to clients


def issue(claims: dict[str, Any], secret: str, ttl_seconds: int) -> str:
    if ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be positive")
    now = int(time.time())
    payload = {**claims, "iat": now, "exp": now + ttl_seconds}
    return _jwt.encode(payload, secret, algorithm=ALGORITHM, headers={"typ": "JWT"})


def verify(token: str | None, secret: str) -> TokenVerification:
    if not token or token.count(".") != 2:
        return TokenVerification(False, reason="malformed")
    try:
        claims = _jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            options={"require": ["exp", "iat"], "verify_sub": False},
        )
    except _jwt.ExpiredSignatureError:
        return TokenVerification(False, reason="expired")
    except _jwt.InvalidSignatureError:
        return TokenVerification(False, reason="bad_signature")
    except _jwt.InvalidTokenError as exc:
        return TokenVerification(False, reason=f"invalid: {type(exc).__name__}")
    return TokenVerification(True, claims=claims)


def issue_admin_token(username: str, secret: str, ttl_seconds: int) -> str:
    return issue({"username": username, "type": "admin"}, secret, ttl_seconds)


def issue_member_token(email: str, secret: str, ttl_seconds: int) -> str:
    return issue({"email": email, "type": "member"}, secret, ttl_seconds)
