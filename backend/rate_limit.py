"""
Rate limiting: shared Limiter instance plus the DB-backed request log.

In production  (RATE_LIMIT_ENABLED=true, the default):
  /extension/*          30 req/min  per IP
  /admin/login          10 req/min  per IP
  /members/register|login  10 req/min per IP
  /webhooks/payment     120 req/min per IP
  admin write actions   200 req/min per IP

In test / development (RATE_LIMIT_ENABLED=false):
  All limits are raised to 100 000/minute, effectively disabled.
  Set in conftest.py via os.environ.setdefault("RATE_LIMIT_ENABLED", "false").

Independently of the limiter, every extension call is appended to
rate_limit_logs; monitoring_service.rate_limit_alerts() reads that table to
flag heavy (ip, endpoint) pairs for human review.
"""
import os

from fastapi import Depends, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

import models
from dependencies import client_ip, get_db

# Evaluated once at import time.
# conftest.py sets the env var BEFORE importing main/routers, so this is safe.
_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() != "false"

limiter = Limiter(key_func=get_remote_address)


def _limit(real: str) -> str:
    """Return the real limit in production, or an effectively-unlimited value in test mode."""
    return real if _ENABLED else "100000/minute"


# Named limit strings; import these in routers for the @limiter.limit() decorator.
EXTENSION_LIMIT   = _limit("30/minute")
ADMIN_LOGIN_LIMIT = _limit("10/minute")
MEMBER_AUTH_LIMIT = _limit("10/minute")
WEBHOOK_LIMIT     = _limit("120/minute")
ADMIN_WRITE_LIMIT = _limit("200/minute")


async def log_request(request: Request, db: AsyncSession = Depends(get_db)) -> None:
    """Router dependency: append one rate_limit_logs row for this call.

    Commits immediately so the row is persisted even if the request later fails.
    """
    db.add(models.RateLimitLog(ip_address=client_ip(request), endpoint=request.url.path))
    await db.commit()
