"""
Admin routes (require Authorization: Bearer <admin token>, except /admin/login):
  POST /admin/login
  GET  /admin/licenses
  POST /admin/licenses/actions
  POST /admin/licenses/manual
  POST /admin/licenses/bulk-generate
  GET  /admin/licenses/{license_id}/logs
  GET  /admin/licenses/{license_id}/devices
  GET  /admin/subscriptions
  GET  /admin/subscriptions/{subscription_id}/payments
  POST /admin/subscriptions/actions
  GET  /admin/monitoring
  POST /admin/jobs/subscription-expiry
  POST /admin/jobs/auto-suspend
  GET  /admin/events          (SSE)
  GET  /admin/events/recent
"""
from typing import Annotated, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import admin_commands
import device_binding
import license_registry
import models
import monitoring_service
import redis_service
import subscription_service
import token_codec
from auth_utils import pwd_context, verify_password
from config import ADMIN_SESSION_TTL, JWT_SECRET
from dependencies import client_ip, get_db, require_admin, require_admin_stream
from errors import AuthenticationFailed
from logging_config import get_logger
from rate_limit import ADMIN_LOGIN_LIMIT, ADMIN_WRITE_LIMIT, limiter
from schemas import AdminLoginRequest, BulkGenerateRequest, ManualLicenseRequest

logger = get_logger(__name__)

router = APIRouter(prefix="/admin")


# ── Login ─────────────────────────────────────────────────────────────────────

@router.post("/login")
@limiter.limit(ADMIN_LOGIN_LIMIT)
async def admin_login(body: AdminLoginRequest, request: Request, db: AsyncSession = Depends(get_db)):
    """Exchange username/password for a short-lived admin token.

    Returns ``{"token": "<jwt>", "expires_in": <seconds>}``; pass it as
    ``Authorization: Bearer <token>`` on every other admin endpoint.
    """
    result = await db.execute(
        select(models.AdminUser).where(models.AdminUser.username == body.username)
    )
    admin = result.scalars().first()
    if admin is None:
        pwd_context.dummy_verify()
        valid = False
    else:
        valid = verify_password(body.password, admin.password_hash)
    if not valid:
        logger.warning("admin_login_failed", extra={"username": body.username, "ip": client_ip(request)})
        raise AuthenticationFailed("Invalid credentials", code="INVALID_CREDENTIALS")

    logger.info("admin_login", extra={"username": admin.username, "ip": client_ip(request)})
    return {
        "success": True,
        "token": token_codec.issue_admin_token(admin.username, JWT_SECRET, ADMIN_SESSION_TTL),
        "expires_in": ADMIN_SESSION_TTL,
    }


# ── Licenses ──────────────────────────────────────────────────────────────────

@router.get("/licenses")
async def list_licenses(
    status: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=128),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    _: str = Depends(require_admin),
):
    listing = await license_registry.list_licenses(db, status, search, page, limit)
    return {"success": True, **listing}


@router.post("/licenses/actions")
@limiter.limit(ADMIN_WRITE_LIMIT)
async def license_action(
    command: Annotated[admin_commands.LicenseCommand, Body(discriminator="action")],
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_admin),
):
    outcome = await admin_commands.execute(db, command, actor)
    return {"success": True, "action": command.action, **outcome}


@router.post("/licenses/manual", status_code=201)
@limiter.limit(ADMIN_WRITE_LIMIT)
async def create_manual_license(
    body: ManualLicenseRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_admin),
):
    lic = await license_registry.issue_manual(
        db, body.transaction_id, actor, license_key=body.license_key, max_devices=body.max_devices,
    )
    return {"success": True, "license": license_registry.license_to_dict(lic)}


@router.post("/licenses/bulk-generate")
@limiter.limit(ADMIN_WRITE_LIMIT)
async def bulk_generate(
    body: BulkGenerateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_admin),
):
    report = await license_registry.bulk_issue(db, body.transaction_ids, actor)
    return {"success": True, **report}


@router.get("/licenses/{license_id}/logs")
async def license_logs(
    license_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    _: str = Depends(require_admin),
):
    return {"success": True, "data": await license_registry.list_logs(db, license_id, limit)}


@router.get("/licenses/{license_id}/devices")
async def license_devices(
    license_id: int,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(require_admin),
):
    lic = await license_registry.get_license(db, license_id)
    return {
        "success": True,
        "license": license_registry.license_to_dict(lic),
        "data": await device_binding.list_devices(db, license_id),
    }


# ── Subscriptions ─────────────────────────────────────────────────────────────

@router.get("/subscriptions")
async def list_subscriptions(
    status: Optional[str] = Query(default=None),
    product_type: Optional[str] = Query(default=None),
    email: Optional[str] = Query(default=None, max_length=254),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    _: str = Depends(require_admin),
):
    listing = await subscription_service.list_subscriptions(db, status, product_type, email, page, limit)
    return {"success": True, **listing}


@router.get("/subscriptions/{subscription_id}/payments")
async def subscription_payments(
    subscription_id: int,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(require_admin),
):
    return {"success": True, "data": await subscription_service.list_payments(db, subscription_id)}


@router.post("/subscriptions/actions")
@limiter.limit(ADMIN_WRITE_LIMIT)
async def subscription_action(
    command: Annotated[admin_commands.SubscriptionCommand, Body(discriminator="action")],
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_admin),
):
    outcome = await admin_commands.execute(db, command, actor)
    return {"success": True, "action": command.action, **outcome}


# ── Monitoring & jobs ─────────────────────────────────────────────────────────

@router.get("/monitoring")
async def monitoring(
    section: str = Query(default="all"),
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_admin),
):
    snapshot = await monitoring_service.monitoring_snapshot(db, section)
    logger.info("admin_monitoring_viewed", extra={"actor": actor, "section": section})
    return {"success": True, **snapshot}


@router.post("/jobs/subscription-expiry")
async def run_subscription_expiry(db: AsyncSession = Depends(get_db), actor: str = Depends(require_admin)):
    report = await subscription_service.sweep_expirations(db)
    logger.info("job_subscription_expiry", extra={"actor": actor, **report})
    return {"success": True, **report}


@router.post("/jobs/auto-suspend")
async def run_auto_suspend(db: AsyncSession = Depends(get_db), actor: str = Depends(require_admin)):
    report = await monitoring_service.run_auto_suspend(db)
    logger.info("job_auto_suspend", extra={"actor": actor, "suspended": len(report["suspended"])})
    return {"success": True, **report}


# ── Live events ───────────────────────────────────────────────────────────────

@router.get("/events/recent")
async def recent_events(
    limit: int = Query(default=50, ge=1, le=redis_service.RECENT_EVENTS_MAX),
    _: str = Depends(require_admin),
):
    return {"success": True, "data": await redis_service.recent_events(limit)}


@router.get("/events")
async def admin_events(request: Request, _: str = Depends(require_admin_stream)):
    """Server-Sent Events stream of license lifecycle events.

    The dashboard connects via EventSource; every Redis Pub/Sub message on the
    `license:events` channel is forwarded as an SSE data frame.
    """
    async def event_stream():
        r = await redis_service.get_redis()
        pubsub = r.pubsub()
        await pubsub.subscribe(redis_service.EVENTS_CHANNEL)
        try:
            yield 'data: {"type":"connected"}\n\n'
            while True:
                if await request.is_disconnected():
                    break
                msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if msg and msg["type"] == "message":
                    yield f"data: {msg['data']}\n\n"
                else:
                    # Keepalive comment line (invisible to EventSource handlers)
                    yield ": keepalive\n\n"
        finally:
            await pubsub.unsubscribe(redis_service.EVENTS_CHANNEL)
            await pubsub.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
