"""
Abuse monitoring: violation counting, auto-suspension and rate-limit alerts.

run_auto_suspend() blocks every active license that logged more than
AUTO_SUSPEND_THRESHOLD violations within VIOLATION_WINDOW_HOURS.  The status
change is a conditional UPDATE (WHERE status = 'active') and the
`auto_suspended` log row is written only when that UPDATE actually changed the
row, so overlapping runs never double-suspend or double-log.

rate_limit_alerts() is advisory: it reports heavy (ip, endpoint) pairs and
never blocks anyone.
"""
from __future__ import annotations

from collections import Counter
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

import models
import redis_service
from config import (
    AUTO_SUSPEND_THRESHOLD,
    RATE_LIMIT_ALERT_MIN_COUNT,
    RATE_LIMIT_ALERT_WINDOW_HOURS,
    VIOLATION_WINDOW_HOURS,
)
from database import isoformat, utcnow
from errors import ValidationFailed
from license_registry import append_log
from logging_config import get_logger, mask_key

logger = get_logger(__name__)

VIOLATION_ACTIONS = frozenset((
    "integrity_violation",
    "invalid_signature",
    "tampered_extension",
    "debug_detected",
    "session_invalidated",
    "unknown_hash_blocked",
    "validation_failed",
))

AUTO_SUSPEND_STATUS = "blocked"
AUTO_SUSPEND_REASON = f"more_than_{AUTO_SUSPEND_THRESHOLD}_violations_{VIOLATION_WINDOW_HOURS}h"
SECTIONS = ("all", "sessions", "violations", "ratelimits")


async def violation_counts(db: AsyncSession) -> dict[int, int]:
    """license_id → violations logged inside the window."""
    since = utcnow() - timedelta(hours=VIOLATION_WINDOW_HOURS)
    result = await db.execute(
        select(models.LicenseLog.license_id, func.count(models.LicenseLog.id))
        .where(
            models.LicenseLog.action.in_(VIOLATION_ACTIONS),
            models.LicenseLog.created_at >= since,
            models.LicenseLog.license_id.is_not(None),
        )
        .group_by(models.LicenseLog.license_id)
    )
    return dict(result.all())


async def run_auto_suspend(db: AsyncSession) -> dict[str, Any]:
    counts = await violation_counts(db)
    candidates = {lid: n for lid, n in counts.items() if n > AUTO_SUSPEND_THRESHOLD}
    now = utcnow()
    suspended: list[dict] = []

    for license_id, count in candidates.items():
        result = await db.execute(
            update(models.License)
            .where(models.License.id == license_id, models.License.status == "active")
            .values(status=AUTO_SUSPEND_STATUS, updated_at=now)
        )
        if result.rowcount != 1:
            continue
        license_key = await db.scalar(
            select(models.License.license_key).where(models.License.id == license_id)
        )
        await db.execute(
            delete(models.LicenseSession).where(models.LicenseSession.license_id == license_id)
        )
        append_log(
            db,
            action="auto_suspended",
            license_id=license_id,
            license_key=license_key,
            actor="system",
            meta={
                "reason": AUTO_SUSPEND_REASON,
                "violation_count": count,
                "suspended_at": isoformat(now),
            },
        )
        suspended.append({"license_id": license_id, "license_key": license_key, "violation_count": count})

    await db.commit()

    for row in suspended:
        logger.warning("license_auto_suspended", extra={
            "license_id": row["license_id"],
            "license_key": mask_key(row["license_key"]),
            "violation_count": row["violation_count"],
        })
        await redis_service.publish_license_event(
            "auto_suspended", row["license_id"], row["license_key"],
            violation_count=row["violation_count"],
        )
    logger.info("auto_suspend_run_complete", extra={
        "over_threshold": len(candidates), "suspended": len(suspended),
    })
    return {
        "checked": len(counts),
        "over_threshold": len(candidates),
        "suspended": suspended,
    }


async def rate_limit_alerts(db: AsyncSession) -> list[dict]:
    since = utcnow() - timedelta(hours=RATE_LIMIT_ALERT_WINDOW_HOURS)
    hits = func.count(models.RateLimitLog.id)
    result = await db.execute(
        select(
            models.RateLimitLog.ip_address,
            models.RateLimitLog.endpoint,
            hits.label("count"),
            func.max(models.RateLimitLog.created_at).label("last_seen"),
        )
        .where(models.RateLimitLog.created_at >= since)
        .group_by(models.RateLimitLog.ip_address, models.RateLimitLog.endpoint)
        .having(hits >= RATE_LIMIT_ALERT_MIN_COUNT)
        .order_by(hits.desc())
    )
    return [
        {
            "ip": row.ip_address,
            "endpoint": row.endpoint,
            "count": row.count,
            "last_seen": isoformat(row.last_seen),
        }
        for row in result.all()
    ]


async def _active_sessions(db: AsyncSession, limit: int = 100) -> list[dict]:
    result = await db.execute(
        select(models.LicenseSession, models.License, models.Transaction)
        .join(models.License, models.License.id == models.LicenseSession.license_id)
        .outerjoin(models.Transaction, models.Transaction.id == models.License.transaction_id)
        .where(models.LicenseSession.expires_at > utcnow())
        .order_by(models.LicenseSession.last_heartbeat.desc())
        .limit(limit)
    )
    return [
        {
            "id": s.id,
            "license_id": lic.id,
            "license_key": lic.license_key,
            "license_status": lic.status,
            "customer_name": txn.customer_name if txn else None,
            "customer_email": txn.customer_email if txn else None,
            "device_fingerprint": s.device_fingerprint,
            "ip_address": s.ip_address,
            "created_at": isoformat(s.created_at),
            "last_heartbeat": isoformat(s.last_heartbeat),
            "expires_at": isoformat(s.expires_at),
        }
        for s, lic, txn in result.all()
    ]


async def _recent_violations(db: AsyncSession, limit: int = 100) -> list[dict]:
    since = utcnow() - timedelta(hours=VIOLATION_WINDOW_HOURS)
    result = await db.execute(
        select(models.LicenseLog, models.Transaction)
        .outerjoin(models.License, models.License.id == models.LicenseLog.license_id)
        .outerjoin(models.Transaction, models.Transaction.id == models.License.transaction_id)
        .where(
            models.LicenseLog.action.in_(VIOLATION_ACTIONS),
            models.LicenseLog.created_at >= since,
        )
        .order_by(models.LicenseLog.created_at.desc())
        .limit(limit)
    )
    rows = result.all()
    per_key = Counter(log.license_key for log, _ in rows)
    return [
        {
            "id": log.id,
            "license_id": log.license_id,
            "license_key": log.license_key,
            "action": log.action,
            "ip_address": log.ip_address,
            "device_fingerprint": log.device_fingerprint,
            "metadata": log.meta or {},
            "created_at": isoformat(log.created_at),
            "customer_name": txn.customer_name if txn else None,
            "customer_email": txn.customer_email if txn else None,
            "violation_count": per_key[log.license_key],
        }
        for log, txn in rows
    ]


async def monitoring_snapshot(db: AsyncSession, section: str = "all") -> dict[str, Any]:
    """Read-only dashboard view; suspension happens in run_auto_suspend()."""
    if section not in SECTIONS:
        raise ValidationFailed(f"Unknown section: {section}", code="INVALID_SECTION")

    sessions = await _active_sessions(db) if section in ("all", "sessions") else []
    violations = await _recent_violations(db) if section in ("all", "violations") else []
    alerts = await rate_limit_alerts(db) if section in ("all", "ratelimits") else []
    over_threshold = {
        v["license_key"] for v in violations if v["violation_count"] > AUTO_SUSPEND_THRESHOLD
    }

    return {
        "summary": {
            "active_sessions": len(sessions),
            "integrity_violations_24h": len(violations),
            "rate_limit_alerts": len(alerts),
            "licenses_over_threshold": len(over_threshold),
            "timestamp": isoformat(utcnow()),
        },
        "data": {
            "sessions": sessions,
            "violations": violations,
            "ratelimits": alerts,
        },
    }
