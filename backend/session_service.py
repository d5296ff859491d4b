"""
Challenge/response activation and extension sessions.

Flow
────
  1. issue_challenge()   the extension asks for a nonce bound to its device
                         fingerprint; valid for CHALLENGE_TTL_SECONDS (60 s).
  2. redeem_challenge()  the extension proves it holds that nonce and presents
                         a license key; the challenge is consumed atomically and
                         a session (SESSION_TTL_HOURS) is opened.
  3. heartbeat()         periodic keep-alive; never extends the session.

Single use is enforced by one conditional UPDATE (used = false AND not expired)
whose affected-row count decides the winner.  It is the first statement of the
transaction and is committed before anything else happens, so a challenge
stays consumed even when the license checks that follow reject the request.
Every refusal is committed to license_logs (invalid_challenge,
validation_failed, new_device_blocked) before the error is raised.

Responses to the extension are signed with HMAC-SHA256 under
LICENSE_SIGNING_KEY (see sign_response()).
"""
from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import device_binding
import license_registry
import models
from config import CHALLENGE_TTL_SECONDS, LICENSE_SIGNING_KEY, SESSION_TTL_HOURS
from database import SessionLocal, isoformat, utcnow
from errors import AccessDenied, NotFoundError, ValidationFailed
from logging_config import get_logger, mask_key
from monitoring_service import VIOLATION_ACTIONS

logger = get_logger(__name__)

SIGNATURE_ALGORITHM = "HMAC-SHA256"
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass
class SessionGrant:
    session_token: str
    expires_at: datetime
    license: models.License
    customer_name: str | None = None
    integrity_hash: str | None = None


# ── Signing ───────────────────────────────────────────────────────────────────

def _canonical(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode()


def sign_response(payload: dict[str, Any]) -> dict[str, Any]:
    """Attach a hex HMAC-SHA256 of the canonical JSON payload."""
    signature = hmac.new(LICENSE_SIGNING_KEY.encode(), _canonical(payload), hashlib.sha256).hexdigest()
    return {**payload, "signature": signature, "signature_algorithm": SIGNATURE_ALGORITHM}


def verify_signature(signed: dict[str, Any]) -> bool:
    payload = {k: v for k, v in signed.items() if k not in ("signature", "signature_algorithm")}
    expected = hmac.new(LICENSE_SIGNING_KEY.encode(), _canonical(payload), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, str(signed.get("signature", "")))


# ── Challenges ────────────────────────────────────────────────────────────────

def _base36(n: int) -> str:
    out = ""
    while n:
        n, rem = divmod(n, 36)
        out = _BASE36[rem] + out
    return out or "0"


def new_challenge_token() -> str:
    return f"{_base36(int(time.time() * 1000))}.{secrets.token_hex(8)}"


async def issue_challenge(
    db: AsyncSession,
    device_fingerprint: str,
    extension_id: str | None = None,
) -> dict[str, Any]:
    if not device_fingerprint:
        raise ValidationFailed("device_fingerprint is required", code="MISSING_FINGERPRINT")

    now = utcnow()
    challenge = models.LicenseChallenge(
        nonce=secrets.token_hex(32),
        challenge_token=new_challenge_token(),
        device_fingerprint=device_fingerprint,
        extension_id=extension_id,
        expires_at=now + timedelta(seconds=CHALLENGE_TTL_SECONDS),
        used=False,
        created_at=now,
    )
    db.add(challenge)
    await db.commit()
    logger.info("challenge_issued", extra={"extension_id": extension_id})
    return {
        "nonce": challenge.nonce,
        "challenge_token": challenge.challenge_token,
        "expires_at": isoformat(challenge.expires_at),
        "server_time": isoformat(now),
    }


async def purge_stale_challenges() -> int:
    """Delete used and expired challenges.  Runs after the response is sent;
    a failure here is logged and otherwise ignored."""
    try:
        async with SessionLocal() as db:
            result = await db.execute(
                delete(models.LicenseChallenge).where(or_(
                    models.LicenseChallenge.used.is_(True),
                    models.LicenseChallenge.expires_at < utcnow(),
                ))
            )
            await db.commit()
    except SQLAlchemyError as exc:
        logger.error("challenge_purge_failed", extra={"error": str(exc)})
        return 0
    removed = result.rowcount or 0
    if removed:
        logger.info("challenge_purge_complete", extra={"removed": removed})
    return removed


async def _rejection_code(db: AsyncSession, challenge_token: str, nonce: str, now: datetime) -> str:
    result = await db.execute(
        select(models.LicenseChallenge).where(
            models.LicenseChallenge.challenge_token == challenge_token,
            models.LicenseChallenge.nonce == nonce,
        )
    )
    challenge = result.scalars().first()
    if challenge is not None and not challenge.used and challenge.expires_at <= now:
        return "CHALLENGE_EXPIRED"
    return "INVALID_CHALLENGE"


async def _log_rejection(
    db: AsyncSession,
    action: str,
    *,
    license_id: int | None,
    license_key: str,
    device_fingerprint: str,
    ip_address: str | None,
    **meta,
) -> None:
    """Commit an audit row for a refused redeem before the error is raised."""
    license_registry.append_log(
        db,
        action=action,
        license_id=license_id,
        license_key=license_key,
        device_fingerprint=device_fingerprint,
        ip_address=ip_address,
        meta=meta,
    )
    await db.commit()


async def redeem_challenge(
    db: AsyncSession,
    *,
    challenge_token: str,
    nonce: str,
    license_key: str,
    device_fingerprint: str,
    integrity_hash: str | None = None,
    ip_address: str | None = None,
) -> SessionGrant:
    if not all((challenge_token, nonce, license_key, device_fingerprint)):
        raise ValidationFailed("challenge_token, nonce, license_key and device_fingerprint are required")

    now = utcnow()
    submitted_key = license_registry.normalize_key(license_key)
    consumed = await db.execute(
        update(models.LicenseChallenge)
        .where(
            models.LicenseChallenge.challenge_token == challenge_token,
            models.LicenseChallenge.nonce == nonce,
            models.LicenseChallenge.used.is_(False),
            models.LicenseChallenge.expires_at > now,
        )
        .values(used=True)
    )
    if consumed.rowcount != 1:
        await db.rollback()
        code = await _rejection_code(db, challenge_token, nonce, now)
        logger.warning("challenge_rejected", extra={"code": code, "ip": ip_address})
        await _log_rejection(
            db, "invalid_challenge",
            license_id=None, license_key=submitted_key,
            device_fingerprint=device_fingerprint, ip_address=ip_address,
            reason=code.lower(), challenge_token=challenge_token,
        )
        raise AccessDenied("Invalid or expired challenge", code=code)

    challenge = (await db.execute(
        select(models.LicenseChallenge).where(models.LicenseChallenge.challenge_token == challenge_token)
    )).scalars().one()
    challenge_fingerprint = challenge.device_fingerprint
    await db.commit()

    if challenge_fingerprint != device_fingerprint:
        logger.warning("challenge_fingerprint_mismatch", extra={"ip": ip_address})
        await _log_rejection(
            db, "invalid_challenge",
            license_id=None, license_key=submitted_key,
            device_fingerprint=device_fingerprint, ip_address=ip_address,
            reason="fingerprint_mismatch", challenge_token=challenge_token,
        )
        raise AccessDenied("Device fingerprint does not match the challenge", code="FINGERPRINT_MISMATCH")

    lic = await license_registry.find_by_key(db, license_key)
    if lic is None:
        logger.warning("redeem_unknown_license", extra={"license_key": mask_key(license_key), "ip": ip_address})
        await _log_rejection(
            db, "validation_failed",
            license_id=None, license_key=submitted_key,
            device_fingerprint=device_fingerprint, ip_address=ip_address,
            reason="not_found",
        )
        raise NotFoundError("License not found", code="LICENSE_NOT_FOUND")
    if lic.status != "active":
        status = lic.status
        logger.warning("redeem_inactive_license", extra={
            "license_id": lic.id, "status": status, "ip": ip_address,
        })
        await _log_rejection(
            db, "validation_failed",
            license_id=lic.id, license_key=lic.license_key,
            device_fingerprint=device_fingerprint, ip_address=ip_address,
            reason=status,
        )
        raise AccessDenied("License is not active", code="LICENSE_INACTIVE", status=status)

    license_id, stored_key, max_devices = lic.id, lic.license_key, lic.max_devices
    bind = await device_binding.bind_device(
        db, lic, device_fingerprint,
        device_name="Extension", ip_address=ip_address,
    )
    if not bind.accepted:
        await db.rollback()
        await _log_rejection(
            db, "new_device_blocked",
            license_id=license_id, license_key=stored_key,
            device_fingerprint=device_fingerprint, ip_address=ip_address,
            max_devices=max_devices,
        )
        raise AccessDenied("Maximum number of devices reached", code="MAX_DEVICES_REACHED")

    # One session per device: a fresh activation replaces the previous one.
    await db.execute(
        delete(models.LicenseSession).where(
            models.LicenseSession.license_id == lic.id,
            models.LicenseSession.device_fingerprint == device_fingerprint,
        )
    )
    expires_at = now + timedelta(hours=SESSION_TTL_HOURS)
    session = models.LicenseSession(
        session_token=secrets.token_hex(32),
        license_id=lic.id,
        device_fingerprint=device_fingerprint,
        integrity_hash=integrity_hash or None,
        ip_address=ip_address,
        created_at=now,
        last_heartbeat=now,
        expires_at=expires_at,
    )
    db.add(session)
    lic.last_validated_at = now
    license_registry.append_log(
        db,
        action="security_validate_success",
        license_id=lic.id,
        license_key=lic.license_key,
        device_fingerprint=device_fingerprint,
        ip_address=ip_address,
        meta={
            "session_created": True,
            "new_device": bind.is_new,
            "integrity_hash": (integrity_hash or "")[:20] or None,
        },
    )
    await db.commit()

    transaction = await db.get(models.Transaction, lic.transaction_id) if lic.transaction_id else None
    logger.info("challenge_redeemed", extra={
        "license_id": lic.id,
        "license_key": mask_key(lic.license_key),
        "new_device": bind.is_new,
    })
    return SessionGrant(
        session_token=session.session_token,
        expires_at=expires_at,
        license=lic,
        customer_name=transaction.customer_name if transaction else None,
        integrity_hash=session.integrity_hash,
    )


def grant_payload(grant: SessionGrant) -> dict[str, Any]:
    return sign_response({
        "valid": True,
        "session_token": grant.session_token,
        "session_expires": isoformat(grant.expires_at),
        "server_time": isoformat(utcnow()),
        "license_status": grant.license.status,
        "customer_name": grant.customer_name,
        "verified_integrity_hash": grant.integrity_hash,
    })


# ── Sessions ──────────────────────────────────────────────────────────────────

async def validate_session(db: AsyncSession, session_token: str) -> models.LicenseSession | None:
    """The live session behind `session_token`, or None.  Never extends it."""
    result = await db.execute(
        select(models.LicenseSession)
        .join(models.License, models.License.id == models.LicenseSession.license_id)
        .where(
            models.LicenseSession.session_token == session_token,
            models.LicenseSession.expires_at > utcnow(),
            models.License.status == "active",
        )
    )
    return result.scalars().first()


async def _end_session(db: AsyncSession, session_token: str) -> None:
    await db.execute(
        delete(models.LicenseSession).where(models.LicenseSession.session_token == session_token)
    )
    await db.commit()


async def heartbeat(
    db: AsyncSession,
    *,
    session_token: str,
    device_fingerprint: str,
    integrity_hash: str | None = None,
    ip_address: str | None = None,
) -> dict[str, Any]:
    if not session_token or not device_fingerprint:
        raise ValidationFailed("session_token and device_fingerprint are required")

    result = await db.execute(
        select(models.LicenseSession).where(
            models.LicenseSession.session_token == session_token,
            models.LicenseSession.device_fingerprint == device_fingerprint,
        )
    )
    session = result.scalars().first()
    if session is None:
        raise NotFoundError("Session not found", code="SESSION_NOT_FOUND")

    now = utcnow()
    if session.expires_at <= now:
        await _end_session(db, session_token)
        raise AccessDenied("Session expired", code="SESSION_EXPIRED")

    lic = await db.get(models.License, session.license_id)
    if lic is None or lic.status != "active":
        await _end_session(db, session_token)
        raise AccessDenied("License is not active", code="LICENSE_INACTIVE")

    if session.integrity_hash and integrity_hash and integrity_hash != session.integrity_hash:
        license_registry.append_log(
            db,
            action="integrity_violation",
            license_id=lic.id,
            license_key=lic.license_key,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            meta={
                "expected": session.integrity_hash[:20],
                "received": integrity_hash[:20],
                "source": "heartbeat",
            },
        )
        await _end_session(db, session_token)
        logger.warning("integrity_violation", extra={
            "license_id": lic.id, "license_key": mask_key(lic.license_key), "ip": ip_address,
        })
        raise AccessDenied("Integrity check failed", code="INTEGRITY_VIOLATION")

    session.last_heartbeat = now
    if ip_address:
        session.ip_address = ip_address
    await device_binding.touch(db, lic.id, device_fingerprint, ip_address)
    await db.commit()

    return sign_response({
        "valid": True,
        "session_expires": isoformat(session.expires_at),
        "server_time": isoformat(now),
        "verified_integrity_hash": session.integrity_hash,
    })


async def active_session_count(db: AsyncSession) -> int:
    return await db.scalar(
        select(func.count(models.LicenseSession.id)).where(models.LicenseSession.expires_at > utcnow())
    ) or 0


# ── Violation reports ─────────────────────────────────────────────────────────

async def report_violation(
    db: AsyncSession,
    *,
    action: str,
    session_token: str,
    ip_address: str | None = None,
    details: dict | None = None,
) -> models.LicenseLog:
    """Record a tamper/debug signal raised by the extension.

    Only a live session may report, and the entry is attributed to that
    session's license and device.  The entry feeds the auto-suspend job; this
    call never changes license status.
    """
    if action not in VIOLATION_ACTIONS:
        raise ValidationFailed(f"Unknown violation type: {action}", code="INVALID_ACTION")

    session = await validate_session(db, session_token)
    if session is None:
        logger.warning("violation_report_rejected", extra={"violation": action, "ip": ip_address})
        raise NotFoundError("Session not found", code="SESSION_NOT_FOUND")
    lic = await db.get(models.License, session.license_id)

    entry = license_registry.append_log(
        db,
        action=action,
        license_id=lic.id,
        license_key=lic.license_key,
        device_fingerprint=session.device_fingerprint,
        ip_address=ip_address,
        meta={"source": "extension", **(details or {})},
    )
    await db.commit()
    logger.warning("violation_reported", extra={
        "license_id": lic.id, "license_key": mask_key(lic.license_key), "violation": action,
    })
    return entry
