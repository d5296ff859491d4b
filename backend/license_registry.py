"""
License registry: issuance, status transitions and the append-only license log.

License keys look like ZYRA-7K2Q-M9XD-04PA: a fixed prefix plus three groups of
four characters drawn from [A-Z0-9] with the `secrets` CSPRNG.  A key is never
reused, even after revocation; uniqueness is enforced by the unique index on
licenses.license_key, so a collision that slips past the pre-check still fails
at commit time and is retried with a fresh key.

Every mutation goes through append_log(); fleet-wide actions log one
BULK_ACTION row carrying the number of affected licenses.
"""
from __future__ import annotations

import secrets
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import models
import redis_service
from auth_utils import hash_identity, normalize_email
from config import (
    BULK_MAX_DEVICES,
    BULK_MAX_TRANSACTIONS,
    DEFAULT_MAX_DEVICES,
    KEY_GENERATION_ATTEMPTS,
    LICENSE_KEY_ALPHABET,
    LICENSE_KEY_PREFIX,
    MIN_AMOUNT_FOR_LICENSE,
)
from database import isoformat, utcnow
from errors import ConflictError, KeyGenerationError, NotFoundError, ValidationFailed
from logging_config import get_logger, mask_key

logger = get_logger(__name__)

LICENSE_STATUSES = ("awaiting_activation", "active", "suspended", "revoked", "blocked")
LICENSE_ORIGINS = ("automatic", "manual", "bulk")
BULK_ACTION_KEY = "BULK_ACTION"


# ── Keys ──────────────────────────────────────────────────────────────────────

def generate_key(prefix: str = LICENSE_KEY_PREFIX) -> str:
    groups = [
        "".join(secrets.choice(LICENSE_KEY_ALPHABET) for _ in range(4))
        for _ in range(3)
    ]
    return "-".join([prefix, *groups])


def normalize_key(license_key: str) -> str:
    return license_key.strip().upper()


# ── Log ───────────────────────────────────────────────────────────────────────

def append_log(
    db: AsyncSession,
    *,
    action: str,
    license_id: int | None,
    license_key: str,
    actor: str | None = None,
    device_fingerprint: str | None = None,
    ip_address: str | None = None,
    meta: dict[str, Any] | None = None,
) -> models.LicenseLog:
    """Stage one license_logs row.  The caller owns the commit."""
    meta = dict(meta or {})
    if actor is not None:
        meta.setdefault("actor", actor)
    entry = models.LicenseLog(
        license_id=license_id,
        license_key=license_key,
        action=action,
        device_fingerprint=device_fingerprint,
        ip_address=ip_address,
        meta=meta,
    )
    db.add(entry)
    return entry


async def list_logs(db: AsyncSession, license_id: int, limit: int = 100) -> list[dict]:
    await get_license(db, license_id)
    result = await db.execute(
        select(models.LicenseLog)
        .where(models.LicenseLog.license_id == license_id)
        .order_by(models.LicenseLog.id.desc())
        .limit(limit)
    )
    return [log_to_dict(row) for row in result.scalars().all()]


def log_to_dict(row: models.LicenseLog) -> dict:
    return {
        "id": row.id,
        "license_id": row.license_id,
        "license_key": row.license_key,
        "action": row.action,
        "device_fingerprint": row.device_fingerprint,
        "ip_address": row.ip_address,
        "metadata": row.meta or {},
        "created_at": isoformat(row.created_at),
    }


# ── Lookups ───────────────────────────────────────────────────────────────────

async def get_license(db: AsyncSession, license_id: int) -> models.License:
    lic = await db.get(models.License, license_id)
    if lic is None:
        raise NotFoundError("License not found", code="LICENSE_NOT_FOUND")
    return lic


async def find_by_key(db: AsyncSession, license_key: str) -> models.License | None:
    result = await db.execute(
        select(models.License).where(models.License.license_key == normalize_key(license_key))
    )
    return result.scalars().first()


async def license_for_transaction(db: AsyncSession, transaction_id: int) -> models.License | None:
    result = await db.execute(
        select(models.License).where(models.License.transaction_id == transaction_id)
    )
    return result.scalars().first()


# ── Issuance ──────────────────────────────────────────────────────────────────

async def issue_for_payment(
    db: AsyncSession,
    transaction: models.Transaction,
    *,
    max_devices: int = DEFAULT_MAX_DEVICES,
    source: str = "payment_webhook",
) -> models.License | None:
    """Mint the license for a confirmed payment.

    Idempotent per transaction: a second call returns the license minted by the
    first.  Payments below MIN_AMOUNT_FOR_LICENSE (cheaper add-on products)
    simply get no license, which is not an error.
    """
    existing = await license_for_transaction(db, transaction.id)
    if existing is not None:
        logger.info("license_already_issued", extra={
            "transaction_id": transaction.id,
            "license_id": existing.id,
        })
        return existing

    if (transaction.amount or 0) < MIN_AMOUNT_FOR_LICENSE:
        logger.info("license_below_minimum_amount", extra={
            "transaction_id": transaction.id,
            "amount": transaction.amount,
            "minimum": MIN_AMOUNT_FOR_LICENSE,
        })
        return None

    return await _insert_license(
        db, transaction, origin="automatic", max_devices=max_devices,
        actor="system", source=source,
    )


async def issue_manual(
    db: AsyncSession,
    transaction_id: int,
    actor: str,
    license_key: str | None = None,
    max_devices: int = DEFAULT_MAX_DEVICES,
) -> models.License:
    """Admin attaches a license to a purchase, optionally with a hand-picked key."""
    transaction = await db.get(models.Transaction, transaction_id)
    if transaction is None:
        raise NotFoundError("Transaction not found", code="TRANSACTION_NOT_FOUND")
    if await license_for_transaction(db, transaction_id) is not None:
        raise ConflictError("Transaction already has a license", code="LICENSE_EXISTS")
    if license_key is not None:
        license_key = normalize_key(license_key)
        if await find_by_key(db, license_key) is not None:
            raise ConflictError("License key already in use", code="LICENSE_KEY_IN_USE")
    return await _insert_license(
        db, transaction, origin="manual", max_devices=max_devices,
        actor=actor, source="admin_panel", license_key=license_key,
    )


async def bulk_issue(db: AsyncSession, transaction_ids: list[int], actor: str) -> dict[str, Any]:
    """Mint licenses for up to BULK_MAX_TRANSACTIONS purchases.

    Each row commits independently; one failure does not undo the others.
    """
    if not transaction_ids:
        raise ValidationFailed("transaction_ids is required")
    if len(transaction_ids) > BULK_MAX_TRANSACTIONS:
        raise ValidationFailed(f"At most {BULK_MAX_TRANSACTIONS} transactions per call")

    result = await db.execute(
        select(models.Transaction).where(models.Transaction.id.in_(transaction_ids))
    )
    transactions = {t.id: t for t in result.scalars().all()}

    rows: list[dict] = []
    created = skipped = failed = 0
    for txn_id in transaction_ids:
        transaction = transactions.get(txn_id)
        if transaction is None:
            rows.append({"transaction_id": txn_id, "status": "error", "license_key": None,
                         "error": "transaction not found"})
            failed += 1
            continue
        existing = await license_for_transaction(db, txn_id)
        if existing is not None:
            rows.append({"transaction_id": txn_id, "status": "skipped",
                         "license_key": existing.license_key, "error": "already licensed"})
            skipped += 1
            continue
        try:
            lic = await _insert_license(
                db, transaction, origin="bulk", max_devices=BULK_MAX_DEVICES,
                actor=actor, source="bulk_generate",
            )
        except KeyGenerationError as exc:
            rows.append({"transaction_id": txn_id, "status": "error", "license_key": None,
                         "error": exc.message})
            failed += 1
            continue
        rows.append({"transaction_id": txn_id, "status": "created",
                     "license_key": lic.license_key, "error": None})
        created += 1

    logger.info("bulk_issue_complete", extra={
        "actor": actor, "created": created, "skipped": skipped, "failed": failed,
    })
    return {
        "total": len(transaction_ids),
        "created": created,
        "skipped": skipped,
        "failed": failed,
        "rows": rows,
    }


async def _insert_license(
    db: AsyncSession,
    transaction: models.Transaction,
    *,
    origin: str,
    max_devices: int,
    actor: str,
    source: str,
    license_key: str | None = None,
) -> models.License:
    # Captured up front: a rollback below expires every ORM instance in the session.
    txn_id = transaction.id
    email_hash = hash_identity(transaction.customer_email and normalize_email(transaction.customer_email))
    document_hash = hash_identity(transaction.customer_document, digits_only=True)

    for attempt in range(1, KEY_GENERATION_ATTEMPTS + 1):
        key = license_key or generate_key()
        taken = await db.scalar(
            select(models.License.id).where(models.License.license_key == key)
        )
        if taken is not None:
            logger.warning("license_key_collision", extra={"attempt": attempt})
            continue

        lic = models.License(
            license_key=key,
            transaction_id=txn_id,
            customer_email_hash=email_hash,
            customer_document_hash=document_hash,
            status="active",
            origin=origin,
            max_devices=max_devices,
        )
        db.add(lic)
        try:
            await db.flush()
            append_log(
                db,
                action="created",
                license_id=lic.id,
                license_key=key,
                actor=actor,
                meta={"origin": origin, "transaction_id": txn_id, "source": source},
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            # Either the key raced another insert or a concurrent delivery of
            # the same payment already licensed this transaction.
            existing = await license_for_transaction(db, txn_id)
            if existing is not None:
                return existing
            if license_key is not None:
                raise ConflictError("License key already in use", code="LICENSE_KEY_IN_USE")
            logger.warning("license_key_collision", extra={"attempt": attempt, "at": "commit"})
            continue

        logger.info("license_issued", extra={
            "license_id": lic.id,
            "license_key": mask_key(key),
            "origin": origin,
            "transaction_id": txn_id,
        })
        await redis_service.publish_license_event(
            "created", lic.id, key, actor=actor, origin=origin,
        )
        return lic

    logger.error("license_key_generation_exhausted", extra={
        "transaction_id": txn_id, "attempts": KEY_GENERATION_ATTEMPTS,
    })
    raise KeyGenerationError(
        f"Could not generate a unique license key after {KEY_GENERATION_ATTEMPTS} attempts"
    )


# ── Status transitions ────────────────────────────────────────────────────────

async def transition(
    db: AsyncSession,
    lic: models.License,
    new_status: str,
    *,
    actor: str,
    action: str | None = None,
    meta: dict[str, Any] | None = None,
) -> str:
    """Apply a status change and stage its log row; returns the previous status.

    Leaving `active` ends every open session of the license.  The caller commits
    (and publishes) so that cascades from other services stay one unit of work.
    """
    if new_status not in LICENSE_STATUSES:
        raise ValidationFailed(f"Unknown license status: {new_status}", code="INVALID_STATUS")
    previous = lic.status
    lic.status = new_status
    if new_status != "active":
        await db.execute(
            delete(models.LicenseSession).where(models.LicenseSession.license_id == lic.id)
        )
    append_log(
        db,
        action=action or f"status_changed_to_{new_status}",
        license_id=lic.id,
        license_key=lic.license_key,
        actor=actor,
        meta={"previous_status": previous, "new_status": new_status, **(meta or {})},
    )
    return previous


async def set_status(
    db: AsyncSession,
    license_id: int,
    new_status: str,
    actor: str = "system",
    reason: str | None = None,
) -> models.License:
    lic = await get_license(db, license_id)
    previous = await transition(
        db, lic, new_status, actor=actor, meta={"reason": reason} if reason else None,
    )
    await db.commit()
    logger.info("license_status_changed", extra={
        "license_id": lic.id,
        "license_key": mask_key(lic.license_key),
        "previous_status": previous,
        "new_status": new_status,
        "actor": actor,
    })
    await redis_service.publish_license_event(
        f"status_changed_to_{new_status}", lic.id, lic.license_key, actor=actor,
    )
    return lic


# ── Device resets & fleet-wide actions ────────────────────────────────────────

async def reset_devices(db: AsyncSession, license_id: int, actor: str) -> int:
    """Unbind every device so the next activation starts from scratch."""
    lic = await get_license(db, license_id)
    result = await db.execute(
        delete(models.LicenseDevice).where(models.LicenseDevice.license_id == lic.id)
    )
    await db.execute(
        delete(models.LicenseSession).where(models.LicenseSession.license_id == lic.id)
    )
    lic.activated_at = None
    removed = result.rowcount or 0
    append_log(
        db,
        action="device_reset_by_admin",
        license_id=lic.id,
        license_key=lic.license_key,
        actor=actor,
        meta={"devices_removed": removed},
    )
    await db.commit()
    logger.info("license_devices_reset", extra={"license_id": lic.id, "removed": removed, "actor": actor})
    await redis_service.publish_license_event("device_reset_by_admin", lic.id, lic.license_key, actor=actor)
    return removed


async def _log_bulk(db: AsyncSession, action: str, actor: str, count: int) -> None:
    append_log(
        db, action=action, license_id=None, license_key=BULK_ACTION_KEY,
        actor=actor, meta={"count": count},
    )
    await db.commit()
    logger.info(action, extra={"actor": actor, "count": count})
    await redis_service.publish_license_event(action, None, BULK_ACTION_KEY, actor=actor, count=count)


async def reset_all_devices(db: AsyncSession, actor: str) -> int:
    result = await db.execute(delete(models.LicenseDevice))
    await db.execute(delete(models.LicenseSession))
    await db.execute(update(models.License).values(activated_at=None))
    count = result.rowcount or 0
    await _log_bulk(db, "all_devices_reset_by_admin", actor, count)
    return count


async def suspend_all(db: AsyncSession, actor: str) -> int:
    """Suspend every active license; returns how many were suspended."""
    active_ids = select(models.License.id).where(models.License.status == "active")
    await db.execute(
        delete(models.LicenseSession).where(models.LicenseSession.license_id.in_(active_ids))
    )
    result = await db.execute(
        update(models.License)
        .where(models.License.status == "active")
        .values(status="suspended")
    )
    count = result.rowcount or 0
    await _log_bulk(db, "all_licenses_suspended_by_admin", actor, count)
    return count


async def enforce_device_limit(db: AsyncSession, actor: str, max_devices: int = 1) -> int:
    """Lower every license's seat count to `max_devices`.

    Existing bindings above the new ceiling are kept; only new devices are refused.
    """
    result = await db.execute(
        update(models.License)
        .where(models.License.max_devices != max_devices)
        .values(max_devices=max_devices)
    )
    count = result.rowcount or 0
    await _log_bulk(db, "device_limit_enforced_by_admin", actor, count)
    return count


async def reset_password(db: AsyncSession, license_id: int, actor: str) -> bool:
    """Drop the member-area password of the license's buyer so they can register again.

    Returns True when a credential existed and was removed.
    """
    lic = await get_license(db, license_id)
    transaction = (
        await db.get(models.Transaction, lic.transaction_id) if lic.transaction_id else None
    )
    if transaction is None or not transaction.customer_email:
        raise NotFoundError("Customer e-mail not found", code="CUSTOMER_NOT_FOUND")

    email = normalize_email(transaction.customer_email)
    result = await db.execute(
        delete(models.MemberCredential).where(models.MemberCredential.email == email)
    )
    removed = (result.rowcount or 0) > 0
    append_log(
        db,
        action="password_reset_by_admin",
        license_id=lic.id,
        license_key=lic.license_key,
        actor=actor,
        meta={"credential_removed": removed},
    )
    await db.commit()
    logger.info("member_password_reset", extra={"license_id": lic.id, "removed": removed, "actor": actor})
    return removed


# ── Listing ───────────────────────────────────────────────────────────────────

def license_to_dict(
    lic: models.License,
    devices: list[models.LicenseDevice] | None = None,
    transaction: models.Transaction | None = None,
) -> dict:
    data = {
        "id": lic.id,
        "license_key": lic.license_key,
        "status": lic.status,
        "origin": lic.origin,
        "max_devices": lic.max_devices,
        "transaction_id": lic.transaction_id,
        "activated_at": isoformat(lic.activated_at),
        "last_validated_at": isoformat(lic.last_validated_at),
        "created_at": isoformat(lic.created_at),
    }
    if devices is not None:
        data["devices"] = [
            {
                "id": d.id,
                "device_fingerprint": d.device_fingerprint,
                "device_name": d.device_name,
                "is_active": d.is_active,
                "ip_address": d.ip_address,
                "first_seen_at": isoformat(d.first_seen_at),
                "last_seen_at": isoformat(d.last_seen_at),
            }
            for d in devices
        ]
    if transaction is not None:
        data["customer"] = {
            "name": transaction.customer_name,
            "email": transaction.customer_email,
        }
    return data


async def status_summary(db: AsyncSession) -> dict[str, int]:
    result = await db.execute(
        select(models.License.status, func.count(models.License.id)).group_by(models.License.status)
    )
    counts = dict(result.all())
    summary = {status: counts.get(status, 0) for status in LICENSE_STATUSES}
    summary["total"] = sum(counts.values())
    return summary


async def list_licenses(
    db: AsyncSession,
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict[str, Any]:
    q = (
        select(models.License, models.Transaction)
        .outerjoin(models.Transaction, models.License.transaction_id == models.Transaction.id)
    )
    if status and status != "all":
        q = q.where(models.License.status == status)
    if search:
        term = f"%{search.strip()}%"
        q = q.where(or_(
            models.License.license_key.ilike(term),
            models.Transaction.customer_email.ilike(term),
            models.Transaction.customer_name.ilike(term),
        ))

    total = await db.scalar(select(func.count()).select_from(q.subquery()))
    result = await db.execute(
        q.order_by(models.License.id.desc()).offset((page - 1) * limit).limit(limit)
    )
    pairs = result.all()

    license_ids = [lic.id for lic, _ in pairs]
    devices_by_license: dict[int, list] = {lid: [] for lid in license_ids}
    if license_ids:
        dev_result = await db.execute(
            select(models.LicenseDevice).where(models.LicenseDevice.license_id.in_(license_ids))
        )
        for device in dev_result.scalars().all():
            devices_by_license[device.license_id].append(device)

    total = total or 0
    return {
        "data": [license_to_dict(lic, devices_by_license[lic.id], txn) for lic, txn in pairs],
        "summary": await status_summary(db),
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }
