"""
Device seats per license.

A device is identified by the fingerprint the extension computes.  Re-binding a
known fingerprint never costs a seat; a new fingerprint is only accepted while
the license has fewer bindings than max_devices.

Concurrent activations of the same license are serialised by a row lock on the
license (SELECT ... FOR UPDATE on PostgreSQL; SQLite already serialises
writers), and the (license_id, device_fingerprint) unique constraint rules out
duplicate rows for one device.
"""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import models
from database import isoformat, utcnow
from license_registry import append_log
from logging_config import get_logger, mask_key

logger = get_logger(__name__)

LIMIT_EXCEEDED = "LIMIT_EXCEEDED"


@dataclass
class BindResult:
    accepted: bool
    reason: str | None = None
    device: models.LicenseDevice | None = None
    is_new: bool = False


async def _find_device(db: AsyncSession, license_id: int, fingerprint: str) -> models.LicenseDevice | None:
    result = await db.execute(
        select(models.LicenseDevice).where(
            models.LicenseDevice.license_id == license_id,
            models.LicenseDevice.device_fingerprint == fingerprint,
        )
    )
    return result.scalars().first()


async def bind_device(
    db: AsyncSession,
    lic: models.License,
    fingerprint: str,
    *,
    device_name: str | None = None,
    device_info: dict | None = None,
    ip_address: str | None = None,
) -> BindResult:
    """Bind `fingerprint` to the license, or refuse when every seat is taken.

    Stages changes only; the caller commits.  A refusal mutates nothing.
    """
    locked = await db.execute(
        select(models.License)
        .where(models.License.id == lic.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    lic = locked.scalars().one()
    now = utcnow()

    device = await _find_device(db, lic.id, fingerprint)
    if device is not None:
        device.last_seen_at = now
        device.is_active = True
        if ip_address:
            device.ip_address = ip_address
        if device_name:
            device.device_name = device_name
        if lic.activated_at is None:
            lic.activated_at = now
        return BindResult(True, device=device)

    bound = await db.scalar(
        select(func.count(models.LicenseDevice.id)).where(
            models.LicenseDevice.license_id == lic.id,
            models.LicenseDevice.is_active.is_(True),
        )
    )
    if (bound or 0) >= lic.max_devices:
        logger.warning("device_limit_reached", extra={
            "license_id": lic.id,
            "license_key": mask_key(lic.license_key),
            "bound": bound,
            "max_devices": lic.max_devices,
        })
        return BindResult(False, reason=LIMIT_EXCEEDED)

    device = models.LicenseDevice(
        license_id=lic.id,
        device_fingerprint=fingerprint,
        device_name=device_name,
        device_info=device_info,
        ip_address=ip_address,
        is_active=True,
        first_seen_at=now,
        last_seen_at=now,
    )
    db.add(device)
    try:
        await db.flush()
    except IntegrityError:
        # The same device won a parallel activation; its row is the binding.
        license_id = lic.id
        await db.rollback()
        lic = await db.get(models.License, license_id, populate_existing=True)
        device = await _find_device(db, license_id, fingerprint)
        if device is None:
            raise
        return BindResult(True, device=device)

    if lic.activated_at is None:
        lic.activated_at = now
    append_log(
        db,
        action="device_bound",
        license_id=lic.id,
        license_key=lic.license_key,
        device_fingerprint=fingerprint,
        ip_address=ip_address,
        meta={"device_name": device_name, "seats_used": (bound or 0) + 1},
    )
    logger.info("device_bound", extra={
        "license_id": lic.id,
        "license_key": mask_key(lic.license_key),
        "seats_used": (bound or 0) + 1,
        "max_devices": lic.max_devices,
    })
    return BindResult(True, device=device, is_new=True)


async def touch(
    db: AsyncSession,
    license_id: int,
    fingerprint: str,
    ip_address: str | None = None,
) -> None:
    values = {"last_seen_at": utcnow()}
    if ip_address:
        values["ip_address"] = ip_address
    await db.execute(
        update(models.LicenseDevice)
        .where(
            models.LicenseDevice.license_id == license_id,
            models.LicenseDevice.device_fingerprint == fingerprint,
        )
        .values(**values)
    )


async def list_devices(db: AsyncSession, license_id: int) -> list[dict]:
    result = await db.execute(
        select(models.LicenseDevice)
        .where(models.LicenseDevice.license_id == license_id)
        .order_by(models.LicenseDevice.first_seen_at)
    )
    return [
        {
            "id": d.id,
            "device_fingerprint": d.device_fingerprint,
            "device_name": d.device_name,
            "device_info": d.device_info or {},
            "is_active": d.is_active,
            "ip_address": d.ip_address,
            "first_seen_at": isoformat(d.first_seen_at),
            "last_seen_at": isoformat(d.last_seen_at),
        }
        for d in result.scalars().all()
    ]
