"""
Admin commands as a tagged union.

Each payload posted to /admin/licenses/actions or /admin/subscriptions/actions
is parsed into exactly one command class (the routers declare the unions
below with `Body(discriminator="action")`) and dispatched to the one handler
registered for that class.  Handlers receive the acting admin's username,
which ends up in every log entry they cause.
"""
from __future__ import annotations

from typing import Awaitable, Callable, Literal, Optional, Union

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

import license_registry
import subscription_service
from config import DEFAULT_EXTEND_DAYS
from database import isoformat


# ── License commands ──────────────────────────────────────────────────────────

class ActivateLicense(BaseModel):
    action: Literal["activate"]
    license_id: int


class SuspendLicense(BaseModel):
    action: Literal["suspend"]
    license_id: int
    reason: Optional[str] = Field(default=None, max_length=256)


class RevokeLicense(BaseModel):
    action: Literal["revoke"]
    license_id: int
    reason: Optional[str] = Field(default=None, max_length=256)


class ResetDevice(BaseModel):
    action: Literal["reset_device"]
    license_id: int


class ResetAllDevices(BaseModel):
    action: Literal["reset_all_devices"]


class EnforceDeviceLimit(BaseModel):
    action: Literal["enforce_device_limit"]
    max_devices: int = Field(default=1, ge=1, le=100)


class SuspendAll(BaseModel):
    action: Literal["suspend_all"]


class ResetPassword(BaseModel):
    action: Literal["reset_password"]
    license_id: int


LicenseCommand = Union[
    ActivateLicense, SuspendLicense, RevokeLicense, ResetDevice,
    ResetAllDevices, EnforceDeviceLimit, SuspendAll, ResetPassword,
]


# ── Subscription commands ─────────────────────────────────────────────────────

class CancelSubscription(BaseModel):
    action: Literal["cancel"]
    subscription_id: int


class ReactivateSubscription(BaseModel):
    action: Literal["reactivate"]
    subscription_id: int
    plan_type: Optional[Literal["weekly", "monthly", "yearly"]] = None


class ExtendSubscription(BaseModel):
    action: Literal["extend"]
    subscription_id: int
    days: int = Field(default=DEFAULT_EXTEND_DAYS, ge=1, le=3650)


SubscriptionCommand = Union[CancelSubscription, ReactivateSubscription, ExtendSubscription]


# ── Handlers ──────────────────────────────────────────────────────────────────

Handler = Callable[[AsyncSession, BaseModel, str], Awaitable[dict]]


async def _activate(db, cmd: ActivateLicense, actor: str) -> dict:
    lic = await license_registry.set_status(db, cmd.license_id, "active", actor=actor)
    return {"message": "License activated", "license_id": lic.id, "status": lic.status}


async def _suspend(db, cmd: SuspendLicense, actor: str) -> dict:
    lic = await license_registry.set_status(db, cmd.license_id, "suspended", actor=actor, reason=cmd.reason)
    return {"message": "License suspended", "license_id": lic.id, "status": lic.status}


async def _revoke(db, cmd: RevokeLicense, actor: str) -> dict:
    lic = await license_registry.set_status(db, cmd.license_id, "revoked", actor=actor, reason=cmd.reason)
    return {"message": "License revoked", "license_id": lic.id, "status": lic.status}


async def _reset_device(db, cmd: ResetDevice, actor: str) -> dict:
    removed = await license_registry.reset_devices(db, cmd.license_id, actor)
    return {"message": "Devices reset", "license_id": cmd.license_id, "devices_removed": removed}


async def _reset_all_devices(db, cmd: ResetAllDevices, actor: str) -> dict:
    count = await license_registry.reset_all_devices(db, actor)
    return {"message": "All devices reset", "count": count}


async def _enforce_device_limit(db, cmd: EnforceDeviceLimit, actor: str) -> dict:
    count = await license_registry.enforce_device_limit(db, actor, cmd.max_devices)
    return {"message": f"Device limit set to {cmd.max_devices}", "count": count}


async def _suspend_all(db, cmd: SuspendAll, actor: str) -> dict:
    count = await license_registry.suspend_all(db, actor)
    return {"message": "All active licenses suspended", "count": count}


async def _reset_password(db, cmd: ResetPassword, actor: str) -> dict:
    removed = await license_registry.reset_password(db, cmd.license_id, actor)
    return {"message": "Member password reset", "license_id": cmd.license_id, "credential_removed": removed}


def _subscription_result(message: str, sub) -> dict:
    return {
        "message": message,
        "subscription_id": sub.id,
        "status": sub.status,
        "current_period_end": isoformat(sub.current_period_end),
    }


async def _cancel(db, cmd: CancelSubscription, actor: str) -> dict:
    sub = await subscription_service.cancel(db, cmd.subscription_id, actor=actor)
    return _subscription_result("Subscription cancelled", sub)


async def _reactivate(db, cmd: ReactivateSubscription, actor: str) -> dict:
    sub = await subscription_service.reactivate(db, cmd.subscription_id, cmd.plan_type, actor=actor)
    return _subscription_result("Subscription reactivated", sub)


async def _extend(db, cmd: ExtendSubscription, actor: str) -> dict:
    sub = await subscription_service.extend(db, cmd.subscription_id, cmd.days, actor=actor)
    return _subscription_result(f"Subscription extended by {cmd.days} days", sub)


HANDLERS: dict[type, Handler] = {
    ActivateLicense:        _activate,
    SuspendLicense:         _suspend,
    RevokeLicense:          _revoke,
    ResetDevice:            _reset_device,
    ResetAllDevices:        _reset_all_devices,
    EnforceDeviceLimit:     _enforce_device_limit,
    SuspendAll:             _suspend_all,
    ResetPassword:          _reset_password,
    CancelSubscription:     _cancel,
    ReactivateSubscription: _reactivate,
    ExtendSubscription:     _extend,
}


async def execute(db: AsyncSession, command: BaseModel, actor: str) -> dict:
    return await HANDLERS[type(command)](db, command, actor)
