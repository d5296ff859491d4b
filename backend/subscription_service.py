"""
Subscription billing periods and their license cascades.

    active ──period ends──▶ expired ──new payment──▶ active
      │                                               ▲
      └──cancel──▶ cancelled ──reactivate / payment───┘

`status` is the source of truth; sweep_expirations() is the only writer of
`expired`.  A subscription that leaves `active` suspends its license (never
revokes it), and a renewal brings the license back only when that cascade was
the last thing to change its status.  An admin suspension stays in place until
an admin lifts it.

renew() and extend() are different operations: renew() starts a fresh period
at the payment time, extend() pushes the current end date out by N days.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

import models
import redis_service
from config import DEFAULT_EXTEND_DAYS, PLAN_PERIOD_DAYS
from database import isoformat, utcnow
from errors import ConflictError, NotFoundError, ValidationFailed
from license_registry import transition
from logging_config import get_logger

logger = get_logger(__name__)

SUBSCRIPTION_STATUSES = ("active", "expired", "cancelled", "suspended")
SUBSCRIPTION_SUSPENSIONS = ("subscription_expired", "subscription_cancelled")
_STATUS_ACTIONS = SUBSCRIPTION_SUSPENSIONS + (
    "subscription_renewed", "subscription_reactivated", "auto_suspended",
)


def plan_period(plan_type: str, start: datetime) -> datetime:
    """End of a billing period that starts at `start`."""
    try:
        days = PLAN_PERIOD_DAYS[plan_type]
    except KeyError:
        raise ValidationFailed(f"Unknown plan type: {plan_type}", code="INVALID_PLAN") from None
    return start + timedelta(days=days)


async def get_subscription(db: AsyncSession, subscription_id: int) -> models.Subscription:
    sub = await db.get(models.Subscription, subscription_id)
    if sub is None:
        raise NotFoundError("Subscription not found", code="SUBSCRIPTION_NOT_FOUND")
    return sub


def _record_payment(
    db: AsyncSession,
    sub: models.Subscription,
    transaction_id: int | None,
    amount: int,
    paid_at: datetime,
) -> models.SubscriptionPayment:
    payment = models.SubscriptionPayment(
        subscription_id=sub.id,
        transaction_id=transaction_id,
        amount=amount,
        status="paid",
        period_start=sub.current_period_start,
        period_end=sub.current_period_end,
        paid_at=paid_at,
    )
    db.add(payment)
    return payment


async def _license_of(db: AsyncSession, sub: models.Subscription) -> models.License | None:
    return await db.get(models.License, sub.license_id) if sub.license_id else None


async def _suspended_by_subscription(db: AsyncSession, license_id: int) -> bool:
    """True when the latest status change of the license came from a subscription lapse."""
    last = await db.scalar(
        select(models.LicenseLog.action)
        .where(
            models.LicenseLog.license_id == license_id,
            or_(
                models.LicenseLog.action.in_(_STATUS_ACTIONS),
                models.LicenseLog.action.like("status_changed_to_%"),
            ),
        )
        .order_by(models.LicenseLog.id.desc())
        .limit(1)
    )
    return last in SUBSCRIPTION_SUSPENSIONS


# ── Payments ──────────────────────────────────────────────────────────────────

async def create_on_payment(
    db: AsyncSession,
    transaction: models.Transaction,
    license_id: int | None,
    paid_at: datetime | None = None,
) -> models.Subscription:
    paid_at = paid_at or utcnow()
    plan_type = transaction.plan_type or "monthly"
    period_end = plan_period(plan_type, paid_at)

    sub = models.Subscription(
        license_id=license_id,
        customer_email=transaction.customer_email,
        product_type=transaction.product_type,
        plan_type=plan_type,
        status="active",
        amount=transaction.amount or 0,
        started_at=paid_at,
        current_period_start=paid_at,
        current_period_end=period_end,
        next_billing_date=period_end,
    )
    db.add(sub)
    await db.flush()
    _record_payment(db, sub, transaction.id, transaction.amount or 0, paid_at)
    transaction.subscription_id = sub.id
    await db.commit()

    logger.info("subscription_created", extra={
        "subscription_id": sub.id,
        "license_id": license_id,
        "plan_type": plan_type,
        "period_end": isoformat(period_end),
    })
    return sub


async def renew(
    db: AsyncSession,
    subscription_id: int,
    transaction: models.Transaction,
    paid_at: datetime | None = None,
) -> models.Subscription:
    """A further payment: the new period runs from the payment time, not from the old end."""
    sub = await get_subscription(db, subscription_id)
    paid_at = paid_at or utcnow()
    previous_status = sub.status

    sub.current_period_start = paid_at
    sub.current_period_end = plan_period(sub.plan_type, paid_at)
    sub.next_billing_date = sub.current_period_end
    sub.status = "active"
    sub.cancelled_at = None
    if transaction.amount:
        sub.amount = transaction.amount
    _record_payment(db, sub, transaction.id, transaction.amount or 0, paid_at)
    transaction.subscription_id = sub.id

    lic = await _license_of(db, sub)
    reactivated = False
    if (
        lic is not None
        and lic.status == "suspended"
        and await _suspended_by_subscription(db, lic.id)
    ):
        await transition(
            db, lic, "active", actor="system", action="subscription_renewed",
            meta={"subscription_id": sub.id, "plan_type": sub.plan_type},
        )
        reactivated = True
    await db.commit()

    logger.info("subscription_renewed", extra={
        "subscription_id": sub.id,
        "previous_status": previous_status,
        "period_end": isoformat(sub.current_period_end),
        "license_reactivated": reactivated,
    })
    if reactivated:
        await redis_service.publish_license_event("subscription_renewed", lic.id, lic.license_key)
    return sub


# ── Admin actions ─────────────────────────────────────────────────────────────

async def extend(
    db: AsyncSession,
    subscription_id: int,
    days: int = DEFAULT_EXTEND_DAYS,
    actor: str = "system",
) -> models.Subscription:
    if days <= 0:
        raise ValidationFailed("days must be positive")
    sub = await get_subscription(db, subscription_id)
    if sub.status != "active":
        # A lapsed subscription comes back through renew() or reactivate().
        raise ConflictError(
            f"Cannot extend a {sub.status} subscription", code="SUBSCRIPTION_NOT_ACTIVE", status=sub.status,
        )
    sub.current_period_end = sub.current_period_end + timedelta(days=days)
    sub.next_billing_date = sub.current_period_end
    await db.commit()
    logger.info("subscription_extended", extra={
        "subscription_id": sub.id, "days": days, "actor": actor,
        "period_end": isoformat(sub.current_period_end),
    })
    return sub


async def cancel(db: AsyncSession, subscription_id: int, actor: str = "system") -> models.Subscription:
    sub = await get_subscription(db, subscription_id)
    sub.status = "cancelled"
    sub.cancelled_at = utcnow()

    lic = await _license_of(db, sub)
    suspended = False
    if lic is not None and lic.status == "active":
        await transition(
            db, lic, "suspended", actor=actor, action="subscription_cancelled",
            meta={"subscription_id": sub.id, "plan_type": sub.plan_type},
        )
        suspended = True
    await db.commit()

    logger.info("subscription_cancelled", extra={
        "subscription_id": sub.id, "actor": actor, "license_suspended": suspended,
    })
    if suspended:
        await redis_service.publish_license_event("subscription_cancelled", lic.id, lic.license_key, actor=actor)
    return sub


async def reactivate(
    db: AsyncSession,
    subscription_id: int,
    plan_type: str | None = None,
    actor: str = "system",
) -> models.Subscription:
    """Admin reactivation: a fresh period starting now, optionally on another plan.

    A revoked license stays revoked.
    """
    sub = await get_subscription(db, subscription_id)
    now = utcnow()
    plan_type = plan_type or sub.plan_type or "monthly"

    sub.plan_type = plan_type
    sub.status = "active"
    sub.current_period_start = now
    sub.current_period_end = plan_period(plan_type, now)
    sub.next_billing_date = sub.current_period_end
    sub.cancelled_at = None

    lic = await _license_of(db, sub)
    reactivated = False
    if lic is not None and lic.status not in ("active", "revoked"):
        await transition(
            db, lic, "active", actor=actor, action="subscription_reactivated",
            meta={"subscription_id": sub.id, "plan_type": plan_type},
        )
        reactivated = True
    await db.commit()

    logger.info("subscription_reactivated", extra={
        "subscription_id": sub.id, "plan_type": plan_type, "actor": actor,
        "license_reactivated": reactivated,
    })
    if reactivated:
        await redis_service.publish_license_event("subscription_reactivated", lic.id, lic.license_key, actor=actor)
    return sub


# ── Expiry sweep ──────────────────────────────────────────────────────────────

async def sweep_expirations(db: AsyncSession) -> dict[str, int]:
    """Expire every active subscription whose period has ended.

    Each subscription flips with a conditional UPDATE, so a second run (or a
    concurrent one) finds nothing left to do and logs nothing.
    """
    now = utcnow()
    result = await db.execute(
        select(models.Subscription).where(
            models.Subscription.status == "active",
            models.Subscription.current_period_end < now,
        )
    )
    due = result.scalars().all()

    expired = 0
    published: list[tuple[int, str]] = []
    for sub in due:
        flipped = await db.execute(
            update(models.Subscription)
            .where(models.Subscription.id == sub.id, models.Subscription.status == "active")
            .values(status="expired", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            continue
        expired += 1

        lic = await _license_of(db, sub)
        if lic is not None and lic.status == "active":
            await transition(
                db, lic, "suspended", actor="system", action="subscription_expired",
                meta={
                    "subscription_id": sub.id,
                    "product_type": sub.product_type,
                    "plan_type": sub.plan_type,
                    "reason": "automatic_expiry",
                },
            )
            published.append((lic.id, lic.license_key))
    await db.commit()

    for license_id, license_key in published:
        await redis_service.publish_license_event("subscription_expired", license_id, license_key)
    logger.info("subscription_sweep_complete", extra={
        "due": len(due), "expired": expired, "licenses_suspended": len(published),
    })
    return {"processed": len(due), "expired": expired, "licenses_suspended": len(published)}


# ── Listing ───────────────────────────────────────────────────────────────────

def subscription_to_dict(sub: models.Subscription, lic: models.License | None = None) -> dict:
    data = {
        "id": sub.id,
        "license_id": sub.license_id,
        "customer_email": sub.customer_email,
        "product_type": sub.product_type,
        "plan_type": sub.plan_type,
        "status": sub.status,
        "amount": sub.amount,
        "started_at": isoformat(sub.started_at),
        "current_period_start": isoformat(sub.current_period_start),
        "current_period_end": isoformat(sub.current_period_end),
        "next_billing_date": isoformat(sub.next_billing_date),
        "cancelled_at": isoformat(sub.cancelled_at),
        "is_expired": sub.is_expired,
    }
    if lic is not None:
        data["license"] = {"license_key": lic.license_key, "status": lic.status}
    return data


async def summary(db: AsyncSession) -> dict[str, int]:
    """Counts per status plus MRR (active monthly) and ARR (active yearly), in cents."""
    result = await db.execute(
        select(
            models.Subscription.status,
            models.Subscription.plan_type,
            func.count(models.Subscription.id),
            func.coalesce(func.sum(models.Subscription.amount), 0),
        ).group_by(models.Subscription.status, models.Subscription.plan_type)
    )
    out = {status: 0 for status in SUBSCRIPTION_STATUSES}
    out.update(total=0, mrr=0, arr=0)
    for status, plan_type, count, amount in result.all():
        out["total"] += count
        out[status] = out.get(status, 0) + count
        if status == "active" and plan_type == "monthly":
            out["mrr"] += amount
        elif status == "active" and plan_type == "yearly":
            out["arr"] += amount
    return out


async def list_subscriptions(
    db: AsyncSession,
    status: str | None = None,
    product_type: str | None = None,
    email: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict[str, Any]:
    q = (
        select(models.Subscription, models.License)
        .outerjoin(models.License, models.License.id == models.Subscription.license_id)
    )
    if status and status != "all":
        q = q.where(models.Subscription.status == status)
    if product_type and product_type != "all":
        q = q.where(models.Subscription.product_type == product_type)
    if email:
        q = q.where(models.Subscription.customer_email.ilike(f"%{email.strip()}%"))

    total = await db.scalar(select(func.count()).select_from(q.subquery())) or 0
    result = await db.execute(
        q.order_by(models.Subscription.created_at.desc(), models.Subscription.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "data": [subscription_to_dict(sub, lic) for sub, lic in result.all()],
        "summary": await summary(db),
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }


async def list_payments(db: AsyncSession, subscription_id: int) -> list[dict]:
    await get_subscription(db, subscription_id)
    result = await db.execute(
        select(models.SubscriptionPayment, models.Transaction)
        .outerjoin(models.Transaction, models.Transaction.id == models.SubscriptionPayment.transaction_id)
        .where(models.SubscriptionPayment.subscription_id == subscription_id)
        .order_by(models.SubscriptionPayment.paid_at.desc(), models.SubscriptionPayment.id.desc())
    )
    return [
        {
            "id": p.id,
            "subscription_id": p.subscription_id,
            "transaction_id": p.transaction_id,
            "amount": p.amount,
            "status": p.status,
            "period_start": isoformat(p.period_start),
            "period_end": isoformat(p.period_end),
            "paid_at": isoformat(p.paid_at),
            "customer_name": txn.customer_name if txn else None,
            "customer_email": txn.customer_email if txn else None,
        }
        for p, txn in result.all()
    ]
