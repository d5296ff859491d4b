"""
Inbound payment confirmations.

The webhook router hands the parsed payload to process_payment(), which runs in
its own DB session and is retried on transient failures (dropped connection,
lock timeout).  Re-delivery of the same event is harmless: the transaction row
is upserted on the provider's id, license issuance is idempotent per
transaction, and a subscription is created or renewed at most once per
transaction.
"""
from dataclasses import dataclass

from sqlalchemy import select
from tenacity import retry, stop_after_attempt, wait_exponential

import license_registry
import models
import subscription_service
from auth_utils import normalize_email
from config import PLAN_PERIOD_DAYS
from database import SessionLocal, utcnow
from logging_config import get_logger, mask_key
from schemas import PaymentWebhook

logger = get_logger(__name__)

STATUS_MAP = {
    "PENDING":    "waiting_payment",
    "PAID":       "paid",
    "EXPIRED":    "cancelled",
    "CANCELLED":  "cancelled",
    "REFUNDED":   "refunded",
    "PROCESSING": "processing",
}


def map_status(vendor_status: str | None) -> str:
    """Vendor vocabulary → internal payment status; anything unknown is still pending."""
    return STATUS_MAP.get((vendor_status or "").strip().upper(), "waiting_payment")


@dataclass
class PaymentOutcome:
    transaction_id: int
    payment_status: str
    license_key: str | None = None
    subscription_id: int | None = None
    renewed: bool = False


async def _upsert_transaction(db, event: PaymentWebhook, status: str) -> models.Transaction:
    result = await db.execute(
        select(models.Transaction).where(models.Transaction.provider_txn_id == event.transaction_id)
    )
    txn = result.scalars().first()
    if txn is None:
        txn = models.Transaction(provider_txn_id=event.transaction_id)
        db.add(txn)

    if event.customer_email:
        txn.customer_email = normalize_email(event.customer_email)
    if event.customer_name:
        txn.customer_name = event.customer_name
    if event.customer_document:
        txn.customer_document = event.customer_document
    if event.amount is not None:
        txn.amount = event.amount
    if event.plan_type:
        txn.plan_type = event.plan_type
    if event.is_subscription is not None:
        txn.is_subscription = event.is_subscription
    if event.product_type:
        txn.product_type = event.product_type

    txn.payment_status = status
    if status == "paid" and txn.paid_at is None:
        txn.paid_at = utcnow()
        txn.access_granted = True
    return txn


async def _already_renewed(db, subscription_id: int, transaction_id: int) -> bool:
    found = await db.scalar(
        select(models.SubscriptionPayment.id).where(
            models.SubscriptionPayment.subscription_id == subscription_id,
            models.SubscriptionPayment.transaction_id == transaction_id,
        )
    )
    return found is not None


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True,
)
async def process_payment(event: PaymentWebhook) -> PaymentOutcome:
    """Record the payment and, once paid, grant access.

    Business outcomes (amount below the license threshold, unknown
    subscription) are logged and do not raise, so they are not retried.
    """
    status = map_status(event.status)
    async with SessionLocal() as db:
        txn = await _upsert_transaction(db, event, status)
        await db.commit()
        outcome = PaymentOutcome(transaction_id=txn.id, payment_status=status)
        logger.info("payment_recorded", extra={
            "provider_txn_id": event.transaction_id,
            "transaction_id": txn.id,
            "vendor_status": event.status,
            "payment_status": status,
        })
        if status != "paid":
            return outcome

        paid_at = txn.paid_at
        if event.subscription_id is not None:
            sub = await db.get(models.Subscription, event.subscription_id)
            if sub is None:
                logger.warning("payment_unknown_subscription", extra={
                    "transaction_id": txn.id, "subscription_id": event.subscription_id,
                })
            else:
                outcome.subscription_id = sub.id
                if not await _already_renewed(db, sub.id, txn.id):
                    await subscription_service.renew(db, sub.id, txn, paid_at=paid_at)
                    outcome.renewed = True
                lic = await db.get(models.License, sub.license_id) if sub.license_id else None
                outcome.license_key = lic.license_key if lic else None
                return outcome

        lic = await license_registry.issue_for_payment(db, txn)
        # Issuance may roll back a failed insert, which expires loaded rows.
        await db.refresh(txn)
        if lic is not None:
            outcome.license_key = lic.license_key

        wants_subscription = txn.is_subscription and txn.plan_type in PLAN_PERIOD_DAYS
        if wants_subscription and txn.subscription_id is None:
            sub = await subscription_service.create_on_payment(
                db, txn, lic.id if lic else None, paid_at=paid_at,
            )
            outcome.subscription_id = sub.id
        elif txn.subscription_id is not None:
            outcome.subscription_id = txn.subscription_id

        logger.info("payment_access_granted", extra={
            "transaction_id": txn.id,
            "license_key": mask_key(outcome.license_key),
            "subscription_id": outcome.subscription_id,
        })
        return outcome
