"""
Payment provider webhook:
  POST /webhooks/payment
"""
import hmac as _hmac

from fastapi import APIRouter, Header, Request

import payment_service
from config import PAYMENT_WEBHOOK_SECRET
from errors import AuthenticationFailed
from logging_config import get_logger
from rate_limit import WEBHOOK_LIMIT, limiter
from schemas import PaymentWebhook

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks")


@router.post("/payment")
@limiter.limit(WEBHOOK_LIMIT)
async def payment_webhook(
    event: PaymentWebhook,
    request: Request,
    x_webhook_secret: str = Header(default=""),
):
    """Record a payment status change; a `paid` event grants access.

    When PAYMENT_WEBHOOK_SECRET is configured the caller must echo it in
    X-Webhook-Secret (timing-safe comparison).
    """
    if PAYMENT_WEBHOOK_SECRET and not _hmac.compare_digest(x_webhook_secret, PAYMENT_WEBHOOK_SECRET):
        logger.warning("webhook_secret_mismatch", extra={"provider_txn_id": event.transaction_id})
        raise AuthenticationFailed("Invalid webhook secret")

    outcome = await payment_service.process_payment(event)
    return {
        "success": True,
        "transaction_id": outcome.transaction_id,
        "status": outcome.payment_status,
        "license_issued": outcome.license_key is not None,
        "subscription_id": outcome.subscription_id,
        "renewed": outcome.renewed,
    }
