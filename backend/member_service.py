"""
Member area accounts.

A buyer registers with the e-mail used at checkout; registration is only open
to e-mails that own at least one purchase with access granted.  Passwords are
bcrypt hashes (passlib) and a successful login returns a member bearer token.
"""
import re

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import models
import token_codec
from auth_utils import hash_password, normalize_email, pwd_context, verify_password
from config import JWT_SECRET, MEMBER_SESSION_TTL
from errors import AccessDenied, AuthenticationFailed, ConflictError, ValidationFailed
from logging_config import get_logger
from subscription_service import subscription_to_dict

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6


def format_document(document: str | None) -> str | None:
    """12345678900 → 123.456.789-00; anything that is not 11 digits is returned as-is."""
    if not document:
        return None
    digits = re.sub(r"\D", "", document)
    if len(digits) != 11:
        return document
    return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"


def _check_credentials_input(email: str, password: str) -> str:
    if not email or not password:
        raise ValidationFailed("E-mail and password are required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters", code="WEAK_PASSWORD",
        )
    return normalize_email(email)


async def _transactions_for(db: AsyncSession, email: str) -> list[models.Transaction]:
    result = await db.execute(
        select(models.Transaction)
        .where(models.Transaction.customer_email == email)
        .order_by(models.Transaction.created_at.desc(), models.Transaction.id.desc())
    )
    return result.scalars().all()


async def _require_access(db: AsyncSession, email: str) -> list[models.Transaction]:
    transactions = await _transactions_for(db, email)
    if not any(t.access_granted for t in transactions):
        logger.warning("member_access_denied", extra={"has_purchase": bool(transactions)})
        raise AccessDenied("No purchase with access found for this e-mail", code="ACCESS_BLOCKED")
    return transactions


async def member_overview(db: AsyncSession, email: str) -> dict:
    email = normalize_email(email)
    transactions = await _transactions_for(db, email)
    latest = transactions[0] if transactions else None

    lic_result = await db.execute(
        select(models.License)
        .join(models.Transaction, models.Transaction.id == models.License.transaction_id)
        .where(models.Transaction.customer_email == email)
        .order_by(models.License.created_at.desc(), models.License.id.desc())
    )
    lic = lic_result.scalars().first()

    fingerprint = None
    if lic is not None:
        fingerprint = await db.scalar(
            select(models.LicenseDevice.device_fingerprint)
            .where(
                models.LicenseDevice.license_id == lic.id,
                models.LicenseDevice.is_active.is_(True),
            )
            .order_by(models.LicenseDevice.last_seen_at.desc())
            .limit(1)
        )

    sub_result = await db.execute(
        select(models.Subscription)
        .where(models.Subscription.customer_email == email)
        .order_by(models.Subscription.created_at.desc(), models.Subscription.id.desc())
    )
    return {
        "name": latest.customer_name if latest else None,
        "email": email,
        "document": format_document(latest.customer_document) if latest else None,
        "license_key": lic.license_key if lic else None,
        "license_status": lic.status if lic else None,
        "fingerprint": fingerprint,
        "subscriptions": [subscription_to_dict(s) for s in sub_result.scalars().all()],
    }


async def register(db: AsyncSession, email: str, password: str) -> dict:
    email = _check_credentials_input(email, password)
    await _require_access(db, email)

    existing = await db.scalar(
        select(models.MemberCredential.id).where(models.MemberCredential.email == email)
    )
    if existing is not None:
        raise ConflictError("An account already exists for this e-mail", code="ALREADY_REGISTERED")

    db.add(models.MemberCredential(email=email, password_hash=hash_password(password)))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("An account already exists for this e-mail", code="ALREADY_REGISTERED") from None

    logger.info("member_registered")
    return {
        "token": token_codec.issue_member_token(email, JWT_SECRET, MEMBER_SESSION_TTL),
        "user_data": await member_overview(db, email),
    }


async def login(db: AsyncSession, email: str, password: str) -> dict:
    email = _check_credentials_input(email, password)
    result = await db.execute(
        select(models.MemberCredential).where(models.MemberCredential.email == email)
    )
    cred = result.scalars().first()
    if cred is None:
        # Same bcrypt cost whether or not the account exists.
        pwd_context.dummy_verify()
    if cred is None or not verify_password(password, cred.password_hash):
        logger.warning("member_login_failed", extra={"reason": "no_account" if cred is None else "bad_password"})
        raise AuthenticationFailed("Invalid e-mail or password", code="INVALID_CREDENTIALS")
    await _require_access(db, email)

    logger.info("member_logged_in")
    return {
        "token": token_codec.issue_member_token(email, JWT_SECRET, MEMBER_SESSION_TTL),
        "user_data": await member_overview(db, email),
    }
