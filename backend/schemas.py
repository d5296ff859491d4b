"""
Pydantic schemas for LicenseGate API request validation.

Admin commands (the tagged `action` payloads) live in admin_commands.py next to
their handlers.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Extension ─────────────────────────────────────────────────────────────────

class ChallengeRequest(BaseModel):
    device_fingerprint: str = Field(..., min_length=1, max_length=256)
    extension_id: Optional[str] = Field(default=None, max_length=128)


class RedeemRequest(BaseModel):
    challenge_token: str = Field(..., min_length=1, max_length=128)
    nonce: str = Field(..., min_length=1, max_length=128)
    license_key: str = Field(..., min_length=1, max_length=64)
    device_fingerprint: str = Field(..., min_length=1, max_length=256)
    integrity_hash: Optional[str] = Field(default=None, max_length=256)


class HeartbeatRequest(BaseModel):
    session_token: str = Field(..., min_length=1, max_length=128)
    device_fingerprint: str = Field(..., min_length=1, max_length=256)
    integrity_hash: Optional[str] = Field(default=None, max_length=256)


class ViolationReport(BaseModel):
    action: str = Field(..., max_length=64, description="One of the violation types, e.g. 'debug_detected'")
    session_token: str = Field(..., min_length=1, max_length=128)
    details: dict[str, Any] = Field(default_factory=dict)


# ── Auth ──────────────────────────────────────────────────────────────────────

class AdminLoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=256)


class MemberCredentialsRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=1, max_length=256)


# ── Admin: licenses ───────────────────────────────────────────────────────────

class ManualLicenseRequest(BaseModel):
    transaction_id: int
    license_key: Optional[str] = Field(
        default=None,
        pattern=r"^[A-Za-z0-9]+-[A-Za-z0-9]{4}-[A-Za-z0-9]{4}-[A-Za-z0-9]{4}$",
        description="Explicit key; omitted = generate one",
    )
    max_devices: int = Field(default=3, ge=1, le=100)


class BulkGenerateRequest(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1)


# ── Payment webhook ───────────────────────────────────────────────────────────

class PaymentWebhook(BaseModel):
    """Payment confirmation as posted by the checkout provider (camelCase on the wire)."""
    model_config = ConfigDict(populate_by_name=True)

    transaction_id: str = Field(..., alias="transactionId", min_length=1, max_length=128)
    status: str = Field(..., max_length=32)
    amount: Optional[int] = Field(default=None, ge=0, description="Minor currency units (cents)")
    customer_email: Optional[str] = Field(default=None, alias="customerEmail", max_length=254)
    customer_document: Optional[str] = Field(default=None, alias="customerDocument", max_length=32)
    customer_name: Optional[str] = Field(default=None, alias="customerName", max_length=256)
    plan_type: Optional[str] = Field(default=None, alias="planType", max_length=16)
    is_subscription: Optional[bool] = Field(default=None, alias="isSubscription")
    subscription_id: Optional[int] = Field(default=None, alias="subscriptionId")
    product_type: Optional[str] = Field(default=None, alias="productType", max_length=64)

    @field_validator("transaction_id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value) if isinstance(value, int) else value
