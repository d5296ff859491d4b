from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint,
)
from database import Base, utcnow


class Transaction(Base):
    """A purchase as reported by the payment provider, the origin of a license."""
    __tablename__ = "transactions"

    id                = Column(Integer, primary_key=True, index=True)
    provider_txn_id   = Column(String, unique=True, index=True, nullable=False)
    customer_email    = Column(String, index=True)
    customer_name     = Column(String, nullable=True)
    customer_document = Column(String, nullable=True)
    amount            = Column(Integer, default=0)               # cents
    payment_status    = Column(String, default="waiting_payment")
    product_type      = Column(String, nullable=True)
    plan_type         = Column(String, nullable=True)            # weekly | monthly | yearly
    is_subscription   = Column(Boolean, default=False)
    access_granted    = Column(Boolean, default=False)
    paid_at           = Column(DateTime, nullable=True)
    subscription_id   = Column(Integer, nullable=True)          # latest subscription this purchase paid for
    created_at        = Column(DateTime, default=utcnow)
    updated_at        = Column(DateTime, default=utcnow, onupdate=utcnow)


class License(Base):
    __tablename__ = "licenses"

    id                     = Column(Integer, primary_key=True, index=True)
    license_key            = Column(String, unique=True, index=True, nullable=False)
    transaction_id         = Column(Integer, ForeignKey("transactions.id"), unique=True, nullable=True)
    customer_email_hash    = Column(String, nullable=True, index=True)    # salted sha256, never plaintext
    customer_document_hash = Column(String, nullable=True)
    status                 = Column(String, default="awaiting_activation", index=True)
    origin                 = Column(String, default="automatic")          # automatic | manual | bulk
    max_devices            = Column(Integer, default=3)
    activated_at           = Column(DateTime, nullable=True)
    last_validated_at      = Column(DateTime, nullable=True)
    created_at             = Column(DateTime, default=utcnow)
    updated_at             = Column(DateTime, default=utcnow, onupdate=utcnow)


class LicenseDevice(Base):
    __tablename__ = "license_devices"
    __table_args__ = (
        UniqueConstraint("license_id", "device_fingerprint", name="uq_license_device"),
    )

    id                 = Column(Integer, primary_key=True, index=True)
    license_id         = Column(Integer, ForeignKey("licenses.id"), nullable=False, index=True)
    device_fingerprint = Column(String, nullable=False)
    device_name        = Column(String, nullable=True)
    device_info        = Column(JSON, nullable=True)
    is_active          = Column(Boolean, default=True)
    ip_address         = Column(String, nullable=True)
    first_seen_at      = Column(DateTime, default=utcnow)
    last_seen_at       = Column(DateTime, default=utcnow)


class LicenseChallenge(Base):
    """Single-use nonce handed to the extension before it may open a session."""
    __tablename__ = "license_challenges"

    id                 = Column(Integer, primary_key=True, index=True)
    nonce              = Column(String, nullable=False)
    challenge_token    = Column(String, unique=True, index=True, nullable=False)
    device_fingerprint = Column(String, nullable=False)
    extension_id       = Column(String, nullable=True)
    expires_at         = Column(DateTime, nullable=False, index=True)
    used               = Column(Boolean, default=False, nullable=False)
    created_at         = Column(DateTime, default=utcnow)


class LicenseSession(Base):
    __tablename__ = "license_sessions"

    id                 = Column(Integer, primary_key=True, index=True)
    session_token      = Column(String, unique=True, index=True, nullable=False)
    license_id         = Column(Integer, ForeignKey("licenses.id"), nullable=False, index=True)
    device_fingerprint = Column(String, nullable=False)
    integrity_hash     = Column(String, nullable=True)     # client attestation captured at redemption
    ip_address         = Column(String, nullable=True)
    created_at         = Column(DateTime, default=utcnow)
    last_heartbeat     = Column(DateTime, default=utcnow)
    expires_at         = Column(DateTime, nullable=False, index=True)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id                   = Column(Integer, primary_key=True, index=True)
    license_id           = Column(Integer, ForeignKey("licenses.id"), nullable=True, index=True)
    customer_email       = Column(String, index=True)
    product_type         = Column(String, nullable=True)
    plan_type            = Column(String, nullable=False)
    status               = Column(String, default="active", index=True)   # active | expired | cancelled | suspended
    amount               = Column(Integer, default=0)                     # cents
    started_at           = Column(DateTime, default=utcnow)
    current_period_start = Column(DateTime, nullable=False)
    current_period_end   = Column(DateTime, nullable=False, index=True)
    next_billing_date    = Column(DateTime, nullable=True)
    cancelled_at         = Column(DateTime, nullable=True)
    created_at           = Column(DateTime, default=utcnow)
    updated_at           = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_expired(self) -> bool:
        """Display-only countdown helper; `status` is the source of truth."""
        return self.current_period_end < utcnow()


class SubscriptionPayment(Base):
    __tablename__ = "subscription_payments"

    id              = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    transaction_id  = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    amount          = Column(Integer, default=0)
    status          = Column(String, default="paid")
    period_start    = Column(DateTime, nullable=False)
    period_end      = Column(DateTime, nullable=False)
    paid_at         = Column(DateTime, default=utcnow)
    created_at      = Column(DateTime, default=utcnow)


class LicenseLog(Base):
    """Append-only audit trail; also the input of the auto-suspend sweep."""
    __tablename__ = "license_logs"

    id                 = Column(Integer, primary_key=True, index=True)
    license_id         = Column(Integer, ForeignKey("licenses.id"), nullable=True, index=True)
    license_key        = Column(String, index=True)       # "BULK_ACTION" for fleet-wide actions
    action             = Column(String, nullable=False, index=True)
    device_fingerprint = Column(String, nullable=True)
    ip_address         = Column(String, nullable=True)
    meta               = Column("metadata", JSON, nullable=True)
    created_at         = Column(DateTime, default=utcnow, index=True)


class RateLimitLog(Base):
    __tablename__ = "rate_limit_logs"

    id         = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String, index=True)
    endpoint   = Column(String, index=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class AdminUser(Base):
    __tablename__ = "admin_users"

    id            = Column(Integer, primary_key=True, index=True)
    username      = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(Text, nullable=False)                      # bcrypt
    created_at    = Column(DateTime, default=utcnow)


class MemberCredential(Base):
    __tablename__ = "member_credentials"

    id            = Column(Integer, primary_key=True, index=True)
    email         = Column(String, unique=True, index=True, nullable=False)   # lower-cased
    password_hash = Column(Text, nullable=False)
    created_at    = Column(DateTime, default=utcnow)
