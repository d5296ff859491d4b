"""
Central configuration: all env-vars and tunable constants live here.
Import from this module instead of calling os.getenv() scattered across the codebase.

REQUIRED secrets (the app refuses to start without them, see validate_secrets()):
  JWT_SECRET           : HS256 signing secret for admin and member tokens (≥ 32 chars)
  LICENSE_SIGNING_KEY  : HMAC key used to sign responses sent to the extension (≥ 32 chars)
  IDENTITY_HASH_SALT   : salt mixed into customer e-mail / document hashes (≥ 16 chars)
"""
import os

# ── Authentication secrets ─────────────────────────────────────────────────────
# No derived fallbacks: a predictable secret is worse than a startup failure.
JWT_SECRET          = os.getenv("JWT_SECRET", "")
LICENSE_SIGNING_KEY = os.getenv("LICENSE_SIGNING_KEY", "")
IDENTITY_HASH_SALT  = os.getenv("IDENTITY_HASH_SALT", "")

# Optional shared secret for the payment webhook.  Empty = header not checked.
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "")

# First admin account, created at startup when admin_users is empty.
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")

# Token lifetimes (seconds).
ADMIN_SESSION_TTL  = int(os.getenv("ADMIN_SESSION_TTL", "3600"))     # 1 hour
MEMBER_SESSION_TTL = int(os.getenv("MEMBER_SESSION_TTL", "86400"))   # 24 hours


def validate_secrets() -> None:
    """Fail fast at startup if any required secret is missing or too short.

    Called from the FastAPI lifespan handler so a misconfigured deployment
    exits immediately instead of issuing tokens signed with an empty key.
    """
    errors: list[str] = []
    _required = {
        "JWT_SECRET":          (JWT_SECRET,          32),
        "LICENSE_SIGNING_KEY": (LICENSE_SIGNING_KEY, 32),
        "IDENTITY_HASH_SALT":  (IDENTITY_HASH_SALT,  16),
    }
    for name, (value, min_len) in _required.items():
        if not value:
            errors.append(f"  {name} is not set")
        elif len(value) < min_len:
            errors.append(f"  {name} is too short ({len(value)} chars, minimum {min_len})")
    if errors:
        raise RuntimeError(
            "LicenseGate startup aborted, insecure configuration:\n"
            + "\n".join(errors)
            + "\n\nSet the missing environment variables and restart."
        )


# ── License issuance ──────────────────────────────────────────────────────────
LICENSE_KEY_PREFIX      = os.getenv("LICENSE_KEY_PREFIX", "ZYRA")
LICENSE_KEY_ALPHABET    = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
KEY_GENERATION_ATTEMPTS = 5
MIN_AMOUNT_FOR_LICENSE  = int(os.getenv("MIN_AMOUNT_FOR_LICENSE", "10700"))  # cents
DEFAULT_MAX_DEVICES     = int(os.getenv("DEFAULT_MAX_DEVICES", "3"))
BULK_MAX_DEVICES        = 1
BULK_MAX_TRANSACTIONS   = 50

# ── Challenge / session ───────────────────────────────────────────────────────
CHALLENGE_TTL_SECONDS = 60
SESSION_TTL_HOURS     = int(os.getenv("SESSION_TTL_HOURS", "24"))

# ── Subscription periods (days) ───────────────────────────────────────────────
PLAN_PERIOD_DAYS: dict[str, int] = {
    "weekly":  7,    # legacy plan
    "monthly": 30,
    "yearly":  365,
}
DEFAULT_EXTEND_DAYS = 30

# ── Monitoring policy ─────────────────────────────────────────────────────────
# Product policy values: changing them changes who loses access.
VIOLATION_WINDOW_HOURS        = 24
AUTO_SUSPEND_THRESHOLD        = 4    # suspend when violations in window > this
RATE_LIMIT_ALERT_WINDOW_HOURS = 1
RATE_LIMIT_ALERT_MIN_COUNT    = 5

# ── Logging ───────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ── CORS ──────────────────────────────────────────────────────────────────────
# Strip whitespace from each origin so "http://a.com, http://b.com" parses correctly.
CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "*").split(",")
    if o.strip()
]
