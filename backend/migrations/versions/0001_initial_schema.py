"""Initial schema: transactions, licenses, devices, challenges, sessions,
subscriptions, payments, audit log, rate-limit log, admins and members.

Revision ID: 0001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── transactions ──────────────────────────────────────────────────────────
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("provider_txn_id", sa.String(), nullable=False),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("customer_document", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("payment_status", sa.String(), nullable=True),
        sa.Column("product_type", sa.String(), nullable=True),
        sa.Column("plan_type", sa.String(), nullable=True),
        sa.Column("is_subscription", sa.Boolean(), nullable=True),
        sa.Column("access_granted", sa.Boolean(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("subscription_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_transactions_id", "transactions", ["id"])
    op.create_index("ix_transactions_provider_txn_id", "transactions", ["provider_txn_id"], unique=True)
    op.create_index("ix_transactions_customer_email", "transactions", ["customer_email"])

    # ── licenses ──────────────────────────────────────────────────────────────
    op.create_table(
        "licenses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("license_key", sa.String(), nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=True),
        sa.Column("customer_email_hash", sa.String(), nullable=True),
        sa.Column("customer_document_hash", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("origin", sa.String(), nullable=True),
        sa.Column("max_devices", sa.Integer(), nullable=True),
        sa.Column("activated_at", sa.DateTime(), nullable=True),
        sa.Column("last_validated_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_id"),
    )
    op.create_index("ix_licenses_id", "licenses", ["id"])
    op.create_index("ix_licenses_license_key", "licenses", ["license_key"], unique=True)
    op.create_index("ix_licenses_customer_email_hash", "licenses", ["customer_email_hash"])
    op.create_index("ix_licenses_status", "licenses", ["status"])

    # ── license_devices ───────────────────────────────────────────────────────
    op.create_table(
        "license_devices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("license_id", sa.Integer(), nullable=False),
        sa.Column("device_fingerprint", sa.String(), nullable=False),
        sa.Column("device_name", sa.String(), nullable=True),
        sa.Column("device_info", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("first_seen_at", sa.DateTime(), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["license_id"], ["licenses.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("license_id", "device_fingerprint", name="uq_license_device"),
    )
    op.create_index("ix_license_devices_id", "license_devices", ["id"])
    op.create_index("ix_license_devices_license_id", "license_devices", ["license_id"])

    # ── license_challenges ────────────────────────────────────────────────────
    op.create_table(
        "license_challenges",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("nonce", sa.String(), nullable=False),
        sa.Column("challenge_token", sa.String(), nullable=False),
        sa.Column("device_fingerprint", sa.String(), nullable=False),
        sa.Column("extension_id", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_license_challenges_id", "license_challenges", ["id"])
    op.create_index("ix_license_challenges_challenge_token", "license_challenges", ["challenge_token"], unique=True)
    op.create_index("ix_license_challenges_expires_at", "license_challenges", ["expires_at"])

    # ── license_sessions ──────────────────────────────────────────────────────
    op.create_table(
        "license_sessions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_token", sa.String(), nullable=False),
        sa.Column("license_id", sa.Integer(), nullable=False),
        sa.Column("device_fingerprint", sa.String(), nullable=False),
        sa.Column("integrity_hash", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["license_id"], ["licenses.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_license_sessions_id", "license_sessions", ["id"])
    op.create_index("ix_license_sessions_session_token", "license_sessions", ["session_token"], unique=True)
    op.create_index("ix_license_sessions_license_id", "license_sessions", ["license_id"])
    op.create_index("ix_license_sessions_expires_at", "license_sessions", ["expires_at"])

    # ── subscriptions ─────────────────────────────────────────────────────────
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("license_id", sa.Integer(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("product_type", sa.String(), nullable=True),
        sa.Column("plan_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("current_period_start", sa.DateTime(), nullable=False),
        sa.Column("current_period_end", sa.DateTime(), nullable=False),
        sa.Column("next_billing_date", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["license_id"], ["licenses.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscriptions_id", "subscriptions", ["id"])
    op.create_index("ix_subscriptions_license_id", "subscriptions", ["license_id"])
    op.create_index("ix_subscriptions_customer_email", "subscriptions", ["customer_email"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_current_period_end", "subscriptions", ["current_period_end"])

    # ── subscription_payments ─────────────────────────────────────────────────
    op.create_table(
        "subscription_payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("period_start", sa.DateTime(), nullable=False),
        sa.Column("period_end", sa.DateTime(), nullable=False),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscription_payments_id", "subscription_payments", ["id"])
    op.create_index("ix_subscription_payments_subscription_id", "subscription_payments", ["subscription_id"])

    # ── license_logs ──────────────────────────────────────────────────────────
    op.create_table(
        "license_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("license_id", sa.Integer(), nullable=True),
        sa.Column("license_key", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("device_fingerprint", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["license_id"], ["licenses.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_license_logs_id", "license_logs", ["id"])
    op.create_index("ix_license_logs_license_id", "license_logs", ["license_id"])
    op.create_index("ix_license_logs_license_key", "license_logs", ["license_key"])
    op.create_index("ix_license_logs_action", "license_logs", ["action"])
    op.create_index("ix_license_logs_created_at", "license_logs", ["created_at"])

    # ── rate_limit_logs ───────────────────────────────────────────────────────
    op.create_table(
        "rate_limit_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("endpoint", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rate_limit_logs_id", "rate_limit_logs", ["id"])
    op.create_index("ix_rate_limit_logs_ip_address", "rate_limit_logs", ["ip_address"])
    op.create_index("ix_rate_limit_logs_endpoint", "rate_limit_logs", ["endpoint"])
    op.create_index("ix_rate_limit_logs_created_at", "rate_limit_logs", ["created_at"])

    # ── admin_users / member_credentials ──────────────────────────────────────
    op.create_table(
        "admin_users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("password_hash", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_admin_users_id", "admin_users", ["id"])
    op.create_index("ix_admin_users_username", "admin_users", ["username"], unique=True)

    op.create_table(
        "member_credentials",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("password_hash", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_member_credentials_id", "member_credentials", ["id"])
    op.create_index("ix_member_credentials_email", "member_credentials", ["email"], unique=True)


def downgrade() -> None:
    for table in (
        "member_credentials",
        "admin_users",
        "rate_limit_logs",
        "license_logs",
        "subscription_payments",
        "subscriptions",
        "license_sessions",
        "license_challenges",
        "license_devices",
        "licenses",
        "transactions",
    ):
        op.drop_table(table)
