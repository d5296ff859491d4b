"""
License issuance and status transitions (service layer).
Covers:
  generate_key             (format, uniqueness)
  issue_for_payment        (idempotence, minimum amount, identity hashing)
  issue_manual / bulk_issue
  collision retry          (taken key, exhausted attempts)
  set_status / transition  (log rows, session teardown)
  fleet-wide actions       (BULK_ACTION log rows)
"""
import re
from datetime import timedelta

import pytest
from sqlalchemy import func, select

import license_registry
import models
import redis_service
from auth_utils import hash_identity
from database import utcnow
from errors import ConflictError, KeyGenerationError, NotFoundError, ValidationFailed

KEY_PATTERN = re.compile(r"^ZYRA-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$")


async def _logs(db, license_id=None, action=None):
    q = select(models.LicenseLog)
    if license_id is not None:
        q = q.where(models.LicenseLog.license_id == license_id)
    if action is not None:
        q = q.where(models.LicenseLog.action == action)
    return (await db.execute(q)).scalars().all()


# ── 1. Key generation ─────────────────────────────────────────────────────────

def test_generated_key_format():
    for _ in range(100):
        assert KEY_PATTERN.match(license_registry.generate_key())


def test_ten_thousand_keys_are_distinct():
    keys = {license_registry.generate_key() for _ in range(10_000)}
    assert len(keys) == 10_000


def test_normalize_key_trims_and_uppercases():
    assert license_registry.normalize_key("  zyra-ab12-cd34-ef56 ") == "ZYRA-AB12-CD34-EF56"


# ── 2. Payment issuance ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_issue_for_payment_creates_active_license(db_session, make_transaction):
    txn = await make_transaction(customer_email="Buyer@Example.com")
    lic = await license_registry.issue_for_payment(db_session, txn)

    assert lic is not None
    assert KEY_PATTERN.match(lic.license_key)
    assert lic.status == "active"
    assert lic.origin == "automatic"
    assert lic.max_devices == 3
    assert lic.customer_email_hash == hash_identity("buyer@example.com")
    assert lic.customer_document_hash == hash_identity("123.456.789-00", digits_only=True)

    created = await _logs(db_session, lic.id, "created")
    assert len(created) == 1
    assert created[0].meta["transaction_id"] == txn.id


@pytest.mark.asyncio
async def test_issue_for_payment_is_idempotent(db_session, make_transaction):
    txn = await make_transaction()
    first = await license_registry.issue_for_payment(db_session, txn)
    second = await license_registry.issue_for_payment(db_session, txn)

    assert first.id == second.id
    count = await db_session.scalar(
        select(func.count(models.License.id)).where(models.License.transaction_id == txn.id)
    )
    assert count == 1


@pytest.mark.asyncio
async def test_payment_below_minimum_gets_no_license(db_session, make_transaction):
    txn = await make_transaction(amount=10699)
    assert await license_registry.issue_for_payment(db_session, txn) is None
    assert await db_session.scalar(select(func.count(models.License.id))) == 0


@pytest.mark.asyncio
async def test_payment_at_minimum_gets_license(db_session, make_transaction):
    txn = await make_transaction(amount=10700)
    assert await license_registry.issue_for_payment(db_session, txn) is not None


@pytest.mark.asyncio
async def test_issuance_publishes_created_event(db_session, make_transaction, fake_redis):
    txn = await make_transaction()
    lic = await license_registry.issue_for_payment(db_session, txn)
    events = await redis_service.recent_events(10)
    assert events[0]["action"] == "created"
    assert events[0]["license_key"] == lic.license_key


# ── 3. Collision retry ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_collision_with_existing_key_retries(db_session, make_transaction, make_license, monkeypatch):
    taken = await make_license(license_key="ZYRA-AAAA-BBBB-CCCC")
    candidates = iter([taken.license_key, "ZYRA-DDDD-EEEE-FFFF"])
    monkeypatch.setattr(license_registry, "generate_key", lambda: next(candidates))

    txn = await make_transaction()
    lic = await license_registry.issue_for_payment(db_session, txn)
    assert lic.license_key == "ZYRA-DDDD-EEEE-FFFF"


@pytest.mark.asyncio
async def test_exhausted_key_attempts_raise(db_session, make_transaction, make_license, monkeypatch):
    taken = await make_license(license_key="ZYRA-AAAA-BBBB-CCCC")
    monkeypatch.setattr(license_registry, "generate_key", lambda: taken.license_key)

    txn = await make_transaction()
    with pytest.raises(KeyGenerationError):
        await license_registry.issue_for_payment(db_session, txn)
    assert await license_registry.license_for_transaction(db_session, txn.id) is None


# ── 4. Manual and bulk issuance ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_manual_issue_with_explicit_key(db_session, make_transaction):
    txn = await make_transaction()
    lic = await license_registry.issue_manual(
        db_session, txn.id, "ops", license_key="zyra-man1-key2-abcd", max_devices=2,
    )
    assert lic.license_key == "ZYRA-MAN1-KEY2-ABCD"
    assert lic.origin == "manual"
    assert lic.max_devices == 2
    created = await _logs(db_session, lic.id, "created")
    assert created[0].meta["actor"] == "ops"


@pytest.mark.asyncio
async def test_manual_issue_refuses_licensed_transaction(db_session, make_license):
    lic = await make_license()
    with pytest.raises(ConflictError) as exc:
        await license_registry.issue_manual(db_session, lic.transaction_id, "ops")
    assert exc.value.code == "LICENSE_EXISTS"


@pytest.mark.asyncio
async def test_manual_issue_refuses_key_in_use(db_session, make_transaction, make_license):
    existing = await make_license()
    txn = await make_transaction()
    with pytest.raises(ConflictError) as exc:
        await license_registry.issue_manual(db_session, txn.id, "ops", license_key=existing.license_key)
    assert exc.value.code == "LICENSE_KEY_IN_USE"


@pytest.mark.asyncio
async def test_manual_issue_unknown_transaction(db_session):
    with pytest.raises(NotFoundError) as exc:
        await license_registry.issue_manual(db_session, 999, "ops")
    assert exc.value.code == "TRANSACTION_NOT_FOUND"


@pytest.mark.asyncio
async def test_bulk_issue_reports_per_row(db_session, make_transaction, make_license):
    a = await make_transaction()
    b = await make_transaction()
    licensed = await make_license()

    report = await license_registry.bulk_issue(db_session, [a.id, b.id, licensed.transaction_id, 4242], "ops")

    assert report["total"] == 4
    assert report["created"] == 2
    assert report["skipped"] == 1
    assert report["failed"] == 1
    by_txn = {row["transaction_id"]: row for row in report["rows"]}
    assert by_txn[licensed.transaction_id]["license_key"] == licensed.license_key
    assert by_txn[4242]["status"] == "error"

    new = await license_registry.license_for_transaction(db_session, a.id)
    assert new.origin == "bulk"
    assert new.max_devices == 1


@pytest.mark.asyncio
async def test_bulk_issue_caps_batch_size(db_session):
    with pytest.raises(ValidationFailed):
        await license_registry.bulk_issue(db_session, list(range(1, 52)), "ops")


# ── 5. Status transitions ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_set_status_logs_previous_and_new(db_session, make_license):
    lic = await make_license()
    await license_registry.set_status(db_session, lic.id, "suspended", actor="ops", reason="chargeback")

    logs = await _logs(db_session, lic.id, "status_changed_to_suspended")
    assert len(logs) == 1
    assert logs[0].meta == {
        "previous_status": "active",
        "new_status": "suspended",
        "reason": "chargeback",
        "actor": "ops",
    }


@pytest.mark.asyncio
async def test_leaving_active_ends_sessions(db_session, make_license):
    lic = await make_license()
    db_session.add(models.LicenseSession(
        session_token="tok-1", license_id=lic.id, device_fingerprint="fp",
        expires_at=utcnow() + timedelta(hours=1),
    ))
    await db_session.commit()

    await license_registry.set_status(db_session, lic.id, "revoked", actor="ops")
    remaining = await db_session.scalar(
        select(func.count(models.LicenseSession.id)).where(models.LicenseSession.license_id == lic.id)
    )
    assert remaining == 0


@pytest.mark.asyncio
async def test_unknown_status_is_rejected(db_session, make_license):
    lic = await make_license()
    with pytest.raises(ValidationFailed) as exc:
        await license_registry.set_status(db_session, lic.id, "paused")
    assert exc.value.code == "INVALID_STATUS"


@pytest.mark.asyncio
async def test_set_status_unknown_license(db_session):
    with pytest.raises(NotFoundError) as exc:
        await license_registry.set_status(db_session, 12345, "active")
    assert exc.value.code == "LICENSE_NOT_FOUND"


# ── 6. Fleet-wide actions ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_suspend_all_only_touches_active(db_session, make_license):
    await make_license()
    await make_license()
    revoked = await make_license(status="revoked")

    count = await license_registry.suspend_all(db_session, "ops")
    assert count == 2

    await db_session.refresh(revoked)
    assert revoked.status == "revoked"
    bulk = await _logs(db_session, action="all_licenses_suspended_by_admin")
    assert len(bulk) == 1
    assert bulk[0].license_key == license_registry.BULK_ACTION_KEY
    assert bulk[0].meta["count"] == 2


@pytest.mark.asyncio
async def test_enforce_device_limit_lowers_every_license(db_session, make_license):
    a = await make_license(max_devices=3)
    b = await make_license(max_devices=1)

    count = await license_registry.enforce_device_limit(db_session, "ops", 1)
    assert count == 1
    await db_session.refresh(a)
    await db_session.refresh(b)
    assert a.max_devices == b.max_devices == 1


@pytest.mark.asyncio
async def test_reset_devices_unbinds_and_logs(db_session, make_license):
    lic = await make_license(activated_at=utcnow())
    db_session.add_all([
        models.LicenseDevice(license_id=lic.id, device_fingerprint="fp-1"),
        models.LicenseDevice(license_id=lic.id, device_fingerprint="fp-2"),
    ])
    await db_session.commit()

    removed = await license_registry.reset_devices(db_session, lic.id, "ops")
    assert removed == 2
    await db_session.refresh(lic)
    assert lic.activated_at is None
    assert len(await _logs(db_session, lic.id, "device_reset_by_admin")) == 1


@pytest.mark.asyncio
async def test_status_summary_counts(db_session, make_license):
    await make_license()
    await make_license(status="blocked")
    summary = await license_registry.status_summary(db_session)
    assert summary["active"] == 1
    assert summary["blocked"] == 1
    assert summary["revoked"] == 0
    assert summary["total"] == 2
