"""
Admin API.
Covers:
  POST /admin/login
  bearer token enforcement on /admin/*
  POST /admin/licenses/actions        (every command, unknown action)
  POST /admin/licenses/manual | bulk-generate
  GET  /admin/licenses[/{id}/logs|devices]
  GET  /admin/subscriptions[/{id}/payments], POST /admin/subscriptions/actions
  GET  /admin/monitoring, POST /admin/jobs/*
  GET  /admin/events/recent
"""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

import models
import token_codec
from config import JWT_SECRET
from conftest import ADMIN_PASSWORD, ADMIN_USERNAME
from database import utcnow


async def _action(admin_client, **payload):
    return await admin_client.post("/admin/licenses/actions", json=payload)


# ── 1. Login ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_login_returns_usable_token(client, admin_user):
    res = await client.post("/admin/login", json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD})
    assert res.status_code == 200
    body = res.json()
    assert body["expires_in"] == 3600

    listing = await client.get("/admin/licenses", headers={"Authorization": f"Bearer {body['token']}"})
    assert listing.status_code == 200


@pytest.mark.asyncio
@pytest.mark.parametrize("username,password", [
    (ADMIN_USERNAME, "wrong-password"),
    ("nobody", ADMIN_PASSWORD),
])
async def test_login_failures_look_identical(client, admin_user, username, password):
    res = await client.post("/admin/login", json={"username": username, "password": password})
    assert res.status_code == 401
    assert res.json() == {"success": False, "error": "Invalid credentials", "code": "INVALID_CREDENTIALS"}


@pytest.mark.asyncio
async def test_admin_routes_require_token(client, db_session):
    res = await client.get("/admin/licenses")
    assert res.status_code == 401
    assert res.json()["code"] == "UNAUTHORIZED"


@pytest.mark.asyncio
async def test_member_token_is_not_an_admin_token(client, db_session):
    token = token_codec.issue_member_token("buyer@example.com", JWT_SECRET, 60)
    res = await client.get("/admin/licenses", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_token_signed_with_other_secret_is_rejected(client, db_session):
    token = token_codec.issue_admin_token(ADMIN_USERNAME, "some-other-secret-of-32-bytes-len!", 60)
    res = await client.get("/admin/licenses", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401


# ── 2. License actions ────────────────────────────────────────────────────────

@pytest.mark.asyncio
@pytest.mark.parametrize("action,expected", [
    ("suspend", "suspended"),
    ("revoke", "revoked"),
])
async def test_status_actions(admin_client, db_session, make_license, action, expected):
    lic = await make_license()
    res = await _action(admin_client, action=action, license_id=lic.id, reason="fraud")
    assert res.status_code == 200
    assert res.json()["status"] == expected

    await db_session.refresh(lic)
    assert lic.status == expected
    log = (await db_session.execute(
        select(models.LicenseLog).where(models.LicenseLog.license_id == lic.id)
    )).scalars().one()
    assert log.meta["actor"] == ADMIN_USERNAME
    assert log.meta["reason"] == "fraud"


@pytest.mark.asyncio
async def test_activate_action(admin_client, db_session, make_license):
    lic = await make_license(status="blocked")
    res = await _action(admin_client, action="activate", license_id=lic.id)
    assert res.json()["status"] == "active"


@pytest.mark.asyncio
async def test_unknown_action_is_rejected(admin_client, db_session, make_license):
    lic = await make_license()
    res = await _action(admin_client, action="delete_everything", license_id=lic.id)
    assert res.status_code == 400
    assert res.json()["code"] == "MISSING_PARAMS"


@pytest.mark.asyncio
async def test_action_on_unknown_license(admin_client, db_session):
    res = await _action(admin_client, action="suspend", license_id=4242)
    assert res.status_code == 404
    assert res.json()["code"] == "LICENSE_NOT_FOUND"


@pytest.mark.asyncio
async def test_reset_device_action(admin_client, db_session, make_license):
    lic = await make_license()
    db_session.add(models.LicenseDevice(license_id=lic.id, device_fingerprint="fp-1"))
    await db_session.commit()

    res = await _action(admin_client, action="reset_device", license_id=lic.id)
    assert res.json()["devices_removed"] == 1


@pytest.mark.asyncio
async def test_fleet_actions_log_bulk_rows(admin_client, db_session, make_license):
    await make_license()
    await make_license(max_devices=5)

    assert (await _action(admin_client, action="reset_all_devices")).status_code == 200
    limit = await _action(admin_client, action="enforce_device_limit")
    assert limit.json()["count"] == 2
    suspended = await _action(admin_client, action="suspend_all")
    assert suspended.json()["count"] == 2

    bulk = (await db_session.execute(
        select(models.LicenseLog.action).where(models.LicenseLog.license_key == "BULK_ACTION")
    )).scalars().all()
    assert sorted(bulk) == [
        "all_devices_reset_by_admin",
        "all_licenses_suspended_by_admin",
        "device_limit_enforced_by_admin",
    ]


@pytest.mark.asyncio
async def test_reset_password_action(admin_client, db_session, make_transaction):
    txn = await make_transaction(customer_email="member@example.com")
    lic = models.License(license_key="ZYRA-PASS-WORD-RSET", transaction_id=txn.id, status="active")
    db_session.add_all([lic, models.MemberCredential(email="member@example.com", password_hash="x")])
    await db_session.commit()

    res = await _action(admin_client, action="reset_password", license_id=lic.id)
    assert res.json()["credential_removed"] is True
    assert await db_session.scalar(select(func.count(models.MemberCredential.id))) == 0


# ── 3. Issuance endpoints ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_manual_license(admin_client, db_session, make_transaction):
    txn = await make_transaction()
    res = await admin_client.post("/admin/licenses/manual", json={"transaction_id": txn.id})
    assert res.status_code == 201
    assert res.json()["license"]["origin"] == "manual"

    again = await admin_client.post("/admin/licenses/manual", json={"transaction_id": txn.id})
    assert again.status_code == 409
    assert again.json()["code"] == "LICENSE_EXISTS"


@pytest.mark.asyncio
async def test_manual_license_rejects_malformed_key(admin_client, db_session, make_transaction):
    txn = await make_transaction()
    res = await admin_client.post(
        "/admin/licenses/manual", json={"transaction_id": txn.id, "license_key": "not a key"},
    )
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_bulk_generate(admin_client, db_session, make_transaction):
    ids = [(await make_transaction()).id for _ in range(3)]
    res = await admin_client.post("/admin/licenses/bulk-generate", json={"transaction_ids": ids})
    assert res.status_code == 200
    assert res.json()["created"] == 3

    rerun = await admin_client.post("/admin/licenses/bulk-generate", json={"transaction_ids": ids})
    assert rerun.json()["skipped"] == 3


# ── 4. Listings ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_licenses_with_search_and_summary(admin_client, db_session, make_transaction, make_license):
    txn = await make_transaction(customer_name="Carla Findme")
    target = await make_license(transaction_id=txn.id)
    await make_license(status="revoked")

    res = await admin_client.get("/admin/licenses", params={"search": "findme"})
    body = res.json()
    assert [row["id"] for row in body["data"]] == [target.id]
    assert body["data"][0]["customer"]["name"] == "Carla Findme"
    assert body["summary"]["total"] == 2
    assert body["pagination"]["total"] == 1

    revoked = await admin_client.get("/admin/licenses", params={"status": "revoked"})
    assert len(revoked.json()["data"]) == 1


@pytest.mark.asyncio
async def test_license_logs_and_devices(admin_client, db_session, make_license):
    lic = await make_license()
    db_session.add(models.LicenseDevice(license_id=lic.id, device_fingerprint="fp-x", device_name="Laptop"))
    await db_session.commit()
    await _action(admin_client, action="suspend", license_id=lic.id)

    logs = await admin_client.get(f"/admin/licenses/{lic.id}/logs")
    assert logs.json()["data"][0]["action"] == "status_changed_to_suspended"

    devices = await admin_client.get(f"/admin/licenses/{lic.id}/devices")
    assert devices.json()["data"][0]["device_name"] == "Laptop"

    missing = await admin_client.get("/admin/licenses/999/logs")
    assert missing.status_code == 404


# ── 5. Subscriptions ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_subscription_listing_and_actions(admin_client, db_session, make_license):
    lic = await make_license()
    now = utcnow()
    sub = models.Subscription(
        license_id=lic.id, customer_email="buyer@example.com", plan_type="monthly",
        status="active", amount=4990, current_period_start=now,
        current_period_end=now + timedelta(days=30),
    )
    db_session.add(sub)
    await db_session.commit()

    listing = await admin_client.get("/admin/subscriptions", params={"email": "buyer@"})
    assert listing.json()["data"][0]["license"]["license_key"] == lic.license_key
    assert listing.json()["summary"]["mrr"] == 4990

    extended = await admin_client.post(
        "/admin/subscriptions/actions", json={"action": "extend", "subscription_id": sub.id, "days": 10},
    )
    assert extended.status_code == 200

    cancelled = await admin_client.post(
        "/admin/subscriptions/actions", json={"action": "cancel", "subscription_id": sub.id},
    )
    assert cancelled.json()["status"] == "cancelled"
    await db_session.refresh(lic)
    assert lic.status == "suspended"

    reactivated = await admin_client.post(
        "/admin/subscriptions/actions",
        json={"action": "reactivate", "subscription_id": sub.id, "plan_type": "yearly"},
    )
    assert reactivated.json()["status"] == "active"
    await db_session.refresh(lic)
    assert lic.status == "active"

    payments = await admin_client.get(f"/admin/subscriptions/{sub.id}/payments")
    assert payments.json()["data"] == []


@pytest.mark.asyncio
async def test_subscription_action_rejects_unknown_plan(admin_client, db_session):
    res = await admin_client.post(
        "/admin/subscriptions/actions",
        json={"action": "reactivate", "subscription_id": 1, "plan_type": "lifetime"},
    )
    assert res.status_code == 400


# ── 6. Monitoring, jobs, events ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_monitoring_endpoint(admin_client, db_session):
    res = await admin_client.get("/admin/monitoring")
    assert res.status_code == 200
    assert set(res.json()["data"]) == {"sessions", "violations", "ratelimits"}

    bad = await admin_client.get("/admin/monitoring", params={"section": "nope"})
    assert bad.status_code == 400
    assert bad.json()["code"] == "INVALID_SECTION"


@pytest.mark.asyncio
async def test_job_endpoints(admin_client, db_session, make_license):
    lic = await make_license()
    for _ in range(5):
        db_session.add(models.LicenseLog(license_id=lic.id, license_key=lic.license_key, action="debug_detected"))
    await db_session.commit()

    suspend = await admin_client.post("/admin/jobs/auto-suspend")
    assert suspend.json()["suspended"][0]["license_id"] == lic.id

    expiry = await admin_client.post("/admin/jobs/subscription-expiry")
    assert expiry.json() == {"success": True, "processed": 0, "expired": 0, "licenses_suspended": 0}


@pytest.mark.asyncio
async def test_recent_events_reflect_admin_actions(admin_client, db_session, make_license):
    lic = await make_license()
    await _action(admin_client, action="revoke", license_id=lic.id)

    res = await admin_client.get("/admin/events/recent")
    event = res.json()["data"][0]
    assert event["action"] == "status_changed_to_revoked"
    assert event["license_id"] == lic.id
    assert event["actor"] == ADMIN_USERNAME
