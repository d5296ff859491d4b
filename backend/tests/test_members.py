"""
Member area.
Covers:
  POST /members/register   (purchase gate, duplicates, weak password)
  POST /members/login
  GET  /members/me
  format_document
"""
import pytest

import auth_utils
import token_codec
from config import JWT_SECRET
from member_service import format_document

EMAIL = "member@example.com"
PASSWORD = "s3cret-pass"


async def _register(client, email=EMAIL, password=PASSWORD):
    return await client.post("/members/register", json={"email": email, "password": password})


# ── 1. Registration ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_register_requires_a_purchase(client, db_session):
    res = await _register(client)
    assert res.status_code == 403
    assert res.json()["code"] == "ACCESS_BLOCKED"


@pytest.mark.asyncio
async def test_register_requires_access_granted(client, db_session, make_transaction):
    await make_transaction(customer_email=EMAIL, payment_status="waiting_payment", access_granted=False, paid_at=None)
    res = await _register(client)
    assert res.status_code == 403


@pytest.mark.asyncio
async def test_register_returns_token_and_overview(client, db_session, make_license, make_transaction):
    txn = await make_transaction(customer_email=EMAIL)
    lic = await make_license(transaction_id=txn.id)

    res = await _register(client, email="  Member@Example.com ")
    assert res.status_code == 201
    body = res.json()
    assert token_codec.verify(body["token"], JWT_SECRET).claims["email"] == EMAIL
    assert body["user_data"]["license_key"] == lic.license_key
    assert body["user_data"]["document"] == "123.456.789-00"
    assert body["user_data"]["name"] == "Ana Souza"


@pytest.mark.asyncio
async def test_register_twice_conflicts(client, db_session, make_transaction):
    await make_transaction(customer_email=EMAIL)
    assert (await _register(client)).status_code == 201
    again = await _register(client)
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_REGISTERED"


@pytest.mark.asyncio
async def test_register_rejects_short_password(client, db_session, make_transaction):
    await make_transaction(customer_email=EMAIL)
    res = await _register(client, password="12345")
    assert res.status_code == 400
    assert res.json()["code"] == "WEAK_PASSWORD"


# ── 2. Login and profile ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_login_and_me(client, db_session, make_transaction):
    await make_transaction(customer_email=EMAIL)
    await _register(client)

    res = await client.post("/members/login", json={"email": EMAIL, "password": PASSWORD})
    assert res.status_code == 200
    token = res.json()["token"]

    me = await client.get("/members/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["user_data"]["email"] == EMAIL


@pytest.mark.asyncio
@pytest.mark.parametrize("email,password", [(EMAIL, "wrong-pass"), ("ghost@example.com", PASSWORD)])
async def test_login_failures_are_generic(client, db_session, make_transaction, email, password):
    await make_transaction(customer_email=EMAIL)
    await _register(client)

    res = await client.post("/members/login", json={"email": email, "password": password})
    assert res.status_code == 401
    assert res.json()["code"] == "INVALID_CREDENTIALS"


@pytest.mark.asyncio
async def test_unknown_account_still_pays_bcrypt_cost(client, db_session, monkeypatch):
    calls = []
    monkeypatch.setattr(auth_utils.pwd_context, "dummy_verify", lambda: calls.append(1))

    res = await client.post("/members/login", json={"email": "ghost@example.com", "password": PASSWORD})
    assert res.status_code == 401
    assert calls == [1]


@pytest.mark.asyncio
async def test_me_requires_member_token(client, db_session):
    assert (await client.get("/members/me")).status_code == 401

    admin = token_codec.issue_admin_token("ops", JWT_SECRET, 60)
    res = await client.get("/members/me", headers={"Authorization": f"Bearer {admin}"})
    assert res.status_code == 401


# ── 3. Formatting ─────────────────────────────────────────────────────────────

@pytest.mark.parametrize("raw,formatted", [
    ("12345678900", "123.456.789-00"),
    ("123.456.789-00", "123.456.789-00"),
    ("12.345.678/0001-90", "12.345.678/0001-90"),
    (None, None),
    ("", None),
])
def test_format_document(raw, formatted):
    assert format_document(raw) == formatted
