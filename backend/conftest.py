import os
import secrets

import pytest
import pytest_asyncio

# File-backed SQLite for tests; no PostgreSQL required locally.
# Must be set BEFORE database.py / main.py are imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_licensegate.db")
# Disable rate limiting in tests; every request shares the same client IP.
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

# Read at module level by config.py.  PyJWT ≥ 2.9 wants HS256 keys ≥ 32 bytes.
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-hs256-signing!")
os.environ.setdefault("LICENSE_SIGNING_KEY", "test-license-signing-key-32-bytes!")
os.environ.setdefault("IDENTITY_HASH_SALT", "test-identity-salt")

import fakeredis
import redis_service as _redis_service

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import main as _main
import models
import payment_service as _payment_service
import session_service as _session_service
import token_codec
from auth_utils import hash_password
from config import ADMIN_SESSION_TTL, JWT_SECRET
from database import Base, DATABASE_URL, utcnow
from dependencies import get_db
from main import app

# NullPool: every session gets a fresh connection, so nothing bound to a
# previous test's event loop is ever reused.
test_engine = create_async_engine(DATABASE_URL, poolclass=NullPool)
TestSessionLocal = sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


async def _get_test_db():
    """Drop-in replacement for get_db that uses the test engine."""
    async with TestSessionLocal() as session:
        yield session


app.dependency_overrides[get_db] = _get_test_db

# These modules open their own sessions outside FastAPI's dependency graph
# (webhook processing, the challenge purge task, admin bootstrap).
_payment_service.SessionLocal = TestSessionLocal
_session_service.SessionLocal = TestSessionLocal
_main.SessionLocal = TestSessionLocal

ADMIN_USERNAME = "root-admin"
ADMIN_PASSWORD = "correct-horse-battery"


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
    """Fresh in-memory Redis for every test."""
    r = fakeredis.FakeAsyncRedis(decode_responses=True)
    _redis_service._redis = r
    yield r
    await r.aclose()
    _redis_service._redis = None


@pytest_asyncio.fixture(scope="function")
async def db_session():
    """Recreate all tables fresh before every test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with TestSessionLocal() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture(scope="function")
async def admin_user(db_session):
    admin = models.AdminUser(username=ADMIN_USERNAME, password_hash=hash_password(ADMIN_PASSWORD))
    db_session.add(admin)
    await db_session.commit()
    return admin


@pytest_asyncio.fixture(scope="function")
async def admin_client(admin_user):
    """HTTP client carrying a valid admin bearer token."""
    token = token_codec.issue_admin_token(admin_user.username, JWT_SECRET, ADMIN_SESSION_TTL)
    transport = ASGITransport(app=app)
    headers = {"Authorization": f"Bearer {token}"}
    async with AsyncClient(transport=transport, base_url="http://test", headers=headers) as ac:
        yield ac


# ── Factories ─────────────────────────────────────────────────────────────────

@pytest.fixture
def make_transaction(db_session):
    """Insert a paid purchase; keyword arguments override the defaults."""
    async def _make(**overrides) -> models.Transaction:
        fields = {
            "provider_txn_id": f"TX-{secrets.token_hex(4)}",
            "customer_email": f"buyer-{secrets.token_hex(3)}@example.com",
            "customer_name": "Ana Souza",
            "customer_document": "12345678900",
            "amount": 19700,
            "payment_status": "paid",
            "access_granted": True,
            "paid_at": utcnow(),
        }
        fields.update(overrides)
        txn = models.Transaction(**fields)
        db_session.add(txn)
        await db_session.commit()
        return txn
    return _make


@pytest.fixture
def make_license(db_session, make_transaction):
    """Insert an active license attached to a fresh purchase."""
    async def _make(**overrides) -> models.License:
        txn = await make_transaction()
        fields = {
            "license_key": f"ZYRA-{secrets.token_hex(2).upper()}-{secrets.token_hex(2).upper()}-TEST",
            "transaction_id": txn.id,
            "status": "active",
            "origin": "manual",
            "max_devices": 3,
        }
        fields.update(overrides)
        lic = models.License(**fields)
        db_session.add(lic)
        await db_session.commit()
        return lic
    return _make
