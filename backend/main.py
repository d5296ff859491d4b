"""
LicenseGate API entry point.

Wires the routers, the uniform response envelope and CORS:

  success  {"success": true, ...}
  failure  {"success": false, "error": "<message>", "code": "<MACHINE_CODE>"}

OPTIONS requests are answered here with 204 and the CORS headers, before any
route or auth dependency runs.
"""
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi.errors import RateLimitExceeded
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

import models
import redis_service
from auth_utils import hash_password
from config import ADMIN_PASSWORD, ADMIN_USERNAME, CORS_ORIGINS, LOG_LEVEL, validate_secrets
from database import Base, SessionLocal, engine
from dependencies import get_db
from errors import ServiceError
from logging_config import get_logger, setup_logging
from rate_limit import limiter
from routers import admin, extension, members, webhooks

logger = get_logger(__name__)

CORS_ALLOW_HEADERS = "authorization, content-type, x-client-info, x-webhook-secret"
CORS_ALLOW_METHODS = "GET, POST, OPTIONS"


async def bootstrap_admin() -> None:
    """Create the first admin from ADMIN_USERNAME/ADMIN_PASSWORD if none exists."""
    if not ADMIN_USERNAME or not ADMIN_PASSWORD:
        return
    async with SessionLocal() as db:
        count = await db.scalar(select(func.count(models.AdminUser.id)))
        if count:
            return
        db.add(models.AdminUser(username=ADMIN_USERNAME, password_hash=hash_password(ADMIN_PASSWORD)))
        await db.commit()
    logger.info("admin_bootstrapped", extra={"username": ADMIN_USERNAME})


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(LOG_LEVEL)
    validate_secrets()
    # Alembic owns the schema in production; create_all keeps local runs simple.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await bootstrap_admin()
    logger.info("startup_complete")
    yield
    await redis_service.close_redis()


app = FastAPI(title="LicenseGate", lifespan=lifespan)
app.state.limiter = limiter

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def preflight(request: Request, call_next):
    if request.method == "OPTIONS":
        origin = request.headers.get("origin")
        allow_origin = "*" if "*" in CORS_ORIGINS else (origin if origin in CORS_ORIGINS else "")
        headers = {
            "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
            "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
            "Access-Control-Max-Age": "600",
        }
        if allow_origin:
            headers["Access-Control-Allow-Origin"] = allow_origin
        return Response(status_code=204, headers=headers)
    return await call_next(request)


# ── Error envelope ────────────────────────────────────────────────────────────

def _envelope(status_code: int, message: str, code: str | None = None, **extra) -> JSONResponse:
    body = {"success": False, "error": message}
    if code:
        body["code"] = code
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return _envelope(exc.status_code, exc.message, exc.code, **exc.extra)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    response = _envelope(exc.status_code, str(exc.detail))
    if getattr(exc, "headers", None):
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg', 'invalid input')}" if field else first.get("msg", "Invalid input")
    return _envelope(400, message, "MISSING_PARAMS")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning("rate_limit_exceeded", extra={"path": request.url.path, "limit": str(exc.detail)})
    return _envelope(429, "Too many requests", "RATE_LIMIT_EXCEEDED")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", extra={"path": request.url.path})
    return _envelope(500, "Internal server error", "SERVER_ERROR")


# ── Routes ────────────────────────────────────────────────────────────────────

@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return _envelope(503, "Database unreachable", "DB_UNAVAILABLE")
    return {"success": True, "status": "healthy", "database": "connected"}


app.include_router(extension.router)
app.include_router(admin.router)
app.include_router(members.router)
app.include_router(webhooks.router)
