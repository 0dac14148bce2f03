"""
main.py
FastAPI application entry point.
Registers all routers, middleware, exception handlers, startup/shutdown events.

Production features:
- Structured JSON logging with per-request IDs
- Domain errors mapped to stable HTTP status codes
- Rate limiting of unauthenticated traffic (Redis, fail-open)
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from logging import LogRecord
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.middleware.sessions import SessionMiddleware

import config.redis_client as redis_module
from config.database import close_db, init_db, ping_db
from config.redis_client import RedisCache, close_redis, init_redis, ping_redis, unauth_rate_key
from config.settings import settings
from shared.utils.errors import MarketplaceError
from shared.utils.storage import URL_PREFIX

# Service routers
from services.admin.router import router as admin_router
from services.auth.router import router as auth_router
from services.booking.router import router as booking_router
from services.category.router import router as category_router
from services.client.router import router as client_router
from services.message.router import router as message_router
from services.notification.router import router as notification_router
from services.payment.router import router as payment_router
from services.provider.router import router as provider_router
from services.review.router import router as review_router
from services.service.router import router as service_router
from services.wallet.router import router as wallet_router


# ── Logging ──────────────────────────────────────────────────

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else settings.LOG_LEVEL.upper())


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info("Starting %s v%s (%s)", settings.APP_NAME, settings.APP_VERSION, settings.APP_ENV)

    # Schema is managed by migrations outside development
    if settings.APP_ENV == "development":
        await init_db()
        await seed_initial_data()

    await init_redis()
    logger.info("%s is ready", settings.APP_NAME)
    yield

    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Provider Marketplace API

REST API for a two-sided services marketplace:
- **Auth**: email/password + Google sign-in, JWT access + rotating refresh tokens
- **Catalogue**: categories and provider services
- **Bookings**: request → accept/reject → complete/cancel, one booking per slot
- **Payments & Wallets**: commission split, provider ledger, withdrawals
- **Notifications**: in-app, including scheduled booking reminders
- **Admin**: provider verification, moderation, withdrawal resolution

### Authentication
Protected endpoints require an `Authorization: Bearer <access_token>` header.

### Roles
- `client`: book services, pay, review, message providers
- `provider`: manage services, accept/complete bookings, withdraw earnings
- `admin`: verification, moderation and platform statistics
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (last added runs outermost) ──────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )

    app.add_middleware(GZipMiddleware, minimum_size=500)

    # Session (needed for the OAuth state parameter)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SECRET_KEY,
        session_cookie="marketplace_session",
        same_site="lax",
        https_only=settings.is_production,
    )

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Fixed-window limit for unauthenticated traffic, per client IP.
        Authenticated callers and operational endpoints are not limited.
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if (
            request.url.path in skip_paths
            or request.headers.get("Authorization", "").startswith("Bearer ")
            or redis_module.redis_client is None
        ):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        try:
            allowed = await RedisCache(redis_module.redis_client).check_rate_limit(
                unauth_rate_key(client_ip), settings.RATE_LIMIT_UNAUTH_PER_MINUTE
            )
        except Exception as e:
            # Fail open when Redis is unavailable
            logger.error("Rate limit check failed: %s", e)
            allowed = True

        if not allowed:
            logger.warning("Rate limit exceeded for IP %s", client_ip)
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Please slow down.", "code": "rate_limited"},
                headers={"Retry-After": "60"},
            )
        return await call_next(request)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Tag every request with X-Request-ID and expose processing time."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        content = {
            "detail": exc.message,
            "code": exc.code,
            "request_id": getattr(request.state, "request_id", None),
        }
        if exc.context:
            content["context"] = jsonable_encoder(exc.context)
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "detail": jsonable_encoder(exc.errors()),
                "code": "validation_error",
                "request_id": getattr(request.state, "request_id", None),
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose internals."""
        request_id = getattr(request.state, "request_id", None)
        logger.error("[%s] Unhandled exception: %s", request_id, exc, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={
                "detail": "An internal server error occurred",
                "code": "internal_error",
                "request_id": request_id,
            },
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            await ping_db()
            checks["database"] = "ok"
        except Exception:
            logger.exception("Health check: database unreachable")
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            await ping_redis()
            checks["redis"] = "ok"
        except Exception:
            logger.exception("Health check: redis unreachable")
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    # Register all service routers
    app.include_router(auth_router)
    app.include_router(client_router)
    app.include_router(provider_router)
    app.include_router(category_router)
    app.include_router(service_router)
    app.include_router(booking_router)
    app.include_router(payment_router)
    app.include_router(wallet_router)
    app.include_router(notification_router)
    app.include_router(review_router)
    app.include_router(message_router)
    app.include_router(admin_router)

    # Uploaded files (avatars, documents, service images, category icons)
    app.mount(
        URL_PREFIX,
        StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False),
        name="uploads",
    )

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

async def seed_initial_data():
    """Seed service categories on first run (development only)."""
    from sqlalchemy import func, select

    from config.database import AsyncSessionLocal
    from shared.models.models import Category

    async with AsyncSessionLocal() as db:
        count = await db.scalar(select(func.count(Category.id)))
        if count:
            return  # Already seeded

        seed_categories = [
            ("Home Cleaning", "Regular, deep and move-out cleaning"),
            ("Plumbing", "Leaks, installations and repairs"),
            ("Electrical", "Wiring, fixtures and appliance installation"),
            ("Beauty & Wellness", "Hair, makeup, massage and grooming"),
            ("Tutoring", "Academic and language lessons"),
            ("Moving", "Packing, loading and transport"),
            ("Gardening", "Lawn care, planting and landscaping"),
            ("Pet Care", "Walking, sitting and grooming"),
        ]
        for name, description in seed_categories:
            db.add(Category(name=name, description=description))

        await db.commit()
        logger.info("Seeded %d categories", len(seed_categories))


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
