"""
main.py
FastAPI application entry point: logging, lifespan, middleware, error
envelope, health probe and router registration.
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from pybreaker import CircuitBreakerError
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

import config.redis_client as redis_state
from config.database import AsyncSessionLocal, close_db, init_db
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings
from services.admin.router import applications_router
from services.admin.router import router as admin_router
from services.auth.router import router as auth_router
from services.booking.router import router as booking_router
from services.cron.router import router as cron_router
from services.mentor.router import router as mentor_router
from services.notification.router import router as notification_router
from services.payment.router import router as payment_router
from services.review.router import router as review_router

ROUTERS = (
    auth_router,
    applications_router,
    mentor_router,
    booking_router,
    payment_router,
    review_router,
    notification_router,
    admin_router,
    cron_router,
)

# Stripe signs its own calls and cron carries a secret; neither is throttled.
UNTHROTTLED_PATHS = {"/health", "/metrics", "/docs", "/redoc", "/openapi.json", "/payments/webhook"}


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO, handlers=[handler])


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    await init_redis()
    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} started (env={settings.APP_ENV})")
    yield
    await close_redis()
    await close_db()
    logger.info("Shutdown complete")


# ── Middleware ───────────────────────────────────────────────

def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _needs_throttle(request: Request) -> bool:
    path = request.url.path
    if path in UNTHROTTLED_PATHS or path.startswith("/cron/"):
        return False
    return not request.headers.get("Authorization", "").startswith("Bearer ")


def _register_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    @app.middleware("http")
    async def throttle_anonymous(request: Request, call_next):
        """Fixed-window per-IP limit on requests without a bearer token."""
        if redis_state.redis_client is None or not _needs_throttle(request):
            return await call_next(request)

        client_ip = _client_ip(request)
        try:
            count = await RedisCache(redis_state.redis_client).hit("unauth", client_ip)
        except Exception as e:
            # Redis down: fail open
            logger.error(f"Rate limit check failed: {e}")
            return await call_next(request)

        if count > settings.RATE_LIMIT_UNAUTH_PER_MINUTE:
            logger.warning(f"Rate limit exceeded for IP {client_ip}")
            return JSONResponse(
                status_code=429,
                content={"ok": False, "error": "Rate limit exceeded. Please slow down."},
                headers={"Retry-After": "60"},
            )
        return await call_next(request)

    @app.middleware("http")
    async def tag_request(request: Request, call_next):
        """Stamp X-Request-ID and X-Process-Time on every response."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{(time.perf_counter() - started) * 1000:.2f}ms"
        return response


# ── Error envelope ───────────────────────────────────────────

def _failure(status_code: int, error, request: Request = None, **extra) -> JSONResponse:
    content = {"ok": False, "error": error, **extra}
    if request is not None:
        content["request_id"] = getattr(request.state, "request_id", None)
    return JSONResponse(status_code=status_code, content=content)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        response = _failure(exc.status_code, exc.detail)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return _failure(400, "Invalid data", details=jsonable_encoder(exc.errors()))

    @app.exception_handler(CircuitBreakerError)
    async def circuit_open(request: Request, exc: CircuitBreakerError):
        logger.error(f"[{getattr(request.state, 'request_id', None)}] circuit open: {exc}")
        return _failure(503, "Service temporarily unavailable. Please try again later.", request)

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        logger.error(f"[{getattr(request.state, 'request_id', None)}] unhandled: {exc}", exc_info=True)
        return _failure(500, str(exc) if settings.DEBUG else "Server error", request)


# ── Health ───────────────────────────────────────────────────

async def probe_dependencies() -> dict:
    """Ping Postgres and Redis; any failure marks the service degraded."""
    checks = {"status": "ok", "version": settings.APP_VERSION, "database": "ok", "redis": "ok"}

    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check: database unreachable: {e}")
        checks["database"] = checks["status"] = "error"

    try:
        if redis_state.redis_client is not None:
            await redis_state.redis_client.ping()
    except Exception as e:
        logger.error(f"Health check: redis unreachable: {e}")
        checks["redis"] = checks["status"] = "error"

    if checks["status"] != "ok":
        checks["status"] = "degraded"
    return checks


# ── App Factory ──────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Mentorship Marketplace API

- **Auth**: email + password, JWT access tokens, Redis deny-list on logout
- **Mentors**: applications, profile setup, availability calendar
- **Bookings**: state machine, reschedule, cancel with refund
- **Trust & Escrow**: learner verification, trusted-mentor promotion, fraud reports, held payouts
- **Payments**: Stripe Checkout + webhook, Stripe Connect payouts
- **Admin**: applications, mentor moderation, dispute resolution, audit log

Protected endpoints take `Authorization: Bearer <access_token>`;
cron endpoints take `Authorization: Bearer <CRON_SECRET>`.
Every response is `{"ok": true, "data": ...}` or `{"ok": false, "error": ...}`.
        """,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        lifespan=lifespan,
    )

    _register_middleware(app)
    _register_error_handlers(app)

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health():
        checks = await probe_dependencies()
        return JSONResponse(content=checks, status_code=200 if checks["status"] == "ok" else 503)

    @app.get("/", include_in_schema=False)
    async def root():
        return {"name": settings.APP_NAME, "version": settings.APP_VERSION, "health": "/health"}

    for router in ROUTERS:
        app.include_router(router)

    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])
    return app


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
    )
