# main.py — CumpliRos API
# Features:
# - Request correlation IDs
# - Security headers
# - Rate limiting on public auth endpoints (slowapi)
# - Normalised error envelope
# - In-process job scheduler (optional)
# - Health check with DB verification
# - All routers registered

import os
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from clock import Clock
from database import init_db, close_db, get_db_session, get_session_factory
from errors import error_body, error_code_for, validation_details
from jobs import ComplianceJobs
from mailer import get_mailer
from rate_limit import limiter
from scheduler import JobScheduler
from storage import get_object_store
from telemetry import setup_telemetry, SERVICE_VERSION

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("cumpliros")


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("JWT_SECRET_KEY is not set or shorter than 32 chars; tokens will not survive a restart")

    if not os.getenv("S3_BUCKET"):
        warnings.append("S3_BUCKET is not set; document uploads will fail")

    if not os.getenv("RESEND_API_KEY"):
        warnings.append("RESEND_API_KEY is not set; emails are logged instead of sent")

    if not os.getenv("PLATFORM_ADMIN_EMAILS") and not os.getenv("PLATFORM_ADMIN_TOKEN"):
        warnings.append("No PLATFORM_ADMIN_EMAILS or PLATFORM_ADMIN_TOKEN; the template catalog is read-only")

    if not os.getenv("INTERNAL_JOBS_SECRET"):
        logger.info("INTERNAL_JOBS_SECRET not set; /api/v1/internal/jobs answers 403")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


def _scheduler_enabled() -> bool:
    return os.getenv("JOBS_SCHEDULER_ENABLED", "false").strip().lower() in ("1", "true", "yes", "on")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting CumpliRos API v{SERVICE_VERSION}...")
    if os.getenv("ENVIRONMENT", "development") != "production":
        await init_db()
    _check_startup_config()
    # No-op unless OTEL_EXPORTER_OTLP_ENDPOINT is set
    setup_telemetry(app)

    scheduler = None
    if _scheduler_enabled():
        jobs = ComplianceJobs(get_session_factory(), get_mailer(), get_object_store(), Clock())
        scheduler = JobScheduler(jobs)
        scheduler.start()
    yield
    logger.info("Shutting down CumpliRos API...")
    if scheduler:
        await scheduler.stop()
    await close_db()


app = FastAPI(
    title="CumpliRos",
    description="Regulatory compliance tracking for businesses in Rosario",
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.state.limiter = limiter

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID", "X-Admin-Token"],
    expose_headers=["X-Request-ID", "X-Correlation-ID", "Content-Disposition"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = correlation_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc, HTTPException):
        code = error_code_for(exc)
    else:
        code = error_code_for(HTTPException(status_code=exc.status_code))
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, str(exc.detail), getattr(exc, "details", None), _request_id(request)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded on {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=429,
        content=error_body(
            "TOO_MANY_REQUESTS",
            "Demasiados intentos, probá de nuevo en un minuto",
            request_id=_request_id(request),
        ),
        headers={"Retry-After": "60"},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=error_body(
            "VALIDATION_ERROR",
            "Error de validación",
            validation_details(exc.errors()),
            _request_id(request),
        ),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=error_body("INTERNAL_SERVER_ERROR", "Internal server error", request_id=_request_id(request)),
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import (  # noqa: E402
    auth, users, jurisdictions, templates, organizations, locations,
    obligations, tasks, reviews, documents, audit, reports, internal,
)

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(jurisdictions.router)
app.include_router(templates.router)
app.include_router(templates.apply_router)
app.include_router(organizations.router)
app.include_router(locations.router)
app.include_router(obligations.router)
app.include_router(tasks.router)
app.include_router(reviews.router)
app.include_router(documents.router)
app.include_router(audit.router)
app.include_router(reports.router)
app.include_router(internal.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        logger.warning(f"Health check database probe failed: {e}")
        db_status = "error"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": SERVICE_VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
    }


@app.get("/")
async def root():
    return {
        "name": "CumpliRos API",
        "version": SERVICE_VERSION,
        "description": "Regulatory compliance tracking for businesses in Rosario",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
        workers=int(os.getenv("WORKERS", 1)),
    )
