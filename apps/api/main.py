"""
FastAPI application entry point.

This module sets up the FastAPI application with all middleware,
routers, and configuration for production use.
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from routers import admin, billing, entitlements, workouts
from core.config import settings
from core.database import check_db_connection
from core.exceptions import APIException
from core.logging import setup_logging
from services.entitlements import (
    EntitlementError,
    MalformedEvent,
    NotFound,
    Unauthenticated,
    UnknownEvent,
    UpstreamUnavailable,
)
import logging
import time

# Setup logging first
setup_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error tracking (production)
if settings.SENTRY_DSN:
    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
        from sentry_sdk.integrations.redis import RedisIntegration

        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
            ],
            # Don't send PII
            send_default_pii=False,
            # Filter sensitive data
            before_send=lambda event, hint: _filter_sensitive_data(event),
        )
        logger.info(f"Sentry initialized for environment: {settings.ENVIRONMENT}")
    except ImportError:
        logger.warning("sentry-sdk not installed, error tracking disabled")
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")


def _filter_sensitive_data(event):
    """Filter sensitive data before sending to Sentry."""
    # Remove Authorization headers and webhook signatures
    if "request" in event and "headers" in event["request"]:
        headers = event["request"]["headers"]
        if isinstance(headers, dict):
            headers.pop("authorization", None)
            headers.pop("cookie", None)
            headers.pop("stripe-signature", None)
    return event

# Create FastAPI app
app = FastAPI(
    title="Workout Entitlements API",
    description="Tier resolution, grandfathering, daily quotas and subscription reconciliation for workout generation",
    version="1.0.0",
    docs_url="/docs" if (settings.DEBUG or settings.EXPOSE_API_DOCS) else None,
    redoc_url="/redoc" if (settings.DEBUG or settings.EXPOSE_API_DOCS) else None,
)


@app.on_event("startup")
async def ensure_entitlement_tables():
    """Create missing entitlement tables when DB_CREATE_TABLES is set."""
    if settings.ENTITLEMENT_STORE_BACKEND.lower() != "sql" or not settings.DB_CREATE_TABLES:
        return
    try:
        from core.database import create_tables

        create_tables()
    except Exception as e:
        logger.error(f"Entitlement table creation failed: {e}")


# CORS middleware
# Production: set CORS_ORIGINS env var (comma-separated)
# Development: DEBUG=True allows all origins
if settings.DEBUG:
    allowed_origins = ["*"]
elif settings.CORS_ORIGINS:
    allowed_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",")]
else:
    # Fallback for local development
    allowed_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One log line per request; quota denials (429) are logged at warning."""
    if request.url.path == "/health":
        return await call_next(request)

    start_time = time.perf_counter()
    try:
        response = await call_next(request)
        process_time = time.perf_counter() - start_time

        level = logging.WARNING if response.status_code == status.HTTP_429_TOO_MANY_REQUESTS else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} - {response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time_ms": round(process_time * 1000, 2),
                "client_ip": request.client.host if request.client else None,
            }
        )

        response.headers["X-Process-Time"] = str(process_time)
        return response
    except Exception as e:
        logger.error(
            f"Request failed: {request.method} {request.url.path}",
            exc_info=True,
            extra={
                "method": request.method,
                "path": request.url.path,
                "error": str(e),
            }
        )
        raise


def _error_response(status_code: int, exc: EntitlementError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_code": exc.error_code},
    )


@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_code": exc.error_code},
        headers=exc.headers,
    )


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return _error_response(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(Unauthenticated)
async def unauthenticated_handler(request: Request, exc: Unauthenticated):
    response = _error_response(status.HTTP_401_UNAUTHORIZED, exc)
    response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(MalformedEvent)
async def malformed_event_handler(request: Request, exc: MalformedEvent):
    logger.warning(f"Rejected malformed billing event: {exc}", extra={"path": request.url.path})
    return _error_response(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(UnknownEvent)
async def unknown_event_handler(request: Request, exc: UnknownEvent):
    # Acknowledge so the provider does not keep redelivering.
    return JSONResponse(status_code=status.HTTP_200_OK, content={"ok": True, "result": {"handled": False}})


@app.exception_handler(UpstreamUnavailable)
async def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailable):
    logger.error(
        f"Upstream unavailable: {exc}",
        extra={"method": request.method, "path": request.url.path, "user_id": exc.user_id},
    )
    return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, exc)


# Error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(
        f"Unhandled exception: {exc}",
        exc_info=True,
        extra={
            "method": request.method,
            "path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


@app.get("/health")
async def health():
    """
    Simple health check for load balancers and uptime monitors.

    Returns:
        - 200: Core systems operational
        - 503: Critical dependency unavailable
    """
    if settings.ENTITLEMENT_STORE_BACKEND.lower() == "sql" and not check_db_connection():
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "database": "unavailable",
            }
        )

    return {
        "status": "healthy",
        "store": settings.ENTITLEMENT_STORE_BACKEND,
        "timestamp": time.time(),
    }


app.include_router(entitlements.router)
app.include_router(workouts.router)
app.include_router(billing.router)
app.include_router(admin.router)

