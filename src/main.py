"""
FastAPI application for the billing and entitlement service.

Provides REST API for:
- Plan catalog and subscription checkout (one-time and recurring)
- Payment verification and gateway webhooks
- Storefront (catalog) checkout
- Entitlement checks and usage
- Health monitoring and metrics
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from src.billing.errors import (
    BillingError,
    ConfigurationError,
    GatewayError,
    GatewayUnavailableError,
    LimitExceeded,
    NotFoundError,
    OrderMismatch,
    SignatureMismatch,
    ValidationError,
)
from src.config import get_settings
from src.gateways.registry import build_gateway_registry
from src.observability.logging import configure_logging, get_logger
from src.observability.logging_middleware import StructuredLoggingMiddleware
from src.observability.metrics import generate_metrics, track_error
from src.observability.middleware import PrometheusMiddleware, normalize_endpoint
from src.rate_limits import limiter, rate_limit_exceeded_handler
from src.resilience import get_breaker_states
from src.routers import admin_router, billing_router, catalog_router, entitlements_router
from src.services import build_services, get_services, set_services
from src.storage.database import BillingDatabase

settings = get_settings()
configure_logging(
    log_level=settings.logging.level,
    json_output=settings.logging.json_output,
    colorized=settings.logging.colorized,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: open the database, build gateway adapters, wire services.
    Shutdown: close gateway HTTP clients and the database.
    """
    settings = get_settings()
    services = None

    logger.info("=== Billing Service Starting ===")

    try:
        db = BillingDatabase(settings.database.path)
        await db.initialize()
        logger.info("Billing database initialized", path=settings.database.path)

        gateways = build_gateway_registry(settings)
        services = build_services(settings, db, gateways)
        set_services(services)
        logger.info("=== Service Ready ===")

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise

    finally:
        logger.info("=== Shutting down ===")
        if services is not None:
            services.close()
            set_services(None)
        logger.info("=== Shutdown complete ===")


app = FastAPI(
    title="Billing & Entitlement API",
    description="Plan subscriptions, payment verification and usage entitlements",
    version=settings.logging.service_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# CORS (production: set CORS_ALLOWED_ORIGINS="https://app.example.com")
cors_origins = settings.cors.origins_list
if "*" in cors_origins:
    logger.warning("CORS allows ALL origins (*) - configure CORS_ALLOWED_ORIGINS for production!")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=settings.cors.allow_credentials,
    allow_methods=settings.cors.methods_list,
    allow_headers=settings.cors.headers_list,
    max_age=settings.cors.max_age,
)

# Processed in reverse order of registration:
# PrometheusMiddleware (inner) tracks metrics,
# StructuredLoggingMiddleware (outer) sets request context
app.add_middleware(PrometheusMiddleware)
app.add_middleware(
    StructuredLoggingMiddleware,
    warning_threshold_ms=settings.logging.slow_request_warning_ms,
    error_threshold_ms=settings.logging.slow_request_error_ms,
)

app.include_router(billing_router)
app.include_router(catalog_router)
app.include_router(entitlements_router)
app.include_router(admin_router)


# Most specific first; the first match wins.
ERROR_STATUS_CODES: list[tuple[type[BillingError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (SignatureMismatch, status.HTTP_400_BAD_REQUEST),
    (OrderMismatch, status.HTTP_400_BAD_REQUEST),
    (LimitExceeded, status.HTTP_403_FORBIDDEN),
    (GatewayUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_code_for(exc: BillingError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Map billing errors to HTTP responses."""
    status_code = status_code_for(exc)
    endpoint = normalize_endpoint(request.url.path)
    track_error(type(exc).__name__, endpoint)

    if status_code >= 500:
        logger.error(
            "Billing request failed",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
    else:
        logger.warning(
            "Billing request rejected",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
        )

    # Configuration details never leak to clients
    detail = "Internal configuration error" if isinstance(exc, ConfigurationError) else str(exc)
    headers = {"Retry-After": "30"} if isinstance(exc, GatewayUnavailableError) else None
    return JSONResponse(status_code=status_code, content={"detail": detail}, headers=headers)


@app.get("/health", tags=["Health"])
async def health_check(response: Response):
    """
    Service health: service wiring and gateway circuit states.

    Returns 503 while services are not initialized.
    """
    breakers = get_breaker_states()
    try:
        services = get_services()
    except HTTPException:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "starting", "circuit_breakers": breakers}

    degraded = any(state == "open" for state in breakers.values())
    return {
        "status": "degraded" if degraded else "healthy",
        "version": settings.logging.service_version,
        "subscription_provider": services.gateways.subscription_provider,
        "catalog_provider": services.gateways.catalog_provider,
        "circuit_breakers": breakers,
    }


@app.get("/metrics", tags=["System"])
async def metrics():
    """Prometheus metrics endpoint."""
    content, content_type = generate_metrics()
    return Response(content=content, media_type=content_type)


@app.get("/", tags=["System"])
async def root():
    return {
        "service": "Billing & Entitlement API",
        "version": settings.logging.service_version,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        workers=settings.service.workers,
    )
