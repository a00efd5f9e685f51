"""Main FastAPI application for the FacePay engine."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict

import structlog
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from facepay.api.face import router as face_router
from facepay.api.payments import router as payments_router
from facepay.api.webhooks import router as webhooks_router
from facepay.config import settings
from facepay.middleware import (
    MetricsMiddleware,
    RateLimitMiddleware,
    RateLimitState,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    get_metrics,
)
from facepay.observability import (
    TracingContextMiddleware,
    instrument_fastapi_app,
    setup_observability,
)
from facepay.services.payment_service import PaymentService, get_payment_service

SERVICE_NAME = "facepay-engine"
SERVICE_VERSION = "1.0.0"

logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str
    timestamp: datetime
    version: str = SERVICE_VERSION
    components: Dict[str, str] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting FacePay engine", port=settings.port, host=settings.host)

    setup_observability(service_name=SERVICE_NAME, service_version=SERVICE_VERSION)
    instrument_fastapi_app(app)

    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set; payment endpoints will fail")
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; webhooks will be rejected")

    yield

    logger.info("Shutting down FacePay engine")


rate_limit_state = RateLimitState(
    max_requests=settings.rate_limit_max_requests,
    window_seconds=settings.rate_limit_window_seconds
)

app = FastAPI(
    title="FacePay Engine",
    description="Biometric-gated payment authorization with face verification and Stripe settlement",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

# Last added is executed first
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RateLimitMiddleware, state=rate_limit_state)
app.add_middleware(TracingContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(face_router)
app.include_router(payments_router)
app.include_router(webhooks_router)


@app.get("/healthz", response_model=HealthResponse)
async def health_check(payment_service: PaymentService = Depends(get_payment_service)) -> HealthResponse:
    """
    Health check endpoint with a database connectivity check.

    The face model loads lazily on first use, so an unloaded model is
    reported but does not degrade the status.
    """
    db_healthy = await payment_service.db.health_check()
    if not db_healthy:
        logger.warning("Health check failed", component="database")

    model_info = payment_service.auth_service.extractor.get_model_info()

    return HealthResponse(
        status="healthy" if db_healthy else "degraded",
        timestamp=datetime.utcnow(),
        components={
            "database": "healthy" if db_healthy else "unhealthy",
            "face_model": "loaded" if model_info.get("model_loaded") else "not_loaded",
        }
    )


@app.get("/metrics")
async def metrics_endpoint():
    """Application metrics endpoint."""
    return {
        "timestamp": datetime.utcnow().isoformat(),
        "metrics": get_metrics()
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "facepay.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False
    )
