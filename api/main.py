"""
FastAPI API Service Entry Point
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from api.middleware.rate_limiting import RateLimitMiddleware
from api.routes import (
    consultation_slots,
    consultations,
    donations,
    inventory_registry,
    medicine_requests,
    sponsorship_verifications,
    stripe,
)
from database.connection import Database
from shared.config import get_settings
from shared.errors import AllocationError
from shared.logging_config import configure_logging
from shared.redis_client import create_redis_client, ping_redis
from shared.startup_validator import StartupValidationError, validate_startup_config

# Configure structured JSON logging on startup
configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database pool and Redis client; fail fast on bad configuration."""
    app.state.database = Database.from_settings()
    app.state.redis = create_redis_client()

    logger.info("Running API startup configuration validation...")
    try:
        await validate_startup_config(redis_client=app.state.redis)
        logger.info("API startup configuration validation passed")
    except StartupValidationError as e:
        logger.critical(f"API startup blocked due to configuration errors: {e}")
        await app.state.database.dispose()
        await app.state.redis.aclose()
        raise

    yield

    await app.state.redis.aclose()
    await app.state.database.dispose()
    logger.info("API shutdown complete")


app = FastAPI(
    title="Resource Allocation API",
    version="1.0.0",
    lifespan=lifespan,
)

# Load settings for CORS configuration
settings = get_settings()
origins = settings.CORS_ORIGINS.split(",")

# Rate limiting added first so it runs closest to the routes
app.add_middleware(RateLimitMiddleware)

# CORS added last so preflight OPTIONS is answered before rate limiting
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(consultation_slots.router, tags=["consultation-slots"])
app.include_router(consultations.router, tags=["consultations"])
app.include_router(donations.router, tags=["donations"])
app.include_router(sponsorship_verifications.router, tags=["sponsorship-verifications"])
app.include_router(medicine_requests.router, tags=["medicine-requests"])
app.include_router(inventory_registry.router, tags=["inventory-registry"])
app.include_router(stripe.router, tags=["webhooks"])


@app.exception_handler(AllocationError)
async def allocation_error_handler(request: Request, exc: AllocationError) -> JSONResponse:
    """Render engine errors as {"error", "error_code", ...details}."""
    if exc.status_code >= 500:
        logger.error(
            f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}",
            extra={"error_code": exc.error_code},
        )
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Return 400 with validation error details."""
    return JSONResponse(
        status_code=400,
        content={
            "error": "Validation error",
            "error_code": "VALIDATION_ERROR",
            "details": jsonable_encoder(exc.errors()),
        },
    )


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """
    Health check endpoint for Docker health checks and monitoring.

    Checks:
    - Redis connectivity (PING command)
    - PostgreSQL connectivity (SELECT 1 query)

    Returns:
        200 OK if all systems healthy
        503 Service Unavailable if degraded
    """
    postgres_ok = await request.app.state.database.ping()
    redis_ok = await ping_redis(request.app.state.redis)

    health_status = {
        "status": "healthy" if postgres_ok and redis_ok else "degraded",
        "postgres": "connected" if postgres_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
    }
    return JSONResponse(status_code=200 if postgres_ok and redis_ok else 503, content=health_status)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint"""
    return {"message": "Resource Allocation API - Use /health for health checks"}
