"""FastAPI application entry point for the Usage Metering Service.

This service meters AI generations against per-user monthly quotas and
anonymous lifetime caps, and aggregates reader session telemetry (page
views, events and chat turns) into session rollups.

Run with: uvicorn metering.main:app --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from metering.config import settings
from metering.dependencies import aggregator, ledger
from metering.routers.quota import router as quota_router
from metering.routers.telemetry import router as telemetry_router
from metering.services.errors import (
    IdentityInvalidError,
    MissingIdentityError,
    QuotaExceededError,
    StorageUnavailableError,
)
from metering.services.reset_scheduler import ResetScheduler

logger = logging.getLogger(__name__)

STORAGE_RETRY_AFTER_SECONDS = 5

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Meters AI generations against subscription quotas and aggregates "
        "reader session analytics. Provides atomic check-and-consume, quota "
        "status and refunds, and batched telemetry ingestion with session "
        "rollups."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.include_router(quota_router)
app.include_router(telemetry_router)

scheduler = ResetScheduler(ledger, aggregator)


@app.exception_handler(QuotaExceededError)
def quota_exceeded_handler(request: Request, exc: QuotaExceededError):
    return JSONResponse(
        status_code=429,
        content={
            "detail": str(exc),
            "limit": exc.limit,
            "used": exc.used,
            "reset_at": exc.reset_at.isoformat() if exc.reset_at else None,
            "tier": exc.tier,
        },
    )


@app.exception_handler(StorageUnavailableError)
def storage_unavailable_handler(request: Request, exc: StorageUnavailableError):
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc)},
        headers={"Retry-After": str(STORAGE_RETRY_AFTER_SECONDS)},
    )


@app.exception_handler(IdentityInvalidError)
@app.exception_handler(MissingIdentityError)
def identity_error_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.on_event("startup")
def on_startup():  # pragma: no cover
    """Create database tables and start background jobs if enabled."""
    from metering.database import Base, engine

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    Base.metadata.create_all(bind=engine)
    if settings.ENABLE_SCHEDULER:
        scheduler.start()


@app.on_event("shutdown")
def on_shutdown():  # pragma: no cover
    scheduler.shutdown()


@app.get("/", tags=["Health"])
def health_check():
    """Health check endpoint to verify the service is running."""
    return {"status": "healthy", "service": settings.APP_NAME}
