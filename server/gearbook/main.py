"""FastAPI application initialization and configuration."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .core.clock import Clock
from .core.config import settings
from .core.database import async_session_factory, close_db, engine, init_db
from .core.dependencies import CurrentClock
from .core.exceptions import (
    ProblemDetailsException,
    generic_exception_handler,
    problem_details_handler,
    store_error_handler,
)
from .core.middleware import setup_middleware
from .core.observability import (
    SERVICE_NAME,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_logging,
    setup_metrics,
    setup_tracing,
)
from .routers import (
    metrics_router,
    quota_router,
    reservation_router,
    resource_router,
    transfer_router,
    waitlist_router,
)
from .workers.manager import worker_manager

setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.

    Sets up observability, creates tables and starts the background workers.
    """
    logger.info("Starting gearbook")
    logger.info(f"Environment: {settings.environment}")

    try:
        setup_tracing()
        setup_metrics()
        instrument_sqlalchemy(engine)
        logger.info("Observability setup completed")

        await init_db()
        logger.info("Database initialized successfully")

        if settings.workers_enabled:
            await worker_manager.start_all()
            logger.info("Background workers started successfully")
    except Exception as e:
        logger.error(f"Failed to initialize application: {e}")
        raise

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down gearbook")

    try:
        await worker_manager.stop_all()
        await close_db()
        logger.info("Database connections closed")
    except Exception as e:
        logger.error(f"Error during application cleanup: {e}")

    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title="Gearbook Reservation API",
        description="RPC-over-HTTP API for shared equipment reservations with layered quotas, waitlist offers and transfers",
        version="1.0.0",
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "traceparent", "tracestate"],
    )

    setup_middleware(app, enable_logging=True)

    instrument_fastapi(app)

    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(SQLAlchemyError, store_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    @app.get(
        "/health",
        status_code=status.HTTP_200_OK,
        tags=["Health"],
        summary="Health Check",
        response_model=dict,
    )
    async def health_check():
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": "1.0.0",
            "environment": settings.environment,
            "debug": settings.debug,
        }

    @app.post("/v1/health/ping", tags=["Health"], summary="Ping")
    async def health_ping(clock: Clock = CurrentClock):
        """Liveness with the service clock's current time."""
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "timestamp": clock.now().isoformat(),
            "version": "1.0.0",
        }

    @app.get(
        "/ready",
        tags=["Health"],
        summary="Readiness Check",
        description="Check that the reservation store answers queries",
    )
    async def readiness_check():
        """Readiness check that runs a trivial query against the store."""
        try:
            async with async_session_factory() as session:
                await session.execute(text("SELECT 1"))
                await session.commit()
            database = "ok"
        except SQLAlchemyError as e:
            logger.warning(f"Readiness check failed: {e}")
            database = "unavailable"

        ready = database == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "ready" if ready else "not_ready",
                "service": SERVICE_NAME,
                "checks": {
                    "database": database,
                    "workers": worker_manager.get_worker_status(),
                },
            },
        )

    @app.get("/info", tags=["Info"], summary="Service Information")
    async def service_info():
        """Static service metadata and the policy defaults in effect."""
        return {
            "service": SERVICE_NAME,
            "version": "1.0.0",
            "environment": settings.environment,
            "store": "sqlite" if settings.is_sqlite else "postgresql",
            "defaults": {
                "offer_hold_minutes": settings.default_offer_hold_minutes,
                "transfer_timeout_hours": settings.transfer_timeout_hours,
                "scheduled_transfer_grace_hours": settings.scheduled_transfer_grace_hours,
                "return_correction_window_hours": settings.return_correction_window_hours,
                "next_reservation_buffer_minutes": settings.next_reservation_buffer_minutes,
            },
            "workers_enabled": settings.workers_enabled,
        }

    app.include_router(resource_router)
    app.include_router(reservation_router)
    app.include_router(quota_router)
    app.include_router(waitlist_router)
    app.include_router(transfer_router)
    app.include_router(metrics_router)

    logger.info("FastAPI application created and configured")

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "gearbook.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True,
    )
