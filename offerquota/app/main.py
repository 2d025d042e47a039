from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from offerquota.app.api.admin import router as admin_router
from offerquota.app.api.quota import router as quota_router
from offerquota.app.core.config import settings
from offerquota.app.core.logging import get_logger, setup_logging
from offerquota.app.db import models  # noqa: F401 - import to register models
from offerquota.app.db.async_session import close_async_engine, get_async_engine
from offerquota.app.db.init_db import init_database, verify_connection
from offerquota.app.exceptions import AuthenticationError, QuotaExhaustedError, UsageStoreError
from offerquota.app.middleware.request_id import RequestIdMiddleware, get_request_id
from offerquota.app.services.usage import get_usage_service


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Verify the database, create tables and procedures, and dispose on shutdown."""
        if not await verify_connection():
            logger.error("Database connection failed!")
            raise RuntimeError("Cannot connect to database")

        await init_database()

        usage_service = get_usage_service()
        logger.info(
            "Application startup complete",
            extra={
                "allow_fallback": usage_service.allow_fallback,
                "capability_ttl_seconds": usage_service.capability.ttl_seconds,
            },
        )

        yield

        await close_async_engine()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Offer Quota Service",
        description="Monthly offer quota accounting with atomic reservation and rollback",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
        max_age=600,
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(quota_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with database status and atomic procedure availability."""
        health_status: dict[str, Any] = {"status": "ok", "database": {"status": "ok"}}
        try:
            engine = get_async_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["database"] = {
                "status": "error",
                "error": str(e)[:100],  # Truncate for security
            }

        health_status["procedures"] = get_usage_service().capability.snapshot()
        return health_status

    @app.exception_handler(QuotaExhaustedError)
    async def quota_exhausted_handler(request: Request, exc: QuotaExhaustedError) -> JSONResponse:
        """Handle QuotaExhaustedError and return HTTP 429 response."""
        logger.info(
            f"Quota exhausted ({exc.scope}) [request_id={get_request_id(request)}]",
            extra={"request_id": get_request_id(request), "scope": exc.scope},
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(AuthenticationError)
    async def auth_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        """Handle AuthenticationError and return HTTP 401 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "authentication_failed", "message": exc.detail},
        )

    @app.exception_handler(UsageStoreError)
    async def usage_store_error_handler(request: Request, exc: UsageStoreError) -> JSONResponse:
        """Handle UsageStoreError and return HTTP 503 response."""
        logger.error(
            f"Usage store error [request_id={get_request_id(request)}]: {exc.message}",
            extra={"request_id": get_request_id(request)},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "usage_store_unavailable", "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode adds the
        exception message.
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )

        content = {
            "error": "internal_error",
            "message": "Internal server error",
            "request_id": request_id,
        }
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
