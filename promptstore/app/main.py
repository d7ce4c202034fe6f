from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from promptstore.app.api.internal import router as internal_router
from promptstore.app.api.metrics import router as metrics_router, MetricsMiddleware
from promptstore.app.api.prompts import router as prompts_router
from promptstore.app.core.config import settings
from promptstore.app.core.logging import get_logger, setup_logging
from promptstore.app.db.async_session import close_async_engine, get_async_engine, init_async_db
from promptstore.app.exceptions import PromptStoreException, RateLimitedError
from promptstore.app.middleware.rate_limit import now_ms
from promptstore.app.middleware.request_id import RequestIdMiddleware, get_request_id
from promptstore.app.services.bulk_delete import get_deletion_engine

HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


def _error_body(request: Request, message: str, code: str, details: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": False,
        "error": message,
        "code": code,
        "requestId": get_request_id(request),
    }
    if details is not None and settings.debug:
        body["details"] = details
    return body


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Create tables when asked to and dispose the engine on shutdown."""
        # Builds the blob store now so a missing bucket stops startup
        get_deletion_engine()

        if settings.db_auto_create:
            await init_async_db()
            logger.info("Database tables created")

        logger.info(
            "Application startup complete",
            extra={"debug_mode": settings.debug, "deployment_mode": settings.deployment_mode},
        )
        yield

        await close_async_engine()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Promptstore",
        description="Prompt storage service with throttled bulk deletion",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Order matters: last added = first executed
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(prompts_router)
    app.include_router(metrics_router, prefix="")
    app.include_router(internal_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with database connectivity."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}
        try:
            engine = get_async_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            health_status["components"]["database"] = {"status": "ok"}
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["components"]["database"] = {
                "status": "error",
                "error": str(e)[:100],  # Truncate for security
            }
        return health_status

    @app.exception_handler(PromptStoreException)
    async def promptstore_error_handler(request: Request, exc: PromptStoreException) -> JSONResponse:
        """Map application exceptions to their HTTP status and error body."""
        body = _error_body(request, exc.message, exc.code, exc.details())
        headers = {}

        if isinstance(exc, RateLimitedError):
            body["retryAt"] = exc.reset_at
            headers["Retry-After"] = str(exc.retry_after_seconds(now_ms()))
            if exc.limit is not None:
                headers["X-RateLimit-Limit"] = str(exc.limit)
                headers["X-RateLimit-Remaining"] = "0"
                headers["X-RateLimit-Reset"] = str(exc.reset_at)

        if exc.status_code >= 500:
            logger.error(
                f"{exc.code}: {exc.message}",
                extra={"request_id": get_request_id(request), "path": request.url.path},
            )

        return JSONResponse(status_code=exc.status_code, content=body, headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Give framework HTTP errors the same body shape as application errors."""
        code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, str(exc.detail), code),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Return HTTP 400 for malformed request bodies."""
        fields = [
            {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        body = _error_body(request, "Invalid request", "VALIDATION_ERROR")
        body["fields"] = fields
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        The traceback is logged server-side and never sent to the client.
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
                "exception_message": str(exc),
            },
        )
        details = {"exception_type": type(exc).__name__, "message": str(exc)}
        return JSONResponse(
            status_code=500,
            content=_error_body(request, "Internal server error", "INTERNAL_ERROR", details),
            headers={"X-Request-ID": request_id},
        )

    return app


# Create the application instance
app = create_app()
