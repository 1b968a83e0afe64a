"""Global error handlers: consistent JSON error responses."""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from partysnap.config import Settings
from partysnap.errors import (
    CacheRequestError,
    NotFoundError,
    NotificationValidationError,
    RateLimitExceeded,
    StoreError,
)

logger = structlog.get_logger()


def setup_error_handlers(app: FastAPI, settings: Settings) -> None:
    """Register global exception handlers."""
    expose_details = settings.environment != "production"

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": exc.errors()},
        )

    @app.exception_handler(NotificationValidationError)
    @app.exception_handler(CacheRequestError)
    async def bad_request_handler(_request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(_request: Request, exc: RateLimitExceeded) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={"detail": "Rate limit exceeded. Try again later."},
            headers={
                "Retry-After": str(exc.retry_after),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Limit": str(exc.limit),
            },
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(_request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("store_unavailable", path=request.url.path, error=str(exc))
        content: dict[str, str] = {"detail": "Service temporarily unavailable"}
        if expose_details:
            content["error"] = str(exc)
        return JSONResponse(status_code=503, content=content)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions, always JSON."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        content: dict[str, str] = {"detail": "Internal server error"}
        if expose_details:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)
