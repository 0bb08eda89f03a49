"""CardVault API main application module.

This module initializes the FastAPI application and configures
logging, middleware, routers, exception handlers and shutdown cleanup.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from cardvault.api.admin import router as admin_router
from cardvault.api.health import router as health_router
from cardvault.api.inventory import router as inventory_router
from cardvault.api.middleware import error_response, setup_middleware
from cardvault.api.orders import router as orders_router
from cardvault.api.payment import router as payment_router
from cardvault.domain.exceptions import (
    DomainError,
    GatewayConfigurationError,
    GatewayRejectedError,
    GatewayUnavailableError,
    InsufficientStockError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    PermissionDeniedError,
    RefundInProgressError,
    ValidationError,
)
from cardvault.infrastructure.catalog import close_catalog
from cardvault.infrastructure.config import settings
from cardvault.infrastructure.database import engine
from cardvault.infrastructure.gateway_client import get_gateway_client
from cardvault.infrastructure.logging_config import configure_logging

configure_logging(level=settings.log_level, json_output=not settings.debug)

logger = structlog.get_logger()

# Checked in order; first match wins
DOMAIN_ERROR_STATUS: list[tuple[type[DomainError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (OrderNotFoundError, status.HTTP_404_NOT_FOUND),
    (InsufficientStockError, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (RefundInProgressError, status.HTTP_409_CONFLICT),
    (GatewayConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (GatewayUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (GatewayRejectedError, status.HTTP_502_BAD_GATEWAY),
]

ADMIN_PATH_PREFIX = "/admin"


def status_for(exc: DomainError) -> int:
    for error_type, status_code in DOMAIN_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup and shutdown events.

    Args:
        app: The FastAPI application instance.

    Yields:
        None after startup, cleanup happens after yield.
    """
    logger.info(
        "Starting CardVault API",
        version=settings.api_version,
        debug=settings.debug,
        refund_mode=settings.refund_mode,
        gateway_configured=bool(settings.ldc_pid and settings.ldc_secret),
    )

    yield

    logger.info("Shutting down CardVault API")
    await get_gateway_client().close()
    await close_catalog()
    await engine.dispose()


app = FastAPI(
    title="CardVault API",
    description="Digital card sales with gateway-confirmed fulfillment",
    version=settings.api_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

setup_middleware(app)

app.include_router(health_router, tags=["Health"])
app.include_router(orders_router)
app.include_router(inventory_router)
app.include_router(admin_router)
app.include_router(payment_router)


# ============================================================================
# Exception Handlers
# ============================================================================


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Translate domain errors into the error envelope.

    Only admin endpoints expose ``details``; buyers get the error code
    and message.
    """
    status_code = status_for(exc)
    is_admin_path = request.url.path.startswith(ADMIN_PATH_PREFIX)

    log = logger.warning if status_code < 500 else logger.error
    log(
        "Request failed",
        path=request.url.path,
        error_code=exc.error_code,
        status_code=status_code,
        error=exc.message,
        details=exc.details,
    )

    return error_response(
        request,
        status_code,
        exc.error_code,
        exc.message,
        details=exc.details if is_admin_path else None,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions with consistent format."""
    detail = exc.detail
    if isinstance(detail, dict):
        error_code = detail.get("error_code", "ERROR")
        message = detail.get("message", str(detail))
    else:
        error_code = "ERROR"
        message = str(detail)

    return error_response(
        request, exc.status_code, error_code, message, headers=exc.headers
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions with consistent format."""
    logger.exception(
        "Unhandled exception in handler",
        path=request.url.path,
        method=request.method,
        error=str(exc),
    )
    return error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_ERROR",
        "An internal error occurred",
    )


if __name__ == "__main__":
    uvicorn.run(
        "cardvault.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
