"""
FastAPI application entry point.
Configures routes, middleware, exception handlers and lifecycle events.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.api.enrollments import router as enrollments_router
from app.api.payments import router as payments_router
from app.api.responses import ApiError, ApiErrors, error_response
from app.api.wallet import admin_router as wallet_admin_router
from app.api.wallet import router as wallet_router
from app.api.webhooks.paymob import router as paymob_router
from app.cache import InMemoryCache, RedisCache
from app.config import settings
from app.database import close_db, init_db
from app.fsm.machine import InvalidTransitionError
from app.logging_config import configure_logging
from app.redis import RedisClient
from app.services.errors import PaymentError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifecycle manager."""
    # Startup
    configure_logging()
    logger.info(f"Starting up {settings.app_name} ({settings.app_env})...")

    if settings.is_development:
        await init_db()

    # Enrollment cache: Redis when configured, process-local otherwise
    if RedisClient.is_configured():
        try:
            app.state.cache = RedisCache(RedisClient.get_client())
        except Exception as e:
            logger.warning(f"Failed to initialize Redis: {e}")
            app.state.cache = InMemoryCache()
    else:
        logger.warning("REDIS_URL not configured. Using in-process enrollment cache.")
        app.state.cache = InMemoryCache()

    yield

    # Shutdown
    await RedisClient.close()
    await close_db()
    logger.info("Shutting down...")


app = FastAPI(
    title="Course Payments",
    description="Checkout, Paymob reconciliation and wallet ledger for the course marketplace",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return error_response(exc.code, exc.message, exc.status_code, exc.details)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc.message}")
    error = ApiError.from_service_error(exc)
    return error_response(error.code, error.message, error.status_code, error.details)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return error_response("PAYMENT_NOT_PENDING", "عملية الدفع لم تعد صالحة", 400)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(
        ApiErrors.VALIDATION_ERROR.code,
        ApiErrors.VALIDATION_ERROR.message,
        ApiErrors.VALIDATION_ERROR.status,
        exc.errors(),
    )


# Global Exception Handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return error_response(
        ApiErrors.INTERNAL_ERROR.code,
        ApiErrors.INTERNAL_ERROR.message,
        ApiErrors.INTERNAL_ERROR.status,
    )


# CORS middleware
origins = list(settings.cors_origins)
if settings.is_development:
    origins.append("*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "env": settings.app_env,
    }


# Register webhook routes
app.include_router(
    paymob_router,
    prefix="/webhooks",
    tags=["webhooks"],
)

# Register API routes
app.include_router(
    payments_router,
    prefix="/api/payments",
    tags=["payments"],
)
app.include_router(
    enrollments_router,
    prefix="/api/enrollments",
    tags=["enrollments"],
)
app.include_router(
    wallet_router,
    prefix="/api/wallet",
    tags=["wallet"],
)
app.include_router(
    wallet_admin_router,
    prefix="/api/admin",
    tags=["admin"],
)
