"""
Newsletter API - idempotent issue publishing.

FastAPI application that accepts newsletter issues and queues their
delivery. Emails are sent by the delivery worker (newsletter.worker), which
can also run inside this process when RUN_DELIVERY_WORKER is set.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from newsletter.clients.email_client import EmailClient
from newsletter.config import settings, validate_security_settings
from newsletter.database import close_db, init_db
from newsletter.errors import NewsletterError
from newsletter.middleware.rate_limit import limiter
from newsletter.routers.newsletters import router as newsletters_router
from newsletter.services.delivery_worker import DeliveryWorker

# Import models to register them with Base.metadata
from newsletter import models  # noqa: F401

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    """Application lifespan handler for startup/shutdown."""
    logging.basicConfig(level=settings.log_level.upper())
    validate_security_settings()
    await init_db()

    email_client = None
    worker = None
    worker_task = None
    if settings.run_delivery_worker:
        email_client = EmailClient.from_settings(settings)
        worker = DeliveryWorker.from_settings(settings, email_client)
        worker_task = asyncio.create_task(worker.run(), name="delivery-worker")
        logger.info("In-process delivery worker started")

    yield

    if worker is not None:
        worker.stop()
        await worker_task
        await email_client.close()
    await close_db()


app = FastAPI(
    title="Newsletter API",
    description="Publish newsletter issues with idempotent, queued delivery",
    version="0.1.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# Add rate limiter state
app.state.limiter = limiter

# Rate limit exceeded handler
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# Include routers
app.include_router(newsletters_router)


# --- Middleware ---


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Add a unique request ID to each request.

    The header is set after the endpoint returns, so it is never part of a
    saved idempotent response and always identifies the current request.
    """
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# --- Exception Handlers ---


def _sanitize_error_detail(error: dict[str, Any]) -> dict[str, Any]:
    """Sanitize Pydantic error detail to be JSON-serializable."""
    sanitized = {}
    for key, value in error.items():
        if key == "ctx":
            # Context may hold exception instances
            sanitized[key] = {k: str(v) for k, v in value.items()} if isinstance(value, dict) else str(value)
        elif key == "loc":
            sanitized[key] = [str(loc) for loc in value]
        else:
            sanitized[key] = value
    return sanitized


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors with consistent error format."""
    request_id = getattr(request.state, "request_id", None)

    errors = [_sanitize_error_detail(e) for e in exc.errors()]
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        msg = first_error.get("msg", "Validation error")
        message = f"{field}: {msg}" if field else msg
    else:
        message = "Validation error"

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": message,
                "request_id": request_id,
                "details": errors,
            }
        },
    )


@app.exception_handler(NewsletterError)
async def newsletter_exception_handler(request: Request, exc: NewsletterError) -> JSONResponse:
    """Render domain errors; server-side ones are logged, not echoed."""
    request_id = getattr(request.state, "request_id", None)
    if exc.status_code >= 500:
        logger.error("Request %s failed: %s", request_id, exc, exc_info=exc)
        message = "An unexpected error occurred"
    else:
        message = exc.message
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": exc.code,
                "message": message,
                "request_id": request_id,
            }
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions with consistent error format."""
    request_id = getattr(request.state, "request_id", None)
    logger.error("Unhandled error in request %s", request_id, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "request_id": request_id,
            }
        },
    )


# --- Health Check ---


@app.get("/api/v1/health", tags=["System"])
async def health_check() -> dict[str, str]:
    """
    Health check endpoint.

    Returns 200 OK if the API is running.
    """
    return {"status": "healthy"}
