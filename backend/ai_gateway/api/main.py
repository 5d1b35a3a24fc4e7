"""FastAPI application setup."""

import logging
import math
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError

from ai_gateway.api.exceptions import FileTooLargeError, RateLimitExceededError, ValidationError
from ai_gateway.api.response import error_response
from ai_gateway.api.routes import ai, cache, circuits, documents, health
from ai_gateway.db.mongo import close_database
from ai_gateway.gateway import get_gateway
from ai_gateway.llm.errors import (
    AllProvidersFailedError,
    AuthenticationError,
    ChatUnavailableError,
    CircuitOpenError,
    DocumentProcessingError,
    GatewayError,
    InvalidRequestError,
    QuotaExceededError,
    RateLimitError,
    RetryExhaustedError,
    UnsupportedDocumentError,
)

logger = logging.getLogger(__name__)

# Checked in order; the first matching class decides status and code
GATEWAY_ERROR_STATUS: tuple[tuple[type[GatewayError], int, str], ...] = (
    (CircuitOpenError, 503, "CIRCUIT_OPEN"),
    (RateLimitError, 429, "RATE_LIMITED"),
    (QuotaExceededError, 402, "QUOTA_EXCEEDED"),
    (UnsupportedDocumentError, 415, "UNSUPPORTED_DOCUMENT"),
    (DocumentProcessingError, 422, "DOCUMENT_UNREADABLE"),
    (InvalidRequestError, 400, "INVALID_REQUEST"),
    (RetryExhaustedError, 502, "AI_RESPONSE_INVALID"),
    (AllProvidersFailedError, 503, "AI_UNAVAILABLE"),
    (AuthenticationError, 503, "AI_NOT_CONFIGURED"),
    (ChatUnavailableError, 503, "AI_NOT_CONFIGURED"),
)


def status_for_error(exc: GatewayError) -> tuple[int, str]:
    """HTTP status and error code for a gateway error."""
    if isinstance(exc, RetryExhaustedError) and isinstance(exc.last_error, GatewayError):
        # Report the cause unless it was an unparseable response
        status, code = status_for_error(exc.last_error)
        if code != "AI_SERVICE_ERROR":
            return status, code
        return 502, "AI_RESPONSE_INVALID"
    for error_class, status, code in GATEWAY_ERROR_STATUS:
        if isinstance(exc, error_class):
            return status, code
    return 503, "AI_SERVICE_ERROR"


def _retry_after_seconds(value: float | None) -> int | None:
    return max(1, math.ceil(value)) if value is not None else None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    gateway = get_gateway()
    await gateway.start()
    yield
    # Shutdown
    await gateway.stop()
    await close_database()


app = FastAPI(
    title="AI Gateway API",
    description="Resilient AI completion and document extraction gateway",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware for the host application's frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv(
        "CORS_ALLOW_ORIGINS",
        "http://localhost:5173,http://127.0.0.1:5173",
    ).split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Map gateway errors to the envelope with an actionable message."""
    status_code, code = status_for_error(exc)
    retry_after = _retry_after_seconds(exc.retry_after)
    logger.warning(
        f"{request.method} {request.url.path} failed with {code}: {exc}",
        extra={"provider": exc.provider, "status_code": status_code},
    )
    headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
    return JSONResponse(
        status_code=status_code,
        content=error_response(code, exc.user_message, retry_after),
        headers=headers,
    )


@app.exception_handler(RateLimitExceededError)
async def rate_limit_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    """Handle host rate-limit rejections."""
    retry_after = exc.retry_after or 60
    return JSONResponse(
        status_code=429,
        content=error_response(
            "RATE_LIMITED",
            "Too many requests. Please try again shortly.",
            retry_after,
        ),
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content=error_response("VALIDATION_ERROR", exc.message),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle malformed request bodies."""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid value')}" if location else "Invalid request"
    return JSONResponse(
        status_code=400,
        content=error_response("VALIDATION_ERROR", message),
    )


@app.exception_handler(FileTooLargeError)
async def file_too_large_handler(request: Request, exc: FileTooLargeError) -> JSONResponse:
    """Handle file too large errors."""
    return JSONResponse(
        status_code=400,
        content=error_response(
            "FILE_TOO_LARGE",
            f"File size exceeds maximum of {exc.max_size // (1024 * 1024)}MB",
        ),
    )


@app.exception_handler(ServerSelectionTimeoutError)
async def mongo_timeout_handler(request: Request, exc: ServerSelectionTimeoutError) -> JSONResponse:
    """Handle MongoDB connection timeout."""
    return JSONResponse(
        status_code=503,
        content=error_response("DATABASE_UNAVAILABLE", "Database is not available. Please try again later."),
    )


@app.exception_handler(ConnectionFailure)
async def mongo_connection_handler(request: Request, exc: ConnectionFailure) -> JSONResponse:
    """Handle MongoDB connection failure."""
    return JSONResponse(
        status_code=503,
        content=error_response("DATABASE_UNAVAILABLE", "Database connection failed. Please try again later."),
    )


# Register routes
app.include_router(health.router)
app.include_router(ai.router, prefix="/api")
app.include_router(cache.router, prefix="/api")
app.include_router(circuits.router, prefix="/api")
app.include_router(documents.router, prefix="/api")
