"""FastAPI application entry point for the payment backend."""
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import stripe
import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from marketplace import models  # noqa: F401  registers tables on the metadata
from marketplace.config import settings
from marketplace.database import init_models
from marketplace.errors import PaymentError
from marketplace.middleware.logging import LoggingMiddleware, setup_logging
from marketplace.schemas.error import BackendErrorResponse, ErrorCode, PaymentErrorType

# Setup structured logging
setup_logging()
logger = structlog.get_logger(__name__)

# PaymentError class -> HTTP status
ERROR_STATUS = {
    PaymentErrorType.VALIDATION: status.HTTP_400_BAD_REQUEST,
    PaymentErrorType.AUTH: status.HTTP_401_UNAUTHORIZED,
    PaymentErrorType.STRIPE: status.HTTP_402_PAYMENT_REQUIRED,
    PaymentErrorType.NETWORK: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_response(status_code: int, message: str, error_type: PaymentErrorType, code: str | None) -> JSONResponse:
    """Build the JSON error body the app-side client decodes."""
    body = BackendErrorResponse(error=message, type=error_type, code=code)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    logger.info("application_starting", env=settings.app_env)
    if settings.app_env == "development":
        await init_models()
    yield
    logger.info("application_shutting_down")


app = FastAPI(
    title="Marketplace Payment Backend",
    description="Trusted backend functions for marketplace checkout and merchant plans",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(LoggingMiddleware)


@app.exception_handler(PaymentError)
async def payment_exception_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """
    Handle typed payment errors.

    Validation failures on a missing resource answer 404, a duplicate
    purchase 409, everything else follows the error class.
    """
    status_code = ERROR_STATUS[exc.type]
    if exc.type == PaymentErrorType.VALIDATION:
        if exc.code.endswith("_not_found"):
            status_code = status.HTTP_404_NOT_FOUND
        elif exc.code.endswith("_already_active"):
            status_code = status.HTTP_409_CONFLICT

    logger.warning(
        "payment_error",
        path=request.url.path,
        error_type=exc.type.value,
        code=exc.code,
        status_code=status_code,
    )
    return error_response(status_code, exc.message, exc.type, exc.code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle malformed request bodies. Returns 400 with the first field error."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field_path = ".".join(str(loc) for loc in first.get("loc", ()))

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        error_count=len(errors),
    )
    message = f"{field_path}: {first.get('msg')}" if first else "Request validation failed"
    return error_response(status.HTTP_400_BAD_REQUEST, message, PaymentErrorType.VALIDATION, ErrorCode.VALIDATION_ERROR)


@app.exception_handler(ValidationError)
async def payload_validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle nested payloads validated inside a route (subscriptionData)."""
    logger.warning("payload_validation_error", path=request.url.path, error_count=exc.error_count())
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        "Invalid request payload",
        PaymentErrorType.VALIDATION,
        ErrorCode.VALIDATION_ERROR,
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """
    Handle database errors.

    Returns 503 Service Unavailable so the app treats the call as retryable.
    """
    logger.error(
        "database_error",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )

    # Don't expose internal database details in production
    message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)
    return error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE, message, PaymentErrorType.NETWORK, ErrorCode.BACKEND_UNAVAILABLE
    )


@app.exception_handler(stripe.StripeError)
async def stripe_exception_handler(request: Request, exc: stripe.StripeError) -> JSONResponse:
    """
    Handle Stripe API errors.

    Card declines keep Stripe's own code and message so the app can show
    them verbatim. Connectivity problems are reported as retryable.
    """
    stripe_code = getattr(exc, "code", None)

    logger.error(
        "stripe_error",
        path=request.url.path,
        method=request.method,
        stripe_code=stripe_code,
        stripe_message=str(exc.user_message or exc),
    )

    if isinstance(exc, stripe.APIConnectionError):
        return error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Payment gateway unreachable",
            PaymentErrorType.NETWORK,
            ErrorCode.NETWORK_ERROR,
        )

    if isinstance(exc, stripe.CardError):
        return error_response(
            status.HTTP_402_PAYMENT_REQUIRED,
            exc.user_message or "Your card was declined",
            PaymentErrorType.STRIPE,
            stripe_code or ErrorCode.CARD_DECLINED,
        )

    return error_response(
        status.HTTP_402_PAYMENT_REQUIRED,
        exc.user_message or "Payment gateway error occurred",
        PaymentErrorType.STRIPE,
        stripe_code or ErrorCode.PROCESSOR_ERROR,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle all other uncaught exceptions.

    Logs the stack trace and returns a safe message to the client.
    """
    logger.exception(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        exception_type=type(exc).__name__,
    )
    message = str(exc) if settings.debug else "Internal server error"
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=BackendErrorResponse(
            error=message, type=PaymentErrorType.NETWORK, code=ErrorCode.UNEXPECTED_ERROR
        ).model_dump(mode="json"),
    )


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "service": "Marketplace Payment Backend",
        "version": "0.1.0",
        "status": "operational",
        "docs": "/docs",
    }


# Include routers
from marketplace.api import functions, health  # noqa: E402
from marketplace.api.webhooks import stripe as stripe_webhooks  # noqa: E402

app.include_router(health.router, tags=["Health"])
app.include_router(functions.router)
app.include_router(stripe_webhooks.router)
