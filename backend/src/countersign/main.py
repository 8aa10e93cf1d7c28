"""FastAPI application entry point."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from countersign import __version__
from countersign.api.ratelimit import limiter, rate_limit_exceeded_handler
from countersign.api.router import api_router
from countersign.config import get_settings
from countersign.infrastructure.database.connection import dispose_engine
from countersign.infrastructure.delivery.factory import build_otp_delivery, close_otp_delivery
from countersign.infrastructure.esign.factory import build_esign_provider, close_esign_provider
from countersign.observability.metrics import setup_metrics
from countersign.shared.exceptions import (
    AuthenticationError,
    ConflictError,
    CountersignError,
    DealNotReadyError,
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    OtpAttemptsExceededError,
    OtpExpiredError,
    OtpInvalidError,
    OtpNotRequestedError,
    OtpRequiredError,
    SignerMismatchError,
    SigningLinkError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    ValidationError,
)
from countersign.shared.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    setup_logging,
)

logger = get_logger(__name__)

# Link errors: unknown links look missing, spent/expired links look gone.
_LINK_ERROR_STATUS: dict[type[SigningLinkError], int] = {
    TokenExpiredError: 410,
    TokenAlreadyUsedError: 409,
    SignerMismatchError: 403,
    OtpRequiredError: 403,
    OtpNotRequestedError: 400,
    OtpExpiredError: 400,
    OtpInvalidError: 400,
    OtpAttemptsExceededError: 429,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan - startup and shutdown events."""
    # Startup
    setup_logging()
    logger.info("countersign_starting", version=__version__)

    settings = get_settings()
    app.state.esign_provider = getattr(
        app.state, "esign_provider", None
    ) or build_esign_provider(settings)
    app.state.otp_delivery = getattr(app.state, "otp_delivery", None) or build_otp_delivery(
        settings
    )

    yield

    # Shutdown
    logger.info("countersign_stopping")
    await close_esign_provider(getattr(app.state, "esign_provider", None))
    await close_otp_delivery(getattr(app.state, "otp_delivery", None))

    redis_client = getattr(app.state, "redis_client", None)
    if redis_client is not None:
        await redis_client.aclose()

    await dispose_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Countersign API",
        description="Dual-party contract countersigning: signing links, signatures, deal stages",
        version=__version__,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]

    # CORS middleware
    if settings.is_production:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def request_context_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get("x-request-id") or uuid4().hex
        clear_request_context()
        bind_request_context(request_id=request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # Exception handlers
    register_exception_handlers(app)

    # Include routers
    app.include_router(api_router, prefix="/api/v1")

    # Observability
    setup_metrics(app)

    return app


def register_exception_handlers(app: FastAPI) -> None:
    """Register custom exception handlers."""

    @app.exception_handler(SigningLinkError)
    async def signing_link_error_handler(request: Request, exc: SigningLinkError) -> JSONResponse:
        _ = request
        content: dict[str, object] = {"error": exc.code, "message": exc.message}
        if exc.details:
            content["details"] = exc.details
        return JSONResponse(
            status_code=_LINK_ERROR_STATUS.get(type(exc), 404),
            content=content,
        )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=422,
            content={
                "error": "validation_error",
                "message": exc.message,
                "details": exc.details,
            },
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=422,
            content={
                "error": "validation_error",
                "message": "Request validation failed",
                "details": {"errors": exc.errors()},
            },
        )

    @app.exception_handler(AuthenticationError)
    async def auth_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=401,
            content={
                "error": "authentication_error",
                "message": exc.message,
            },
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=404,
            content={
                "error": "not_found",
                "message": exc.message,
                "details": exc.details,
            },
        )

    @app.exception_handler(DealNotReadyError)
    async def deal_not_ready_handler(request: Request, exc: DealNotReadyError) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=409,
            content={
                "error": "deal_not_ready",
                "message": exc.message,
                "details": exc.details,
            },
        )

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(
        request: Request, exc: InvalidTransitionError
    ) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=409,
            content={
                "error": "invalid_transition",
                "message": exc.message,
                "details": exc.details,
            },
        )

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
        _ = request
        logger.warning("request_conflict", error=exc.message, details=exc.details)
        return JSONResponse(
            status_code=409,
            content={
                "error": "conflict",
                "message": "The request conflicted with a concurrent update. Please retry.",
            },
        )

    @app.exception_handler(ExternalServiceError)
    async def external_service_handler(
        request: Request, exc: ExternalServiceError
    ) -> JSONResponse:
        _ = request
        logger.warning("external_service_error", error=exc.message, details=exc.details)
        return JSONResponse(
            status_code=502,
            content={
                "error": "external_service_error",
                "message": exc.message,
            },
        )

    @app.exception_handler(CountersignError)
    async def countersign_error_handler(request: Request, exc: CountersignError) -> JSONResponse:
        _ = request
        logger.error("unhandled_error", error=exc.message, details=exc.details)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "An internal error occurred",
            },
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        _ = request
        logger.exception("unexpected_error", error=str(exc))
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "An unexpected error occurred",
            },
        )


# Create app instance
app = create_app()
