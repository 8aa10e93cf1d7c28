"""Rate limiting configuration for API endpoints.

Signing links are public, so the preview/redeem endpoints are limited per
client address. Uses slowapi with a Redis backend in production and
in-memory storage elsewhere.
"""

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.responses import JSONResponse

from countersign.config import get_settings
from countersign.shared.logging import get_logger

logger = get_logger(__name__)


def get_client_ip(request: Request) -> str:
    """Client address, honouring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _get_rate_limit_key(request: Request) -> str:
    if getattr(request.state, "service_caller", None):
        return f"service:{request.state.service_caller}"
    return get_client_ip(request)


def _create_limiter() -> Limiter:
    settings = get_settings()
    storage_uri = settings.redis_url if settings.is_production else "memory://"
    return Limiter(
        key_func=_get_rate_limit_key,
        storage_uri=storage_uri,
        strategy="fixed-window",
    )


limiter = _create_limiter()


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Custom handler for rate limit exceeded errors."""
    logger.warning(
        "rate_limit_exceeded",
        path=request.url.path,
        method=request.method,
        key=_get_rate_limit_key(request),
        limit=str(exc.detail),
    )

    return JSONResponse(
        status_code=429,
        content={
            "error": "too_many_requests",
            "message": "Too many requests. Please wait a moment and try again.",
            "detail": str(exc.detail),
        },
        headers={"Retry-After": "60"},
    )


# ----- Limits -----
# Usage: @limiter.limit(RATE_LIMIT_REDEEM)

RATE_LIMIT_DEFAULT = "100/minute"
RATE_LIMIT_TOKEN_PREVIEW = "30/minute"  # Link page loads
RATE_LIMIT_REDEEM = "10/minute"  # Signing submissions
RATE_LIMIT_OTP = "5/minute"  # One-time code requests and checks
RATE_LIMIT_POLL = "120/minute"  # Signature state polling
RATE_LIMIT_WEBHOOK = "300/minute"
RATE_LIMIT_HEALTH = "60/minute"
