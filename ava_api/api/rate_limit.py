"""
Rate Limiting - Per-client request budgets backed by slowapi.

Every route shares the application-wide budget except the credential
endpoints, which carry their own tighter per-route budget, and the
health, metrics and webhook routes exempted in main.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from structlog import get_logger

from ava_api.config import settings
from ava_api.observability import metrics

logger = get_logger(__name__)

# Decorated routes are checked against this instead of the application budget
AUTH_RATE_LIMIT = settings.rate_limit_auth

limiter = Limiter(
    key_func=get_remote_address,
    application_limits=[settings.rate_limit_default],
    enabled=settings.rate_limit_enabled,
)


def retry_after_seconds(exc: RateLimitExceeded) -> int:
    """Length of the exceeded window, the longest a client has to wait."""
    if exc.limit is None:
        return 60
    return int(exc.limit.limit.get_expiry())


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    Answer 429 with Retry-After.

    Must stay synchronous: SlowAPIMiddleware can only call sync handlers
    and falls back to slowapi's own response otherwise.
    """
    retry_after = retry_after_seconds(exc)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    metrics.record_rate_limited(endpoint)
    logger.warning(
        "rate_limit_exceeded",
        path=request.url.path,
        limit=str(exc.detail),
        client=get_remote_address(request),
        retry_after_seconds=retry_after,
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "detail": "Too many requests, please try again later.",
            "retryAfter": retry_after,
        },
        headers={"Retry-After": str(retry_after)},
    )
