"""
Status API routes - Health checks for the API and its dependencies.

Public endpoint (no auth) for load balancers and status pages.
Rate limited by caching the last result for a few seconds.
"""

import asyncio
import time
from datetime import UTC, datetime
from enum import Enum

import httpx
from fastapi import APIRouter, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from structlog import get_logger

from ava_api.api.rate_limit import limiter
from ava_api.config import settings
from ava_api.db.session import Database
from ava_api.services.auth_cleanup import AuthCleanupService

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

# Timeout for health checks
CHECK_TIMEOUT = 5.0  # seconds
DEGRADED_LATENCY_THRESHOLD = 1000  # ms

# Rate limiting: reuse the last result for 10 seconds
_CACHE_TTL_SECONDS = 10

STRIPE_API_URL = "https://api.stripe.com/v1"


class StatusLevel(str, Enum):
    """Status levels for health checks."""

    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"


class ProviderStatus(BaseModel):
    """Status of a single dependency."""

    status: StatusLevel
    latency_ms: int | None = None
    last_check: str = Field(..., description="ISO 8601 timestamp")
    message: str | None = None


class SweepStatusResponse(BaseModel):
    """State of the background auth sweep."""

    running: bool
    sweep_in_progress: bool
    interval_seconds: float
    last_run_at: str | None = None
    last_duration_ms: float | None = None


class HealthResponse(BaseModel):
    """Response for /health endpoint."""

    service: str
    status: StatusLevel
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str
    environment: str
    providers: dict[str, ProviderStatus]
    features: dict[str, bool]
    auth_sweep: SweepStatusResponse | None = None


def _latency_status(latency_ms: int, timestamp: str) -> ProviderStatus:
    status = (
        StatusLevel.DEGRADED if latency_ms > DEGRADED_LATENCY_THRESHOLD else StatusLevel.OPERATIONAL
    )
    return ProviderStatus(
        status=status,
        latency_ms=latency_ms,
        last_check=timestamp,
        message="High latency" if status == StatusLevel.DEGRADED else None,
    )


async def check_postgresql(database: Database) -> ProviderStatus:
    """Check PostgreSQL connectivity."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    try:
        async with database.session() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("postgresql_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=None,
            last_check=timestamp,
            message="Connection failed",
        )

    return _latency_status(int((time.perf_counter() - start) * 1000), timestamp)


async def check_stripe() -> ProviderStatus:
    """Check Stripe API reachability."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    # If not configured, report as operational (not used)
    if not settings.stripe_enabled:
        return ProviderStatus(
            status=StatusLevel.OPERATIONAL,
            latency_ms=0,
            last_check=timestamp,
            message="Not configured",
        )

    try:
        async with httpx.AsyncClient(timeout=CHECK_TIMEOUT) as client:
            # Unauthenticated request; 401 proves the API is reachable
            response = await client.get(STRIPE_API_URL)
            latency_ms = int((time.perf_counter() - start) * 1000)

            if response.status_code in (200, 401):
                return _latency_status(latency_ms, timestamp)

            return ProviderStatus(
                status=StatusLevel.DEGRADED,
                latency_ms=latency_ms,
                last_check=timestamp,
                message=f"Unexpected status: {response.status_code}",
            )
    except httpx.TimeoutException:
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=int(CHECK_TIMEOUT * 1000),
            last_check=timestamp,
            message="Timeout",
        )
    except httpx.HTTPError as e:
        logger.warning("stripe_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=None,
            last_check=timestamp,
            message="Connection failed",
        )


def calculate_overall_status(providers: dict[str, ProviderStatus]) -> StatusLevel:
    """Calculate overall service status from provider statuses."""
    statuses = [p.status for p in providers.values()]

    if StatusLevel.OUTAGE in statuses:
        return StatusLevel.OUTAGE
    if StatusLevel.DEGRADED in statuses:
        return StatusLevel.DEGRADED
    return StatusLevel.OPERATIONAL


def sweep_status(cleanup: AuthCleanupService | None) -> SweepStatusResponse | None:
    if cleanup is None:
        return None
    state = cleanup.status()
    last = state.last_result
    return SweepStatusResponse(
        running=state.running,
        sweep_in_progress=state.sweep_in_progress,
        interval_seconds=state.interval_seconds,
        last_run_at=last.started_at.isoformat() if last else None,
        last_duration_ms=round(last.duration_seconds * 1000, 2) if last else None,
    )


@router.get("/health", response_model=HealthResponse)
@limiter.exempt
async def health(request: Request) -> HealthResponse:
    """
    Get service health.

    Checks connectivity to the database and Stripe concurrently and reports
    which optional integrations are switched on.
    """
    now = datetime.now(UTC)
    state = request.app.state

    cached: tuple[datetime, HealthResponse] | None = getattr(state, "health_cache", None)
    if cached is not None:
        cached_time, cached_response = cached
        age_seconds = (now - cached_time).total_seconds()
        if age_seconds < _CACHE_TTL_SECONDS:
            logger.debug("health_cache_hit", age_seconds=age_seconds)
            return cached_response

    postgresql_status, stripe_status = await asyncio.gather(
        check_postgresql(state.database),
        check_stripe(),
    )
    providers = {"postgresql": postgresql_status, "stripe": stripe_status}

    response = HealthResponse(
        service=settings.service_name,
        status=calculate_overall_status(providers),
        timestamp=now.isoformat(),
        version=settings.api_version,
        environment=settings.environment,
        providers=providers,
        features={
            "stripe": settings.stripe_enabled,
            "openai": settings.openai_enabled,
            "jira": settings.jira_enabled,
            "speech": settings.speech_enabled,
        },
        auth_sweep=sweep_status(getattr(state, "auth_cleanup", None)),
    )

    state.health_cache = (now, response)
    return response
