"""
Auth Cleanup Service - Periodic sweep of expired security state.

Deactivates expired sessions, purges blacklist rows for tokens that have
expired anyway, and prunes old login attempts and security events.
Runs as a background task owned by the application lifespan.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from structlog import get_logger

from ava_api.config import Settings
from ava_api.db.session import Database
from ava_api.models.domain import SweepResult
from ava_api.observability import metrics
from ava_api.services.security_events import SecurityEventLog
from ava_api.services.session_store import SessionStore
from ava_api.services.token_revocation import RevocationCache, RevocationStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class SweepStatus:
    """Scheduler state reported by the health endpoint."""

    running: bool
    sweep_in_progress: bool
    interval_seconds: float
    last_result: SweepResult | None


class AuthCleanupService:
    """
    Background sweeper with an overlap guard.

    Usage:
        cleanup = AuthCleanupService.from_settings(database, cache, settings)
        cleanup.start()
        ...
        await cleanup.stop()
    """

    def __init__(
        self,
        database: Database,
        cache: RevocationCache,
        interval_seconds: float = 3600.0,
        initial_delay_seconds: float = 5.0,
        login_attempt_retention: timedelta = timedelta(days=30),
        security_event_retention: timedelta = timedelta(days=90),
    ) -> None:
        self.database = database
        self.cache = cache
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.login_attempt_retention = login_attempt_retention
        self.security_event_retention = security_event_retention

        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._last_result: SweepResult | None = None

    @classmethod
    def from_settings(
        cls, database: Database, cache: RevocationCache, settings: Settings
    ) -> "AuthCleanupService":
        return cls(
            database=database,
            cache=cache,
            interval_seconds=settings.sweep_interval_seconds,
            initial_delay_seconds=settings.sweep_initial_delay_seconds,
            login_attempt_retention=timedelta(days=settings.login_attempt_retention_days),
            security_event_retention=timedelta(days=settings.security_event_retention_days),
        )

    async def sweep_expired(self) -> SweepResult | None:
        """
        Run one sweep.

        Returns:
            Row counts, or None if another sweep was still running
        """
        if self._lock.locked():
            logger.info("auth_sweep_skipped", reason="previous_sweep_running")
            metrics.record_sweep("skipped")
            return None

        async with self._lock:
            started_at = datetime.now(UTC)
            start_time = time.perf_counter()

            try:
                async with self.database.session() as db:
                    revocations = RevocationStore(db, self.cache)
                    sessions_deactivated = await SessionStore(db).deactivate_expired()
                    blacklist_purged = await revocations.purge_expired_blacklist()
                    login_attempts_pruned = await revocations.prune_login_attempts(
                        started_at - self.login_attempt_retention
                    )
                    security_events_pruned = await SecurityEventLog(db).prune(
                        started_at - self.security_event_retention
                    )
            except Exception:
                metrics.record_sweep("failed", time.perf_counter() - start_time)
                raise

            duration = time.perf_counter() - start_time
            result = SweepResult(
                sessions_deactivated=sessions_deactivated,
                blacklist_purged=blacklist_purged,
                login_attempts_pruned=login_attempts_pruned,
                security_events_pruned=security_events_pruned,
                started_at=started_at,
                duration_seconds=duration,
            )
            self._last_result = result

        metrics.record_sweep(
            "success",
            duration,
            rows={
                "auth_sessions": sessions_deactivated,
                "blacklisted_tokens": blacklist_purged,
                "login_attempts": login_attempts_pruned,
                "security_events": security_events_pruned,
            },
        )
        logger.info(
            "auth_sweep_completed",
            sessions_deactivated=sessions_deactivated,
            blacklist_purged=blacklist_purged,
            login_attempts_pruned=login_attempts_pruned,
            security_events_pruned=security_events_pruned,
            duration_ms=round(duration * 1000, 2),
        )
        return result

    def start(self) -> None:
        """Schedule the sweep loop on the running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run_loop(), name="auth-cleanup")
        logger.info(
            "auth_cleanup_started",
            interval_seconds=self.interval_seconds,
            initial_delay_seconds=self.initial_delay_seconds,
        )

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("auth_cleanup_stopped")

    def status(self) -> SweepStatus:
        return SweepStatus(
            running=self._task is not None and not self._task.done(),
            sweep_in_progress=self._lock.locked(),
            interval_seconds=self.interval_seconds,
            last_result=self._last_result,
        )

    async def _run_loop(self) -> None:
        await asyncio.sleep(self.initial_delay_seconds)
        while True:
            try:
                await self.sweep_expired()
            except Exception as exc:
                logger.error("auth_sweep_failed", error=str(exc), exc_info=True)
            await asyncio.sleep(self.interval_seconds)
