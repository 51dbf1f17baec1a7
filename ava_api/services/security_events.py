"""
Security Event Log - Append-only audit trail for auth activity.

Writing an audit row must never break the operation being audited, so
failures are logged and swallowed here rather than raised.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from ava_api.db.models import SecurityEvent
from ava_api.models.api import Severity
from ava_api.models.domain import ClientInfo

logger = get_logger(__name__)


class SecurityEventLog:
    """Security event persistence bound to one database session."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def log(
        self,
        user_id: UUID | None,
        event_type: str,
        client: ClientInfo,
        details: dict[str, Any] | None = None,
        severity: Severity = Severity.INFO,
    ) -> None:
        """Append one security event."""
        try:
            self.db.add(
                SecurityEvent(
                    user_id=user_id,
                    event_type=event_type,
                    ip_address=client.ip_address,
                    user_agent=client.user_agent,
                    details=details or {},
                    severity=severity.value,
                    created_at=datetime.now(UTC),
                )
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "security_event_write_failed",
                event_type=event_type,
                user_id=str(user_id) if user_id else None,
                error=str(exc),
            )
            return

        log_method = logger.warning if severity != Severity.INFO else logger.info
        log_method(
            "security_event",
            event_type=event_type,
            user_id=str(user_id) if user_id else None,
            severity=severity.value,
            ip_address=client.ip_address,
        )

    async def prune(self, older_than: datetime) -> int:
        """Delete events created before the retention cutoff."""
        result = await self.db.execute(
            delete(SecurityEvent).where(SecurityEvent.created_at < older_than)
        )
        await self.db.commit()
        return result.rowcount or 0  # type: ignore[attr-defined]
