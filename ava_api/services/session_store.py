"""
Session Store - One row per authenticated device/browser.

Sessions are deactivated, never deleted, so the table keeps an audit trail.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from ava_api.db.models import AuthSession
from ava_api.models.domain import ClientInfo, SessionData

logger = get_logger(__name__)

DEFAULT_SESSION_TTL = timedelta(days=7)


def extract_device_info(user_agent: str) -> str:
    """Coarse device label from a User-Agent header."""
    if "Mobile" in user_agent:
        return "Mobile"
    if "Tablet" in user_agent:
        return "Tablet"
    if "Windows" in user_agent:
        return "Windows"
    if "Mac" in user_agent:
        return "Mac"
    if "Linux" in user_agent:
        return "Linux"
    return "Unknown"


def session_is_live(is_active: bool, expires_at: datetime, now: datetime) -> bool:
    """A session is live while flagged active and not past its expiry."""
    return is_active and expires_at > now


class SessionStore:
    """Session persistence bound to one database session."""

    def __init__(self, db: AsyncSession, ttl: timedelta = DEFAULT_SESSION_TTL) -> None:
        self.db = db
        self.ttl = ttl

    async def create_session(self, user_id: UUID, client: ClientInfo) -> UUID:
        """Insert an active session expiring after the configured TTL."""
        now = datetime.now(UTC)
        session_id = uuid4()
        device_info = extract_device_info(client.user_agent)

        self.db.add(
            AuthSession(
                id=session_id,
                user_id=user_id,
                device_info=device_info,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                created_at=now,
                last_activity=now,
                expires_at=now + self.ttl,
                is_active=True,
            )
        )
        await self.db.commit()

        logger.info(
            "session_created",
            session_id=str(session_id),
            user_id=str(user_id),
            device_info=device_info,
        )
        return session_id

    async def touch(self, session_id: UUID) -> None:
        """
        Bump last_activity on an active session.

        Runs on every authenticated request. A failure here never fails
        the request.
        """
        try:
            await self.db.execute(
                update(AuthSession)
                .where(AuthSession.id == session_id, AuthSession.is_active.is_(True))
                .values(last_activity=datetime.now(UTC))
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.warning("session_touch_failed", session_id=str(session_id), error=str(exc))

    async def is_active(self, session_id: UUID) -> bool:
        """True iff the session exists, is flagged active and has not expired."""
        result = await self.db.execute(select(AuthSession).where(AuthSession.id == session_id))
        session = result.scalar_one_or_none()
        if session is None:
            return False
        return session_is_live(session.is_active, session.expires_at, datetime.now(UTC))

    async def invalidate(self, session_id: UUID) -> None:
        """Deactivate one session."""
        await self.db.execute(
            update(AuthSession).where(AuthSession.id == session_id).values(is_active=False)
        )
        await self.db.commit()
        logger.info("session_invalidated", session_id=str(session_id))

    async def invalidate_all_for_user(self, user_id: UUID) -> int:
        """
        Deactivate every active session of a user.

        Returns:
            Number of sessions deactivated
        """
        result = await self.db.execute(
            update(AuthSession)
            .where(AuthSession.user_id == user_id, AuthSession.is_active.is_(True))
            .values(is_active=False)
        )
        await self.db.commit()
        count = result.rowcount or 0  # type: ignore[attr-defined]

        logger.info("user_sessions_invalidated", user_id=str(user_id), count=count)
        return count

    async def list_active(self, user_id: UUID) -> list[SessionData]:
        """Live sessions of a user, most recent activity first."""
        result = await self.db.execute(
            select(AuthSession)
            .where(
                AuthSession.user_id == user_id,
                AuthSession.is_active.is_(True),
                AuthSession.expires_at > datetime.now(UTC),
            )
            .order_by(AuthSession.last_activity.desc())
        )
        return [self._to_domain(row) for row in result.scalars().all()]

    async def get_active_for_user(self, user_id: UUID, session_id: UUID) -> SessionData | None:
        """Fetch a live session only if it belongs to the given user."""
        result = await self.db.execute(
            select(AuthSession).where(
                AuthSession.id == session_id,
                AuthSession.user_id == user_id,
            )
        )
        session = result.scalar_one_or_none()
        if session is None or not session_is_live(
            session.is_active, session.expires_at, datetime.now(UTC)
        ):
            return None
        return self._to_domain(session)

    async def deactivate_expired(self) -> int:
        """Flip is_active off for sessions past expiry. Used by the sweep."""
        result = await self.db.execute(
            update(AuthSession)
            .where(AuthSession.is_active.is_(True), AuthSession.expires_at < datetime.now(UTC))
            .values(is_active=False)
        )
        await self.db.commit()
        return result.rowcount or 0  # type: ignore[attr-defined]

    @staticmethod
    def _to_domain(session: AuthSession) -> SessionData:
        return SessionData(
            session_id=session.id,
            user_id=session.user_id,
            device_info=session.device_info,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            created_at=session.created_at,
            last_activity=session.last_activity,
            expires_at=session.expires_at,
            is_active=session.is_active,
        )
